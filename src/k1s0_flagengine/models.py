"""flagengine データモデル"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .exceptions import FlagEngineError, FlagEngineErrorCodes

ALL_SEGMENT_ID = "all"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlagType(str, Enum):
    """フラグ種別。"""

    RELEASE = "release"
    EXPERIMENT = "experiment"
    OPS = "ops"
    PERMISSION = "permission"


class Operator(str, Enum):
    """条件演算子。"""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class DecisionReason(str, Enum):
    """評価結果の理由コード。"""

    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    NOT_IN_SEGMENT = "not_in_segment"
    EXCLUDED_BY_ROLLOUT = "excluded_by_rollout"
    CONDITIONS_NOT_MET = "conditions_not_met"
    ALL_CONDITIONS_MET = "all_conditions_met"
    SUBJECT_UNAVAILABLE = "subject_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class Condition:
    """属性に対する述語。"""

    attribute: str
    operator: Operator
    value: Any = None

    def __post_init__(self) -> None:
        if not self.attribute:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_FLAG,
                "condition attribute must be a non-empty string",
            )
        try:
            object.__setattr__(self, "operator", Operator(self.operator))
        except ValueError as e:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_FLAG,
                f"unknown condition operator: {self.operator}",
                cause=e,
            ) from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "attribute": self.attribute,
            "operator": self.operator.value,
            "value": self.value,
        }


def _freeze_conditions(conditions: Any) -> tuple[Condition, ...]:
    return tuple(
        c if isinstance(c, Condition) else Condition(**c) for c in conditions or ()
    )


@dataclass(frozen=True)
class FeatureFlag:
    """フィーチャーフラグ。

    イミュータブル。変更は ``dataclasses.replace`` で新しいインスタンスを作る。
    """

    id: str
    name: str = ""
    description: str = ""
    type: FlagType = FlagType.RELEASE
    enabled: bool = False
    rollout_percentage: int = 0
    eligible_segments: frozenset[str] = field(default_factory=frozenset)
    conditions: tuple[Condition, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = "system"
    updated_by: str = "system"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.id or not isinstance(self.id, str):
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_FLAG, "flag id must be a non-empty string"
            )
        try:
            object.__setattr__(self, "type", FlagType(self.type))
        except ValueError as e:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_FLAG,
                f"unknown flag type: {self.type}",
                cause=e,
            ) from e
        pct = self.rollout_percentage
        if isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_FLAG,
                f"rollout_percentage must be an integer in 0..100, got {pct!r}",
            )
        object.__setattr__(self, "eligible_segments", frozenset(self.eligible_segments))
        object.__setattr__(self, "conditions", _freeze_conditions(self.conditions))
        object.__setattr__(self, "metadata", dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        """監査ログ用のスナップショットを返す。"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "eligible_segments": sorted(self.eligible_segments),
            "conditions": [c.to_dict() for c in self.conditions],
            "metadata": dict(self.metadata),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class FlagUpdate:
    """フラグの部分更新。None のフィールドは変更しない。"""

    name: str | None = None
    description: str | None = None
    type: FlagType | None = None
    enabled: bool | None = None
    rollout_percentage: int | None = None
    eligible_segments: frozenset[str] | None = None
    conditions: tuple[Condition, ...] | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def apply(self, flag: FeatureFlag, updated_by: str) -> FeatureFlag:
        """変更を適用した新しいフラグを返す。検証エラー時は元のフラグは不変。"""
        return replace(flag, **self.changes(), updated_by=updated_by, updated_at=_utcnow())


@dataclass(frozen=True)
class UserSegment:
    """ユーザーセグメント。criteria はすべて AND で評価する。"""

    id: str
    name: str = ""
    description: str = ""
    criteria: tuple[Condition, ...] = ()
    is_active: bool = True

    def __post_init__(self) -> None:
        if not self.id or not isinstance(self.id, str):
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_SEGMENT,
                "segment id must be a non-empty string",
            )
        object.__setattr__(self, "criteria", _freeze_conditions(self.criteria))


@dataclass
class Subject:
    """評価対象のユーザー。"""

    id: str
    email: str | None = None
    role: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class EvaluationContext:
    """フラグ評価コンテキスト。"""

    subject_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """フラグ評価結果。"""

    flag_id: str
    enabled: bool
    reason: DecisionReason
