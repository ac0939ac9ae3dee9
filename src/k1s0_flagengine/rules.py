"""条件・セグメントの評価"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import (
    ALL_SEGMENT_ID,
    Condition,
    EvaluationContext,
    Operator,
    Subject,
    UserSegment,
)


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

_SUBJECT_PROPERTIES = ("id", "email", "role")
_CONTEXT_PROPERTIES = ("subject_id", "ip", "user_agent", "timestamp")


def resolve_attribute(
    attribute: str,
    context: EvaluationContext | None,
    subject: Subject | None,
) -> Any:
    """属性値を解決する。見つからなければ MISSING。

    解決順: コンテキスト属性 → サブジェクト属性 → サブジェクトのプロパティ
    → コンテキストのプロパティ。
    """
    if context is not None and attribute in context.attributes:
        return context.attributes[attribute]
    if subject is not None:
        if attribute in subject.attributes:
            return subject.attributes[attribute]
        if attribute in _SUBJECT_PROPERTIES:
            value = getattr(subject, attribute)
            if value is not None:
                return value
    if context is not None and attribute in _CONTEXT_PROPERTIES:
        value = getattr(context, attribute)
        if value is not None:
            return value
    return MISSING


def _to_number(value: Any, attribute: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.RULE_ERROR,
            f"attribute '{attribute}' is not numeric: {value!r}",
            cause=e,
        ) from e


def _equals(actual: Any, expected: Any, attribute: str) -> bool:
    return actual == expected


def _not_equals(actual: Any, expected: Any, attribute: str) -> bool:
    return actual != expected


def _contains(actual: Any, expected: Any, attribute: str) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return False


def _greater_than(actual: Any, expected: Any, attribute: str) -> bool:
    return _to_number(actual, attribute) > _to_number(expected, attribute)


def _less_than(actual: Any, expected: Any, attribute: str) -> bool:
    return _to_number(actual, attribute) < _to_number(expected, attribute)


_OPERATORS: dict[Operator, Callable[[Any, Any, str], bool]] = {
    Operator.EQUALS: _equals,
    Operator.NOT_EQUALS: _not_equals,
    Operator.CONTAINS: _contains,
    Operator.GREATER_THAN: _greater_than,
    Operator.LESS_THAN: _less_than,
}

assert set(_OPERATORS) == set(Operator), "every Operator needs a handler"


def evaluate_condition(
    condition: Condition,
    context: EvaluationContext | None,
    subject: Subject | None,
) -> bool:
    """単一条件を評価する。属性が解決できなければ演算子に関わらず False。

    Raises:
        FlagEngineError: 数値比較で値を数値に変換できない場合 (RULE_ERROR)
    """
    actual = resolve_attribute(condition.attribute, context, subject)
    if actual is MISSING:
        return False
    return _OPERATORS[condition.operator](actual, condition.value, condition.attribute)


def evaluate_all(
    conditions: Iterable[Condition],
    context: EvaluationContext | None,
    subject: Subject | None,
) -> bool:
    """すべての条件を AND で評価する。空なら True。"""
    return all(evaluate_condition(c, context, subject) for c in conditions)


def is_member(
    segment: UserSegment,
    subject: Subject | None,
    context: EvaluationContext | None,
) -> bool:
    """サブジェクトがセグメントに属するか。"""
    if segment.id == ALL_SEGMENT_ID:
        return True
    if not segment.is_active:
        return False
    return evaluate_all(segment.criteria, context, subject)


def is_eligible(
    segment_ids: Iterable[str],
    segments: Mapping[str, UserSegment],
    subject: Subject | None,
    context: EvaluationContext | None,
) -> bool:
    """いずれかのセグメントに属していれば True (セグメント間は OR)。"""
    for segment_id in sorted(segment_ids):
        if segment_id == ALL_SEGMENT_ID:
            return True
        segment = segments.get(segment_id)
        if segment is not None and is_member(segment, subject, context):
            return True
    return False
