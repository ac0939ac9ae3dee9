"""flagengine ライブラリの例外型定義"""

from __future__ import annotations


class FlagEngineError(Exception):
    """flagengine ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagEngineErrorCodes:
    """FlagEngineError のエラーコード定数。"""

    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    FLAG_ALREADY_EXISTS: str = "FLAG_ALREADY_EXISTS"
    SEGMENT_NOT_FOUND: str = "SEGMENT_NOT_FOUND"
    INVALID_FLAG: str = "INVALID_FLAG"
    INVALID_SEGMENT: str = "INVALID_SEGMENT"
    INVALID_ROLLOUT_PLAN: str = "INVALID_ROLLOUT_PLAN"
    ROLLOUT_ALREADY_ACTIVE: str = "ROLLOUT_ALREADY_ACTIVE"
    ROLLOUT_NOT_FOUND: str = "ROLLOUT_NOT_FOUND"
    ROLLOUT_NOT_PAUSED: str = "ROLLOUT_NOT_PAUSED"
    ROLLOUT_NOT_RUNNING: str = "ROLLOUT_NOT_RUNNING"
    UNKNOWN_STRATEGY: str = "UNKNOWN_STRATEGY"
    STORE_ERROR: str = "STORE_ERROR"
    AUDIT_ERROR: str = "AUDIT_ERROR"
    CONFIG_ERROR: str = "CONFIG_ERROR"
    RULE_ERROR: str = "RULE_ERROR"
