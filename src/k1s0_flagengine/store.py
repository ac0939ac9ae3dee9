"""永続化アダプタの抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .models import FeatureFlag, Subject, UserSegment

if TYPE_CHECKING:
    from .audit import AuditEntry


class FlagStore(ABC):
    """フラグ・セグメント・監査ログを永続化するストアの抽象基底クラス。

    実装は書き込み失敗時に例外を送出すること。エンジンはその例外を
    STORE_ERROR / AUDIT_ERROR に包んで呼び出し元へ伝播する。
    """

    @abstractmethod
    async def get_flag(self, flag_id: str) -> FeatureFlag | None:
        """フラグを取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def list_flags(self) -> list[FeatureFlag]: ...

    @abstractmethod
    async def persist_flag(self, flag: FeatureFlag) -> None:
        """フラグを作成または置換する。"""
        ...

    @abstractmethod
    async def delete_flag(self, flag_id: str) -> None: ...

    @abstractmethod
    async def get_segment(self, segment_id: str) -> UserSegment | None: ...

    @abstractmethod
    async def list_segments(self) -> list[UserSegment]: ...

    @abstractmethod
    async def persist_segment(self, segment: UserSegment) -> None: ...

    @abstractmethod
    async def delete_segment(self, segment_id: str) -> None: ...

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        """監査エントリを追記する。更新・削除の操作は提供しない。"""
        ...

    @abstractmethod
    async def list_audit(self, flag_id: str | None = None) -> list[AuditEntry]:
        """追記順の監査エントリを返す。flag_id 指定時はそのフラグのみ。"""
        ...


class SubjectDirectory(ABC):
    """サブジェクト (ユーザー) 属性の取得元。"""

    @abstractmethod
    async def get_subject(self, subject_id: str) -> Subject | None: ...
