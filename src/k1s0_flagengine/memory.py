"""インメモリのストア実装"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import FeatureFlag, Subject, UserSegment
from .store import FlagStore, SubjectDirectory

if TYPE_CHECKING:
    from .audit import AuditEntry


class InMemoryFlagStore(FlagStore):
    """テスト・ブートストラップ用インメモリストア。"""

    def __init__(
        self,
        flags: list[FeatureFlag] | None = None,
        segments: list[UserSegment] | None = None,
    ) -> None:
        self._flags: dict[str, FeatureFlag] = {f.id: f for f in flags or ()}
        self._segments: dict[str, UserSegment] = {s.id: s for s in segments or ()}
        self._audit: list[AuditEntry] = []

    async def get_flag(self, flag_id: str) -> FeatureFlag | None:
        return self._flags.get(flag_id)

    async def list_flags(self) -> list[FeatureFlag]:
        return list(self._flags.values())

    async def persist_flag(self, flag: FeatureFlag) -> None:
        self._flags[flag.id] = flag

    async def delete_flag(self, flag_id: str) -> None:
        self._flags.pop(flag_id, None)

    async def get_segment(self, segment_id: str) -> UserSegment | None:
        return self._segments.get(segment_id)

    async def list_segments(self) -> list[UserSegment]:
        return list(self._segments.values())

    async def persist_segment(self, segment: UserSegment) -> None:
        self._segments[segment.id] = segment

    async def delete_segment(self, segment_id: str) -> None:
        self._segments.pop(segment_id, None)

    async def append_audit(self, entry: AuditEntry) -> None:
        self._audit.append(entry)

    async def list_audit(self, flag_id: str | None = None) -> list[AuditEntry]:
        if flag_id is None:
            return list(self._audit)
        return [e for e in self._audit if e.flag_id == flag_id]


class InMemorySubjectDirectory(SubjectDirectory):
    """テスト用インメモリサブジェクトディレクトリ。"""

    def __init__(self, subjects: list[Subject] | None = None) -> None:
        self._subjects: dict[str, Subject] = {s.id: s for s in subjects or ()}

    def set_subject(self, subject: Subject) -> None:
        """サブジェクトを設定する。"""
        self._subjects[subject.id] = subject

    async def get_subject(self, subject_id: str) -> Subject | None:
        return self._subjects.get(subject_id)
