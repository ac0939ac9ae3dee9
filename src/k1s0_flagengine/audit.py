"""Append-only audit log for flag mutations."""

from __future__ import annotations

import csv
import io
import json
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog

from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import FeatureFlag
from .store import FlagStore

logger = structlog.stdlib.get_logger(__name__)


class AuditAction(str, Enum):
    """Audit action vocabulary."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    ROLLOUT_UPDATED = "ROLLOUT_UPDATED"
    GRADUAL_ROLLOUT_STARTED = "GRADUAL_ROLLOUT_STARTED"
    GRADUAL_ROLLOUT_PAUSED = "GRADUAL_ROLLOUT_PAUSED"
    GRADUAL_ROLLOUT_RESUMED = "GRADUAL_ROLLOUT_RESUMED"
    GRADUAL_ROLLOUT_CANCELLED = "GRADUAL_ROLLOUT_CANCELLED"
    GRADUAL_ROLLOUT_COMPLETED = "GRADUAL_ROLLOUT_COMPLETED"
    EMERGENCY_ROLLBACK = "EMERGENCY_ROLLBACK"
    DELETED = "DELETED"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record."""

    flag_id: str
    action: AuditAction
    performed_by: str
    old_value: FeatureFlag | None = None
    new_value: FeatureFlag | None = None
    reason: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclass
class AuditLogFilter:
    """Query filter. Unset fields match everything."""

    flag_id: str | None = None
    actions: tuple[AuditAction, ...] = ()
    performed_by: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, entry: AuditEntry) -> bool:
        if self.flag_id is not None and entry.flag_id != self.flag_id:
            return False
        if self.actions and entry.action not in self.actions:
            return False
        if self.performed_by is not None and entry.performed_by != self.performed_by:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        return True


@dataclass
class AuditLogSummary:
    """Aggregate counts over a filtered audit log."""

    total_entries: int = 0
    entries_by_action: dict[str, int] = field(default_factory=dict)
    entries_by_actor: dict[str, int] = field(default_factory=dict)
    entries_by_flag: dict[str, int] = field(default_factory=dict)


_CSV_HEADER = (
    "id",
    "flag_id",
    "action",
    "performed_by",
    "reason",
    "timestamp",
    "old_value",
    "new_value",
)


def _snapshot(flag: FeatureFlag | None) -> str:
    return "" if flag is None else json.dumps(flag.to_dict(), sort_keys=True, default=str)


class AuditLog:
    """Audit log backed by a FlagStore.

    Entries are only ever appended. Append failures propagate to the caller
    of the mutation that produced the entry.
    """

    def __init__(self, store: FlagStore) -> None:
        self._store = store

    async def append(self, entry: AuditEntry) -> None:
        try:
            await self._store.append_audit(entry)
        except Exception as e:
            logger.error(
                "audit append failed",
                flag_id=entry.flag_id,
                action=entry.action.value,
                error=str(e),
            )
            raise FlagEngineError(
                FlagEngineErrorCodes.AUDIT_ERROR,
                f"failed to append audit entry for flag {entry.flag_id}",
                cause=e,
            ) from e

    async def list_for_flag(
        self, flag_id: str, limit: int | None = None
    ) -> list[AuditEntry]:
        """Entries for a flag in chronological order. ``limit`` keeps the newest."""
        entries = await self._load(flag_id)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def query(self, audit_filter: AuditLogFilter | None = None) -> list[AuditEntry]:
        audit_filter = audit_filter or AuditLogFilter()
        entries = [
            e for e in await self._load(audit_filter.flag_id) if audit_filter.matches(e)
        ]
        entries = entries[audit_filter.offset :]
        if audit_filter.limit is not None:
            entries = entries[: audit_filter.limit]
        return entries

    async def summarize(
        self, audit_filter: AuditLogFilter | None = None
    ) -> AuditLogSummary:
        entries = await self.query(audit_filter)
        return AuditLogSummary(
            total_entries=len(entries),
            entries_by_action=dict(Counter(e.action.value for e in entries)),
            entries_by_actor=dict(Counter(e.performed_by for e in entries)),
            entries_by_flag=dict(Counter(e.flag_id for e in entries)),
        )

    async def export_csv(self, audit_filter: AuditLogFilter | None = None) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(_CSV_HEADER)
        for e in await self.query(audit_filter):
            writer.writerow(
                (
                    e.id,
                    e.flag_id,
                    e.action.value,
                    e.performed_by,
                    e.reason or "",
                    e.timestamp.isoformat(),
                    _snapshot(e.old_value),
                    _snapshot(e.new_value),
                )
            )
        return buf.getvalue()

    async def _load(self, flag_id: str | None) -> list[AuditEntry]:
        entries = await self._store.list_audit(flag_id)
        # sorted() is stable: entries sharing a timestamp keep append order
        return sorted(entries, key=lambda e: e.timestamp)
