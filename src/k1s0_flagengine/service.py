"""FeatureFlagService: フラグ評価と変更 API"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone

import structlog

from . import rules
from .audit import AuditAction, AuditEntry, AuditLog
from .bucketing import ANONYMOUS_IDENTIFIER, is_in_rollout
from .cache import DecisionCache
from .config import EngineConfig
from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .locks import KeyedLock
from .metrics import flag_evaluations_total, flag_mutations_total
from .models import (
    ALL_SEGMENT_ID,
    Decision,
    DecisionReason,
    EvaluationContext,
    FeatureFlag,
    FlagUpdate,
    Subject,
    UserSegment,
)
from .store import FlagStore, SubjectDirectory

logger = structlog.stdlib.get_logger(__name__)

_UNCACHED_REASONS = frozenset(
    {
        DecisionReason.SUBJECT_UNAVAILABLE,
        DecisionReason.STORE_UNAVAILABLE,
        DecisionReason.EVALUATION_ERROR,
    }
)


class FeatureFlagService:
    """フラグの評価と変更を扱うサービス。

    評価はインメモリのスナップショットに対して行い、例外を送出しない。
    変更はフラグ ID ごとに直列化し、ストアへの永続化と監査ログへの追記が
    両方成功した場合のみスナップショットを差し替える。

    ``FeatureFlagService.create()`` で初期化済みのインスタンスを生成する。
    """

    def __init__(
        self,
        store: FlagStore,
        subjects: SubjectDirectory | None = None,
        config: EngineConfig | None = None,
        cache: DecisionCache | None = None,
    ) -> None:
        self._store = store
        self._subjects = subjects
        self._config = config or EngineConfig()
        self._cache = cache or DecisionCache(
            ttl_seconds=self._config.cache.ttl_seconds,
            max_entries=self._config.cache.max_entries,
        )
        self._audit = AuditLog(store)
        self._locks = KeyedLock()
        self._flags: dict[str, FeatureFlag] = {}
        self._segments: dict[str, UserSegment] = {}
        self._generation = 0

    @classmethod
    async def create(
        cls,
        store: FlagStore,
        subjects: SubjectDirectory | None = None,
        config: EngineConfig | None = None,
        cache: DecisionCache | None = None,
    ) -> FeatureFlagService:
        """ストアからスナップショットを読み込んだサービスを返す。

        Raises:
            FlagEngineError: ストアの読み込みに失敗した場合 (STORE_ERROR)
        """
        service = cls(store, subjects=subjects, config=config, cache=cache)
        await service.reload()
        return service

    async def reload(self) -> None:
        """ストアからフラグとセグメントを読み直す。"""
        try:
            flags = await self._store.list_flags()
            segments = await self._store.list_segments()
        except Exception as e:
            raise FlagEngineError(
                FlagEngineErrorCodes.STORE_ERROR,
                "failed to load flags and segments",
                cause=e,
            ) from e
        self._flags = {f.id: f for f in flags}
        self._segments = {s.id: s for s in segments}
        self._invalidate()
        logger.info("flag snapshot loaded", flags=len(flags), segments=len(segments))

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def cache(self) -> DecisionCache:
        return self._cache

    @property
    def audit(self) -> AuditLog:
        return self._audit

    # ------------------------------------------------------------------
    # 評価
    # ------------------------------------------------------------------

    async def evaluate(
        self, flag_id: str, context: EvaluationContext | None = None
    ) -> Decision:
        """フラグを評価する。失敗時も例外は送出せず enabled=False を返す。"""
        context = context or EvaluationContext()
        identifier = DecisionCache.identifier_for(
            context.subject_id, context.ip, context.user_agent, context.attributes
        )
        cached = self._cache.get(flag_id, identifier)
        if cached is not None:
            self._count(cached, cached=True)
            return cached

        generation = self._generation
        try:
            decision = await self._decide(flag_id, context)
        except Exception as e:
            logger.warning(
                "flag evaluation failed",
                flag_id=flag_id,
                subject_id=context.subject_id,
                error=str(e),
            )
            decision = Decision(flag_id, False, DecisionReason.EVALUATION_ERROR)

        # 評価中に変更がコミットされた場合は古い結果をキャッシュしない
        if decision.reason not in _UNCACHED_REASONS and generation == self._generation:
            self._cache.put(flag_id, identifier, decision)
        self._count(decision, cached=False)
        return decision

    async def is_enabled(
        self, flag_id: str, context: EvaluationContext | None = None
    ) -> bool:
        decision = await self.evaluate(flag_id, context)
        return decision.enabled

    async def _decide(self, flag_id: str, context: EvaluationContext) -> Decision:
        try:
            flag = await self._lookup_flag(flag_id)
        except FlagEngineError as e:
            logger.warning("flag store unavailable", flag_id=flag_id, error=str(e))
            return Decision(flag_id, False, DecisionReason.STORE_UNAVAILABLE)
        if flag is None:
            return Decision(flag_id, False, DecisionReason.NOT_FOUND)
        if not flag.enabled:
            return Decision(flag_id, False, DecisionReason.DISABLED)

        subject: Subject | None = None
        if context.subject_id:
            try:
                subject = await self._resolve_subject(context.subject_id)
            except Exception as e:
                logger.warning(
                    "subject lookup failed",
                    flag_id=flag_id,
                    subject_id=context.subject_id,
                    error=str(e),
                )
                return Decision(flag_id, False, DecisionReason.SUBJECT_UNAVAILABLE)

        if context.subject_id and flag.eligible_segments:
            try:
                segments = await self._lookup_segments(flag.eligible_segments)
            except FlagEngineError as e:
                logger.warning("segment store unavailable", flag_id=flag_id, error=str(e))
                return Decision(flag_id, False, DecisionReason.STORE_UNAVAILABLE)
            if not rules.is_eligible(flag.eligible_segments, segments, subject, context):
                return Decision(flag_id, False, DecisionReason.NOT_IN_SEGMENT)
            identifier = context.subject_id
        else:
            identifier = context.ip or ANONYMOUS_IDENTIFIER

        if not is_in_rollout(identifier, flag.rollout_percentage):
            return Decision(flag_id, False, DecisionReason.EXCLUDED_BY_ROLLOUT)
        if not rules.evaluate_all(flag.conditions, context, subject):
            return Decision(flag_id, False, DecisionReason.CONDITIONS_NOT_MET)
        return Decision(flag_id, True, DecisionReason.ALL_CONDITIONS_MET)

    async def _resolve_subject(self, subject_id: str) -> Subject:
        subject = None
        if self._subjects is not None:
            subject = await self._subjects.get_subject(subject_id)
        # 属性を持たない識別済みサブジェクトとして扱う
        return subject or Subject(id=subject_id)

    async def _lookup_flag(self, flag_id: str) -> FeatureFlag | None:
        flag = self._flags.get(flag_id)
        if flag is not None:
            return flag
        generation = self._generation
        try:
            flag = await self._store.get_flag(flag_id)
        except Exception as e:
            raise FlagEngineError(
                FlagEngineErrorCodes.STORE_ERROR,
                f"failed to read flag {flag_id}",
                cause=e,
            ) from e
        if flag is not None and generation == self._generation:
            self._flags = {**self._flags, flag.id: flag}
        return flag

    async def _lookup_segments(self, segment_ids: Iterable[str]) -> dict[str, UserSegment]:
        found: dict[str, UserSegment] = {}
        missing: list[str] = []
        for segment_id in segment_ids:
            if segment_id == ALL_SEGMENT_ID:
                continue
            segment = self._segments.get(segment_id)
            if segment is None:
                missing.append(segment_id)
            else:
                found[segment_id] = segment
        if not missing:
            return found
        generation = self._generation
        fetched: dict[str, UserSegment] = {}
        for segment_id in missing:
            try:
                segment = await self._store.get_segment(segment_id)
            except Exception as e:
                raise FlagEngineError(
                    FlagEngineErrorCodes.STORE_ERROR,
                    f"failed to read segment {segment_id}",
                    cause=e,
                ) from e
            if segment is not None:
                fetched[segment_id] = segment
        if fetched and generation == self._generation:
            self._segments = {**self._segments, **fetched}
        return {**found, **fetched}

    def _count(self, decision: Decision, cached: bool) -> None:
        flag_evaluations_total.add(
            1,
            {
                "flag_id": decision.flag_id,
                "reason": decision.reason.value,
                "cached": cached,
            },
        )

    # ------------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------------

    async def get_flag(self, flag_id: str) -> FeatureFlag | None:
        return await self._lookup_flag(flag_id)

    def list_flags(self) -> list[FeatureFlag]:
        return sorted(self._flags.values(), key=lambda f: f.id)

    async def get_segment(self, segment_id: str) -> UserSegment | None:
        segments = await self._lookup_segments([segment_id])
        return segments.get(segment_id)

    def list_segments(self) -> list[UserSegment]:
        return sorted(self._segments.values(), key=lambda s: s.id)

    async def get_audit_log(self, flag_id: str, limit: int = 50) -> list[AuditEntry]:
        return await self._audit.list_for_flag(flag_id, limit=limit)

    # ------------------------------------------------------------------
    # 変更
    # ------------------------------------------------------------------

    async def create_flag(
        self, flag: FeatureFlag, actor: str, reason: str | None = None
    ) -> FeatureFlag:
        """フラグを作成する。

        Raises:
            FlagEngineError: 同じ ID のフラグが存在する場合 (FLAG_ALREADY_EXISTS)、
                永続化・監査ログ追記に失敗した場合 (STORE_ERROR / AUDIT_ERROR)
        """
        async with self._locks.hold(flag.id):
            if await self._lookup_flag(flag.id) is not None:
                raise FlagEngineError(
                    FlagEngineErrorCodes.FLAG_ALREADY_EXISTS,
                    f"flag already exists: {flag.id}",
                )
            now = datetime.now(timezone.utc)
            created = replace(
                flag, created_by=actor, updated_by=actor, created_at=now, updated_at=now
            )
            await self._commit(
                flag.id,
                None,
                created,
                actor,
                reason or "Initial flag creation",
                AuditAction.CREATED,
            )
            return created

    async def update_flag(
        self,
        flag_id: str,
        update: FlagUpdate,
        actor: str,
        reason: str | None = None,
    ) -> FeatureFlag:
        """フラグを更新する。変更がなければ現在のフラグをそのまま返す。"""
        changes = update.changes()
        if "enabled" in changes:
            action = AuditAction.ENABLED if changes["enabled"] else AuditAction.DISABLED
        elif "rollout_percentage" in changes:
            action = AuditAction.ROLLOUT_UPDATED
        else:
            action = AuditAction.UPDATED

        async with self._locks.hold(flag_id):
            current = await self._require_flag(flag_id)
            if not changes:
                return current
            updated = update.apply(current, updated_by=actor)
            await self._commit(flag_id, current, updated, actor, reason, action)
            return updated

    async def delete_flag(
        self, flag_id: str, actor: str, reason: str | None = None
    ) -> None:
        async with self._locks.hold(flag_id):
            current = await self._require_flag(flag_id)
            await self._commit(flag_id, current, None, actor, reason, AuditAction.DELETED)

    async def apply_change(
        self,
        flag_id: str,
        change: Callable[[FeatureFlag], FeatureFlag],
        *,
        actor: str,
        action: AuditAction,
        reason: str | None = None,
        guard: Callable[[], bool] | None = None,
    ) -> FeatureFlag | None:
        """任意の変更を 1 件の監査エントリ付きでコミットする。

        guard はフラグのロック取得後に評価され、False ならコミットせず None を返す。
        """
        async with self._locks.hold(flag_id):
            if guard is not None and not guard():
                return None
            current = await self._require_flag(flag_id)
            updated = replace(
                change(current),
                updated_by=actor,
                updated_at=datetime.now(timezone.utc),
            )
            await self._commit(flag_id, current, updated, actor, reason, action)
            return updated

    async def record_event(
        self,
        flag_id: str,
        action: AuditAction,
        actor: str,
        reason: str | None = None,
    ) -> None:
        """フラグを変更しない監査エントリを、変更と同じ順序保証で追記する。"""
        async with self._locks.hold(flag_id):
            current = self._flags.get(flag_id)
            await self._audit.append(
                AuditEntry(
                    flag_id=flag_id,
                    action=action,
                    performed_by=actor,
                    old_value=current,
                    new_value=current,
                    reason=reason,
                )
            )

    async def put_segment(self, segment: UserSegment, actor: str) -> UserSegment:
        async with self._locks.hold(f"segment:{segment.id}"):
            try:
                await self._store.persist_segment(segment)
            except Exception as e:
                raise FlagEngineError(
                    FlagEngineErrorCodes.STORE_ERROR,
                    f"failed to persist segment {segment.id}",
                    cause=e,
                ) from e
            self._segments = {**self._segments, segment.id: segment}
            self._invalidate()
        logger.info("segment saved", segment_id=segment.id, actor=actor)
        return segment

    async def delete_segment(self, segment_id: str, actor: str) -> None:
        async with self._locks.hold(f"segment:{segment_id}"):
            if await self.get_segment(segment_id) is None:
                raise FlagEngineError(
                    FlagEngineErrorCodes.SEGMENT_NOT_FOUND,
                    f"segment not found: {segment_id}",
                )
            try:
                await self._store.delete_segment(segment_id)
            except Exception as e:
                raise FlagEngineError(
                    FlagEngineErrorCodes.STORE_ERROR,
                    f"failed to delete segment {segment_id}",
                    cause=e,
                ) from e
            segments = dict(self._segments)
            segments.pop(segment_id, None)
            self._segments = segments
            self._invalidate()
        logger.info("segment deleted", segment_id=segment_id, actor=actor)

    async def _require_flag(self, flag_id: str) -> FeatureFlag:
        flag = await self._lookup_flag(flag_id)
        if flag is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.FLAG_NOT_FOUND,
                f"flag not found: {flag_id}",
            )
        return flag

    async def _commit(
        self,
        flag_id: str,
        old: FeatureFlag | None,
        new: FeatureFlag | None,
        actor: str,
        reason: str | None,
        action: AuditAction,
    ) -> None:
        """永続化 → 監査ログ追記 → スナップショット差し替えの順でコミットする。

        呼び出し側がフラグのロックを保持していること。
        """
        try:
            if new is None:
                await self._store.delete_flag(flag_id)
            else:
                await self._store.persist_flag(new)
        except Exception as e:
            logger.error("flag persist failed", flag_id=flag_id, action=action.value, error=str(e))
            raise FlagEngineError(
                FlagEngineErrorCodes.STORE_ERROR,
                f"failed to persist flag {flag_id}",
                cause=e,
            ) from e

        entry = AuditEntry(
            flag_id=flag_id,
            action=action,
            performed_by=actor,
            old_value=old,
            new_value=new,
            reason=reason,
        )
        try:
            await self._audit.append(entry)
        except FlagEngineError:
            await self._restore(flag_id, old)
            raise

        flags = dict(self._flags)
        if new is None:
            flags.pop(flag_id, None)
        else:
            flags[flag_id] = new
        self._flags = flags
        self._invalidate()
        flag_mutations_total.add(1, {"flag_id": flag_id, "action": action.value})
        logger.info(
            "flag mutated",
            flag_id=flag_id,
            action=action.value,
            actor=actor,
            reason=reason,
        )

    async def _restore(self, flag_id: str, old: FeatureFlag | None) -> None:
        """監査ログ追記に失敗した変更をストア上で元に戻す。"""
        try:
            if old is None:
                await self._store.delete_flag(flag_id)
            else:
                await self._store.persist_flag(old)
        except Exception as e:
            logger.error(
                "failed to restore flag after audit failure",
                flag_id=flag_id,
                error=str(e),
            )

    def _invalidate(self) -> None:
        self._generation += 1
        self._cache.invalidate_all()
