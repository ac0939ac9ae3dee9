"""RolloutController: asyncio Task ベースの段階的ロールアウト"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import cast

import structlog

from .audit import AuditAction
from .config import RolloutSection
from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .health import (
    AlwaysHealthy,
    HealthSignal,
    HealthThresholds,
    HealthVerdict,
    MetricsHealthSignal,
    MetricsSource,
    assess_signal,
)
from .metrics import rollout_transitions_total
from .models import FeatureFlag
from .service import FeatureFlagService

logger = structlog.stdlib.get_logger(__name__)


class RolloutState(str, Enum):
    """ロールアウト計画の状態。"""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_active(self) -> bool:
        return self in (RolloutState.RUNNING, RolloutState.PAUSED)


@dataclass
class RolloutPlan:
    """段階的ロールアウト計画。"""

    flag_id: str
    checkpoints: tuple[int, ...]
    step_interval_seconds: float
    started_by: str
    state: RolloutState = RolloutState.RUNNING
    current_step_index: int = 0
    step_committed: bool = False
    last_error: str | None = None
    pause_reason: str | None = None
    plan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    health: HealthSignal | None = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    @property
    def current_percentage(self) -> int | None:
        """この計画が最後にコミットしたロールアウト率。"""
        if self.step_committed:
            return self.checkpoints[self.current_step_index]
        if self.current_step_index > 0:
            return self.checkpoints[self.current_step_index - 1]
        return None


@dataclass(frozen=True)
class RolloutStrategy:
    """定義済みのロールアウト手順。"""

    id: str
    name: str
    description: str
    checkpoints: tuple[int, ...]
    interval_minutes: float
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)

    def health_signal(self, source: MetricsSource) -> MetricsHealthSignal:
        return MetricsHealthSignal(source, self.thresholds)


PREDEFINED_STRATEGIES: dict[str, RolloutStrategy] = {
    "conservative": RolloutStrategy(
        id="conservative",
        name="Conservative",
        description="Slow, careful rollout with small steps and frequent health checks",
        checkpoints=(1, 5, 10, 25, 50, 100),
        interval_minutes=60,
        thresholds=HealthThresholds(
            error_rate=2,
            response_time_ms=1000,
            satisfaction_score=80,
            cpu_usage=70,
            memory_usage=75,
        ),
    ),
    "standard": RolloutStrategy(
        id="standard",
        name="Standard",
        description="Balanced rollout with moderate steps and health checks",
        checkpoints=(5, 10, 25, 50, 100),
        interval_minutes=30,
        thresholds=HealthThresholds(
            error_rate=5,
            response_time_ms=2000,
            satisfaction_score=70,
            cpu_usage=80,
            memory_usage=85,
        ),
    ),
    "aggressive": RolloutStrategy(
        id="aggressive",
        name="Aggressive",
        description="Fast rollout with larger steps and minimal health checks",
        checkpoints=(10, 25, 50, 100),
        interval_minutes=15,
        thresholds=HealthThresholds(
            error_rate=10,
            response_time_ms=3000,
            satisfaction_score=60,
            cpu_usage=90,
            memory_usage=90,
        ),
    ),
}


def validate_checkpoints(checkpoints: list[int] | tuple[int, ...]) -> tuple[int, ...]:
    """チェックポイント列を検証して tuple で返す。

    Raises:
        FlagEngineError: 空、範囲外、または狭義単調増加でない場合 (INVALID_ROLLOUT_PLAN)
    """
    result = tuple(checkpoints)
    if not result:
        raise FlagEngineError(
            FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN, "checkpoints must not be empty"
        )
    for pct in result:
        if isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN,
                f"checkpoint must be an integer in 0..100, got {pct!r}",
            )
    if any(a >= b for a, b in zip(result, result[1:])):
        raise FlagEngineError(
            FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN,
            f"checkpoints must be strictly increasing: {list(result)}",
        )
    return result


class RolloutController:
    """フラグごとに 1 つのバックグラウンドタスクでロールアウトを進める。

    各ステップでロールアウト率をコミットし、step_interval 待機した後に
    ヘルスシグナルを確認する。キャンセルと手動停止は待機中とヘルスチェック中の
    どちらでも即座に反映される。ロールバック判定が出たら直前のチェックポイントへ戻す。
    """

    def __init__(
        self,
        service: FeatureFlagService,
        health: HealthSignal | None = None,
        config: RolloutSection | None = None,
    ) -> None:
        self._service = service
        self._health = health or AlwaysHealthy()
        self._config = config or service.config.rollout
        self._plans: dict[str, RolloutPlan] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._strategies: dict[str, RolloutStrategy] = dict(PREDEFINED_STRATEGIES)

    # ------------------------------------------------------------------
    # 操作 API
    # ------------------------------------------------------------------

    async def start_gradual_rollout(
        self,
        flag_id: str,
        checkpoints: list[int] | tuple[int, ...],
        step_interval_seconds: float | None = None,
        actor: str | None = None,
        health: HealthSignal | None = None,
    ) -> RolloutPlan:
        """段階的ロールアウトを開始する。

        Raises:
            FlagEngineError: 計画が不正な場合 (INVALID_ROLLOUT_PLAN)、
                進行中の計画がある場合 (ROLLOUT_ALREADY_ACTIVE)、
                フラグが存在しない場合 (FLAG_NOT_FOUND)
        """
        steps = validate_checkpoints(checkpoints)
        interval = (
            self._config.default_step_interval_seconds
            if step_interval_seconds is None
            else step_interval_seconds
        )
        if interval < 0:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN,
                f"step interval must not be negative: {interval}",
            )
        self._ensure_no_active_plan(flag_id)
        if await self._service.get_flag(flag_id) is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.FLAG_NOT_FOUND, f"flag not found: {flag_id}"
            )
        self._ensure_no_active_plan(flag_id)

        plan = RolloutPlan(
            flag_id=flag_id,
            checkpoints=steps,
            step_interval_seconds=interval,
            started_by=actor or self._config.actor,
            health=health,
        )
        self._plans[flag_id] = plan
        self._spawn(plan, resumed=False)
        rollout_transitions_total.add(1, {"flag_id": flag_id, "state": plan.state.value})
        logger.info(
            "gradual rollout started",
            flag_id=flag_id,
            plan_id=plan.plan_id,
            checkpoints=list(steps),
            step_interval_seconds=interval,
        )
        return plan

    async def start_strategy_rollout(
        self,
        flag_id: str,
        strategy_id: str | None = None,
        actor: str | None = None,
        metrics: MetricsSource | None = None,
    ) -> RolloutPlan:
        """定義済みストラテジーでロールアウトを開始する。

        metrics を渡すとストラテジーのしきい値でヘルスを判定する。
        """
        strategy = self.get_strategy(strategy_id or self._config.default_strategy)
        return await self.start_gradual_rollout(
            flag_id,
            strategy.checkpoints,
            step_interval_seconds=strategy.interval_minutes * 60,
            actor=actor,
            health=strategy.health_signal(metrics) if metrics is not None else None,
        )

    async def cancel_rollout(
        self, flag_id: str, reason: str, actor: str = "operator"
    ) -> RolloutPlan:
        """進行中または一時停止中の計画をキャンセルする。"""
        plan = self._require_plan(flag_id)
        self._finish(plan, RolloutState.CANCELLED)
        await self._service.record_event(
            flag_id, AuditAction.GRADUAL_ROLLOUT_CANCELLED, actor, reason
        )
        logger.info(
            "gradual rollout cancelled",
            flag_id=flag_id,
            plan_id=plan.plan_id,
            actor=actor,
            reason=reason,
        )
        return plan

    async def pause_rollout(
        self, flag_id: str, reason: str, actor: str = "operator"
    ) -> RolloutPlan:
        """進行中の計画を手動で一時停止する。

        バックグラウンドタスクは待機中でもヘルスチェック中でも止まり、
        ロック待ちのステップはコミットされない。resume_rollout で再開できる。

        Raises:
            FlagEngineError: 計画がない場合 (ROLLOUT_NOT_FOUND)、
                進行中でない場合 (ROLLOUT_NOT_RUNNING)
        """
        plan = self._require_plan(flag_id)
        if plan.state is not RolloutState.RUNNING:
            raise FlagEngineError(
                FlagEngineErrorCodes.ROLLOUT_NOT_RUNNING,
                f"rollout for flag {flag_id} is {plan.state.value}",
            )
        plan.state = RolloutState.PAUSED
        plan.pause_reason = reason
        cancel = self._cancel_events.pop(plan.plan_id, None)
        if cancel is not None:
            cancel.set()
        rollout_transitions_total.add(1, {"flag_id": flag_id, "state": plan.state.value})
        logger.info(
            "gradual rollout paused by operator",
            flag_id=flag_id,
            plan_id=plan.plan_id,
            actor=actor,
            reason=reason,
        )
        await self._service.record_event(
            flag_id, AuditAction.GRADUAL_ROLLOUT_PAUSED, actor, f"Manual pause: {reason}"
        )
        return plan

    async def resume_rollout(
        self, flag_id: str, actor: str = "operator", reason: str | None = None
    ) -> RolloutPlan:
        """一時停止中の計画を再開する。

        最後のステップがコミット済みなら次のチェックポイントへ進み、
        失敗していたステップはやり直す。
        """
        plan = self._require_plan(flag_id)
        if plan.state is not RolloutState.PAUSED:
            raise FlagEngineError(
                FlagEngineErrorCodes.ROLLOUT_NOT_PAUSED,
                f"rollout for flag {flag_id} is {plan.state.value}",
            )
        await self._service.record_event(
            flag_id,
            AuditAction.GRADUAL_ROLLOUT_RESUMED,
            actor,
            reason or f"Rollout resumed at {plan.current_percentage or 0}%",
        )
        if plan.state is not RolloutState.PAUSED:
            return plan
        plan.state = RolloutState.RUNNING
        plan.pause_reason = None
        plan.last_error = None
        self._spawn(plan, resumed=True)
        rollout_transitions_total.add(1, {"flag_id": flag_id, "state": plan.state.value})
        logger.info("gradual rollout resumed", flag_id=flag_id, plan_id=plan.plan_id, actor=actor)
        return plan

    async def emergency_rollback(
        self, flag_id: str, reason: str, actor: str
    ) -> FeatureFlag:
        """フラグを即座に無効化し、ロールアウト率を 0 に戻す。

        進行中の計画は無効化がコミットされた時点でキャンセルされる。
        無効化に失敗した場合、計画はそのまま残る。
        """
        flag = await self._service.apply_change(
            flag_id,
            lambda f: replace(f, enabled=False, rollout_percentage=0),
            actor=actor,
            action=AuditAction.EMERGENCY_ROLLBACK,
            reason=reason,
        )
        plan = self._plans.get(flag_id)
        cancelled_plan = None
        if plan is not None and plan.is_active:
            self._finish(plan, RolloutState.CANCELLED)
            cancelled_plan = plan.plan_id
        logger.warning(
            "emergency rollback",
            flag_id=flag_id,
            actor=actor,
            reason=reason,
            cancelled_plan=cancelled_plan,
        )
        # guard なしの apply_change は None を返さない
        return cast(FeatureFlag, flag)

    def get_plan(self, flag_id: str) -> RolloutPlan | None:
        return self._plans.get(flag_id)

    def active_plans(self) -> list[RolloutPlan]:
        return list(self._plans.values())

    def get_strategy(self, strategy_id: str) -> RolloutStrategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.UNKNOWN_STRATEGY,
                f"unknown rollout strategy: {strategy_id}",
            )
        return strategy

    def register_strategy(self, strategy: RolloutStrategy) -> None:
        validate_checkpoints(strategy.checkpoints)
        self._strategies[strategy.id] = strategy

    def strategies(self) -> list[RolloutStrategy]:
        return list(self._strategies.values())

    async def wait(self, plan: RolloutPlan) -> None:
        """計画のバックグラウンドタスクが終わるまで待つ。"""
        task = self._tasks.get(plan.plan_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """すべてのバックグラウンドタスクを停止する。計画の状態は変更しない。"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    # ------------------------------------------------------------------
    # 状態遷移
    # ------------------------------------------------------------------

    def _ensure_no_active_plan(self, flag_id: str) -> None:
        existing = self._plans.get(flag_id)
        if existing is not None and existing.is_active:
            raise FlagEngineError(
                FlagEngineErrorCodes.ROLLOUT_ALREADY_ACTIVE,
                f"flag {flag_id} already has a {existing.state.value} rollout",
            )

    def _require_plan(self, flag_id: str) -> RolloutPlan:
        plan = self._plans.get(flag_id)
        if plan is None or not plan.is_active:
            raise FlagEngineError(
                FlagEngineErrorCodes.ROLLOUT_NOT_FOUND,
                f"no active rollout for flag {flag_id}",
            )
        return plan

    def _spawn(self, plan: RolloutPlan, resumed: bool) -> None:
        # 実行ごとに新しいイベント。手動停止で止めたタスクは再開後も止まったまま
        cancel = asyncio.Event()
        self._cancel_events[plan.plan_id] = cancel
        task = asyncio.create_task(self._run(plan, cancel, resumed))
        self._tasks[plan.plan_id] = task
        task.add_done_callback(lambda t: self._forget(plan.plan_id, t))

    def _forget(self, plan_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(plan_id) is task:
            del self._tasks[plan_id]

    def _finish(self, plan: RolloutPlan, state: RolloutState) -> None:
        plan.state = state
        plan.finished_at = datetime.now(timezone.utc)
        if self._plans.get(plan.flag_id) is plan:
            del self._plans[plan.flag_id]
        cancel = self._cancel_events.pop(plan.plan_id, None)
        if cancel is not None:
            cancel.set()
        rollout_transitions_total.add(1, {"flag_id": plan.flag_id, "state": state.value})

    async def _run(self, plan: RolloutPlan, cancel: asyncio.Event, resumed: bool) -> None:
        try:
            if resumed and plan.step_committed and not await self._advance(plan):
                return
            while plan.state is RolloutState.RUNNING:
                if not plan.step_committed and not await self._step(plan, cancel):
                    return
                if await self._wait_cancelled(cancel, plan.step_interval_seconds):
                    return
                verdict = await self._check_health(plan, cancel)
                if verdict is None or plan.state is not RolloutState.RUNNING:
                    return
                if verdict is HealthVerdict.ROLLBACK:
                    await self._rollback(plan, cancel)
                    return
                if verdict is HealthVerdict.PAUSE:
                    await self._pause(
                        plan,
                        f"Rollout paused at {plan.current_percentage}% due to health concerns",
                        error=plan.last_error,
                    )
                    return
                if not await self._advance(plan):
                    return
        except Exception as e:
            logger.exception("gradual rollout aborted", flag_id=plan.flag_id, plan_id=plan.plan_id)
            if cancel.is_set():
                return
            await self._pause(plan, "Rollout aborted by an unexpected error", error=str(e))

    async def _step(self, plan: RolloutPlan, cancel: asyncio.Event) -> bool:
        index = plan.current_step_index
        pct = plan.checkpoints[index]
        previous = plan.checkpoints[index - 1] if index > 0 else None
        action = (
            AuditAction.GRADUAL_ROLLOUT_STARTED if index == 0 else AuditAction.ROLLOUT_UPDATED
        )
        reason = (
            f"Gradual rollout step: {previous}% → {pct}%"
            if previous is not None
            else f"Gradual rollout started at {pct}%"
        )
        try:
            committed = await self._service.apply_change(
                plan.flag_id,
                lambda f: replace(f, rollout_percentage=pct),
                actor=plan.started_by,
                action=action,
                reason=reason,
                guard=lambda: plan.state is RolloutState.RUNNING and not cancel.is_set(),
            )
        except FlagEngineError as e:
            logger.error(
                "gradual rollout step failed",
                flag_id=plan.flag_id,
                plan_id=plan.plan_id,
                percentage=pct,
                error=str(e),
            )
            await self._pause(plan, f"Rollout step to {pct}% failed", error=str(e))
            return False
        if committed is None:
            return False
        plan.step_committed = True
        logger.info(
            "gradual rollout step committed",
            flag_id=plan.flag_id,
            plan_id=plan.plan_id,
            percentage=pct,
            step=index + 1,
            steps=len(plan.checkpoints),
        )
        return True

    async def _advance(self, plan: RolloutPlan) -> bool:
        """次のチェックポイントへ進む。最後なら完了させて False を返す。"""
        if plan.current_step_index + 1 >= len(plan.checkpoints):
            await self._complete(plan)
            return False
        plan.current_step_index += 1
        plan.step_committed = False
        return True

    async def _complete(self, plan: RolloutPlan) -> None:
        try:
            await self._service.record_event(
                plan.flag_id,
                AuditAction.GRADUAL_ROLLOUT_COMPLETED,
                plan.started_by,
                f"Gradual rollout completed at {plan.current_percentage}%",
            )
        except FlagEngineError as e:
            await self._pause(plan, "Failed to record rollout completion", error=str(e))
            return
        if plan.state is RolloutState.RUNNING:
            self._finish(plan, RolloutState.COMPLETED)
            logger.info("gradual rollout completed", flag_id=plan.flag_id, plan_id=plan.plan_id)

    async def _rollback(self, plan: RolloutPlan, cancel: asyncio.Event) -> None:
        """直前のチェックポイント (最初のステップなら 0%) へ戻して計画を終える。"""
        index = plan.current_step_index
        target = plan.checkpoints[index - 1] if index > 0 else 0
        source = plan.current_percentage
        try:
            committed = await self._service.apply_change(
                plan.flag_id,
                lambda f: replace(f, rollout_percentage=target),
                actor=self._config.rollback_actor,
                action=AuditAction.EMERGENCY_ROLLBACK,
                reason=(
                    f"Automated rollback: {source}% → {target}%, "
                    "error rate beyond rollback limit"
                ),
                guard=lambda: plan.state is RolloutState.RUNNING and not cancel.is_set(),
            )
        except FlagEngineError as e:
            logger.error(
                "automated rollback failed",
                flag_id=plan.flag_id,
                plan_id=plan.plan_id,
                percentage=target,
                error=str(e),
            )
            await self._pause(plan, f"Automated rollback to {target}% failed", error=str(e))
            return
        if committed is None:
            return
        self._finish(plan, RolloutState.ROLLED_BACK)
        logger.warning(
            "gradual rollout rolled back",
            flag_id=plan.flag_id,
            plan_id=plan.plan_id,
            from_percentage=source,
            to_percentage=target,
        )

    async def _pause(self, plan: RolloutPlan, reason: str, error: str | None = None) -> None:
        if plan.state is not RolloutState.RUNNING:
            return
        plan.state = RolloutState.PAUSED
        plan.pause_reason = reason
        plan.last_error = error
        rollout_transitions_total.add(1, {"flag_id": plan.flag_id, "state": plan.state.value})
        logger.warning(
            "gradual rollout paused",
            flag_id=plan.flag_id,
            plan_id=plan.plan_id,
            reason=reason,
            error=error,
        )
        try:
            await self._service.record_event(
                plan.flag_id, AuditAction.GRADUAL_ROLLOUT_PAUSED, plan.started_by, reason
            )
        except FlagEngineError as e:
            logger.error(
                "failed to record rollout pause",
                flag_id=plan.flag_id,
                plan_id=plan.plan_id,
                error=str(e),
            )
            plan.last_error = plan.last_error or str(e)

    @staticmethod
    async def _wait_cancelled(cancel: asyncio.Event, timeout: float) -> bool:
        """timeout 秒待つ。その間にキャンセルされたら True。"""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return cancel.is_set()
        return True

    async def _check_health(
        self, plan: RolloutPlan, cancel: asyncio.Event
    ) -> HealthVerdict | None:
        """ヘルスシグナルの判定を得る。確認中にキャンセルされたら None。"""
        signal = plan.health or self._health
        health_task = asyncio.ensure_future(assess_signal(signal, plan.flag_id))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait(
                {health_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for t in (health_task, cancel_task):
                if not t.done():
                    t.cancel()
        if cancel.is_set():
            return None
        try:
            return health_task.result()
        except Exception as e:
            plan.last_error = f"health check error: {e}"
            logger.warning(
                "rollout health signal raised",
                flag_id=plan.flag_id,
                plan_id=plan.plan_id,
                error=str(e),
            )
            return HealthVerdict.PAUSE
