"""RolloutController のユニットテスト"""

import asyncio

import pytest
from k1s0_flagengine import (
    PREDEFINED_STRATEGIES,
    AuditAction,
    FeatureFlag,
    DecisionReason,
    FeatureFlagService,
    FlagEngineError,
    FlagEngineErrorCodes,
    InMemoryFlagStore,
    RolloutController,
    RolloutMetrics,
    RolloutState,
    RolloutStrategy,
)

A = AuditAction


class SwitchableHealth:
    """ロールアウト率が pause_at に達したら不健全と判定するヘルスシグナル。"""

    def __init__(self, store: InMemoryFlagStore, pause_at: int | None = None) -> None:
        self._store = store
        self.pause_at = pause_at
        self.calls = 0

    async def is_healthy(self, flag_id: str) -> bool:
        self.calls += 1
        if self.pause_at is None:
            return True
        flag = await self._store.get_flag(flag_id)
        return flag.rollout_percentage < self.pause_at


class BlockingHealth:
    """判定が返らないヘルスシグナル。"""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def is_healthy(self, flag_id: str) -> bool:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return True


class RaisingHealth:
    async def is_healthy(self, flag_id: str) -> bool:
        raise RuntimeError("metrics backend unreachable")


class FailingPersistStore(InMemoryFlagStore):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_persist = False

    async def persist_flag(self, flag: FeatureFlag) -> None:
        if self.fail_persist:
            raise ConnectionError("store down")
        await super().persist_flag(flag)


class StaticMetrics:
    def __init__(self, metrics: RolloutMetrics) -> None:
        self.metrics = metrics

    async def collect(self, flag_id: str) -> RolloutMetrics:
        return self.metrics


class SpikingMetrics:
    """ロールアウト率が spike_at 以上になるとエラー率が跳ね上がるメトリクス。"""

    def __init__(self, store: InMemoryFlagStore, spike_at: int, error_rate: float) -> None:
        self._store = store
        self.spike_at = spike_at
        self.error_rate = error_rate

    async def collect(self, flag_id: str) -> RolloutMetrics:
        flag = await self._store.get_flag(flag_id)
        if flag.rollout_percentage >= self.spike_at:
            return RolloutMetrics(error_rate=self.error_rate)
        return RolloutMetrics()


async def make_controller(
    health=None, store: InMemoryFlagStore | None = None
) -> tuple[RolloutController, FeatureFlagService]:
    store = store or InMemoryFlagStore()
    await store.persist_flag(FeatureFlag(id="f1", enabled=True, rollout_percentage=0))
    service = await FeatureFlagService.create(store)
    return RolloutController(service, health=health), service


async def wait_until(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def actions(service: FeatureFlagService) -> list[AuditAction]:
    return [e.action for e in await service.get_audit_log("f1")]


async def test_rollout_progresses_to_completion() -> None:
    """チェックポイントを順に適用して完了すること。"""
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout(
        "f1", [10, 50, 100], step_interval_seconds=0, actor="release-bot"
    )
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.COMPLETED
    assert plan.finished_at is not None
    assert controller.get_plan("f1") is None
    assert (await service.get_flag("f1")).rollout_percentage == 100
    log = await service.get_audit_log("f1")
    assert [e.action for e in log] == [
        A.GRADUAL_ROLLOUT_STARTED,
        A.ROLLOUT_UPDATED,
        A.ROLLOUT_UPDATED,
        A.GRADUAL_ROLLOUT_COMPLETED,
    ]
    assert [e.new_value.rollout_percentage for e in log[:3]] == [10, 50, 100]
    assert {e.performed_by for e in log} == {"release-bot"}


async def test_unhealthy_signal_pauses_rollout() -> None:
    store = InMemoryFlagStore()
    controller, service = await make_controller(SwitchableHealth(store, pause_at=50), store=store)
    plan = await controller.start_gradual_rollout("f1", [10, 50, 100], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.PAUSED
    assert plan.pause_reason is not None
    assert plan.current_percentage == 50
    assert controller.get_plan("f1") is plan
    assert (await service.get_flag("f1")).rollout_percentage == 50
    assert (await actions(service))[-1] == A.GRADUAL_ROLLOUT_PAUSED


async def test_resume_advances_paused_rollout() -> None:
    """一時停止後の再開で次のチェックポイントから続行すること。"""
    store = InMemoryFlagStore()
    health = SwitchableHealth(store, pause_at=50)
    controller, service = await make_controller(health, store=store)
    plan = await controller.start_gradual_rollout("f1", [10, 50, 100], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert plan.state == RolloutState.PAUSED

    health.pause_at = None
    await controller.resume_rollout("f1", actor="oncall", reason="metrics look fine")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.COMPLETED
    assert (await service.get_flag("f1")).rollout_percentage == 100
    assert (await actions(service))[-4:] == [
        A.GRADUAL_ROLLOUT_PAUSED,
        A.GRADUAL_ROLLOUT_RESUMED,
        A.ROLLOUT_UPDATED,
        A.GRADUAL_ROLLOUT_COMPLETED,
    ]


async def test_health_signal_error_pauses_rollout() -> None:
    controller, service = await make_controller(RaisingHealth())
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert plan.state == RolloutState.PAUSED
    assert "metrics backend unreachable" in plan.last_error
    assert (await service.get_flag("f1")).rollout_percentage == 10


async def test_step_failure_pauses_and_resume_retries() -> None:
    store = FailingPersistStore()
    controller, service = await make_controller(store=store)
    store.fail_persist = True
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.PAUSED
    assert FlagEngineErrorCodes.STORE_ERROR in plan.last_error
    assert (await service.get_flag("f1")).rollout_percentage == 0
    assert await actions(service) == [A.GRADUAL_ROLLOUT_PAUSED]

    store.fail_persist = False
    await controller.resume_rollout("f1", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert plan.state == RolloutState.COMPLETED
    assert (await service.get_flag("f1")).rollout_percentage == 100


async def test_cancel_during_step_wait() -> None:
    """ステップ間の待機中にキャンセルすると即座に停止すること。"""
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [10, 50, 100], step_interval_seconds=3600)
    await wait_until(lambda: plan.step_committed)

    await controller.cancel_rollout("f1", reason="not needed", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.CANCELLED
    assert controller.get_plan("f1") is None
    assert (await service.get_flag("f1")).rollout_percentage == 10
    assert await actions(service) == [
        A.GRADUAL_ROLLOUT_STARTED,
        A.GRADUAL_ROLLOUT_CANCELLED,
    ]


async def test_cancel_during_health_check() -> None:
    health = BlockingHealth()
    controller, service = await make_controller(health)
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await asyncio.wait_for(health.started.wait(), timeout=5)

    await controller.cancel_rollout("f1", reason="abort", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    await asyncio.sleep(0)

    assert plan.state == RolloutState.CANCELLED
    assert health.cancelled is True
    assert (await service.get_flag("f1")).rollout_percentage == 10
    assert A.GRADUAL_ROLLOUT_PAUSED not in await actions(service)


async def test_cancel_before_first_step() -> None:
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await controller.cancel_rollout("f1", reason="changed my mind", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert (await service.get_flag("f1")).rollout_percentage == 0
    assert await actions(service) == [A.GRADUAL_ROLLOUT_CANCELLED]


async def test_second_rollout_rejected() -> None:
    controller, _ = await make_controller()
    await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=3600)
    try:
        with pytest.raises(FlagEngineError) as exc_info:
            await controller.start_gradual_rollout("f1", [50, 100], step_interval_seconds=0)
        assert exc_info.value.code == FlagEngineErrorCodes.ROLLOUT_ALREADY_ACTIVE
    finally:
        await controller.shutdown()


async def test_new_rollout_allowed_after_completion() -> None:
    controller, _ = await make_controller()
    first = await controller.start_gradual_rollout("f1", [10], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(first), timeout=5)
    second = await controller.start_gradual_rollout("f1", [50], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(second), timeout=5)
    assert second.state == RolloutState.COMPLETED


@pytest.mark.parametrize(
    "checkpoints",
    [[], [50, 10], [10, 10], [10, 101], [-1, 10], [10.5, 20]],
)
async def test_invalid_checkpoints_rejected(checkpoints) -> None:
    controller, _ = await make_controller()
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.start_gradual_rollout("f1", checkpoints, step_interval_seconds=0)
    assert exc_info.value.code == FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN


async def test_negative_interval_rejected() -> None:
    controller, _ = await make_controller()
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.start_gradual_rollout("f1", [10], step_interval_seconds=-1)
    assert exc_info.value.code == FlagEngineErrorCodes.INVALID_ROLLOUT_PLAN


async def test_rollout_for_missing_flag_rejected() -> None:
    controller, _ = await make_controller()
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.start_gradual_rollout("ghost", [10], step_interval_seconds=0)
    assert exc_info.value.code == FlagEngineErrorCodes.FLAG_NOT_FOUND
    assert controller.active_plans() == []


async def test_emergency_rollback_cancels_active_plan() -> None:
    """緊急ロールバックでフラグが無効化され、計画がキャンセルされること。"""
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [80, 100], step_interval_seconds=3600)
    await wait_until(lambda: plan.step_committed)
    assert (await service.get_flag("f1")).rollout_percentage == 80
    assert (await service.evaluate("f1")).reason != DecisionReason.DISABLED

    flag = await controller.emergency_rollback("f1", reason="error spike", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert flag.enabled is False
    assert flag.rollout_percentage == 0
    assert plan.state == RolloutState.CANCELLED
    assert controller.get_plan("f1") is None
    decision = await service.evaluate("f1")
    assert decision.enabled is False
    assert decision.reason == DecisionReason.DISABLED
    log = await service.get_audit_log("f1")
    assert log[-1].action == A.EMERGENCY_ROLLBACK
    assert log[-1].reason == "error spike"
    assert log[-1].old_value.rollout_percentage == 80


async def test_emergency_rollback_without_plan() -> None:
    controller, service = await make_controller()
    flag = await controller.emergency_rollback("f1", reason="manual", actor="oncall")
    assert flag.enabled is False
    assert await actions(service) == [A.EMERGENCY_ROLLBACK]


async def test_failed_emergency_rollback_keeps_plan_running() -> None:
    """無効化に失敗した場合は計画がキャンセルされないこと。"""
    store = FailingPersistStore()
    controller, service = await make_controller(store=store)
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=3600)
    await wait_until(lambda: plan.step_committed)
    store.fail_persist = True
    try:
        with pytest.raises(FlagEngineError) as exc_info:
            await controller.emergency_rollback("f1", reason="error spike", actor="oncall")
        assert exc_info.value.code == FlagEngineErrorCodes.STORE_ERROR
        assert plan.state == RolloutState.RUNNING
        assert controller.get_plan("f1") is plan
        assert (await service.get_flag("f1")).enabled is True
    finally:
        await controller.shutdown()


# ----------------------------------------------------------------------
# 手動一時停止
# ----------------------------------------------------------------------


async def test_pause_during_step_wait_then_resume() -> None:
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [10, 50, 100], step_interval_seconds=3600)
    await wait_until(lambda: plan.step_committed)

    await controller.pause_rollout("f1", reason="investigating latency", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.PAUSED
    assert plan.pause_reason == "investigating latency"
    assert controller.get_plan("f1") is plan
    assert (await service.get_flag("f1")).rollout_percentage == 10
    log = await service.get_audit_log("f1")
    assert log[-1].action == A.GRADUAL_ROLLOUT_PAUSED
    assert log[-1].performed_by == "oncall"
    assert log[-1].reason == "Manual pause: investigating latency"

    await controller.resume_rollout("f1", actor="oncall")
    try:
        await wait_until(lambda: plan.current_percentage == 50)
        assert plan.state == RolloutState.RUNNING
        assert (await service.get_flag("f1")).rollout_percentage == 50
    finally:
        await controller.shutdown()


async def test_pause_during_health_check() -> None:
    health = BlockingHealth()
    controller, _ = await make_controller(health=health)
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await asyncio.wait_for(health.started.wait(), timeout=5)

    await controller.pause_rollout("f1", reason="hold", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert health.cancelled is True
    assert plan.state == RolloutState.PAUSED
    assert plan.current_percentage == 10


async def test_pause_before_first_step_blocks_commit() -> None:
    """一時停止後はロック待ちのステップがコミットされないこと。"""
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=3600)
    await controller.pause_rollout("f1", reason="hold", actor="oncall")
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.step_committed is False
    assert (await service.get_flag("f1")).rollout_percentage == 0
    assert await actions(service) == [A.GRADUAL_ROLLOUT_PAUSED]

    await controller.resume_rollout("f1", actor="oncall")
    try:
        await wait_until(lambda: plan.step_committed)
        assert (await service.get_flag("f1")).rollout_percentage == 10
    finally:
        await controller.shutdown()


async def test_pause_requires_running_rollout() -> None:
    controller, _ = await make_controller(health=RaisingHealth())
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.pause_rollout("f1", reason="hold", actor="oncall")
    assert exc_info.value.code == FlagEngineErrorCodes.ROLLOUT_NOT_FOUND

    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=0)
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert plan.state == RolloutState.PAUSED
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.pause_rollout("f1", reason="hold", actor="oncall")
    assert exc_info.value.code == FlagEngineErrorCodes.ROLLOUT_NOT_RUNNING


# ----------------------------------------------------------------------
# 自動ロールバック
# ----------------------------------------------------------------------


def register_fast_strategy(controller: RolloutController, checkpoints: tuple[int, ...]) -> None:
    controller.register_strategy(
        RolloutStrategy(
            id="fast-test",
            name="Fast test",
            description="",
            checkpoints=checkpoints,
            interval_minutes=0,
            thresholds=PREDEFINED_STRATEGIES["conservative"].thresholds,
        )
    )


async def test_severe_error_rate_rolls_back_to_previous_checkpoint() -> None:
    store = InMemoryFlagStore()
    controller, service = await make_controller(store=store)
    register_fast_strategy(controller, (10, 50, 100))
    # conservative のエラー率しきい値は 2%、ロールバックは 4% 超
    metrics = SpikingMetrics(store, spike_at=50, error_rate=10.0)
    plan = await controller.start_strategy_rollout(
        "f1", "fast-test", actor="release-bot", metrics=metrics
    )
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.ROLLED_BACK
    assert plan.is_active is False
    assert plan.finished_at is not None
    assert controller.get_plan("f1") is None
    flag = await service.get_flag("f1")
    assert flag.rollout_percentage == 10
    assert flag.enabled is True
    log = await service.get_audit_log("f1")
    assert [e.action for e in log] == [
        A.GRADUAL_ROLLOUT_STARTED,
        A.ROLLOUT_UPDATED,
        A.EMERGENCY_ROLLBACK,
    ]
    assert log[-1].performed_by == "automated_rollout"
    assert log[-1].old_value.rollout_percentage == 50
    assert log[-1].new_value.rollout_percentage == 10

    again = await controller.start_gradual_rollout("f1", [50], step_interval_seconds=3600)
    await controller.shutdown()
    assert again.plan_id != plan.plan_id


async def test_rollback_on_first_step_returns_to_zero() -> None:
    store = InMemoryFlagStore()
    controller, service = await make_controller(store=store)
    register_fast_strategy(controller, (10, 100))
    metrics = SpikingMetrics(store, spike_at=10, error_rate=10.0)
    plan = await controller.start_strategy_rollout("f1", "fast-test", metrics=metrics)
    await asyncio.wait_for(controller.wait(plan), timeout=5)

    assert plan.state == RolloutState.ROLLED_BACK
    assert (await service.get_flag("f1")).rollout_percentage == 0
    assert await actions(service) == [A.GRADUAL_ROLLOUT_STARTED, A.EMERGENCY_ROLLBACK]


async def test_cancel_unknown_rollout() -> None:
    controller, _ = await make_controller()
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.cancel_rollout("f1", reason="x", actor="oncall")
    assert exc_info.value.code == FlagEngineErrorCodes.ROLLOUT_NOT_FOUND


async def test_resume_running_rollout_rejected() -> None:
    controller, _ = await make_controller()
    await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=3600)
    try:
        with pytest.raises(FlagEngineError) as exc_info:
            await controller.resume_rollout("f1", actor="oncall")
        assert exc_info.value.code == FlagEngineErrorCodes.ROLLOUT_NOT_PAUSED
    finally:
        await controller.shutdown()


async def test_strategy_rollout_uses_predefined_steps() -> None:
    controller, _ = await make_controller()
    plan = await controller.start_strategy_rollout("f1", "aggressive", actor="release-bot")
    try:
        assert plan.checkpoints == PREDEFINED_STRATEGIES["aggressive"].checkpoints
        assert plan.step_interval_seconds == 15 * 60
    finally:
        await controller.shutdown()


async def test_unknown_strategy_rejected() -> None:
    controller, _ = await make_controller()
    with pytest.raises(FlagEngineError) as exc_info:
        await controller.start_strategy_rollout("f1", "yolo")
    assert exc_info.value.code == FlagEngineErrorCodes.UNKNOWN_STRATEGY


async def test_strategy_thresholds_gate_rollout() -> None:
    """ストラテジーのしきい値を超えると一時停止すること。"""
    controller, service = await make_controller()
    controller.register_strategy(
        RolloutStrategy(
            id="fast-test",
            name="Fast test",
            description="",
            checkpoints=(10, 100),
            interval_minutes=0,
            thresholds=PREDEFINED_STRATEGIES["conservative"].thresholds,
        )
    )
    metrics = StaticMetrics(RolloutMetrics(error_rate=3.0))
    plan = await controller.start_strategy_rollout("f1", "fast-test", metrics=metrics)
    await asyncio.wait_for(controller.wait(plan), timeout=5)
    assert plan.state == RolloutState.PAUSED
    assert (await service.get_flag("f1")).rollout_percentage == 10


async def test_shutdown_stops_background_tasks() -> None:
    controller, service = await make_controller()
    plan = await controller.start_gradual_rollout("f1", [10, 100], step_interval_seconds=3600)
    await wait_until(lambda: plan.step_committed)
    await controller.shutdown()
    await controller.wait(plan)
    assert (await service.get_flag("f1")).rollout_percentage == 10
