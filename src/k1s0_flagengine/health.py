"""Health signals gating gradual rollout progression."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.stdlib.get_logger(__name__)


class HealthSignal(Protocol):
    """Tells the rollout controller whether it is safe to advance a flag."""

    async def is_healthy(self, flag_id: str) -> bool: ...


class HealthVerdict(str, Enum):
    """What the rollout controller should do after a health check."""

    CONTINUE = "continue"
    PAUSE = "pause"
    ROLLBACK = "rollback"


@runtime_checkable
class VerdictSignal(Protocol):
    """Health signal that can also ask for a rollback."""

    async def assess(self, flag_id: str) -> HealthVerdict: ...


async def assess_signal(signal: HealthSignal, flag_id: str) -> HealthVerdict:
    """Verdict from any health signal. Plain signals never roll back."""
    if isinstance(signal, VerdictSignal):
        return await signal.assess(flag_id)
    if await signal.is_healthy(flag_id):
        return HealthVerdict.CONTINUE
    return HealthVerdict.PAUSE


class AlwaysHealthy:
    """Health signal that never blocks a rollout."""

    async def is_healthy(self, flag_id: str) -> bool:
        return True


class FlagHealthCheck(ABC):
    """Abstract per-flag health check. Raising means unhealthy."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def check(self, flag_id: str) -> None: ...


class CheckerHealthSignal:
    """Runs every registered check; the flag is healthy only if none raise."""

    def __init__(self, checks: list[FlagHealthCheck] | None = None) -> None:
        self._checks: list[FlagHealthCheck] = list(checks or ())

    def add(self, check: FlagHealthCheck) -> None:
        """Register a health check."""
        self._checks.append(check)

    async def is_healthy(self, flag_id: str) -> bool:
        healthy = True
        for c in self._checks:
            try:
                await c.check(flag_id)
            except Exception as e:
                logger.warning(
                    "rollout health check failed",
                    flag_id=flag_id,
                    check=c.name,
                    error=str(e),
                )
                healthy = False
        return healthy


@dataclass(frozen=True)
class HealthThresholds:
    """Limits a rollout must stay within to keep advancing."""

    error_rate: float = 5.0
    response_time_ms: float = 2000.0
    satisfaction_score: float = 70.0
    cpu_usage: float = 80.0
    memory_usage: float = 85.0
    # error_rate above error_rate * rollback_factor rolls the step back
    rollback_factor: float = 2.0


@dataclass(frozen=True)
class RolloutMetrics:
    """Observed metrics for a flag over the latest evaluation window."""

    error_rate: float = 0.0
    response_time_ms: float = 0.0
    satisfaction_score: float = 100.0
    cpu_usage: float = 0.0
    memory_usage: float = 0.0

    def violations(self, thresholds: HealthThresholds) -> list[str]:
        found: list[str] = []
        if self.error_rate > thresholds.error_rate:
            found.append(f"error_rate {self.error_rate} > {thresholds.error_rate}")
        if self.response_time_ms > thresholds.response_time_ms:
            found.append(
                f"response_time_ms {self.response_time_ms} > {thresholds.response_time_ms}"
            )
        if self.satisfaction_score < thresholds.satisfaction_score:
            found.append(
                f"satisfaction_score {self.satisfaction_score} < {thresholds.satisfaction_score}"
            )
        if self.cpu_usage > thresholds.cpu_usage:
            found.append(f"cpu_usage {self.cpu_usage} > {thresholds.cpu_usage}")
        if self.memory_usage > thresholds.memory_usage:
            found.append(f"memory_usage {self.memory_usage} > {thresholds.memory_usage}")
        return found


class MetricsSource(Protocol):
    """Supplies rollout metrics, typically from the observability stack."""

    async def collect(self, flag_id: str) -> RolloutMetrics: ...


class MetricsHealthSignal:
    """Healthy while collected metrics stay within the thresholds.

    Any violation pauses the rollout. An error rate beyond
    ``thresholds.error_rate * thresholds.rollback_factor`` asks for a rollback.
    """

    def __init__(
        self,
        source: MetricsSource,
        thresholds: HealthThresholds | None = None,
    ) -> None:
        self._source = source
        self._thresholds = thresholds or HealthThresholds()

    async def assess(self, flag_id: str) -> HealthVerdict:
        metrics = await self._source.collect(flag_id)
        violations = metrics.violations(self._thresholds)
        if not violations:
            return HealthVerdict.CONTINUE
        limit = self._thresholds.error_rate * self._thresholds.rollback_factor
        verdict = HealthVerdict.ROLLBACK if metrics.error_rate > limit else HealthVerdict.PAUSE
        logger.warning(
            "rollout thresholds exceeded",
            flag_id=flag_id,
            violations=violations,
            verdict=verdict.value,
        )
        return verdict

    async def is_healthy(self, flag_id: str) -> bool:
        return await self.assess(flag_id) is HealthVerdict.CONTINUE
