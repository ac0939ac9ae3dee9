"""k1s0 flagengine library."""

from .audit import AuditAction, AuditEntry, AuditLog, AuditLogFilter, AuditLogSummary
from .bootstrap import DEFAULT_FLAGS, DEFAULT_SEGMENTS, seed_defaults
from .bucketing import ANONYMOUS_IDENTIFIER, bucket_for, djb2_hash, is_in_rollout
from .cache import CacheStats, DecisionCache
from .config import CacheSection, EngineConfig, LogSection, RolloutSection, load_config
from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .health import (
    AlwaysHealthy,
    CheckerHealthSignal,
    FlagHealthCheck,
    HealthSignal,
    HealthThresholds,
    HealthVerdict,
    MetricsHealthSignal,
    MetricsSource,
    RolloutMetrics,
    VerdictSignal,
)
from .logger import configure_logging
from .memory import InMemoryFlagStore, InMemorySubjectDirectory
from .models import (
    ALL_SEGMENT_ID,
    Condition,
    Decision,
    DecisionReason,
    EvaluationContext,
    FeatureFlag,
    FlagType,
    FlagUpdate,
    Operator,
    Subject,
    UserSegment,
)
from .rollout import (
    PREDEFINED_STRATEGIES,
    RolloutController,
    RolloutPlan,
    RolloutState,
    RolloutStrategy,
)
from .service import FeatureFlagService
from .store import FlagStore, SubjectDirectory

__all__ = [
    "ALL_SEGMENT_ID",
    "ANONYMOUS_IDENTIFIER",
    "AlwaysHealthy",
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "AuditLogFilter",
    "AuditLogSummary",
    "CacheSection",
    "CacheStats",
    "CheckerHealthSignal",
    "Condition",
    "DEFAULT_FLAGS",
    "DEFAULT_SEGMENTS",
    "Decision",
    "DecisionCache",
    "DecisionReason",
    "EngineConfig",
    "EvaluationContext",
    "FeatureFlag",
    "FeatureFlagService",
    "FlagEngineError",
    "FlagEngineErrorCodes",
    "FlagHealthCheck",
    "FlagStore",
    "FlagType",
    "FlagUpdate",
    "HealthSignal",
    "HealthThresholds",
    "HealthVerdict",
    "InMemoryFlagStore",
    "InMemorySubjectDirectory",
    "LogSection",
    "MetricsHealthSignal",
    "MetricsSource",
    "Operator",
    "PREDEFINED_STRATEGIES",
    "RolloutController",
    "RolloutMetrics",
    "RolloutPlan",
    "RolloutSection",
    "RolloutState",
    "RolloutStrategy",
    "Subject",
    "SubjectDirectory",
    "UserSegment",
    "VerdictSignal",
    "bucket_for",
    "configure_logging",
    "djb2_hash",
    "is_in_rollout",
    "load_config",
    "seed_defaults",
]
