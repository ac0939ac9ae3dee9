"""初期データ投入"""

from __future__ import annotations

import structlog

from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import ALL_SEGMENT_ID, Condition, FeatureFlag, FlagType, Operator, UserSegment
from .store import FlagStore

logger = structlog.stdlib.get_logger(__name__)

INTERNAL_EMAIL_DOMAIN = "@company.com"

DEFAULT_FLAGS: tuple[FeatureFlag, ...] = (
    FeatureFlag(
        id="ai-search-enabled",
        name="AI Search Enabled",
        description="Enable AI-powered contact search functionality",
        type=FlagType.RELEASE,
        enabled=False,
        rollout_percentage=0,
        eligible_segments=frozenset({"internal-users"}),
        conditions=(Condition("email", Operator.CONTAINS, INTERNAL_EMAIL_DOMAIN),),
        metadata={"category": "ai-search", "owner": "product-team", "launch_date": None},
    ),
    FeatureFlag(
        id="ai-search-advanced-options",
        name="AI Search Advanced Options",
        description="Enable advanced AI search options and filters",
        type=FlagType.RELEASE,
        enabled=False,
        rollout_percentage=0,
        eligible_segments=frozenset({"beta-users"}),
        metadata={"category": "ai-search", "owner": "product-team", "launch_date": None},
    ),
    FeatureFlag(
        id="ai-search-provider-openai",
        name="Use OpenAI for AI Search",
        description="Use OpenAI as the AI service provider",
        type=FlagType.OPS,
        enabled=True,
        rollout_percentage=100,
        eligible_segments=frozenset({ALL_SEGMENT_ID}),
        metadata={"category": "ai-search", "owner": "engineering-team", "provider": "openai"},
    ),
    FeatureFlag(
        id="ai-search-caching",
        name="AI Search Caching",
        description="Enable caching for AI search results",
        type=FlagType.OPS,
        enabled=True,
        rollout_percentage=100,
        eligible_segments=frozenset({ALL_SEGMENT_ID}),
        metadata={"category": "ai-search", "owner": "engineering-team", "ttl": 3600},
    ),
)

DEFAULT_SEGMENTS: tuple[UserSegment, ...] = (
    UserSegment(
        id="internal-users",
        name="Internal Users",
        description="Company employees and contractors",
        criteria=(Condition("email", Operator.CONTAINS, INTERNAL_EMAIL_DOMAIN),),
    ),
    UserSegment(
        id="beta-users",
        name="Beta Users",
        description="Early adopters and beta testers",
        criteria=(Condition("beta_participant", Operator.EQUALS, True),),
    ),
    UserSegment(
        id="power-users",
        name="Power Users",
        description="Users with high usage patterns",
        criteria=(Condition("search_count_last_30d", Operator.GREATER_THAN, 50),),
    ),
    UserSegment(
        id=ALL_SEGMENT_ID,
        name="All Users",
        description="All registered users",
    ),
)


async def seed_defaults(store: FlagStore) -> tuple[int, int]:
    """空のストアに既定のフラグとセグメントを書き込む。

    フラグとセグメントはそれぞれ独立に判定し、既にデータがある側には
    何も書き込まない。書き込んだ (フラグ数, セグメント数) を返す。

    Raises:
        FlagEngineError: ストアの読み書きに失敗した場合 (STORE_ERROR)
    """
    try:
        flags_written = 0
        if not await store.list_flags():
            for flag in DEFAULT_FLAGS:
                await store.persist_flag(flag)
            flags_written = len(DEFAULT_FLAGS)
        segments_written = 0
        if not await store.list_segments():
            for segment in DEFAULT_SEGMENTS:
                await store.persist_segment(segment)
            segments_written = len(DEFAULT_SEGMENTS)
    except Exception as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.STORE_ERROR,
            "failed to seed default flags and segments",
            cause=e,
        ) from e
    logger.info("defaults seeded", flags=flags_written, segments=segments_written)
    return flags_written, segments_written
