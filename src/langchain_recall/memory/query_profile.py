"""
Query complexity classification.

Short queries are usually unambiguous, so they get a strict semantic
threshold and few results. Long, multi-clause queries get a looser
threshold and more results.
"""

from dataclasses import dataclass
from enum import Enum

SIMPLE_MAX_WORDS = 5
MEDIUM_MAX_WORDS = 15


class QueryTier(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


@dataclass(frozen=True)
class TierSettings:
    """Retrieval parameters for one tier."""

    semantic_threshold: float
    keyword_threshold: float
    max_results: int

    def __post_init__(self):
        if not 0 < self.semantic_threshold <= 1:
            raise ValueError(
                f"semantic_threshold must be in (0, 1], got {self.semantic_threshold}"
            )
        if self.keyword_threshold < 0:
            raise ValueError(
                f"keyword_threshold must be >= 0, got {self.keyword_threshold}"
            )
        if self.max_results < 1:
            raise ValueError(f"max_results must be >= 1, got {self.max_results}")

    @classmethod
    def parse(cls, raw: str) -> "TierSettings":
        """Parse "semantic,keyword,max_results", e.g. "0.78,0.1,3"."""
        parts = [p.strip() for p in raw.split(",")]
        if len(parts) != 3:
            raise ValueError(f"Expected 'semantic,keyword,max_results', got {raw!r}")
        return cls(
            semantic_threshold=float(parts[0]),
            keyword_threshold=float(parts[1]),
            max_results=int(parts[2]),
        )


DEFAULT_TIER_SETTINGS: dict[QueryTier, TierSettings] = {
    QueryTier.SIMPLE: TierSettings(semantic_threshold=0.78, keyword_threshold=0.10, max_results=3),
    QueryTier.MEDIUM: TierSettings(semantic_threshold=0.70, keyword_threshold=0.05, max_results=5),
    QueryTier.COMPLEX: TierSettings(semantic_threshold=0.60, keyword_threshold=0.03, max_results=7),
}


@dataclass(frozen=True)
class QueryProfile:
    tier: QueryTier
    word_count: int
    semantic_threshold: float
    keyword_threshold: float
    max_results: int


def tier_for_word_count(word_count: int) -> QueryTier:
    if word_count <= SIMPLE_MAX_WORDS:
        return QueryTier.SIMPLE
    if word_count <= MEDIUM_MAX_WORDS:
        return QueryTier.MEDIUM
    return QueryTier.COMPLEX


def classify_query(
    query: str,
    tier_settings: dict[QueryTier, TierSettings] | None = None,
) -> QueryProfile:
    """Map a query to the retrieval profile of its tier."""
    settings = tier_settings or DEFAULT_TIER_SETTINGS
    word_count = len(query.split())
    tier = tier_for_word_count(word_count)
    tier_params = settings.get(tier, DEFAULT_TIER_SETTINGS[tier])
    return QueryProfile(
        tier=tier,
        word_count=word_count,
        semantic_threshold=tier_params.semantic_threshold,
        keyword_threshold=tier_params.keyword_threshold,
        max_results=tier_params.max_results,
    )
