from __future__ import annotations

from podrelay.models.cache import CacheEntry, CacheRead, CacheStatus, FetchabilityRecord
from podrelay.models.catalog import ChartEntry, Episode, ParsedFeed, Podcast, PodcastCandidate
from podrelay.models.recommend import (
    BatchResult,
    CachedGroups,
    Category,
    LoadPhase,
    RecommendedGroup,
)

__all__ = [
    # cache
    "CacheEntry",
    "CacheRead",
    "CacheStatus",
    "FetchabilityRecord",
    # catalog
    "Podcast",
    "PodcastCandidate",
    "ChartEntry",
    "Episode",
    "ParsedFeed",
    # recommend
    "Category",
    "RecommendedGroup",
    "BatchResult",
    "CachedGroups",
    "LoadPhase",
]
