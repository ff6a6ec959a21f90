from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from podrelay.models.catalog import PodcastCandidate


class Category(BaseModel):
    """A genre/topic grouping used to seed recommendation lookups."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    term: str


class RecommendedGroup(BaseModel):
    """One populated category. Replaced whole, never edited in place."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    term: str
    items: tuple[PodcastCandidate, ...]


class BatchResult(BaseModel):
    groups: list[RecommendedGroup]
    all_loaded: bool
    tried: set[str] = set()


class LoadPhase(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    PARTIAL = "partial"
    COMPLETE = "complete"


class CachedGroups(BaseModel):
    """Persisted recommendation state for one (country, language) locale."""

    groups: list[RecommendedGroup] = []
    tried: list[str] = []
