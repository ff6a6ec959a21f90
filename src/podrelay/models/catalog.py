from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Podcast(BaseModel):
    """Normalized catalog search/lookup result."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    author: str = ""
    artwork_url: str = ""
    feed_url: str
    collection_view_url: str = ""
    primary_genre: str = ""


class PodcastCandidate(Podcast):
    """A catalog entry eligible for the recommendation surface."""

    genre_names: tuple[str, ...] = ()
    genre_ids: tuple[str, ...] = ()
    rank: int | None = None  # position in the chart, 0-based


class ChartEntry(BaseModel):
    """Single ranked entry of the top-podcasts chart."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    author: str = ""
    artwork_url: str = ""
    collection_view_url: str = ""
    genre_names: tuple[str, ...] = ()
    genre_ids: tuple[str, ...] = ()


class Episode(BaseModel):
    id: str
    title: str
    description: str = ""
    audio_url: str
    pub_date: str = ""  # YYYY-MM-DD when the source date parses


class ParsedFeed(BaseModel):
    title: str = ""
    description: str = ""
    artwork_url: str = ""
    episodes: list[Episode] = []
