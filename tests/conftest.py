"""Shared fixtures: fake clock, cache, HTTP client, fetcher and sample documents."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import httpx
import pytest

from podrelay.cache import MemoryKeyValueStore, TtlCache
from podrelay.catalog import CatalogClient
from podrelay.config import Settings
from podrelay.fetcher import Fetcher
from podrelay.prober import FeedProber

if TYPE_CHECKING:
    from pathlib import Path


SAMPLE_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example Show</title>
    <description><![CDATA[<p>Hello <strong>world</strong>.</p>]]></description>
    <itunes:image href="https://cdn.example.com/art.jpg"/>
    <item>
      <title>Episode 1</title>
      <guid>ep-1</guid>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
      <itunes:summary>First episode</itunes:summary>
      <description>Ignored because the summary wins</description>
      <enclosure url="https://cdn.example.com/ep1.mp3" type="audio/mpeg" length="1"/>
    </item>
    <item>
      <title>Trailer without audio</title>
      <guid>ep-x</guid>
    </item>
    <item>
      <content:encoded><![CDATA[<ul><li>One</li><li>Two</li></ul>]]></content:encoded>
      <enclosure url="https://cdn.example.com/ep2.mp3" type="audio/mpeg"/>
    </item>
  </channel>
</rss>
"""


class FakeClock:
    """Controllable clock injected into ``TtlCache``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class CountingStore(MemoryKeyValueStore):
    """Memory store that counts writes."""

    def __init__(self) -> None:
        super().__init__()
        self.sets = 0

    async def set(self, key: str, value: str) -> None:
        self.sets += 1
        await super().set(key, value)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture()
def ttl_cache(store: CountingStore, clock: FakeClock) -> TtlCache:
    return TtlCache(store, clock=clock)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache={"db_path": str(tmp_path / "cache.db")},
    )


@pytest.fixture()
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture()
def fetcher(http_client: httpx.AsyncClient, settings: Settings) -> Fetcher:
    return Fetcher(http_client, settings.fetcher, settings.proxy)


@pytest.fixture()
def catalog(fetcher: Fetcher, ttl_cache: TtlCache, settings: Settings) -> CatalogClient:
    return CatalogClient(fetcher, ttl_cache, settings)


@pytest.fixture()
def prober(fetcher: Fetcher, ttl_cache: TtlCache, settings: Settings) -> FeedProber:
    return FeedProber(ttl_cache, fetcher, settings)


@pytest.fixture()
def sample_rss() -> str:
    return SAMPLE_RSS
