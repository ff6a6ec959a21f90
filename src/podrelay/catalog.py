"""Catalog lookup client: search, ID lookup, top chart and feed documents.

All remote reads go through the resilient ``Fetcher`` and are cached in the
shared ``TtlCache``:

- search results: 6h; empty results and failures are negatively cached for
  10 minutes (a recent failure is re-raised without touching the network)
- top chart and chart-with-lookup: 24h fresh, served stale up to 72h when a
  refresh fails; stale chart/lookup entries are purged after every write
- parsed feed documents: 30 minutes fresh, served stale when a refresh fails

Concurrent identical requests share one in-flight operation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import timedelta
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from podrelay.cache import CacheFamily, CachePolicy, TtlCache
from podrelay.cancellation import raise_if_cancelled
from podrelay.config import Settings
from podrelay.errors import (
    CancellationError,
    FeedUnavailableError,
    FetchTimeoutError,
    NetworkError,
    ParseError,
)
from podrelay.feeds import parse_feed
from podrelay.fetcher import Fetcher, validate_target_url
from podrelay.models import (
    CacheRead,
    CacheStatus,
    Category,
    ChartEntry,
    ParsedFeed,
    Podcast,
    PodcastCandidate,
)
from podrelay.singleflight import SingleFlight

log = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

# Remote failures that are cached negatively or answered with stale data.
_RECOVERABLE = (NetworkError, FetchTimeoutError, ParseError)


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def normalize_catalog_item(raw: Any) -> Podcast | None:
    """Map one search/lookup result to a ``Podcast``; None if id, title or feed is missing."""
    if not isinstance(raw, dict):
        return None
    podcast_id = raw.get("collectionId") or raw.get("trackId")
    title = str(raw.get("collectionName") or raw.get("trackName") or "").strip()
    feed_url = str(raw.get("feedUrl") or "").strip()
    if not podcast_id or not title or not feed_url:
        return None
    return Podcast(
        id=str(podcast_id),
        title=title,
        author=str(raw.get("artistName") or "").strip(),
        artwork_url=str(raw.get("artworkUrl600") or raw.get("artworkUrl100") or ""),
        feed_url=feed_url,
        collection_view_url=str(raw.get("collectionViewUrl") or ""),
        primary_genre=str(raw.get("primaryGenreName") or ""),
    )


def normalize_catalog_results(data: Any) -> list[Podcast]:
    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        raise ParseError("Catalog response has no results list")
    podcasts: list[Podcast] = []
    seen: set[str] = set()
    for raw in results:
        podcast = normalize_catalog_item(raw)
        if podcast is None or podcast.id in seen:
            continue
        seen.add(podcast.id)
        podcasts.append(podcast)
    return podcasts


def normalize_chart_entry(raw: Any) -> ChartEntry | None:
    if not isinstance(raw, dict):
        return None
    entry_id = str(raw.get("id") or "").strip()
    title = str(raw.get("name") or "").strip()
    if not entry_id or not title:
        return None
    genres = [g for g in raw.get("genres") or [] if isinstance(g, dict)]
    return ChartEntry(
        id=entry_id,
        title=title,
        author=str(raw.get("artistName") or "").strip(),
        artwork_url=str(raw.get("artworkUrl100") or ""),
        collection_view_url=str(raw.get("url") or ""),
        genre_names=tuple(str(g["name"]) for g in genres if g.get("name")),
        genre_ids=tuple(str(g["genreId"]) for g in genres if g.get("genreId")),
    )


def matches_genre_tokens(genre_names: Iterable[str], term: str) -> bool:
    """True when one genre name contains every whitespace token of *term*.

    An empty term matches everything.
    """
    tokens = (term or "").lower().split()
    if not tokens:
        return True
    for name in genre_names:
        haystack = (name or "").lower()
        if haystack and all(token in haystack for token in tokens):
            return True
    return False


def _validate_list(value: Any, model: type[M]) -> list[M] | None:
    if not isinstance(value, list):
        return None
    try:
        return [model.model_validate(item) for item in value]
    except ValidationError:
        return None


def _dump(models: Iterable[BaseModel]) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in models]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CatalogClient:
    def __init__(self, fetcher: Fetcher, cache: TtlCache, settings: Settings) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._settings = settings
        self._flight = SingleFlight()

        c = settings.cache
        chart_policy = CachePolicy(
            ttl=timedelta(hours=c.chart_ttl_hours),
            purge_after=timedelta(hours=c.chart_purge_hours),
        )
        self.chart_family = CacheFamily("chart", chart_policy)
        self.lookup_family = CacheFamily("lookup", chart_policy)
        self.search_family = CacheFamily(
            "search",
            CachePolicy(
                ttl=timedelta(hours=c.search_ttl_hours),
                purge_after=timedelta(hours=c.search_ttl_hours),
            ),
        )
        self.negative_policy = CachePolicy(
            ttl=timedelta(minutes=c.negative_ttl_minutes),
            purge_after=timedelta(minutes=c.negative_ttl_minutes),
        )
        self.feed_family = CacheFamily(
            "feed",
            CachePolicy(
                ttl=timedelta(minutes=c.feed_ttl_minutes),
                purge_after=timedelta(hours=c.feed_purge_hours),
            ),
        )

    @property
    def families(self) -> list[CacheFamily]:
        return [self.chart_family, self.lookup_family, self.search_family, self.feed_family]

    def country(self, country: str | None) -> str:
        return (country or "").strip().lower() or self._settings.catalog.default_country

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        term: str,
        country: str | None = None,
        *,
        limit: int | None = None,
        signal: asyncio.Event | None = None,
    ) -> list[Podcast]:
        """Keyword search. A blank term returns ``[]`` without any I/O."""
        query = " ".join((term or "").split())
        if not query:
            return []
        country = self.country(country)
        limit = limit or self._settings.catalog.search_limit
        key = self.search_family.key(country, limit, query)

        cached = await self._cache.read(key, self.search_family.policy)
        hit = self._search_hit(cached, key)
        if hit is not None:
            return hit

        return await self._flight.do(
            key, lambda: self._search_remote(key, query, country, limit, signal)
        )

    def _search_hit(self, cached: CacheRead, key: str) -> list[Podcast] | None:
        if (
            cached.status is not CacheStatus.FRESH
            or cached.written_at is None
            or not isinstance(cached.value, dict)
        ):
            return None
        negative_fresh = (
            self.negative_policy.classify(self._cache.now() - cached.written_at)
            is CacheStatus.FRESH
        )
        if cached.value.get("failed"):
            if negative_fresh:
                log.debug("search_failure_cached", key=key)
                raise NetworkError(
                    str(cached.value.get("error") or "Search failed recently"),
                    reason="cached_failure",
                )
            return None
        results = _validate_list(cached.value.get("results"), Podcast)
        if results is None or (not results and not negative_fresh):
            return None
        return results

    async def _search_remote(
        self, key: str, query: str, country: str, limit: int, signal: asyncio.Event | None
    ) -> list[Podcast]:
        url = httpx.URL(
            self._settings.catalog.search_url,
            params={
                "media": "podcast",
                "entity": "podcast",
                "limit": str(limit),
                "country": country,
                "term": query,
            },
        )
        try:
            data = await self._fetcher.fetch_json(str(url), signal=signal)
            results = normalize_catalog_results(data)
        except _RECOVERABLE as exc:
            await self._cache.write(key, {"results": [], "failed": True, "error": exc.message})
            raise
        await self._cache.write(key, {"results": _dump(results), "failed": False})
        log.debug("search_complete", term=query, country=country, count=len(results))
        return results

    # ------------------------------------------------------------------
    # Lookup by ID
    # ------------------------------------------------------------------

    async def lookup_by_ids(
        self,
        ids: Iterable[str | int],
        country: str | None = None,
        *,
        chunk_size: int | None = None,
        signal: asyncio.Event | None = None,
    ) -> list[Podcast]:
        """Resolve catalog IDs in sequential chunks, checking the signal before each."""
        country = self.country(country)
        chunk_size = chunk_size or self._settings.catalog.lookup_chunk_size
        unique = list(dict.fromkeys(str(i).strip() for i in ids if str(i).strip()))

        podcasts: list[Podcast] = []
        for start in range(0, len(unique), chunk_size):
            raise_if_cancelled(signal)
            batch = unique[start : start + chunk_size]
            url = httpx.URL(
                self._settings.catalog.lookup_url,
                params={"id": ",".join(batch), "entity": "podcast", "country": country},
            )
            data = await self._fetcher.fetch_json(str(url), signal=signal)
            podcasts.extend(normalize_catalog_results(data))
        return podcasts

    # ------------------------------------------------------------------
    # Top chart
    # ------------------------------------------------------------------

    def chart_url(self, country: str, limit: int) -> str:
        base = self._settings.catalog.chart_base_url.rstrip("/")
        return f"{base}/{country}/podcasts/top/{limit}/podcasts.json"

    async def top_podcasts(
        self,
        country: str | None = None,
        *,
        limit: int | None = None,
        signal: asyncio.Event | None = None,
    ) -> list[ChartEntry]:
        """Ranked chart entries. Stale data is served when a refresh fails."""
        country = self.country(country)
        limit = limit or self._settings.catalog.chart_limit
        key = self.chart_family.key(country, limit)

        cached = await self._cache.read(key, self.chart_family.policy)
        entries = _validate_list(cached.value, ChartEntry) if cached.usable else None
        if entries is not None and cached.status is CacheStatus.FRESH:
            return entries

        try:
            return await self._flight.do(
                key, lambda: self._fetch_chart(key, country, limit, signal)
            )
        except CancellationError:
            raise
        except _RECOVERABLE as exc:
            if entries is None:
                raise
            log.info("chart_refresh_failed", country=country, error=exc.message, served_stale=True)
            return entries

    async def _fetch_chart(
        self, key: str, country: str, limit: int, signal: asyncio.Event | None
    ) -> list[ChartEntry]:
        data = await self._fetcher.fetch_json(self.chart_url(country, limit), signal=signal)
        feed = data.get("feed") if isinstance(data, dict) else None
        raw_results = feed.get("results") if isinstance(feed, dict) else None
        if not isinstance(raw_results, list):
            raise ParseError("Chart response has no feed.results list")

        entries = [e for e in (normalize_chart_entry(r) for r in raw_results) if e is not None]
        await self._cache.write(key, _dump(entries))
        await self._purge_chart_families()
        return entries

    async def top_podcasts_with_lookup(
        self,
        country: str | None = None,
        *,
        limit: int | None = None,
        signal: asyncio.Event | None = None,
    ) -> list[PodcastCandidate]:
        """Chart entries resolved to full catalog records, in chart order.

        The cached lookup is only reused while the chart still lists exactly
        the same IDs.
        """
        country = self.country(country)
        limit = limit or self._settings.catalog.chart_limit
        chart = await self.top_podcasts(country, limit=limit, signal=signal)
        ids = [entry.id for entry in chart]
        key = self.lookup_family.key(country, limit)

        cached = await self._cache.read(key, self.lookup_family.policy)
        candidates: list[PodcastCandidate] | None = None
        if cached.usable and isinstance(cached.value, dict) and cached.value.get("ids") == ids:
            candidates = _validate_list(cached.value.get("items"), PodcastCandidate)
        if candidates is not None and cached.status is CacheStatus.FRESH:
            return candidates

        try:
            return await self._flight.do(
                key, lambda: self._resolve_chart(key, chart, country, signal)
            )
        except CancellationError:
            raise
        except _RECOVERABLE as exc:
            if candidates is None:
                raise
            log.info("lookup_refresh_failed", country=country, error=exc.message, served_stale=True)
            return candidates

    async def _resolve_chart(
        self, key: str, chart: list[ChartEntry], country: str, signal: asyncio.Event | None
    ) -> list[PodcastCandidate]:
        podcasts = await self.lookup_by_ids([e.id for e in chart], country, signal=signal)
        by_id = {p.id: p for p in podcasts}

        candidates: list[PodcastCandidate] = []
        for rank, entry in enumerate(chart):
            podcast = by_id.get(entry.id)
            if podcast is None:
                continue
            candidates.append(
                PodcastCandidate(
                    **podcast.model_dump(),
                    genre_names=entry.genre_names,
                    genre_ids=entry.genre_ids,
                    rank=rank,
                )
            )
        await self._cache.write(key, {"ids": [e.id for e in chart], "items": _dump(candidates)})
        await self._purge_chart_families()
        return candidates

    async def _purge_chart_families(self) -> None:
        for family in (self.chart_family, self.lookup_family):
            await self._cache.purge(family.policy.purge_after, prefix=f"{family.prefix}:")

    # ------------------------------------------------------------------
    # Recommendation candidates
    # ------------------------------------------------------------------

    async def recommended_candidates(
        self,
        category: Category,
        country: str | None = None,
        *,
        signal: asyncio.Event | None = None,
    ) -> list[PodcastCandidate]:
        """Chart podcasts whose genres match the category term.

        When the chart has no match and ``search_fallback`` is on, a keyword
        search on the term supplies the candidates instead.
        """
        pool = await self.top_podcasts_with_lookup(country, signal=signal)
        matched = [
            c
            for c in pool
            if matches_genre_tokens(c.genre_names or (c.primary_genre,), category.term)
        ]
        if matched or not self._settings.recommend.search_fallback:
            return matched

        raise_if_cancelled(signal)
        found = await self.search(category.term, country, signal=signal)
        return [PodcastCandidate(**p.model_dump()) for p in found]

    # ------------------------------------------------------------------
    # Feed documents
    # ------------------------------------------------------------------

    async def fetch_feed(
        self, feed_url: str, *, signal: asyncio.Event | None = None
    ) -> ParsedFeed:
        """Fetch and parse a publisher feed.

        Raises:
            FeedUnavailableError: Every route failed to fetch or parse the
                feed and no cached copy is available.
            FetchTimeoutError: The last attempt timed out and nothing is cached.
            CancellationError: The caller's signal fired.
        """
        url = validate_target_url(feed_url)
        key = self.feed_family.key(url)

        cached = await self._cache.read(key, self.feed_family.policy)
        stale: ParsedFeed | None = None
        if cached.usable:
            try:
                stale = ParsedFeed.model_validate(cached.value)
            except ValidationError:
                stale = None
        if stale is not None and cached.status is CacheStatus.FRESH:
            return stale

        try:
            return await self._flight.do(key, lambda: self._fetch_feed_remote(key, url, signal))
        except CancellationError:
            raise
        except _RECOVERABLE as exc:
            if stale is not None:
                log.info("feed_refresh_failed", url=url, error=exc.message, served_stale=True)
                return stale
            if isinstance(exc, FetchTimeoutError):
                raise
            reason = exc.reason if isinstance(exc, NetworkError) else "parse_failed"
            raise FeedUnavailableError(url, reason=reason) from exc

    async def _fetch_feed_remote(
        self, key: str, url: str, signal: asyncio.Event | None
    ) -> ParsedFeed:
        fetched = await self._fetcher.fetch(url, parse_feed, signal=signal)
        await self._cache.write(key, fetched.value.model_dump(mode="json"))
        log.debug(
            "feed_fetched", url=url, route=fetched.route, episodes=len(fetched.value.episodes)
        )
        return fetched.value
