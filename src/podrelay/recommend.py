"""Recommendation batch loader.

Categories are filled in a fixed order, a few at a time. For each category
the catalog supplies candidates, and a small worker pool probes them until
enough fetchable feeds are found. Progress is persisted after every category
that yields a group, so an interrupted batch keeps what it already found.

``RecommendationFeed`` wraps the loader in a per-locale state machine
(idle -> loading -> partial | complete) and is what a front end drives.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import timedelta

import structlog
from pydantic import ValidationError

from podrelay.cache import CacheFamily, CachePolicy, TtlCache
from podrelay.cancellation import raise_if_cancelled
from podrelay.catalog import CatalogClient
from podrelay.config import Settings
from podrelay.errors import BatchCancelledError, CancellationError, PodRelayError
from podrelay.models import (
    BatchResult,
    CachedGroups,
    CacheStatus,
    Category,
    LoadPhase,
    PodcastCandidate,
    RecommendedGroup,
)
from podrelay.prober import FeedProber

log = structlog.get_logger()

DEFAULT_CATEGORIES: tuple[Category, ...] = tuple(
    Category(id=cid, label=label, term=label.lower())
    for cid, label in (
        ("news", "News"),
        ("technology", "Technology"),
        ("comedy", "Comedy"),
        ("education", "Education"),
        ("arts", "Arts"),
        ("business", "Business"),
        ("fiction", "Fiction"),
        ("government", "Government"),
        ("health-fitness", "Health & Fitness"),
        ("history", "History"),
        ("kids-family", "Kids & Family"),
        ("leisure", "Leisure"),
        ("music", "Music"),
        ("religion-spirituality", "Religion & Spirituality"),
        ("science", "Science"),
        ("society-culture", "Society & Culture"),
        ("sports", "Sports"),
        ("true-crime", "True Crime"),
        ("tv-film", "TV & Film"),
    )
)


def _feed_key(url: str) -> str:
    return (url or "").strip().lower()


async def pick_fetchable(
    prober: FeedProber,
    country: str,
    candidates: Iterable[PodcastCandidate],
    *,
    desired: int,
    seen: set[str],
    signal: asyncio.Event | None = None,
    width: int = 3,
) -> list[PodcastCandidate]:
    """Select up to *desired* candidates whose feeds are fetchable.

    Cached verdicts are used as-is. Unknown feeds are probed by at most
    *width* concurrent workers that share one queue, allow-listed hosts
    first. Picked feeds are added to *seen* so the same feed is never picked
    twice across groups.
    """
    picked: list[PodcastCandidate] = []
    preferred: list[PodcastCandidate] = []
    unknown: list[PodcastCandidate] = []

    for candidate in candidates:
        if len(picked) >= desired:
            break
        key = _feed_key(candidate.feed_url)
        if not key or key in seen or prober.is_blocked(candidate.feed_url):
            continue
        record = await prober.get_status(country, candidate.feed_url)
        if record is not None:
            if record.ok:
                seen.add(key)
                picked.append(candidate)
            continue
        if prober.is_allowed(candidate.feed_url):
            preferred.append(candidate)
        else:
            unknown.append(candidate)

    queue = preferred + unknown
    if len(picked) >= desired or not queue:
        return picked

    # A shared iterator is the queue cursor: next() never suspends, so no two
    # workers can claim the same candidate.
    cursor = iter(queue)

    async def worker() -> None:
        for candidate in cursor:
            if len(picked) >= desired:
                return
            raise_if_cancelled(signal)
            key = _feed_key(candidate.feed_url)
            if key in seen:
                continue
            ok = await prober.probe(country, candidate.feed_url, signal=signal)
            if ok and len(picked) < desired and key not in seen:
                seen.add(key)
                picked.append(candidate)

    tasks = [asyncio.ensure_future(worker()) for _ in range(min(width, len(queue)))]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    return picked


class RecommendationLoader:
    def __init__(
        self,
        catalog: CatalogClient,
        prober: FeedProber,
        cache: TtlCache,
        settings: Settings,
        categories: Iterable[Category] | None = None,
    ) -> None:
        self._catalog = catalog
        self._prober = prober
        self._cache = cache
        self._settings = settings
        self.categories = list(categories if categories is not None else DEFAULT_CATEGORIES)
        self.family = CacheFamily(
            "recommended",
            CachePolicy(
                ttl=timedelta(hours=settings.cache.recommended_ttl_hours),
                purge_after=timedelta(hours=settings.cache.recommended_purge_hours),
            ),
        )

    @property
    def families(self) -> list[CacheFamily]:
        return [self.family]

    def recommended_key(self, country: str, lang: str) -> str:
        return self.family.key(country, lang)

    def is_complete(self, groups: Iterable[RecommendedGroup], tried: Iterable[str]) -> bool:
        done = set(tried) | {g.id for g in groups}
        return all(category.id in done for category in self.categories)

    async def read_cached_groups(
        self, country: str, lang: str
    ) -> tuple[CacheStatus, CachedGroups | None]:
        """Persisted groups for the locale. Malformed entries read as absent."""
        cached = await self._cache.read(self.recommended_key(country, lang), self.family.policy)
        if not cached.usable:
            return cached.status, None
        try:
            return cached.status, CachedGroups.model_validate(cached.value)
        except ValidationError:
            log.debug("recommended_cache_malformed", country=country, lang=lang)
            return CacheStatus.ABSENT, None

    async def load_batch(
        self,
        country: str,
        lang: str,
        groups: Iterable[RecommendedGroup],
        tried: Iterable[str],
        *,
        desired_groups: int,
        signal: asyncio.Event | None = None,
        persist: bool = True,
    ) -> BatchResult:
        """Add up to *desired_groups* new groups after the ones in *groups*.

        A category joins the returned ``tried`` set once its probing finishes,
        whether or not it produced a group. Categories interrupted by
        cancellation, or whose candidates could not be fetched, stay untried
        so the next batch resumes them. The arguments are not modified.

        With *persist* each new group is written to the cache as soon as it is
        found. A cancelled batch raises ``BatchCancelledError`` carrying the
        groups found so far.
        """
        groups = list(groups)
        tried = set(tried)
        done = tried | {g.id for g in groups}
        seen = {_feed_key(item.feed_url) for g in groups for item in g.items}
        added = 0
        persisted = set(tried)

        try:
            for category in self.categories:
                if added >= desired_groups:
                    break
                if category.id in done:
                    continue
                raise_if_cancelled(signal)

                try:
                    candidates = await self._catalog.recommended_candidates(
                        category, country, signal=signal
                    )
                except CancellationError:
                    raise
                except PodRelayError as exc:
                    log.info(
                        "recommend_candidates_failed", category=category.id, error=exc.message
                    )
                    continue

                picked = await pick_fetchable(
                    self._prober,
                    country,
                    candidates,
                    desired=self._settings.recommend.per_category,
                    seen=seen,
                    signal=signal,
                    width=self._settings.probe.pool_width,
                )
                tried.add(category.id)
                done.add(category.id)
                if not picked:
                    log.debug("recommend_category_empty", category=category.id)
                    continue

                groups.append(
                    RecommendedGroup(
                        id=category.id,
                        label=category.label,
                        term=category.term,
                        items=tuple(picked),
                    )
                )
                added += 1
                if persist:
                    await self.save(country, lang, groups, tried)
                    persisted = set(tried)
        except CancellationError as exc:
            partial = BatchResult(groups=groups, all_loaded=False, tried=tried)
            raise BatchCancelledError(partial, exc.message) from exc

        # Categories tried after the last new group still need recording.
        if persist and groups and tried != persisted:
            await self.save(country, lang, groups, tried)
        return BatchResult(groups=groups, all_loaded=self.is_complete(groups, tried), tried=tried)

    async def save(
        self, country: str, lang: str, groups: list[RecommendedGroup], tried: set[str]
    ) -> None:
        """Replace the persisted state for the locale."""
        state = CachedGroups(groups=groups, tried=sorted(tried))
        await self._cache.write(
            self.recommended_key(country, lang), state.model_dump(mode="json")
        )


class RecommendationFeed:
    """Per-locale recommendation state driven by a front end.

    ``open()`` switches locale: persisted groups are served immediately when
    fresh or stale (stale ones are revalidated in the background), otherwise
    an initial batch is loaded. ``load_more()`` appends further categories and
    ``refresh()`` starts over. Errors other than cancellation are logged and
    leave the current groups in place.
    """

    def __init__(self, loader: RecommendationLoader, settings: Settings) -> None:
        self._loader = loader
        self._settings = settings
        self.country = ""
        self.lang = ""
        self.groups: list[RecommendedGroup] = []
        self.tried: set[str] = set()
        self.phase = LoadPhase.IDLE
        self._generation = 0
        self._lock = asyncio.Lock()
        self._revalidation: asyncio.Task[None] | None = None

    @property
    def all_loaded(self) -> bool:
        return self.phase is LoadPhase.COMPLETE

    async def open(
        self, country: str, lang: str, *, signal: asyncio.Event | None = None
    ) -> list[RecommendedGroup]:
        country = (country or "").strip().lower() or self._settings.catalog.default_country
        lang = (lang or "").strip().lower() or "en"
        if (country, lang) == (self.country, self.lang) and self.phase is not LoadPhase.IDLE:
            return self.groups

        await self._reset(country, lang)
        status, cached = await self._loader.read_cached_groups(country, lang)
        if cached is not None and cached.groups:
            self.groups = list(cached.groups)
            self.tried = set(cached.tried)
            self.phase = self._settled_phase(self._loader.is_complete(self.groups, self.tried))
            if status is CacheStatus.STALE:
                self._revalidation = asyncio.create_task(self._revalidate(self._generation))
            log.debug("recommended_served_from_cache", country=country, lang=lang, status=status)
            return self.groups

        await self._load(self._settings.recommend.initial_groups, signal)
        return self.groups

    async def load_more(self, *, signal: asyncio.Event | None = None) -> list[RecommendedGroup]:
        if self.phase is LoadPhase.COMPLETE or not self.country:
            return self.groups
        # Appending replaces whatever a background revalidation would produce.
        await self._cancel_revalidation()
        await self._load(self._settings.recommend.more_groups, signal)
        return self.groups

    async def refresh(self, *, signal: asyncio.Event | None = None) -> list[RecommendedGroup]:
        if not self.country:
            return self.groups
        await self._reset(self.country, self.lang)
        await self._load(self._settings.recommend.initial_groups, signal)
        return self.groups

    async def wait_idle(self) -> None:
        """Wait for a pending background revalidation, if any."""
        task = self._revalidation
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        await self._cancel_revalidation()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settled_phase(self, all_loaded: bool) -> LoadPhase:
        return LoadPhase.COMPLETE if all_loaded else LoadPhase.PARTIAL

    async def _reset(self, country: str, lang: str) -> None:
        await self._cancel_revalidation()
        self._generation += 1
        self.country, self.lang = country, lang
        self.groups = []
        self.tried = set()
        self.phase = LoadPhase.IDLE

    async def _cancel_revalidation(self) -> None:
        task, self._revalidation = self._revalidation, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _load(self, desired: int, signal: asyncio.Event | None) -> None:
        async with self._lock:
            generation = self._generation
            if self.phase is LoadPhase.COMPLETE:
                return
            self.phase = LoadPhase.LOADING
            try:
                result = await self._loader.load_batch(
                    self.country,
                    self.lang,
                    self.groups,
                    self.tried,
                    desired_groups=desired,
                    signal=signal,
                )
            except CancellationError as exc:
                if generation == self._generation:
                    if isinstance(exc, BatchCancelledError):
                        # Groups found before the signal fired are already cached.
                        self.groups = exc.partial.groups
                        self.tried = exc.partial.tried
                    self.phase = LoadPhase.PARTIAL if self.groups else LoadPhase.IDLE
                raise
            except PodRelayError as exc:
                log.warning("recommend_batch_failed", country=self.country, error=exc.message)
                if generation == self._generation:
                    self.phase = LoadPhase.PARTIAL if self.groups else LoadPhase.IDLE
                return

            if generation != self._generation:
                return
            self.groups = result.groups
            self.tried = result.tried
            self.phase = self._settled_phase(result.all_loaded)

    async def _revalidate(self, generation: int) -> None:
        country, lang = self.country, self.lang
        desired = max(self._settings.recommend.initial_groups, len(self.groups))
        try:
            # The stale list stays cached until a full replacement is ready.
            result = await self._loader.load_batch(
                country, lang, [], set(), desired_groups=desired, persist=False
            )
        except PodRelayError as exc:
            log.info("recommended_revalidation_failed", country=country, error=exc.message)
            return

        if generation != self._generation or not result.groups:
            return
        await self._loader.save(country, lang, result.groups, result.tried)
        self.groups = result.groups
        self.tried = result.tried
        self.phase = self._settled_phase(result.all_loaded)
        log.debug("recommended_revalidated", country=country, groups=len(self.groups))
