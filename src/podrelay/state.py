"""Application wiring.

``AppState`` holds one instance of every component, built around a single
HTTP client and a single cache. ``open_app_state`` owns their lifetime.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import aiosqlite
import httpx
import structlog

from podrelay.cache import CacheFamily, KeyValueStore, SqliteKeyValueStore, TtlCache
from podrelay.catalog import CatalogClient
from podrelay.config import Settings
from podrelay.fetcher import Fetcher, build_http_client
from podrelay.prober import FeedProber
from podrelay.recommend import RecommendationLoader

log = structlog.get_logger()


@dataclass
class AppState:
    settings: Settings
    http_client: httpx.AsyncClient
    cache: TtlCache
    fetcher: Fetcher
    catalog: CatalogClient
    prober: FeedProber
    loader: RecommendationLoader

    @property
    def families(self) -> list[CacheFamily]:
        return [*self.catalog.families, *self.prober.families, *self.loader.families]


def build_app_state(
    settings: Settings, http_client: httpx.AsyncClient, cache: TtlCache
) -> AppState:
    fetcher = Fetcher(http_client, settings.fetcher, settings.proxy)
    catalog = CatalogClient(fetcher, cache, settings)
    prober = FeedProber(cache, fetcher, settings)
    loader = RecommendationLoader(catalog, prober, cache, settings)
    return AppState(
        settings=settings,
        http_client=http_client,
        cache=cache,
        fetcher=fetcher,
        catalog=catalog,
        prober=prober,
        loader=loader,
    )


@asynccontextmanager
async def open_app_state(settings: Settings) -> AsyncIterator[AppState]:
    """Open the cache database and HTTP client, purge expired entries, and yield the state.

    If the database cannot be opened the cache runs memory-only. Expired
    entries are purged again every ``cache.cleanup_interval_hours`` while the
    state is open.
    """
    async with AsyncExitStack() as stack:
        store: KeyValueStore | None = None
        db_path = Path(settings.cache.db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await stack.enter_async_context(aiosqlite.connect(db_path))
            sqlite_store = SqliteKeyValueStore(db)
            await sqlite_store.init_db()
            store = sqlite_store
        except (OSError, aiosqlite.Error):
            log.warning(
                "cache_unavailable", db_path=str(db_path), degraded_to_memory=True, exc_info=True
            )

        cache = TtlCache(store, memory_max_entries=settings.cache.memory_max_entries)
        client = await stack.enter_async_context(build_http_client(settings.fetcher.user_agent))
        state = build_app_state(settings, client, cache)
        await cache.purge_families(state.families)

        purger = asyncio.create_task(
            cache.purge_periodically(
                state.families, timedelta(hours=settings.cache.cleanup_interval_hours)
            )
        )
        stack.push_async_callback(_stop, purger)
        log.debug("app_state_ready", db_path=str(db_path), degraded=cache.degraded)
        yield state


async def _stop(task: asyncio.Task[None]) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
