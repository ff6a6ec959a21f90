"""TTL cache store with fresh/stale/expired classification.

Two layers: a bounded in-process memory layer in front of a persisted
key/value store. The store is injected (``SqliteKeyValueStore`` in the app,
``MemoryKeyValueStore`` in tests) so the cache never depends on a particular
backend.

Persistence failures never cross the ``TtlCache`` boundary. The first
``StorageError`` (or serialisation failure) is logged with ``exc_info=True``
and the cache degrades to memory-only for the rest of the process lifetime:
fetched data is still served, it just is not remembered across runs.

The cache is passive. It classifies entries against the policy the caller
passes in and leaves the serve-stale-or-block decision to the caller.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import aiosqlite
import structlog

from podrelay.models.cache import CacheEntry, CacheRead, CacheStatus

log = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
)
"""


class StorageError(Exception):
    """A persisted key/value backend failed to read or write."""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


class MemoryKeyValueStore:
    """Dict-backed store. Used by tests and when no database is configured."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self.data if k.startswith(prefix)]


class SqliteKeyValueStore:
    """SQLite-backed store. Every ``aiosqlite.Error`` becomes ``StorageError``."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create the table and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_KV_TABLE)
        await self._db.commit()

    async def get(self, key: str) -> str | None:
        try:
            cursor = await self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(f"read failed for {key!r}") from exc
        return None if row is None else row[0]

    async def set(self, key: str, value: str) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"write failed for {key!r}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"delete failed for {key!r}") from exc

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            cursor = await self._db.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"key scan failed for prefix {prefix!r}") from exc
        return [row[0] for row in rows]


@dataclass(frozen=True)
class CachePolicy:
    ttl: timedelta
    purge_after: timedelta

    def classify(self, age: timedelta) -> CacheStatus:
        if age <= self.ttl:
            return CacheStatus.FRESH
        if age <= self.purge_after:
            return CacheStatus.STALE
        return CacheStatus.EXPIRED


@dataclass(frozen=True)
class CacheFamily:
    """A key namespace and the policy its entries are read and purged with."""

    prefix: str
    policy: CachePolicy

    def key(self, *parts: object) -> str:
        return make_cache_key(self.prefix, *parts)


def make_cache_key(namespace: str, *parts: object) -> str:
    """Build ``namespace:part:part`` with every discriminator trimmed and lowercased."""
    normalized = [str(p if p is not None else "").strip().lower() for p in parts]
    return ":".join([namespace, *normalized])


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_epoch_ms(moment: datetime) -> int:
    return round(moment.timestamp() * 1000)


def _from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def _decode(raw: str | None) -> CacheEntry | None:
    """Parse a persisted ``{"at": ms, "value": ...}`` record, or None if unusable."""
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or "value" not in parsed:
        return None
    at = parsed.get("at")
    if isinstance(at, bool) or not isinstance(at, int | float) or at <= 0:
        return None
    return CacheEntry(value=parsed["value"], written_at=_from_epoch_ms(at))


class TtlCache:
    """Memory layer plus persisted store, classified per read policy."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        memory_max_entries: int = 512,
    ) -> None:
        self._store = store
        self._clock = clock
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_max_entries = max(1, memory_max_entries)
        self._degraded = store is None

    @property
    def degraded(self) -> bool:
        """True once persistence is disabled for this process."""
        return self._degraded

    def now(self) -> datetime:
        moment = self._clock()
        # Persisted timestamps carry millisecond precision only.
        return moment.replace(microsecond=moment.microsecond // 1000 * 1000)

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    async def read(self, key: str, policy: CachePolicy) -> CacheRead:
        entry = self._memory.get(key)
        if entry is None:
            entry = await self._load(key)
            if entry is not None:
                self._remember(key, entry)
        if entry is None:
            return CacheRead(status=CacheStatus.ABSENT)

        age = self.now() - entry.written_at
        return CacheRead(
            status=policy.classify(age),
            value=copy.deepcopy(entry.value),
            written_at=entry.written_at,
        )

    async def write(self, key: str, value: Any) -> CacheEntry:
        """Replace the whole entry for *key*. Never raises on persistence failure."""
        now = self.now()
        previous = self._memory.get(key)
        if previous is not None and previous.written_at > now:
            now = previous.written_at

        entry = CacheEntry(value=copy.deepcopy(value), written_at=now)
        self._remember(key, entry)

        if not self._degraded and self._store is not None:
            try:
                raw = json.dumps(
                    {"at": _to_epoch_ms(now), "value": value},
                    ensure_ascii=False,
                    separators=(",", ":"),
                )
                await self._store.set(key, raw)
            except (StorageError, TypeError, ValueError):
                self._degrade("cache_write_error", key=key)
        return entry

    async def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if not self._degraded and self._store is not None:
            try:
                await self._store.delete(key)
            except StorageError:
                self._degrade("cache_delete_error", key=key)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge(self, older_than: timedelta, prefix: str = "") -> int:
        """Drop entries under *prefix* written more than *older_than* ago."""
        cutoff = self.now() - older_than
        removed: set[str] = set()

        for key in [k for k in self._memory if k.startswith(prefix)]:
            if self._memory[key].written_at < cutoff:
                del self._memory[key]
                removed.add(key)

        if not self._degraded and self._store is not None:
            try:
                for key in await self._store.keys(prefix):
                    entry = _decode(await self._store.get(key))
                    if entry is None or entry.written_at < cutoff:
                        await self._store.delete(key)
                        self._memory.pop(key, None)
                        removed.add(key)
            except StorageError:
                self._degrade("cache_purge_error", prefix=prefix)

        if removed:
            log.info("cache_purge_complete", prefix=prefix, removed=len(removed))
        return len(removed)

    async def purge_families(self, families: Iterable[CacheFamily]) -> int:
        total = 0
        for family in families:
            total += await self.purge(family.policy.purge_after, prefix=f"{family.prefix}:")
        return total

    async def purge_periodically(
        self, families: Iterable[CacheFamily], interval: timedelta
    ) -> None:
        """Purge after every *interval* until the surrounding task is cancelled."""
        families = list(families)
        while True:
            await asyncio.sleep(interval.total_seconds())
            await self.purge_families(families)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, key: str) -> CacheEntry | None:
        if self._degraded or self._store is None:
            return None
        try:
            raw = await self._store.get(key)
        except StorageError:
            self._degrade("cache_read_error", key=key)
            return None
        entry = _decode(raw)
        if entry is None and raw is not None:
            log.debug("cache_entry_malformed", key=key)
        return entry

    def _remember(self, key: str, entry: CacheEntry) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        while len(self._memory) > self._memory_max_entries:
            self._memory.popitem(last=False)

    def _degrade(self, event: str, **context: Any) -> None:
        log.warning(event, degraded_to_memory=True, **context, exc_info=True)
        self._degraded = True
