"""Feed fetchability prober.

A feed is "fetchable" when it can be retrieved and parsed from here, directly
or through a relay. Verdicts are cached per (country, feed URL) for the
fetchability TTL, failures included, so a broken feed is not retried on
every request.

Deny-listed hosts are recorded as failures without any network call.
Allow-listed hosts only change traversal order in the batch loader; they are
probed like any other host.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import timedelta

import httpx
import structlog
from pydantic import ValidationError

from podrelay.cache import CacheFamily, CachePolicy, TtlCache
from podrelay.cancellation import raise_if_cancelled
from podrelay.config import Settings
from podrelay.errors import (
    CancellationError,
    ConfigError,
    FetchTimeoutError,
    NetworkError,
    ParseError,
)
from podrelay.feeds import parse_feed
from podrelay.fetcher import Fetcher, validate_target_url
from podrelay.models import CacheStatus, FetchabilityRecord
from podrelay.singleflight import SingleFlight

log = structlog.get_logger()


def host_of(url: str) -> str:
    """Lowercased host of *url*, or ``""`` when it has none."""
    try:
        return httpx.URL((url or "").strip()).host.lower()
    except httpx.InvalidURL:
        return ""


def record_url(url: str) -> str:
    """*url* with only its scheme and host lowercased; path and query keep their case."""
    url = (url or "").strip()
    try:
        parsed = httpx.URL(url)
        if not parsed.host:
            return url
        return str(parsed.copy_with(scheme=parsed.scheme.lower(), host=parsed.host.lower()))
    except httpx.InvalidURL:
        return url


def is_host_listed(host: str, hosts: Iterable[str]) -> bool:
    """Exact match, or *host* is a subdomain of a listed entry."""
    host = (host or "").strip().lower().rstrip(".")
    if not host:
        return False
    for entry in hosts:
        entry = (entry or "").strip().lower().rstrip(".")
        if entry and (host == entry or host.endswith("." + entry)):
            return True
    return False


class FeedProber:
    def __init__(self, cache: TtlCache, fetcher: Fetcher, settings: Settings) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._settings = settings
        self._flight = SingleFlight()
        self.family = CacheFamily(
            "fetchability",
            CachePolicy(
                ttl=timedelta(days=settings.cache.fetchability_ttl_days),
                purge_after=timedelta(days=settings.cache.fetchability_purge_days),
            ),
        )

    @property
    def families(self) -> list[CacheFamily]:
        return [self.family]

    def key(self, country: str | None, feed_url: str) -> str:
        country = (country or "").strip() or self._settings.catalog.default_country
        return f"{self.family.key(country)}:{record_url(feed_url)}"

    def is_blocked(self, feed_url: str) -> bool:
        return is_host_listed(host_of(feed_url), self._settings.probe.block_hosts)

    def is_allowed(self, feed_url: str) -> bool:
        return is_host_listed(host_of(feed_url), self._settings.probe.allow_hosts)

    async def get_status(self, country: str | None, feed_url: str) -> FetchabilityRecord | None:
        """The cached verdict while it is fresh, else None."""
        status, record = await self._read(self.key(country, feed_url))
        return record if status is CacheStatus.FRESH else None

    async def set_status(
        self, country: str | None, feed_url: str, ok: bool, reason: str = ""
    ) -> FetchabilityRecord:
        return await self._write(self.key(country, feed_url), ok, reason)

    async def probe(
        self,
        country: str | None,
        feed_url: str,
        *,
        signal: asyncio.Event | None = None,
    ) -> bool:
        """Return whether *feed_url* can be fetched and parsed from here.

        Raises ``CancellationError`` when *signal* fires; nothing is recorded
        in that case.
        """
        try:
            url = validate_target_url(feed_url)
        except ConfigError:
            log.debug("probe_invalid_url", url=feed_url)
            return False

        key = self.key(country, url)
        status, record = await self._read(key)
        if status is CacheStatus.FRESH and record is not None:
            return record.ok

        if self.is_blocked(url):
            await self._write(key, False, "blocklisted")
            return False

        raise_if_cancelled(signal)
        stale = record if status is CacheStatus.STALE else None
        return await self._flight.do(key, lambda: self._probe_remote(key, url, stale, signal))

    async def _probe_remote(
        self,
        key: str,
        url: str,
        stale: FetchabilityRecord | None,
        signal: asyncio.Event | None,
    ) -> bool:
        try:
            fetched = await self._fetcher.fetch(
                url, parse_feed, signal=signal, timeout=self._settings.probe.timeout_seconds
            )
        except CancellationError:
            raise
        except FetchTimeoutError:
            if stale is not None:
                log.info("probe_timeout", url=url, kept_stale_verdict=stale.ok)
                return stale.ok
            await self._write(key, False, "timeout")
            return False
        except (NetworkError, ParseError) as exc:
            reason = "fetch_failed"
            if isinstance(exc, NetworkError) and exc.status is not None:
                reason = exc.reason
            await self._write(key, False, reason)
            log.info("probe_failed", url=url, reason=reason)
            return False

        if self.is_allowed(url):
            reason = "ok_allowlisted"
        elif fetched.via_proxy:
            reason = "ok_proxy"
        else:
            reason = "ok_direct"
        await self._write(key, True, reason)
        return True

    async def _read(self, key: str) -> tuple[CacheStatus, FetchabilityRecord | None]:
        cached = await self._cache.read(key, self.family.policy)
        if not cached.usable:
            return cached.status, None
        try:
            return cached.status, FetchabilityRecord.model_validate(cached.value)
        except ValidationError:
            return CacheStatus.ABSENT, None

    async def _write(self, key: str, ok: bool, reason: str) -> FetchabilityRecord:
        record = FetchabilityRecord(ok=ok, checked_at=self._cache.now(), reason=reason)
        await self._cache.write(key, record.model_dump(mode="json"))
        return record
