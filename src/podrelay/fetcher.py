"""Resilient fetcher: direct first, then the CORS relay chain.

Every attempt runs under its own deadline and is raced against the caller's
cancellation signal. A fired signal stops the chain immediately with
``CancellationError``; network failures, non-2xx responses, timeouts and
decode failures move on to the next attempt. Decode failures are retried
through relays too, since a relay can mangle a body the origin served fine.

Requests never carry credentials: the shared client's cookie jar refuses
every cookie and no auth is configured.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, Generic, Literal, TypeVar

import httpx
import structlog
from pydantic import BaseModel

from podrelay.cancellation import race_signal, raise_if_cancelled
from podrelay.config import FetcherSettings, ProxySettings
from podrelay.errors import (
    CancellationError,
    ConfigError,
    FetchTimeoutError,
    NetworkError,
    ParseError,
    PodRelayError,
)
from podrelay.proxy import (
    CustomRelay,
    DefaultRelay,
    build_custom_proxy_url,
    default_relay_urls,
    get_providers,
)

log = structlog.get_logger()

T = TypeVar("T")

Route = Literal["direct", "relay_get", "relay_raw", "custom"]

_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/xml, "
    "text/xml;q=0.9, application/json;q=0.9, */*;q=0.8"
)


def build_http_client(user_agent: str | None = None) -> httpx.AsyncClient:
    """Create the shared client. Redirects are followed; cookies are never kept or sent."""
    headers = {"Accept": _ACCEPT}
    if user_agent:
        headers["User-Agent"] = user_agent
    return httpx.AsyncClient(
        follow_redirects=True,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        headers=headers,
        timeout=httpx.Timeout(30.0),
    )


def validate_target_url(url: str) -> str:
    """Return the trimmed target URL, or raise ``ConfigError``."""
    target = (url or "").strip()
    if not target:
        raise ConfigError("Missing target URL")
    try:
        parsed = httpx.URL(target)
    except httpx.InvalidURL as exc:
        raise ConfigError(f"Invalid target URL: {target!r}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ConfigError(f"Invalid target URL: {target!r}")
    return target


def decode_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ParseError("Response is not valid JSON") from exc


def _identity(text: str) -> str:
    return text


@dataclass(frozen=True)
class Fetched(Generic[T]):
    value: T
    route: Route

    @property
    def via_proxy(self) -> bool:
        return self.route != "direct"


@dataclass(frozen=True)
class _Attempt:
    route: Route
    url: str

    @property
    def is_proxy(self) -> bool:
        return self.route != "direct"


class ProxyHealth(BaseModel):
    ok: bool
    proxy_url: str
    proxy_kind: Literal["default", "custom"]
    target_url: str
    elapsed_ms: int
    checked_at: datetime
    error: str = ""
    status: int | None = None


class Fetcher:
    """Fetch text or JSON through direct access with relay fallback."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: FetcherSettings | None = None,
        proxy: ProxySettings | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or FetcherSettings()
        self._proxy = proxy or ProxySettings()

    async def fetch_text(
        self,
        url: str,
        *,
        signal: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> str:
        fetched = await self.fetch(url, _identity, signal=signal, timeout=timeout)
        return fetched.value

    async def fetch_json(
        self,
        url: str,
        *,
        signal: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Any:
        if timeout is None:
            timeout = self._settings.json_timeout_seconds
        fetched = await self.fetch(url, decode_json, signal=signal, timeout=timeout)
        return fetched.value

    async def fetch(
        self,
        url: str,
        decode: Callable[[str], T],
        *,
        signal: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Fetched[T]:
        """Run the attempt chain until one response fetches and decodes.

        ``timeout`` overrides the per-attempt deadline for every attempt.
        Raises the last attempt's error when all of them fail.
        """
        target = validate_target_url(url)
        raise_if_cancelled(signal)

        last_error: PodRelayError | None = None
        for attempt in self.plan(target):
            seconds = timeout if timeout is not None else self._deadline_for(attempt)
            try:
                body = await self._attempt(attempt, signal, seconds)
                value = decode(body)
            except CancellationError:
                raise
            except (NetworkError, FetchTimeoutError, ParseError) as exc:
                last_error = exc
                log.debug(
                    "fetch_attempt_failed",
                    url=target,
                    route=attempt.route,
                    code=str(exc.code),
                    error=exc.message,
                )
                continue
            if attempt.is_proxy:
                log.debug("fetch_via_proxy", url=target, route=attempt.route)
            return Fetched(value=value, route=attempt.route)

        if last_error is None:
            raise ConfigError(f"No fetch route available for {target}")
        log.info("fetch_failed", url=target, code=str(last_error.code), error=last_error.message)
        raise last_error

    def plan(self, target: str) -> list[_Attempt]:
        """Direct first, then each relay in resolver order."""
        attempts = [_Attempt("direct", target)]
        for provider in get_providers(self._proxy):
            if isinstance(provider, DefaultRelay):
                get_url, raw_url = default_relay_urls(provider.base, target)
                attempts.append(_Attempt("relay_get", get_url))
                attempts.append(_Attempt("relay_raw", raw_url))
            elif isinstance(provider, CustomRelay):
                attempts.append(_Attempt("custom", build_custom_proxy_url(provider.base, target)))
            else:
                raise ConfigError(f"Unknown proxy provider: {provider!r}")
        return attempts

    async def check_proxy_health(
        self, target_url: str = "https://example.com/", timeout: float = 8.0
    ) -> ProxyHealth:
        """Fetch *target_url* through the configured relay only. Never raises."""
        providers = get_providers(self._proxy)
        provider = next((p for p in providers if isinstance(p, CustomRelay)), providers[0])
        if isinstance(provider, CustomRelay):
            attempt = _Attempt("custom", build_custom_proxy_url(provider.base, target_url))
            kind: Literal["default", "custom"] = "custom"
        else:
            attempt = _Attempt("relay_get", default_relay_urls(provider.base, target_url)[0])
            kind = "default"

        checked_at = datetime.now(UTC)
        started = time.perf_counter()
        error = ""
        status: int | None = None
        try:
            await self._attempt(attempt, None, timeout)
        except FetchTimeoutError:
            error = "Timeout"
        except NetworkError as exc:
            error, status = exc.message, exc.status
        except ParseError as exc:
            error = exc.message
        elapsed_ms = round((time.perf_counter() - started) * 1000)

        return ProxyHealth(
            ok=not error,
            proxy_url=provider.base,
            proxy_kind=kind,
            target_url=target_url,
            elapsed_ms=elapsed_ms,
            checked_at=checked_at,
            error=error,
            status=status,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _deadline_for(self, attempt: _Attempt) -> float:
        if attempt.is_proxy:
            return self._settings.proxy_timeout_seconds
        return self._settings.direct_timeout_seconds

    async def _attempt(
        self, attempt: _Attempt, signal: asyncio.Event | None, seconds: float
    ) -> str:
        try:
            async with asyncio.timeout(seconds):
                response = await race_signal(self._client.get(attempt.url), signal)
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise FetchTimeoutError(f"{attempt.route} fetch timed out after {seconds}s") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{attempt.route} fetch failed: {exc}") from exc

        if not response.is_success:
            prefix = "proxy_http" if attempt.is_proxy else "http"
            raise NetworkError(
                f"{attempt.route} fetch returned HTTP {response.status_code}",
                status=response.status_code,
                reason=f"{prefix}_{response.status_code}",
            )

        text = response.text
        if attempt.route == "relay_get":
            return _unwrap_contents(text)
        if attempt.is_proxy and not text:
            raise NetworkError("Empty proxy response", reason="proxy_empty")
        return text


def _unwrap_contents(text: str) -> str:
    """Extract ``contents`` from the default relay's ``/get`` JSON wrapper."""
    data = decode_json(text)
    contents = data.get("contents") if isinstance(data, dict) else None
    if not isinstance(contents, str) or not contents:
        raise NetworkError("Relay response has no contents", reason="proxy_missing_contents")
    return contents
