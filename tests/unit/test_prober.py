"""Unit tests for the feed fetchability prober."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from podrelay.errors import CancellationError
from podrelay.models import FetchabilityRecord
from podrelay.prober import FeedProber, host_of, is_host_listed, record_url

FEED = "https://feeds.example.com/show.xml"
BLOCKED = "https://feeds.npr.org/510289/podcast.xml"
ALLOWED = "https://feeds.megaphone.fm/ABC123"
RELAY = "https://api.allorigins.win"


def relays(
    response: httpx.Response | None = None, *, side_effect: Exception | None = None
) -> respx.Route:
    route = respx.get(url__startswith=RELAY)
    if side_effect is not None:
        return route.mock(side_effect=side_effect)
    return route.mock(return_value=response if response is not None else httpx.Response(502))


async def stored_record(prober: FeedProber, ttl_cache, url: str) -> FetchabilityRecord | None:
    cached = await ttl_cache.read(prober.key("us", url), prober.family.policy)
    if cached.value is None:
        return None
    return FetchabilityRecord.model_validate(cached.value)


# ---------------------------------------------------------------------------
# Host lists
# ---------------------------------------------------------------------------


class TestHostHelpers:
    def test_host_of(self) -> None:
        assert host_of("https://Feeds.Example.COM:8443/x") == "feeds.example.com"
        assert host_of("") == ""

    def test_record_url_lowercases_scheme_and_host_only(self) -> None:
        assert record_url(" HTTPS://Feeds.Example.COM/Show.xml?id=AbC ") == (
            "https://feeds.example.com/Show.xml?id=AbC"
        )
        assert record_url("not a url") == "not a url"

    @pytest.mark.parametrize(
        "host, expected",
        [
            ("feeds.npr.org", True),
            ("a.feeds.npr.org", True),
            ("FEEDS.NPR.ORG.", True),
            ("notfeeds.npr.org", False),
            ("npr.org", False),
            ("", False),
        ],
    )
    def test_is_host_listed(self, host: str, expected: bool) -> None:
        assert is_host_listed(host, ["feeds.npr.org"]) is expected


# ---------------------------------------------------------------------------
# Probe outcomes
# ---------------------------------------------------------------------------


class TestProbe:
    async def test_blocked_host_is_recorded_without_network(
        self, prober: FeedProber, ttl_cache
    ) -> None:
        with respx.mock:
            assert await prober.probe("us", BLOCKED) is False
        record = await stored_record(prober, ttl_cache, BLOCKED)
        assert record is not None
        assert record.ok is False
        assert record.reason == "blocklisted"

    async def test_direct_success(self, prober: FeedProber, sample_rss: str) -> None:
        with respx.mock:
            respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            assert await prober.probe("us", FEED) is True
        record = await prober.get_status("us", FEED)
        assert record is not None
        assert record.reason == "ok_direct"

    async def test_relay_success(self, prober: FeedProber, sample_rss: str) -> None:
        with respx.mock:
            respx.get(FEED).mock(side_effect=httpx.ConnectError("CORS rejected"))
            relays(httpx.Response(200, json={"contents": sample_rss}))
            assert await prober.probe("us", FEED) is True
        record = await prober.get_status("us", FEED)
        assert record is not None
        assert record.reason == "ok_proxy"

    async def test_allowlisted_success(self, prober: FeedProber, sample_rss: str) -> None:
        with respx.mock:
            respx.get(ALLOWED).mock(return_value=httpx.Response(200, text=sample_rss))
            assert await prober.probe("us", ALLOWED) is True
        record = await prober.get_status("us", ALLOWED)
        assert record is not None
        assert record.reason == "ok_allowlisted"

    async def test_allowlisted_but_unreachable_is_not_fetchable(self, prober: FeedProber) -> None:
        with respx.mock:
            respx.get(ALLOWED).mock(side_effect=httpx.ConnectError("refused"))
            relays()
            assert await prober.probe("us", ALLOWED) is False

    async def test_http_failure_keeps_status_reason(self, prober: FeedProber) -> None:
        with respx.mock:
            respx.get(FEED).mock(return_value=httpx.Response(404))
            relays()
            assert await prober.probe("us", FEED) is False
        record = await prober.get_status("us", FEED)
        assert record is not None
        assert record.ok is False
        assert record.reason == "proxy_http_502"

    async def test_unparseable_feed_is_fetch_failed(self, prober: FeedProber) -> None:
        html = "<html><body>Please sign in</body></html>"
        with respx.mock:
            respx.get(FEED).mock(return_value=httpx.Response(200, text=html))
            relays(httpx.Response(200, text=html))
            assert await prober.probe("us", FEED) is False
        record = await prober.get_status("us", FEED)
        assert record is not None
        assert record.reason == "fetch_failed"

    @pytest.mark.parametrize("url", ["", "ftp://feeds.example.com/x", "nonsense"])
    async def test_invalid_url_is_not_fetchable(self, prober: FeedProber, url: str) -> None:
        with respx.mock:
            assert await prober.probe("us", url) is False


# ---------------------------------------------------------------------------
# Cached verdicts
# ---------------------------------------------------------------------------


class TestCachedVerdicts:
    async def test_fresh_verdict_short_circuits(self, prober: FeedProber, sample_rss: str) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            assert await prober.probe("us", FEED) is True
            assert await prober.probe("US", FEED) is True
        assert route.call_count == 1

    async def test_failure_is_cached(self, prober: FeedProber) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(500))
            relays()
            assert await prober.probe("us", FEED) is False
            assert await prober.probe("us", FEED) is False
        assert route.call_count == 1

    async def test_verdict_is_per_country(self, prober: FeedProber, sample_rss: str) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            await prober.probe("us", FEED)
            await prober.probe("gb", FEED)
        assert route.call_count == 2

    async def test_expired_ttl_reprobes(self, prober: FeedProber, clock, sample_rss: str) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            await prober.probe("us", FEED)
            clock.advance(days=8)
            assert await prober.get_status("us", FEED) is None
            await prober.probe("us", FEED)
        assert route.call_count == 2

    async def test_timeout_keeps_stale_verdict(
        self, prober: FeedProber, ttl_cache, clock, sample_rss: str
    ) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            assert await prober.probe("us", FEED) is True
            first = await stored_record(prober, ttl_cache, FEED)

            clock.advance(days=8)
            route.mock(side_effect=httpx.ReadTimeout("slow"))
            relays(side_effect=httpx.ReadTimeout("slow"))
            assert await prober.probe("us", FEED) is True

        kept = await stored_record(prober, ttl_cache, FEED)
        assert kept == first

    async def test_timeout_without_record_is_recorded(self, prober: FeedProber) -> None:
        with respx.mock:
            respx.get(FEED).mock(side_effect=httpx.ReadTimeout("slow"))
            relays(side_effect=httpx.ConnectTimeout("slow"))
            assert await prober.probe("us", FEED) is False
        record = await prober.get_status("us", FEED)
        assert record is not None
        assert record.reason == "timeout"

    async def test_set_status_overrides(self, prober: FeedProber) -> None:
        await prober.set_status("us", FEED, True, "ok_direct")
        with respx.mock:
            assert await prober.probe("us", FEED) is True

    async def test_feeds_differing_in_path_case_keep_separate_verdicts(
        self, prober: FeedProber
    ) -> None:
        await prober.set_status("us", "https://feeds.example.com/Show.xml", True, "ok_direct")
        assert await prober.get_status("us", "https://feeds.example.com/show.xml") is None
        record = await prober.get_status("US", "https://FEEDS.example.com/Show.xml")
        assert record is not None
        assert record.ok is True


# ---------------------------------------------------------------------------
# Cancellation and concurrency
# ---------------------------------------------------------------------------


class TestCancellationAndConcurrency:
    async def test_cancelled_probe_records_nothing(self, prober: FeedProber, store) -> None:
        signal = asyncio.Event()
        signal.set()
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text="x"))
            with pytest.raises(CancellationError):
                await prober.probe("us", FEED, signal=signal)
        assert route.call_count == 0
        assert store.sets == 0

    async def test_signal_during_fetch_records_nothing(self, prober: FeedProber, store) -> None:
        signal = asyncio.Event()

        async def hang(request: httpx.Request) -> httpx.Response:
            signal.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        with respx.mock:
            respx.get(FEED).mock(side_effect=hang)
            with pytest.raises(CancellationError):
                await prober.probe("us", FEED, signal=signal)
        assert store.sets == 0

    async def test_concurrent_probes_share_one_fetch(
        self, prober: FeedProber, sample_rss: str
    ) -> None:
        with respx.mock:
            route = respx.get(FEED).mock(return_value=httpx.Response(200, text=sample_rss))
            results = await asyncio.gather(
                prober.probe("us", FEED), prober.probe("us", FEED), prober.probe("us", FEED)
            )
        assert results == [True, True, True]
        assert route.call_count == 1
