"""Unit tests for relay provider resolution and relay URL construction."""

from __future__ import annotations

import pytest

from podrelay.config import DEFAULT_CORS_PROXY, ProxySettings
from podrelay.errors import ConfigError, ErrorCode
from podrelay.proxy import (
    CustomRelay,
    DefaultRelay,
    build_custom_proxy_url,
    default_relay_urls,
    encode_target,
    get_providers,
)

TARGET = "https://feeds.example.com/show.xml?a=1&b=2"
ENCODED = "https%3A%2F%2Ffeeds.example.com%2Fshow.xml%3Fa%3D1%26b%3D2"


class TestGetProviders:
    def test_default_only_without_custom(self) -> None:
        assert get_providers(ProxySettings()) == [DefaultRelay(DEFAULT_CORS_PROXY)]

    def test_custom_equal_to_default_is_ignored(self) -> None:
        settings = ProxySettings(custom_url=DEFAULT_CORS_PROXY + "/")
        assert get_providers(settings) == [DefaultRelay(DEFAULT_CORS_PROXY)]

    def test_custom_after_default_by_default(self) -> None:
        settings = ProxySettings(custom_url="https://relay.example/raw?url=")
        assert get_providers(settings) == [
            DefaultRelay(DEFAULT_CORS_PROXY),
            CustomRelay("https://relay.example/raw?url="),
        ]

    def test_custom_first_when_primary(self) -> None:
        settings = ProxySettings(custom_url="https://relay.example", custom_primary=True)
        assert get_providers(settings) == [
            CustomRelay("https://relay.example"),
            DefaultRelay(DEFAULT_CORS_PROXY),
        ]


class TestBuildCustomProxyUrl:
    def test_template(self) -> None:
        url = build_custom_proxy_url("https://relay.example/fetch?target={url}&fmt=raw", TARGET)
        assert url == f"https://relay.example/fetch?target={ENCODED}&fmt=raw"

    @pytest.mark.parametrize(
        "base", ["https://relay.example/get?url=", "https://relay.example/get?key=k&url="]
    )
    def test_query_prefix(self, base: str) -> None:
        assert build_custom_proxy_url(base, TARGET) == base + ENCODED

    def test_bare_base(self) -> None:
        assert build_custom_proxy_url("https://relay.example", TARGET) == (
            f"https://relay.example?url={ENCODED}"
        )

    def test_base_with_query(self) -> None:
        assert build_custom_proxy_url("https://relay.example/p?key=k", TARGET) == (
            f"https://relay.example/p?key=k&url={ENCODED}"
        )

    def test_empty_base_is_config_error(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            build_custom_proxy_url("  ", TARGET)
        assert exc_info.value.code == ErrorCode.CONFIG_ERROR
        assert exc_info.value.recoverable is False


class TestDefaultRelayUrls:
    def test_get_and_raw(self) -> None:
        get_url, raw_url = default_relay_urls(DEFAULT_CORS_PROXY + "/", TARGET)
        assert get_url == f"{DEFAULT_CORS_PROXY}/get?url={ENCODED}"
        assert raw_url == f"{DEFAULT_CORS_PROXY}/raw?url={ENCODED}"

    def test_encoding_keeps_unreserved_marks(self) -> None:
        assert encode_target("a-b_c.d!e~f*g'h(i)") == "a-b_c.d!e~f*g'h(i)"
        assert encode_target("a b/c") == "a%20b%2Fc"
