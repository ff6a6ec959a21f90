"""CORS relay providers and relay URL construction.

Two provider kinds exist: the built-in public relay (``DefaultRelay``), which
exposes a JSON-wrapping ``/get`` endpoint and a passthrough ``/raw`` endpoint,
and an optional operator relay (``CustomRelay``) that returns the raw body.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote

from podrelay.config import ProxySettings
from podrelay.errors import ConfigError

_URL_PLACEHOLDER = "{url}"
_QUERY_PREFIX_RE = re.compile(r"[?&]url=$", re.IGNORECASE)


@dataclass(frozen=True)
class DefaultRelay:
    base: str


@dataclass(frozen=True)
class CustomRelay:
    base: str


ProxyProvider = DefaultRelay | CustomRelay


def get_providers(settings: ProxySettings) -> list[ProxyProvider]:
    """Return the relays to try, in order."""
    default = DefaultRelay(settings.default_url)
    custom_base = (settings.custom_url or "").strip().rstrip("/")
    if not custom_base or custom_base == default.base:
        return [default]
    custom = CustomRelay(custom_base)
    return [custom, default] if settings.custom_primary else [default, custom]


def encode_target(target_url: str) -> str:
    """Percent-encode a URL the way ``encodeURIComponent`` does."""
    return quote(target_url, safe="-_.!~*'()")


def build_custom_proxy_url(base: str, target_url: str) -> str:
    """Build a relay URL from one of three accepted base shapes.

    1. Template containing ``{url}``: ``https://relay.example/?target={url}``
    2. Prefix ending in ``?url=`` or ``&url=``: ``https://relay.example/get?url=``
    3. Bare base: ``?url=`` (or ``&url=`` if a query exists) is appended.
    """
    base = (base or "").strip()
    if not base:
        raise ConfigError("Missing proxy base URL")
    encoded = encode_target(target_url or "")

    if _URL_PLACEHOLDER in base:
        return base.replace(_URL_PLACEHOLDER, encoded)
    if _QUERY_PREFIX_RE.search(base):
        return f"{base}{encoded}"
    if "?" in base:
        return f"{base}&url={encoded}"
    return f"{base}?url={encoded}"


def default_relay_urls(base: str, target_url: str) -> tuple[str, str]:
    """Return the ``(get, raw)`` endpoint URLs of the default relay for *target_url*."""
    base = (base or "").strip().rstrip("/")
    if not base:
        raise ConfigError("Missing proxy base URL")
    encoded = encode_target(target_url)
    return f"{base}/get?url={encoded}", f"{base}/raw?url={encoded}"
