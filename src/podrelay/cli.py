"""Command-line interface.

Every command prints one JSON document on stdout. Failures print
``{"error": {"code", "message", "recoverable"}}`` instead and exit non-zero.
Logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from podrelay import __version__
from podrelay.config import Settings
from podrelay.errors import ConfigError, PodRelayError
from podrelay.logging_setup import configure_logging
from podrelay.recommend import RecommendationFeed
from podrelay.state import AppState, open_app_state

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podrelay",
        description="Resolve podcast catalogs and feeds through unreliable endpoints.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--country", default=None, help="Catalog storefront, e.g. us or de")
    parser.add_argument("--lang", default="en", help="Language of the recommendation surface")
    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Keyword search of the catalog")
    search.add_argument("term")
    search.add_argument("--limit", type=int, default=None)

    feed = sub.add_parser("feed", help="Fetch and parse a podcast feed")
    feed.add_argument("url")

    probe = sub.add_parser("probe", help="Check whether a feed can be fetched from here")
    probe.add_argument("url")

    recommend = sub.add_parser("recommend", help="Load recommended podcasts by category")
    recommend.add_argument("--groups", type=int, default=None, help="Minimum number of groups")

    health = sub.add_parser("proxy-health", help="Check the configured CORS relay")
    health.add_argument("--target", default="https://example.com/")

    sub.add_parser("purge", help="Remove expired cache entries")
    return parser


async def _recommend(state: AppState, country: str | None, lang: str, minimum: int | None) -> Any:
    feed = RecommendationFeed(state.loader, state.settings)
    try:
        groups = await feed.open(country or "", lang)
        while minimum is not None and len(groups) < minimum and not feed.all_loaded:
            before = len(groups)
            groups = await feed.load_more()
            if len(groups) == before:
                break
        await feed.wait_idle()
        return {
            "country": feed.country,
            "lang": feed.lang,
            "phase": str(feed.phase),
            "all_loaded": feed.all_loaded,
            "groups": [g.model_dump(mode="json") for g in feed.groups],
        }
    finally:
        await feed.close()


async def _dispatch(args: argparse.Namespace, settings: Settings) -> Any:
    async with open_app_state(settings) as state:
        if args.command == "search":
            results = await state.catalog.search(args.term, args.country, limit=args.limit)
            return {"results": [p.model_dump(mode="json") for p in results]}
        if args.command == "feed":
            parsed = await state.catalog.fetch_feed(args.url)
            return parsed.model_dump(mode="json")
        if args.command == "probe":
            ok = await state.prober.probe(args.country, args.url)
            record = await state.prober.get_status(args.country, args.url)
            return {"feed_url": args.url, "ok": ok, "reason": record.reason if record else ""}
        if args.command == "recommend":
            return await _recommend(state, args.country, args.lang, args.groups)
        if args.command == "proxy-health":
            health = await state.fetcher.check_proxy_health(args.target)
            return health.model_dump(mode="json")
        if args.command == "purge":
            return {"removed": await state.cache.purge_families(state.families)}
    raise ConfigError(f"Unknown command: {args.command}")


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        _emit({"error": ConfigError(f"Invalid configuration: {exc}").to_dict()})
        return EXIT_CONFIG

    configure_logging(settings.logging)
    try:
        result = asyncio.run(_dispatch(args, settings))
    except PodRelayError as exc:
        _emit({"error": exc.to_dict()})
        return EXIT_FAILURE
    _emit(result)
    return EXIT_OK
