"""Integration test fixtures.

Provides a fully wired AppState over in-memory SQLite and a real httpx
client (requests are intercepted with respx), plus an isolated environment
for running the CLI as a subprocess.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest

from podrelay.cache import SqliteKeyValueStore, TtlCache
from podrelay.state import AppState, build_app_state

if TYPE_CHECKING:
    from pathlib import Path

    from podrelay.config import Settings


@pytest.fixture()
async def app_state(settings: Settings, clock) -> AppState:
    """Full AppState backed by SQLite, with the fake clock driving cache ages."""
    async with aiosqlite.connect(":memory:") as db:
        store = SqliteKeyValueStore(db)
        await store.init_db()
        cache = TtlCache(store, clock=clock)

        async with httpx.AsyncClient() as client:
            yield build_app_state(settings, client, cache)


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Environment for ``python -m podrelay`` that never touches the user's files."""
    env = {
        k: v
        for k, v in os.environ.items()
        if not k.startswith("PODRELAY__") and k not in ("HOME", "USERPROFILE")
    }
    env["HOME"] = str(tmp_path)
    env["USERPROFILE"] = str(tmp_path)
    env["PODRELAY__CACHE__DB_PATH"] = str(tmp_path / "cache" / "cache.db")
    env["PODRELAY__LOGGING__LEVEL"] = "WARNING"
    return env
