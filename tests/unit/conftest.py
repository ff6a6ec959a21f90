"""Unit-specific fixtures (no I/O beyond in-memory SQLite)."""

from __future__ import annotations

import aiosqlite
import pytest

from podrelay.cache import SqliteKeyValueStore


@pytest.fixture()
async def sqlite_store():
    """In-memory SQLite key/value store for unit tests."""
    async with aiosqlite.connect(":memory:") as db:
        s = SqliteKeyValueStore(db)
        await s.init_db()
        yield s
