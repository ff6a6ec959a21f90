"""Deduplicated async calls keyed by a canonical string."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Share one in-flight operation between concurrent callers of the same key.

    The task is registered before the first await and removed as soon as it
    finishes, successfully or not, so a later call starts a fresh operation.
    Each caller awaits the shared task through ``asyncio.shield``: cancelling
    one caller does not cancel the work the others are waiting on.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, fn))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            current = asyncio.current_task()
            if self._inflight.get(key) is current:
                del self._inflight[key]


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # Nobody awaits the task once every caller has been cancelled.
    if not task.cancelled():
        task.exception()
