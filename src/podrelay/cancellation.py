"""Caller-owned cancellation signals.

A signal is a plain ``asyncio.Event``: the caller sets it to abandon an
operation. Long-running operations check it between steps and race their
network awaits against it. Native task cancellation (``Task.cancel()``) is
honoured independently and surfaces as ``asyncio.CancelledError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from podrelay.errors import CancellationError

T = TypeVar("T")


def raise_if_cancelled(signal: asyncio.Event | None) -> None:
    if signal is not None and signal.is_set():
        raise CancellationError()


async def race_signal(awaitable: Awaitable[T], signal: asyncio.Event | None) -> T:
    """Await *awaitable*, abandoning it as soon as *signal* fires.

    Raises ``CancellationError`` if the signal wins. The abandoned work is
    cancelled so its connection is released promptly.
    """
    if signal is None:
        return await awaitable
    raise_if_cancelled(signal)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()

    if work.done() and not work.cancelled():
        return work.result()
    raise CancellationError()
