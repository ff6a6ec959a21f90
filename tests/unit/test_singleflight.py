"""Unit tests for SingleFlight deduplication."""

from __future__ import annotations

import asyncio
import gc

import pytest

from podrelay.singleflight import SingleFlight


class TestSingleFlight:
    async def test_concurrent_callers_share_one_call(self) -> None:
        flight = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work() -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        first = asyncio.create_task(flight.do("k", work))
        second = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        assert "k" in flight
        release.set()
        assert await asyncio.gather(first, second) == ["done", "done"]
        assert calls == 1
        assert len(flight) == 0

    async def test_distinct_keys_run_separately(self) -> None:
        flight = SingleFlight()

        async def echo(value: str) -> str:
            await asyncio.sleep(0)
            return value

        results = await asyncio.gather(
            flight.do("a", lambda: echo("a")), flight.do("b", lambda: echo("b"))
        )
        assert results == ["a", "b"]

    async def test_failure_is_shared_and_cleared(self) -> None:
        flight = SingleFlight()
        calls = 0

        async def boom() -> None:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            raise ValueError("boom")

        outcomes = await asyncio.gather(
            flight.do("k", boom), flight.do("k", boom), return_exceptions=True
        )
        assert calls == 1
        assert all(isinstance(o, ValueError) for o in outcomes)

        with pytest.raises(ValueError):
            await flight.do("k", boom)
        assert calls == 2

    async def test_cancelling_one_caller_keeps_the_shared_work(self) -> None:
        flight = SingleFlight()
        release = asyncio.Event()

        async def work() -> int:
            await release.wait()
            return 42

        impatient = asyncio.create_task(flight.do("k", work))
        patient = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        impatient.cancel()
        with pytest.raises(asyncio.CancelledError):
            await impatient

        release.set()
        assert await patient == 42

    async def test_failure_after_every_caller_left_is_not_reported(self) -> None:
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        flight = SingleFlight()
        release = asyncio.Event()

        async def work() -> None:
            await release.wait()
            raise ValueError("boom")

        try:
            caller = asyncio.create_task(flight.do("k", work))
            await asyncio.sleep(0)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            release.set()
            for _ in range(3):
                await asyncio.sleep(0)
            assert "k" not in flight
            del caller
            gc.collect()
            assert reported == []
        finally:
            loop.set_exception_handler(None)
