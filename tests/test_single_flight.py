from __future__ import annotations

import asyncio

import pytest

from engine.single_flight import SingleFlight


def test_concurrent_callers_share_one_execution() -> None:
    flight: SingleFlight[str] = SingleFlight()
    calls = {"count": 0}

    async def work() -> str:
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return "done"

    async def _run():
        results = await asyncio.gather(*(flight.run("track", work) for _ in range(5)))
        return results

    results = asyncio.run(_run())

    assert results == ["done"] * 5
    assert calls["count"] == 1
    assert len(flight) == 0


def test_key_is_released_after_failure() -> None:
    flight: SingleFlight[str] = SingleFlight()
    attempts = {"count": 0}

    async def failing() -> str:
        attempts["count"] += 1
        raise RuntimeError("boom")

    async def _run():
        results = await asyncio.gather(
            flight.run("track", failing),
            flight.run("track", failing),
            return_exceptions=True,
        )
        assert not flight.in_flight("track")
        again = await flight.run("track", failing_then_ok)
        return results, again

    async def failing_then_ok() -> str:
        attempts["count"] += 1
        return "ok"

    results, again = asyncio.run(_run())

    assert all(isinstance(r, RuntimeError) for r in results)
    assert again == "ok"
    assert attempts["count"] == 2


def test_waiter_cancellation_does_not_cancel_shared_task() -> None:
    flight: SingleFlight[str] = SingleFlight()
    release = None

    async def work() -> str:
        await release.wait()
        return "value"

    async def _run():
        nonlocal release
        release = asyncio.Event()
        first = asyncio.ensure_future(flight.run("k", work))
        second = asyncio.ensure_future(flight.run("k", work))
        await asyncio.sleep(0)
        first.cancel()
        release.set()
        with pytest.raises(asyncio.CancelledError):
            await first
        return await second

    assert asyncio.run(_run()) == "value"


def test_distinct_keys_run_independently() -> None:
    flight: SingleFlight[str] = SingleFlight()
    seen = []

    async def work_for(key: str):
        async def _work() -> str:
            seen.append(key)
            return key

        return await flight.run(key, _work)

    async def _run():
        return await asyncio.gather(work_for("a"), work_for("b"))

    assert asyncio.run(_run()) == ["a", "b"]
    assert sorted(seen) == ["a", "b"]
