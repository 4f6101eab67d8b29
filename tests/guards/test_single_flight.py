"""Tests for per-key in-flight de-duplication."""

import asyncio

import pytest

from reward_distributor.guards.single_flight import SingleFlight


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSingleFlight:
    """Tests for SingleFlight."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        calls = 0
        gate = asyncio.Event()

        async def work() -> int:
            nonlocal calls
            calls += 1
            await gate.wait()
            return 42

        first = asyncio.create_task(flight.do("wallet", work))
        second = asyncio.create_task(flight.do("wallet", work))
        await asyncio.sleep(0)
        assert flight.in_flight("wallet")
        gate.set()

        assert await asyncio.gather(first, second) == [42, 42]
        assert calls == 1
        assert not flight.in_flight("wallet")

    @pytest.mark.asyncio
    async def test_without_ttl_nothing_is_memoized(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        results = iter([1, 2])

        async def work() -> int:
            return next(results)

        assert await flight.do("k", work) == 1
        assert await flight.do("k", work) == 2

    @pytest.mark.asyncio
    async def test_ttl_memoizes_until_expiry(self) -> None:
        clock = FakeClock()
        flight: SingleFlight[int] = SingleFlight(ttl_seconds=2.5, clock=clock)
        results = iter([1, 2])

        async def work() -> int:
            return next(results)

        assert await flight.do("k", work) == 1
        clock.now = 0.5
        assert await flight.do("k", work) == 1
        assert flight.peek("k") == 1

        clock.now = 3.0
        assert flight.peek("k") is None
        assert await flight.do("k", work) == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_memoized(self) -> None:
        flight: SingleFlight[int] = SingleFlight(ttl_seconds=60)
        attempts = 0

        async def flaky() -> int:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("upstream down")
            return 7

        with pytest.raises(RuntimeError):
            await flight.do("k", flaky)
        assert await flight.do("k", flaky) == 7

    @pytest.mark.asyncio
    async def test_cache_if_filters_results(self) -> None:
        flight: SingleFlight[dict] = SingleFlight(ttl_seconds=60, cache_if=lambda v: not v.get("degraded"))

        async def degraded() -> dict:
            return {"degraded": True}

        await flight.do("k", degraded)
        assert flight.peek("k") is None

    @pytest.mark.asyncio
    async def test_forget_drops_memo(self) -> None:
        flight: SingleFlight[int] = SingleFlight(ttl_seconds=60)

        async def work() -> int:
            return 1

        await flight.do("k", work)
        flight.forget("k")
        assert flight.peek("k") is None

    @pytest.mark.asyncio
    async def test_max_entries_evicts_oldest(self) -> None:
        flight: SingleFlight[str] = SingleFlight(ttl_seconds=60, max_entries=2)

        for key in ("a", "b", "c"):

            async def work(key: str = key) -> str:
                return key

            await flight.do(key, work)

        assert flight.peek("a") is None
        assert flight.peek("b") == "b"
        assert flight.peek("c") == "c"

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_work(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        gate = asyncio.Event()

        async def work() -> int:
            await gate.wait()
            return 5

        impatient = asyncio.create_task(flight.do("k", work))
        patient = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        impatient.cancel()
        gate.set()

        assert await patient == 5
        with pytest.raises(asyncio.CancelledError):
            await impatient
