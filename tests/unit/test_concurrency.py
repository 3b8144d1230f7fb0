"""
Unit tests for the bounded concurrency executor
"""

import asyncio

import pytest

from core.exceptions import ValidationError
from enrichment.concurrency import Outcome, capture, map_bounded


class TestMapBounded:
    """Test ordering, bounds and failure handling"""

    @pytest.mark.asyncio
    async def test_results_follow_input_order(self):
        """Slow early items still land at their own index"""
        async def worker(item):
            await asyncio.sleep(0.03 if item == 1 else 0.001)
            return item * 10

        result = await map_bounded([1, 2, 3, 4], 2, worker)

        assert result == [10, 20, 30, 40]

    @pytest.mark.asyncio
    async def test_never_exceeds_concurrency(self):
        in_flight = 0
        peak = 0

        async def worker(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return item

        await map_bounded(list(range(10)), 3, worker)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_single_item_with_high_concurrency(self):
        calls = []

        async def worker(item):
            calls.append(item)
            return item

        assert await map_bounded(["only"], 5, worker) == ["only"]
        assert calls == ["only"]

    @pytest.mark.asyncio
    async def test_empty_input_returns_empty_list(self):
        async def worker(item):
            raise AssertionError("worker must not run")

        assert await map_bounded([], 3, worker) == []

    @pytest.mark.asyncio
    async def test_zero_concurrency_rejected(self):
        async def worker(item):
            return item

        with pytest.raises(ValidationError):
            await map_bounded([1], 0, worker)

    @pytest.mark.asyncio
    async def test_worker_exception_propagates(self):
        async def worker(item):
            if item == 2:
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)
            return item

        with pytest.raises(RuntimeError, match="boom"):
            await map_bounded([1, 2, 3, 4], 2, worker)

    @pytest.mark.asyncio
    async def test_captured_worker_isolates_failures(self):
        async def worker(item):
            if item == "b":
                raise ValueError("bad item")
            return item.upper()

        outcomes = await map_bounded(["a", "b", "c"], 3, capture(worker))

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[0].value == "A"
        assert isinstance(outcomes[1].error, ValueError)
        assert outcomes[2].value == "C"


def test_outcome_constructors():
    assert Outcome.success(5) == Outcome(ok=True, value=5)
    error = KeyError("x")
    failed = Outcome.failure(error)
    assert failed.ok is False
    assert failed.error is error
