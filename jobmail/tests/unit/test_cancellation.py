"""
Test cooperative cancellation and bounded fan-out.
"""
import asyncio

import pytest

from jobmail.core.pipeline.cancellation import CancellationToken, run_bounded


class TestRunBounded:
    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        async def work(value, delay):
            await asyncio.sleep(delay)
            return value

        factories = [lambda v=v, d=d: work(v, d) for v, d in [(1, 0.03), (2, 0.01), (3, 0.02)]]

        assert await run_bounded(factories, limit=3) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_limit_respected(self):
        in_flight = 0
        peak = 0

        async def work():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await run_bounded([work for _ in range(8)], limit=3)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_first_failure_propagates_and_cancels_rest(self):
        finished = []

        async def fails():
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

        async def slow():
            await asyncio.sleep(1)
            finished.append(True)

        with pytest.raises(RuntimeError, match="boom"):
            await run_bounded([fails, slow, slow], limit=3)

        assert finished == []

    @pytest.mark.asyncio
    async def test_cancel_token_stops_in_flight_work(self):
        token = CancellationToken()
        started = []

        async def slow(index):
            started.append(index)
            if index == 0:
                token.cancel()
            await asyncio.sleep(1)
            return index

        results = await asyncio.wait_for(
            run_bounded([lambda i=i: slow(i) for i in range(4)], limit=1, token=token),
            timeout=0.5,
        )

        assert results == [None, None, None, None]
        assert started == [0]
        assert token.is_cancelled

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await run_bounded([], limit=2) == []


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_wait_returns_after_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        await asyncio.wait_for(token.wait(), timeout=0.5)

        assert token.is_cancelled
