"""Tests for agent.cancellation -- the per-turn cancellation token.

Run with:
    python -m pytest tests/agent/test_cancellation.py -v
"""

import asyncio
import threading

import pytest

from agent.cancellation import AgentCancelledError, CancellationToken


class TestOnCancel:
    def test_callbacks_run_once(self):
        token = CancellationToken()
        fired = []
        token.on_cancel(lambda: fired.append(1))
        token.cancel()
        token.cancel()
        assert fired == [1]

    def test_already_cancelled_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        fired = []
        unsubscribe = token.on_cancel(lambda: fired.append(1))
        assert fired == [1]
        unsubscribe()

    def test_unsubscribe(self):
        token = CancellationToken()
        fired = []
        unsubscribe = token.on_cancel(lambda: fired.append(1))
        unsubscribe()
        unsubscribe()
        token.cancel()
        assert fired == []


class TestRace:
    @pytest.mark.asyncio
    async def test_completed_races_release_callbacks(self):
        token = CancellationToken()

        async def value(n):
            return n

        for n in range(1000):
            assert await token.race(value(n)) == n
        assert token._callbacks == []

    @pytest.mark.asyncio
    async def test_failed_race_releases_callback(self):
        token = CancellationToken()

        async def boom():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await token.race(boom())
        assert token._callbacks == []

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread(self):
        token = CancellationToken()
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.sleep(60)

        async def cancel_soon():
            await started.wait()
            threading.Thread(target=token.cancel).start()

        canceller = asyncio.ensure_future(cancel_soon())
        with pytest.raises(AgentCancelledError):
            await asyncio.wait_for(token.race(forever()), timeout=5)
        await canceller

    @pytest.mark.asyncio
    async def test_already_cancelled_raises_without_awaiting(self):
        token = CancellationToken()
        token.cancel()

        async def never():
            raise AssertionError("should not run")

        coro = never()
        with pytest.raises(AgentCancelledError):
            await token.race(coro)
        coro.close()
