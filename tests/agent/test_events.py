"""Tests for agent.events -- the EventBus observer channel.

Run with:
    python -m pytest tests/agent/test_events.py -v
"""

import asyncio
import functools
import threading

import pytest

from agent.events import MCP_SERVER_CONNECTED, TOOL_START, EventBus
from run_agent import Agent
from tests.fakes.scripted_provider import ScriptedProvider, text_response


class TestSubscribe:
    def test_exact_and_wildcard(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("all", e.type)))
        bus.subscribe(lambda e: seen.append(("tool", e.type)), "tool.*")
        bus.subscribe(lambda e: seen.append(("exact", e.type)), "error")

        bus.emit(TOOL_START, tool_call=None)
        bus.emit("error", error="x")

        assert seen == [
            ("all", "tool.start"), ("tool", "tool.start"),
            ("all", "error"), ("exact", "error"),
        ]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        bus.emit("error")
        assert seen == []

    def test_listener_error_is_logged_not_raised(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        event = bus.emit("error", error="x")

        assert seen == [event]
        assert "Error in listener for 'error'" in caplog.text


class TestAsyncListeners:
    @pytest.mark.asyncio
    async def test_scheduled_on_running_loop(self):
        bus = EventBus()
        done = asyncio.Event()

        async def listener(event):
            done.set()

        bus.subscribe(listener)
        bus.emit("error")
        await asyncio.wait_for(done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_emitted_from_thread_runs_on_bound_loop(self):
        loop = asyncio.get_running_loop()
        bus = EventBus()
        bus.bind_loop(loop)
        done = asyncio.Event()
        ran_on = []

        async def listener(event):
            ran_on.append((asyncio.get_running_loop(), threading.current_thread()))
            done.set()

        bus.subscribe(listener, "mcp.*")
        await loop.run_in_executor(None, functools.partial(bus.emit, MCP_SERVER_CONNECTED, name="gh"))

        await asyncio.wait_for(done.wait(), timeout=2)
        assert ran_on == [(loop, threading.main_thread())]

    def test_without_loop_runs_to_completion(self):
        bus = EventBus()
        seen = []

        async def listener(event):
            seen.append(event.type)

        bus.subscribe(listener)
        bus.emit("error")
        assert seen == ["error"]

    @pytest.mark.asyncio
    async def test_agent_binds_its_loop(self):
        agent = Agent(provider=ScriptedProvider([text_response("Hi")]))
        await agent.prompt("Hello")
        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        ran_on = []

        async def listener(event):
            ran_on.append(asyncio.get_running_loop())
            done.set()

        agent.on(listener, "mcp.server.connected")
        await loop.run_in_executor(None, functools.partial(agent.emit, MCP_SERVER_CONNECTED, name="gh"))

        await asyncio.wait_for(done.wait(), timeout=2)
        assert ran_on == [loop]
