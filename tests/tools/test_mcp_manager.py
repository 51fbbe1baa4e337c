"""
Tests for tools.mcp_manager -- multi-server federation.

A fake client factory stands in for real transports so catalog, routing,
status and reconnect behavior can be tested without subprocesses; a few
tests drive the real stdio fake server for notification and cancellation
timing.

Run with: python -m pytest tests/tools/test_mcp_manager.py -v
"""

import os
import sys
import threading
import time

import pytest

from agent.cancellation import AgentCancelledError, CancellationToken
from tools.mcp_client import MCPConnectionError, MCPError, MCPToolError
from tools.mcp_manager import (
    SERVER_CONNECTED,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    TOOLS_CHANGED,
    MCPManager,
    _sanitize_name,
    extract_prompt_text,
    extract_resource_text,
    extract_tool_text,
    make_tool_name,
)
from tests.fakes.fake_mcp_client import FakeFactory


def _manager(specs):
    factory = FakeFactory(specs)
    manager = MCPManager(client_factory=factory)
    events = []
    manager.on_event(lambda event_type, data: events.append((event_type, data)))
    return manager, factory, events


STDIO = {"command": "fake"}
FAKE_SERVER = os.path.join(os.path.dirname(os.path.dirname(__file__)), "fakes", "fake_mcp_server.py")


class TestNames:
    def test_make_tool_name(self):
        assert make_tool_name("github", "create_issue") == "github_create_issue"

    def test_sanitization(self):
        assert _sanitize_name("My Server!") == "my_server"
        assert make_tool_name("my-server", "Create.Issue") == "my_server_create_issue"
        assert _sanitize_name("a__b") == "a_b"


class TestExtractors:
    def test_tool_text(self):
        result = {"content": [
            {"type": "text", "text": "one"},
            {"type": "resource", "resource": {"text": "two"}},
            {"type": "image", "data": "..."},
        ]}
        text = extract_tool_text(result)
        assert text.startswith("one\ntwo\n")
        assert '"image"' in text

    def test_resource_text(self):
        assert extract_resource_text({"contents": [{"text": "hi"}]}) == "hi"
        assert extract_resource_text({"contents": [{"blob": "aGk="}]}) == "aGk="
        assert extract_resource_text({}) == ""

    def test_prompt_text(self):
        result = {"messages": [
            {"content": {"type": "text", "text": "a"}},
            {"content": "b"},
        ]}
        assert extract_prompt_text(result) == "a\n\nb"


class TestLoadFromConfig:
    def test_namespaced_catalog_and_routing(self):
        manager, factory, events = _manager({"github": {"tools": ["create_issue", "list_repos"]}})
        statuses = manager.load_from_config({"github": STDIO})

        assert statuses["github"].connected
        assert statuses["github"].tool_count == 2
        names = sorted(t.namespaced_name for t in manager.get_tools())
        assert names == ["github_create_issue", "github_list_repos"]

        assert manager.call_tool("github_create_issue", {"title": "Bug"}) == "create_issue ok"
        assert factory.created[0].calls == [("create_issue", {"title": "Bug"})]
        assert (SERVER_CONNECTED, {"name": "github", "tool_count": 2}) in events

    def test_failing_server_is_isolated(self):
        manager, factory, events = _manager({"good": {"tools": ["ping"]}})
        factory.failing.add("bad")

        statuses = manager.load_from_config({"good": STDIO, "bad": STDIO})

        assert statuses["good"].connected
        assert not statuses["bad"].connected
        assert "cannot reach bad" in statuses["bad"].error
        assert [t.namespaced_name for t in manager.get_tools()] == ["good_ping"]
        assert any(e[0] == SERVER_ERROR and e[1]["name"] == "bad" for e in events)

    def test_invalid_config_reported(self):
        manager, _, _ = _manager({})
        statuses = manager.load_from_config({"broken": {"transport": "sse"}})
        assert statuses["broken"].connected is False
        assert statuses["broken"].error

    def test_disabled_server_not_connected(self):
        manager, factory, _ = _manager({"off": {"tools": ["x"]}})
        statuses = manager.load_from_config({"off": {"command": "fake", "enabled": False}})
        assert statuses["off"].connected is False
        assert statuses["off"].enabled is False
        assert factory.created == []

    def test_empty_config(self):
        assert _manager({})[0].load_from_config({}) == {}


class TestCatalog:
    def test_collision_keeps_first(self):
        manager, _, _ = _manager({"a_b": {"tools": ["c"]}, "a": {"tools": ["b_c"]}})
        manager.add_server("a_b", STDIO)
        manager.add_server("a", STDIO)
        tools = manager.get_tools()
        assert len(tools) == 1
        assert tools[0].server_name == "a_b"

    def test_resources_and_prompts(self):
        manager, _, _ = _manager({"docs": {
            "resources": [{"uri": "file:///readme.md", "name": "readme"}],
            "prompts": [{"name": "summarize", "arguments": [{"name": "text"}]}],
        }})
        manager.add_server("docs", STDIO)

        assert manager.get_resources("docs")[0].namespaced_name == "docs_readme"
        assert manager.get_resources("other") == []
        assert manager.read_resource("file:///readme.md") == "body of file:///readme.md"
        assert manager.invoke_prompt("docs_summarize", {"text": "x"}) == "summarize: {'text': 'x'}"

    def test_unknown_names(self):
        manager, _, _ = _manager({})
        with pytest.raises(MCPError):
            manager.call_tool("nope_tool")
        with pytest.raises(MCPError):
            manager.read_resource("file:///nowhere")
        with pytest.raises(MCPError):
            manager.invoke_prompt("nope_prompt")

    def test_tool_error_raises(self):
        manager, _, _ = _manager({"gh": {
            "tools": ["fail"],
            "results": {"fail": {"content": [{"type": "text", "text": "rate limited"}], "isError": True}},
        }})
        manager.add_server("gh", STDIO)
        with pytest.raises(MCPToolError, match="rate limited"):
            manager.call_tool("gh_fail")

    def test_list_changed_refreshes_tools(self):
        manager, factory, events = _manager({"gh": {"tools": ["one"]}})
        refreshed = threading.Event()
        manager.on_event(lambda event_type, data: event_type == TOOLS_CHANGED and refreshed.set())
        manager.add_server("gh", STDIO)
        client = factory.created[0]
        client.tools.append({"name": "two", "inputSchema": {"type": "object"}})

        client.notification_handlers["notifications/tools/list_changed"]({})

        assert refreshed.wait(5)
        assert sorted(t.namespaced_name for t in manager.get_tools()) == ["gh_one", "gh_two"]
        assert (TOOLS_CHANGED, {"name": "gh", "tool_count": 2}) in events

    def test_calls_pass_cancellation_to_client(self):
        manager, factory, _ = _manager({"gh": {
            "tools": ["one"],
            "resources": [{"uri": "repo://readme", "name": "readme"}],
            "prompts": [{"name": "triage"}],
        }})
        manager.add_server("gh", STDIO)
        token = CancellationToken()

        manager.call_tool("gh_one", {}, cancellation=token)
        manager.read_resource("repo://readme", cancellation=token)
        manager.invoke_prompt("gh_triage", cancellation=token)

        assert factory.created[0].tokens == [token, token, token]


class TestStdioServer:
    """Against the real subprocess in tests/fakes/fake_mcp_server.py."""

    @pytest.fixture
    def manager(self):
        manager = MCPManager()
        yield manager
        manager.shutdown()

    def test_list_changed_during_call(self, manager):
        refreshed = threading.Event()
        manager.on_event(lambda event_type, data: event_type == TOOLS_CHANGED and refreshed.set())
        manager.add_server("srv", {"command": sys.executable, "args": [FAKE_SERVER, "--extra"], "timeoutMs": 3000})
        assert manager.get_tool("srv_late") is None

        assert manager.call_tool("srv_notify", {}) == "notified"

        assert refreshed.wait(5)
        assert manager.get_tool("srv_late") is not None
        assert manager.call_tool("srv_late", {}) == "late ok"

    def test_cancelled_call_leaves_server_usable(self, manager):
        manager.add_server("srv", {"command": sys.executable, "args": [FAKE_SERVER, "--extra"], "timeoutMs": 10000})
        token = CancellationToken()
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(AgentCancelledError):
                manager.call_tool("srv_slow", {"seconds": 5}, cancellation=token)
        finally:
            timer.cancel()
        assert time.monotonic() - start < 2
        assert manager.is_connected("srv")
        assert manager.call_tool("srv_add", {"a": 2, "b": 3}) == "5"


class TestLifecycle:
    def test_remove_server_evicts(self):
        manager, factory, events = _manager({"gh": {"tools": ["one"]}})
        manager.add_server("gh", STDIO)
        assert manager.remove_server("gh") is True
        assert manager.get_tools() == []
        assert manager.get_server_names() == []
        assert not factory.created[0].connected
        assert (SERVER_DISCONNECTED, {"name": "gh", "reason": "removed"}) in events
        assert manager.remove_server("gh") is False

    def test_unexpected_disconnect_then_reconnect_on_call(self):
        manager, factory, events = _manager({"gh": {"tools": ["one"]}})
        manager.add_server("gh", STDIO)
        factory.created[0].drop("process exited")

        assert not manager.is_connected("gh")
        assert (SERVER_DISCONNECTED, {"name": "gh", "reason": "process exited"}) in events
        assert manager.get_server_statuses()[0].error == "process exited"

        assert manager.call_tool("gh_one") == "one ok"
        assert len(factory.created) == 2
        assert manager.is_connected("gh")

    def test_backoff_after_failed_reconnect(self):
        manager, factory, _ = _manager({"gh": {"tools": ["one"]}})
        manager.add_server("gh", STDIO)
        factory.created[0].drop()
        factory.failing.add("gh")

        with pytest.raises(MCPConnectionError, match="cannot reach gh"):
            manager.call_tool("gh_one")
        with pytest.raises(MCPConnectionError, match="is disconnected"):
            manager.call_tool("gh_one")

    def test_explicit_reconnect(self):
        manager, factory, _ = _manager({"gh": {"tools": ["one"]}})
        manager.add_server("gh", STDIO)
        status = manager.reconnect("gh")
        assert status.connected
        assert len(factory.created) == 2
        with pytest.raises(MCPConnectionError):
            manager.reconnect("missing")

    def test_add_server_replaces(self):
        manager, factory, _ = _manager({"gh": {"tools": ["one"]}})
        manager.add_server("gh", STDIO)
        manager.add_server("gh", STDIO)
        assert not factory.created[0].connected
        assert len(manager.get_tools()) == 1

    def test_shutdown(self):
        manager, factory, _ = _manager({"a": {"tools": ["x"]}, "b": {"tools": ["y"]}})
        manager.load_from_config({"a": STDIO, "b": STDIO})
        manager.shutdown()
        assert manager.get_server_names() == []
        assert manager.get_tools() == []
        assert all(not c.connected for c in factory.created)
