"""Tests for agent.permissions -- the tool permission gate.

Run with: python -m pytest tests/test_permissions.py -v
"""

import pytest

from agent.messages import ToolCall
from agent.permissions import (
    ToolPermissionConfig,
    ToolPermissionManager,
    create_permissive_config,
    create_read_only_config,
    create_strict_config,
    matches_any,
    matches_pattern,
)


def _call(name):
    return ToolCall(id="c1", name=name, arguments={})


class TestPatterns:
    @pytest.mark.parametrize("name,pattern,expected", [
        ("read", "read", True),
        ("read", "write", False),
        ("github_create_issue", "github_*", True),
        ("linear_create_issue", "*_create_issue", True),
        ("anything", "*", True),
        ("gitlab_x", "github_*", False),
    ])
    def test_matches_pattern(self, name, pattern, expected):
        assert matches_pattern(name, pattern) is expected

    def test_matches_any(self):
        assert matches_any("bash", ["read", "ba*"])
        assert not matches_any("bash", [])


class TestDecision:
    def test_default_is_ask(self):
        assert ToolPermissionManager().get_permission_decision("bash") == "ask"

    def test_always_allow(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(always_allow=["read"]))
        assert mgr.get_permission_decision("read") == "allow"
        assert mgr.get_permission_decision("write") == "ask"

    def test_always_deny_beats_always_allow(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(always_allow=["bash"], always_deny=["bash"]))
        assert mgr.get_permission_decision("bash") == "deny"

    def test_allow_all_beats_always_deny(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(allow_all=True, always_deny=["bash"]))
        assert mgr.get_permission_decision("bash") == "allow"

    def test_session_allow_beats_always_deny(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(always_deny=["bash"]))
        mgr.allow_for_session("bash")
        assert mgr.get_permission_decision("bash") == "allow"

    def test_session_deny_beats_everything(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(allow_all=True, always_allow=["bash"]))
        mgr.allow_for_session("bash")
        mgr.deny_for_session("bash")
        assert mgr.get_permission_decision("bash") == "deny"

    def test_clear_session_permissions(self):
        mgr = ToolPermissionManager()
        mgr.allow_for_session("read")
        mgr.deny_for_session("bash")
        mgr.clear_session_permissions()
        assert mgr.get_session_allowed() == []
        assert mgr.get_session_denied() == []
        assert mgr.get_permission_decision("read") == "ask"

    def test_session_overlay_survives_config_update(self):
        mgr = ToolPermissionManager()
        mgr.allow_for_session("bash")
        mgr.update_config(always_deny=["*"])
        assert mgr.get_permission_decision("bash") == "allow"
        assert mgr.get_permission_decision("write") == "deny"


class TestCheckPermission:
    @pytest.mark.asyncio
    async def test_no_callback_denies(self):
        assert await ToolPermissionManager().check_permission(_call("bash")) is False

    @pytest.mark.asyncio
    async def test_allow_once_does_not_persist(self):
        mgr = ToolPermissionManager()
        mgr.set_request_callback(lambda tc: "allow_once")
        assert await mgr.check_permission(_call("bash")) is True
        assert not mgr.is_allowed_for_session("bash")

    @pytest.mark.asyncio
    async def test_allow_always_adds_session_allow(self):
        mgr = ToolPermissionManager()
        mgr.set_request_callback(lambda tc: "allow_always")
        assert await mgr.check_permission(_call("bash")) is True
        assert mgr.is_allowed_for_session("bash")
        assert mgr.get_permission_decision("bash") == "allow"

    @pytest.mark.asyncio
    async def test_async_callback_deny(self):
        seen = []

        async def callback(tc):
            seen.append(tc.name)
            return "deny"

        mgr = ToolPermissionManager()
        mgr.set_request_callback(callback)
        assert await mgr.check_permission(_call("write")) is False
        assert seen == ["write"]

    @pytest.mark.asyncio
    async def test_allowed_tool_skips_callback(self):
        mgr = ToolPermissionManager(ToolPermissionConfig(always_allow=["read"]))
        mgr.set_request_callback(lambda tc: pytest.fail("callback should not run"))
        assert await mgr.check_permission(_call("read")) is True


class TestPresets:
    def test_read_only(self):
        mgr = ToolPermissionManager(create_read_only_config())
        assert mgr.get_permission_decision("read") == "allow"
        assert mgr.get_permission_decision("grep") == "allow"
        assert mgr.get_permission_decision("bash") == "ask"

    def test_strict_asks_for_everything(self):
        mgr = ToolPermissionManager(create_strict_config())
        assert mgr.get_permission_decision("read") == "ask"

    def test_permissive(self):
        mgr = ToolPermissionManager(create_permissive_config())
        assert mgr.get_permission_decision("bash") == "allow"
