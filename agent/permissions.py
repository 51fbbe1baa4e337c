"""Tool permission gate.

Decides per tool invocation whether to run it, refuse it, or ask the user.
Precedence, highest first:

    session deny > session allow > allow_all > always_deny > always_allow > ask

Patterns in ``always_allow`` / ``always_deny`` are exact names, ``prefix*``,
``*suffix``, or ``*`` for everything.

Session overlays (``allow_for_session`` / ``deny_for_session``) live until
``clear_session_permissions()`` and survive config updates.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, List, Literal, Optional, Union

from agent.messages import ToolCall

logger = logging.getLogger(__name__)

PermissionDecision = Literal["allow", "deny", "ask"]
PermissionResponse = Literal["allow_once", "allow_always", "deny"]

PermissionRequestCallback = Callable[
    [ToolCall], Union[PermissionResponse, Awaitable[PermissionResponse]]
]

SAFE_READ_TOOLS = ("read", "glob", "grep", "todoread", "phaseread", "skill")
WRITE_TOOLS = ("write", "edit", "bash")


@dataclass
class ToolPermissionConfig:
    allow_all: bool = False
    always_allow: List[str] = field(default_factory=list)
    always_deny: List[str] = field(default_factory=list)


def matches_pattern(tool_name: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return tool_name.startswith(pattern[:-1])
    if pattern.startswith("*"):
        return tool_name.endswith(pattern[1:])
    return tool_name == pattern


def matches_any(tool_name: str, patterns: List[str]) -> bool:
    return any(matches_pattern(tool_name, p) for p in patterns)


class ToolPermissionManager:
    def __init__(self, config: Optional[ToolPermissionConfig] = None):
        self._config = config or ToolPermissionConfig()
        self._session_allowed: set = set()
        self._session_denied: set = set()
        self._request_callback: Optional[PermissionRequestCallback] = None
        self._lock = threading.Lock()

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> ToolPermissionConfig:
        return replace(self._config)

    def update_config(self, **changes) -> None:
        self._config = replace(self._config, **changes)

    def set_request_callback(self, callback: Optional[PermissionRequestCallback]) -> None:
        self._request_callback = callback

    def get_request_callback(self) -> Optional[PermissionRequestCallback]:
        return self._request_callback

    # -- decisions ---------------------------------------------------------

    def get_permission_decision(self, tool_name: str) -> PermissionDecision:
        with self._lock:
            if tool_name in self._session_denied:
                return "deny"
            if tool_name in self._session_allowed:
                return "allow"
        if self._config.allow_all:
            return "allow"
        if matches_any(tool_name, self._config.always_deny):
            return "deny"
        if matches_any(tool_name, self._config.always_allow):
            return "allow"
        return "ask"

    async def check_permission(self, tool_call: ToolCall) -> bool:
        """Return True if *tool_call* may run, asking the user when needed."""
        decision = self.get_permission_decision(tool_call.name)
        logger.debug("Permission decision for %s: %s", tool_call.name, decision)
        if decision == "allow":
            return True
        if decision == "deny":
            return False

        if self._request_callback is None:
            logger.warning(
                "Tool permission request for '%s' but no callback set -- denying",
                tool_call.name,
            )
            return False

        response = self._request_callback(tool_call)
        if asyncio.iscoroutine(response) or isinstance(response, asyncio.Future):
            response = await response

        if response == "allow_once":
            return True
        if response == "allow_always":
            with self._lock:
                self._session_allowed.add(tool_call.name)
            return True
        return False

    # -- session overlays --------------------------------------------------

    def allow_for_session(self, tool_name: str) -> None:
        with self._lock:
            self._session_allowed.add(tool_name)
            self._session_denied.discard(tool_name)

    def deny_for_session(self, tool_name: str) -> None:
        with self._lock:
            self._session_denied.add(tool_name)
            self._session_allowed.discard(tool_name)

    def is_allowed_for_session(self, tool_name: str) -> bool:
        with self._lock:
            return tool_name in self._session_allowed

    def is_denied_for_session(self, tool_name: str) -> bool:
        with self._lock:
            return tool_name in self._session_denied

    def clear_session_permissions(self) -> None:
        with self._lock:
            self._session_allowed.clear()
            self._session_denied.clear()

    def get_session_allowed(self) -> List[str]:
        with self._lock:
            return sorted(self._session_allowed)

    def get_session_denied(self) -> List[str]:
        with self._lock:
            return sorted(self._session_denied)


def create_read_only_config() -> ToolPermissionConfig:
    """Allow the read-only built-ins, ask for everything else."""
    return ToolPermissionConfig(always_allow=list(SAFE_READ_TOOLS))


def create_strict_config() -> ToolPermissionConfig:
    return ToolPermissionConfig()


def create_permissive_config() -> ToolPermissionConfig:
    return ToolPermissionConfig(allow_all=True)
