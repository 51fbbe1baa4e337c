"""Agent event stream.

The Agent publishes ``AgentEvent`` objects to an ``EventBus``; CLIs and
servers subscribe to render progress. For any message id, every
``message.delta`` is published after its ``message.start`` and before its
``message.complete``.

Events:
  - user.message               -- a user message was appended
  - message.start / .delta / .complete
  - tool.start / tool.complete
  - tool.permission.request / .granted / .denied
  - compaction.start / .complete / .error
  - command.result             -- a slash command produced output
  - error                      -- a turn failed
  - mcp.server.connected / .disconnected
  - mcp.tools.changed          -- a server's tools were re-registered

Errors in listeners are caught and logged but never block the agent loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

USER_MESSAGE = "user.message"
MESSAGE_START = "message.start"
MESSAGE_DELTA = "message.delta"
MESSAGE_COMPLETE = "message.complete"
TOOL_START = "tool.start"
TOOL_COMPLETE = "tool.complete"
TOOL_PERMISSION_REQUEST = "tool.permission.request"
TOOL_PERMISSION_GRANTED = "tool.permission.granted"
TOOL_PERMISSION_DENIED = "tool.permission.denied"
COMPACTION_START = "compaction.start"
COMPACTION_COMPLETE = "compaction.complete"
COMPACTION_ERROR = "compaction.error"
COMMAND_RESULT = "command.result"
ERROR = "error"
MCP_SERVER_CONNECTED = "mcp.server.connected"
MCP_SERVER_DISCONNECTED = "mcp.server.disconnected"
MCP_TOOLS_CHANGED = "mcp.tools.changed"


@dataclass
class AgentEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[AgentEvent], Any]


class EventBus:
    """
    Publish/subscribe channel for agent events.

    Usage:
        bus = EventBus()
        bus.subscribe(print)                     # every event
        bus.subscribe(on_tool, "tool.*")         # wildcard prefix
        bus.subscribe(on_delta, "message.delta") # exact type
    """

    def __init__(self):
        self._listeners: List[tuple] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Run async listeners of events emitted off-loop on *loop*."""
        self._loop = loop

    def subscribe(self, listener: Listener, event_type: str = "*") -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        entry = (event_type, listener)
        self._listeners.append(entry)

        def _unsubscribe():
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    @staticmethod
    def _matches(pattern: str, event_type: str) -> bool:
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return event_type.startswith(pattern[:-1])
        return pattern == event_type

    def _schedule(self, coro) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            running.create_task(coro)
        elif self._loop is None:
            asyncio.run(coro)
        elif self._loop.is_closed():
            coro.close()
            logger.warning("Dropped async listener: its event loop is closed")
        else:
            asyncio.run_coroutine_threadsafe(coro, self._loop)

    def emit(self, event_type: str, **data) -> AgentEvent:
        """Deliver an event to every matching listener, in subscription order.

        Sync listeners run inline. Async listeners are scheduled on the
        running loop or, when emitted from another thread, on the bound loop.
        """
        event = AgentEvent(type=event_type, data=data)
        for pattern, listener in list(self._listeners):
            if not self._matches(pattern, event_type):
                continue
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception:
                logger.error("Error in listener for '%s'", event_type, exc_info=True)
        return event
