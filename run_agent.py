#!/usr/bin/env python3
"""
Agent orchestrator.

The ``Agent`` owns one conversation: its message history, the active model
provider, the installed plugins and the tool/provider/command registries.
Each ``prompt()`` call runs one user turn through the agent loop:

  1. Slash commands (``/help``, ``/compact``, ...) are dispatched first; a
     command either answers directly or rewrites the input and continues
  2. Plugin ``on_before_prompt`` hooks transform the text, in install order
  3. The user message is appended and the loop starts. Each iteration
     compacts the history when the budget is exceeded, streams one
     assistant response, and, if it requested tools, executes them
     (through the permission gate) and appends their results
  4. The loop ends on a response without tool calls; plugin
     ``on_after_prompt`` hooks then run

The loop fails hard on: no provider, the same tool-call set repeated over
the whole loop-detection window, or the iteration cap. Tool failures are
fed back to the model as error results instead.

Only one ``prompt()`` may run at a time per Agent. ``abort()`` cancels the
turn's token; the provider stream and running tools stop at their next
checkpoint and ``prompt()`` raises ``AgentCancelledError``.

Usage:
    from run_agent import Agent
    from agent.openai_provider import OpenAIProvider

    agent = Agent(provider=OpenAIProvider(), model="gpt-4o")
    agent.on(lambda event: print(event.type, event.data))
    reply = await agent.prompt("Summarize README.md")
"""

import asyncio
import json
import logging
import os
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from agent.cancellation import AgentCancelledError, CancellationToken
from agent.commands import BUILTIN_COMMANDS, parse_command, run_command
from agent.compaction import CompactionConfig, CompactionEngine, CompactionResult, CompactionStats
from agent.events import (
    COMMAND_RESULT,
    COMPACTION_COMPLETE,
    COMPACTION_ERROR,
    COMPACTION_START,
    ERROR,
    MCP_SERVER_CONNECTED,
    MCP_SERVER_DISCONNECTED,
    MCP_TOOLS_CHANGED,
    MESSAGE_COMPLETE,
    MESSAGE_DELTA,
    MESSAGE_START,
    TOOL_COMPLETE,
    TOOL_START,
    USER_MESSAGE,
    AgentEvent,
    EventBus,
)
from agent.messages import Message, ToolCall
from agent.permissions import PermissionRequestCallback, ToolPermissionConfig, ToolPermissionManager
from agent.plugin import CommandContext, Plugin, SkillSource, ToolContext
from agent.provider import StreamRequest
from agent.registry import CommandRegistry, ProviderRegistry, RegistryError, ToolRegistry
from agent.tool_executor import execute_tool_calls
from relay_constants import COMMAND_SIGIL, DEFAULT_LOOP_WINDOW, DEFAULT_MAX_ITERATIONS
from tools.mcp_config import load_mcp_config
from tools.mcp_manager import SERVER_CONNECTED, SERVER_DISCONNECTED, TOOLS_CHANGED, MCPManager
from tools.mcp_tool import register_mcp_tools, register_server_tools, unregister_tools

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working in the user's project. Use the "
    "available tools to inspect and change files, and explain what you did."
)


class AgentError(RuntimeError):
    """A failure that aborts the current turn."""


class NoProviderError(AgentError):
    pass


class LoopDetectedError(AgentError):
    pass


class MaxIterationsError(AgentError):
    pass


async def _maybe_await(value):
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value


def tool_call_signature(tool_calls: List[ToolCall]) -> str:
    """Order-independent signature of a tool-call set (names + arguments)."""
    return "|".join(sorted(
        f"{tc.name}:{json.dumps(tc.arguments, sort_keys=True, default=str)}"
        for tc in tool_calls
    ))


class Agent:
    """
    Conversational agent driving a model provider and a set of tools.
    """

    def __init__(
        self,
        provider=None,
        model: str = DEFAULT_MODEL,
        system_prompt: Optional[str] = None,
        working_directory: Optional[str] = None,
        session_id: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        compaction: Optional[CompactionConfig] = None,
        permissions: Optional[ToolPermissionConfig] = None,
        tools: Optional[ToolRegistry] = None,
        providers: Optional[ProviderRegistry] = None,
        commands: Optional[CommandRegistry] = None,
        mcp_manager: Optional[MCPManager] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        loop_window: int = DEFAULT_LOOP_WINDOW,
        session_manager: Any = None,
        skill_manager: Any = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if loop_window < 2:
            raise ValueError("loop_window must be >= 2")

        self.model = model
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.working_directory = working_directory or os.getcwd()
        self.session_id = session_id
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.loop_window = loop_window
        self.session_manager = session_manager
        self.skill_manager = skill_manager

        self.tools = tools if tools is not None else ToolRegistry()
        self.providers = providers if providers is not None else ProviderRegistry()
        self.commands = commands if commands is not None else CommandRegistry()
        for command in BUILTIN_COMMANDS:
            if not self.commands.has(command.name):
                self.commands.register(command)

        self.events = EventBus()
        self.permissions = ToolPermissionManager(permissions)
        self.compaction_config = compaction or CompactionConfig()

        self._provider = None
        self._compaction_engine: Optional[CompactionEngine] = None
        if provider is not None:
            self.set_provider(provider)

        self._messages: List[Message] = []
        self._plugins: Dict[str, Plugin] = {}
        self._skill_sources: List[SkillSource] = []
        self._extensions: Dict[str, Any] = {}
        self._todos: List[Dict[str, Any]] = []
        self._phases: List[Dict[str, Any]] = []
        self._cancellation: Optional[CancellationToken] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.mcp = mcp_manager
        self._mcp_tool_names: Dict[str, List[str]] = {}
        if self.mcp is not None:
            self.mcp.on_event(self._on_mcp_event)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, listener: Callable[[AgentEvent], Any], event_type: str = "*") -> Callable[[], None]:
        return self.events.subscribe(listener, event_type)

    def emit(self, event_type: str, **data) -> AgentEvent:
        return self.events.emit(event_type, **data)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def provider(self):
        return self._provider

    def set_provider(self, provider) -> None:
        self._provider = provider
        self._compaction_engine = CompactionEngine(provider, self.model, self.compaction_config)

    def use_provider(self, name: str, options: Optional[dict] = None) -> None:
        """Instantiate a registered provider by name and make it active."""
        provider = self.providers.create(name, options)
        if provider is None:
            raise RegistryError(f"Unknown provider '{name}'")
        self.set_provider(provider)

    def set_model(self, model: str) -> None:
        self.model = model
        if self._provider is not None:
            self._compaction_engine = CompactionEngine(self._provider, model, self.compaction_config)

    def update_compaction_config(self, **changes) -> None:
        self.compaction_config = replace(self.compaction_config, **changes)
        if self._compaction_engine is not None:
            self._compaction_engine.config = self.compaction_config

    def get_config(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "working_directory": self.working_directory,
            "session_id": self.session_id,
            "max_iterations": self.max_iterations,
            "loop_window": self.loop_window,
        }

    def get_messages(self) -> List[Message]:
        return list(self._messages)

    def set_messages(self, messages: List[Message]) -> None:
        """Replace the history, e.g. when resuming a stored session."""
        self._messages = list(messages)

    def clear_messages(self) -> None:
        self._messages = []

    def set_extension(self, key: str, value: Any) -> None:
        self._extensions[key] = value

    def get_extension(self, key: str, default: Any = None) -> Any:
        return self._extensions.get(key, default)

    def get_todos(self) -> List[Dict[str, Any]]:
        return list(self._todos)

    def set_todos(self, todos: List[Dict[str, Any]]) -> None:
        self._todos = list(todos)

    def get_phases(self) -> List[Dict[str, Any]]:
        return list(self._phases)

    def set_phases(self, phases: List[Dict[str, Any]]) -> None:
        self._phases = list(phases)

    @property
    def skill_sources(self) -> List[SkillSource]:
        return list(self._skill_sources)

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    async def use(self, plugin: Plugin) -> None:
        """Install *plugin*; installing the same name twice is an error."""
        if plugin.name in self._plugins:
            raise RegistryError(f"Plugin '{plugin.name}' is already registered")

        self.tools.register_all(plugin.tools)
        for provider in plugin.providers:
            self.providers.register(provider)
        for command in plugin.commands:
            self.commands.register(command)
        self._skill_sources.extend(plugin.skill_sources)
        self._plugins[plugin.name] = plugin

        if plugin.on_register is not None:
            await _maybe_await(plugin.on_register(self))
        logger.info(
            "Plugin '%s' registered (%d tools, %d providers, %d commands)",
            plugin.name, len(plugin.tools), len(plugin.providers), len(plugin.commands),
        )

    def get_plugin(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def get_plugins(self) -> List[Plugin]:
        return list(self._plugins.values())

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def set_permission_callback(self, callback: Optional[PermissionRequestCallback]) -> None:
        self.permissions.set_request_callback(callback)

    def allow_tool_for_session(self, tool_name: str) -> None:
        self.permissions.allow_for_session(tool_name)

    def deny_tool_for_session(self, tool_name: str) -> None:
        self.permissions.deny_for_session(tool_name)

    def clear_session_permissions(self) -> None:
        self.permissions.clear_session_permissions()

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def get_compaction_stats(self) -> Optional[CompactionStats]:
        if self._compaction_engine is None:
            return None
        return self._compaction_engine.should_compact(self._messages)

    async def run_compaction(self) -> Optional[CompactionResult]:
        """Compact the history now. Returns None if nothing is compactable."""
        if self._compaction_engine is None:
            raise NoProviderError(
                "No provider available. Register a provider plugin or call set_provider()."
            )
        engine = self._compaction_engine
        if not engine.get_messages_to_compact(self._messages):
            return None
        result = await engine.compact(self._messages, cancellation=self._cancellation)

        summary = result.summary
        for plugin in self._plugins.values():
            if plugin.get_context_summary is None:
                continue
            extra = await _maybe_await(plugin.get_context_summary(self))
            if extra:
                summary += "\n\n" + extra
        self._messages = engine.build_compacted_messages(self._messages, summary)
        return result

    async def _auto_compact(self) -> None:
        if not self.compaction_config.auto_compact or self._compaction_engine is None:
            return
        stats = self._compaction_engine.should_compact(self._messages)
        if stats is None:
            return

        self.emit(COMPACTION_START, stats=stats)
        try:
            result = await self.run_compaction()
        except AgentCancelledError:
            raise
        except Exception as e:
            logger.warning("Compaction failed: %s", e)
            self.emit(COMPACTION_ERROR, error=str(e))
            return
        if result is not None:
            self.emit(
                COMPACTION_COMPLETE,
                compaction_id=result.compaction_id,
                stats=stats,
                original_tokens=result.original_tokens,
                compacted_tokens=result.compacted_tokens,
                messages_pruned=result.messages_pruned,
                compression_ratio=result.compression_ratio,
            )

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Cancel the in-flight turn, if any."""
        if self._cancellation is not None:
            logger.info("Aborting current turn")
            self._cancellation.cancel()

    @property
    def is_running(self) -> bool:
        return self._cancellation is not None

    async def prompt(self, text: str) -> Message:
        """Run one user turn and return the final assistant message."""
        if text.startswith(COMMAND_SIGIL):
            parsed = parse_command(text)
            command = self.commands.get(parsed[0]) if parsed else None
            if command is not None:
                result = await run_command(
                    command, parsed[1], CommandContext(agent=self, session_id=self.session_id),
                )
                self.emit(COMMAND_RESULT, command=f"/{command.name}", output=result.output)
                if not result.should_continue:
                    return Message(role="assistant", content=result.output)
                if result.transformed_input is not None:
                    text = result.transformed_input

        for plugin in self._plugins.values():
            if plugin.on_before_prompt is not None:
                text = await _maybe_await(plugin.on_before_prompt(text, self))

        user_message = Message(role="user", content=text)
        self._messages.append(user_message)
        self.emit(USER_MESSAGE, message_id=user_message.id, content=text)

        self._bind_loop()
        self._cancellation = CancellationToken()
        try:
            response = await self._run_loop()
        except Exception as e:
            self.emit(ERROR, error=str(e), error_type=type(e).__name__)
            raise
        finally:
            self._cancellation = None

        for plugin in self._plugins.values():
            if plugin.on_after_prompt is not None:
                await _maybe_await(plugin.on_after_prompt(response, self))
        return response

    def _tool_context(self) -> ToolContext:
        return ToolContext(
            working_directory=self.working_directory,
            cancellation=self._cancellation,
            session_id=self.session_id,
            get_todos=self.get_todos,
            set_todos=self.set_todos,
            get_phases=self.get_phases,
            set_phases=self.set_phases,
            emit=self.emit,
            session_manager=self.session_manager,
            skill_manager=self.skill_manager,
            extensions=dict(self._extensions),
        )

    async def _run_loop(self) -> Message:
        if self._provider is None:
            raise NoProviderError(
                "No provider available. Register a provider plugin or call set_provider()."
            )

        recent = deque(maxlen=self.loop_window)
        for iteration in range(self.max_iterations):
            self._cancellation.raise_if_cancelled()
            await self._auto_compact()

            assistant = await self._generate_response()
            self._messages.append(assistant)
            if not assistant.tool_calls:
                return assistant

            recent.append(tool_call_signature(assistant.tool_calls))
            if len(recent) == self.loop_window and len(set(recent)) == 1:
                raise LoopDetectedError(
                    "Agent stuck in loop: repeatedly calling same tools with same arguments"
                )

            results = await execute_tool_calls(
                assistant.tool_calls,
                self.tools,
                self.permissions,
                self._tool_context(),
                self.emit,
                message_id=assistant.id,
                on_result=lambda r, mid=assistant.id: self.emit(
                    TOOL_COMPLETE, message_id=mid, tool_result=r,
                ),
            )
            self._messages.append(Message(role="user", content="", tool_results=results))
            logger.debug("Iteration %d: executed %d tool call(s)", iteration + 1, len(results))

        raise MaxIterationsError(
            f"Agent loop exceeded maximum iterations ({self.max_iterations})"
        )

    def build_llm_messages(self) -> List[Message]:
        """History as sent to the provider.

        Tool calls on an assistant message are dropped when the next message
        does not carry their results (an aborted turn), and tool results are
        dropped when the message before them made no tool calls, so the
        provider never sees unanswered calls or orphaned results.
        """
        out: List[Message] = []
        for i, msg in enumerate(self._messages):
            nxt = self._messages[i + 1] if i + 1 < len(self._messages) else None
            if msg.role == "assistant" and msg.tool_calls and not (nxt and nxt.tool_results):
                out.append(Message(
                    role="assistant", content=msg.content, id=msg.id, created_at=msg.created_at,
                ))
                continue
            if msg.tool_results and not (out and out[-1].role == "assistant" and out[-1].tool_calls):
                if msg.content:
                    out.append(Message(
                        role=msg.role, content=msg.content, id=msg.id, created_at=msg.created_at,
                    ))
                continue
            out.append(msg)
        return out

    async def _generate_response(self) -> Message:
        token = self._cancellation
        assistant = Message(role="assistant", content="")
        self.emit(MESSAGE_START, message_id=assistant.id)

        request = StreamRequest(
            model=self.model,
            messages=self.build_llm_messages(),
            system=self.system_prompt,
            tools=self.tools.get_schemas(),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            cancellation=token,
        )
        result = await token.race(self._provider.stream(request))

        content_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        stream = result.stream.__aiter__()
        while True:
            try:
                chunk = await token.race(stream.__anext__())
            except StopAsyncIteration:
                break
            if chunk.type == "text" and chunk.content:
                content_parts.append(chunk.content)
                self.emit(MESSAGE_DELTA, message_id=assistant.id, delta=chunk.content)
            elif chunk.type == "tool_call" and chunk.tool_call is not None:
                tool_calls.append(chunk.tool_call)
                self.emit(TOOL_START, message_id=assistant.id, tool_call=chunk.tool_call)

        final = await token.race(result.response)
        for tc in final.tool_calls[len(tool_calls):]:
            tool_calls.append(tc)
            self.emit(TOOL_START, message_id=assistant.id, tool_call=tc)

        content = "".join(content_parts)
        if not content and final.content:
            content = final.content
        assistant.content = content
        assistant.tool_calls = tool_calls or None
        self.emit(MESSAGE_COMPLETE, message_id=assistant.id, content=content, usage=final.usage)
        return assistant

    # ------------------------------------------------------------------
    # MCP
    # ------------------------------------------------------------------

    def _on_mcp_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if event_type == SERVER_CONNECTED:
            self.emit(MCP_SERVER_CONNECTED, **data)
        elif event_type == SERVER_DISCONNECTED:
            self.emit(MCP_SERVER_DISCONNECTED, **data)
        elif event_type == TOOLS_CHANGED:
            self._call_on_loop(self._sync_mcp_tools, data["name"])

    def _bind_loop(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.events.bind_loop(self._loop)

    def _call_on_loop(self, callback: Callable[..., Any], *args) -> None:
        """Run *callback* on the agent's loop; MCP events arrive on worker threads."""
        loop = self._loop
        if loop is None or loop.is_closed():
            callback(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def _sync_mcp_tools(self, name: str) -> None:
        """Re-register one server's tools after its tool list changed."""
        if self.mcp is None or name not in self._mcp_tool_names:
            return
        unregister_tools(self.tools, self._mcp_tool_names.pop(name))
        if not self.mcp.is_connected(name):
            return
        names = register_server_tools(self.mcp, self.tools, name)
        self._mcp_tool_names[name] = names
        logger.info("MCP '%s' tools re-registered (%d tools)", name, len(names))
        self.emit(MCP_TOOLS_CHANGED, name=name, tools=list(names))

    def _ensure_mcp(self) -> MCPManager:
        if self.mcp is None:
            self.mcp = MCPManager()
            self.mcp.on_event(self._on_mcp_event)
        return self.mcp

    async def init_mcp(self, servers: Optional[Dict[str, Any]] = None, config_path=None):
        """Connect configured MCP servers and register their tools.

        *servers* defaults to the ``mcp_servers`` section of the config
        file. Returns ``name -> ServerStatus``; failed servers are reported
        there and do not prevent the others from loading.
        """
        manager = self._ensure_mcp()
        if servers is None:
            servers = load_mcp_config(config_path)
        self._bind_loop()
        statuses = await self._loop.run_in_executor(None, manager.load_from_config, servers)
        for names in self._mcp_tool_names.values():
            unregister_tools(self.tools, names)
        self._mcp_tool_names = register_mcp_tools(manager, self.tools)
        return statuses

    async def add_mcp_server(self, name: str, config):
        manager = self._ensure_mcp()
        if name in self._mcp_tool_names:
            unregister_tools(self.tools, self._mcp_tool_names.pop(name))
        self._bind_loop()
        status = await self._loop.run_in_executor(None, manager.add_server, name, config)
        if status.connected:
            self._mcp_tool_names[name] = register_server_tools(manager, self.tools, name)
        return status

    async def remove_mcp_server(self, name: str) -> bool:
        if self.mcp is None:
            return False
        unregister_tools(self.tools, self._mcp_tool_names.pop(name, []))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.mcp.remove_server, name)

    async def shutdown_mcp(self) -> None:
        if self.mcp is None:
            return
        for names in self._mcp_tool_names.values():
            unregister_tools(self.tools, names)
        self._mcp_tool_names = {}
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.mcp.shutdown)

    async def shutdown(self) -> None:
        """Abort any turn, run plugin shutdown hooks and disconnect MCP."""
        self.abort()
        for plugin in self._plugins.values():
            if plugin.on_shutdown is None:
                continue
            try:
                await _maybe_await(plugin.on_shutdown(self))
            except Exception:
                logger.error("Plugin '%s' shutdown hook failed", plugin.name, exc_info=True)
        await self.shutdown_mcp()
