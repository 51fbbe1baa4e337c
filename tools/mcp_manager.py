"""
MCP Manager -- lifecycle manager for MCP server connections.

Responsibilities:
  - Connect one client per configured server (concurrently, failures
    isolated per server)
  - Aggregate tools, resources and prompts into namespaced catalogs:
    tool ``create_issue`` on server ``github`` is exposed as
    ``github_create_issue``
  - Route calls back to the owning client using the original name
  - Track per-server status and publish ``server.connected``,
    ``server.disconnected``, ``server.error`` and ``tools.changed`` events
  - Reconnect with exponential backoff

Usage:
    from tools.mcp_manager import MCPManager
    from tools.mcp_config import load_mcp_config

    manager = MCPManager()
    manager.load_from_config(load_mcp_config())
    manager.call_tool("github_create_issue", {"title": "Bug"})
    manager.shutdown()
"""

import json
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent.cancellation import CancellationToken
from tools.mcp_client import (
    MCPClient,
    MCPConnectionError,
    MCPError,
    MCPToolError,
    MCPTransportError,
    _MCP_LOG_LEVELS,
    create_client,
    sanitize_error,
)
from tools.mcp_config import parse_server_config

logger = logging.getLogger(__name__)

SERVER_CONNECTED = "server.connected"
SERVER_DISCONNECTED = "server.disconnected"
SERVER_ERROR = "server.error"
TOOLS_CHANGED = "tools.changed"

MAX_CONNECT_WORKERS = 8


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------

@dataclass
class McpTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_name: str
    namespaced_name: str


@dataclass
class McpResource:
    uri: str
    name: str
    server_name: str
    namespaced_name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class McpPrompt:
    name: str
    server_name: str
    namespaced_name: str
    description: Optional[str] = None
    arguments: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ServerStatus:
    name: str
    connected: bool
    tool_count: int
    transport: str
    enabled: bool = True
    error: Optional[str] = None


class MCPServerConnection:
    """A configured server, its live client and its discovered capabilities."""

    def __init__(self, name: str, config):
        self.name = name
        self.config = config
        self.client: Optional[MCPClient] = None
        self.connected = False
        self.error: Optional[str] = None
        # Reconnection backoff tracking
        self.reconnect_attempts = 0
        self.last_reconnect_time: float = 0

    def status(self) -> ServerStatus:
        return ServerStatus(
            name=self.name,
            connected=self.connected,
            tool_count=len(self.client.tools) if self.client and self.connected else 0,
            transport=self.config.transport,
            enabled=self.config.enabled,
            error=self.error,
        )


# ---------------------------------------------------------------------------
# Name helpers
# ---------------------------------------------------------------------------

def _sanitize_name(name: str) -> str:
    """Convert a string to a valid tool name component (lowercase, underscores)."""
    name = re.sub(r"[^a-zA-Z0-9_]", "_", name.lower())
    name = re.sub(r"_+", "_", name).strip("_")
    return name


def make_tool_name(server_name: str, tool_name: str) -> str:
    """Namespaced capability name: ``{server}_{name}``."""
    return f"{_sanitize_name(server_name)}_{_sanitize_name(tool_name)}"


# ---------------------------------------------------------------------------
# Result extraction
# ---------------------------------------------------------------------------

def extract_tool_text(result: dict) -> str:
    """Flatten MCP content blocks into text."""
    texts = []
    for block in result.get("content", []) or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "resource":
            resource = block.get("resource", {})
            texts.append(resource.get("text") or json.dumps(resource))
        else:
            texts.append(json.dumps(block))
    return "\n".join(texts)


def extract_resource_text(result: dict) -> str:
    contents = result.get("contents", []) or []
    if not contents:
        return ""
    first = contents[0]
    if "text" in first:
        return first["text"]
    if "blob" in first:
        return first["blob"]
    return json.dumps(first)


def extract_prompt_text(result: dict) -> str:
    parts = []
    for message in result.get("messages", []) or []:
        content = message.get("content", {})
        if isinstance(content, dict) and content.get("type") == "text":
            parts.append(content.get("text", ""))
        elif isinstance(content, str):
            parts.append(content)
        else:
            parts.append(json.dumps(content))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# MCPManager
# ---------------------------------------------------------------------------

class MCPManager:
    """Owns MCP server connections and their aggregated catalogs."""

    def __init__(
        self,
        oauth_manager=None,
        open_browser: Optional[Callable[[str], None]] = None,
        client_factory: Callable[..., MCPClient] = create_client,
    ):
        self.oauth_manager = oauth_manager
        self.open_browser = open_browser
        self._client_factory = client_factory
        self._servers: Dict[str, MCPServerConnection] = {}
        self._tools: Dict[str, McpTool] = {}
        self._resources: Dict[str, McpResource] = {}
        self._prompts: Dict[str, McpPrompt] = {}
        self._lock = threading.RLock()
        self._reconnect_lock = threading.Lock()
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_event(self, listener: Callable[[str, Dict[str, Any]], None]) -> None:
        """Subscribe ``listener(event_type, data)`` to server lifecycle events."""
        self._listeners.append(listener)

    def _emit(self, event_type: str, **data) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception:
                logger.error("MCP event listener failed for '%s'", event_type, exc_info=True)

    # ------------------------------------------------------------------
    # Catalog maintenance
    # ------------------------------------------------------------------

    def _evict(self, server_name: str) -> None:
        with self._lock:
            for catalog in (self._tools, self._resources, self._prompts):
                for key in [k for k, v in catalog.items() if v.server_name == server_name]:
                    del catalog[key]

    def _merge(self, server_name: str, client: MCPClient) -> None:
        with self._lock:
            self._evict(server_name)
            for tool in client.tools:
                ns = make_tool_name(server_name, tool["name"])
                if ns in self._tools:
                    logger.warning("MCP tool name collision on '%s' -- keeping first", ns)
                    continue
                self._tools[ns] = McpTool(
                    name=tool["name"],
                    description=tool.get("description") or "",
                    input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
                    server_name=server_name,
                    namespaced_name=ns,
                )
            for res in client.resources:
                ns = make_tool_name(server_name, res.get("name") or res["uri"])
                self._resources[ns] = McpResource(
                    uri=res["uri"],
                    name=res.get("name") or res["uri"],
                    description=res.get("description"),
                    mime_type=res.get("mimeType"),
                    server_name=server_name,
                    namespaced_name=ns,
                )
            for prompt in client.prompts:
                ns = make_tool_name(server_name, prompt["name"])
                self._prompts[ns] = McpPrompt(
                    name=prompt["name"],
                    description=prompt.get("description"),
                    arguments=list(prompt.get("arguments") or []),
                    server_name=server_name,
                    namespaced_name=ns,
                )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _connect(self, conn: MCPServerConnection) -> None:
        """Connect *conn*; raises MCPError on failure after recording it."""
        try:
            client = self._client_factory(
                conn.name, conn.config,
                oauth_manager=self.oauth_manager,
                open_browser=self.open_browser,
            )
            client.on_disconnect(self._on_client_disconnected)
            client.on_notification(
                "notifications/message",
                lambda params, srv=conn.name: self._on_log_message(srv, params),
            )
            client.on_notification(
                "notifications/tools/list_changed",
                lambda params, srv=conn.name: self._on_list_changed(srv),
            )
            client.connect()
        except Exception as e:
            conn.connected = False
            conn.error = sanitize_error(str(e))
            conn.reconnect_attempts += 1
            conn.last_reconnect_time = time.time()
            logger.warning("MCP server '%s' failed to connect: %s", conn.name, conn.error)
            self._emit(SERVER_ERROR, name=conn.name, error=conn.error)
            if isinstance(e, MCPError):
                raise
            raise MCPConnectionError(f"MCP server '{conn.name}' failed to connect: {conn.error}") from e

        conn.client = client
        conn.connected = True
        conn.error = None
        conn.reconnect_attempts = 0
        self._merge(conn.name, client)
        self._emit(SERVER_CONNECTED, name=conn.name, tool_count=len(client.tools))

    def add_server(self, name: str, config) -> ServerStatus:
        """Connect a server and merge its capabilities into the catalogs.

        Replaces any existing server of the same name. Disabled servers are
        recorded but not connected. Raises ``MCPError`` if connecting fails;
        other servers are unaffected.
        """
        config = parse_server_config(config)
        if name in self._servers:
            self.remove_server(name)

        conn = MCPServerConnection(name, config)
        with self._lock:
            self._servers[name] = conn
        if not config.enabled:
            logger.info("MCP server '%s' is disabled -- not connecting", name)
            return conn.status()

        self._connect(conn)
        return conn.status()

    def remove_server(self, name: str) -> bool:
        with self._lock:
            conn = self._servers.pop(name, None)
        if conn is None:
            return False
        self._evict(name)
        was_connected = conn.connected
        if conn.client:
            conn.client.disconnect()
        conn.client = None
        conn.connected = False
        if was_connected:
            self._emit(SERVER_DISCONNECTED, name=name, reason="removed")
        logger.info("MCP server '%s' removed", name)
        return True

    def load_from_config(self, servers: Dict[str, Any]) -> Dict[str, ServerStatus]:
        """Connect every configured server concurrently.

        A failing server is reported in its status and never blocks or
        aborts the others.
        """
        if not servers:
            return {}

        def _add(item):
            name, config = item
            try:
                return name, self.add_server(name, config)
            except (MCPError, ValueError) as e:
                error = sanitize_error(str(e))
                conn = self._servers.get(name)
                if conn is not None:
                    return name, conn.status()
                return name, ServerStatus(
                    name=name, connected=False, tool_count=0,
                    transport=str(getattr(config, "transport", None) or "unknown"),
                    error=error,
                )

        workers = min(MAX_CONNECT_WORKERS, len(servers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mcp-connect") as pool:
            results = dict(pool.map(_add, servers.items()))

        connected = sum(1 for s in results.values() if s.connected)
        logger.info("MCP: %d/%d servers connected", connected, len(results))
        return results

    def reconnect(self, name: str) -> ServerStatus:
        conn = self._servers.get(name)
        if conn is None:
            raise MCPConnectionError(f"Unknown MCP server: {name}")
        if conn.client:
            conn.client.disconnect()
            conn.client = None
        conn.connected = False
        conn.reconnect_attempts = 0
        self._connect(conn)
        return conn.status()

    def _ensure_connected(self, conn: MCPServerConnection) -> MCPClient:
        if conn.connected and conn.client is not None:
            return conn.client
        with self._reconnect_lock:
            if conn.connected and conn.client is not None:
                return conn.client
            if conn.reconnect_attempts > 0:
                backoff = min(2 ** conn.reconnect_attempts, 60)
                if time.time() - conn.last_reconnect_time < backoff:
                    raise MCPConnectionError(
                        f"MCP server '{conn.name}' is disconnected: {conn.error}"
                    )
            logger.info("MCP server '%s' disconnected, attempting reconnect...", conn.name)
            if conn.client:
                conn.client.disconnect()
                conn.client = None
            self._connect(conn)
            return conn.client

    def shutdown(self) -> None:
        """Disconnect every server and clear the catalogs."""
        for name in list(self._servers):
            try:
                self.remove_server(name)
            except MCPError as e:
                logger.debug("MCP shutdown error for '%s': %s", name, e)

    # ------------------------------------------------------------------
    # Client callbacks
    # ------------------------------------------------------------------

    def _on_client_disconnected(self, name: str, reason: Optional[str]) -> None:
        conn = self._servers.get(name)
        if conn is None:
            return
        conn.connected = False
        conn.error = reason
        conn.last_reconnect_time = time.time()
        self._emit(SERVER_DISCONNECTED, name=name, reason=reason)

    def _on_list_changed(self, name: str) -> None:
        # Runs on the transport's reader thread, which must stay free to
        # deliver the tools/list reply.
        threading.Thread(
            target=self._refresh_tools, args=(name,),
            daemon=True, name=f"mcp-refresh-{name}",
        ).start()

    def _refresh_tools(self, name: str) -> None:
        conn = self._servers.get(name)
        if conn is None or not conn.connected or conn.client is None:
            return
        try:
            conn.client.tools = conn.client.list_tools()
        except MCPError as e:
            logger.warning("MCP '%s' tools re-discovery failed: %s", name, e)
            return
        self._merge(name, conn.client)
        logger.info("MCP '%s' tools updated (%d tools)", name, len(conn.client.tools))
        self._emit(TOOLS_CHANGED, name=name, tool_count=len(conn.client.tools))

    def _on_log_message(self, server_name: str, params: dict) -> None:
        """Map server log notifications onto our logger."""
        py_level = _MCP_LOG_LEVELS.get(params.get("level", "info"), logging.INFO)
        prefix = f"MCP '{server_name}'"
        if params.get("logger"):
            prefix += f" [{params['logger']}]"
        logger.log(py_level, "%s: %s", prefix, params.get("data", ""))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(self, server_name: str) -> MCPServerConnection:
        conn = self._servers.get(server_name)
        if conn is None:
            raise MCPConnectionError(f"MCP server '{server_name}' not found")
        return conn

    def call_tool(
        self, namespaced_name: str, arguments: Optional[dict] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        """Invoke a namespaced tool; returns its text output.

        Raises ``MCPToolError`` when the server flags the result as an error
        and ``MCPError`` subclasses for protocol/transport failures. A cancelled
        *cancellation* token abandons the request with ``AgentCancelledError``.
        """
        with self._lock:
            tool = self._tools.get(namespaced_name)
        if tool is None:
            raise MCPError(f"Unknown MCP tool: {namespaced_name}")

        conn = self._route(tool.server_name)
        client = self._ensure_connected(conn)
        try:
            result = client.call_tool(tool.name, arguments or {}, cancellation=cancellation)
        except MCPTransportError:
            conn.connected = False
            raise

        text = extract_tool_text(result)
        if result.get("isError"):
            raise MCPToolError(text or "Tool call failed")
        return text

    def read_resource(
        self, uri: str, server_name: Optional[str] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        with self._lock:
            matches = [
                r for r in self._resources.values()
                if r.uri == uri and (server_name is None or r.server_name == server_name)
            ]
        if matches:
            owner = matches[0].server_name
        elif server_name is not None:
            owner = server_name
        else:
            raise MCPError(f"Unknown MCP resource: {uri}")

        conn = self._route(owner)
        client = self._ensure_connected(conn)
        try:
            return extract_resource_text(client.read_resource(uri, cancellation=cancellation))
        except MCPTransportError:
            conn.connected = False
            raise

    def invoke_prompt(
        self, namespaced_name: str, arguments: Optional[Dict[str, str]] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        with self._lock:
            prompt = self._prompts.get(namespaced_name)
        if prompt is None:
            raise MCPError(f"Unknown MCP prompt: {namespaced_name}")

        conn = self._route(prompt.server_name)
        client = self._ensure_connected(conn)
        try:
            return extract_prompt_text(client.get_prompt(prompt.name, arguments, cancellation=cancellation))
        except MCPTransportError:
            conn.connected = False
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_tools(self) -> List[McpTool]:
        with self._lock:
            return list(self._tools.values())

    def get_tool(self, namespaced_name: str) -> Optional[McpTool]:
        with self._lock:
            return self._tools.get(namespaced_name)

    def get_resources(self, server_name: Optional[str] = None) -> List[McpResource]:
        with self._lock:
            return [
                r for r in self._resources.values()
                if server_name is None or r.server_name == server_name
            ]

    def get_prompts(self, server_name: Optional[str] = None) -> List[McpPrompt]:
        with self._lock:
            return [
                p for p in self._prompts.values()
                if server_name is None or p.server_name == server_name
            ]

    def get_server_names(self) -> List[str]:
        return list(self._servers.keys())

    def is_connected(self, name: str) -> bool:
        conn = self._servers.get(name)
        return conn is not None and conn.connected

    def get_server_statuses(self) -> List[ServerStatus]:
        return [conn.status() for conn in self._servers.values()]

