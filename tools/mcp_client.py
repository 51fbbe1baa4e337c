"""
MCP (Model Context Protocol) client over JSON-RPC 2.0.

Two transports, one surface (``start``, ``stop``, ``send``, ``receive``,
``on_notification``, ``on_close``):
  - StdioTransport: child process, one JSON message per stdout line
  - SseTransport: a long-lived ``text/event-stream`` GET carries server
    messages; requests are POSTed to the endpoint the stream announces

``create_client(name, config)`` chooses the transport from the config's
``transport`` tag, so ``MCPClient`` works the same over either.

Handshake and discovery:
  - ``initialize`` (our protocol version, capabilities and clientInfo)
    answered by the server's capabilities and serverInfo
  - ``notifications/initialized``
  - ``tools/list``, then ``resources/list`` / ``prompts/list`` if the
    server advertised them
After that: ``tools/call``, ``resources/read`` and ``prompts/get``.

Child processes see a filtered environment, oversized payloads are
rejected, and credentials are scrubbed from every surfaced error.

Usage:
    from tools.mcp_client import create_client
    from tools.mcp_config import parse_server_config

    client = create_client("github", parse_server_config({"command": "npx", ...}))
    client.connect()
    result = client.call_tool("create_issue", {"title": "..."})
    client.disconnect()
"""

import json
import logging
import os
import re
import subprocess
import sys
import threading
import time
from queue import Empty, Queue
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import httpx

from agent.cancellation import AgentCancelledError, CancellationToken

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"

CLIENT_INFO = {"name": "relay-agent", "version": "0.1.0"}

MAX_RESPONSE_SIZE = 10 * 1024 * 1024
MAX_CONSECUTIVE_PARSE_ERRORS = 10

# How often a pending request checks its cancellation token.
CANCEL_POLL_INTERVAL = 0.1

# Inherited by stdio servers; the config's own env is layered on top.
_PASSTHROUGH_ENV: Tuple[str, ...] = (
    # POSIX basics
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM", "TZ",
    "LANG", "LC_ALL", "LC_CTYPE",
    "TMPDIR", "TEMP", "TMP",
    "XDG_CONFIG_HOME", "XDG_DATA_HOME",
    # Windows
    "SYSTEMROOT", "COMSPEC", "APPDATA", "LOCALAPPDATA", "USERPROFILE",
    # runtimes servers are commonly written in
    "NODE_PATH", "NODE_ENV", "PYTHON", "PYTHONPATH",
)


class MCPError(Exception):
    """Base class for capability-server failures."""


class MCPTransportError(MCPError):
    """The pipe or HTTP connection to the server failed."""


class MCPTimeoutError(MCPTransportError):
    """No response arrived within the request timeout."""


class MCPConnectionError(MCPError):
    """A server could not be connected (including missing auth)."""


class MCPProtocolError(MCPError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class MCPToolError(MCPError):
    """A tool call result carried ``isError: true``."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _create_safe_env(custom_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = {name: os.environ[name] for name in _PASSTHROUGH_ENV if os.environ.get(name)}
    env.update(custom_env or {})
    return env


_REDACTIONS = (
    # user:pass@ in URLs
    (re.compile(r'(https?://)([^:/]+):([^@]+)@'), r'\1***:***@'),
    (re.compile(r'Bearer\s+[A-Za-z0-9_\-\.]{8,}', re.IGNORECASE), 'Bearer [redacted]'),
    (re.compile(r'(api[_-]?key|token|password|secret|authorization)["\s:=]+\S+', re.IGNORECASE),
     r'\1=[redacted]'),
)


def sanitize_error(msg: str) -> str:
    """Scrub URL credentials, bearer tokens and key=value secrets from *msg*."""
    for pattern, replacement in _REDACTIONS:
        msg = pattern.sub(replacement, msg)
    return msg


def _safe_json_loads(data: str) -> dict:
    if len(data) > MAX_RESPONSE_SIZE:
        raise MCPTransportError(
            f"MCP message of {len(data)} bytes exceeds the {MAX_RESPONSE_SIZE} byte limit"
        )
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise MCPTransportError(f"Malformed JSON from MCP server: {e}")


class _MessageRouter:
    """Routes incoming JSON-RPC messages: responses to a queue, notifications
    to registered handlers. Shared by both transports."""

    def __init__(self):
        self._response_queue: Queue = Queue()
        self._notification_handlers: Dict[str, List[Callable]] = {}
        self._notification_lock = threading.Lock()
        self._close_handlers: List[Callable[[Optional[str]], None]] = []

    def on_notification(self, method: str, handler: Callable) -> None:
        """Subscribe *handler(params)* to a server notification method."""
        with self._notification_lock:
            self._notification_handlers.setdefault(method, []).append(handler)

    def remove_notification_handler(self, method: str, handler: Callable) -> None:
        with self._notification_lock:
            handlers = self._notification_handlers.get(method, [])
            if handler in handlers:
                handlers.remove(handler)

    def on_close(self, handler: Callable[[Optional[str]], None]) -> None:
        """Register a handler called with a reason when the peer goes away."""
        self._close_handlers.append(handler)

    def _route(self, msg: dict) -> None:
        if "id" in msg and ("result" in msg or "error" in msg):
            self._response_queue.put(msg)
        elif "method" in msg:
            self._dispatch_notification(msg)
        else:
            self._response_queue.put(msg)

    def _dispatch_notification(self, msg: dict) -> None:
        method = msg.get("method", "")
        params = msg.get("params", {})
        with self._notification_lock:
            handlers = list(self._notification_handlers.get(method, []))
        for handler in handlers:
            try:
                handler(params)
            except Exception as e:
                logger.debug(
                    "MCP notification handler error (method=%s): %s", method, e,
                )

    def _notify_closed(self, reason: Optional[str]) -> None:
        for handler in list(self._close_handlers):
            try:
                handler(reason)
            except Exception as e:
                logger.debug("MCP close handler error: %s", e)

    def receive(self, timeout: float) -> dict:
        """Block for the next response; transport failures are re-raised here."""
        try:
            data = self._response_queue.get(timeout=timeout)
        except Empty:
            raise MCPTimeoutError(
                f"MCP server did not respond within {timeout}s"
            )
        if isinstance(data, Exception):
            raise data
        return data

# ---------------------------------------------------------------------------
# StdioTransport
# ---------------------------------------------------------------------------

class StdioTransport(_MessageRouter):
    """Talks to a child-process MCP server over its stdin and stdout.

    Each JSON-RPC message is one line of JSON.
    A daemon thread reads stdout line by line; if the child
    dies while still wanted, the close handlers fire and the owning client
    is marked disconnected.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env
        self.cwd = cwd
        self._process: Optional[subprocess.Popen] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._running = False
        self._parse_errors = 0
        self._write_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._running and self._process is not None and self._process.poll() is None

    def start(self, timeout: float = None) -> None:
        """Launch the server process and begin reading its output."""
        if self._running:
            return

        cmd = [self.command] + self.args
        proc_env = _create_safe_env(self.env)

        try:
            kwargs: Dict[str, Any] = dict(
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                env=proc_env,
                bufsize=0,
            )
            if self.cwd:
                kwargs["cwd"] = self.cwd
            if sys.platform != "win32":
                kwargs["start_new_session"] = True

            self._process = subprocess.Popen(cmd, **kwargs)
        except FileNotFoundError:
            raise MCPTransportError(
                f"Command not found: {self.command} (is the MCP server installed?)"
            )
        except OSError as e:
            raise MCPTransportError(f"Could not launch {self.command}: {sanitize_error(str(e))}")

        self._running = True
        self._parse_errors = 0
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"mcp-stdio-reader-{self.command}",
        )
        self._reader_thread.start()

    def stop(self) -> None:
        """Close stdin, terminate (then kill) the child and join the reader."""
        self._running = False
        proc = self._process
        if proc is None:
            return
        self._process = None

        try:
            if proc.stdin and not proc.stdin.closed:
                try:
                    proc.stdin.close()
                except OSError:
                    pass
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=2)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("MCP process cleanup error: %s", e)
        finally:
            if proc.stdout and not proc.stdout.closed:
                try:
                    proc.stdout.close()
                except OSError:
                    pass

        if self._reader_thread and self._reader_thread.is_alive() \
                and self._reader_thread is not threading.current_thread():
            self._reader_thread.join(timeout=2.0)

    def send(self, message: dict) -> None:
        if not self.is_connected:
            raise MCPTransportError("MCP transport is not running")
        try:
            line = json.dumps(message) + "\n"
            with self._write_lock:
                self._process.stdin.write(line.encode("utf-8"))
                self._process.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            self._running = False
            raise MCPTransportError(f"Write to MCP server failed: {sanitize_error(str(e))}")

    def _reader_loop(self) -> None:
        proc = self._process
        reason = None
        try:
            while self._running:
                line = proc.stdout.readline()
                if not line:
                    break
                line = line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    msg = _safe_json_loads(line)
                except MCPTransportError as e:
                    self._parse_errors += 1
                    logger.debug(
                        "MCP stdio: skipping unparseable output (%d/%d): %s",
                        self._parse_errors, MAX_CONSECUTIVE_PARSE_ERRORS, str(e)[:200],
                    )
                    if self._parse_errors >= MAX_CONSECUTIVE_PARSE_ERRORS:
                        reason = (
                            f"{self._parse_errors} unparseable lines in a row on stdout"
                        )
                        break
                    continue
                self._parse_errors = 0
                self._route(msg)
        except (OSError, ValueError) as e:
            reason = f"Reader error: {sanitize_error(str(e))}"

        if self._running:
            # Process exited or stream broke while we still wanted it.
            self._running = False
            if reason is None:
                code = proc.poll()
                reason = f"MCP server process exited (code {code})"
            self._response_queue.put(MCPTransportError(reason))
            self._notify_closed(reason)


# ---------------------------------------------------------------------------
# SseTransport
# ---------------------------------------------------------------------------

class SseTransport(_MessageRouter):
    """Communicate with an MCP server over Server-Sent Events.

    ``start`` opens a GET ``text/event-stream`` connection and waits for the
    server's ``endpoint`` event, which names the URL to POST JSON-RPC
    messages to. Responses and notifications arrive as ``message`` events
    on the stream and are read by a background thread.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        super().__init__()
        self.url = url
        self.headers = dict(headers or {})
        self._http = http_client
        self._owns_http = http_client is None
        self._endpoint: Optional[str] = None
        self._endpoint_ready = threading.Event()
        self._stream_cm = None
        self._response: Optional[httpx.Response] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._running = False
        self._start_error: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._running and self._endpoint is not None

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    def start(self, timeout: float = 30.0) -> None:
        if self._running:
            return
        if self._http is None:
            self._http = httpx.Client(timeout=httpx.Timeout(timeout, read=None))

        headers = {"Accept": "text/event-stream", "User-Agent": "RelayAgent/0.1 MCP-Client"}
        headers.update(self.headers)
        try:
            self._stream_cm = self._http.stream("GET", self.url, headers=headers)
            self._response = self._stream_cm.__enter__()
        except httpx.HTTPError as e:
            self._stream_cm = None
            raise MCPTransportError(f"Connection failed: {sanitize_error(str(e))}")

        if self._response.status_code >= 400:
            status = self._response.status_code
            self._close_stream()
            if status == 401:
                raise MCPConnectionError("MCP server rejected credentials (HTTP 401)")
            raise MCPTransportError(f"HTTP {status} opening event stream")

        self._running = True
        self._reader_thread = threading.Thread(
            target=self._reader_loop, daemon=True, name=f"mcp-sse-reader-{self.url}",
        )
        self._reader_thread.start()

        if not self._endpoint_ready.wait(timeout):
            self.stop()
            raise MCPTimeoutError(f"MCP server did not announce an endpoint ({timeout}s)")
        if self._endpoint is None:
            self.stop()
            raise MCPTransportError(self._start_error or "Event stream closed before endpoint")

    def _close_stream(self) -> None:
        cm, self._stream_cm = self._stream_cm, None
        self._response = None
        if cm is not None:
            try:
                cm.__exit__(None, None, None)
            except (httpx.HTTPError, OSError, RuntimeError, ValueError) as e:
                logger.debug("MCP SSE stream close error: %s", e)

    def stop(self) -> None:
        self._running = False
        self._close_stream()
        if self._owns_http and self._http is not None:
            self._http.close()
            self._http = None
        if self._reader_thread and self._reader_thread.is_alive() \
                and self._reader_thread is not threading.current_thread():
            self._reader_thread.join(timeout=2.0)
        self._endpoint = None
        self._endpoint_ready.clear()

    def send(self, message: dict) -> None:
        if not self.is_connected:
            raise MCPTransportError("MCP transport is not running")
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)
        try:
            resp = self._http.post(self._endpoint, content=json.dumps(message), headers=headers)
        except httpx.HTTPError as e:
            raise MCPTransportError(f"POST to MCP endpoint failed: {sanitize_error(str(e))}")
        if resp.status_code >= 400:
            raise MCPTransportError(f"HTTP {resp.status_code}: {resp.reason_phrase}")

    def _handle_event(self, event: str, data: str) -> None:
        if event == "endpoint":
            self._endpoint = urljoin(self.url, data.strip())
            self._endpoint_ready.set()
            return
        if event != "message" or not data:
            return
        try:
            msg = _safe_json_loads(data)
        except MCPTransportError as e:
            logger.debug("MCP SSE: dropping bad message: %s", e)
            return
        self._route(msg)

    def _reader_loop(self) -> None:
        event, data_lines = "message", []
        reason = None
        try:
            for line in self._response.iter_lines():
                if not self._running:
                    break
                if line == "":
                    if data_lines:
                        self._handle_event(event, "\n".join(data_lines))
                    event, data_lines = "message", []
                elif line.startswith(":"):
                    continue
                elif line.startswith("event:"):
                    event = line[6:].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[5:].lstrip(" "))
            reason = "Event stream closed by server"
        except (httpx.HTTPError, OSError, RuntimeError, ValueError, AttributeError) as e:
            reason = f"Event stream error: {sanitize_error(str(e))}"

        if not self._endpoint_ready.is_set():
            self._start_error = reason
            self._endpoint_ready.set()
        if self._running:
            self._running = False
            self._response_queue.put(MCPTransportError(reason))
            self._notify_closed(reason)


# ---------------------------------------------------------------------------
# MCPClient
# ---------------------------------------------------------------------------

class MCPClient:
    """High-level MCP client for one server.

    Wraps a transport and implements the MCP protocol lifecycle:
    connect (initialize + discovery) -> call_tool / read_resource /
    get_prompt -> disconnect. Discovered tools, resources and prompts are
    cached on the client after ``connect``.
    """

    def __init__(self, name: str, transport, transport_type: str = "stdio", timeout: float = 30.0):
        self.name = name
        self.transport = transport
        self.transport_type = transport_type
        self.timeout = timeout
        self._request_id = 0
        self._request_lock = threading.Lock()
        self._server_info: Optional[dict] = None
        self._server_capabilities: Optional[dict] = None
        self._connected = False
        self.tools: List[dict] = []
        self.resources: List[dict] = []
        self.prompts: List[dict] = []
        self._disconnect_handlers: List[Callable[[str, Optional[str]], None]] = []
        transport.on_close(self._on_transport_closed)

    @property
    def is_connected(self) -> bool:
        return self._connected and self.transport.is_connected

    @property
    def server_info(self) -> dict:
        return dict(self._server_info or {})

    @property
    def capabilities(self) -> dict:
        return dict(self._server_capabilities or {})

    def on_disconnect(self, handler: Callable[[str, Optional[str]], None]) -> None:
        """Call ``handler(name, reason)`` when the server goes away unexpectedly."""
        self._disconnect_handlers.append(handler)

    def _on_transport_closed(self, reason: Optional[str]) -> None:
        if not self._connected:
            return
        self._connected = False
        logger.warning("MCP server '%s' disconnected: %s", self.name, reason)
        for handler in list(self._disconnect_handlers):
            try:
                handler(self.name, reason)
            except Exception as e:
                logger.debug("MCP disconnect handler error: %s", e)

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _send_request(
        self, method: str, params: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> dict:
        """Send a JSON-RPC request and wait for its response.

        Requests on one client are serialized; responses left over from an
        earlier timed-out or cancelled request are discarded by id. With a
        *cancellation* token the wait is checked every
        ``CANCEL_POLL_INTERVAL`` seconds; on cancel the server is sent
        ``notifications/cancelled`` and ``AgentCancelledError`` is raised.
        """
        effective_timeout = timeout or self.timeout
        with self._request_lock:
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            msg_id = self._next_id()
            msg = {"jsonrpc": "2.0", "id": msg_id, "method": method}
            if params is not None:
                msg["params"] = params

            logger.debug("MCP '%s' -> %s (id=%s)", self.name, method, msg_id)
            self.transport.send(msg)
            deadline = time.monotonic() + effective_timeout
            while True:
                response = self._receive(msg_id, deadline, effective_timeout, cancellation)
                resp_id = response.get("id")
                if resp_id is None or resp_id == msg_id:
                    break
                logger.debug(
                    "MCP '%s' discarding stale response id=%s (waiting for %s)",
                    self.name, resp_id, msg_id,
                )

        if "error" in response:
            err = response["error"] or {}
            raise MCPProtocolError(
                code=err.get("code", -1),
                message=err.get("message", "Unknown error"),
                data=err.get("data"),
            )
        return response.get("result") or {}

    def _receive(
        self, msg_id: int, deadline: float, timeout: float,
        cancellation: Optional[CancellationToken],
    ) -> dict:
        while True:
            if cancellation is not None and cancellation.cancelled:
                self._cancel_request(msg_id)
                raise AgentCancelledError()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise MCPTimeoutError(f"MCP server did not respond within {timeout}s")
            if cancellation is not None:
                remaining = min(CANCEL_POLL_INTERVAL, remaining)
            try:
                return self.transport.receive(timeout=remaining)
            except MCPTimeoutError:
                continue

    def _cancel_request(self, msg_id: int) -> None:
        logger.debug("MCP '%s' cancelling request id=%s", self.name, msg_id)
        try:
            self._send_notification("notifications/cancelled", {
                "requestId": msg_id,
                "reason": "Agent turn was aborted",
            })
        except MCPError as e:
            logger.debug("MCP '%s' could not send cancellation: %s", self.name, e)

    def _send_notification(self, method: str, params: Optional[dict] = None) -> None:
        msg = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self.transport.send(msg)

    def on_notification(self, method: str, handler: Callable) -> None:
        self.transport.on_notification(method, handler)

    def connect(self) -> dict:
        """Start the transport, run the initialize handshake and discover
        tools/resources/prompts. Returns serverInfo + capabilities."""
        self.transport.start(timeout=self.timeout)
        try:
            result = self._send_request("initialize", {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {
                    "roots": {"listChanged": False},
                },
                "clientInfo": CLIENT_INFO,
            })
            self._server_info = result.get("serverInfo", {})
            self._server_capabilities = result.get("capabilities", {})
            self._send_notification("notifications/initialized")
            self._connected = True
            self.refresh()
        except MCPError:
            self.disconnect()
            raise

        logger.info(
            "MCP connected to '%s' (%s %s): %d tools, %d resources, %d prompts",
            self.name,
            self._server_info.get("name", "unknown"),
            self._server_info.get("version", "?"),
            len(self.tools), len(self.resources), len(self.prompts),
        )
        return {
            "serverInfo": self._server_info,
            "capabilities": self._server_capabilities,
        }

    def refresh(self) -> None:
        """Re-list tools, resources and prompts."""
        self.tools = self.list_tools()
        try:
            self.resources = self.list_resources()
        except MCPProtocolError as e:
            logger.debug("MCP '%s' resource discovery failed: %s", self.name, e)
            self.resources = []
        try:
            self.prompts = self.list_prompts()
        except MCPProtocolError as e:
            logger.debug("MCP '%s' prompt discovery failed: %s", self.name, e)
            self.prompts = []

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise MCPTransportError(f"MCP client not connected: {self.name}")

    def list_tools(self) -> List[dict]:
        """Each tool: ``name``, ``description``, ``inputSchema``."""
        self._require_connected()
        result = self._send_request("tools/list", {})
        return result.get("tools", [])

    def call_tool(
        self, name: str, arguments: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> dict:
        """Returns the raw result: ``content`` blocks and ``isError``."""
        self._require_connected()
        params: Dict[str, Any] = {"name": name, "arguments": arguments or {}}
        return self._send_request("tools/call", params, timeout=timeout, cancellation=cancellation)

    def list_resources(self) -> List[dict]:
        self._require_connected()
        if "resources" not in (self._server_capabilities or {}):
            return []
        result = self._send_request("resources/list", {})
        return result.get("resources", [])

    def read_resource(self, uri: str, cancellation: Optional[CancellationToken] = None) -> dict:
        """Returns dict with ``contents`` list."""
        self._require_connected()
        return self._send_request("resources/read", {"uri": uri}, cancellation=cancellation)

    def list_prompts(self) -> List[dict]:
        self._require_connected()
        if "prompts" not in (self._server_capabilities or {}):
            return []
        result = self._send_request("prompts/list", {})
        return result.get("prompts", [])

    def get_prompt(
        self, name: str, arguments: Optional[dict] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> dict:
        """Returns dict with ``messages`` list."""
        self._require_connected()
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return self._send_request("prompts/get", params, cancellation=cancellation)

    def disconnect(self) -> None:
        """Drop cached catalogs and stop the transport."""
        self._connected = False
        self.tools, self.resources, self.prompts = [], [], []
        try:
            self.transport.stop()
        except (MCPError, OSError) as e:
            logger.debug("MCP disconnect error: %s", e)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_client(
    name: str,
    config,
    oauth_manager=None,
    open_browser: Optional[Callable[[str], None]] = None,
    http_client: Optional[httpx.Client] = None,
) -> MCPClient:
    """Build the transport-appropriate client for a validated server config.

    For ``sse`` servers with an ``oauth`` block, valid tokens are fetched
    (refreshing if needed) from *oauth_manager*; when none are available and
    *open_browser* is given, the interactive flow runs first. Without
    tokens the connection fails with ``MCPConnectionError``.
    """
    timeout = config.timeout_ms / 1000.0

    if config.transport == "stdio":
        transport = StdioTransport(
            command=config.command,
            args=config.args,
            env=config.resolved_env() or None,
            cwd=config.cwd,
        )
    elif config.transport == "sse":
        headers = dict(config.headers)
        if config.oauth is not None:
            if oauth_manager is None:
                raise MCPConnectionError(
                    f"MCP server '{name}' requires OAuth but no OAuth manager is configured"
                )
            tokens = oauth_manager.get_valid_tokens(name, config.oauth)
            if tokens is None and open_browser is not None:
                tokens = oauth_manager.initiate_oauth_flow(name, config.oauth, open_browser)
            if tokens is None:
                raise MCPConnectionError(
                    f"MCP server '{name}' requires authorization. Run the OAuth flow to log in."
                )
            headers["Authorization"] = tokens.authorization_header
        transport = SseTransport(config.url, headers=headers, http_client=http_client)
    else:
        raise MCPTransportError(f"Unknown transport type: {config.transport}")

    return MCPClient(name, transport, transport_type=config.transport, timeout=timeout)


# ---------------------------------------------------------------------------
# MCP Log Level mapping
# ---------------------------------------------------------------------------

_MCP_LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,       # Python has no NOTICE; map to INFO
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}
