"""
OAuth2 authorization-code + PKCE flow for MCP servers.

Flow (``McpOAuthManager.initiate_oauth_flow``):
  1. Generate a random code verifier, its S256 challenge and a state token
  2. Start a one-shot loopback callback listener (default
     ``http://localhost:19283/callback``) with a 120s deadline
  3. Hand the authorization URL to the caller's ``open_browser`` callback
  4. On a valid callback, POST the code + verifier to the token endpoint
     and persist the tokens through the injected ``TokenStore``

The listener rejects on timeout, a mismatched state token, an ``error``
query parameter, or a missing ``code``, and its port is always released.

``get_valid_tokens`` returns unexpired stored tokens, otherwise tries one
refresh; a missing or failed refresh yields None so the caller can re-run
the interactive flow.

The PKCE helpers and ``run_authorization_flow`` are shared with the model
provider login in ``agent.provider_auth``.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from relay_constants import (
    OAUTH_CALLBACK_HOST,
    OAUTH_CALLBACK_PATH,
    OAUTH_CALLBACK_PORT,
    OAUTH_CALLBACK_TIMEOUT,
    get_relay_home,
)
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)

TOKEN_REQUEST_TIMEOUT = 20.0

_SUCCESS_PAGE = b"""<html>
  <body>
    <h1>Authorization successful!</h1>
    <p>You can close this window and return to the terminal.</p>
    <script>window.close();</script>
  </body>
</html>
"""


class OAuthError(RuntimeError):
    """Authorization callback rejected or token exchange failed."""


class OAuthFlowState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_AUTHORIZATION = "awaiting-authorization"
    AWAITING_CALLBACK = "awaiting-callback"
    EXCHANGING_CODE = "exchanging-code"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass
class OAuthTokens:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    @property
    def authorization_header(self) -> str:
        token_type = self.token_type or "Bearer"
        if token_type.lower() == "bearer":
            token_type = "Bearer"
        return f"{token_type} {self.access_token}"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OAuthTokens":
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            scope=data.get("scope"),
        )

    @classmethod
    def from_token_response(
        cls, payload: dict, previous_refresh_token: Optional[str] = None,
    ) -> "OAuthTokens":
        """Build from an RFC 6749 token endpoint response body."""
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise OAuthError("Token response did not include access_token")
        expires_in = payload.get("expires_in")
        return cls(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=time.time() + float(expires_in) if expires_in else None,
            scope=payload.get("scope"),
        )


# ---------------------------------------------------------------------------
# Token stores
# ---------------------------------------------------------------------------

class TokenStore(Protocol):
    def get_tokens(self, server_name: str) -> Optional[OAuthTokens]: ...

    def store_tokens(self, server_name: str, tokens: OAuthTokens) -> None: ...

    def clear_tokens(self, server_name: str) -> None: ...


class InMemoryTokenStore:
    """Tokens are lost when the process exits."""

    def __init__(self):
        self._tokens: Dict[str, OAuthTokens] = {}
        self._lock = threading.Lock()

    def get_tokens(self, server_name: str) -> Optional[OAuthTokens]:
        with self._lock:
            return self._tokens.get(server_name)

    def store_tokens(self, server_name: str, tokens: OAuthTokens) -> None:
        with self._lock:
            self._tokens[server_name] = tokens

    def clear_tokens(self, server_name: str) -> None:
        with self._lock:
            self._tokens.pop(server_name, None)


class FileTokenStore:
    """JSON file of ``server -> tokens`` (default ``~/.relay/mcp_tokens.json``, mode 0600)."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_relay_home() / "mcp_tokens.json"
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read token store %s: %s", self.path, e)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _write(self, data: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        self.path.chmod(0o600)

    def get_tokens(self, server_name: str) -> Optional[OAuthTokens]:
        with self._lock:
            entry = self._read().get(server_name)
        if not isinstance(entry, dict) or "access_token" not in entry:
            return None
        return OAuthTokens.from_dict(entry)

    def store_tokens(self, server_name: str, tokens: OAuthTokens) -> None:
        with self._lock:
            data = self._read()
            data[server_name] = tokens.to_dict()
            self._write(data)

    def clear_tokens(self, server_name: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(server_name, None) is not None:
                self._write(data)


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

def base64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return base64url_encode(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return base64url_encode(secrets.token_bytes(16))


def build_authorization_url(
    authorization_url: str,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scopes=None,
) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if scopes:
        params["scope"] = " ".join(scopes)
    sep = "&" if "?" in authorization_url else "?"
    return f"{authorization_url}{sep}{urlencode(params)}"


# ---------------------------------------------------------------------------
# Loopback callback listener
# ---------------------------------------------------------------------------

class _CallbackOutcome:
    def __init__(self):
        self.done = threading.Event()
        self.code: Optional[str] = None
        self.error: Optional[str] = None


def _make_handler(path: str, expected_state: str, outcome: _CallbackOutcome):
    class _CallbackHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            parsed = urlparse(self.path)
            if parsed.path != path:
                self._reply(404, b"Not found")
                return
            if outcome.done.is_set():
                self._reply(409, b"Authorization already handled")
                return

            query = parse_qs(parsed.query)
            error = query.get("error", [None])[0]
            state = query.get("state", [None])[0]
            code = query.get("code", [None])[0]

            if error:
                outcome.error = f"OAuth error: {error}"
            elif state != expected_state:
                outcome.error = "Invalid state parameter"
            elif not code:
                outcome.error = "Missing authorization code"

            if outcome.error:
                self._reply(400, outcome.error.encode("utf-8"))
            else:
                outcome.code = code
                self._reply(200, _SUCCESS_PAGE, content_type="text/html")
            outcome.done.set()

        def _reply(self, status: int, body: bytes, content_type: str = "text/plain"):
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            logger.debug("OAuth callback: " + format, *args)

    return _CallbackHandler


class CallbackListener:
    """Single-use loopback HTTP listener for the authorization redirect.

    Usage:
        with CallbackListener(state, port=19283) as listener:
            open_browser(url_using(listener.redirect_uri))
            code = listener.wait()
    """

    def __init__(
        self,
        expected_state: str,
        host: str = OAUTH_CALLBACK_HOST,
        port: int = OAUTH_CALLBACK_PORT,
        path: str = OAUTH_CALLBACK_PATH,
        timeout: float = OAUTH_CALLBACK_TIMEOUT,
    ):
        self.host = host
        self.path = path
        self.timeout = timeout
        self._outcome = _CallbackOutcome()
        try:
            self._server = HTTPServer(
                (host, port), _make_handler(path, expected_state, self._outcome)
            )
        except OSError as e:
            raise OAuthError(f"Could not bind OAuth callback port {port}: {e}") from e
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            daemon=True,
            name=f"oauth-callback-{self.port}",
        )
        self._thread.start()

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    def wait(self) -> str:
        """Block until the callback arrives; returns the authorization code."""
        if not self._outcome.done.wait(self.timeout):
            raise OAuthError("OAuth flow timed out")
        if self._outcome.error:
            raise OAuthError(self._outcome.error)
        return self._outcome.code

    def close(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=2.0)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

def _post_token_request(http: httpx.Client, token_url: str, data: Dict[str, str]) -> dict:
    response = http.post(
        token_url,
        data=data,
        headers={"Accept": "application/json"},
        timeout=TOKEN_REQUEST_TIMEOUT,
    )
    if response.status_code >= 400:
        raise OAuthError(
            f"Token request failed (HTTP {response.status_code}): "
            f"{sanitize_error(response.text[:500])}"
        )
    try:
        payload = response.json()
    except ValueError as e:
        raise OAuthError(f"Token endpoint returned invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise OAuthError("Token endpoint returned a non-object response")
    return payload


def exchange_code(
    http: httpx.Client,
    token_url: str,
    client_id: str,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    client_secret: Optional[str] = None,
) -> OAuthTokens:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    if client_secret:
        data["client_secret"] = client_secret
    return OAuthTokens.from_token_response(_post_token_request(http, token_url, data))


def refresh_access_token(
    http: httpx.Client,
    token_url: str,
    client_id: str,
    refresh_token: str,
    client_secret: Optional[str] = None,
) -> OAuthTokens:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    if client_secret:
        data["client_secret"] = client_secret
    payload = _post_token_request(http, token_url, data)
    return OAuthTokens.from_token_response(payload, previous_refresh_token=refresh_token)


def run_authorization_flow(
    http: httpx.Client,
    *,
    authorization_url: str,
    token_url: str,
    client_id: str,
    open_browser: Callable[[str], None],
    scopes=None,
    client_secret: Optional[str] = None,
    callback_port: int = OAUTH_CALLBACK_PORT,
    callback_timeout: float = OAUTH_CALLBACK_TIMEOUT,
    on_state: Optional[Callable[[OAuthFlowState], None]] = None,
) -> OAuthTokens:
    """Run one interactive authorization-code + PKCE flow and return tokens."""
    notify = on_state or (lambda _s: None)
    notify(OAuthFlowState.AWAITING_AUTHORIZATION)

    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)
    state = generate_state()

    with CallbackListener(state, port=callback_port, timeout=callback_timeout) as listener:
        url = build_authorization_url(
            authorization_url, client_id, listener.redirect_uri, challenge, state, scopes,
        )
        notify(OAuthFlowState.AWAITING_CALLBACK)
        open_browser(url)
        code = listener.wait()
        redirect_uri = listener.redirect_uri

    notify(OAuthFlowState.EXCHANGING_CODE)
    return exchange_code(
        http, token_url, client_id, code, verifier, redirect_uri, client_secret,
    )


# ---------------------------------------------------------------------------
# McpOAuthManager
# ---------------------------------------------------------------------------

class McpOAuthManager:
    """Authorizes MCP servers and keeps their tokens fresh.

    Concurrent flows for the same server are not supported; callers
    serialize them.
    """

    def __init__(
        self,
        token_store: Optional[TokenStore] = None,
        http_client: Optional[httpx.Client] = None,
        callback_port: int = OAUTH_CALLBACK_PORT,
        callback_timeout: float = OAUTH_CALLBACK_TIMEOUT,
    ):
        self.token_store = token_store or InMemoryTokenStore()
        self._http = http_client or httpx.Client()
        self.callback_port = callback_port
        self.callback_timeout = callback_timeout
        self._states: Dict[str, OAuthFlowState] = {}

    def get_flow_state(self, server_name: str) -> OAuthFlowState:
        return self._states.get(server_name, OAuthFlowState.IDLE)

    def _set_state(self, server_name: str, state: OAuthFlowState) -> None:
        logger.debug("OAuth '%s': %s", server_name, state.value)
        self._states[server_name] = state

    def get_stored_tokens(self, server_name: str) -> Optional[OAuthTokens]:
        return self.token_store.get_tokens(server_name)

    def store_tokens(self, server_name: str, tokens: OAuthTokens) -> None:
        self.token_store.store_tokens(server_name, tokens)

    def clear_tokens(self, server_name: str) -> None:
        """Log out: forget the server's tokens."""
        self.token_store.clear_tokens(server_name)
        self._states.pop(server_name, None)

    @staticmethod
    def is_token_expired(tokens: OAuthTokens) -> bool:
        return tokens.is_expired()

    def refresh_tokens(self, server_name: str, oauth_config) -> Optional[OAuthTokens]:
        """Exchange the stored refresh token; None if missing or rejected."""
        stored = self.get_stored_tokens(server_name)
        if stored is None or not stored.refresh_token:
            self._set_state(server_name, OAuthFlowState.FAILED)
            return None

        self._set_state(server_name, OAuthFlowState.REFRESHING)
        try:
            tokens = refresh_access_token(
                self._http,
                oauth_config.token_url,
                oauth_config.client_id,
                stored.refresh_token,
                oauth_config.client_secret,
            )
        except (OAuthError, httpx.HTTPError) as e:
            logger.warning("OAuth refresh for '%s' failed: %s", server_name, sanitize_error(str(e)))
            self._set_state(server_name, OAuthFlowState.FAILED)
            return None

        self.store_tokens(server_name, tokens)
        self._set_state(server_name, OAuthFlowState.AUTHORIZED)
        return tokens

    def get_valid_tokens(self, server_name: str, oauth_config) -> Optional[OAuthTokens]:
        stored = self.get_stored_tokens(server_name)
        if stored is None:
            return None
        if not stored.is_expired():
            return stored
        self._set_state(server_name, OAuthFlowState.EXPIRED)
        return self.refresh_tokens(server_name, oauth_config)

    def initiate_oauth_flow(
        self,
        server_name: str,
        oauth_config,
        open_browser: Callable[[str], None],
    ) -> OAuthTokens:
        """Run the interactive flow for *server_name*; raises OAuthError.

        Any failure, including one raised by *open_browser*, leaves the flow
        state at ``FAILED``.
        """
        logger.info("Starting OAuth authorization for MCP server '%s'", server_name)
        try:
            tokens = run_authorization_flow(
                self._http,
                authorization_url=oauth_config.authorization_url,
                token_url=oauth_config.token_url,
                client_id=oauth_config.client_id,
                client_secret=oauth_config.client_secret,
                scopes=oauth_config.scopes,
                open_browser=open_browser,
                callback_port=self.callback_port,
                callback_timeout=self.callback_timeout,
                on_state=lambda s: self._set_state(server_name, s),
            )
        except httpx.HTTPError as e:
            self._set_state(server_name, OAuthFlowState.FAILED)
            raise OAuthError(f"Token exchange failed: {sanitize_error(str(e))}") from e
        except Exception:
            self._set_state(server_name, OAuthFlowState.FAILED)
            raise

        self.store_tokens(server_name, tokens)
        self._set_state(server_name, OAuthFlowState.AUTHORIZED)
        logger.info("MCP server '%s' authorized", server_name)
        return tokens
