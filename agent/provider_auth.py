"""
Model provider login -- authorization-code + PKCE against the provider's
own authorization server, with tokens kept in ``~/.relay/auth.json``.

Same state machine and token lifecycle as MCP server authorization
(``tools.mcp_oauth``); only the token store differs: a locked local file
holding one entry per provider id.
"""

from __future__ import annotations

import json
import logging
import time
import webbrowser
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from relay_constants import get_relay_home
from tools.mcp_oauth import (
    OAuthError,
    OAuthTokens,
    refresh_access_token,
    run_authorization_flow,
)

try:
    import fcntl  # POSIX file locking (macOS/Linux)
except ImportError:  # pragma: no cover - Windows
    fcntl = None

logger = logging.getLogger(__name__)

AUTH_STORE_VERSION = 1
AUTH_LOCK_TIMEOUT_SECONDS = 15.0
ACCESS_TOKEN_REFRESH_SKEW_SECONDS = 120


class ProviderAuthError(RuntimeError):
    """Structured auth error for front-end UX mapping."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        relogin_required: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.relogin_required = relogin_required


def format_auth_error(error: Exception) -> str:
    """Map auth failures to concise user-facing guidance."""
    if isinstance(error, ProviderAuthError) and error.relogin_required:
        return f"{error} Run the login flow again to re-authenticate."
    return str(error)


@dataclass
class ProviderOAuthConfig:
    client_id: str
    authorization_url: str
    token_url: str
    scopes: List[str] = field(default_factory=list)
    client_secret: Optional[str] = None


def _auth_file_path() -> Path:
    return get_relay_home() / "auth.json"


@contextmanager
def _auth_store_lock(timeout_seconds: float = AUTH_LOCK_TIMEOUT_SECONDS):
    """Cross-process lock for auth.json reads+writes and refreshes."""
    lock_path = _auth_file_path().with_suffix(".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with lock_path.open("a+") as lock_file:
        if fcntl is None:
            yield
            return

        deadline = time.time() + max(1.0, timeout_seconds)
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.time() >= deadline:
                    raise TimeoutError("Timed out waiting for auth store lock")
                time.sleep(0.05)

        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _load_auth_store() -> Dict[str, Any]:
    auth_file = _auth_file_path()
    empty = {"version": AUTH_STORE_VERSION, "providers": {}}
    if not auth_file.exists():
        return empty
    try:
        raw = json.loads(auth_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return empty
    if isinstance(raw, dict) and isinstance(raw.get("providers"), dict):
        return raw
    return empty


def _save_auth_store(auth_store: Dict[str, Any]) -> Path:
    auth_file = _auth_file_path()
    auth_file.parent.mkdir(parents=True, exist_ok=True)
    auth_store["version"] = AUTH_STORE_VERSION
    auth_store["updated_at"] = datetime.now(timezone.utc).isoformat()
    auth_file.write_text(json.dumps(auth_store, indent=2) + "\n", encoding="utf-8")
    auth_file.chmod(0o600)
    return auth_file


def load_tokens(provider_id: str) -> Optional[OAuthTokens]:
    entry = _load_auth_store()["providers"].get(provider_id)
    if not isinstance(entry, dict) or not entry.get("access_token"):
        return None
    return OAuthTokens.from_dict(entry)


def save_tokens(provider_id: str, tokens: OAuthTokens) -> Path:
    with _auth_store_lock():
        store = _load_auth_store()
        store["providers"][provider_id] = tokens.to_dict()
        return _save_auth_store(store)


def logout(provider_id: str) -> bool:
    """Forget stored tokens for *provider_id*; True if any were removed."""
    with _auth_store_lock():
        store = _load_auth_store()
        if store["providers"].pop(provider_id, None) is None:
            return False
        _save_auth_store(store)
    logger.info("Logged out of provider '%s'", provider_id)
    return True


def login(
    provider_id: str,
    config: ProviderOAuthConfig,
    open_browser: Callable[[str], Any] = webbrowser.open,
    http_client: Optional[httpx.Client] = None,
    callback_port: Optional[int] = None,
) -> OAuthTokens:
    """Run the interactive login and persist the tokens."""
    http = http_client or httpx.Client()
    kwargs = {}
    if callback_port is not None:
        kwargs["callback_port"] = callback_port
    try:
        tokens = run_authorization_flow(
            http,
            authorization_url=config.authorization_url,
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            scopes=config.scopes,
            open_browser=open_browser,
            **kwargs,
        )
    except (OAuthError, httpx.HTTPError) as e:
        raise ProviderAuthError(f"Login failed: {e}", code="login_failed") from e
    finally:
        if http_client is None:
            http.close()

    save_tokens(provider_id, tokens)
    logger.info("Logged in to provider '%s'", provider_id)
    return tokens


def get_access_token(
    provider_id: str,
    config: ProviderOAuthConfig,
    http_client: Optional[httpx.Client] = None,
) -> str:
    """Return a usable access token, refreshing once if it is about to expire.

    Raises ``ProviderAuthError(relogin_required=True)`` when there are no
    tokens or the refresh is rejected.
    """
    tokens = load_tokens(provider_id)
    if tokens is None:
        raise ProviderAuthError(
            f"Not logged in to '{provider_id}'.", code="not_logged_in", relogin_required=True,
        )

    if not tokens.is_expired(now=time.time() + ACCESS_TOKEN_REFRESH_SKEW_SECONDS):
        return tokens.access_token

    if not tokens.refresh_token:
        raise ProviderAuthError(
            f"Session for '{provider_id}' expired.", code="expired", relogin_required=True,
        )

    http = http_client or httpx.Client()
    try:
        with _auth_store_lock():
            refreshed = refresh_access_token(
                http, config.token_url, config.client_id,
                tokens.refresh_token, config.client_secret,
            )
            store = _load_auth_store()
            store["providers"][provider_id] = refreshed.to_dict()
            _save_auth_store(store)
    except (OAuthError, httpx.HTTPError) as e:
        logger.warning("Token refresh for '%s' failed: %s", provider_id, e)
        raise ProviderAuthError(
            f"Session for '{provider_id}' could not be refreshed.",
            code="refresh_failed",
            relogin_required=True,
        ) from e
    finally:
        if http_client is None:
            http.close()
    return refreshed.access_token
