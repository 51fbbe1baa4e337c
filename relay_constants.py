"""Shared constants for Relay Agent.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

DEFAULT_MAX_ITERATIONS = 200
DEFAULT_LOOP_WINDOW = 5

DEFAULT_MCP_TIMEOUT_MS = 30000

OAUTH_CALLBACK_HOST = "localhost"
OAUTH_CALLBACK_PORT = 19283
OAUTH_CALLBACK_PATH = "/callback"
OAUTH_CALLBACK_TIMEOUT = 120

COMMAND_SIGIL = "/"


def get_relay_home() -> Path:
    """Return the relay home directory (``RELAY_HOME`` or ``~/.relay``)."""
    return Path(os.getenv("RELAY_HOME", Path.home() / ".relay"))
