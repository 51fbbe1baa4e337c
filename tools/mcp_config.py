"""
MCP server configuration.

Each server entry is one of two variants, selected by its ``transport`` tag:

  stdio (default when ``transport`` is absent)::

      github:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-github"]
        env:
          GITHUB_TOKEN: ${GITHUB_TOKEN}

  sse::

      linear:
        transport: sse
        url: https://mcp.linear.app/sse
        oauth:
          clientId: relay
          authorizationUrl: https://linear.app/oauth/authorize
          tokenUrl: https://api.linear.app/oauth/token

Both accept ``enabled`` (default true) and ``timeoutMs`` (default 30000).
Keys may be written in camelCase or snake_case.
"""

import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
)
from pydantic.alias_generators import to_camel

from relay_constants import DEFAULT_MCP_TIMEOUT_MS, get_relay_home

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{(\w+)\}")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OAuthConfig(_ConfigModel):
    client_id: str
    client_secret: Optional[str] = None
    authorization_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)


class StdioServerConfig(_ConfigModel):
    transport: Literal["stdio"] = "stdio"
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    enabled: bool = True
    timeout_ms: int = Field(
        default=DEFAULT_MCP_TIMEOUT_MS,
        validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout"),
    )

    def resolved_env(self) -> Dict[str, str]:
        """Expand ``${VAR}`` references from the process environment."""
        return {
            key: _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
            for key, value in self.env.items()
        }


class SseServerConfig(_ConfigModel):
    transport: Literal["sse"]
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    oauth: Optional[OAuthConfig] = None
    enabled: bool = True
    timeout_ms: int = Field(
        default=DEFAULT_MCP_TIMEOUT_MS,
        validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout"),
    )


def _transport_tag(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("transport") or "stdio"
    return getattr(value, "transport", "stdio")


MCPServerConfig = Annotated[
    Union[
        Annotated[StdioServerConfig, Tag("stdio")],
        Annotated[SseServerConfig, Tag("sse")],
    ],
    Discriminator(_transport_tag),
]

_server_config_adapter = TypeAdapter(MCPServerConfig)


def parse_server_config(data: Any) -> Union[StdioServerConfig, SseServerConfig]:
    """Validate one server entry; raises ``pydantic.ValidationError``."""
    if isinstance(data, (StdioServerConfig, SseServerConfig)):
        return data
    return _server_config_adapter.validate_python(data)


def parse_servers(raw: Dict[str, Any]) -> Dict[str, Union[StdioServerConfig, SseServerConfig]]:
    """Validate a ``name -> entry`` mapping, skipping invalid entries."""
    servers = {}
    for name, entry in (raw or {}).items():
        try:
            servers[name] = parse_server_config(entry)
        except ValueError as e:
            logger.warning("MCP server '%s' has an invalid config -- skipping: %s", name, e)
    return servers


def get_config_path() -> Path:
    return get_relay_home() / "config.yaml"


def load_mcp_config(path: Optional[Path] = None) -> Dict[str, Union[StdioServerConfig, SseServerConfig]]:
    """Load the ``mcp_servers`` section (or ``mcpServers``) from a YAML file."""
    config_path = Path(path) if path else get_config_path()
    if not config_path.exists():
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    raw = config.get("mcp_servers", config.get("mcpServers", {}))
    if not isinstance(raw, dict):
        logger.warning("mcp_servers in %s is not a mapping -- ignoring", config_path)
        return {}
    return parse_servers(raw)
