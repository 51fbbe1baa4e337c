"""Tests for tools.mcp_config -- MCP server config parsing."""

import pytest
from pydantic import ValidationError

from tools.mcp_config import (
    SseServerConfig,
    StdioServerConfig,
    load_mcp_config,
    parse_server_config,
    parse_servers,
)


class TestParseServerConfig:
    def test_stdio_is_default_transport(self):
        cfg = parse_server_config({"command": "npx", "args": ["-y", "server-github"]})
        assert isinstance(cfg, StdioServerConfig)
        assert cfg.transport == "stdio"
        assert cfg.args == ["-y", "server-github"]
        assert cfg.enabled is True
        assert cfg.timeout_ms == 30000

    def test_sse_with_oauth_camel_case(self):
        cfg = parse_server_config({
            "transport": "sse",
            "url": "https://mcp.example.com/sse",
            "timeoutMs": 5000,
            "oauth": {
                "clientId": "relay",
                "authorizationUrl": "https://auth.example.com/authorize",
                "tokenUrl": "https://auth.example.com/token",
                "scopes": ["read"],
            },
        })
        assert isinstance(cfg, SseServerConfig)
        assert cfg.timeout_ms == 5000
        assert cfg.oauth.client_id == "relay"
        assert cfg.oauth.token_url == "https://auth.example.com/token"

    def test_snake_case_keys(self):
        cfg = parse_server_config({"command": "x", "timeout_ms": 100})
        assert cfg.timeout_ms == 100

    def test_unknown_transport_rejected(self):
        with pytest.raises(ValidationError):
            parse_server_config({"transport": "carrier-pigeon", "url": "x"})

    def test_missing_required_field(self):
        with pytest.raises(ValidationError):
            parse_server_config({"transport": "sse"})

    def test_already_parsed_passes_through(self):
        cfg = StdioServerConfig(command="x")
        assert parse_server_config(cfg) is cfg

    def test_env_expansion(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
        cfg = parse_server_config({"command": "x", "env": {"TOKEN": "${GITHUB_TOKEN}", "UNSET": "${NOPE_NOT_SET}"}})
        assert cfg.resolved_env() == {"TOKEN": "ghp_secret", "UNSET": ""}


def test_parse_servers_skips_invalid_entries():
    servers = parse_servers({
        "good": {"command": "x"},
        "bad": {"transport": "sse"},
    })
    assert list(servers) == ["good"]


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        assert load_mcp_config(tmp_path / "absent.yaml") == {}

    def test_loads_mcp_servers_section(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "model: gpt-4o\n"
            "mcp_servers:\n"
            "  github:\n"
            "    command: npx\n"
            "    args: ['-y', '@modelcontextprotocol/server-github']\n"
            "  linear:\n"
            "    transport: sse\n"
            "    url: https://mcp.linear.app/sse\n"
            "    enabled: false\n"
        )
        servers = load_mcp_config(path)
        assert set(servers) == {"github", "linear"}
        assert servers["linear"].enabled is False

    def test_camel_case_section_name(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("mcpServers:\n  fs:\n    command: mcp-fs\n")
        assert list(load_mcp_config(path)) == ["fs"]

    def test_default_path_under_relay_home(self, relay_home):
        (relay_home / "config.yaml").write_text("mcp_servers:\n  fs:\n    command: mcp-fs\n")
        assert list(load_mcp_config()) == ["fs"]
