"""MCP federation -- connecting external Model Context Protocol servers.

**mcp_config.py**
    Server configuration files (YAML) and their validation.

**mcp_client.py**
    JSON-RPC clients over the stdio and SSE transports.

**mcp_oauth.py**
    OAuth 2.0 authorization-code + PKCE for servers that require it.

**mcp_manager.py**
    Lifecycle of many servers at once, plus the aggregated tool view.

**mcp_tool.py**
    Adapts MCP tools into agent tool definitions.
"""
