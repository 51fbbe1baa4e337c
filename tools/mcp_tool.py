"""
MCP tool adapter -- exposes federated capabilities as agent tools.

For every connected server the adapter registers:
  - one tool per MCP tool, named ``{server}_{tool}``, whose JSON Schema is
    passed through (with ``$ref`` definitions inlined)
  - ``{server}_list_resources`` / ``{server}_read_resource`` when the
    server exposes resources
  - ``{server}_list_prompts`` / ``{server}_get_prompt`` when it exposes
    prompt templates

MCP failures come back as error-flagged tool results; they never raise
into the agent loop.
"""

import copy
import json
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from agent.plugin import ToolContext, ToolDefinition, ToolExecuteResult
from agent.registry import ToolRegistry
from tools.mcp_client import MCPError, sanitize_error
from tools.mcp_manager import MCPManager, McpTool, make_tool_name

logger = logging.getLogger(__name__)


class ReadResourceInput(BaseModel):
    uri: str = Field(..., description="URI of the resource to read, as listed by list_resources.")


class GetPromptInput(BaseModel):
    name: str = Field(..., description="Prompt template name, as listed by list_prompts.")
    arguments: Dict[str, str] = Field(
        default_factory=dict,
        description="Template arguments keyed by argument name.",
    )


class _EmptyInput(BaseModel):
    pass


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------

def _dereference_schema(schema: dict) -> dict:
    """Recursively inline JSON Schema ``$ref`` definitions.

    Some MCP tools use ``$ref`` for shared type definitions. Many LLMs
    handle inlined schemas better than ``$ref`` pointers.
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return schema

    def _resolve(obj):
        if isinstance(obj, dict):
            if "$ref" in obj:
                ref_path = obj["$ref"]
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref_path.startswith(prefix) and ref_path[len(prefix):] in defs:
                        return _resolve(copy.deepcopy(defs[ref_path[len(prefix):]]))
                return obj
            return {k: _resolve(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item) for item in obj]
        return obj

    result = _resolve(copy.deepcopy(schema))
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


def convert_input_schema(input_schema: Optional[dict]) -> dict:
    """Normalize an MCP ``inputSchema`` into an object schema."""
    schema = _dereference_schema(copy.deepcopy(input_schema or {}))
    if not schema.get("type"):
        schema["type"] = "object"
    schema.setdefault("properties", {})
    return schema


def _error_result(server_name: str, error: Exception) -> ToolExecuteResult:
    return ToolExecuteResult(
        output=f"MCP error ({server_name}): {sanitize_error(str(error))}",
        metadata={"error": True, "mcp_server": server_name},
    )


# ---------------------------------------------------------------------------
# Tool builders
# ---------------------------------------------------------------------------

def _make_tool(manager: MCPManager, tool: McpTool) -> ToolDefinition:
    def execute(params: dict, ctx: ToolContext) -> ToolExecuteResult:
        ctx.cancellation.raise_if_cancelled()
        try:
            output = manager.call_tool(tool.namespaced_name, params, cancellation=ctx.cancellation)
        except MCPError as e:
            return _error_result(tool.server_name, e)
        return ToolExecuteResult(
            output=output,
            metadata={"mcp_server": tool.server_name, "mcp_tool": tool.name},
        )

    return ToolDefinition(
        name=tool.namespaced_name,
        description=f"[MCP:{tool.server_name}] {tool.description or tool.name}",
        parameters=convert_input_schema(tool.input_schema),
        execute=execute,
    )


def _make_resource_tools(manager: MCPManager, server_name: str) -> List[ToolDefinition]:
    def list_resources(params, ctx: ToolContext) -> ToolExecuteResult:
        resources = [
            {"uri": r.uri, "name": r.name, "description": r.description, "mimeType": r.mime_type}
            for r in manager.get_resources(server_name)
        ]
        return ToolExecuteResult(output=json.dumps(resources, indent=2, ensure_ascii=False))

    def read_resource(params: ReadResourceInput, ctx: ToolContext) -> ToolExecuteResult:
        ctx.cancellation.raise_if_cancelled()
        try:
            return ToolExecuteResult(output=manager.read_resource(
                params.uri, server_name, cancellation=ctx.cancellation,
            ))
        except MCPError as e:
            return _error_result(server_name, e)

    return [
        ToolDefinition(
            name=make_tool_name(server_name, "list_resources"),
            description=f"[MCP:{server_name}] List the resources this server exposes.",
            parameters=_EmptyInput,
            execute=list_resources,
        ),
        ToolDefinition(
            name=make_tool_name(server_name, "read_resource"),
            description=f"[MCP:{server_name}] Read a resource by URI.",
            parameters=ReadResourceInput,
            execute=read_resource,
        ),
    ]


def _make_prompt_tools(manager: MCPManager, server_name: str) -> List[ToolDefinition]:
    def list_prompts(params, ctx: ToolContext) -> ToolExecuteResult:
        prompts = [
            {"name": p.name, "description": p.description, "arguments": p.arguments}
            for p in manager.get_prompts(server_name)
        ]
        return ToolExecuteResult(output=json.dumps(prompts, indent=2, ensure_ascii=False))

    def get_prompt(params: GetPromptInput, ctx: ToolContext) -> ToolExecuteResult:
        ctx.cancellation.raise_if_cancelled()
        try:
            text = manager.invoke_prompt(
                make_tool_name(server_name, params.name), params.arguments,
                cancellation=ctx.cancellation,
            )
        except MCPError as e:
            return _error_result(server_name, e)
        return ToolExecuteResult(output=text)

    return [
        ToolDefinition(
            name=make_tool_name(server_name, "list_prompts"),
            description=f"[MCP:{server_name}] List the prompt templates this server exposes.",
            parameters=_EmptyInput,
            execute=list_prompts,
        ),
        ToolDefinition(
            name=make_tool_name(server_name, "get_prompt"),
            description=f"[MCP:{server_name}] Render a prompt template with arguments.",
            parameters=GetPromptInput,
            execute=get_prompt,
        ),
    ]


def build_server_tools(manager: MCPManager, server_name: str) -> List[ToolDefinition]:
    """All tool definitions contributed by one connected server."""
    tools = [_make_tool(manager, t) for t in manager.get_tools() if t.server_name == server_name]
    taken = {t.name for t in tools}
    extras = []
    if manager.get_resources(server_name):
        extras.extend(_make_resource_tools(manager, server_name))
    if manager.get_prompts(server_name):
        extras.extend(_make_prompt_tools(manager, server_name))
    for extra in extras:
        if extra.name in taken:
            logger.debug("MCP '%s' already exposes a tool named %s", server_name, extra.name)
            continue
        tools.append(extra)
    return tools


def register_server_tools(manager: MCPManager, registry: ToolRegistry, server_name: str) -> List[str]:
    tools = build_server_tools(manager, server_name)
    registry.register_all(tools)
    return [t.name for t in tools]


def register_mcp_tools(manager: MCPManager, registry: ToolRegistry) -> Dict[str, List[str]]:
    """Register tools for every connected server; returns ``server -> names``."""
    registered: Dict[str, List[str]] = {}
    for name in manager.get_server_names():
        if manager.is_connected(name):
            registered[name] = register_server_tools(manager, registry, name)
    total = sum(len(v) for v in registered.values())
    if total:
        logger.info("MCP: registered %d tools from %d servers", total, len(registered))
    return registered


def unregister_tools(registry: ToolRegistry, names: List[str]) -> None:
    for name in names:
        registry.unregister(name)
