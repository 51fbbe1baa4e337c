"""Tool call execution.

Runs the tool calls of one assistant message against a ``ToolRegistry``,
consulting the permission gate first. Every failure a model can recover
from (unknown tool, refused permission, invalid parameters, an exception
inside the tool) becomes an error-flagged ``ToolResult`` instead of an
exception, so the agent loop can feed it back to the model.

Sync tool executors run in the default thread pool so they never block
the event loop; the turn's cancellation token is checked before and after
each tool.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import jsonschema
from jsonschema.exceptions import best_match
from jsonschema.validators import validator_for
from pydantic import BaseModel, ValidationError

from agent.cancellation import AgentCancelledError
from agent.events import (
    TOOL_PERMISSION_DENIED,
    TOOL_PERMISSION_GRANTED,
    TOOL_PERMISSION_REQUEST,
)
from agent.messages import ToolCall, ToolResult
from agent.permissions import ToolPermissionManager
from agent.plugin import ToolContext, ToolDefinition, ToolExecuteResult
from agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000

Emit = Callable[..., Any]


def _error(tool_call: ToolCall, text: str) -> ToolResult:
    return ToolResult(id=tool_call.id, name=tool_call.name, result=text, is_error=True)


def _truncate(output: str) -> str:
    # 100K chars ~ 25K tokens
    if len(output) <= MAX_TOOL_RESULT_CHARS:
        return output
    original_len = len(output)
    return (
        output[:MAX_TOOL_RESULT_CHARS]
        + f"\n\n[Truncated: tool response was {original_len:,} chars, "
        f"exceeding the {MAX_TOOL_RESULT_CHARS:,} char limit]"
    )


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _format_schema_error(exc: jsonschema.ValidationError) -> str:
    path = exc.absolute_path
    pointer = "/" + "/".join(str(part) for part in path) if path else "(root)"
    return f"{pointer}: {exc.message}"


def validate_parameters(tool: ToolDefinition, arguments: Dict[str, Any]) -> Any:
    """Validate *arguments* against the tool's schema.

    Returns a model instance for pydantic-declared tools and the raw dict
    for JSON Schema tools, which are checked with the validator matching
    their ``$schema`` (Draft 2020-12 when unspecified). Raises
    ``ValueError`` on failure.
    """
    params = tool.parameters
    if isinstance(params, type) and issubclass(params, BaseModel):
        try:
            return params.model_validate(arguments or {})
        except ValidationError as e:
            raise ValueError(_format_validation_error(e)) from e

    if not isinstance(arguments, dict):
        raise ValueError("arguments must be an object")
    validator_cls = validator_for(params, default=jsonschema.Draft202012Validator)
    try:
        validator_cls.check_schema(params)
    except jsonschema.SchemaError as e:
        logger.warning("Tool %s has an invalid parameter schema, skipping validation: %s", tool.name, e.message)
        return arguments
    error = best_match(validator_cls(params).iter_errors(arguments))
    if error is not None:
        raise ValueError(_format_schema_error(error))
    return arguments


async def _invoke(tool: ToolDefinition, params: Any, ctx: ToolContext) -> ToolExecuteResult:
    if asyncio.iscoroutinefunction(tool.execute):
        result = await ctx.cancellation.race(tool.execute(params, ctx))
    else:
        loop = asyncio.get_running_loop()
        result = await ctx.cancellation.race(
            loop.run_in_executor(None, functools.partial(tool.execute, params, ctx))
        )
        if asyncio.iscoroutine(result):
            result = await ctx.cancellation.race(result)
    if isinstance(result, ToolExecuteResult):
        return result
    return ToolExecuteResult(output="" if result is None else str(result))


async def execute_single_tool(tool: ToolDefinition, tool_call: ToolCall, ctx: ToolContext) -> ToolResult:
    try:
        params = validate_parameters(tool, tool_call.arguments)
    except ValueError as e:
        return _error(tool_call, f"Invalid parameters: {e}")

    start = time.time()
    try:
        outcome = await _invoke(tool, params, ctx)
    except AgentCancelledError:
        raise
    except Exception as e:
        logger.debug("Tool %s raised", tool_call.name, exc_info=True)
        return _error(tool_call, f"Tool execution error: {e}")

    logger.debug("Tool %s completed in %.2fs", tool_call.name, time.time() - start)
    return ToolResult(
        id=tool_call.id,
        name=tool_call.name,
        result=_truncate(outcome.output),
        is_error=outcome.is_error,
    )


async def execute_tool_call(
    tool_call: ToolCall,
    registry: ToolRegistry,
    permissions: ToolPermissionManager,
    ctx: ToolContext,
    emit: Emit,
    message_id: Optional[str] = None,
) -> ToolResult:
    """Execute one tool call, returning its (possibly error-flagged) result."""
    tool = registry.get(tool_call.name)
    if tool is None:
        return _error(tool_call, f"Unknown tool: {tool_call.name}")

    decision = permissions.get_permission_decision(tool_call.name)
    if decision == "deny":
        emit(TOOL_PERMISSION_DENIED, message_id=message_id, tool_name=tool_call.name)
        return _error(tool_call, f'Tool "{tool_call.name}" is not permitted')

    if decision == "ask":
        emit(TOOL_PERMISSION_REQUEST, message_id=message_id, tool_call=tool_call)
        permitted = await permissions.check_permission(tool_call)
        if not permitted:
            emit(TOOL_PERMISSION_DENIED, message_id=message_id, tool_name=tool_call.name)
            return _error(tool_call, f'Tool "{tool_call.name}" execution denied by user')
        emit(
            TOOL_PERMISSION_GRANTED,
            message_id=message_id,
            tool_name=tool_call.name,
            allow_always=permissions.is_allowed_for_session(tool_call.name),
        )

    return await execute_single_tool(tool, tool_call, ctx)


async def execute_tool_calls(
    tool_calls: List[ToolCall],
    registry: ToolRegistry,
    permissions: ToolPermissionManager,
    ctx: ToolContext,
    emit: Emit,
    message_id: Optional[str] = None,
    on_result: Optional[Callable[[ToolResult], None]] = None,
) -> List[ToolResult]:
    """Execute *tool_calls* in order.

    Checks the cancellation token before each call; an abort mid-list
    raises ``AgentCancelledError`` rather than returning partial results.
    """
    results = []
    for tool_call in tool_calls:
        ctx.cancellation.raise_if_cancelled()
        result = await execute_tool_call(tool_call, registry, permissions, ctx, emit, message_id)
        results.append(result)
        if on_result is not None:
            on_result(result)
    ctx.cancellation.raise_if_cancelled()
    return results
