"""Slash command parsing and the built-in commands every agent carries."""

import asyncio
import re
from typing import Optional, Tuple

from agent.plugin import CommandContext, CommandDefinition, CommandResult

_COMMAND_RE = re.compile(r"^/(\w+)(?:\s+(.*))?$", re.DOTALL)


def parse_command(text: str) -> Optional[Tuple[str, str]]:
    """Split ``/name args`` into ``(name, args)``; None if not a command."""
    match = _COMMAND_RE.match(text.strip())
    if not match:
        return None
    return match.group(1), (match.group(2) or "").strip()


async def run_command(command: CommandDefinition, args: str, ctx: CommandContext) -> CommandResult:
    result = command.execute(args, ctx)
    if asyncio.iscoroutine(result):
        result = await result
    return result


def _help(args: str, ctx: CommandContext) -> CommandResult:
    lines = ["Available commands:"]
    for cmd in ctx.agent.commands.get_all():
        lines.append(f"  /{cmd.name} - {cmd.description}")
    return CommandResult(output="\n".join(lines))


def _clear(args: str, ctx: CommandContext) -> CommandResult:
    count = len(ctx.agent.get_messages())
    ctx.agent.clear_messages()
    return CommandResult(output=f"Cleared {count} messages from the conversation.")


async def _compact(args: str, ctx: CommandContext) -> CommandResult:
    result = await ctx.agent.run_compaction()
    if result is None:
        return CommandResult(output="Nothing to compact.")
    return CommandResult(
        output=(
            f"Compacted {result.messages_pruned} messages: "
            f"{result.original_tokens:,} -> {result.compacted_tokens:,} tokens "
            f"({result.compression_ratio:.0%} of original)."
        )
    )


BUILTIN_COMMANDS = (
    CommandDefinition(name="help", description="List available commands", execute=_help),
    CommandDefinition(name="clear", description="Clear the conversation history", execute=_clear),
    CommandDefinition(name="compact", description="Summarize older messages to free context", execute=_compact),
)
