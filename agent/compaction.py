"""Sliding-window conversation compaction.

Keeps a growing conversation inside its model's context budget. The first
``inception_count`` messages (task setup) and the last
``working_window_count`` messages (live context) are always kept verbatim;
everything strictly between them is the compactable region, which gets
replaced by one synthetic assistant message carrying a structured summary
produced by the summarization model.

Summary messages from an earlier compaction are never compacted on their
own, so a freshly compacted conversation is not immediately recommended for
compaction again.
"""

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional

from agent.cancellation import CancellationToken
from agent.messages import Message, generate_id, message_text
from agent.model_metadata import (
    estimate_conversation_tokens,
    estimate_tokens,
    get_model_context_length,
)
from agent.provider import StreamRequest

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]\n\n"

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that creates structured summaries."

SUMMARY_PROMPT = """You are a conversation summarizer. Summarize the following conversation history into a structured summary that captures all important context.

The summary should include:
## Tasks Completed
- [Bullet list of completed tasks with outcomes]

## Files Modified
- [List of files with brief description of changes]

## Key Decisions
- [Important decisions made and their rationale]

## Problems Encountered
- [Any errors, blockers, or issues]

## Current State
[Where we are - 1-2 sentences]

## Next Steps
- [Unfinished work or pending items]

Be thorough but concise. This summary will replace the original messages to maintain context.

Conversation to summarize:
"""

_RESULT_PREVIEW_CHARS = 200


@dataclass
class CompactionConfig:
    enabled: bool = True
    token_threshold: float = 0.8
    inception_count: int = 4
    working_window_count: int = 10
    summary_max_tokens: int = 2000
    auto_compact: bool = True
    message_threshold: Optional[int] = None
    model: Optional[str] = None

    def __post_init__(self):
        if not 0 < self.token_threshold <= 1:
            raise ValueError(f"token_threshold must be in (0, 1], got {self.token_threshold}")
        if self.inception_count < 0 or self.working_window_count < 0:
            raise ValueError("inception_count and working_window_count must be >= 0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompactionConfig":
        """Build from a config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class CompactionStats:
    current_tokens: int
    threshold: int
    messages_to_compact: int


@dataclass
class CompactionResult:
    compaction_id: str
    summary: str
    original_tokens: int
    compacted_tokens: int
    messages_pruned: int
    compression_ratio: float


class CompactionError(Exception):
    pass


def is_summary_message(message: Message) -> bool:
    return message.role == "assistant" and message_text(message).startswith(SUMMARY_PREFIX)


def _answers(call: Message, reply: Message) -> bool:
    return call.role == "assistant" and bool(call.tool_calls) and bool(reply.tool_results)


class CompactionEngine:
    """Compaction policy bound to one model and one provider."""

    def __init__(self, provider, model: str, config: Optional[CompactionConfig] = None):
        self.provider = provider
        self.model = model
        self.config = config or CompactionConfig()

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    def _bounds(self, messages: List[Message]):
        count = len(messages)
        inception_end = min(self.config.inception_count, count)
        # Never split an assistant's tool calls from the message carrying
        # their results.
        if 0 < inception_end < count and _answers(
            messages[inception_end - 1], messages[inception_end],
        ):
            inception_end += 1
        working_start = max(inception_end, count - self.config.working_window_count)
        if inception_end < working_start < count and _answers(
            messages[working_start - 1], messages[working_start],
        ):
            working_start -= 1
        return inception_end, working_start

    def get_messages_to_compact(self, messages: List[Message]) -> List[Message]:
        inception_end, working_start = self._bounds(messages)
        region = messages[inception_end:working_start]
        if all(is_summary_message(m) for m in region):
            return []
        return region

    def should_compact(self, messages: List[Message]) -> Optional[CompactionStats]:
        """Return stats when compaction is due, else None."""
        if not self.config.enabled:
            return None

        threshold = int(get_model_context_length(self.model) * self.config.token_threshold)
        current = estimate_conversation_tokens(messages)

        over_tokens = current >= threshold
        over_count = (
            self.config.message_threshold is not None
            and len(messages) >= self.config.message_threshold
        )
        if not (over_tokens or over_count):
            return None

        region = self.get_messages_to_compact(messages)
        if not region:
            logger.debug("Compaction due (%d tokens) but nothing compactable", current)
            return None

        return CompactionStats(
            current_tokens=current,
            threshold=threshold,
            messages_to_compact=len(region),
        )

    async def compact(
        self,
        messages: List[Message],
        cancellation: Optional[CancellationToken] = None,
    ) -> CompactionResult:
        region = self.get_messages_to_compact(messages)
        if not region:
            raise CompactionError("No messages to compact")

        original_tokens = estimate_conversation_tokens(region)
        transcript = format_messages_for_summary(region)

        request = StreamRequest(
            model=self.config.model or self.model,
            messages=[Message(role="user", content=SUMMARY_PROMPT + transcript)],
            system=SUMMARY_SYSTEM_PROMPT,
            max_tokens=self.config.summary_max_tokens,
            cancellation=cancellation,
        )
        result = await self.provider.stream(request)
        response = await result.response
        summary = response.content

        compacted_tokens = estimate_tokens(summary)
        ratio = compacted_tokens / original_tokens if original_tokens > 0 else 1.0
        logger.info(
            "Compacted %d messages: %d -> %d tokens",
            len(region), original_tokens, compacted_tokens,
        )
        return CompactionResult(
            compaction_id=generate_id(),
            summary=summary,
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            messages_pruned=len(region),
            compression_ratio=ratio,
        )

    def build_compacted_messages(self, messages: List[Message], summary: str) -> List[Message]:
        """Return ``inception + [summary message] + working window``."""
        inception_end, working_start = self._bounds(messages)
        summary_message = Message(role="assistant", content=SUMMARY_PREFIX + summary)
        return messages[:inception_end] + [summary_message] + messages[working_start:]


def format_messages_for_summary(messages: List[Message]) -> str:
    parts = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        text = message_text(msg)
        if text:
            parts.append(f"{role}: {text}")
        for tc in msg.tool_calls or []:
            parts.append(f"{role} called tool: {tc.name}")
        for tr in msg.tool_results or []:
            status = "failed" if tr.is_error else "succeeded"
            result = str(tr.result)
            preview = result[:_RESULT_PREVIEW_CHARS]
            if len(result) > _RESULT_PREVIEW_CHARS:
                preview += "..."
            parts.append(f"Tool {tr.name} {status}: {preview}")
    return "\n\n".join(parts)
