"""Model provider contract.

A provider turns a ``StreamRequest`` into a ``StreamResult``: an async
iterator of ``StreamChunk`` objects plus an awaitable final
``ProviderResponse``. The response must resolve even if the caller never
iterates the stream (the compaction engine only awaits the response).

Chunks are tagged ``text`` (incremental content) or ``tool_call`` (a fully
formed tool invocation).
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    List,
    Literal,
    Optional,
    Protocol,
    runtime_checkable,
)

from agent.cancellation import CancellationToken
from agent.messages import Message, ToolCall


@dataclass
class StreamChunk:
    type: Literal["text", "tool_call"]
    content: str = ""
    tool_call: Optional[ToolCall] = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ProviderResponse:
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: Optional[str] = None


@dataclass
class StreamRequest:
    model: str
    messages: List[Message]
    system: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    cancellation: Optional[CancellationToken] = None


@dataclass
class StreamResult:
    stream: AsyncIterator[StreamChunk]
    response: Awaitable[ProviderResponse]


@runtime_checkable
class LLMProvider(Protocol):
    async def stream(self, request: StreamRequest) -> StreamResult:
        ...
