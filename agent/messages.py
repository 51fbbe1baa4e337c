"""Conversation message types.

A conversation is an ordered list of ``Message`` objects. Assistant messages
may carry ``tool_calls``; the synthetic user message that follows them
carries only ``tool_results``.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union


def generate_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TextSegment:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ImageSegment:
    """An image attached to a message, either inline base64 data or a URL."""

    data: Optional[str] = None
    url: Optional[str] = None
    media_type: str = "image/png"
    type: Literal["image"] = "image"


ContentSegment = Union[TextSegment, ImageSegment]


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    id: str
    name: str
    result: str
    is_error: bool = False


@dataclass
class Message:
    role: Literal["user", "assistant"]
    content: Union[str, List[ContentSegment]] = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_results: Optional[List[ToolResult]] = None
    id: str = field(default_factory=generate_id)
    created_at: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return message_text(self)


def message_text(message: Message) -> str:
    """Return the plain text of a message, joining text segments."""
    if isinstance(message.content, str):
        return message.content
    return "".join(
        seg.text for seg in message.content if isinstance(seg, TextSegment)
    )
