"""OpenAI-compatible streaming provider.

Works against any Chat Completions endpoint (OpenAI, OpenRouter, local
servers). Credentials come from the factory options or the environment;
``~/.relay/.env`` is loaded first so keys can live there.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from openai import AsyncOpenAI

from agent.messages import ImageSegment, Message, TextSegment, ToolCall, generate_id
from agent.plugin import ProviderDefinition
from agent.provider import (
    ProviderResponse,
    StreamChunk,
    StreamRequest,
    StreamResult,
    TokenUsage,
)
from relay_constants import get_relay_home

logger = logging.getLogger(__name__)

_DONE = object()


def _load_env() -> None:
    env_path = get_relay_home() / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")


def _content_parts(message: Message):
    if isinstance(message.content, str):
        return message.content
    parts = []
    for seg in message.content:
        if isinstance(seg, TextSegment):
            parts.append({"type": "text", "text": seg.text})
        elif isinstance(seg, ImageSegment):
            url = seg.url or f"data:{seg.media_type};base64,{seg.data}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def to_openai_messages(messages: List[Message], system: Optional[str] = None) -> List[Dict[str, Any]]:
    """Convert conversation messages to Chat Completions format."""
    out: List[Dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})
    for msg in messages:
        if msg.tool_results:
            for tr in msg.tool_results:
                out.append({"role": "tool", "tool_call_id": tr.id, "content": tr.result})
            continue
        entry: Dict[str, Any] = {"role": msg.role, "content": _content_parts(msg)}
        if msg.role == "assistant" and msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in msg.tool_calls
            ]
        out.append(entry)
    return out


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model produced invalid tool arguments JSON: %s", raw[:200])
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAIProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            _load_env()
            client = AsyncOpenAI(
                api_key=api_key or os.getenv("OPENAI_API_KEY"),
                base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
            )
        self.client = client

    async def _produce(self, request: StreamRequest, queue: asyncio.Queue) -> ProviderResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request.messages, request.system),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            kwargs["tools"] = [{"type": "function", "function": t} for t in request.tools]
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        text_parts: List[str] = []
        partial_calls: Dict[int, Dict[str, str]] = {}
        usage = TokenUsage()
        stop_reason = None
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if chunk.usage:
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    text_parts.append(delta.content)
                    await queue.put(StreamChunk(type="text", content=delta.content))
                for tc in delta.tool_calls or []:
                    slot = partial_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function and tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
                if choice.finish_reason:
                    stop_reason = choice.finish_reason

            tool_calls = []
            for index in sorted(partial_calls):
                slot = partial_calls[index]
                call = ToolCall(
                    id=slot["id"] or generate_id(),
                    name=slot["name"],
                    arguments=_parse_arguments(slot["arguments"]),
                )
                tool_calls.append(call)
                await queue.put(StreamChunk(type="tool_call", tool_call=call))
        except BaseException as e:
            await queue.put(e)
            raise
        await queue.put(_DONE)
        return ProviderResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=usage,
            stop_reason=stop_reason,
        )

    async def stream(self, request: StreamRequest) -> StreamResult:
        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._produce(request, queue))
        if request.cancellation is not None:
            unsubscribe = request.cancellation.on_cancel(lambda: loop.call_soon_threadsafe(task.cancel))
            task.add_done_callback(lambda _t: unsubscribe())

        async def _chunks():
            while True:
                item = await queue.get()
                if item is _DONE:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item

        return StreamResult(stream=_chunks(), response=task)


def create_openai_provider(options: Dict[str, Any]) -> OpenAIProvider:
    return OpenAIProvider(api_key=options.get("api_key"), base_url=options.get("base_url"))


OPENAI_PROVIDER = ProviderDefinition(name="openai", factory=create_openai_provider)
