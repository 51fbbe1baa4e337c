"""Model context lengths and token estimation utilities.

Pure functions with no Agent dependency. Used by the compaction engine to
decide when a conversation has outgrown its model's context window.
"""

import json
import logging
import math
import os
from typing import Iterable

from agent.messages import Message, message_text

logger = logging.getLogger(__name__)

# Fallback for models missing from the table below. Override with the
# MODEL_CONTEXT_LENGTH env var when running against an unlisted model.
DEFAULT_CONTEXT_LENGTH = 100000

DEFAULT_CONTEXT_LENGTHS = {
    "claude-opus-4": 200000,
    "claude-sonnet-4-20250514": 200000,
    "claude-sonnet-4": 200000,
    "claude-3-5-sonnet": 200000,
    "claude-3-5-haiku": 200000,
    "gpt-4o": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16385,
}


def _get_fallback_context_length() -> int:
    env_override = os.getenv("MODEL_CONTEXT_LENGTH")
    if env_override:
        try:
            return int(env_override)
        except ValueError:
            logger.warning(f"Invalid MODEL_CONTEXT_LENGTH value: {env_override}, using default")
    return DEFAULT_CONTEXT_LENGTH


def get_model_context_length(model: str) -> int:
    """Get the context length for a model.

    Resolution order:
    1. Exact entry in DEFAULT_CONTEXT_LENGTHS
    2. Longest table key contained in the model id (``openai/gpt-4o-mini``
       resolves to ``gpt-4o``, not ``gpt-4``)
    3. MODEL_CONTEXT_LENGTH env var, else DEFAULT_CONTEXT_LENGTH
    """
    if model in DEFAULT_CONTEXT_LENGTHS:
        return DEFAULT_CONTEXT_LENGTHS[model]

    matches = [key for key in DEFAULT_CONTEXT_LENGTHS if key in model]
    if matches:
        return DEFAULT_CONTEXT_LENGTHS[max(matches, key=len)]

    fallback = _get_fallback_context_length()
    logger.debug(f"Unknown model '{model}' - using context length of {fallback:,} tokens")
    return fallback


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(message: Message) -> int:
    tokens = estimate_tokens(message_text(message))
    for tc in message.tool_calls or []:
        tokens += estimate_tokens(tc.name)
        tokens += estimate_tokens(json.dumps(tc.arguments, default=str))
    for tr in message.tool_results or []:
        tokens += estimate_tokens(str(tr.result))
    return tokens


def estimate_conversation_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
