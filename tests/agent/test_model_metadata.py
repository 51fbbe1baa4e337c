"""Tests for agent.model_metadata -- context lengths and token estimates."""

from agent.messages import Message, ToolCall, ToolResult
from agent.model_metadata import (
    DEFAULT_CONTEXT_LENGTH,
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
    get_model_context_length,
)


class TestContextLength:
    def test_exact_match(self):
        assert get_model_context_length("claude-sonnet-4-20250514") == 200000
        assert get_model_context_length("gpt-4") == 8192

    def test_longest_contained_key_wins(self):
        assert get_model_context_length("openai/gpt-4o-mini") == 128000

    def test_unknown_model_uses_default(self, monkeypatch):
        monkeypatch.delenv("MODEL_CONTEXT_LENGTH", raising=False)
        assert get_model_context_length("mystery-model") == DEFAULT_CONTEXT_LENGTH

    def test_env_override_for_unknown_model(self, monkeypatch):
        monkeypatch.setenv("MODEL_CONTEXT_LENGTH", "4096")
        assert get_model_context_length("mystery-model") == 4096

    def test_invalid_env_override_ignored(self, monkeypatch):
        monkeypatch.setenv("MODEL_CONTEXT_LENGTH", "lots")
        assert get_model_context_length("mystery-model") == DEFAULT_CONTEXT_LENGTH


class TestEstimates:
    def test_four_chars_per_token_rounded_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_message_counts_tool_calls_and_results(self):
        msg = Message(
            role="assistant",
            content="abcd",
            tool_calls=[ToolCall(id="1", name="read", arguments={})],
        )
        # "abcd" -> 1, "read" -> 1, "{}" -> 1
        assert estimate_message_tokens(msg) == 3

        results = Message(role="user", tool_results=[ToolResult(id="1", name="read", result="x" * 8)])
        assert estimate_message_tokens(results) == 2

    def test_conversation_is_sum(self):
        msgs = [Message(role="user", content="abcd"), Message(role="assistant", content="abcdefgh")]
        assert estimate_conversation_tokens(msgs) == 3
