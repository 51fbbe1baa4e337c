"""Tests for agent.compaction -- sliding-window summarization.

Run with: python -m pytest tests/test_compaction.py -v
"""

import pytest

from agent.compaction import (
    SUMMARY_PREFIX,
    CompactionConfig,
    CompactionEngine,
    CompactionError,
    format_messages_for_summary,
    is_summary_message,
)
from agent.messages import Message, ToolCall, ToolResult
from tests.fakes.scripted_provider import ScriptedProvider, text_response


def _conversation(n):
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(n)
    ]


def _engine(provider=None, **config):
    defaults = dict(inception_count=2, working_window_count=3, message_threshold=8)
    defaults.update(config)
    return CompactionEngine(provider, "gpt-4o", CompactionConfig(**defaults))


class TestConfig:
    def test_defaults(self):
        cfg = CompactionConfig()
        assert cfg.enabled is True
        assert cfg.token_threshold == 0.8
        assert cfg.inception_count == 4
        assert cfg.working_window_count == 10

    @pytest.mark.parametrize("threshold", [0, 1.5, -0.1])
    def test_rejects_bad_threshold(self, threshold):
        with pytest.raises(ValueError):
            CompactionConfig(token_threshold=threshold)

    def test_from_dict_ignores_unknown_keys(self):
        cfg = CompactionConfig.from_dict({"inception_count": 1, "bogus": True})
        assert cfg.inception_count == 1


class TestRegion:
    def test_region_is_strictly_between_inception_and_window(self):
        msgs = _conversation(10)
        region = _engine().get_messages_to_compact(msgs)
        assert [m.content for m in region] == [f"message {i}" for i in range(2, 7)]

    def test_short_conversation_has_no_region(self):
        assert _engine().get_messages_to_compact(_conversation(5)) == []

    def test_boundaries_keep_tool_calls_with_results(self):
        msgs = [
            Message(role="user", content="start"),
            Message(role="assistant", tool_calls=[ToolCall(id="1", name="read")]),
            Message(role="user", tool_results=[ToolResult(id="1", name="read", result="a")]),
            Message(role="assistant", content="thinking"),
            Message(role="assistant", tool_calls=[ToolCall(id="2", name="read")]),
            Message(role="user", tool_results=[ToolResult(id="2", name="read", result="b")]),
        ]
        # Inception would end between call 1 and its result, the window would
        # start between call 2 and its result; both move to keep the pairs.
        region = _engine(inception_count=2, working_window_count=1).get_messages_to_compact(msgs)
        assert region == [msgs[3]]

        compacted = _engine(inception_count=2, working_window_count=1).build_compacted_messages(msgs, "s")
        assert compacted[:3] == msgs[:3]
        assert is_summary_message(compacted[3])
        assert compacted[4:] == msgs[4:]

    def test_should_compact_by_message_count(self):
        stats = _engine().should_compact(_conversation(10))
        assert stats is not None
        assert stats.messages_to_compact == 5

    def test_should_compact_by_tokens(self, monkeypatch):
        monkeypatch.setenv("MODEL_CONTEXT_LENGTH", "100")
        engine = CompactionEngine(None, "mystery-model", CompactionConfig(inception_count=1, working_window_count=1))
        msgs = [Message(role="user", content="x" * 200) for _ in range(3)]
        stats = engine.should_compact(msgs)
        assert stats.threshold == 80
        assert stats.current_tokens == 150

    def test_under_budget(self):
        assert _engine(message_threshold=None).should_compact(_conversation(10)) is None

    def test_disabled(self):
        assert _engine(enabled=False).should_compact(_conversation(50)) is None


class TestCompact:
    @pytest.mark.asyncio
    async def test_compact_and_rebuild(self):
        provider = ScriptedProvider([text_response("## Task Overview\nstuff")])
        engine = _engine(provider)
        msgs = _conversation(10)

        result = await engine.compact(msgs)
        assert result.messages_pruned == 5
        assert result.summary.startswith("## Task Overview")
        assert 0 < result.compression_ratio

        request = provider.requests[0]
        assert request.max_tokens == 2000
        assert "message 2" in request.messages[0].content
        assert "message 7" not in request.messages[0].content

        compacted = engine.build_compacted_messages(msgs, result.summary)
        assert [m.content for m in compacted[:2]] == ["message 0", "message 1"]
        assert compacted[2].role == "assistant"
        assert compacted[2].content == SUMMARY_PREFIX + result.summary
        assert [m.content for m in compacted[3:]] == ["message 7", "message 8", "message 9"]

    @pytest.mark.asyncio
    async def test_compacted_conversation_is_not_recompacted(self):
        provider = ScriptedProvider([text_response("summary")])
        engine = _engine(provider, message_threshold=1)
        msgs = _conversation(10)
        result = await engine.compact(msgs)
        compacted = engine.build_compacted_messages(msgs, result.summary)

        assert is_summary_message(compacted[2])
        assert engine.get_messages_to_compact(compacted) == []
        assert engine.should_compact(compacted) is None

    @pytest.mark.asyncio
    async def test_compact_with_empty_region_raises(self):
        with pytest.raises(CompactionError):
            await _engine(ScriptedProvider()).compact(_conversation(3))

    @pytest.mark.asyncio
    async def test_summary_model_override(self):
        provider = ScriptedProvider([text_response("s")])
        await _engine(provider, model="gpt-4o-mini").compact(_conversation(10))
        assert provider.requests[0].model == "gpt-4o-mini"


def test_format_messages_for_summary_truncates_results():
    msgs = [
        Message(role="user", content="please read"),
        Message(role="assistant", tool_calls=[ToolCall(id="1", name="read", arguments={})]),
        Message(role="user", tool_results=[ToolResult(id="1", name="read", result="y" * 300, is_error=True)]),
    ]
    text = format_messages_for_summary(msgs)
    assert "User: please read" in text
    assert "Assistant called tool: read" in text
    assert "Tool read failed: " + "y" * 200 + "..." in text
