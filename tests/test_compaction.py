"""Tests for conversation compaction."""

from unittest.mock import AsyncMock

import pytest

from adjutant.api.compaction import Compactor, format_summary_message, serialize_for_summary
from adjutant.api.context import ContextAssembler
from adjutant.api.gateway import to_api_messages
from adjutant.api.models import GatewayResult, Message, Role, SessionState
from adjutant.errors import TransientGatewayError
from tests.conftest import make_call, make_settings


def _long_history(n: int, size: int = 400) -> list[Message]:
    messages = []
    for i in range(n):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        messages.append(Message(role=role, content=f"message {i} " + "x" * size))
    return messages


def _tool_rounds(n: int, size: int = 400) -> list[Message]:
    """n rounds of (assistant tool_use, tool result) with no user turn in between."""
    messages = []
    for i in range(n):
        call = make_call("read_file", call_id=f"t{i}", path=f"f{i}.py")
        messages.append(Message(role=Role.ASSISTANT, content=f"reading f{i}", tool_calls=[call]))
        messages.append(Message(role=Role.TOOL, content="x" * size, tool_call_id=call.id, name="read_file"))
    return messages


@pytest.fixture
def compact_settings(workspace):
    return make_settings(
        workspace,
        compaction_message_threshold=10,
        compaction_char_threshold=5000,
        keep_recent_messages=4,
        max_summary_chars=500,
    )


def _gateway(text: str = "Summary of work so far.") -> AsyncMock:
    gateway = AsyncMock()
    gateway.call.return_value = GatewayResult(text=text)
    return gateway


class TestShouldCompact:
    def test_message_threshold(self, compact_settings):
        compactor = Compactor(compact_settings)
        assert not compactor.should_compact(_long_history(10, size=1))
        assert compactor.should_compact(_long_history(11, size=1))

    def test_char_threshold(self, compact_settings):
        assert Compactor(compact_settings).should_compact(_long_history(2, size=6000))

    def test_disabled(self, workspace):
        compactor = Compactor(make_settings(workspace, compaction_enabled=False))
        assert not compactor.should_compact(_long_history(100))


class TestSplit:
    def test_tail_starts_at_user_turn(self, compact_settings):
        """A tool call and its result stay on the same side of the cut."""
        call = make_call("read_file", path="a")
        messages = [
            *_long_history(4),
            Message(role=Role.ASSISTANT, tool_calls=[call]),
            Message(role=Role.TOOL, content="1: x", tool_call_id=call.id, name="read_file"),
            *_long_history(3),
        ]
        cut = Compactor(compact_settings).split(messages)
        assert cut == 6
        assert messages[cut].role == Role.USER

    def test_single_long_turn_cut_at_assistant(self, compact_settings):
        messages = [Message(role=Role.USER, content="refactor everything"), *_tool_rounds(4)]
        cut = Compactor(compact_settings).split(messages)
        assert messages[cut].role == Role.ASSISTANT
        assert cut == 5

    def test_short_history(self, compact_settings):
        assert Compactor(compact_settings).split(_long_history(3)) == 0


class TestCompact:
    @pytest.mark.asyncio
    async def test_replaces_prefix_with_summary(self, compact_settings):
        gateway = _gateway()
        session = SessionState(session_id="s1", messages=_long_history(12))
        recent = session.messages[-4:]

        summary = await Compactor(compact_settings, gateway).compact(session)

        assert summary.text == "Summary of work so far."
        assert summary.replaced_count == 8
        assert len(session.messages) == 5
        head = session.messages[0]
        assert head.role == Role.SYSTEM
        assert head.summary is summary
        assert head.content == format_summary_message("Summary of work so far.")
        assert session.messages[1:] == recent
        assert session.compaction_count == 1

        args = gateway.call.call_args.args
        assert args[1] == []  # no tools for the summarizer
        assert "Summarize this conversation history" in args[0][0].content

    @pytest.mark.asyncio
    async def test_existing_summary_updated(self, compact_settings):
        """A second compaction folds the old summary into the new one."""
        gateway = _gateway()
        session = SessionState(session_id="s1", messages=_long_history(12))
        compactor = Compactor(compact_settings, gateway)
        await compactor.compact(session)
        session.messages.extend(_long_history(8))

        gateway.call.return_value = GatewayResult(text="Updated summary.")
        summary = await compactor.compact(session)

        assert summary.text == "Updated summary."
        assert summary.replaced_count == 8 + 8
        prompt = gateway.call.call_args.args[0][0].content
        assert "## Existing Summary\n\nSummary of work so far." in prompt
        assert session.compaction_count == 2

    @pytest.mark.asyncio
    async def test_summarizer_failure_falls_back(self, compact_settings):
        gateway = AsyncMock()
        gateway.call.side_effect = TransientGatewayError("overloaded")
        session = SessionState(session_id="s1", messages=_long_history(12))

        summary = await Compactor(compact_settings, gateway).compact(session)

        assert summary is not None
        assert len(summary.text) <= 500
        assert summary.text.startswith("[earlier history omitted]")

    @pytest.mark.asyncio
    async def test_skipped_when_not_smaller(self, compact_settings):
        """A summary that does not shrink the thread is discarded."""
        session = SessionState(session_id="s1", messages=_long_history(12, size=1))
        before = list(session.messages)
        summary = await Compactor(compact_settings, _gateway("y" * 450)).compact(session)
        assert summary is None
        assert session.messages == before
        assert session.compaction_count == 0

    @pytest.mark.asyncio
    async def test_compacted_tool_run_yields_valid_payload(self, compact_settings):
        """A long single tool-using turn compacts into a user-led Messages-API payload."""
        session = SessionState(
            session_id="s1",
            messages=[Message(role=Role.USER, content="refactor everything"), *_tool_rounds(6)],
        )

        summary = await Compactor(compact_settings, _gateway()).compact(session)

        assert summary is not None
        assert session.messages[1].role == Role.ASSISTANT
        payload = to_api_messages(ContextAssembler(compact_settings).build_messages(session.messages))
        assert [m["role"] for m in payload] == ["user", "assistant", "user", "assistant", "user"]
        assert "Summary of work so far." in payload[0]["content"][0]["text"]
        used = {b["id"] for m in payload for b in m["content"] if b["type"] == "tool_use"}
        answered = {b["tool_use_id"] for m in payload for b in m["content"] if b["type"] == "tool_result"}
        assert answered == used

    @pytest.mark.asyncio
    async def test_idempotent_on_unchanged_thread(self, compact_settings):
        """Re-running on the compacted thread changes nothing."""
        session = SessionState(session_id="s1", messages=_long_history(12))
        compactor = Compactor(compact_settings, _gateway())
        await compactor.compact(session)
        snapshot = list(session.messages)

        assert await compactor.compact(session) is None
        assert session.messages == snapshot


class TestSerialize:
    def test_condensed_transcript(self):
        call = make_call("read_file", path="a.py")
        text = serialize_for_summary([
            Message(role=Role.USER, content="u" * 600),
            Message(role=Role.ASSISTANT, content="checking", tool_calls=[call]),
            Message(role=Role.TOOL, content="t" * 300, name="read_file"),
        ])
        assert "[User]: " + "u" * 500 + "..." in text
        assert "[Assistant] Used tools: read_file. checking" in text
        assert "[Tool] (read_file): " + "t" * 200 + "..." in text
