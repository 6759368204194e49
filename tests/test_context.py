"""Tests for ContextAssembler and the truncation policy."""

import pytest

from adjutant.api.context import (
    CONTEXT_TRUNCATED,
    FILE_TRUNCATED,
    ContextAssembler,
    ContextItem,
    truncate_tool_result,
)
from adjutant.api.gateway import HISTORY_OMITTED, to_api_messages
from adjutant.api.models import CompactionSummary, Message, Role
from tests.conftest import make_call, make_settings


class TestTruncateToolResult:
    def test_short_text_untouched(self):
        assert truncate_tool_result("abc", 10) == "abc"

    def test_marker_reports_omitted_chars(self):
        text = "a" * 700 + "b" * 300
        out = truncate_tool_result(text, 100)
        assert out.startswith("a" * 70)
        assert out.endswith("b" * 25)
        assert "[truncated: 905 chars omitted]" in out

    def test_command_output_keeps_tail(self):
        """Errors live at the end of command output."""
        out = truncate_tool_result("x" * 1000, 100, "run_command")
        head, _, tail = out.partition("... [truncated")
        assert len(head.strip()) == 20
        assert tail.endswith("x" * 75)

    def test_search_output_keeps_head(self):
        out = truncate_tool_result("x" * 1000, 100, "search_files")
        head, _, _ = out.partition("\n\n... [truncated")
        assert len(head) == 90


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_file_item(self, workspace, settings):
        (workspace / "a.py").write_text("print(1)")
        ctx = await ContextAssembler(settings).build_context([ContextItem(kind="file", path="a.py")], workspace)
        assert "### File: a.py\n```\nprint(1)\n```" in ctx

    @pytest.mark.asyncio
    async def test_file_truncated(self, workspace):
        (workspace / "big.txt").write_text("z" * 500)
        assembler = ContextAssembler(make_settings(workspace, max_file_content_chars=100))
        ctx = await assembler.build_context([ContextItem(kind="file", path="big.txt")], workspace)
        assert "z" * 100 + FILE_TRUNCATED in ctx
        assert "z" * 101 not in ctx

    @pytest.mark.asyncio
    async def test_file_outside_workspace(self, workspace, settings):
        ctx = await ContextAssembler(settings).build_context([ContextItem(kind="file", path="../x")], workspace)
        assert "outside the workspace" in ctx

    @pytest.mark.asyncio
    async def test_total_cap(self, workspace):
        """Items past the aggregate limit are replaced by a marker."""
        assembler = ContextAssembler(make_settings(workspace, max_total_context_chars=50))
        items = [
            ContextItem(kind="snippet", label="one", text="a" * 60),
            ContextItem(kind="snippet", label="two", text="b" * 10),
        ]
        ctx = await assembler.build_context(items, workspace)
        assert "a" * 60 in ctx
        assert "b" * 10 not in ctx
        assert ctx.endswith(CONTEXT_TRUNCATED)

    @pytest.mark.asyncio
    async def test_hints(self, workspace, settings):
        ctx = await ContextAssembler(settings).build_context([ContextItem(kind="git")], workspace)
        assert "Git context enabled" in ctx

    def test_user_content_layout(self):
        content = ContextAssembler.build_user_content("fix it", "\n### File: a.py\n")
        assert content.startswith("## Referenced Context\n")
        assert content.endswith("## User Request\nfix it")

    def test_user_content_without_context(self):
        assert ContextAssembler.build_user_content("fix it", "") == "fix it"


class TestSystemPrompt:
    def test_default_mentions_workspace(self, workspace, settings):
        assert str(workspace) in ContextAssembler(settings).system_prompt(workspace)

    def test_override(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, system_prompt="Be terse."))
        assert assembler.system_prompt(workspace) == "Be terse."


class TestBuildMessages:
    def test_internal_filtered(self, settings):
        history = [
            Message(role=Role.USER, content="hi"),
            Message(role=Role.ASSISTANT, content="note", internal=True),
        ]
        assert [m.content for m in ContextAssembler(settings).build_messages(history)] == ["hi"]

    def test_window_never_starts_with_tool_result(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_history_messages=2))
        call = make_call("read_file", path="a")
        history = [
            Message(role=Role.USER, content="go"),
            Message(role=Role.ASSISTANT, tool_calls=[call]),
            Message(role=Role.TOOL, content="1: x", tool_call_id=call.id, name="read_file"),
            Message(role=Role.ASSISTANT, content="done"),
        ]
        out = assembler.build_messages(history)
        assert [m.role for m in out] == [Role.ASSISTANT]
        assert out[0].content == "done"

    def test_capped_window_starts_at_user_turn(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_history_messages=5))
        call = make_call("read_file", path="a")
        history = [
            Message(role=Role.USER, content="u0"),
            Message(role=Role.ASSISTANT, content="a1"),
            Message(role=Role.USER, content="u2"),
            Message(role=Role.ASSISTANT, content="a3"),
            Message(role=Role.USER, content="u4"),
            Message(role=Role.ASSISTANT, tool_calls=[call]),
            Message(role=Role.TOOL, content="1: x", tool_call_id=call.id, name="read_file"),
            Message(role=Role.ASSISTANT, content="a7"),
        ]
        out = assembler.build_messages(history)
        assert out[0].content == "u4"
        assert len(out) == 4
        assert to_api_messages(out)[0]["role"] == "user"

    def test_capped_tool_run_payload_is_user_led(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_history_messages=3))
        history = [Message(role=Role.USER, content="go")]
        for i in range(5):
            call = make_call("read_file", call_id=f"t{i}", path=f"f{i}")
            history.append(Message(role=Role.ASSISTANT, tool_calls=[call]))
            history.append(Message(role=Role.TOOL, content="x", tool_call_id=call.id, name="read_file"))

        payload = to_api_messages(assembler.build_messages(history))

        assert [m["role"] for m in payload] == ["user", "assistant", "user"]
        assert payload[0]["content"] == [{"type": "text", "text": HISTORY_OMITTED}]
        assert payload[1]["content"][0]["id"] == "t4"
        assert payload[2]["content"][0]["tool_use_id"] == "t4"

    def test_uncapped_history_untouched(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_history_messages=10))
        summary = Message(role=Role.SYSTEM, content="summary", summary=CompactionSummary("s", 10))
        call = make_call("read_file", path="a")
        history = [
            summary,
            Message(role=Role.ASSISTANT, tool_calls=[call]),
            Message(role=Role.TOOL, content="1: x", tool_call_id=call.id, name="read_file"),
            Message(role=Role.USER, content="next"),
        ]
        assert assembler.build_messages(history) == history

    def test_summary_always_kept(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_history_messages=2))
        summary = Message(role=Role.SYSTEM, content="summary", summary=CompactionSummary("s", 10))
        history = [summary] + [Message(role=Role.USER, content=str(n)) for n in range(5)]
        out = assembler.build_messages(history)
        assert out[0] is summary
        assert [m.content for m in out[1:]] == ["3", "4"]

    def test_long_tool_results_truncated(self, workspace):
        assembler = ContextAssembler(make_settings(workspace, max_tool_result_chars=100))
        history = [
            Message(role=Role.USER, content="go"),
            Message(role=Role.TOOL, content="x" * 1000, tool_call_id="t1", name="read_file", is_error=True),
        ]
        out = assembler.build_messages(history)
        assert len(out[1].content) < 1000
        assert out[1].is_error
        assert history[1].content == "x" * 1000
