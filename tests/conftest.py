"""Shared fixtures: tmp workspaces, settings and a scripted gateway."""

import uuid

import pytest

from adjutant.api.builtin_tools import register_builtin_tools
from adjutant.api.models import GatewayResult, SessionState, ToolCall
from adjutant.api.plan_tools import register_plan_tools
from adjutant.api.tools import ToolExecutor, ToolRegistry
from adjutant.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_call(name: str, call_id: str | None = None, **arguments) -> ToolCall:
    """Build a model-emitted ToolCall with a unique id."""
    return ToolCall(id=call_id or f"toolu_{uuid.uuid4().hex[:12]}", name=name, arguments=arguments)


def reply(text: str = "", *calls: ToolCall) -> GatewayResult:
    """Build a terminal gateway response."""
    return GatewayResult(
        text=text,
        tool_calls=list(calls),
        stop_reason="tool_use" if calls else "end_turn",
    )


class ScriptedGateway:
    """Gateway double that returns queued responses in order.

    A queued exception is raised instead of returned. Once the script is
    exhausted every call answers with plain text and no tools.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    async def call(self, messages, tools, system_prompt, abort=None):
        self.calls.append({"messages": list(messages), "tools": tools, "system_prompt": system_prompt})
        if not self.responses:
            return GatewayResult(text="done", stop_reason="end_turn")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_settings(workspace, **overrides) -> Settings:
    values = {
        "ANTHROPIC_API_KEY": "test-key",
        "BRAVE_SEARCH_API_KEY": "",
        "workspace_dir": str(workspace),
        "retry_delay": 0,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace(tmp_path):
    """Empty workspace directory (resolved, symlink-free)."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def settings(workspace) -> Settings:
    return make_settings(workspace)


@pytest.fixture
def session() -> SessionState:
    return SessionState(session_id=f"test-{uuid.uuid4().hex[:8]}")


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with the file, terminal and plan tools."""
    reg = ToolRegistry()
    register_builtin_tools(reg)
    register_plan_tools(reg)
    return reg


@pytest.fixture
def executor(registry, settings) -> ToolExecutor:
    return ToolExecutor(registry, settings)
