"""Outbound message assembly and the three-level truncation policy.

Truncation applies independently per file, per aggregate context block
and per tool result. Every overflow leaves an explicit marker.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from adjutant.api.models import Message, Role
from adjutant.api.paths import resolve_path
from adjutant.config import Settings
from adjutant.errors import SecurityError

logger = logging.getLogger(__name__)

FILE_TRUNCATED = "\n...(file truncated)"
CONTEXT_TRUNCATED = "\n[Additional context truncated due to size limit]"

# (head, tail) share of the limit kept when a tool result is cut
_SEARCH_TOOLS = frozenset({"search_files", "web_search"})
_COMMAND_TOOLS = frozenset({"run_command"})

DEFAULT_SYSTEM_PROMPT = """\
You are a coding assistant working inside the user's editor.

Workspace root: {workspace}

You can call tools to inspect and change files in the workspace, run
shell commands, search the code and the web, and track a plan. Rules:
- Paths are relative to the workspace root. Paths outside it are refused.
- Read a file with read_file before editing or overwriting it.
- Prefer edit_file with SEARCH/REPLACE blocks for changes to existing files:
  <<<<<<< SEARCH
  exact existing text
  =======
  replacement text
  >>>>>>> REPLACE
- Some tools (run_command, delete_file_or_folder) need the user's approval.
  If a call is rejected, stop and explain what you intended.
- Do not repeat identical calls; use the results you already have.
- When the task is done, answer without calling any tools.
"""


def truncate_tool_result(text: str, limit: int, tool_name: str = "") -> str:
    """Cut *text* to roughly *limit* chars, keeping head and tail.

    Search output keeps mostly the head; command output keeps mostly the
    tail, where errors usually are.
    """
    if limit <= 0 or len(text) <= limit:
        return text
    if tool_name in _SEARCH_TOOLS:
        head, tail = int(limit * 0.9), int(limit * 0.05)
    elif tool_name in _COMMAND_TOOLS:
        head, tail = int(limit * 0.2), int(limit * 0.75)
    else:
        head, tail = int(limit * 0.7), int(limit * 0.25)
    omitted = len(text) - head - tail
    tail_text = text[-tail:] if tail else ""
    return f"{text[:head]}\n\n... [truncated: {omitted} chars omitted] ...\n\n{tail_text}"


@dataclass
class ContextItem:
    """A piece of referenced context attached to a user turn.

    kind is one of: file, snippet, codebase, git, terminal.
    """

    kind: str
    path: str | None = None
    label: str | None = None
    text: str = ""


_HINTS = {
    "codebase": "[Codebase context enabled - use search_files to find relevant code]",
    "git": "[Git context enabled - use run_command with git commands]",
    "terminal": "[Terminal context enabled - use run_command]",
}


class ContextAssembler:
    """Builds the message list sent to the gateway."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def system_prompt(self, workspace_root: str | Path) -> str:
        if self._settings.system_prompt:
            return self._settings.system_prompt
        return DEFAULT_SYSTEM_PROMPT.format(workspace=workspace_root)

    async def build_context(self, items: list[ContextItem], workspace_root: str | Path) -> str:
        """Render context items into one block, honoring size caps."""
        if not items:
            return ""

        parts: list[str] = []
        total = 0
        for item in items:
            if total >= self._settings.max_total_context_chars:
                parts.append(CONTEXT_TRUNCATED)
                logger.info("Context capped at %d chars; dropped remaining items", total)
                break

            if item.kind == "file" and item.path:
                block = await self._file_block(item.path, workspace_root)
            elif item.kind == "snippet":
                label = item.label or "Snippet"
                block = f"\n### {label}\n```\n{self._cap(item.text)}\n```\n"
            elif item.kind in _HINTS:
                block = f"\n{_HINTS[item.kind]}\n"
            else:
                logger.debug("Ignoring context item of kind %r", item.kind)
                continue

            parts.append(block)
            total += len(block)

        return "".join(parts)

    def _cap(self, content: str) -> str:
        limit = self._settings.max_file_content_chars
        if len(content) > limit:
            return content[:limit] + FILE_TRUNCATED
        return content

    async def _file_block(self, path: str, workspace_root: str | Path) -> str:
        try:
            target = resolve_path(
                path,
                workspace_root,
                mutating=False,
                allow_escape=self._settings.allow_read_outside_workspace,
            )
        except SecurityError as e:
            return f"\n[{e}]\n"
        if not target.is_file():
            return f"\n[File not found: {path}]\n"
        try:
            content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Failed to read context file %s: %s", target, e)
            return f"\n[Error reading file: {path}]\n"
        return f"\n### File: {path}\n```\n{self._cap(content)}\n```\n"

    @staticmethod
    def build_user_content(text: str, context: str) -> str:
        if not context:
            return text
        return f"## Referenced Context\n{context}\n\n## User Request\n{text}"

    def build_messages(self, history: list[Message]) -> list[Message]:
        """History filtered of internal entries and capped to the newest N.

        A compaction summary at the head of the thread is always kept. A
        capped window starts at its first user turn; without one it starts
        at an assistant turn, never at an orphaned tool result.
        """
        visible = [m for m in history if not m.internal]
        summary = visible[0] if visible and visible[0].summary is not None else None
        body = visible[1:] if summary is not None else visible

        cap = self._settings.max_history_messages
        window = body
        if len(body) > cap:
            window = body[-cap:]
            first_user = next((i for i, m in enumerate(window) if m.role == Role.USER), None)
            if first_user is not None:
                window = window[first_user:]
            while window and window[0].role == Role.TOOL:
                window = window[1:]
        if summary is not None:
            window = [summary, *window]

        limit = self._settings.max_tool_result_chars
        out: list[Message] = []
        for msg in window:
            if msg.role == Role.TOOL and len(msg.content) > limit:
                msg = Message(
                    role=msg.role,
                    content=truncate_tool_result(msg.content, limit, msg.name or ""),
                    tool_call_id=msg.tool_call_id,
                    name=msg.name,
                    is_error=msg.is_error,
                    id=msg.id,
                )
            out.append(msg)
        return out
