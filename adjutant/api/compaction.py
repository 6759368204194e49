"""Conversation compaction: replace an old history prefix with a summary.

Triggered when the visible history exceeds a message-count or character
threshold. Everything except the last ``keep_recent_messages`` entries is
summarized (by the model, with a mechanical fallback) into one synthetic
system message. Compaction is skipped unless it strictly shrinks the
thread, so re-running it on an unchanged transcript is a no-op.
"""

from __future__ import annotations

import logging
import time

from adjutant.api.gateway import Gateway, resolve_response
from adjutant.api.models import CompactionSummary, Message, Role, SessionState
from adjutant.config import Settings

logger = logging.getLogger(__name__)

SUMMARIZER_SYSTEM_PROMPT = """\
You are a conversation summarizer for a coding assistant. Output ONLY the summary.
Keep it under {max_chars} characters. Focus on:
1. The user's main requests and goals
2. Key decisions made
3. Files that were read or modified, with exact paths
4. Errors encountered and how they were resolved
5. Work still in progress"""

UPDATE_INSTRUCTIONS = """\
Update the existing summary with the new conversation below. Preserve
information unless it was superseded, add new progress and decisions,
and keep exact file paths and error messages."""


def format_summary_message(text: str) -> str:
    return (
        "## Conversation Summary\n\n"
        "The following is a summary of the earlier conversation:\n\n"
        f"{text}\n\n---\n\n"
        "Continue the conversation based on the above context."
    )


def thread_chars(messages: list[Message]) -> int:
    return sum(m.char_count for m in messages if not m.internal)


def serialize_for_summary(messages: list[Message]) -> str:
    """Condensed transcript: tool results, tool-using turns and plain turns
    are cut to 200, 300 and 500 characters respectively."""
    lines = []
    for msg in messages:
        if msg.internal:
            continue
        content = msg.content
        if msg.role == Role.TOOL:
            cut = content[:200] + "..." if len(content) > 200 else content
            lines.append(f"[Tool] ({msg.name or 'unknown'}): {cut}")
        elif msg.role == Role.ASSISTANT and msg.tool_calls:
            names = ", ".join(tc.name for tc in msg.tool_calls)
            lines.append(f"[Assistant] Used tools: {names}. {content[:300]}")
        else:
            role = {Role.USER: "User", Role.ASSISTANT: "Assistant"}.get(msg.role, "System")
            cut = content[:500] + "..." if len(content) > 500 else content
            lines.append(f"[{role}]: {cut}")
    return "\n\n".join(lines)


class Compactor:
    """Summarizes old history through the gateway.

    The gateway is called without tools and with a dedicated summarizer
    system prompt. Any summarizer failure falls back to a mechanical
    synopsis, so compaction itself never fails a run.
    """

    def __init__(self, settings: Settings, gateway: Gateway | None = None) -> None:
        self._settings = settings
        self._gateway = gateway

    def should_compact(self, messages: list[Message]) -> bool:
        if not self._settings.compaction_enabled:
            return False
        visible = [m for m in messages if not m.internal]
        if len(visible) > self._settings.compaction_message_threshold:
            return True
        return thread_chars(visible) > self._settings.compaction_char_threshold

    def split(self, messages: list[Message]) -> int:
        """Index where the kept tail begins; 0 means nothing to compact.

        The tail starts at the first user turn among the newest
        ``keep_recent_messages`` entries. When there is none (one long
        tool-using turn) it starts at an assistant turn instead, never at a
        tool result, so a tool call and its result stay together.
        """
        keep = self._settings.keep_recent_messages
        if len(messages) <= keep:
            return 0
        cut = len(messages) - keep
        for i in range(cut, len(messages)):
            if messages[i].role == Role.USER:
                return i
        while cut > 0 and messages[cut].role == Role.TOOL:
            cut -= 1
        return cut

    async def compact(self, session: SessionState) -> CompactionSummary | None:
        """Compact *session* in place. Returns the new summary, or None if skipped."""
        messages = session.messages
        cut = self.split(messages)
        if cut == 0:
            return None

        prefix, recent = messages[:cut], messages[cut:]
        existing = prefix[0].summary if prefix[0].summary is not None else None
        to_summarize = [m for m in (prefix[1:] if existing else prefix) if not m.internal]
        if not to_summarize:
            return None

        started = time.monotonic()
        text = await self._summarize(to_summarize, existing)
        limit = self._settings.max_summary_chars
        if len(text) > limit:
            text = text[: limit - 3] + "..."

        replaced = len(to_summarize) + (existing.replaced_count if existing else 0)
        summary = CompactionSummary(text=text, replaced_count=replaced)
        synthetic = Message(role=Role.SYSTEM, content=format_summary_message(text), summary=summary)

        before = thread_chars(prefix)
        if synthetic.char_count >= before:
            logger.info(
                "Skipping compaction for %s: summary (%d chars) not smaller than prefix (%d chars)",
                session.session_id, synthetic.char_count, before,
            )
            return None

        session.messages = [synthetic, *recent]
        session.compaction_count += 1
        logger.info(
            "Compacted session %s: %d messages -> %d (%d -> %d chars, %d ms, compaction #%d)",
            session.session_id,
            len(messages),
            len(session.messages),
            thread_chars(messages),
            thread_chars(session.messages),
            int((time.monotonic() - started) * 1000),
            session.compaction_count,
        )
        return summary

    async def _summarize(self, messages: list[Message], existing: CompactionSummary | None) -> str:
        transcript = serialize_for_summary(messages)
        if self._gateway is not None:
            if existing is not None:
                prompt = (
                    f"{UPDATE_INSTRUCTIONS}\n\n## Existing Summary\n\n{existing.text}\n\n"
                    f"## New Conversation\n\n{transcript}"
                )
            else:
                prompt = f"Summarize this conversation history:\n\n{transcript}"
            system = SUMMARIZER_SYSTEM_PROMPT.format(max_chars=self._settings.max_summary_chars)
            try:
                response = await self._gateway.call([Message(role=Role.USER, content=prompt)], [], system)
                result = await resolve_response(response)
                if result.text.strip():
                    return result.text.strip()
                logger.warning("Summarizer returned empty text - using mechanical synopsis")
            except Exception as e:
                logger.error("Summarizer failed: %s - using mechanical synopsis", e)
        return self._mechanical(transcript, existing)

    def _mechanical(self, transcript: str, existing: CompactionSummary | None) -> str:
        text = f"{existing.text}\n\n{transcript}" if existing else transcript
        limit = self._settings.max_summary_chars
        if len(text) <= limit:
            return text
        marker = "[earlier history omitted]\n"
        return marker + text[-(limit - len(marker)):]
