"""Shared data models for the orchestration core.

Kept free of behaviour-heavy imports so that gateway, executor,
compaction and controller modules can all depend on it without cycles.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ApprovalType(StrEnum):
    NONE = "none"
    TERMINAL = "terminal"
    DANGEROUS = "dangerous"


class ToolStatus(StrEnum):
    PENDING = "pending"
    AWAITING = "awaiting"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"


_STATUS_RANK: dict[ToolStatus, int] = {
    ToolStatus.PENDING: 0,
    ToolStatus.AWAITING: 1,
    ToolStatus.RUNNING: 2,
    ToolStatus.SUCCESS: 3,
    ToolStatus.ERROR: 3,
    ToolStatus.REJECTED: 3,
}

TERMINAL_STATUSES = frozenset({ToolStatus.SUCCESS, ToolStatus.ERROR, ToolStatus.REJECTED})


@dataclass
class ToolCall:
    """A structured tool request emitted by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    result: str | None = None
    error: str | None = None
    parse_error: str | None = None  # raw argument text that was not valid JSON

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ToolStatus) -> None:
        """Move to a later status. Terminal statuses are final."""
        if self.is_terminal:
            raise ValueError(f"Tool call {self.id} is already {self.status}")
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise ValueError(f"Tool call {self.id} cannot go from {self.status} to {status}")
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "status": str(self.status),
            "result": self.result,
            "error": self.error,
        }


@dataclass
class CompactionSummary:
    """Bounded synopsis that replaced a prefix of the history."""

    text: str
    replaced_count: int


@dataclass
class Message:
    """A single entry in a conversation thread."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None  # set on role=tool
    name: str | None = None  # tool name on role=tool
    is_error: bool = False  # failed or skipped tool result
    internal: bool = False  # bookkeeping entries never sent to the model
    summary: CompactionSummary | None = None  # set on synthetic compaction messages
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def char_count(self) -> int:
        total = len(self.content)
        for tc in self.tool_calls:
            total += len(tc.name) + len(str(tc.arguments))
        return total


@dataclass
class LoopSignature:
    """Normalized fingerprint of a tool call used for repetition checks."""

    name: str
    key_param: str | None
    args_hash: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class GatewayResult:
    """Terminal form of a model response."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = ""
    usage: dict[str, int] | None = None


@dataclass
class StreamEvent:
    """A single event from an incremental model response."""

    type: str  # text_delta, tool_call_start, tool_call_delta, tool_call_end, done, error
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str = ""
    status_code: int | None = None


@dataclass
class ToolOutcome:
    """Structured result of one tool execution."""

    success: bool
    result: str = ""
    error: str | None = None
    meta: dict[str, Any] | None = None

    @property
    def content(self) -> str:
        """Text handed back to the model."""
        if self.success:
            return self.result
        return f"Error: {self.error}"


@dataclass
class PlanItem:
    id: str
    title: str
    description: str = ""
    status: str = "pending"


@dataclass
class Plan:
    items: list[PlanItem] = field(default_factory=list)
    status: str = "active"
    current_step_id: str | None = None


@dataclass
class SessionState:
    """Per-session conversation thread and bookkeeping."""

    session_id: str
    messages: list[Message] = field(default_factory=list)
    read_paths: set[str] = field(default_factory=set)
    plan: Plan | None = None
    compaction_count: int = 0

    def mark_read(self, path: str) -> None:
        self.read_paths.add(path)

    def has_read(self, path: str) -> bool:
        return path in self.read_paths

    @property
    def summary(self) -> CompactionSummary | None:
        if self.messages and self.messages[0].summary is not None:
            return self.messages[0].summary
        return None


class StopReason(StrEnum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    LOOP_DETECTED = "loop_detected"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class RunResult:
    """Outcome of ConversationController.run()."""

    stop_reason: StopReason
    text: str = ""
    tool_rounds: int = 0  # iterations that executed tools
    model_calls: int = 0
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str | None = None
    checkpoint_id: str | None = None

    @property
    def success(self) -> bool:
        return self.stop_reason == StopReason.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_reason": str(self.stop_reason),
            "text": self.text,
            "tool_rounds": self.tool_rounds,
            "model_calls": self.model_calls,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "error": self.error,
            "checkpoint_id": self.checkpoint_id,
        }
