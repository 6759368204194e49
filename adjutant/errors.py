"""Structured error types for the orchestration core.

Tool-level errors (validation, security) are caught by the executor and
handed back to the model as tool-result text. Gateway errors and
loop-control conditions stop the controller.
"""

from __future__ import annotations


class AdjutantError(Exception):
    """Base error for all orchestration operations."""


class ToolValidationError(AdjutantError):
    """Tool arguments did not match the declared parameter schema."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Invalid arguments for {tool_name}: {message}")


class SecurityError(AdjutantError):
    """A path escaped the workspace or touched a sensitive location."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Security: {reason} ({path})")


class ToolRegistrationError(AdjutantError):
    """A tool definition is inconsistent. Raised at registration time."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Cannot register tool '{tool_name}': {message}")


class GatewayError(AdjutantError):
    """Base class for language-model gateway failures."""

    transient = False

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientGatewayError(GatewayError):
    """Rate limit, timeout, network or 5xx failure. Safe to retry."""

    transient = True


class FatalGatewayError(GatewayError):
    """Auth, quota or malformed-request failure. Never retried."""


class OperationAborted(AdjutantError):
    """The surrounding operation was cancelled by the user."""

    def __init__(self) -> None:
        super().__init__("Operation aborted")


class ConversationBusyError(AdjutantError):
    """A run was requested while another loop is in flight for the session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a run in progress")


class CheckpointError(AdjutantError):
    """A mutation target could not be snapshotted, so the mutation must not run."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot checkpoint {path}: {reason}")
