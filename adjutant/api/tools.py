"""Tool registry and executor.

Provides:
- ToolDefinition: a tool's parameter model, handler and classifications
- ToolRegistry: registration-time consistency checks and Anthropic-format
  tool definitions
- ToolExecutor: validate -> path checks -> read-before-write -> dispatch

Tool-level failures never escape ``ToolExecutor.execute``; they come back
as ``ToolOutcome(success=False)`` so the model can react to them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from adjutant.api.context import truncate_tool_result
from adjutant.api.models import ApprovalType, SessionState, ToolCall, ToolOutcome
from adjutant.api.paths import display_path, resolve_path
from adjutant.config import Settings
from adjutant.errors import CheckpointError, SecurityError, ToolRegistrationError, ToolValidationError

logger = logging.getLogger(__name__)

TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

ReadRule = Literal["never", "always", "if_exists"]


@dataclass
class ToolContext:
    """Per-call context handed to tool handlers."""

    workspace_root: Path
    session: SessionState
    settings: Settings
    paths: dict[str, Path | list[Path]] = field(default_factory=dict)  # resolved path params

    def path(self, name: str) -> Path:
        value = self.paths[name]
        return value[0] if isinstance(value, list) else value

    def all_paths(self) -> list[Path]:
        out: list[Path] = []
        for value in self.paths.values():
            out.extend(value if isinstance(value, list) else [value])
        return out


ToolHandler = Callable[[Any, ToolContext], Awaitable[ToolOutcome]]
BeforeDispatch = Callable[["ToolDefinition", ToolContext], Awaitable[None]]


@dataclass
class ToolDefinition:
    """A registered capability.

    ``path_params`` name the fields of ``params`` that hold filesystem
    paths; the executor resolves them into ``ToolContext.paths``.
    ``read_escape`` lets a read-only tool reach outside the workspace
    when the setting allows it.
    """

    name: str
    description: str
    params: type[BaseModel]
    handler: ToolHandler
    read_only: bool = False
    approval: ApprovalType = ApprovalType.NONE
    path_params: tuple[str, ...] = ()
    read_escape: bool = False
    read_before_write: ReadRule = "never"
    timeout: float | None = None  # overrides settings.tool_timeout
    snapshot_paths: bool = True  # checkpoint path targets before a write runs

    def to_api(self) -> dict[str, Any]:
        schema = self.params.model_json_schema()
        schema.pop("title", None)
        return {"name": self.name, "description": self.description, "input_schema": schema}


class ToolRegistry:
    """Name -> ToolDefinition map, checked once per name at registration."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if not TOOL_NAME_RE.match(tool.name):
            raise ToolRegistrationError(tool.name, "name must match [A-Za-z0-9_]+")
        if tool.name in self._tools:
            raise ToolRegistrationError(tool.name, "already registered")
        if not (isinstance(tool.params, type) and issubclass(tool.params, BaseModel)):
            raise ToolRegistrationError(tool.name, "params must be a pydantic model")
        missing = [p for p in tool.path_params if p not in tool.params.model_fields]
        if missing:
            raise ToolRegistrationError(tool.name, f"path params not in schema: {', '.join(missing)}")
        if tool.read_only and tool.approval != ApprovalType.NONE:
            raise ToolRegistrationError(tool.name, "read-only tools cannot require approval")
        if tool.read_only and tool.read_before_write != "never":
            raise ToolRegistrationError(tool.name, "read-only tools have no read-before-write rule")
        if tool.read_escape and not tool.read_only:
            raise ToolRegistrationError(tool.name, "only read-only tools may escape the workspace")
        if not inspect.iscoroutinefunction(tool.handler):
            raise ToolRegistrationError(tool.name, "handler must be an async function")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def is_read_only(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.read_only

    def is_write(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and not tool.read_only

    def approval_type(self, name: str) -> ApprovalType:
        tool = self._tools.get(name)
        return tool.approval if tool else ApprovalType.NONE

    def definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in Anthropic API format."""
        return [tool.to_api() for tool in self._tools.values()]


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class ToolExecutor:
    """Runs registered tools behind validation and the security boundary."""

    def __init__(self, registry: ToolRegistry, settings: Settings) -> None:
        self._registry = registry
        self._settings = settings

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute_call(
        self,
        call: ToolCall,
        workspace_root: str | Path,
        session: SessionState | None = None,
        before_dispatch: BeforeDispatch | None = None,
    ) -> ToolOutcome:
        """Execute a model-emitted ToolCall, reporting unparsable arguments."""
        if call.parse_error is not None:
            err = ToolValidationError(call.name, "arguments are not valid JSON")
            logger.info("%s", err)
            return ToolOutcome(success=False, error=str(err))
        return await self.execute(call.name, call.arguments, workspace_root, session, before_dispatch)

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        workspace_root: str | Path,
        session: SessionState | None = None,
        before_dispatch: BeforeDispatch | None = None,
    ) -> ToolOutcome:
        """Validate, check and dispatch a single tool call.

        *before_dispatch* runs after every check has passed and right before
        the handler, which is where checkpoints snapshot write targets.
        """
        tool = self._registry.get(name)
        if tool is None:
            return ToolOutcome(success=False, error=f"Unknown tool: {name}")

        session = session or SessionState(session_id="adhoc")
        root = Path(workspace_root).resolve()

        try:
            params, ctx = self._prepare(tool, args, root, session)
        except (ToolValidationError, SecurityError) as e:
            logger.info("Rejected %s: %s", name, e)
            return ToolOutcome(success=False, error=str(e))

        timeout = tool.timeout or self._settings.tool_timeout
        started = time.monotonic()
        try:
            if before_dispatch is not None:
                await before_dispatch(tool, ctx)
            outcome = await asyncio.wait_for(tool.handler(params, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", name, timeout)
            return ToolOutcome(success=False, error=f"{name} timed out after {timeout:.0f}s")
        except (ToolValidationError, SecurityError, CheckpointError) as e:
            logger.info("Rejected %s: %s", name, e)
            return ToolOutcome(success=False, error=str(e))
        except Exception as e:
            logger.exception("Tool %s failed", name)
            return ToolOutcome(success=False, error=f"Tool error: {e}")

        logger.debug("Tool %s finished in %.0fms (success=%s)", name, (time.monotonic() - started) * 1000, outcome.success)
        if outcome.success:
            outcome.result = truncate_tool_result(outcome.result, self._settings.max_tool_result_chars, name)
        return outcome

    def _prepare(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        root: Path,
        session: SessionState,
    ) -> tuple[BaseModel, ToolContext]:
        if not isinstance(args, dict):
            raise ToolValidationError(tool.name, "arguments must be a JSON object")
        try:
            params = tool.params.model_validate(args)
        except ValidationError as e:
            raise ToolValidationError(tool.name, _format_validation_error(e)) from e

        ctx = ToolContext(workspace_root=root, session=session, settings=self._settings)
        allow_escape = tool.read_escape and self._settings.allow_read_outside_workspace
        for param in tool.path_params:
            value = getattr(params, param)
            if value is None:
                continue
            mutating = not tool.read_only
            if isinstance(value, list):
                ctx.paths[param] = [
                    resolve_path(str(v), root, mutating=mutating, allow_escape=allow_escape) for v in value
                ]
            else:
                ctx.paths[param] = resolve_path(str(value), root, mutating=mutating, allow_escape=allow_escape)

        if tool.read_before_write != "never":
            for target in ctx.all_paths():
                if tool.read_before_write == "if_exists" and not target.exists():
                    continue
                if not session.has_read(str(target)):
                    raise ToolValidationError(
                        tool.name,
                        f"Read-before-write required: read {display_path(target, root)} "
                        "with read_file before modifying it",
                    )
        return params, ctx
