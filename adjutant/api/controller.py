"""Conversation controller -- the tool-use loop for one session.

Each ``run()`` appends a user turn, then repeats: call the model (with
retry), check the proposed tool calls for runaway repetition, run read
tools concurrently, run write tools one at a time behind the approval
gate, append results. The loop ends when the model stops calling tools,
the user rejects a call, the loop detector trips, the iteration limit is
reached, the run is aborted, or the gateway fails for good.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum
from pathlib import Path
from typing import Any

from adjutant.api.approval import ApprovalGate
from adjutant.api.checkpoints import MemoryCheckpointStore
from adjutant.api.compaction import Compactor
from adjutant.api.context import ContextAssembler, ContextItem
from adjutant.api.gateway import Gateway, resolve_response, with_abort
from adjutant.api.loop_detector import LoopDetector
from adjutant.api.models import (
    ApprovalType,
    GatewayResult,
    Message,
    Role,
    RunResult,
    SessionState,
    StopReason,
    ToolCall,
    ToolOutcome,
    ToolStatus,
)
from adjutant.api.tools import ToolContext, ToolDefinition, ToolExecutor
from adjutant.config import Settings
from adjutant.errors import ConversationBusyError, GatewayError, OperationAborted
from adjutant.events import (
    COMPACTION,
    LOOP_DETECTED,
    RUN_FINISHED,
    RUN_STATE,
    TEXT_DELTA,
    TOOL_CALL,
    Event,
    EventBus,
)

logger = logging.getLogger(__name__)

REJECTED_MESSAGE = "Tool call was rejected by the user."
LOOP_NOTICE = "Detected repeated operations. Stopping to prevent an infinite loop."
MAX_LOOPS_NOTICE = "Reached maximum tool call limit. Please continue the conversation if more work is needed."


class ControllerState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_RUNNING = "tool_running"
    TOOL_PENDING = "tool_pending"
    ABORTED = "aborted"


class ConversationController:
    """Drives the model/tool loop for a single session.

    Exactly one run may be in flight; a second ``run()`` raises
    ConversationBusyError. Abort is cooperative: the flag is polled
    before every iteration and tool, and is raced against the gateway
    call and any outstanding approval.
    """

    def __init__(
        self,
        session: SessionState,
        gateway: Gateway,
        executor: ToolExecutor,
        settings: Settings,
        workspace_root: str | Path,
        bus: EventBus | None = None,
        checkpoints: MemoryCheckpointStore | None = None,
        assembler: ContextAssembler | None = None,
        compactor: Compactor | None = None,
        detector: LoopDetector | None = None,
        approval: ApprovalGate | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._executor = executor
        self._registry = executor.registry
        self._settings = settings
        self._workspace_root = Path(workspace_root).resolve()
        self._bus = bus
        self._checkpoints = checkpoints or MemoryCheckpointStore()
        self._assembler = assembler or ContextAssembler(settings)
        self._compactor = compactor or Compactor(settings, gateway)
        self._detector = detector or LoopDetector(
            is_write=self._registry.is_write,
            history_size=settings.loop_history_size,
            exact_threshold=settings.loop_exact_repeat_threshold,
            target_threshold=settings.loop_same_target_threshold,
            write_target_threshold=settings.loop_write_target_threshold,
        )
        self._approval = approval or ApprovalGate()
        self._abort = asyncio.Event()
        self._running = False
        self._state = ControllerState.IDLE

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def session(self) -> SessionState:
        return self._session

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def checkpoints(self) -> MemoryCheckpointStore:
        return self._checkpoints

    @property
    def detector(self) -> LoopDetector:
        return self._detector

    @property
    def pending_approval(self) -> ToolCall | None:
        return self._approval.pending

    def approve(self) -> bool:
        return self._approval.approve()

    def reject(self) -> bool:
        return self._approval.reject()

    def abort(self) -> bool:
        """Request cancellation of the in-flight run. False if idle."""
        if not self._running:
            return False
        logger.info("Abort requested for session %s", self._session.session_id)
        self._abort.set()
        return True

    def new_thread(self) -> None:
        """Start a fresh thread: clear history, read tracking and loop history."""
        if self._running:
            raise ConversationBusyError(self._session.session_id)
        self._session.messages.clear()
        self._session.read_paths.clear()
        self._session.plan = None
        self._detector.reset()
        self._state = ControllerState.IDLE

    async def run(self, text: str, context_items: list[ContextItem] | None = None) -> RunResult:
        """Run one user turn to completion. See module docstring."""
        if self._running:
            raise ConversationBusyError(self._session.session_id)
        self._running = True
        self._abort = asyncio.Event()
        try:
            return await self._run(text, context_items or [])
        finally:
            self._running = False
            if self._state not in (ControllerState.IDLE, ControllerState.ABORTED):
                self._state = ControllerState.IDLE

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self, text: str, context_items: list[ContextItem]) -> RunResult:
        session = self._session
        started = time.monotonic()

        context = await self._assembler.build_context(context_items, self._workspace_root)
        user_msg = Message(role=Role.USER, content=self._assembler.build_user_content(text, context))
        checkpoint = self._checkpoints.create(user_msg.id, label=text)
        session.messages.append(user_msg)

        result = RunResult(stop_reason=StopReason.COMPLETED, checkpoint_id=checkpoint.id)
        tools = self._registry.definitions()
        system_prompt = self._assembler.system_prompt(self._workspace_root)

        try:
            await self._maybe_compact()
            while result.model_calls < self._settings.max_tool_loops:
                if self._abort.is_set():
                    return await self._finish(result, StopReason.ABORTED, started)

                await self._set_state(ControllerState.STREAMING)
                messages = self._assembler.build_messages(session.messages)
                try:
                    reply = await self._call_with_retry(messages, tools, system_prompt)
                except GatewayError as e:
                    logger.error("Gateway failed for session %s: %s", session.session_id, e)
                    result.error = str(e)
                    return await self._finish(result, StopReason.ERROR, started)
                except OperationAborted:
                    raise
                except Exception as e:
                    logger.exception("Unexpected gateway failure for session %s", session.session_id)
                    result.error = f"Unexpected gateway failure: {e}"
                    return await self._finish(result, StopReason.ERROR, started)
                result.model_calls += 1

                session.messages.append(
                    Message(role=Role.ASSISTANT, content=reply.text, tool_calls=reply.tool_calls)
                )
                if reply.text:
                    result.text = reply.text
                if not reply.tool_calls:
                    return await self._finish(result, StopReason.COMPLETED, started)
                result.tool_calls.extend(reply.tool_calls)

                check = self._detector.check(reply.tool_calls)
                if check.is_loop:
                    await self._skip(reply.tool_calls, f"Skipped: {check.reason}")
                    notice = f"{LOOP_NOTICE} {check.reason}"
                    session.messages.append(Message(role=Role.ASSISTANT, content=notice))
                    result.text = notice
                    await self._emit(LOOP_DETECTED, {"reason": check.reason, "tool": check.tool_name})
                    return await self._finish(result, StopReason.LOOP_DETECTED, started)

                stop = await self._execute_batch(reply.tool_calls)
                result.tool_rounds += 1
                if stop is not None:
                    return await self._finish(result, stop, started)

                await self._maybe_compact()

            session.messages.append(Message(role=Role.ASSISTANT, content=MAX_LOOPS_NOTICE))
            result.text = MAX_LOOPS_NOTICE
            return await self._finish(result, StopReason.MAX_ITERATIONS, started)
        except OperationAborted:
            await self._skip([tc for tc in result.tool_calls if not tc.is_terminal], "Skipped: operation aborted")
            return await self._finish(result, StopReason.ABORTED, started)

    async def _call_with_retry(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> GatewayResult:
        """Call the gateway, retrying transient failures with exponential backoff."""
        delay = self._settings.retry_delay
        attempt = 0
        while True:
            try:
                return await with_abort(self._call_once(messages, tools, system_prompt), self._abort)
            except GatewayError as e:
                if not e.transient or attempt >= self._settings.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Transient gateway error (retry %d/%d in %.1fs): %s",
                    attempt, self._settings.max_retries, delay, e,
                )
                await self._emit(RUN_STATE, {"state": "retrying", "attempt": attempt, "error": str(e)})
                await with_abort(asyncio.sleep(delay), self._abort)
                delay *= self._settings.retry_backoff_multiplier

    async def _call_once(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> GatewayResult:
        response = await self._gateway.call(messages, tools, system_prompt, self._abort)
        return await resolve_response(response, on_text=self._emit_text)

    async def _execute_batch(self, calls: list[ToolCall]) -> StopReason | None:
        """Reads first (concurrently), then writes (serially, gated)."""
        reads = [c for c in calls if self._registry.is_read_only(c.name)]
        writes = [c for c in calls if not self._registry.is_read_only(c.name)]

        if reads:
            if self._abort.is_set():
                await self._skip(calls, "Skipped: operation aborted")
                return StopReason.ABORTED
            await self._set_state(ControllerState.TOOL_RUNNING)
            outcomes = await asyncio.gather(*(self._run_read(c) for c in reads))
            # Results go back in request order regardless of completion order
            for call, outcome in zip(reads, outcomes):
                await self._record(call, outcome)

        for index, call in enumerate(writes):
            if self._abort.is_set():
                await self._skip(writes[index:], "Skipped: operation aborted")
                return StopReason.ABORTED

            if self._needs_approval(call.name):
                call.transition(ToolStatus.AWAITING)
                await self._emit_tool(call, approval=str(self._registry.approval_type(call.name)))
                await self._set_state(ControllerState.TOOL_PENDING)
                approved = await self._approval.wait(call, self._abort)
                if not approved:
                    call.transition(ToolStatus.REJECTED)
                    call.error = REJECTED_MESSAGE
                    self._append_result(call, REJECTED_MESSAGE, is_error=True)
                    await self._emit_tool(call)
                    await self._skip(writes[index + 1:], "Skipped: a previous tool call was rejected")
                    if self._abort.is_set():
                        return StopReason.ABORTED
                    logger.info("Session %s: %s rejected by user", self._session.session_id, call.name)
                    return StopReason.REJECTED

            await self._set_state(ControllerState.TOOL_RUNNING)
            call.transition(ToolStatus.RUNNING)
            await self._emit_tool(call)
            outcome = await self._executor.execute_call(
                call, self._workspace_root, self._session, before_dispatch=self._snapshot
            )
            await self._record(call, outcome)
        return None

    async def _run_read(self, call: ToolCall) -> ToolOutcome:
        if self._abort.is_set():
            return ToolOutcome(success=False, error="Skipped: operation aborted")
        call.transition(ToolStatus.RUNNING)
        await self._emit_tool(call)
        return await self._executor.execute_call(call, self._workspace_root, self._session)

    def _needs_approval(self, name: str) -> bool:
        approval = self._registry.approval_type(name)
        if approval == ApprovalType.TERMINAL:
            return not self._settings.auto_approve_terminal
        if approval == ApprovalType.DANGEROUS:
            return not self._settings.auto_approve_dangerous
        return False

    async def _snapshot(self, tool: ToolDefinition, ctx: ToolContext) -> None:
        """Capture pre-mutation content of every write target."""
        if tool.read_only or not tool.snapshot_paths:
            return
        for path in ctx.all_paths():
            await self._checkpoints.snapshot_path(path)

    async def _maybe_compact(self) -> None:
        if not self._compactor.should_compact(self._session.messages):
            return
        summary = await with_abort(self._compactor.compact(self._session), self._abort)
        if summary is not None:
            await self._emit(COMPACTION, {"replaced_count": summary.replaced_count, "chars": len(summary.text)})

    # ------------------------------------------------------------------
    # History and events
    # ------------------------------------------------------------------

    def _append_result(self, call: ToolCall, content: str, is_error: bool) -> None:
        self._session.messages.append(
            Message(role=Role.TOOL, content=content, tool_call_id=call.id, name=call.name, is_error=is_error)
        )

    async def _record(self, call: ToolCall, outcome: ToolOutcome) -> None:
        call.transition(ToolStatus.SUCCESS if outcome.success else ToolStatus.ERROR)
        call.result = outcome.result
        call.error = outcome.error
        self._append_result(call, outcome.content, is_error=not outcome.success)
        await self._emit_tool(call, meta=outcome.meta)

    async def _skip(self, calls: list[ToolCall], reason: str) -> None:
        """Close calls that will never run so every call has a result."""
        for call in calls:
            if call.is_terminal:
                continue
            call.transition(ToolStatus.ERROR)
            call.error = reason
            self._append_result(call, reason, is_error=True)
            await self._emit_tool(call)

    async def _finish(self, result: RunResult, reason: StopReason, started: float) -> RunResult:
        result.stop_reason = reason
        logger.info(
            "Run finished for session %s: %s (%d model calls, %d tool rounds, %d tool calls, %.1fs)",
            self._session.session_id,
            reason,
            result.model_calls,
            result.tool_rounds,
            len(result.tool_calls),
            time.monotonic() - started,
        )
        await self._set_state(ControllerState.ABORTED if reason == StopReason.ABORTED else ControllerState.IDLE)
        await self._emit(RUN_FINISHED, result.to_dict())
        return result

    async def _set_state(self, state: ControllerState) -> None:
        if state == self._state:
            return
        self._state = state
        await self._emit(RUN_STATE, {"state": str(state)})

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, session_id=self._session.session_id, data=data))

    async def _emit_text(self, text: str) -> None:
        await self._emit(TEXT_DELTA, {"text": text})

    async def _emit_tool(self, call: ToolCall, **extra: Any) -> None:
        data = call.to_dict()
        data.update({k: v for k, v in extra.items() if v is not None})
        await self._emit(TOOL_CALL, data)
