"""REST + SSE bridge for the editor UI.

Endpoints:
  POST   /sessions                         - Create a session
  GET    /sessions/{session_id}            - Session status
  DELETE /sessions/{session_id}            - Destroy a session (aborts a running loop)
  POST   /sessions/{session_id}/messages   - Run a turn, return the RunResult
  POST   /sessions/{session_id}/messages/stream - Run a turn, stream events as SSE
  POST   /sessions/{session_id}/approve    - Approve the pending tool call
  POST   /sessions/{session_id}/reject     - Reject the pending tool call
  POST   /sessions/{session_id}/abort      - Abort the running loop
  POST   /sessions/{session_id}/checkpoints/{checkpoint_id}/restore - Restore files
  GET    /health                           - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from adjutant.api.context import ContextItem
from adjutant.api.controller import ConversationController
from adjutant.api.sessions import SessionRegistry
from adjutant.config import Settings
from adjutant.errors import ConversationBusyError
from adjutant.events import RUN_FINISHED, WILDCARD, Event, EventBus

logger = logging.getLogger(__name__)

_CONTEXT_KINDS = {"file", "snippet", "codebase", "git", "terminal"}
_DRAIN_TIMEOUT = 5.0  # seconds to wait for trailing bus events after a run ends


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _parse_context(raw: Any) -> list[ContextItem]:
    """Parse the optional ``context`` list. Raises ValueError on bad input."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("context must be a list")
    items = []
    for entry in raw:
        if not isinstance(entry, dict) or entry.get("kind") not in _CONTEXT_KINDS:
            raise ValueError(f"Invalid context item: {entry!r}")
        items.append(
            ContextItem(
                kind=entry["kind"],
                path=entry.get("path"),
                label=entry.get("label"),
                text=entry.get("text", ""),
            )
        )
    return items


def _session_status(controller: ConversationController) -> dict[str, Any]:
    session = controller.session
    pending = controller.pending_approval
    plan = session.plan
    return {
        "session_id": session.session_id,
        "state": str(controller.state),
        "running": controller.is_running,
        "message_count": len(session.messages),
        "compaction_count": session.compaction_count,
        "pending_approval": pending.to_dict() if pending else None,
        "plan": {
            "status": plan.status,
            "current_step_id": plan.current_step_id,
            "items": [
                {"id": i.id, "title": i.title, "status": i.status} for i in plan.items
            ],
        } if plan else None,
        "checkpoints": [cp.to_dict() for cp in controller.checkpoints.checkpoints()],
    }


def create_app(
    sessions: SessionRegistry,
    bus: EventBus,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _lookup(request: Request) -> ConversationController | JSONResponse:
        session_id = request.path_params["session_id"]
        controller = sessions.get(session_id)
        if controller is None:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return controller

    async def _read_turn(request: Request) -> tuple[str, list[ContextItem]] | JSONResponse:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message") if isinstance(body, dict) else None
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        try:
            items = _parse_context(body.get("context"))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return message, items

    async def create_session(request: Request) -> JSONResponse:
        """POST /sessions - Create a session, optionally with a chosen id."""
        session_id = None
        body = await request.body()
        if body:
            try:
                session_id = json.loads(body).get("session_id")
            except (json.JSONDecodeError, AttributeError):
                return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            controller = sessions.create(session_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({"session_id": controller.session.session_id}, status_code=201)

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Session status."""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        return JSONResponse(_session_status(controller))

    async def delete_session(request: Request) -> JSONResponse:
        """DELETE /sessions/{session_id} - Destroy a session."""
        session_id = request.path_params["session_id"]
        if not sessions.destroy(session_id):
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse({"status": "destroyed", "session_id": session_id})

    async def send_message(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/messages - Run one turn."""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        turn = await _read_turn(request)
        if isinstance(turn, JSONResponse):
            return turn
        message, items = turn
        try:
            result = await controller.run(message, items)
        except ConversationBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse(result.to_dict())

    async def stream_message(request: Request) -> StreamingResponse | JSONResponse:
        """POST /sessions/{session_id}/messages/stream - SSE streaming turn."""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        turn = await _read_turn(request)
        if isinstance(turn, JSONResponse):
            return turn
        if controller.is_running:
            return JSONResponse(
                {"error": str(ConversationBusyError(controller.session.session_id))}, status_code=409
            )
        message, items = turn
        session_id = controller.session.session_id

        async def event_generator():
            queue: asyncio.Queue[Event] = asyncio.Queue()

            async def forward(event: Event) -> None:
                if event.session_id == session_id:
                    queue.put_nowait(event)

            bus.on(WILDCARD, forward)
            task = asyncio.create_task(controller.run(message, items))
            try:
                while True:
                    getter = asyncio.ensure_future(queue.get())
                    waiting = {getter} if task.done() else {getter, task}
                    done, _ = await asyncio.wait(
                        waiting,
                        timeout=_DRAIN_TIMEOUT if task.done() else None,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if getter in done:
                        event = getter.result()
                        yield _sse(event.to_dict())
                        if event.type == RUN_FINISHED:
                            break
                        continue
                    getter.cancel()
                    if task in done:
                        if task.exception() is not None:
                            logger.error("Stream run error: %s", task.exception())
                            yield _sse({"type": "error", "session_id": session_id, "data": {"error": str(task.exception())}})
                            break
                        continue
                    # Run ended but the bus never delivered run_finished
                    yield _sse({"type": RUN_FINISHED, "session_id": session_id, "data": task.result().to_dict()})
                    break
            finally:
                bus.off(WILDCARD, forward)
                if not task.done():
                    controller.abort()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def approve(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/approve"""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        if not controller.approve():
            return JSONResponse({"error": "No tool call awaiting approval"}, status_code=409)
        return JSONResponse({"status": "approved"})

    async def reject(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/reject"""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        if not controller.reject():
            return JSONResponse({"error": "No tool call awaiting approval"}, status_code=409)
        return JSONResponse({"status": "rejected"})

    async def abort(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/abort"""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        return JSONResponse({"status": "aborting" if controller.abort() else "idle"})

    async def restore_checkpoint(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/checkpoints/{checkpoint_id}/restore"""
        controller = _lookup(request)
        if isinstance(controller, JSONResponse):
            return controller
        if controller.is_running:
            return JSONResponse({"error": "Cannot restore while a run is in progress"}, status_code=409)
        checkpoint_id = request.path_params["checkpoint_id"]
        try:
            restored = await controller.checkpoints.restore(checkpoint_id)
        except KeyError:
            return JSONResponse({"error": f"Unknown checkpoint: {checkpoint_id}"}, status_code=404)
        return JSONResponse({"checkpoint_id": checkpoint_id, "restored": restored})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "sessions": len(sessions), "model": settings.model})

    routes = [
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/{session_id}", get_session, methods=["GET"]),
        Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
        Route("/sessions/{session_id}/messages", send_message, methods=["POST"]),
        Route("/sessions/{session_id}/messages/stream", stream_message, methods=["POST"]),
        Route("/sessions/{session_id}/approve", approve, methods=["POST"]),
        Route("/sessions/{session_id}/reject", reject, methods=["POST"]),
        Route("/sessions/{session_id}/abort", abort, methods=["POST"]),
        Route("/sessions/{session_id}/checkpoints/{checkpoint_id}/restore", restore_checkpoint, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
