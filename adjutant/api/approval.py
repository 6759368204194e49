"""Single-slot suspend/resume gate for human approval of tool calls."""

from __future__ import annotations

import asyncio
import logging

from adjutant.api.models import ToolCall

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Blocks a tool call until approve()/reject() or abort.

    At most one wait is outstanding per session; writes execute serially
    so the controller never asks twice at once.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[bool] | None = None
        self._pending: ToolCall | None = None

    @property
    def pending(self) -> ToolCall | None:
        """The tool call currently awaiting a decision, if any."""
        return self._pending

    async def wait(self, call: ToolCall, abort_event: asyncio.Event | None = None) -> bool:
        """Suspend until a decision arrives. Returns True when approved.

        An abort resolves the wait as rejected.
        """
        if self._future is not None and not self._future.done():
            raise RuntimeError("An approval is already outstanding")

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._pending = call
        logger.info("Awaiting approval for %s (%s)", call.name, call.id)

        try:
            if abort_event is None:
                return await self._future

            abort_task = asyncio.create_task(abort_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {self._future, abort_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                abort_task.cancel()
            if self._future in done:
                return self._future.result()
            logger.info("Approval for %s resolved as rejected by abort", call.name)
            return False
        finally:
            if not self._future.done():
                self._future.cancel()
            self._future = None
            self._pending = None

    def _resolve(self, approved: bool) -> bool:
        if self._future is None or self._future.done():
            return False
        self._future.set_result(approved)
        return True

    def approve(self) -> bool:
        """Resume the pending call. Returns False if nothing was waiting."""
        return self._resolve(True)

    def reject(self) -> bool:
        """Decline the pending call. Returns False if nothing was waiting."""
        return self._resolve(False)
