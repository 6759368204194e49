"""In-process async event bus feeding the UI bridge.

Controllers publish text deltas, tool-card state changes and run status;
the REST layer subscribes per session and relays them as SSE. A failing
subscriber is logged and skipped, never allowed to stall delivery.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[["Event"], Awaitable[None]]

TEXT_DELTA = "text_delta"
TOOL_CALL = "tool_call"
RUN_STATE = "run_state"
LOOP_DETECTED = "loop_detected"
COMPACTION = "compaction"
RUN_FINISHED = "run_finished"

WILDCARD = "*"  # subscribe to every event type


@dataclass
class Event:
    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """Ordered fan-out of events from one background worker.

    ``emit`` never blocks the publisher: events are queued and the worker
    delivers them in order. When the queue is full new events are dropped
    with a warning so a stalled subscriber cannot back-pressure a run.
    """

    def __init__(self, maxsize: int = 1000):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None

    def on(self, event_type: str, subscriber: Subscriber) -> None:
        """Subscribe to *event_type* (or WILDCARD)."""
        self._subscribers[event_type].append(subscriber)
        logger.debug("Subscribed %s to '%s'", getattr(subscriber, "__qualname__", subscriber), event_type)

    def off(self, event_type: str, subscriber: Subscriber) -> None:
        subscribers = self._subscribers.get(event_type)
        if subscribers and subscriber in subscribers:
            subscribers.remove(subscriber)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full (%d), dropping %s for session %s",
                           self._queue.maxsize, event.type, event.session_id)

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._deliver_forever(), name="adjutant-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Deliver everything already queued, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Event bus stopped")

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event delivery failed for %s", event.type)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        targets = self._subscribers.get(event.type, []) + self._subscribers.get(WILDCARD, [])
        if targets:
            await asyncio.gather(*(self._notify(s, event) for s in list(targets)))

    @staticmethod
    async def _notify(subscriber: Subscriber, event: Event) -> None:
        try:
            await subscriber(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subscriber %s failed on %s",
                             getattr(subscriber, "__qualname__", subscriber), event.type)
