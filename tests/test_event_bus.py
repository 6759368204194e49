"""Tests for the in-process EventBus."""

from __future__ import annotations

import asyncio

import pytest

from adjutant.events import RUN_FINISHED, TEXT_DELTA, WILDCARD, Event, EventBus


def _make_event(event_type: str = "test_event", session_id: str = "sess-1", data: dict | None = None) -> Event:
    return Event(type=event_type, session_id=session_id, data=data or {})


class TestEventBus:
    """Core event bus tests using a real EventBus."""

    @pytest.mark.asyncio
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].session_id == "sess-1"
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_wildcard_receives_everything_in_order(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.type)

        bus.on(WILDCARD, handler)
        await bus.start()
        for event_type in (TEXT_DELTA, "tool_call", RUN_FINISHED):
            await bus.emit(_make_event(event_type))
        await bus.stop()
        assert seen == [TEXT_DELTA, "tool_call", RUN_FINISHED]

    @pytest.mark.asyncio
    async def test_off_removes_handler(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        bus.off("test_event", handler)
        bus.off("never_registered", handler)
        await bus.start()
        await bus.emit(_make_event())
        await bus.stop()
        assert received == []

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        """A raising handler is logged; its siblings still run and the bus keeps going."""
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: Event) -> None:
            results.append(event.type)

        bus.on("test_event", bad_handler)
        bus.on("test_event", good_handler)
        bus.on("other_event", good_handler)
        await bus.start()
        await bus.emit(_make_event("test_event"))
        await bus.emit(_make_event("other_event"))
        await bus.stop()
        assert results == ["test_event", "other_event"]

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(maxsize=1)
        await bus.emit(_make_event("first"))
        await bus.emit(_make_event("second"))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.emit(_make_event(data={"n": 1}))
        await bus.emit(_make_event(data={"n": 2}))
        assert bus.pending == 2

        await bus.start()
        await bus.stop()

        assert bus.pending == 0
        assert [e.data["n"] for e in received] == [1, 2]

    def test_event_to_dict(self):
        data = _make_event(RUN_FINISHED, data={"stop_reason": "completed"}).to_dict()
        assert data["type"] == RUN_FINISHED
        assert data["session_id"] == "sess-1"
        assert data["data"] == {"stop_reason": "completed"}
        assert "T" in data["timestamp"]
