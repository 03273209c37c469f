"""Tests for the in-process event bus."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from compliance import events
from compliance.events import EventBus, emit, start_event_system, stop_event_system, subscribe, unsubscribe
from compliance.schemas.events import EventType, SystemEvent


@pytest.fixture(autouse=True)
def _clean_bus(monkeypatch):
    monkeypatch.setattr(events, "bus", EventBus())


def _handler(name: str, **kwargs) -> AsyncMock:
    handler = AsyncMock(**kwargs)
    handler.__name__ = name
    return handler


class TestEventBus:
    @pytest.mark.asyncio()
    async def test_global_and_typed_subscribers(self):
        everything = _handler("everything")
        deletions = _handler("deletions")
        subscribe(everything)
        subscribe(deletions, [EventType.DELETION_COMPLETED])

        await start_event_system()
        await emit(SystemEvent(event_type=EventType.DELETION_COMPLETED, data={"request_id": "r1"}))
        await emit(SystemEvent(event_type=EventType.EXPORT_COMPLETED))
        await stop_event_system()

        assert everything.await_count == 2
        deletions.assert_awaited_once()
        assert deletions.await_args.args[0].data == {"request_id": "r1"}

    @pytest.mark.asyncio()
    async def test_failing_handler_is_isolated(self):
        broken = _handler("broken", side_effect=RuntimeError("boom"))
        healthy = _handler("healthy")
        subscribe(broken)
        subscribe(healthy)

        await emit(SystemEvent(event_type=EventType.SYSTEM_MAINTENANCE))
        await stop_event_system()

        healthy.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_unsubscribe(self):
        handler = _handler("handler")
        subscribe(handler, [EventType.SYSTEM_STARTUP])
        unsubscribe(handler)

        await emit(SystemEvent(event_type=EventType.SYSTEM_STARTUP))
        await stop_event_system()

        handler.assert_not_awaited()

    def test_events_are_immutable(self):
        event = SystemEvent(event_type=EventType.SYSTEM_STARTUP)
        with pytest.raises(ValidationError):
            event.data = {"changed": True}

    def test_handlers_for_combines_global_and_typed(self):
        everything = _handler("everything")
        failures = _handler("failures")
        subscribe(everything)
        subscribe(failures, [EventType.DELETION_FAILED, EventType.EXPORT_FAILED])

        assert events.bus.handlers_for(EventType.EXPORT_FAILED) == [everything, failures]
        assert events.bus.handlers_for(EventType.EXPORT_COMPLETED) == [everything]
        assert events.bus.subscriber_count == 3

    @pytest.mark.asyncio()
    async def test_dispatch_delivers_without_worker(self):
        handler = _handler("handler")
        subscribe(handler)

        await events.bus.dispatch(SystemEvent(event_type=EventType.SYSTEM_STARTUP))

        handler.assert_awaited_once()
