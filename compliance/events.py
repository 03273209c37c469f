"""In-process event bus for lifecycle events.

Lifecycle services publish frozen `SystemEvent`s; the audit trail and the
notification sender subscribe. Publishing only enqueues; a worker task on
the running loop fans each event out to its subscribers.

    from compliance.events import emit, subscribe

    subscribe(send_deletion_email, [EventType.DELETION_SCHEDULED])
    await emit(SystemEvent(event_type=EventType.DELETION_SCHEDULED, user_id=user_id))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from compliance.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


def _name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """Queue-backed pub/sub bound to whichever loop first publishes on it.

    A worker left behind by a closed loop (test runners, reloads) is
    discarded and a fresh queue is created on the current loop.
    """

    def __init__(self) -> None:
        self._global: list[EventHandler] = []
        self._typed: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register `handler` for `event_types`, or for every event when omitted."""
        if event_types is None:
            self._global.append(handler)
            logger.info("Subscribed %s to all events", _name(handler))
            return
        for event_type in event_types:
            self._typed.setdefault(event_type, []).append(handler)
        logger.info("Subscribed %s to %s", _name(handler), [t.value for t in event_types])

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._global:
            self._global.remove(handler)
        for handlers in self._typed.values():
            if handler in handlers:
                handlers.remove(handler)

    def handlers_for(self, event_type: EventType) -> list[EventHandler]:
        return [*self._global, *self._typed.get(event_type, [])]

    @property
    def subscriber_count(self) -> int:
        return len(self._global) + sum(len(h) for h in self._typed.values())

    # ── Publishing ───────────────────────────────────────────────────

    async def emit(self, event: SystemEvent) -> None:
        queue = self._ensure_running()
        await queue.put(event)
        logger.debug("Queued %s (user=%s)", event.event_type.value, event.user_id)

    async def dispatch(self, event: SystemEvent) -> None:
        """Deliver one event to its subscribers now. A failing handler never affects the others."""
        handlers = self.handlers_for(event.event_type)
        if not handlers:
            return
        outcomes = await asyncio.gather(*(handler(event) for handler in handlers), return_exceptions=True)
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Subscriber %s failed on %s",
                    _name(handler),
                    event.event_type.value,
                    exc_info=outcome,
                )

    # ── Worker ───────────────────────────────────────────────────────

    def _running_here(self) -> bool:
        if self._worker is None or self._worker.done():
            return False
        return self._worker.get_loop() is asyncio.get_running_loop()

    def _ensure_running(self) -> asyncio.Queue[SystemEvent]:
        if self._queue is None or not self._running_here():
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(self._drain(self._queue))
            logger.info("Event worker started")
        return self._queue

    async def _drain(self, queue: asyncio.Queue[SystemEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Dispatch of %s failed", event.event_type.value)
            finally:
                queue.task_done()

    async def start(self) -> None:
        self._ensure_running()
        logger.info("Event bus started with %d subscriptions", self.subscriber_count)

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the worker."""
        if self._queue is not None and self._running_here():
            await self._queue.join()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        logger.info("Event bus stopped")


bus = EventBus()


# ── Module-level API ─────────────────────────────────────────────────


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    bus.subscribe(handler, event_types)


def unsubscribe(handler: EventHandler) -> None:
    bus.unsubscribe(handler)


async def emit(event: SystemEvent) -> None:
    await bus.emit(event)


async def start_event_system() -> None:
    await bus.start()


async def stop_event_system() -> None:
    await bus.stop()
