"""Round observability: an in-process event bus.

Record transitions, phase changes and round outcomes are published here
so observers (log sinks, UIs, audit writers) can follow a round. Publishing
never blocks and never raises into the round; a failing subscriber is
logged and the others still run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from conduit.pipeline.coordinator import PhaseEvent
from conduit.pipeline.records import RecordListener, ToolCallRecord

logger = logging.getLogger(__name__)

Subscriber = Callable[["Event"], Awaitable[None]]

# Event types
TOOL_RECORD = "tool_record"
PHASE = "phase"
ROUND_COMPLETE = "round_complete"
CONVERSATION_ENDED = "conversation_ended"

# Subscribe to this to receive every event type
ALL_EVENTS = "*"

_SHUTDOWN = object()


@dataclass
class Event:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded queue of events fanned out to subscribers by a worker task.

    stop() enqueues a shutdown marker behind whatever is already queued,
    so every event published before stop() is delivered.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def subscribe(self, event_type: str, subscriber: Subscriber) -> None:
        self._subscribers[event_type].append(subscriber)

    def publish(self, event: Event) -> bool:
        """Queue an event. False (and a warning) if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full (%d), dropped %s", self._queue.maxsize, event.type)
            return False
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._deliver_until_shutdown(), name="conduit-events")
        logger.info("Event bus started")

    async def stop(self) -> None:
        if self.running:
            await self._queue.put(_SHUTDOWN)
            await self._worker
        self._worker = None
        logger.info("Event bus stopped")

    async def _deliver_until_shutdown(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _SHUTDOWN:
                return
            await self._deliver(item)

    async def _deliver(self, event: Event) -> None:
        targets = self._subscribers.get(event.type, []) + self._subscribers.get(ALL_EVENTS, [])
        if not targets:
            return
        outcomes = await asyncio.gather(*(s(event) for s in targets), return_exceptions=True)
        for subscriber, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Subscriber %s failed on %s event",
                    getattr(subscriber, "__qualname__", repr(subscriber)),
                    event.type,
                    exc_info=outcome,
                )


# ------------------------------------------------------------------
# Listener adapters
# ------------------------------------------------------------------


def record_snapshot(record: ToolCallRecord) -> dict[str, Any]:
    """JSON-friendly view of a record at the moment of a transition."""
    return {
        "id": record.id,
        "name": record.name,
        "status": str(record.status),
        "dependencies": sorted(record.dependencies),
        "error": record.error,
        "execution_time_ms": record.execution_time_ms,
    }


def record_listener(bus: EventBus, session_id: str | None = None) -> RecordListener:
    def listener(record: ToolCallRecord) -> None:
        bus.publish(Event(type=TOOL_RECORD, data=record_snapshot(record), session_id=session_id))

    return listener


def phase_listener(bus: EventBus, session_id: str | None = None) -> Callable[[PhaseEvent], None]:
    def listener(event: PhaseEvent) -> None:
        bus.publish(
            Event(
                type=PHASE,
                data={"state": str(event.state), "phase": event.phase, **event.detail},
                session_id=session_id,
            )
        )

    return listener
