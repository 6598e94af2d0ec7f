"""Assistant -- runs conversational turns for many sessions.

Loads the session's history from the injected store, runs one
coordinator round, appends the round's turns and saves the history back
with a sliding TTL. A provider outage produces a degraded answer instead
of an exception.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import weakref
from collections.abc import AsyncGenerator
from typing import Any

from conduit.api.models import Conversation, Turn
from conduit.api.provider import BlockDelta, BlockStart, ModelClient, StreamEvent
from conduit.api.tools import ToolDispatcher
from conduit.config import Settings
from conduit.context.budget import BudgetEstimator
from conduit.context.compactor import ContextCompactor
from conduit.context.summarizer import ModelSummarizer
from conduit.errors import ProviderError
from conduit.events import (
    CONVERSATION_ENDED,
    ROUND_COMPLETE,
    Event,
    EventBus,
    phase_listener,
    record_listener,
    record_snapshot,
)
from conduit.pipeline.coordinator import (
    OrchestrationCoordinator,
    PhaseEvent,
    RoundResult,
)
from conduit.pipeline.records import ToolCallRecord
from conduit.store import KeyValueStore

logger = logging.getLogger(__name__)

DEGRADED_ANSWER = "I encountered an error processing your request. Please try again."

_STREAM_DONE = object()


class Assistant:
    def __init__(
        self,
        provider: ModelClient,
        dispatcher: ToolDispatcher,
        settings: Settings,
        store: KeyValueStore,
        bus: EventBus | None = None,
    ) -> None:
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._store = store
        self._bus = bus
        self._estimator = BudgetEstimator(settings)
        self._compactor = ContextCompactor(
            self._estimator, ModelSummarizer(provider.call_api, settings), settings
        )
        # One round at a time per session
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def estimator(self) -> BudgetEstimator:
        return self._estimator

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(self, session_id: str, message: str) -> RoundResult:
        """Execute a single conversational turn and persist the new turns."""
        return await self._run(session_id, message)

    async def stream_chat(
        self, session_id: str, message: str
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Same round as run_turn(), yielding events as they happen.

        Event types: text_delta, tool_start, tool_record, phase, error, done.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def on_stream(event: StreamEvent) -> None:
            if isinstance(event, BlockDelta) and not event.is_input:
                queue.put_nowait({"type": "text_delta", "text": event.text})
            elif isinstance(event, BlockStart) and event.kind == "tool_use":
                queue.put_nowait({"type": "tool_start", "tool_id": event.id, "tool_name": event.name})

        def on_record(record: ToolCallRecord) -> None:
            queue.put_nowait({"type": "tool_record", **record_snapshot(record)})

        def on_phase(event: PhaseEvent) -> None:
            queue.put_nowait({"type": "phase", "state": str(event.state), "phase": event.phase})

        async def produce() -> None:
            try:
                result = await self._run(
                    session_id, message, on_stream=on_stream, on_record=on_record, on_phase=on_phase
                )
                if result.error:
                    queue.put_nowait({"type": "error", "message": result.error})
                queue.put_nowait({
                    "type": "done",
                    "answer": result.answer,
                    "phases": result.phases,
                    "ceiling_hit": result.ceiling_hit,
                })
            finally:
                queue.put_nowait(_STREAM_DONE)

        task = asyncio.create_task(produce(), name=f"round-{session_id}")
        try:
            while (item := await queue.get()) is not _STREAM_DONE:
                yield item
            await task
        finally:
            if not task.done():
                task.cancel()

    async def end_conversation(self, session_id: str) -> bool:
        """Drop a session's history. False if there was none."""
        removed = self._store.delete(_history_key(session_id))
        if removed and self._bus:
            self._bus.publish(Event(type=CONVERSATION_ENDED, session_id=session_id))
        return removed

    def get_conversation(self, session_id: str) -> Conversation | None:
        return self._store.get(_history_key(session_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        session_id: str,
        message: str,
        on_stream=None,
        on_record=None,
        on_phase=None,
    ) -> RoundResult:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock

        async with lock:
            conversation = self.get_conversation(session_id) or Conversation(session_id=session_id)
            coordinator = OrchestrationCoordinator(
                self._provider,
                self._dispatcher.execute,
                self._settings,
                compactor=self._compactor,
                on_record=_chain(on_record, self._bus and record_listener(self._bus, session_id)),
                on_phase=_chain(on_phase, self._bus and phase_listener(self._bus, session_id)),
                on_stream=on_stream,
            )

            try:
                result = await coordinator.run(
                    conversation.turns,
                    message,
                    tools=self._dispatcher.tool_definitions() or None,
                )
            except ProviderError as e:
                logger.error("API call error for session %s: %s", session_id, e)
                result = RoundResult(
                    answer=DEGRADED_ANSWER,
                    phases=0,
                    error=str(e),
                    turns=[
                        Turn(role="user", content=message),
                        Turn(role="assistant", content=DEGRADED_ANSWER),
                    ],
                )

            self._save(conversation, result)

        logger.info(
            "Session %s: round finished after %d phase(s)%s",
            session_id, result.phases, " (ceiling hit)" if result.ceiling_hit else "",
        )
        if self._bus:
            self._bus.publish(
                Event(
                    type=ROUND_COMPLETE,
                    session_id=session_id,
                    data={
                        "phases": result.phases,
                        "ceiling_hit": result.ceiling_hit,
                        "stalled": [r.id for r in result.stalled],
                        "metrics": result.metrics.as_dict() if result.metrics else None,
                    },
                )
            )
        return result

    def _save(self, conversation: Conversation, result: RoundResult) -> None:
        history = conversation.turns
        if result.compaction is not None and result.compaction.compacted:
            history = list(result.compaction.turns)
            conversation.compaction_count += 1
        conversation.turns = _trim_history([*history, *result.turns], self._settings.max_history_turns)
        self._store.set(_history_key(conversation.session_id), conversation, ttl=self._settings.session_ttl)


def _history_key(session_id: str) -> str:
    return f"conversation:{session_id}"


def _trim_history(history: list[Turn], limit: int) -> list[Turn]:
    """Keep the newest ``limit`` turns. Leading summary turns are kept first."""
    if len(history) <= limit:
        return history
    leading = list(itertools.takewhile(lambda t: t.role == "system", history))
    pinned = leading[-limit:]
    room = limit - len(pinned)
    recent = history[len(leading):]
    return pinned + (recent[-room:] if room else [])


def _chain(*listeners):
    """Combine optional listeners into one (None if there are none)."""
    active = [listener for listener in listeners if listener]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def chained(value: Any) -> None:
        for listener in active:
            listener(value)

    return chained
