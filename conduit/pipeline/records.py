"""Tool call records and their lifecycle.

pending -> executing -> {completed | error}

Terminal states are final. Every transition is reported synchronously
to the record's listener so intermediate state is observable even if
the process dies mid-round.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

from conduit.errors import InvalidTransition

logger = logging.getLogger(__name__)


class ToolStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATES = frozenset({ToolStatus.COMPLETED, ToolStatus.ERROR})

_TRANSITIONS: dict[ToolStatus, frozenset[ToolStatus]] = {
    ToolStatus.PENDING: frozenset({ToolStatus.EXECUTING}),
    ToolStatus.EXECUTING: frozenset({ToolStatus.COMPLETED, ToolStatus.ERROR}),
    ToolStatus.COMPLETED: frozenset(),
    ToolStatus.ERROR: frozenset(),
}

RecordListener = Callable[["ToolCallRecord"], None]


def new_record_id() -> str:
    return f"tool_{int(time.time() * 1000)}_{uuid4().hex[:6]}"


@dataclass(eq=False)
class ToolCallRecord:
    """One requested tool invocation."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    dependencies: set[str] = field(default_factory=set)
    status: ToolStatus = ToolStatus.PENDING
    result: Any = None
    error: str | None = None
    execution_time_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    listener: RecordListener | None = field(default=None, repr=False)
    _input_parts: list[str] = field(default_factory=list, repr=False)
    _started: float | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Streamed input
    # ------------------------------------------------------------------

    def merge_input_fragment(self, fragment: str) -> None:
        """Append a partial-JSON fragment of the input. Only while pending."""
        if self.status != ToolStatus.PENDING:
            raise InvalidTransition(self.id, self.status, "input update")
        self._input_parts.append(fragment)

    def finalize_input(self) -> None:
        """Parse accumulated fragments into ``input``.

        Raises ValueError if the fragments are not a JSON object.
        """
        if self.status != ToolStatus.PENDING:
            raise InvalidTransition(self.id, self.status, "input update")
        raw = "".join(self._input_parts)
        self._input_parts.clear()
        if not raw:
            return
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError(f"Tool input must be a JSON object, got {type(parsed).__name__}")
        self.input = parsed

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_execution(self) -> None:
        self._transition(ToolStatus.EXECUTING)
        self._started = time.monotonic()
        self._notify()

    def complete(self, result: Any) -> None:
        self._transition(ToolStatus.COMPLETED)
        self.result = result
        self._stop_clock()
        self._notify()

    def fail(self, error: str) -> None:
        self._transition(ToolStatus.ERROR)
        self.error = error or "Tool execution failed"
        self._stop_clock()
        self._notify()

    def _transition(self, target: ToolStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status, target)
        logger.debug("Tool call %s (%s): %s -> %s", self.id, self.name, self.status, target)
        self.status = target

    def _stop_clock(self) -> None:
        if self._started is not None:
            self.execution_time_ms = int((time.monotonic() - self._started) * 1000)
        else:
            self.execution_time_ms = 0

    def _notify(self) -> None:
        if self.listener is None:
            return
        try:
            self.listener(self)
        except Exception:
            logger.exception("Record listener failed for %s", self.id)


class RecordRegistry:
    """Id-addressed record store with a shared transition listener."""

    def __init__(self, listener: RecordListener | None = None) -> None:
        self._records: dict[str, ToolCallRecord] = {}
        self._listener = listener

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    @property
    def records(self) -> list[ToolCallRecord]:
        """All records in registration order."""
        return list(self._records.values())

    def get(self, record_id: str) -> ToolCallRecord:
        try:
            return self._records[record_id]
        except KeyError:
            raise KeyError(f"Unknown tool call: {record_id}") from None

    def create(self, name: str, input: dict[str, Any] | None = None) -> str:
        record = ToolCallRecord(id=new_record_id(), name=name, input=dict(input or {}))
        self._register(record)
        return record.id

    def begin_execution(self, record_id: str) -> None:
        self.get(record_id).begin_execution()

    def complete(self, record_id: str, result: Any) -> None:
        self.get(record_id).complete(result)

    def fail(self, record_id: str, error: str) -> None:
        self.get(record_id).fail(error)

    def _register(self, record: ToolCallRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"Duplicate tool call id: {record.id}")
        record.listener = self._listener
        self._records[record.id] = record
        record._notify()
