"""Execution pipeline for one conversational round.

Owns the round's tool call records, infers dependencies as records are
added, runs records whose dependencies completed, and turns terminal
records into tool-result turns for the next model request.

Executor errors are caught per record and become the record's error
state; they never abort the pipeline. There is no retry here: callers
retry by adding a fresh record.

Known gap: a record whose dependency ended in error stays pending
forever. stalled_records() reports such records; nothing cancels them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from conduit.api.models import ToolResultBlock, ToolUse, Turn, result_to_text
from conduit.pipeline.dependencies import infer_dependencies
from conduit.pipeline.records import (
    RecordListener,
    RecordRegistry,
    ToolCallRecord,
    ToolStatus,
    new_record_id,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PHASES = 10

RecordExecutor = Callable[[ToolCallRecord], Awaitable[Any]]

_STATUS_ICONS = {
    ToolStatus.PENDING: "⏸",
    ToolStatus.EXECUTING: "▶",
    ToolStatus.COMPLETED: "✓",
    ToolStatus.ERROR: "✗",
}


@dataclass(frozen=True)
class PipelineMetrics:
    total: int
    pending: int
    executing: int
    completed: int
    failed: int
    current_phase: int
    total_execution_ms: int
    mean_execution_ms: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "executing": self.executing,
            "completed": self.completed,
            "failed": self.failed,
            "current_phase": self.current_phase,
            "total_execution_ms": self.total_execution_ms,
            "mean_execution_ms": self.mean_execution_ms,
        }


class ExecutionPipeline(RecordRegistry):
    """Tool call records for one round plus a bounded phase counter."""

    def __init__(
        self,
        max_phases: int = DEFAULT_MAX_PHASES,
        listener: RecordListener | None = None,
    ) -> None:
        super().__init__(listener)
        if max_phases < 1:
            raise ValueError("max_phases must be >= 1")
        self.max_phases = max_phases
        self.current_phase = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_record(
        self,
        record: ToolCallRecord,
        depends_on: Iterable[str] | None = None,
    ) -> ToolCallRecord:
        """Register a pending record and fix its dependency set.

        With ``depends_on`` the given ids are used as-is (they must already
        be registered). Otherwise dependencies are inferred from the input
        against records registered so far, so registration order matters.
        """
        if record.status != ToolStatus.PENDING:
            raise ValueError(f"Tool call {record.id} is {record.status}, expected pending")

        if depends_on is not None:
            deps = set(depends_on)
            unknown = sorted(d for d in deps if d not in self)
            if unknown:
                raise ValueError(f"Unknown dependencies for {record.id}: {', '.join(unknown)}")
        else:
            deps = infer_dependencies(record.input, self.records)
        deps.discard(record.id)
        record.dependencies = deps

        self._register(record)
        if deps:
            logger.debug("Tool call %s depends on %s", record.id, sorted(deps))
        return record

    def add_call(
        self,
        name: str,
        input: dict[str, Any] | None = None,
        record_id: str | None = None,
        depends_on: Iterable[str] | None = None,
    ) -> ToolCallRecord:
        record = ToolCallRecord(
            id=record_id or new_record_id(),
            name=name,
            input=dict(input or {}),
        )
        return self.add_record(record, depends_on=depends_on)

    def create(self, name: str, input: dict[str, Any] | None = None) -> str:
        return self.add_call(name, input).id

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _is_ready(self, record: ToolCallRecord) -> bool:
        if record.status != ToolStatus.PENDING:
            return False
        return all(
            dep in self and self.get(dep).status == ToolStatus.COMPLETED
            for dep in record.dependencies
        )

    def runnable(self) -> list[ToolCallRecord]:
        """All records that may start now, in registration order."""
        return [r for r in self.records if self._is_ready(r)]

    def next_runnable(self) -> ToolCallRecord | None:
        """First pending record whose dependencies all completed."""
        return next((r for r in self.records if self._is_ready(r)), None)

    async def run_next(self, executor: RecordExecutor) -> ToolCallRecord | None:
        """Run the next runnable record to a terminal state."""
        record = self.next_runnable()
        if record is None:
            return None
        record.begin_execution()
        await self._invoke(record, executor)
        return record

    async def run_ready(self, executor: RecordExecutor) -> list[ToolCallRecord]:
        """Run everything runnable, concurrently, until nothing is runnable.

        Records unlocked by a completion are picked up in the next wave,
        so dependency chains drain within one call.
        """
        ran: list[ToolCallRecord] = []
        while batch := self.runnable():
            for record in batch:
                record.begin_execution()
            await asyncio.gather(*(self._invoke(r, executor) for r in batch))
            ran.extend(batch)
        return ran

    async def _invoke(self, record: ToolCallRecord, executor: RecordExecutor) -> None:
        try:
            result = await executor(record)
        except asyncio.CancelledError:
            record.fail("Tool execution cancelled")
            raise
        except Exception as e:
            logger.warning("Tool call %s (%s) failed: %s", record.id, record.name, e)
            record.fail(str(e) or type(e).__name__)
        else:
            record.complete(result)

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def is_complete(self) -> bool:
        """True iff every record is completed or error."""
        return all(r.is_terminal for r in self.records)

    def stalled_records(self) -> list[ToolCallRecord]:
        """Pending records that can never run.

        A record is stalled when a dependency ended in error or is itself
        stalled.
        """
        stalled: set[str] = set()
        changed = True
        while changed:
            changed = False
            for record in self.records:
                if record.status != ToolStatus.PENDING or record.id in stalled:
                    continue
                for dep in record.dependencies:
                    if dep in stalled or self.get(dep).status == ToolStatus.ERROR:
                        stalled.add(record.id)
                        changed = True
                        break
        return [r for r in self.records if r.id in stalled]

    def results(self) -> list[dict[str, Any]]:
        return [
            {"tool_id": r.id, "name": r.name, "result": r.result}
            for r in self.records
            if r.status == ToolStatus.COMPLETED
        ]

    def errors(self) -> list[dict[str, Any]]:
        return [
            {"tool_id": r.id, "name": r.name, "error": r.error or "Unknown error"}
            for r in self.records
            if r.status == ToolStatus.ERROR
        ]

    def metrics(self) -> PipelineMetrics:
        counts = {status: 0 for status in ToolStatus}
        total_ms = 0
        timed = 0
        for record in self.records:
            counts[record.status] += 1
            if record.is_terminal and record.execution_time_ms is not None:
                total_ms += record.execution_time_ms
                timed += 1
        return PipelineMetrics(
            total=len(self),
            pending=counts[ToolStatus.PENDING],
            executing=counts[ToolStatus.EXECUTING],
            completed=counts[ToolStatus.COMPLETED],
            failed=counts[ToolStatus.ERROR],
            current_phase=self.current_phase,
            total_execution_ms=total_ms,
            mean_execution_ms=total_ms / timed if timed else 0.0,
        )

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    def context_messages(
        self, records: Iterable[ToolCallRecord] | None = None
    ) -> list[Turn]:
        """One tool-result turn per terminal record, tagged with its id."""
        source = self.records if records is None else list(records)
        turns = []
        for record in source:
            if record.status == ToolStatus.COMPLETED:
                block = ToolResultBlock(record.id, result_to_text(record.result))
            elif record.status == ToolStatus.ERROR:
                block = ToolResultBlock(
                    record.id, record.error or "Tool execution failed", is_error=True
                )
            else:
                continue
            turns.append(Turn(role="user", tool_results=[block]))
        return turns

    @staticmethod
    def tool_use_turn(records: Iterable[ToolCallRecord], text: str = "") -> Turn:
        """Assistant turn echoing the model's tool requests."""
        return Turn(
            role="assistant",
            content=text,
            tool_calls=[ToolUse(id=r.id, name=r.name, input=r.input) for r in records],
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @property
    def ceiling_reached(self) -> bool:
        return self.current_phase >= self.max_phases

    def next_phase(self) -> bool:
        """Advance the phase counter. False once the ceiling is reached."""
        self.current_phase += 1
        return self.current_phase < self.max_phases

    def visualize(self) -> str:
        """Text rendering of the pipeline for logs and debugging."""
        lines = ["Tool Pipeline:"]
        for index, record in enumerate(self.records, start=1):
            line = f"{index}. [{_STATUS_ICONS[record.status]}] {record.name}"
            if record.dependencies:
                line += f" (deps: {', '.join(sorted(record.dependencies))})"
            if record.execution_time_ms:
                line += f" [{record.execution_time_ms / 1000:.1f}s]"
            if record.error:
                line += f" - Error: {record.error}"
            lines.append(line)
        m = self.metrics()
        lines.append("")
        lines.append(f"Phase: {m.current_phase}")
        lines.append(f"Completed: {m.completed}/{m.total}")
        lines.append(f"Total Time: {m.total_execution_ms / 1000:.1f}s")
        return "\n".join(lines)
