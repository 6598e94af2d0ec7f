"""Orchestration coordinator -- drives one round through bounded phases.

States: awaiting_model -> parsing_stream -> executing_tools -> awaiting_model
... until the model answers without tool calls or the phase ceiling is
reached (terminal).

Each phase sends the current context to the model, registers the tool
calls parsed from the stream with the round's ExecutionPipeline, drains
all runnable records and appends the tool_use/tool_result turns for the
next request. The ceiling is the only defense against a model that keeps
requesting tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from conduit.api.models import ApiResponse, Turn
from conduit.api.provider import (
    BlockDelta,
    BlockStart,
    BlockStop,
    MessageDelta,
    StreamError,
    StreamEvent,
    format_messages,
    system_text,
)
from conduit.config import Settings
from conduit.context.compactor import CompactionResult, ContextCompactor
from conduit.errors import DependencyStalled, PhaseCeilingExceeded, ProviderError
from conduit.pipeline.pipeline import ExecutionPipeline, PipelineMetrics
from conduit.pipeline.records import (
    RecordListener,
    ToolCallRecord,
    ToolStatus,
    new_record_id,
)

logger = logging.getLogger(__name__)

PARTIAL_ANSWER_PROMPT = (
    "The tool budget for this question is exhausted. Provide the best answer "
    "you can using the tool results gathered so far, and say what is missing."
)
PARTIAL_ANSWER_FALLBACK = (
    "I reached the maximum number of tool iterations before finishing. "
    "Here is what I found so far."
)


class CoordinatorState(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    PARSING_STREAM = "parsing_stream"
    EXECUTING_TOOLS = "executing_tools"
    TERMINAL = "terminal"


class ModelProvider(Protocol):
    def call_api_stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def call_api(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse: ...


ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class PhaseEvent:
    state: CoordinatorState
    phase: int
    detail: dict[str, Any] = field(default_factory=dict)


PhaseListener = Callable[[PhaseEvent], None]
StreamListener = Callable[[StreamEvent], None]


@dataclass
class RoundResult:
    """Outcome of one user turn."""

    answer: str
    phases: int
    ceiling_hit: bool = False
    turns: list[Turn] = field(default_factory=list)
    records: list[ToolCallRecord] = field(default_factory=list)
    stalled: list[ToolCallRecord] = field(default_factory=list)
    metrics: PipelineMetrics | None = None
    compaction: CompactionResult | None = None
    context_compactions: int = 0
    error: str | None = None


@dataclass
class _ParsedStream:
    text: str
    records: list[ToolCallRecord]


class OrchestrationCoordinator:
    """Runs one round at a time; create one per conversation turn or reuse serially."""

    def __init__(
        self,
        provider: ModelProvider,
        executor: ToolExecutor,
        settings: Settings,
        compactor: ContextCompactor | None = None,
        on_record: RecordListener | None = None,
        on_phase: PhaseListener | None = None,
        on_stream: StreamListener | None = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._settings = settings
        self._compactor = compactor
        self._on_record = on_record
        self._on_phase = on_phase
        self._on_stream = on_stream
        self.state = CoordinatorState.TERMINAL

    async def run(
        self,
        history: Sequence[Turn],
        user_message: str,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> RoundResult:
        """Drive one user turn to a final (or partial) answer.

        ``history`` is read, never mutated. Provider failures propagate as
        ProviderError; tool failures become error tool results.
        """
        system_prompt = system_prompt or self._settings.system_prompt
        pipeline = ExecutionPipeline(self._settings.max_phases, listener=self._on_record)

        self._set_state(CoordinatorState.AWAITING_MODEL, pipeline)
        user_turn = Turn(role="user", content=user_message)
        context = [*history, user_turn]
        # The latest phase's turns are never compacted away
        latest_phase: list[Turn] = []
        compaction = None
        context_compactions = 0
        new_turns = [user_turn]
        texts: list[str] = []

        def result(answer: str, ceiling_hit: bool = False) -> RoundResult:
            return RoundResult(
                answer=answer,
                phases=pipeline.current_phase,
                ceiling_hit=ceiling_hit,
                turns=new_turns,
                records=pipeline.records,
                stalled=pipeline.stalled_records(),
                metrics=pipeline.metrics(),
                compaction=compaction,
                context_compactions=context_compactions,
            )

        try:
            while True:
                fitted = await self._fit_context(context, user_turn, latest_phase)
                if fitted is not None and fitted.compacted:
                    context_compactions += 1
                    if pipeline.current_phase == 0:
                        # Only prior history was compacted; the caller may persist it
                        compaction = fitted

                parsed = await self._request(pipeline, context, system_prompt, tools)
                if parsed.text:
                    texts.append(parsed.text)

                if not parsed.records:
                    final = Turn(role="assistant", content=parsed.text)
                    new_turns.append(final)
                    self._set_state(CoordinatorState.TERMINAL, pipeline)
                    return result(parsed.text)

                await self._execute(pipeline)

                phase_turns = [
                    pipeline.tool_use_turn(parsed.records, parsed.text),
                    *pipeline.context_messages(parsed.records),
                ]
                context.extend(phase_turns)
                latest_phase = phase_turns
                new_turns.extend(phase_turns)

                if not pipeline.next_phase():
                    raise PhaseCeilingExceeded(pipeline.max_phases)
                self._set_state(CoordinatorState.AWAITING_MODEL, pipeline)

        except PhaseCeilingExceeded as e:
            logger.warning("%s -- forcing a partial answer", e)
            answer = await self._partial_answer(context, system_prompt, texts)
            new_turns.append(Turn(role="assistant", content=answer))
            self._set_state(CoordinatorState.TERMINAL, pipeline, ceiling_hit=True)
            return result(answer, ceiling_hit=True)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _fit_context(
        self, context: list[Turn], user_turn: Turn, latest_phase: list[Turn]
    ) -> CompactionResult | None:
        """Compact ``context`` in place when it is over the trigger threshold.

        The user turn and the latest phase's tool_use/tool_result turns are
        protected; everything before them competes for what is left of the
        target.
        """
        if self._compactor is None or not self._compactor.should_compact(context):
            return None

        protected = [user_turn, *latest_phase]
        protected_ids = {id(t) for t in protected}
        head = [t for t in context if id(t) not in protected_ids]
        target = self._compactor.default_target() - self._compactor.estimator.total(protected)
        if target <= 0 or not head:
            logger.warning(
                "Context over budget but nothing compactable (%d protected turns)", len(protected)
            )
            return None

        compaction = await self._compactor.compact(head, target)
        position = {id(t): i for i, t in enumerate(context)}
        # Synthesized summaries are new objects and go first
        rebuilt = sorted([*compaction.turns, user_turn], key=lambda t: position.get(id(t), -1))
        context[:] = rebuilt + latest_phase
        return compaction

    async def _request(
        self,
        pipeline: ExecutionPipeline,
        context: list[Turn],
        system_prompt: str,
        tools: list[dict[str, Any]] | None,
    ) -> _ParsedStream:
        """AwaitingModel + ParsingStream for one phase."""
        system = _full_system(system_prompt, context)
        messages = format_messages(context)
        registered = len(pipeline)
        self._set_state(CoordinatorState.PARSING_STREAM, pipeline)

        partial: dict[int, ToolCallRecord] = {}
        malformed: list[ToolCallRecord] = []
        text_parts: list[str] = []
        recovery: asyncio.Task[ApiResponse] | None = None

        def mark_malformed(record: ToolCallRecord) -> None:
            nonlocal recovery
            malformed.append(record)
            if recovery is None and self._settings.recover_malformed_input:
                # Re-request the complete structured response alongside the stream
                recovery = asyncio.create_task(
                    self._provider.call_api(system, messages, tools)
                )

        try:
            async for event in self._provider.call_api_stream(system, messages, tools):
                if isinstance(event, StreamError):
                    raise ProviderError(event.message)

                if isinstance(event, BlockStart):
                    if event.kind == "tool_use":
                        partial[event.index] = ToolCallRecord(
                            id=event.id or new_record_id(), name=event.name
                        )
                    self._emit_stream(event)

                elif isinstance(event, BlockDelta):
                    if event.is_input:
                        record = partial.get(event.index)
                        if record is not None:
                            record.merge_input_fragment(event.partial_json)
                    else:
                        text_parts.append(event.text)
                    self._emit_stream(event)

                elif isinstance(event, BlockStop):
                    record = partial.pop(event.index, None)
                    if record is None:
                        continue
                    try:
                        record.finalize_input()
                    except ValueError as e:
                        logger.warning("Unparseable input for %s (%s): %s", record.id, record.name, e)
                        mark_malformed(record)
                        continue
                    pipeline.add_record(record)

                elif isinstance(event, MessageDelta):
                    self._calibrate(event, system, messages)

            # Stream ended mid-block (e.g. max_tokens)
            for record in partial.values():
                logger.warning("Stream ended before tool call %s finished", record.id)
                mark_malformed(record)

            if malformed:
                await self._recover(pipeline, malformed, recovery)
        finally:
            if recovery is not None and not recovery.done():
                recovery.cancel()

        return _ParsedStream(text="".join(text_parts), records=pipeline.records[registered:])

    async def _recover(
        self,
        pipeline: ExecutionPipeline,
        malformed: list[ToolCallRecord],
        recovery: asyncio.Task[ApiResponse] | None,
    ) -> None:
        """Fill unparseable inputs from the parallel non-streamed response.

        Matches by tool name in order. Records that cannot be recovered are
        registered and failed so the model sees an error result.
        """
        available = []
        if recovery is not None:
            try:
                available = (await recovery).tool_uses
            except ProviderError as e:
                logger.warning("Tool input recovery request failed: %s", e)

        for record in malformed:
            match = next((u for u in available if u.name == record.name), None)
            if match is not None:
                available.remove(match)
                record.input = dict(match.input)
                record.metadata["recovered"] = True
                pipeline.add_record(record)
                continue
            pipeline.add_record(record, depends_on=[])
            record.begin_execution()
            record.fail("Failed to parse tool input")

    async def _execute(self, pipeline: ExecutionPipeline) -> None:
        """ExecutingTools: drain everything runnable, concurrently."""
        self._set_state(CoordinatorState.EXECUTING_TOOLS, pipeline)
        ran = await pipeline.run_ready(self._run_record)
        for record in pipeline.stalled_records():
            blocked = sorted(
                d for d in record.dependencies
                if pipeline.get(d).status != ToolStatus.COMPLETED
            )
            logger.warning("%s", DependencyStalled(record.id, blocked))
        logger.info(
            "Phase %d: ran %d tool call(s), %d pending",
            pipeline.current_phase + 1, len(ran), pipeline.metrics().pending,
        )

    async def _run_record(self, record: ToolCallRecord) -> Any:
        return await self._executor(record.name, record.input)

    async def _partial_answer(
        self, context: list[Turn], system_prompt: str, texts: list[str]
    ) -> str:
        """Best-effort answer once the ceiling is hit: one tool-less request."""
        prompt_turn = Turn(role="user", content=PARTIAL_ANSWER_PROMPT)
        turns = [*context, prompt_turn]
        try:
            response = await self._provider.call_api(
                _full_system(system_prompt, turns), format_messages(turns), tools=None
            )
            if response.text:
                return response.text
        except ProviderError as e:
            logger.warning("Partial answer request failed: %s", e)
        gathered = "\n\n".join(t for t in texts if t)
        return f"{PARTIAL_ANSWER_FALLBACK}\n\n{gathered}" if gathered else PARTIAL_ANSWER_FALLBACK

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def _set_state(
        self, state: CoordinatorState, pipeline: ExecutionPipeline, **detail: Any
    ) -> None:
        self.state = state
        logger.debug("Coordinator -> %s (phase %d)", state, pipeline.current_phase)
        if self._on_phase is None:
            return
        try:
            self._on_phase(PhaseEvent(state=state, phase=pipeline.current_phase, detail=detail))
        except Exception:
            logger.exception("Phase listener failed")

    def _emit_stream(self, event: StreamEvent) -> None:
        if self._on_stream is None:
            return
        try:
            self._on_stream(event)
        except Exception:
            logger.exception("Stream listener failed")

    def _calibrate(self, event: MessageDelta, system: str, messages: list[dict[str, Any]]) -> None:
        if self._compactor is None or not event.usage:
            return
        input_tokens = event.usage.get("input_tokens", 0)
        if input_tokens:
            chars = len(system) + len(json.dumps(messages, default=str))
            self._compactor.estimator.calibrate(chars, input_tokens)


def _full_system(system_prompt: str, turns: Sequence[Turn]) -> str:
    summaries = system_text(turns)
    return f"{system_prompt}\n\n{summaries}" if summaries else system_prompt
