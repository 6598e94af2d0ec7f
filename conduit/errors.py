"""Error taxonomy for the orchestration pipeline.

Only InvalidTransition is fatal. The others are absorbed where they
occur and represented as data in the conversation (error tool results,
partial answers, truncated history).
"""

from __future__ import annotations


class ConduitError(Exception):
    """Base class for all Conduit errors."""


class InvalidTransition(ConduitError):
    """Attempted an illegal tool call state change (programming error)."""

    def __init__(self, record_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Tool call {record_id}: cannot transition {current} -> {target}"
        )
        self.record_id = record_id
        self.current = current
        self.target = target


class ExecutorFailure(ConduitError):
    """A tool invocation raised or timed out."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class UnknownToolError(ExecutorFailure):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, "unknown tool")


class DependencyStalled(ConduitError):
    """A tool call waits on a dependency that ended in error.

    The pipeline never raises this; stalled records stay pending and are
    reported through ExecutionPipeline.stalled_records().
    """

    def __init__(self, record_id: str, failed_dependencies: list[str]) -> None:
        super().__init__(
            f"Tool call {record_id} stalled on failed dependencies: "
            f"{', '.join(failed_dependencies)}"
        )
        self.record_id = record_id
        self.failed_dependencies = failed_dependencies


class PhaseCeilingExceeded(ConduitError):
    """The model kept requesting tools past the phase ceiling."""

    def __init__(self, max_phases: int) -> None:
        super().__init__(f"Phase ceiling of {max_phases} reached")
        self.max_phases = max_phases


class BudgetSummarizationFailure(ConduitError):
    """The summarization request used for compaction failed."""


class ProviderError(ConduitError):
    """The model provider could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
