"""Pipeline module -- tool call lifecycle and phase orchestration.

Public API:
    ExecutionPipeline        - Records of one round, dependency-ordered execution
    OrchestrationCoordinator - Drives a round through bounded phases
    ToolCallRecord           - One requested tool invocation

Schemas:
    ToolStatus, PipelineMetrics, RoundResult, CoordinatorState, PhaseEvent
"""

from conduit.pipeline.coordinator import (
    CoordinatorState,
    OrchestrationCoordinator,
    PhaseEvent,
    RoundResult,
)
from conduit.pipeline.dependencies import infer_dependencies
from conduit.pipeline.pipeline import ExecutionPipeline, PipelineMetrics
from conduit.pipeline.records import ToolCallRecord, ToolStatus

__all__ = [
    "CoordinatorState",
    "ExecutionPipeline",
    "OrchestrationCoordinator",
    "PhaseEvent",
    "PipelineMetrics",
    "RoundResult",
    "ToolCallRecord",
    "ToolStatus",
    "infer_dependencies",
]
