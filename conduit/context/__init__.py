"""Context module -- keeps a conversation inside the model's window.

Public API:
    BudgetEstimator   - Approximate unit counts and the compaction threshold
    ContextCompactor  - Priority-based selection plus summary/truncation
    ModelSummarizer   - Summarizes dropped turns through the provider

Helpers:
    estimate_units, turn_units, conversation_units, priority, rank
"""

from conduit.context.budget import (
    BudgetEstimator,
    ContentCategory,
    conversation_units,
    estimate_units,
    turn_units,
)
from conduit.context.compactor import CompactionResult, ContextCompactor, Summarizer
from conduit.context.priority import Priority, RankedTurn, priority, rank
from conduit.context.summarizer import ModelSummarizer

__all__ = [
    "BudgetEstimator",
    "CompactionResult",
    "ContentCategory",
    "ContextCompactor",
    "ModelSummarizer",
    "Priority",
    "RankedTurn",
    "Summarizer",
    "conversation_units",
    "estimate_units",
    "priority",
    "rank",
    "turn_units",
]
