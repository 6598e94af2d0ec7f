"""Retention priority for conversation turns."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import IntEnum

from conduit.api.models import Turn
from conduit.context.budget import turn_units


class Priority(IntEnum):
    SYSTEM = 100
    TOOL_RESULT = 90
    USER_RECENT = 80
    ASSISTANT_RECENT = 70
    USER_OLD = 50
    ASSISTANT_OLD = 40


RECENCY_BONUS = 30.0  # max points added for the newest turn
RECENT_FRACTION = 0.7  # turns past this share of the history count as recent


def priority(turn: Turn, position: int, total: int) -> float:
    """Score a turn for retention.

    System turns rank highest, then turns carrying tool results. User
    and assistant turns get a role base score plus a linear recency
    bonus of 0-30 points.
    """
    if turn.role == "system":
        return float(Priority.SYSTEM)
    if turn.has_tool_results:
        return float(Priority.TOOL_RESULT)

    total = max(total, 1)
    recent = position > total * RECENT_FRACTION
    if turn.role == "user":
        base = Priority.USER_RECENT if recent else Priority.USER_OLD
    else:
        base = Priority.ASSISTANT_RECENT if recent else Priority.ASSISTANT_OLD
    return float(base) + (position / total) * RECENCY_BONUS


@dataclass(frozen=True)
class RankedTurn:
    turn: Turn
    position: int
    priority: float
    units: int


def rank(
    turns: Sequence[Turn],
    size: Callable[[Turn], int] = turn_units,
) -> list[RankedTurn]:
    """Score every turn, in input order. A cached ``turn.priority`` wins."""
    total = len(turns)
    return [
        RankedTurn(
            turn=t,
            position=i,
            priority=t.priority if t.priority is not None else priority(t, i, total),
            units=size(t),
        )
        for i, t in enumerate(turns)
    ]
