"""Context compaction under a hard unit ceiling.

Priority decides which turns are included, never their order: accepted
turns are returned chronologically. Dropped turns are replaced by one
synthesized summary turn placed before the oldest retained turn.

When summarization fails the compactor falls back to plain
message-count truncation (most recent turns that fit).
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from conduit.api.models import SUMMARY_PREFIX, Turn
from conduit.config import Settings
from conduit.context.budget import BudgetEstimator, turn_units
from conduit.context.priority import rank
from conduit.errors import BudgetSummarizationFailure

logger = logging.getLogger(__name__)


class Summarizer(Protocol):
    """Produces a summary turn for a slice of history.

    Must not call back into the orchestration pipeline.
    """

    async def summarize(
        self,
        turns: Sequence[Turn],
        max_units: int,
        *,
        preserve_tool_results: bool = True,
    ) -> Turn: ...


@dataclass
class CompactionResult:
    turns: list[Turn]
    dropped: list[Turn] = field(default_factory=list)
    summary: Turn | None = None
    fell_back: bool = False

    @property
    def compacted(self) -> bool:
        return bool(self.dropped)


def _chronological_key(position_of: dict[int, int]) -> Callable[[Turn], tuple]:
    return lambda t: (t.created_at, position_of[id(t)])


def _earliest(turns: Sequence[Turn]) -> datetime:
    # Synthesized turns sort before every turn they replace
    return min(t.created_at for t in turns)


def select(
    turns: Sequence[Turn],
    target_units: int,
    size: Callable[[Turn], int] = turn_units,
) -> list[Turn]:
    """Greedy priority selection within ``target_units``.

    Highest priority first, accepting each turn whose size still fits.
    Ties go to the older turn (creation time, then position), so the same
    turn set selects the same turns in any input order. Accepted turns are
    returned chronologically.
    """
    ranked = rank(turns, size)
    accepted: list[Turn] = []
    used = 0
    for item in sorted(ranked, key=lambda r: (-r.priority, r.turn.created_at, r.position)):
        if used + item.units <= target_units:
            accepted.append(item.turn)
            used += item.units
    position_of = {id(t): i for i, t in enumerate(turns)}
    return sorted(accepted, key=_chronological_key(position_of))


def compression_note(dropped: Sequence[Turn]) -> str:
    user_count = sum(1 for t in dropped if t.role == "user")
    assistant_count = sum(1 for t in dropped if t.role == "assistant")
    return (
        f"[Previous conversation compressed: {user_count} user messages and "
        f"{assistant_count} assistant responses summarized]"
    )


class ContextCompactor:
    """Decides which turns survive into the next request.

    Owns no turn state: every call reads the given history and returns a
    new list, so compactions of different conversations are independent.
    """

    def __init__(
        self,
        estimator: BudgetEstimator,
        summarizer: Summarizer | None,
        settings: Settings,
    ) -> None:
        self.estimator = estimator
        self._summarizer = summarizer
        self._settings = settings

    def should_compact(self, turns: Sequence[Turn]) -> bool:
        return self.estimator.needs_compaction(turns)

    def default_target(self) -> int:
        return self.estimator.compaction_threshold()

    async def compact(self, turns: Sequence[Turn], target_units: int) -> CompactionResult:
        """Compact ``turns`` to fit ``target_units``.

        Returns the input unchanged when it already fits.
        """
        size = self.estimator.size
        total = self.estimator.total(turns)
        if total <= target_units:
            return CompactionResult(turns=list(turns))

        start_time = time.monotonic()
        reserve = min(self._settings.summary_max_units, target_units // 4)
        kept = select(turns, target_units - reserve, size)
        kept_ids = {id(t) for t in kept}
        dropped = [t for t in turns if id(t) not in kept_ids]

        try:
            summary = await self._summarize_dropped(dropped)
        except Exception as e:
            logger.warning("Summarization failed: %s - falling back to truncation", e)
            return self.truncate(turns, target_units)

        kept_units = sum(size(t) for t in kept)
        summary = self._fit_summary(summary, target_units - kept_units)
        if summary is not None:
            summary = replace(summary, created_at=_earliest(turns))
        result_turns = ([summary] if summary else []) + kept

        logger.info(
            "Compacted %d turns (%d units) -> %d kept + %s (%d units, %d ms)",
            len(turns),
            total,
            len(kept),
            "summary" if summary else "no summary",
            self.estimator.total(result_turns),
            int((time.monotonic() - start_time) * 1000),
        )
        return CompactionResult(turns=result_turns, dropped=dropped, summary=summary)

    def truncate(self, turns: Sequence[Turn], target_units: int) -> CompactionResult:
        """Keep the most recent turns that fit, plus a count-based note if room remains."""
        size = self.estimator.size
        kept: list[Turn] = []
        used = 0
        for turn in reversed(turns):
            units = size(turn)
            if used + units > target_units:
                break
            kept.append(turn)
            used += units
        kept.reverse()
        dropped = list(turns[: len(turns) - len(kept)])

        note = None
        if dropped:
            candidate = Turn(
                role="system",
                content=compression_note(dropped),
                created_at=_earliest(turns),
            )
            if used + size(candidate) <= target_units:
                note = candidate
        logger.info(
            "Truncated history: kept last %d of %d turns", len(kept), len(turns)
        )
        return CompactionResult(
            turns=([note] if note else []) + kept,
            dropped=dropped,
            summary=note,
            fell_back=True,
        )

    async def _summarize_dropped(self, dropped: list[Turn]) -> Turn | None:
        if not dropped:
            return None
        if self._summarizer is None:
            raise BudgetSummarizationFailure("No summarizer configured")

        chunk_size = self._settings.summary_chunk_size
        parts: list[str] = []
        for i in range(0, len(dropped), chunk_size):
            chunk = dropped[i : i + chunk_size]
            important = any(t.has_tool_results or t.tool_calls for t in chunk)
            max_units = (
                self._settings.summary_max_units
                if important
                else self._settings.summary_max_units_plain
            )
            turn = await self._summarizer.summarize(
                chunk, max_units, preserve_tool_results=important
            )
            text = turn.content.removeprefix(SUMMARY_PREFIX).lstrip(": \n")
            if text:
                parts.append(text)

        if not parts:
            raise BudgetSummarizationFailure("Summarizer returned empty summaries")
        return Turn(role="system", content=f"{SUMMARY_PREFIX}: " + "\n\n".join(parts))

    def _fit_summary(self, summary: Turn | None, room: int) -> Turn | None:
        """Trim the summary so it fits in ``room`` units, or drop it."""
        if summary is None:
            return None
        if self.estimator.size(summary) <= room:
            return summary
        max_chars = math.floor(room / self.estimator.text_ratio) - 3
        if max_chars <= len(SUMMARY_PREFIX) + 2:
            logger.warning("No room left for compaction summary (%d units)", room)
            return None
        return Turn(role="system", content=summary.content[:max_chars] + "...")
