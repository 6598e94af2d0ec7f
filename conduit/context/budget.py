"""Budget estimation in model-context units.

Heuristic character-ratio estimates per content category. Precision is
not a goal: the compaction trigger leaves 20% headroom and the reserved
units absorb the estimation error.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from conduit.api.models import Turn
from conduit.config import Settings


class ContentCategory(StrEnum):
    TEXT = "text"
    CODE = "code"
    JSON = "json"
    TOOL_RESULT = "tool_result"


# Units per character for each category
UNITS_PER_CHAR: dict[ContentCategory, float] = {
    ContentCategory.TEXT: 0.25,  # ~4 chars per unit
    ContentCategory.CODE: 0.3,
    ContentCategory.JSON: 0.35,  # punctuation-heavy
    ContentCategory.TOOL_RESULT: 0.3,
}


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def estimate_units(
    content: Any,
    category: ContentCategory = ContentCategory.TEXT,
    text_ratio: float | None = None,
) -> int:
    """Estimate units for content; structured values are serialized first."""
    ratio = UNITS_PER_CHAR[category]
    if category is ContentCategory.TEXT and text_ratio is not None:
        ratio = text_ratio
    return math.ceil(len(_as_text(content)) * ratio)


def turn_units(turn: Turn, text_ratio: float | None = None) -> int:
    """Estimate the size of one turn.

    Prose at the text rate, each tool call serialized at the JSON rate and
    each tool result at the tool-result rate. A cached ``turn.units`` wins.
    """
    if turn.units is not None:
        return turn.units
    units = estimate_units(turn.content, ContentCategory.TEXT, text_ratio)
    for call in turn.tool_calls:
        units += estimate_units(call.to_block(), ContentCategory.JSON)
    for result in turn.tool_results:
        units += estimate_units(result.content, ContentCategory.TOOL_RESULT)
    return units


def conversation_units(turns: Iterable[Turn], text_ratio: float | None = None) -> int:
    return sum(turn_units(t, text_ratio) for t in turns)


class BudgetEstimator:
    """Estimates conversation size against the configured context window.

    Starts from the fixed per-category ratios. The prose ratio can be
    calibrated from actual provider usage via calibrate(); structured
    categories keep their fixed multipliers.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._text_ratio: float = UNITS_PER_CHAR[ContentCategory.TEXT]
        self._samples = 0

    @property
    def text_ratio(self) -> float:
        return self._text_ratio

    @property
    def samples(self) -> int:
        return self._samples

    def size(self, turn: Turn) -> int:
        return turn_units(turn, self._text_ratio)

    def total(self, turns: Iterable[Turn]) -> int:
        return conversation_units(turns, self._text_ratio)

    def available_units(self) -> int:
        return self._settings.available_units

    def compaction_threshold(self) -> int:
        return int(self.available_units() * self._settings.compaction_trigger_ratio)

    def needs_compaction(self, turns: Iterable[Turn]) -> bool:
        """True when the turns exceed the trigger share of the available budget."""
        return self.total(turns) > self.compaction_threshold()

    def calibrate(self, input_chars: int, actual_units: int) -> None:
        """Update the prose ratio from actual usage. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_units <= 0:
            return
        observed = actual_units / input_chars
        self._text_ratio = 0.1 * observed + 0.9 * self._text_ratio
        self._samples += 1
