"""Model-backed summarization of dropped conversation turns."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from conduit.api.models import SUMMARY_PREFIX, ApiResponse, Turn
from conduit.config import Settings
from conduit.errors import BudgetSummarizationFailure

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY the summary, no preamble.
Keep user goals, decisions, outcomes and exact figures (names, ids, numbers)
that later turns may refer to."""

FOCUS_TOPICS = ("key decisions", "tool results", "user goals")


class ApiCaller(Protocol):
    """Non-streamed provider call (ModelClient.call_api)."""

    async def __call__(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse: ...


class ModelSummarizer:
    """Summarizes turns with a secondary, tool-less model request."""

    def __init__(self, call_api: ApiCaller, settings: Settings) -> None:
        self._call_api = call_api
        self._settings = settings

    async def summarize(
        self,
        turns: Sequence[Turn],
        max_units: int,
        *,
        preserve_tool_results: bool = True,
    ) -> Turn:
        if not turns:
            raise BudgetSummarizationFailure("Nothing to summarize")

        prompt = (
            "Summarize the following conversation concisely, preserving key "
            "information, decisions, and outcomes. "
            f"Focus especially on: {', '.join(FOCUS_TOPICS)}."
        )
        if preserve_tool_results:
            prompt += " Include mentions of what tools were used and their key results."
        prompt += (
            f"\n\nConversation:\n{serialize_turns(turns, preserve_tool_results)}"
            "\n\nSummary:"
        )

        try:
            response = await self._call_api(
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                tools=None,
                model_override=self._settings.summary_model,
                max_tokens=max_units,
            )
        except Exception as e:
            raise BudgetSummarizationFailure(f"Summary request failed: {e}") from e

        text = response.text.strip()
        if not text:
            raise BudgetSummarizationFailure("Summary response was empty")
        logger.debug("Summarized %d turns into %d chars", len(turns), len(text))
        return Turn(role="system", content=f"{SUMMARY_PREFIX}: {text}")


def serialize_turns(turns: Sequence[Turn], preserve_tool_results: bool = True) -> str:
    """Render turns as readable text for the summarization prompt."""
    lines = []
    for turn in turns:
        entry = f"{turn.role}: {turn.content}"
        if preserve_tool_results and turn.tool_calls:
            entry += f"\n[Used tools: {', '.join(c.name for c in turn.tool_calls)}]"
        if preserve_tool_results and turn.tool_results:
            failed = sum(1 for r in turn.tool_results if r.is_error)
            entry += f"\n[Tool results: {len(turn.tool_results)} results"
            entry += f", {failed} failed]" if failed else "]"
            for result in turn.tool_results:
                entry += f"\n  {result.tool_use_id}: {result.content[:500]}"
        lines.append(entry)
    return "\n\n".join(lines)
