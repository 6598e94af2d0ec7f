"""Shared data models for the API layer.

Kept apart from provider.py and the pipeline so compaction and
orchestration can import them without circular imports.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

ROLES = ("user", "assistant", "system")

SUMMARY_PREFIX = "[Previous conversation summary]"


@dataclass(frozen=True)
class ToolUse:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_block(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    """The outcome of one tool call, tagged with the requesting id."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


@dataclass
class Turn:
    """A single message in a conversation.

    Content fields are never rewritten after creation. ``units`` and
    ``priority`` are derived values that may be attached later.
    """

    role: str  # "user", "assistant" or "system"
    content: str = ""
    tool_calls: list[ToolUse] = field(default_factory=list)
    tool_results: list[ToolResultBlock] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    units: int | None = None
    priority: float | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid role: {self.role!r}")

    @property
    def has_tool_results(self) -> bool:
        return bool(self.tool_results)

    @property
    def is_summary(self) -> bool:
        return self.role == "system" and self.content.startswith("[Previous conversation")


@dataclass
class Conversation:
    """Tracks a multi-turn conversation."""

    session_id: str
    turns: list[Turn] = field(default_factory=list)
    compaction_count: int = 0


@dataclass
class ApiResponse:
    """Parsed response from the Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None

    @property
    def text(self) -> str:
        return "".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @property
    def tool_uses(self) -> list[ToolUse]:
        return [
            ToolUse(id=block["id"], name=block["name"], input=block.get("input") or {})
            for block in self.content
            if block.get("type") == "tool_use"
        ]


def result_to_text(result: Any) -> str:
    """Render a tool result as text for a tool_result block."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
