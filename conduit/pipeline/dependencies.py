"""Textual dependency inference between tool calls.

A call depends on an earlier call when the earlier call's id, or its
positional alias ``tool_<index>``, appears in the later call's
serialized input. This is a substring heuristic: coincidental matches
create false dependencies and data flow that never names an id is
missed. Callers that know the real dependencies should pass them
explicitly instead.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from conduit.pipeline.records import ToolCallRecord


def positional_alias(index: int) -> str:
    return f"tool_{index}"


def serialize_input(input: Any) -> str:
    return json.dumps(input, sort_keys=True, separators=(",", ":"), default=str)


def infer_dependencies(input: Any, prior: Sequence[ToolCallRecord]) -> set[str]:
    """Ids of ``prior`` records referenced by ``input``.

    ``prior`` must be in registration order; the index of each record
    there is its positional alias.
    """
    text = serialize_input(input)
    found: set[str] = set()
    for index, record in enumerate(prior):
        if record.id in text or _alias_in(positional_alias(index), text):
            found.add(record.id)
    return found


def _alias_in(alias: str, text: str) -> bool:
    # "tool_1" must not match inside "tool_12"
    start = text.find(alias)
    while start != -1:
        end = start + len(alias)
        if end == len(text) or not text[end].isdigit():
            return True
        start = text.find(alias, start + 1)
    return False
