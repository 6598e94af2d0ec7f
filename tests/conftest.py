"""Shared fixtures: settings without .env and a scripted model provider."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from conduit.api.models import ApiResponse
from conduit.config import Settings

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Replays canned stream events and non-streamed responses.

    ``streams`` is either a list of event lists (the last one repeats) or a
    callable taking the 0-based stream call index. ``responses`` are
    returned by call_api() in order; an Exception instance is raised.
    """

    def __init__(
        self,
        streams: list[list[Any]] | Callable[[int], list[Any]],
        responses: list[ApiResponse | Exception] | None = None,
    ) -> None:
        self._streams = streams
        self._responses = list(responses or [])
        self.stream_calls: list[dict[str, Any]] = []
        self.api_calls: list[dict[str, Any]] = []

    async def call_api_stream(self, system_prompt, messages, tools=None):
        index = len(self.stream_calls)
        self.stream_calls.append({"system": system_prompt, "messages": messages, "tools": tools})
        if callable(self._streams):
            events = self._streams(index)
        else:
            events = self._streams[min(index, len(self._streams) - 1)]
        for event in events:
            yield event

    async def call_api(
        self, system_prompt, messages, tools=None, model_override=None, max_tokens=None
    ) -> ApiResponse:
        self.api_calls.append({
            "system": system_prompt,
            "messages": messages,
            "tools": tools,
            "model_override": model_override,
            "max_tokens": max_tokens,
        })
        if not self._responses:
            return ApiResponse(content=[{"type": "text", "text": ""}], stop_reason="end_turn")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def small_settings() -> Settings:
    """Tiny context window so compaction triggers with short histories.

    available = 2000 - 400 = 1600 units, threshold = 1280 units.
    """
    return Settings(
        _env_file=None,
        context_window=2000,
        reserved_system_prompt=100,
        reserved_response=200,
        reserved_buffer=100,
        summary_max_units=100,
        summary_max_units_plain=60,
    )


@pytest.fixture
def scripted_provider() -> type[ScriptedProvider]:
    return ScriptedProvider
