"""Tests for the model provider client: SSE parsing, message formatting,
and the httpx request/retry path (httpx.MockTransport, no network)."""

from __future__ import annotations

import json

import httpx
import pytest

from conduit.api.models import ToolResultBlock, ToolUse, Turn
from conduit.api.provider import (
    BlockDelta,
    BlockStart,
    BlockStop,
    MessageDelta,
    ModelClient,
    StreamError,
    format_messages,
    parse_sse_event,
    system_text,
)
from conduit.errors import ProviderError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client(settings, handler) -> ModelClient:
    client = ModelClient(settings)
    client._http = httpx.AsyncClient(
        base_url="https://api.test", transport=httpx.MockTransport(handler)
    )
    return client


def _sse(*payloads: dict) -> bytes:
    lines = []
    for payload in payloads:
        lines.append(f"event: {payload['type']}")
        lines.append(f"data: {json.dumps(payload)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _message(text: str = "Hello") -> dict:
    return {
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 10, "output_tokens": 2},
    }


# ---------------------------------------------------------------------------
# parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSseEvent:
    def test_tool_use_start(self):
        event = parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "fixtures", "input": {}},
        })
        assert event == BlockStart(index=1, kind="tool_use", id="toolu_1", name="fixtures")

    def test_text_start(self):
        event = parse_sse_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}})
        assert event == BlockStart(index=0, kind="text")

    def test_deltas(self):
        text = parse_sse_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}})
        partial = parse_sse_event({
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"te'},
        })
        assert text == BlockDelta(index=0, text="Hi")
        assert partial == BlockDelta(index=1, partial_json='{"te', is_input=True)

    def test_stop_and_message_delta(self):
        assert parse_sse_event({"type": "content_block_stop", "index": 2}) == BlockStop(index=2)
        event = parse_sse_event({
            "type": "message_delta",
            "delta": {"stop_reason": "tool_use"},
            "usage": {"output_tokens": 12},
        })
        assert event == MessageDelta(stop_reason="tool_use", usage={"output_tokens": 12})

    def test_message_start_reports_input_usage(self):
        event = parse_sse_event({"type": "message_start", "message": {"usage": {"input_tokens": 321}}})
        assert event == MessageDelta(stop_reason="", usage={"input_tokens": 321})

    def test_in_stream_error(self):
        event = parse_sse_event({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})
        assert event == StreamError("overloaded_error: busy")

    def test_ping_ignored(self):
        assert parse_sse_event({"type": "ping"}) is None


# ---------------------------------------------------------------------------
# format_messages
# ---------------------------------------------------------------------------


class TestFormatMessages:
    def test_plain_turns(self):
        turns = [Turn(role="user", content="Hi"), Turn(role="assistant", content="Hello")]
        assert format_messages(turns) == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]

    def test_system_turns_go_to_system_text(self):
        turns = [
            Turn(role="system", content="[Previous conversation summary]: earlier"),
            Turn(role="user", content="Hi"),
        ]
        assert format_messages(turns) == [{"role": "user", "content": "Hi"}]
        assert system_text(turns) == "[Previous conversation summary]: earlier"

    def test_tool_round_trip_blocks(self):
        turns = [
            Turn(role="user", content="Fixtures?"),
            Turn(role="assistant", tool_calls=[ToolUse("toolu_1", "fixtures", {"team": "ARS"})]),
            Turn(role="user", tool_results=[ToolResultBlock("toolu_1", "CHE (H)")]),
        ]
        messages = format_messages(turns)
        assert messages[1] == {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "toolu_1", "name": "fixtures", "input": {"team": "ARS"}}],
        }
        assert messages[2] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "CHE (H)", "is_error": False}],
        }

    def test_consecutive_same_role_turns_merge(self):
        turns = [
            Turn(role="assistant", tool_calls=[ToolUse("toolu_1", "a"), ToolUse("toolu_2", "b")]),
            Turn(role="user", tool_results=[ToolResultBlock("toolu_1", "1")]),
            Turn(role="user", tool_results=[ToolResultBlock("toolu_2", "2")]),
            Turn(role="user", content="thanks"),
        ]
        messages = format_messages(turns)
        assert len(messages) == 2
        assert [b["type"] for b in messages[1]["content"]] == ["tool_result", "tool_result", "text"]

    def test_orphans_rendered_as_text(self):
        turns = [
            Turn(role="user", tool_results=[ToolResultBlock("toolu_gone", "42")]),
            Turn(role="assistant", tool_calls=[ToolUse("toolu_pending", "lookup", {"q": 1})]),
        ]
        messages = format_messages(turns)
        assert messages[0]["content"][0] == {"type": "text", "text": "[Tool result toolu_gone]: 42"}
        assert messages[1]["content"] == '[Called lookup with {"q": 1}]'


# ---------------------------------------------------------------------------
# ModelClient
# ---------------------------------------------------------------------------


class TestBuildPayload:
    def test_tools_enable_auto_choice(self, settings):
        payload = ModelClient(settings).build_payload("sys", [], tools=[{"name": "t"}], stream=True)
        assert payload["tool_choice"] == {"type": "auto"}
        assert payload["stream"] is True
        assert payload["model"] == settings.model

    def test_overrides(self, settings):
        payload = ModelClient(settings).build_payload("sys", [], model_override="small", max_tokens=50)
        assert payload["model"] == "small"
        assert payload["max_tokens"] == 50
        assert "tools" not in payload


class TestCallApi:
    @pytest.mark.asyncio
    async def test_success(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=_message("Hello"))

        client = _client(settings, handler)
        response = await client.call_api("sys", [{"role": "user", "content": "Hi"}])
        await client.close()

        assert response.text == "Hello"
        assert response.usage == {"input_tokens": 10, "output_tokens": 2}
        assert requests[0]["system"] == "sys"

    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self, settings):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(
                    529,
                    headers={"retry-after": "0"},
                    json={"error": {"type": "overloaded_error", "message": "busy"}},
                )
            return httpx.Response(200, json=_message("Recovered"))

        response = await _client(settings, handler).call_api("sys", [])
        assert response.text == "Recovered"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, settings):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})

        with pytest.raises(ProviderError) as exc_info:
            await _client(settings, handler).call_api("sys", [])
        assert exc_info.value.status_code == 400
        assert "invalid_request_error" in str(exc_info.value)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"<html>gateway</html>",
            b'{"id": "msg_1", "stop_reason": "end_turn"}',
            b"[1, 2]",
            b'{"content": "text"}',
        ],
    )
    async def test_malformed_success_body(self, settings, body):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        with pytest.raises(ProviderError, match="Malformed provider response") as exc_info:
            await _client(settings, handler).call_api("sys", [])
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_non_object_error_body(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json=["bad"])

        with pytest.raises(ProviderError, match="400"):
            await _client(settings, handler).call_api("sys", [])

    @pytest.mark.asyncio
    async def test_not_started(self, settings):
        with pytest.raises(ProviderError, match="not initialized"):
            await ModelClient(settings).call_api("sys", [])


class TestCallApiStream:
    @pytest.mark.asyncio
    async def test_events_parsed_in_order(self, settings):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "fixtures"}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 5}},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        events = [e async for e in _client(settings, handler).call_api_stream("sys", [])]

        assert events == [
            MessageDelta(stop_reason="", usage={"input_tokens": 9}),
            BlockStart(index=0, kind="tool_use", id="toolu_1", name="fixtures"),
            BlockDelta(index=0, partial_json="{}", is_input=True),
            BlockStop(index=0),
            MessageDelta(stop_reason="tool_use", usage={"output_tokens": 5}),
        ]

    @pytest.mark.asyncio
    async def test_http_error_yields_stream_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, content=b"upstream exploded")

        events = [e async for e in _client(settings, handler).call_api_stream("sys", [])]
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert "HTTP 500" in events[0].message

    @pytest.mark.asyncio
    async def test_stream_stops_after_error_event(self, settings):
        body = _sse(
            {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}},
            {"type": "content_block_stop", "index": 0},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        events = [e async for e in _client(settings, handler).call_api_stream("sys", [])]
        assert events == [StreamError("overloaded_error: busy")]


    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", ["{not json", "[1, 2]"])
    async def test_malformed_event_yields_stream_error(self, settings, data):
        body = (
            _sse({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}})
            + f"data: {data}\n\n".encode()
            + _sse({"type": "content_block_stop", "index": 0})
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        events = [e async for e in _client(settings, handler).call_api_stream("sys", [])]
        assert events[0] == BlockStart(index=0, kind="text")
        assert len(events) == 2
        assert isinstance(events[1], StreamError)
        assert "Malformed stream event" in events[1].message


class TestStart:
    @pytest.mark.asyncio
    async def test_auth_token_preferred(self, monkeypatch):
        from conduit.config import Settings

        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-key")
        monkeypatch.setenv("ANTHROPIC_AUTH_TOKEN", "tok")
        client = ModelClient(Settings(_env_file=None))
        await client.start()
        try:
            assert client._http.headers["authorization"] == "Bearer tok"
            assert "x-api-key" not in client._http.headers
        finally:
            await client.close()
