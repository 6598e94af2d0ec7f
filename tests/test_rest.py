"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing. The
Assistant is real; its provider is a ScriptedProvider (conftest).
"""

from __future__ import annotations

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conduit.api.assistant import Assistant
from conduit.api.provider import BlockDelta, BlockStart, BlockStop, MessageDelta
from conduit.api.rest import create_app
from conduit.api.tools import ToolDispatcher
from conduit.config import Settings
from conduit.store import MemoryStore

from tests.conftest import ScriptedProvider

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text_stream(text: str) -> list:
    return [
        BlockStart(index=0, kind="text"),
        BlockDelta(index=0, text=text),
        BlockStop(index=0),
        MessageDelta(stop_reason="end_turn"),
    ]


async def standings(top: int = 3) -> list[str]:
    return ["ARS", "LIV", "MCI"][:top]


class FailingAssistant:
    """Raises from every entry point, to exercise error responses."""

    async def run_turn(self, session_id, message):
        raise RuntimeError("assistant crashed")

    async def stream_chat(self, session_id, message):
        raise RuntimeError("assistant crashed")
        yield  # pragma: no cover

    def get_conversation(self, session_id):
        return None

    async def end_conversation(self, session_id):
        return False


@pytest.fixture
def rest_settings() -> Settings:
    return Settings(_env_file=None, assistant_name="Test")


@pytest.fixture
def dispatcher(rest_settings) -> ToolDispatcher:
    dispatcher = ToolDispatcher(rest_settings)
    dispatcher.register("standings", standings, {"type": "object"}, description="League table")
    return dispatcher


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider([_text_stream("Arsenal are top.")])


@pytest_asyncio.fixture
async def client(provider, dispatcher, rest_settings):
    assistant = Assistant(provider, dispatcher, rest_settings, MemoryStore())
    app = create_app(assistant, dispatcher, rest_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def failing_client(dispatcher, rest_settings):
    app = create_app(FailingAssistant(), dispatcher, rest_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# POST /chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_returns_answer(self, client):
        resp = await client.post("/chat", json={"message": "Who is top?", "session_id": "s1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["response"] == "Arsenal are top."
        assert data["session_id"] == "s1"
        assert data["phases"] == 0
        assert data["ceiling_hit"] is False
        assert data["tools"] == []
        assert data["stalled"] == []
        assert data["metrics"]["total"] == 0

    @pytest.mark.asyncio
    async def test_chat_generates_session_id(self, client):
        resp = await client.post("/chat", json={"message": "Hi"})
        assert resp.status_code == 200
        assert resp.json()["session_id"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[1, 2]", b"{}", b'{"message": ""}', b'{"message": 5}'],
    )
    async def test_chat_bad_request(self, client, body):
        resp = await client.post("/chat", content=body, headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert "error" in resp.json()

    @pytest.mark.asyncio
    async def test_chat_internal_error(self, failing_client):
        resp = await failing_client.post("/chat", json={"message": "Hi"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "assistant crashed"


# ---------------------------------------------------------------------------
# POST /chat/stream
# ---------------------------------------------------------------------------


class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream_events(self, client):
        resp = await client.post("/chat/stream", json={"message": "Who is top?", "session_id": "s1"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(resp.text)
        assert events[0] == {"type": "session", "session_id": "s1"}
        assert {"type": "text_delta", "text": "Arsenal are top."} in events
        assert events[-1]["type"] == "done"
        assert events[-1]["answer"] == "Arsenal are top."

    @pytest.mark.asyncio
    async def test_stream_error_event(self, failing_client):
        resp = await failing_client.post("/chat/stream", json={"message": "Hi", "session_id": "s1"})
        events = _sse_events(resp.text)
        assert events[-1] == {"type": "error", "message": "assistant crashed"}

    @pytest.mark.asyncio
    async def test_stream_bad_request(self, client):
        resp = await client.post("/chat/stream", json={"session_id": "s1"})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_get_history(self, client):
        await client.post("/chat", json={"message": "Who is top?", "session_id": "s1"})
        resp = await client.get("/chat/s1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["compaction_count"] == 0
        assert [(t["role"], t["content"]) for t in data["turns"]] == [
            ("user", "Who is top?"),
            ("assistant", "Arsenal are top."),
        ]

    @pytest.mark.asyncio
    async def test_get_unknown_session(self, client):
        resp = await client.get("/chat/nope")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_session(self, client):
        await client.post("/chat", json={"message": "Hi", "session_id": "s1"})
        resp = await client.delete("/chat/s1")
        assert resp.json() == {"status": "ended", "session_id": "s1"}
        assert (await client.get("/chat/s1")).status_code == 404
        resp = await client.delete("/chat/s1")
        assert resp.json()["status"] == "unknown"


# ---------------------------------------------------------------------------
# Tools and health
# ---------------------------------------------------------------------------


class TestInfo:
    @pytest.mark.asyncio
    async def test_tools(self, client):
        resp = await client.get("/tools")
        assert resp.json() == {
            "tools": [
                {"name": "standings", "description": "League table", "input_schema": {"type": "object"}},
            ]
        }

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["assistant"] == "Test"
        assert data["tools"] == 1
