"""REST API for Conduit.

Endpoints:
  POST   /chat              - Send message, get response
  POST   /chat/stream       - Send message, stream events (SSE)
  GET    /chat/{session_id} - Conversation history and compaction count
  DELETE /chat/{session_id} - End conversation
  GET    /tools             - Registered tool definitions
  GET    /health            - Health check
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from conduit.api.assistant import Assistant
from conduit.api.models import Turn
from conduit.api.tools import ToolDispatcher
from conduit.config import Settings

logger = logging.getLogger(__name__)


def _turn_json(turn: Turn) -> dict[str, Any]:
    data: dict[str, Any] = {
        "role": turn.role,
        "content": turn.content,
        "created_at": turn.created_at.isoformat(),
    }
    if turn.tool_calls:
        data["tool_calls"] = [c.to_block() for c in turn.tool_calls]
    if turn.tool_results:
        data["tool_results"] = [r.to_block() for r in turn.tool_results]
    return data


async def _read_message(request: Request) -> tuple[str, str] | JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    message = body.get("message")
    if not message or not isinstance(message, str):
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)
    return message, body.get("session_id") or str(uuid4())


def create_app(
    assistant: Assistant,
    dispatcher: ToolDispatcher,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Build the ASGI app. Handlers close over the injected components."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run one round and return the answer with its tool report."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        message, session_id = parsed

        try:
            result = await assistant.run_turn(session_id, message)
        except Exception as e:
            logger.error("Round failed for session %s: %s", session_id, e)
            return JSONResponse({"error": str(e)}, status_code=500)

        payload: dict[str, Any] = {
            "response": result.answer,
            "session_id": session_id,
            "phases": result.phases,
            "ceiling_hit": result.ceiling_hit,
            "tools": [
                {"id": r.id, "name": r.name, "status": str(r.status), "error": r.error}
                for r in result.records
            ],
            "stalled": [r.id for r in result.stalled],
        }
        if result.metrics is not None:
            payload["metrics"] = result.metrics.as_dict()
        if result.error:
            payload["error"] = result.error
        return JSONResponse(payload)

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - Run one round, streaming its events as SSE."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        message, session_id = parsed

        async def event_generator():
            yield f"data: {json.dumps({'type': 'session', 'session_id': session_id})}\n\n"
            try:
                async for event in assistant.stream_chat(session_id, message):
                    yield f"data: {json.dumps(event, default=str)}\n\n"
            except Exception as e:
                logger.error("Streamed round failed for session %s: %s", session_id, e)
                yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def get_chat(request: Request) -> JSONResponse:
        """GET /chat/{session_id} - Conversation history."""
        session_id = request.path_params["session_id"]
        conversation = assistant.get_conversation(session_id)
        if conversation is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        return JSONResponse({
            "session_id": session_id,
            "compaction_count": conversation.compaction_count,
            "turns": [_turn_json(t) for t in conversation.turns],
        })

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - Drop the stored history."""
        session_id = request.path_params["session_id"]
        removed = await assistant.end_conversation(session_id)
        return JSONResponse({"status": "ended" if removed else "unknown", "session_id": session_id})

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Tool definitions offered to the model."""
        return JSONResponse({"tools": dispatcher.tool_definitions()})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus the configured model and tool count."""
        return JSONResponse({
            "status": "healthy",
            "assistant": settings.assistant_name,
            "model": settings.model,
            "tools": len(dispatcher.tool_definitions()),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}", get_chat, methods=["GET"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/tools", list_tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
