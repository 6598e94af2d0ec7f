"""Model provider client -- direct httpx calls to the Anthropic Messages API.

Streaming responses are parsed into a small tagged union of events
(BlockStart | BlockDelta | BlockStop | MessageDelta | StreamError) so
callers never inspect raw SSE payloads.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from conduit.api.models import ApiResponse, Turn
from conduit.config import Settings
from conduit.errors import ProviderError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRYABLE_STATUS = (429, 500, 529)


# ------------------------------------------------------------------
# Stream events
# ------------------------------------------------------------------


@dataclass(frozen=True)
class BlockStart:
    """A content block begins. ``kind`` is "text" or "tool_use"."""

    index: int
    kind: str
    id: str = ""
    name: str = ""


@dataclass(frozen=True)
class BlockDelta:
    """A fragment of a block: prose text or partial tool-input JSON."""

    index: int
    text: str = ""
    partial_json: str = ""
    is_input: bool = False


@dataclass(frozen=True)
class BlockStop:
    index: int


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: str
    usage: dict[str, int] | None = None


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = BlockStart | BlockDelta | BlockStop | MessageDelta | StreamError


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE payload.

    Pings and unrecognized events return None. stop_reason lives in
    message_delta.delta, not message_start. In-stream errors arrive with
    HTTP 200 and an error body.
    """
    event_type = data.get("type")

    if event_type == "error":
        error = data.get("error", {})
        return StreamError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return BlockStart(
                index=index, kind="tool_use", id=block.get("id", ""), name=block.get("name", "")
            )
        return BlockStart(index=index, kind=block.get("type", "text"))

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return BlockDelta(index=index, text=delta.get("text", ""))
        if delta.get("type") == "input_json_delta":
            return BlockDelta(index=index, partial_json=delta.get("partial_json", ""), is_input=True)
        return None

    if event_type == "content_block_stop":
        return BlockStop(index=data.get("index", 0))

    if event_type == "message_delta":
        return MessageDelta(
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=data.get("usage"),
        )

    if event_type == "message_start":
        # Only interesting for its input usage
        usage = data.get("message", {}).get("usage")
        return MessageDelta(stop_reason="", usage=usage) if usage else None

    return None


# ------------------------------------------------------------------
# Turn formatting
# ------------------------------------------------------------------


def system_text(turns: Sequence[Turn]) -> str:
    """Content of system turns (summaries), folded into the system prompt."""
    return "\n\n".join(t.content for t in turns if t.role == "system" and t.content)


def format_messages(turns: Sequence[Turn]) -> list[dict[str, Any]]:
    """Render turns as Messages API messages.

    System turns are skipped (see system_text). Consecutive turns with
    the same role are merged. Tool calls and results whose counterpart
    was compacted away are rendered as text so the request stays valid.
    """
    call_ids = {c.id for t in turns for c in t.tool_calls}
    result_ids = {r.tool_use_id for t in turns for r in t.tool_results}

    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == "system":
            continue
        blocks: list[dict[str, Any]] = []
        for result in turn.tool_results:
            if result.tool_use_id in call_ids:
                blocks.append(result.to_block())
            else:
                blocks.append({
                    "type": "text",
                    "text": f"[Tool result {result.tool_use_id}]: {result.content}",
                })
        if turn.content:
            blocks.append({"type": "text", "text": turn.content})
        for call in turn.tool_calls:
            if call.id in result_ids:
                blocks.append(call.to_block())
            else:
                blocks.append({
                    "type": "text",
                    "text": f"[Called {call.name} with {json.dumps(call.input, default=str)}]",
                })
        if not blocks:
            continue

        if messages and messages[-1]["role"] == turn.role:
            previous = messages[-1]
            if isinstance(previous["content"], str):
                previous["content"] = [{"type": "text", "text": previous["content"]}]
            previous["content"].extend(blocks)
        elif len(blocks) == 1 and blocks[0]["type"] == "text" and not turn.tool_results:
            messages.append({"role": turn.role, "content": blocks[0]["text"]})
        else:
            messages.append({"role": turn.role, "content": blocks})
    return messages


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class ModelClient:
    """httpx client for the Messages API with a single retry on 429/5xx."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("Provider client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        model_override: str | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Messages API request payload, shared by call_api and call_api_stream."""
        payload: dict[str, Any] = {
            "model": model_override or self._settings.model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "system": system_prompt,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = {"type": "auto"}
        if stream:
            payload["stream"] = True
        return payload

    async def call_api(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse:
        """Non-streamed request. Raises ProviderError on persistent errors."""
        if not self._http:
            raise ProviderError("httpx client not initialized -- call start() first")

        payload = self.build_payload(
            system_prompt, messages, tools,
            model_override=model_override, max_tokens=max_tokens,
        )

        last_error: ProviderError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    return _parse_response(response)

                error_type, error_msg = _error_details(response)
                if response.status_code in _RETRYABLE_STATUS and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code, error_type, retry_after, error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ProviderError(
                    f"Provider API error ({response.status_code}): {error_type} - {error_msg}",
                    status_code=response.status_code,
                )
                break

            except httpx.TimeoutException as e:
                last_error = ProviderError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ProviderError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ProviderError("API call failed with unknown error")

    async def call_api_stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Streamed request. Yields parsed events; errors arrive as StreamError."""
        if not self._http:
            raise ProviderError("httpx client not initialized -- call start() first")

        payload = self.build_payload(system_prompt, messages, tools, stream=True)

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    yield StreamError(f"HTTP {response.status_code}: {body.decode()[:500]}")
                    return

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        yield StreamError(f"Malformed stream event: {e}")
                        return
                    if not isinstance(data, dict):
                        yield StreamError(f"Malformed stream event: {line[6:][:200]}")
                        return
                    event = parse_sse_event(data)
                    if event is None:
                        continue
                    yield event
                    if isinstance(event, StreamError):
                        return
        except httpx.HTTPError as e:
            yield StreamError(f"HTTP error: {e}")


def _error_details(response: httpx.Response) -> tuple[str, str]:
    try:
        error = response.json().get("error", {})
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except (ValueError, AttributeError):
        return "http_error", f"HTTP {response.status_code}: {response.text[:500]}"


def _parse_response(response: httpx.Response) -> ApiResponse:
    """ApiResponse from a 200 body. A body that is not a message raises ProviderError."""
    try:
        data = response.json()
        content = data["content"]
    except (ValueError, KeyError, TypeError) as e:
        raise ProviderError(
            f"Malformed provider response: {e!r}", status_code=response.status_code
        ) from e
    if not isinstance(content, list):
        raise ProviderError(
            "Malformed provider response: content is not a list",
            status_code=response.status_code,
        )
    return ApiResponse(
        content=content,
        stop_reason=data.get("stop_reason") or "",
        usage=data.get("usage"),
    )
