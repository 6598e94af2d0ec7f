"""Tool dispatcher and remote MCP tool back end.

Provides:
- ToolDispatcher: registers tools, validates input against the declared
  schema, executes calls with a per-call timeout
- RemoteToolBackend: client for a remote MCP tool server
- register_remote_tools: exposes every remote tool through a dispatcher

The dispatcher raises instead of returning error strings: the execution
pipeline turns any exception into an error tool result for the model.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from conduit.config import Settings
from conduit.errors import ExecutorFailure, UnknownToolError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and executes tool calls from the model.

    Each handler is an async callable that accepts **kwargs and returns
    any JSON-serializable value (or a string).
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._descriptions: dict[str, str] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        description: str | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        if name in self._handlers:
            logger.warning("Tool %s re-registered, replacing previous handler", name)
        self._handlers[name] = handler
        self._schemas[name] = schema
        self._descriptions[name] = description or schema.get("description", "")

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": name,
                "description": self._descriptions[name],
                "input_schema": schema,
            }
            for name, schema in self._schemas.items()
        ]

    def validate(self, name: str, input: dict[str, Any]) -> list[str]:
        """Names of required fields missing from ``input``."""
        required = self._schemas.get(name, {}).get("required", [])
        return [field for field in required if field not in input]

    async def execute(self, name: str, input: dict[str, Any]) -> Any:
        """Run one tool call. Raises ExecutorFailure on any failure."""
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(name)

        missing = self.validate(name, input)
        if missing:
            raise ExecutorFailure(name, f"missing required input: {', '.join(missing)}")

        try:
            return await asyncio.wait_for(handler(**input), timeout=self._settings.tool_timeout)
        except TimeoutError:
            raise ExecutorFailure(
                name, f"timed out after {self._settings.tool_timeout:g}s"
            ) from None
        except ExecutorFailure:
            raise
        except TypeError as e:
            # Usually unexpected keyword arguments from the model
            raise ExecutorFailure(name, f"invalid input: {e}") from e
        except Exception as e:
            logger.exception("Tool %s failed", name)
            raise ExecutorFailure(name, str(e) or type(e).__name__) from e


# ---------------------------------------------------------------------------
# Remote MCP back end
# ---------------------------------------------------------------------------


class RemoteToolBackend:
    """One long-lived MCP session against ``settings.tool_server_url``.

    start() and close() must run in the same task (the app lifespan).
    """

    def __init__(self, settings: Settings) -> None:
        self._url = settings.tool_server_url
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._get_session_id: Callable[[], str | None] | None = None

    @property
    def session_id(self) -> str | None:
        return self._get_session_id() if self._get_session_id else None

    async def start(self) -> None:
        if not self._url:
            raise ValueError("tool_server_url is not configured")
        stack = AsyncExitStack()
        try:
            read, write, get_session_id = await stack.enter_async_context(
                streamablehttp_client(self._url)
            )
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        self._get_session_id = get_session_id
        logger.info("Connected to tool server %s (session %s)", self._url, self.session_id)

    async def close(self) -> None:
        if self._stack:
            await self._stack.aclose()
        self._stack = None
        self._session = None
        self._get_session_id = None

    async def list_tools(self) -> list[dict[str, Any]]:
        """Remote tools as Anthropic tool definitions."""
        result = await self._require_session().list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema,
            }
            for tool in result.tools
        ]

    async def call_tool(self, name: str, input: dict[str, Any]) -> str:
        """Call a remote tool and return its text content."""
        result = await self._require_session().call_tool(name, input)
        text = "\n".join(
            block.text for block in result.content if getattr(block, "type", "") == "text"
        )
        if result.isError:
            raise ExecutorFailure(name, text or "remote tool reported an error")
        return text

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ExecutorFailure("remote", "tool server session not started")
        return self._session


async def register_remote_tools(dispatcher: ToolDispatcher, backend: RemoteToolBackend) -> int:
    """Expose every remote tool through ``dispatcher``. Returns the count."""
    definitions = await backend.list_tools()
    for definition in definitions:
        name = definition["name"]

        async def handler(_name: str = name, **input: Any) -> str:
            return await backend.call_tool(_name, input)

        dispatcher.register(
            name, handler, definition["input_schema"], description=definition["description"]
        )
    logger.info("Registered %d remote tool(s)", len(definitions))
    return len(definitions)
