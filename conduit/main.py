"""Conduit entry point.

Wiring order:
  Settings -> EventBus -> ModelClient -> ToolDispatcher (+ remote tools)
  -> Assistant -> App -> Uvicorn

Anything holding a connection is opened inside the Starlette lifespan,
so it lives on the event loop uvicorn runs.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from conduit.api.assistant import Assistant
from conduit.api.provider import ModelClient
from conduit.api.rest import create_app
from conduit.api.tools import RemoteToolBackend, ToolDispatcher, register_remote_tools
from conduit.config import Settings
from conduit.events import ALL_EVENTS, Event, EventBus
from conduit.store import MemoryStore

logger = logging.getLogger(__name__)


async def log_event(event: Event) -> None:
    logger.debug("[%s] %s %s", event.session_id or "-", event.type, event.data)


def build_app(settings: Settings) -> Starlette:
    """Wire components and return the Starlette app.

    Network resources (provider client, remote tool session, event bus)
    are opened in the lifespan and closed in reverse order.
    """
    bus = EventBus()
    bus.subscribe(ALL_EVENTS, log_event)
    provider = ModelClient(settings)
    dispatcher = ToolDispatcher(settings)
    store = MemoryStore(max_entries=settings.max_sessions)
    assistant = Assistant(provider, dispatcher, settings, store, bus=bus)
    backend = RemoteToolBackend(settings) if settings.tool_server_url else None

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await bus.start()
        await provider.start()
        if backend is not None:
            await backend.start()
            await register_remote_tools(dispatcher, backend)

        app.state.assistant = assistant
        logger.info(
            "%s started: model=%s, max_phases=%d, tools=%d",
            settings.assistant_name,
            settings.model,
            settings.max_phases,
            len(dispatcher.tool_definitions()),
        )
        try:
            yield
        finally:
            logger.info("Shutting down %s...", settings.assistant_name)
            if backend is not None:
                await backend.close()
            await provider.close()
            await bus.stop()
            logger.info("Shutdown complete.")

    return create_app(assistant, dispatcher, settings, lifespan=lifespan)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting %s", settings.assistant_name)
    logger.info("Model: %s (summaries: %s)", settings.model, settings.summary_model)
    logger.info("Tool server: %s", settings.tool_server_url or "disabled")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
