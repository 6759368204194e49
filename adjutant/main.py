"""Adjutant entry point.

Wiring order: Settings -> EventBus -> AnthropicGateway -> tools -> SessionRegistry -> Starlette app.
Components are constructed eagerly; the Starlette lifespan only starts
and stops the pieces that hold loop-bound resources (bus task, HTTP clients).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx
import uvicorn
from starlette.applications import Starlette

from adjutant.api.builtin_tools import register_builtin_tools
from adjutant.api.gateway import AnthropicGateway
from adjutant.api.plan_tools import register_plan_tools
from adjutant.api.rest import create_app
from adjutant.api.sessions import SessionRegistry
from adjutant.api.tools import ToolExecutor, ToolRegistry
from adjutant.api.web_tools import register_web_tools
from adjutant.config import Settings
from adjutant.events import EventBus

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def create_registry(settings: Settings, web_http: httpx.AsyncClient) -> ToolRegistry:
    """Register every built-in tool family."""
    registry = ToolRegistry()
    register_builtin_tools(registry)
    register_plan_tools(registry)
    register_web_tools(registry, settings, web_http)
    return registry


@dataclass
class Components:
    """Everything one server process shares across sessions."""

    settings: Settings
    bus: EventBus
    gateway: AnthropicGateway
    web_http: httpx.AsyncClient
    registry: ToolRegistry
    sessions: SessionRegistry

    async def start(self) -> None:
        Path(self.settings.workspace_dir).mkdir(parents=True, exist_ok=True)
        await self.bus.start()
        await self.gateway.start()
        logger.info(
            "Adjutant ready: %d tools, workspace=%s, max_tool_loops=%d",
            len(self.registry),
            self.settings.workspace_dir,
            self.settings.max_tool_loops,
        )

    async def aclose(self) -> None:
        """Abort running sessions first, then release clients and drain the bus."""
        logger.info("Shutting down Adjutant (%d sessions)", len(self.sessions))
        self.sessions.close_all()
        await self.web_http.aclose()
        await self.gateway.close()
        await self.bus.stop()
        logger.info("Adjutant shutdown complete")


def create_components(settings: Settings) -> Components:
    bus = EventBus()
    gateway = AnthropicGateway(settings)
    # Separate client for web tools so gateway credentials never reach fetched URLs
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    registry = create_registry(settings, web_http)
    sessions = SessionRegistry(settings, gateway, ToolExecutor(registry, settings), bus=bus)
    return Components(
        settings=settings,
        bus=bus,
        gateway=gateway,
        web_http=web_http,
        registry=registry,
        sessions=sessions,
    )


def build_app(settings: Settings, components: Components | None = None) -> Starlette:
    """Build the ASGI app around *components* (created from *settings* if omitted)."""
    parts = components or create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await parts.start()
        app.state.components = parts
        try:
            yield
        finally:
            await parts.aclose()

    return create_app(parts.sessions, parts.bus, settings, lifespan=lifespan)


def main() -> None:
    """Console entry point."""
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    logger.info(
        "Starting Adjutant on %s:%d (model %s, workspace %s)",
        settings.host, settings.port, settings.model, settings.workspace_dir,
    )
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- model calls will fail")
    if not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY is not set -- web_search will report itself unavailable")

    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
