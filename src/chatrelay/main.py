"""chatrelay — FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from chatrelay.channels.registry import ConnectorRegistry
from chatrelay.config import get_config
from chatrelay.db.engine import Database
from chatrelay.logging import setup_logging
from chatrelay.pipeline import build_pipeline
from chatrelay.providers.selector import ProviderSelector
from chatrelay.tools.base import ToolRegistry
from chatrelay.tools.clock import DateTimeTool
from chatrelay.tools.web_search import WebSearchTool

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)

    logger.info("chatrelay.starting", version="1.0.0")

    db = Database(
        config.data_dir,
        journal_mode=config.db_journal_mode,
        busy_timeout_ms=config.db_busy_timeout_ms,
    )
    await db.initialize()

    # Built-in tools
    tools = ToolRegistry()
    if config.tools.web_search_enabled:
        tools.register(WebSearchTool(config.tools))
    tools.register(DateTimeTool())

    selector = ProviderSelector(db, tools, config.providers)
    await selector.check_credentials()

    pipeline = build_pipeline(db, selector, config.pipeline)
    connectors = ConnectorRegistry(db, pipeline, config.registry, config.channels)
    await connectors.start()

    app.state.config = config
    app.state.db = db
    app.state.tools = tools
    app.state.selector = selector
    app.state.pipeline = pipeline
    app.state.connectors = connectors

    logger.info(
        "chatrelay.ready",
        tools=[t["name"] for t in tools.list_tools()],
        stages=pipeline.stage_names,
        connectors=len(connectors.connectors),
    )

    yield

    # Shutdown
    logger.info("chatrelay.shutting_down")
    await connectors.shutdown()
    await db.close()
    logger.info("chatrelay.stopped")


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="chatrelay",
        version="1.0.0",
        description="Multi-channel chat relay with tool-calling AI providers.",
        lifespan=lifespan,
    )

    from chatrelay.api.routes.channels import router as channels_router
    from chatrelay.api.routes.health import router as health_router
    from chatrelay.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router, tags=["health"])
    app.include_router(channels_router, tags=["channels"])
    app.include_router(webhooks_router, tags=["webhooks"])

    return app


app = create_app()


def main() -> None:
    """Run the server directly."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)
    uvicorn.run(
        "chatrelay.main:app",
        host=config.host,
        port=config.port,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
