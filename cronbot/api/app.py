"""FastAPI application factory."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from starlette.requests import Request
from starlette.responses import JSONResponse

from cronbot import __version__
from cronbot.api.routes import router as core_router
from cronbot.core.config.loader import load_config
from cronbot.core.errors import ConfigurationError, NotFoundError, ValidationError
from cronbot.core.logging import setup_logging
from cronbot.core.services import build_services, hydrate_permissions


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: Config → stores → executor → scheduler. Shutdown: stop cron jobs."""
    config = load_config()
    setup_logging(config.log_level)

    services = build_services(config)
    hydrate_permissions(services.agent_store, services.tool_groups)

    scheduler = services.scheduler
    if config.scheduler.enabled:
        await scheduler.initialize()
    else:
        logger.warning("Scheduler disabled, cron jobs will not fire")

    app.state.config = config
    app.state.agent_store = services.agent_store
    app.state.run_history = services.run_history
    app.state.tool_groups = services.tool_groups
    app.state.scheduler = scheduler
    app.state.trigger_router = services.trigger_router
    app.state.background_tasks = set()

    logger.info(f"cronbot API started — model: {config.engine.model}")
    yield

    scheduler.shutdown()
    for task in list(app.state.background_tasks):
        task.cancel()
    await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
    logger.info("cronbot API shutting down")


# ── Error mapping ────────────────────────────────────────────


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="cronbot API",
        description="Scheduled autonomous agent jobs",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _error_handler(422))
    app.add_exception_handler(NotFoundError, _error_handler(404))
    app.add_exception_handler(ConfigurationError, _error_handler(503))

    app.include_router(core_router)
    return app


app = create_app()
