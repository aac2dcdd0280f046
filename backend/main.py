"""FastAPI application entry point for the agent proxy.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uvicorn main:app --port 3456
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from admission import get_admission_controller
from agents.supervisor import verify_agent
from api.errors import configure_exception_handlers
from api.routes import router, set_orchestrator
from config import configure_logging, settings
from metrics import UsageStats
from models.database import ConversationStore
from orchestrator import Orchestrator

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Wires the continuity store, admission controller, usage counters and
    orchestrator together, and runs the conversation eviction loop.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        agent_command=settings.agent_command,
        max_concurrent=settings.max_concurrent,
    )

    version = await verify_agent()
    if version.ok:
        logger.info("agent_available", version=version.version)
    else:
        # Keep serving: /health reports the agent as unavailable
        logger.warning("agent_unavailable", error=version.error)

    store = ConversationStore(settings.database_path)
    await store.load()

    orchestrator = Orchestrator(
        store,
        get_admission_controller(),
        UsageStats(window=settings.response_time_window),
    )
    set_orchestrator(orchestrator)
    app.state.orchestrator = orchestrator

    eviction_task = await orchestrator.start_eviction_loop(
        ttl_seconds=settings.conversation_ttl_hours * 3600,
        interval_seconds=settings.conversation_cleanup_interval_minutes * 60,
    )
    app.state.eviction_task = eviction_task

    logger.info("application_started", conversations=len(store))

    yield

    # Shutdown
    logger.info("application_shutting_down")

    eviction_task = app.state.eviction_task
    if eviction_task and not eviction_task.done():
        eviction_task.cancel()
        with contextlib.suppress(Exception):
            await eviction_task

    await app.state.orchestrator.cleanup_all()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agent CLI OpenAI Proxy",
    description="OpenAI-compatible chat completions served by a local coding-agent CLI.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
)

configure_exception_handlers(app)

app.include_router(router, tags=["completions"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Agent CLI OpenAI Proxy",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
    )
