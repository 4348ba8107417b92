"""FastAPI application entry point for the orchestration backend.

This module initializes the FastAPI application with middleware, routers and
the agent runtime.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.loop import AgentRuntime
from api.routes import router, set_runtime
from config import configure_logging, settings
from events import get_event_bus
from sandbox import DockerCodeRunner

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the process-wide agent runtime (tool registry, executor, sub-agent
    coordinator, pipelines) and drains pending trace spans on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        orchestrator_model=settings.orchestrator_model,
    )

    code_runner = DockerCodeRunner()
    runtime = AgentRuntime.create(code_runner, event_bus=get_event_bus())
    set_runtime(runtime)
    app.state.runtime = runtime

    logger.info(
        "application_started",
        tools=runtime.registry.names(),
        docker_available=code_runner.is_docker_available(),
    )

    yield

    logger.info("application_shutting_down")
    if runtime.trace_recorder is not None:
        await runtime.trace_recorder.drain()
    set_runtime(None)
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Chat Assistant Orchestrator",
    description="Agent loop with tool dispatch, parallel sub-agents and sandboxed code tasks.",
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
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Trace-Id"],
)

app.include_router(router, tags=["turns"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Chat Assistant Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
