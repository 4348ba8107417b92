"""HTTP API routes for the orchestration backend.

This module defines the turn endpoint (NDJSON stream of turn increments), the
trace lookup used to inspect a finished turn, and the health check.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status
from fastapi.responses import StreamingResponse

from events import EventType, get_event_bus
from models.schemas import (
    AdmissionStatus,
    HealthResponse,
    SpanResponse,
    TraceResponse,
    TurnRequest,
)

if TYPE_CHECKING:
    from agents.loop import AgentRuntime

logger = structlog.get_logger(__name__)

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"

# Runtime dependency (set during application startup)
_runtime: AgentRuntime | None = None


def set_runtime(runtime: AgentRuntime | None) -> None:
    """Set the agent runtime used by the routes.

    This should be called during application startup to inject the runtime.

    Args:
        runtime: The AgentRuntime instance (None clears it).
    """
    global _runtime
    _runtime = runtime
    logger.info("runtime_configured", configured=runtime is not None)


def get_runtime() -> AgentRuntime:
    """Get the agent runtime.

    Raises:
        RuntimeError: If the runtime has not been configured.
    """
    if _runtime is None:
        logger.error("runtime_not_configured")
        raise RuntimeError("AgentRuntime not configured. Call set_runtime() during startup.")
    return _runtime


@router.post(
    "/turns",
    summary="Run one turn",
    description=(
        "Run one assistant turn and stream its increments as newline-delimited "
        "JSON. The last line is the terminal `done` increment."
    ),
    response_class=StreamingResponse,
)
async def run_turn(request: TurnRequest) -> StreamingResponse:
    """Start a turn and stream it back.

    Raises:
        HTTPException: 503 if the runtime is not ready, 409 if the requested
            trace id already has a turn in progress.
    """
    try:
        runtime = get_runtime()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        ) from e

    if request.trace_id and runtime.is_trace_active(request.trace_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Trace {request.trace_id} already has a turn in progress",
        )

    loop = runtime.new_loop(trace_id=request.trace_id)
    increments = loop.run_turn(
        [m.model_dump() for m in request.conversation],
        request.message,
        request.context,
    )
    logger.info(
        "turn_requested",
        trace_id=loop.trace_id,
        message_length=len(request.message),
        history_messages=len(request.conversation),
    )

    async def body() -> AsyncIterator[str]:
        try:
            async for increment in increments:
                yield increment.model_dump_json() + "\n"
        finally:
            # Client disconnects land here; closing stops the turn's work.
            await increments.aclose()

    return StreamingResponse(
        body(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Trace-Id": loop.trace_id},
    )


@router.get(
    "/traces/{trace_id}",
    response_model=TraceResponse,
    summary="Get trace spans",
    description="Spans recorded for a turn, in recording order.",
)
async def get_trace(
    trace_id: Annotated[str, Path(description="Trace id returned in X-Trace-Id")],
) -> TraceResponse:
    """Return the spans of a turn from the event bus history.

    Raises:
        HTTPException: 404 if no events were recorded for the trace.
    """
    event_bus = _runtime.event_bus if _runtime and _runtime.event_bus else get_event_bus()
    events = event_bus.get_event_history(trace_id)
    if not events:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Trace {trace_id} not found",
        )

    spans = [
        SpanResponse(timestamp=event.timestamp, **event.data)
        for event in events
        if event.type == EventType.SPAN_RECORDED
    ]
    return TraceResponse(trace_id=trace_id, spans=spans, event_count=len(events))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and admission gate status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns:
        HealthResponse with status, Docker availability, gate occupancy and
        registered tools.
    """
    docker_available = False
    admission: AdmissionStatus | None = None
    tools: list[str] = []

    try:
        runtime = get_runtime()
        if runtime.code_runner is not None:
            docker_available = runtime.code_runner.is_docker_available()
        admission = AdmissionStatus(**runtime.coordinator.gate.get_status())
        tools = runtime.registry.names()
    except RuntimeError:
        # Runtime not configured yet (e.g., during startup)
        logger.debug("health_check_runtime_missing")

    overall_status = "healthy" if docker_available else "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        docker_available=docker_available,
        admission=admission,
        tools=tools,
    )
