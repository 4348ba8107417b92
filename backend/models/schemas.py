"""Pydantic schemas for API request/response models.

All models use Pydantic v2. Turn increments themselves are streamed as
``events.types.TurnIncrement`` JSON lines and are not redefined here.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class ConversationMessage(BaseModel):
    """One prior message of the conversation, as stored by the caller."""

    role: Literal["system", "user", "assistant"] = Field(
        description="Author of the message",
    )
    content: str = Field(
        default="",
        max_length=50000,
        description="Message text",
    )


class TurnRequest(BaseModel):
    """Request body for running one turn."""

    message: str = Field(
        min_length=1,
        max_length=20000,
        description="The user's new message",
        examples=["What is the compound interest on $1,000 at 5% over 10 years?"],
    )
    conversation: list[ConversationMessage] = Field(
        default_factory=list,
        description="Earlier messages of the thread, oldest first",
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller context (channel, user name, ...) visible to the assistant",
    )
    trace_id: str | None = Field(
        default=None,
        pattern=r"^[A-Za-z0-9_\-]{1,64}$",
        description="Optional caller-chosen trace id",
    )


class AdmissionStatus(BaseModel):
    """Occupancy of the process-wide sub-agent admission gate."""

    capacity: int
    in_flight: int
    waiting: int
    peak_in_flight: int


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "degraded"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    admission: AdmissionStatus | None = Field(
        default=None,
        description="Sub-agent admission gate occupancy",
    )
    tools: list[str] = Field(
        default_factory=list,
        description="Registered tool names",
    )


class SpanResponse(BaseModel):
    """One recorded trace span."""

    name: str
    timestamp: float
    success: bool
    duration_ms: int
    input: Any = None
    output: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TraceResponse(BaseModel):
    """All spans recorded for one turn, in recording order."""

    trace_id: str
    spans: list[SpanResponse]
    event_count: int = Field(description="Total events recorded for the trace")
