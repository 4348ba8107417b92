"""Event system for turn telemetry and streamed output.

This package provides the event infrastructure shared by the agent loop and
its observers. Telemetry is published on an async pub/sub bus keyed by trace
id; the output of a turn is a sequence of ``TurnIncrement`` objects.

Key Components:
    - EventType: Enum of all telemetry event types
    - AgentEvent: Pydantic model for telemetry events
    - EventBus: Async pub/sub implementation with bounded trace history
    - TraceRecorder: Fire-and-forget span recording over a TraceSink
    - TurnIncrement / TurnOutcome: Streamed turn output and its terminal result

Usage:
    >>> from events import EventType, AgentEvent, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("trace_123")
    >>> await bus.publish(AgentEvent(
    ...     type=EventType.AGENT_SPAWNED,
    ...     trace_id="trace_123",
    ...     data={"role": "researcher"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.tracing import (
    EventBusTraceSink,
    LoggingTraceSink,
    SpanRecord,
    TraceRecorder,
    TraceSink,
    sanitize_arguments,
)
from events.types import (
    AgentEvent,
    EventType,
    IncrementType,
    LLMMetrics,
    TurnIncrement,
    TurnOutcome,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    "IncrementType",
    "TurnIncrement",
    "TurnOutcome",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
    # Tracing
    "SpanRecord",
    "TraceSink",
    "TraceRecorder",
    "EventBusTraceSink",
    "LoggingTraceSink",
    "sanitize_arguments",
]
