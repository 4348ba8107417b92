"""Fire-and-forget span recording for turn traces.

Spans describe one unit of work inside a turn (a tool invocation, a sub-agent
run, a synthesis). The recorder hands each span to a sink in a background
task: a slow or failing sink is logged and dropped, it never blocks or fails
the work being traced.

Usage:
    >>> recorder = TraceRecorder(EventBusTraceSink(get_event_bus()))
    >>> recorder.record(SpanRecord(trace_id="t1", name="tool.execute_code", ...))
    >>> await recorder.drain()  # on shutdown
"""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import structlog

from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType

logger = structlog.get_logger()

SENSITIVE_KEY_MARKERS = ("password", "token", "secret", "key", "auth", "credential", "api_key")
MAX_ARGUMENT_CHARS = 200
TRUNCATION_SUFFIX = "...[truncated]"


def sanitize_arguments(value: Any) -> Any:
    """Return a copy of span input safe to record.

    Values under sensitive-looking keys are replaced with ``[REDACTED]`` and
    long strings are cut to ``MAX_ARGUMENT_CHARS``. Nested dicts and lists
    are sanitized recursively.
    """
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if any(marker in lowered for marker in SENSITIVE_KEY_MARKERS):
                cleaned[key] = "[REDACTED]"
            else:
                cleaned[key] = sanitize_arguments(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_arguments(item) for item in value]
    if isinstance(value, str) and len(value) > MAX_ARGUMENT_CHARS:
        return value[:MAX_ARGUMENT_CHARS] + TRUNCATION_SUFFIX
    return value


@dataclass(frozen=True)
class SpanRecord:
    """One traced unit of work.

    Attributes:
        trace_id: Turn the span belongs to.
        name: Dotted span name, e.g. ``tool.execute_code``.
        input: Sanitized input arguments.
        output: Short output summary.
        duration_ms: Wall-clock duration.
        success: Whether the work succeeded.
        metadata: Extra fields (error kind/message, attempts, agent id).
    """

    trace_id: str
    name: str
    input: dict[str, Any]
    output: Any
    duration_ms: int
    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TraceSink(Protocol):
    """Destination for recorded spans."""

    async def record_span(self, span: SpanRecord) -> None: ...


class EventBusTraceSink:
    """Publishes spans on the event bus as SPAN_RECORDED events."""

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus

    async def record_span(self, span: SpanRecord) -> None:
        data = span.to_dict()
        trace_id = data.pop("trace_id")
        await self.event_bus.publish(AgentEvent(
            type=EventType.SPAN_RECORDED,
            trace_id=trace_id,
            agent_id=span.metadata.get("agent_id"),
            data=data,
        ))


class LoggingTraceSink:
    """Writes spans as structured log lines."""

    async def record_span(self, span: SpanRecord) -> None:
        logger.info(
            "trace_span",
            trace_id=span.trace_id,
            span=span.name,
            duration_ms=span.duration_ms,
            success=span.success,
            **{k: v for k, v in span.metadata.items() if k != "trace_id"},
        )


class TraceRecorder:
    """Schedules span delivery without making the caller wait for it.

    Attributes:
        sink: Where spans are delivered, or None to drop them silently.
        timeout_seconds: Deadline for a single delivery.
    """

    def __init__(self, sink: TraceSink | None, timeout_seconds: float | None = None) -> None:
        self.sink = sink
        self.timeout_seconds = timeout_seconds or settings.trace_sink_timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def record(self, span: SpanRecord) -> None:
        """Queue a span for delivery. Never raises because of the sink."""
        if self.sink is None:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(span))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, span: SpanRecord) -> None:
        assert self.sink is not None
        try:
            await asyncio.wait_for(self.sink.record_span(span), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "trace_span_dropped",
                trace_id=span.trace_id,
                span=span.name,
                reason="timeout",
            )
        except Exception as e:
            logger.warning(
                "trace_span_dropped",
                trace_id=span.trace_id,
                span=span.name,
                reason=str(e),
            )

    async def drain(self) -> None:
        """Wait for every queued delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
