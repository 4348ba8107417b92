"""Tests for events/tracing.py -- span sanitization and fire-and-forget delivery."""

import asyncio
import time

from events.bus import EventBus
from events.tracing import (
    MAX_ARGUMENT_CHARS,
    TRUNCATION_SUFFIX,
    EventBusTraceSink,
    LoggingTraceSink,
    SpanRecord,
    TraceRecorder,
    sanitize_arguments,
)
from events.types import EventType


def _span(name: str = "tool.execute_code", trace_id: str = "trace_1", success: bool = True) -> SpanRecord:
    return SpanRecord(
        trace_id=trace_id,
        name=name,
        input={"code": "print(1)"},
        output="1",
        duration_ms=5,
        success=success,
        metadata={"attempts": 1},
    )


class _CollectingSink:
    def __init__(self) -> None:
        self.spans: list[SpanRecord] = []

    async def record_span(self, span: SpanRecord) -> None:
        self.spans.append(span)


class _FailingSink:
    async def record_span(self, span: SpanRecord) -> None:
        raise ConnectionError("collector down")


class _HangingSink:
    async def record_span(self, span: SpanRecord) -> None:
        await asyncio.sleep(10)


# =========================================================================
# Sanitization
# =========================================================================


class TestSanitizeArguments:
    """Sensitive keys are redacted and long strings truncated."""

    def test_redacts_sensitive_keys(self) -> None:
        cleaned = sanitize_arguments({
            "query": "weather",
            "api_key": "sk-123",
            "Authorization": "Bearer x",
            "db_password": "hunter2",
            "refresh_token": "abc",
        })
        assert cleaned["query"] == "weather"
        assert cleaned["api_key"] == "[REDACTED]"
        assert cleaned["Authorization"] == "[REDACTED]"
        assert cleaned["db_password"] == "[REDACTED]"
        assert cleaned["refresh_token"] == "[REDACTED]"

    def test_truncates_long_strings(self) -> None:
        cleaned = sanitize_arguments({"code": "x" * 500})
        assert cleaned["code"] == "x" * MAX_ARGUMENT_CHARS + TRUNCATION_SUFFIX

    def test_short_strings_untouched(self) -> None:
        assert sanitize_arguments({"code": "print(1)"}) == {"code": "print(1)"}

    def test_nested_structures(self) -> None:
        cleaned = sanitize_arguments({
            "subagents": [{"role": "researcher", "secret": "s"}],
            "options": {"auth_header": "h", "depth": 2},
        })
        assert cleaned["subagents"][0] == {"role": "researcher", "secret": "[REDACTED]"}
        assert cleaned["options"] == {"auth_header": "[REDACTED]", "depth": 2}

    def test_does_not_mutate_input(self) -> None:
        original = {"token": "t", "nested": {"password": "p"}}
        sanitize_arguments(original)
        assert original == {"token": "t", "nested": {"password": "p"}}


# =========================================================================
# Recorder
# =========================================================================


class TestTraceRecorder:
    """Delivery never blocks or fails the caller."""

    async def test_delivers_span(self) -> None:
        sink = _CollectingSink()
        recorder = TraceRecorder(sink, timeout_seconds=1.0)
        recorder.record(_span())
        await recorder.drain()
        assert [s.name for s in sink.spans] == ["tool.execute_code"]
        assert recorder.pending == 0

    async def test_record_returns_immediately_with_slow_sink(self) -> None:
        recorder = TraceRecorder(_HangingSink(), timeout_seconds=0.05)
        started = time.monotonic()
        recorder.record(_span())
        assert time.monotonic() - started < 0.01
        assert recorder.pending == 1
        await recorder.drain()
        assert recorder.pending == 0

    async def test_failing_sink_is_contained(self) -> None:
        recorder = TraceRecorder(_FailingSink(), timeout_seconds=1.0)
        recorder.record(_span())
        recorder.record(_span(name="subagent.researcher"))
        await recorder.drain()
        assert recorder.pending == 0

    async def test_no_sink_drops_silently(self) -> None:
        recorder = TraceRecorder(None)
        recorder.record(_span())
        assert recorder.pending == 0
        await recorder.drain()


# =========================================================================
# Sinks
# =========================================================================


class TestSinks:
    """Concrete sink behavior."""

    async def test_event_bus_sink_publishes_span(self, event_bus: EventBus) -> None:
        sink = EventBusTraceSink(event_bus)
        await sink.record_span(_span(trace_id="trace_9", success=False))

        history = event_bus.get_event_history("trace_9")
        assert len(history) == 1
        event = history[0]
        assert event.type == EventType.SPAN_RECORDED
        assert event.data["name"] == "tool.execute_code"
        assert event.data["success"] is False
        assert "trace_id" not in event.data

    async def test_logging_sink_accepts_span(self) -> None:
        await LoggingTraceSink().record_span(_span())
