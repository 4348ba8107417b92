"""Tests for agents/tools.py -- tool registry and ToolExecutor.

Covers registry freezing and selection, argument validation, dispatch to
FUNCTION tools under timeout and retry, span recording and metrics.
"""

import asyncio
import time
from typing import Any

import pytest
from pydantic import BaseModel

from agents.resilience import BackoffPolicy
from agents.result import ErrorKind, ToolInputError, UpstreamUnavailableError
from agents.tools import (
    EXECUTE_CODE_TOOL,
    RUN_CODE_TASK_TOOL,
    SPAWN_SUBAGENTS_TOOL,
    ExecuteCodeInput,
    SpawnSubagentsInput,
    ToolCallRequest,
    ToolDefinition,
    ToolExecutor,
    ToolKind,
    ToolRegistry,
    build_default_registry,
    render_tool_value,
)
from config import settings
from events.tracing import SpanRecord, TraceRecorder
from metrics import MetricsCollector
from tests.conftest import FakeCodeRunner, RecordingSleep, make_execution_result

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _EchoInput(BaseModel):
    text: str


class _CollectingSink:
    def __init__(self) -> None:
        self.spans: list[SpanRecord] = []

    async def record_span(self, span: SpanRecord) -> None:
        self.spans.append(span)


def _echo_tool(invoke: Any = None, timeout_seconds: float | None = None) -> ToolDefinition:
    async def echo(args: _EchoInput, signal: asyncio.Event) -> str:
        return args.text.upper()

    return ToolDefinition(
        name="echo",
        description="Echo text back in upper case",
        input_model=_EchoInput,
        invoke=invoke or echo,
        timeout_seconds=timeout_seconds,
    )


def _make_executor(
    *definitions: ToolDefinition,
    sink: _CollectingSink | None = None,
    metrics: MetricsCollector | None = None,
    sleep: RecordingSleep | None = None,
    timeout_seconds: float = 1.0,
    max_attempts: int = 3,
) -> ToolExecutor:
    registry = ToolRegistry()
    for definition in definitions:
        registry.register(definition)
    registry.freeze()
    return ToolExecutor(
        registry,
        trace_recorder=TraceRecorder(sink, timeout_seconds=1.0) if sink else None,
        metrics_collector=metrics,
        timeout_seconds=timeout_seconds,
        max_attempts=max_attempts,
        backoff=BackoffPolicy(base_delay_seconds=0.01, jitter_ratio=0.0),
        sleep=sleep or RecordingSleep(),
    )


# =========================================================================
# Definitions and registry
# =========================================================================


class TestToolDefinition:
    """Definition invariants and schema rendering."""

    def test_function_requires_invoke(self) -> None:
        with pytest.raises(ValueError):
            ToolDefinition(name="x", description="x", input_model=_EchoInput)

    def test_dispatched_kinds_forbid_invoke(self) -> None:
        async def nope(args: Any, signal: asyncio.Event) -> None:
            return None

        with pytest.raises(ValueError):
            ToolDefinition(
                name="x",
                description="x",
                input_model=_EchoInput,
                kind=ToolKind.SUBAGENTS,
                invoke=nope,
            )

    def test_llm_schema_from_input_model(self) -> None:
        schema = _echo_tool().to_llm_schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "echo"
        assert schema["function"]["parameters"]["required"] == ["text"]


class TestToolRegistry:
    """Registration, freezing and selection."""

    def test_duplicate_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register(_echo_tool())
        with pytest.raises(ValueError):
            registry.register(_echo_tool())

    def test_frozen_rejects_register(self) -> None:
        registry = ToolRegistry().freeze()
        assert registry.frozen
        with pytest.raises(RuntimeError):
            registry.register(_echo_tool())

    def test_default_registry(self, fake_code_runner: FakeCodeRunner) -> None:
        registry = build_default_registry(fake_code_runner)  # type: ignore[arg-type]
        assert registry.frozen
        assert registry.names() == [EXECUTE_CODE_TOOL, SPAWN_SUBAGENTS_TOOL, RUN_CODE_TASK_TOOL]
        assert registry.get(EXECUTE_CODE_TOOL).kind == ToolKind.FUNCTION  # type: ignore[union-attr]
        assert registry.get(SPAWN_SUBAGENTS_TOOL).kind == ToolKind.SUBAGENTS  # type: ignore[union-attr]
        assert registry.get(RUN_CODE_TASK_TOOL).kind == ToolKind.CODE_TASK  # type: ignore[union-attr]

    def test_select_by_kind(self, fake_code_runner: FakeCodeRunner) -> None:
        registry = build_default_registry(fake_code_runner)  # type: ignore[arg-type]
        selected = registry.definitions_for_llm(kinds=[ToolKind.FUNCTION])
        assert [s["function"]["name"] for s in selected] == [EXECUTE_CODE_TOOL]

    def test_select_by_name_and_kind(self, fake_code_runner: FakeCodeRunner) -> None:
        registry = build_default_registry(fake_code_runner)  # type: ignore[arg-type]
        selected = registry.definitions_for_llm(
            names=[SPAWN_SUBAGENTS_TOOL, EXECUTE_CODE_TOOL],
            kinds=[ToolKind.FUNCTION],
        )
        assert [s["function"]["name"] for s in selected] == [EXECUTE_CODE_TOOL]


class TestToolInputs:
    """Built-in argument models."""

    def test_language_normalized(self) -> None:
        assert ExecuteCodeInput(code="echo hi", language="sh").language == "bash"

    def test_unknown_language_rejected(self) -> None:
        with pytest.raises(ValueError):
            ExecuteCodeInput(code="x", language="cobol")

    def test_subagent_count_limited(self) -> None:
        items = [{"role": "researcher", "task": f"t{i}"} for i in range(settings.max_subagents_per_call + 1)]
        with pytest.raises(ValueError):
            SpawnSubagentsInput(query="q", subagents=items)

    def test_at_least_one_subagent(self) -> None:
        with pytest.raises(ValueError):
            SpawnSubagentsInput(query="q", subagents=[])


# =========================================================================
# Executor
# =========================================================================


class TestToolExecutor:
    """execute() is total and classifies every outcome."""

    async def test_success(self) -> None:
        executor = _make_executor(_echo_tool())
        result = await executor.execute(ToolCallRequest("echo", {"text": "hi"}, "c1"))
        assert result.ok
        assert result.value == "HI"

    async def test_tool_without_return_value_succeeds(self) -> None:
        sent: list[str] = []

        async def notify(args: _EchoInput, signal: asyncio.Event) -> None:
            sent.append(args.text)

        sleep = RecordingSleep()
        executor = _make_executor(_echo_tool(notify), sleep=sleep)
        result = await executor.execute(ToolCallRequest("echo", {"text": "ping"}, "c1"))

        assert result.ok
        assert result.error is None
        assert render_tool_value(result.value) == "(no output)"
        assert sent == ["ping"]
        assert sleep.delays == []

    async def test_unknown_tool_is_unavailable_without_retry(self) -> None:
        sleep = RecordingSleep()
        executor = _make_executor(_echo_tool(), sleep=sleep)
        result = await executor.execute(ToolCallRequest("web_search", {"q": "x"}, "c1"))
        assert not result.ok
        assert result.error.kind == ErrorKind.TOOL_UNAVAILABLE
        assert result.error.retryable is False
        assert sleep.delays == []

    async def test_dispatched_kind_is_not_executable(self, fake_code_runner: FakeCodeRunner) -> None:
        registry = build_default_registry(fake_code_runner)  # type: ignore[arg-type]
        executor = ToolExecutor(registry, timeout_seconds=1.0)
        result = await executor.execute(ToolCallRequest(SPAWN_SUBAGENTS_TOOL, {}, "c1"))
        assert result.error.kind == ErrorKind.TOOL_UNAVAILABLE

    async def test_invalid_arguments(self) -> None:
        calls = 0

        async def invoke(args: _EchoInput, signal: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            return "x"

        executor = _make_executor(_echo_tool(invoke))
        result = await executor.execute(ToolCallRequest("echo", {"txt": "typo"}, "c1"))
        assert result.error.kind == ErrorKind.TOOL_INVALID_INPUT
        assert "text" in result.error.message
        assert calls == 0

    async def test_retries_transient_failures(self) -> None:
        calls = 0

        async def flaky(args: _EchoInput, signal: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise UpstreamUnavailableError("503")
            return "recovered"

        sleep = RecordingSleep()
        executor = _make_executor(_echo_tool(flaky), sleep=sleep)
        result = await executor.execute(ToolCallRequest("echo", {"text": "a"}, "c1"))
        assert result.ok
        assert result.value == "recovered"
        assert calls == 3
        assert len(sleep.delays) == 2

    async def test_permanent_fault_not_retried(self) -> None:
        calls = 0

        async def picky(args: _EchoInput, signal: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            raise ToolInputError("text must be a city")

        executor = _make_executor(_echo_tool(picky))
        result = await executor.execute(ToolCallRequest("echo", {"text": "a"}, "c1"))
        assert result.error.kind == ErrorKind.TOOL_INVALID_INPUT
        assert calls == 1

    async def test_timeout_is_bounded(self) -> None:
        never = asyncio.Event()

        async def hangs(args: _EchoInput, signal: asyncio.Event) -> str:
            await never.wait()
            return "never"

        executor = _make_executor(_echo_tool(hangs, timeout_seconds=0.05), max_attempts=1)
        started = time.monotonic()
        result = await executor.execute(ToolCallRequest("echo", {"text": "a"}, "c1"))
        assert result.error.kind == ErrorKind.TIMEOUT
        assert time.monotonic() - started < 0.5

    async def test_enclosing_cancel_stops_retries(self) -> None:
        calls = 0

        async def slow(args: _EchoInput, signal: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(1.0)
            return "late"

        cancel = asyncio.Event()
        cancel.set()
        executor = _make_executor(_echo_tool(slow), max_attempts=3)
        result = await executor.execute(
            ToolCallRequest("echo", {"text": "a"}, "c1"),
            cancel_event=cancel,
        )
        assert result.error.kind == ErrorKind.TIMEOUT
        assert result.error.retryable is False
        assert calls <= 1

    async def test_records_one_span_per_call(self) -> None:
        sink = _CollectingSink()
        executor = _make_executor(_echo_tool(), sink=sink)
        await executor.execute(
            ToolCallRequest("echo", {"text": "hi", "api_key": "sk"}, "c7"),
            trace_id="trace_1",
            agent_id="orchestrator",
        )
        await executor.execute(ToolCallRequest("missing", {}, "c8"), trace_id="trace_1")
        await executor.trace_recorder.drain()  # type: ignore[union-attr]

        assert [s.name for s in sink.spans] == ["tool.echo", "tool.missing"]
        ok_span, failed_span = sink.spans
        assert ok_span.success is True
        assert ok_span.input == {"text": "hi", "api_key": "[REDACTED]"}
        assert ok_span.metadata["call_id"] == "c7"
        assert ok_span.metadata["attempts"] == 1
        assert ok_span.metadata["agent_id"] == "orchestrator"
        assert failed_span.success is False
        assert failed_span.metadata["error_kind"] == "tool_unavailable"

    async def test_metrics_counted(self) -> None:
        metrics = MetricsCollector()
        metrics.start("trace_1")
        executor = _make_executor(_echo_tool(), metrics=metrics)
        await executor.execute(ToolCallRequest("echo", {"text": "a"}, "c1"), trace_id="trace_1")
        await executor.execute(ToolCallRequest("nope", {}, "c2"), trace_id="trace_1")
        data = metrics.get("trace_1")
        assert data is not None
        assert data.tool_calls == 2
        assert data.tool_failures == 1


class TestExecuteCodeTool:
    """The sandbox tool wraps the code runner."""

    async def test_runs_code(self) -> None:
        runner = FakeCodeRunner([make_execution_result(stdout="4\n")])
        executor = ToolExecutor(build_default_registry(runner), timeout_seconds=1.0)  # type: ignore[arg-type]
        result = await executor.execute(
            ToolCallRequest(EXECUTE_CODE_TOOL, {"code": "print(2+2)", "language": "py"}, "c1"),
        )
        assert result.ok
        assert result.value.stdout == "4\n"
        assert runner.runs[0]["language"] == "python"
        assert runner.runs[0]["timeout_ms"] == int(settings.sandbox_timeout_seconds * 1000)

    async def test_result_rendered_for_llm(self) -> None:
        text = render_tool_value(make_execution_result(stdout="4\n"))
        assert "4" in text
