"""Tool definitions, registry and the resilient ToolExecutor.

Every tool the reasoning engine can call is a ``ToolDefinition`` in a
``ToolRegistry`` that is populated once at startup and frozen. Definitions
are tagged with a ``ToolKind``: ``FUNCTION`` tools carry their own
implementation and run through the ``ToolExecutor``; ``SUBAGENTS`` and
``CODE_TASK`` tools are dispatched by the agent loop to the sub-agent
coordinator and the code task pipeline.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from agents.resilience import BackoffPolicy, with_retry, with_timeout
from agents.result import (
    ErrorInfo,
    ErrorKind,
    Result,
    summarize_validation_error,
)
from config import settings
from events.tracing import SpanRecord, TraceRecorder, sanitize_arguments
from sandbox.security import SUPPORTED_LANGUAGES, normalize_language

if TYPE_CHECKING:
    from metrics import MetricsCollector
    from sandbox.docker_sandbox import DockerCodeRunner

logger = structlog.get_logger()

ToolInvoke = Callable[[Any, asyncio.Event], Awaitable[Any]]

# Keep span output summaries small.
MAX_SPAN_OUTPUT_CHARS = 500


class ToolKind(StrEnum):
    """How the agent loop dispatches a tool call."""

    FUNCTION = "function"
    SUBAGENTS = "subagents"
    CODE_TASK = "code_task"


@dataclass(frozen=True)
class ToolDefinition:
    """A named capability exposed to the reasoning engine.

    Attributes:
        name: Unique tool name.
        description: Description shown to the model.
        input_model: Pydantic model the arguments are validated against.
        kind: Dispatch tag.
        invoke: Implementation for FUNCTION tools: ``(args, signal) -> value``.
        timeout_seconds: Per-attempt deadline; None uses the executor default.
    """

    name: str
    description: str
    input_model: type[BaseModel]
    kind: ToolKind = ToolKind.FUNCTION
    invoke: ToolInvoke | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.kind == ToolKind.FUNCTION and self.invoke is None:
            raise ValueError(f"Function tool '{self.name}' needs an invoke implementation")
        if self.kind != ToolKind.FUNCTION and self.invoke is not None:
            raise ValueError(f"{self.kind.value} tool '{self.name}' is dispatched by the agent loop")

    def to_llm_schema(self) -> dict[str, Any]:
        """Tool definition formatted for LLM function calling."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }

    def validate(self, arguments: dict[str, Any]) -> BaseModel:
        """Validate raw arguments. Raises pydantic ValidationError."""
        return self.input_model.model_validate(arguments)


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool call requested by the reasoning engine."""

    tool_name: str
    arguments: dict[str, Any]
    call_id: str


class ToolRegistry:
    """Name-to-definition mapping, read-only once frozen."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._frozen = False

    def register(self, definition: ToolDefinition) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")
        if definition.name in self._tools:
            raise ValueError(f"Tool '{definition.name}' is already registered")
        self._tools[definition.name] = definition

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        logger.info("tool_registry_frozen", tools=self.names())
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def definitions_for_llm(
        self,
        names: Iterable[str] | None = None,
        kinds: Iterable[ToolKind] | None = None,
    ) -> list[dict[str, Any]]:
        """Select tool schemas by name and/or kind, in registration order."""
        wanted_names = set(names) if names is not None else None
        wanted_kinds = set(kinds) if kinds is not None else None
        return [
            definition.to_llm_schema()
            for definition in self._tools.values()
            if (wanted_names is None or definition.name in wanted_names)
            and (wanted_kinds is None or definition.kind in wanted_kinds)
        ]


def render_tool_value(value: Any) -> str:
    """Render a tool's return value as text for the reasoning engine."""
    to_llm_text = getattr(value, "to_llm_text", None)
    if callable(to_llm_text):
        return str(to_llm_text())
    if isinstance(value, str):
        return value or "(no output)"
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def _summarize_for_span(value: Any) -> str:
    text = render_tool_value(value)
    if len(text) > MAX_SPAN_OUTPUT_CHARS:
        return text[:MAX_SPAN_OUTPUT_CHARS] + "...[truncated]"
    return text


class ToolExecutor:
    """Runs FUNCTION tools under a per-attempt timeout and a retry policy.

    ``execute()`` is total: it always returns a Result and records exactly one
    trace span per call, whatever the outcome. The executor keeps no state
    between calls.

    Attributes:
        registry: Frozen tool registry.
        trace_recorder: Span recorder (fire-and-forget).
        metrics_collector: Optional per-turn counters.
        timeout_seconds: Default per-attempt deadline.
        max_attempts: Attempts per call including the first.
        backoff: Delay schedule between attempts.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        trace_recorder: TraceRecorder | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.trace_recorder = trace_recorder
        self.metrics_collector = metrics_collector
        self.timeout_seconds = timeout_seconds or settings.tool_timeout_seconds
        self.max_attempts = max_attempts or settings.tool_max_attempts
        self.backoff = backoff or BackoffPolicy.from_settings()
        self._sleep = sleep

    async def execute(
        self,
        request: ToolCallRequest,
        *,
        trace_id: str = "untraced",
        agent_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[Any]:
        """Execute one tool call.

        Args:
            request: The call to execute.
            trace_id: Trace the span is attached to.
            agent_id: Agent that requested the call.
            cancel_event: Enclosing cancellation signal (turn deadline).

        Returns:
            Success with the tool's value, or a failure whose kind tells the
            caller whether repeating the call could help.
        """
        start_time = time.monotonic()
        attempts = 0
        definition = self.registry.get(request.tool_name)

        if definition is None or definition.kind != ToolKind.FUNCTION:
            result: Result[Any] = Result.failure(ErrorInfo.create(
                ErrorKind.TOOL_UNAVAILABLE,
                f"Unknown tool: {request.tool_name}",
            ))
        else:
            try:
                validated = definition.validate(request.arguments)
            except ValidationError as e:
                result = Result.failure(ErrorInfo.create(
                    ErrorKind.TOOL_INVALID_INPUT,
                    summarize_validation_error(e),
                ))
            else:
                assert definition.invoke is not None
                invoke = definition.invoke
                timeout = definition.timeout_seconds or self.timeout_seconds

                async def attempt() -> Result[Any]:
                    nonlocal attempts
                    attempts += 1
                    return await with_timeout(
                        lambda signal: invoke(validated, signal),
                        timeout,
                        cancel_event=cancel_event,
                        operation=f"tool {request.tool_name}",
                    )

                result = await with_retry(
                    attempt,
                    max_attempts=self.max_attempts,
                    backoff=self.backoff,
                    sleep=self._sleep,
                    operation=f"tool {request.tool_name}",
                )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        self._record(request, result, duration_ms, attempts, trace_id, agent_id)
        return result

    def _record(
        self,
        request: ToolCallRequest,
        result: Result[Any],
        duration_ms: int,
        attempts: int,
        trace_id: str,
        agent_id: str | None,
    ) -> None:
        metadata: dict[str, Any] = {"call_id": request.call_id, "attempts": attempts}
        if agent_id:
            metadata["agent_id"] = agent_id
        if result.error is not None:
            metadata["error_kind"] = result.error.kind.value
            metadata["error_message"] = result.error.message

        if self.trace_recorder is not None:
            self.trace_recorder.record(SpanRecord(
                trace_id=trace_id,
                name=f"tool.{request.tool_name}",
                input=sanitize_arguments(request.arguments),
                output=_summarize_for_span(result.value) if result.ok else None,
                duration_ms=duration_ms,
                success=result.ok,
                metadata=metadata,
            ))

        if self.metrics_collector is not None:
            self.metrics_collector.record_tool_call(trace_id, success=result.ok)

        log = logger.info if result.ok else logger.warning
        log(
            "tool_executed",
            tool_name=request.tool_name,
            call_id=request.call_id,
            success=result.ok,
            attempts=attempts,
            duration_ms=duration_ms,
            error_kind=result.error.kind.value if result.error else None,
        )


# ---------------------------------------------------------------------------
# Built-in tool inputs
# ---------------------------------------------------------------------------


class ExecuteCodeInput(BaseModel):
    """Arguments of the execute_code tool."""

    code: str = Field(min_length=1, description="Complete program source")
    language: str = Field(
        default="python",
        description=f"Program language, one of: {', '.join(SUPPORTED_LANGUAGES)}",
    )

    @field_validator("language")
    @classmethod
    def check_language(cls, v: str) -> str:
        canonical = normalize_language(v)
        if canonical is None:
            raise ValueError(f"unsupported language '{v}'")
        return canonical


class SubagentRequest(BaseModel):
    role: str = Field(description="Specialist role: researcher, analyst or reviewer")
    task: str = Field(min_length=1, description="Focused task for this specialist")


class SpawnSubagentsInput(BaseModel):
    """Arguments of the spawn_subagents tool."""

    query: str = Field(min_length=1, description="The overall question being answered")
    subagents: list[SubagentRequest] = Field(min_length=1)

    @field_validator("subagents")
    @classmethod
    def check_count(cls, v: list[SubagentRequest]) -> list[SubagentRequest]:
        if len(v) > settings.max_subagents_per_call:
            raise ValueError(f"at most {settings.max_subagents_per_call} sub-agents per call")
        return v


class CodeTaskInput(BaseModel):
    """Arguments of the run_code_task tool."""

    task: str = Field(min_length=1, description="What the code should compute or demonstrate")


EXECUTE_CODE_TOOL = "execute_code"
SPAWN_SUBAGENTS_TOOL = "spawn_subagents"
RUN_CODE_TASK_TOOL = "run_code_task"


def make_execute_code_tool(code_runner: "DockerCodeRunner") -> ToolDefinition:
    """Build the sandbox execution tool around a code runner."""
    timeout_ms = int(settings.sandbox_timeout_seconds * 1000)

    async def invoke(args: ExecuteCodeInput, signal: asyncio.Event) -> Any:
        return await code_runner.run(args.code, args.language, timeout_ms, cancel_event=signal)

    return ToolDefinition(
        name=EXECUTE_CODE_TOOL,
        description=(
            "Run a short program in an isolated sandbox with no network access "
            "and return its exit code, stdout and stderr."
        ),
        input_model=ExecuteCodeInput,
        kind=ToolKind.FUNCTION,
        invoke=invoke,
    )


def build_default_registry(code_runner: "DockerCodeRunner") -> ToolRegistry:
    """Register the built-in tools and freeze the registry."""
    registry = ToolRegistry()
    registry.register(make_execute_code_tool(code_runner))
    registry.register(ToolDefinition(
        name=SPAWN_SUBAGENTS_TOOL,
        description=(
            "Delegate focused research or analysis to specialist sub-agents that "
            "work in parallel. Their findings come back as one synthesized summary."
        ),
        input_model=SpawnSubagentsInput,
        kind=ToolKind.SUBAGENTS,
    ))
    registry.register(ToolDefinition(
        name=RUN_CODE_TASK_TOOL,
        description=(
            "Write and run code to answer a computational question. The code is "
            "generated, executed in a sandbox, checked, and corrected once if needed."
        ),
        input_model=CodeTaskInput,
        kind=ToolKind.CODE_TASK,
    ))
    return registry.freeze()
