"""Agent loop driving one user turn.

The loop sends the conversation to the reasoning engine, streams text deltas
to the caller, and dispatches tool calls by kind:

- FUNCTION  -> ToolExecutor
- SUBAGENTS -> SubagentCoordinator + Synthesizer
- CODE_TASK -> CodeTaskPipeline

Tool results are appended keyed by call id, in request order, and the engine is
re-invoked until it answers directly or the turn limit is reached. A direct
answer is checked by the verification rules; a rejected answer is retracted and
the engine is re-prompted with the feedback, within the same turn limit. The
whole turn runs under a hard deadline; expiry cancels every in-flight call.

Usage:
    >>> runtime = AgentRuntime.create(DockerCodeRunner())
    >>> async for increment in runtime.new_loop().run_turn(history, "What is 2**64?"):
    ...     print(increment.type, increment.text)
"""

import asyncio
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from admission import AdmissionGate
from agents.code_task import CodeTaskPipeline
from agents.prompts import get_orchestrator_prompt
from agents.result import (
    ErrorInfo,
    ErrorKind,
    Result,
    error_from_exception,
    format_error_for_llm,
    summarize_validation_error,
    user_message_for,
)
from agents.subagents import SubagentConfig, SubagentCoordinator, SubagentResult, SubagentSpawner
from agents.synthesizer import Synthesizer
from agents.tools import (
    CodeTaskInput,
    SpawnSubagentsInput,
    ToolCallRequest,
    ToolDefinition,
    ToolExecutor,
    ToolKind,
    ToolRegistry,
    build_default_registry,
    render_tool_value,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    sliding_window_prune,
)
from agents.verification import VerificationContext, VerificationResult, build_retry_prompt, verify_answer
from config import settings
from events.bus import EventBus, get_event_bus
from events.tracing import EventBusTraceSink, SpanRecord, TraceRecorder
from events.types import (
    AgentEvent,
    EventType,
    IncrementType,
    TurnIncrement,
    TurnOutcome,
)
from metrics import MetricsCollector
from sandbox.docker_sandbox import DockerCodeRunner

logger = structlog.get_logger()

ORCHESTRATOR_AGENT_ID = "orchestrator"

Emit = Callable[..., Awaitable[None]]


class AgentRuntime:
    """Process-wide collaborators shared by every turn.

    Apart from the set of trace ids with a turn in progress, nothing here is
    mutated while handling a request; each turn gets its own AgentLoop from
    ``new_loop()``.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        registry: ToolRegistry,
        executor: ToolExecutor,
        coordinator: SubagentCoordinator,
        synthesizer: Synthesizer,
        pipeline: CodeTaskPipeline,
        event_bus: EventBus | None = None,
        trace_recorder: TraceRecorder | None = None,
        metrics_collector: MetricsCollector | None = None,
        model: str | None = None,
        turn_timeout_seconds: float | None = None,
        max_turns: int | None = None,
        stream_buffer: int | None = None,
        verification_max_attempts: int | None = None,
        code_runner: DockerCodeRunner | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.code_runner = code_runner
        self.registry = registry
        self.executor = executor
        self.coordinator = coordinator
        self.synthesizer = synthesizer
        self.pipeline = pipeline
        self.event_bus = event_bus
        self.trace_recorder = trace_recorder
        self.metrics_collector = metrics_collector
        self.model = model or settings.orchestrator_model
        self.turn_timeout_seconds = turn_timeout_seconds or settings.turn_timeout_seconds
        self.max_turns = max_turns or settings.max_agent_turns
        self.stream_buffer = stream_buffer or settings.turn_stream_buffer
        self.verification_max_attempts = verification_max_attempts or settings.verification_max_attempts
        self._active_traces: set[str] = set()

    @classmethod
    def create(
        cls,
        code_runner: DockerCodeRunner,
        *,
        llm_client: LLMClient | None = None,
        event_bus: EventBus | None = None,
        gate: AdmissionGate | None = None,
        **overrides: Any,
    ) -> "AgentRuntime":
        """Wire the default collaborators around a sandbox runner."""
        event_bus = event_bus or get_event_bus()
        metrics_collector = MetricsCollector()
        trace_recorder = TraceRecorder(
            EventBusTraceSink(event_bus),
            timeout_seconds=settings.trace_sink_timeout_seconds,
        )
        if llm_client is None:
            llm_client = LLMClient(event_bus=event_bus, metrics_collector=metrics_collector)

        registry = build_default_registry(code_runner)
        executor = ToolExecutor(registry, trace_recorder, metrics_collector)
        spawner = SubagentSpawner(
            llm_client,
            executor,
            registry,
            event_bus=event_bus,
            metrics_collector=metrics_collector,
        )
        return cls(
            llm_client=llm_client,
            registry=registry,
            executor=executor,
            coordinator=SubagentCoordinator(spawner, gate),
            synthesizer=Synthesizer(llm_client),
            pipeline=CodeTaskPipeline(llm_client, executor),
            event_bus=event_bus,
            trace_recorder=trace_recorder,
            metrics_collector=metrics_collector,
            code_runner=code_runner,
            **overrides,
        )

    def new_loop(self, trace_id: str | None = None) -> "AgentLoop":
        return AgentLoop(self, trace_id=trace_id)

    def is_trace_active(self, trace_id: str) -> bool:
        return trace_id in self._active_traces

    def _claim_trace(self, trace_id: str) -> bool:
        """Mark a trace id as in progress. False if another turn holds it."""
        if trace_id in self._active_traces:
            return False
        self._active_traces.add(trace_id)
        return True

    def _release_trace(self, trace_id: str) -> None:
        self._active_traces.discard(trace_id)


class AgentLoop:
    """Runs exactly one turn.

    Attributes:
        runtime: Shared collaborators.
        trace_id: Identifier correlating logs, spans, events and metrics.
    """

    def __init__(self, runtime: AgentRuntime, trace_id: str | None = None) -> None:
        self.runtime = runtime
        self.trace_id = trace_id or f"turn_{uuid.uuid4().hex[:12]}"
        self.iterations = 0
        self._started = False
        self._sources: list[str] = []

    def run_turn(
        self,
        conversation: Sequence[Mapping[str, Any]],
        user_message: str,
        context: Mapping[str, Any] | None = None,
    ) -> AsyncGenerator[TurnIncrement, None]:
        """Start the turn and return its lazy sequence of increments.

        The sequence ends with exactly one DONE increment. It cannot be
        restarted; a new turn needs a new loop.

        Raises:
            RuntimeError: If this loop already ran a turn.
        """
        if self._started:
            raise RuntimeError("AgentLoop.run_turn() can only be called once; use a new loop")
        self._started = True

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": get_orchestrator_prompt(dict(context) if context else None)},
            *({"role": m["role"], "content": m.get("content") or ""} for m in conversation),
            {"role": "user", "content": user_message},
        ]
        parent_context: dict[str, Any] = {
            **(context or {}),
            "user_message": user_message,
            "thread_history": [dict(m) for m in conversation],
        }
        return self._stream(messages, parent_context)

    async def _stream(
        self,
        messages: list[dict[str, Any]],
        parent_context: dict[str, Any],
    ) -> AsyncGenerator[TurnIncrement, None]:
        queue: asyncio.Queue[TurnIncrement] = asyncio.Queue(maxsize=self.runtime.stream_buffer)
        cancel_event = asyncio.Event()
        producer = asyncio.create_task(self._produce(queue, messages, parent_context, cancel_event))
        try:
            while True:
                increment = await queue.get()
                yield increment
                if increment.terminal:
                    break
        finally:
            if not producer.done():
                # Consumer went away early: stop all work for this turn.
                cancel_event.set()
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def _produce(
        self,
        queue: asyncio.Queue[TurnIncrement],
        messages: list[dict[str, Any]],
        parent_context: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> None:
        start_time = time.monotonic()
        runtime = self.runtime
        metrics = runtime.metrics_collector

        with structlog.contextvars.bound_contextvars(trace_id=self.trace_id):
            if not runtime._claim_trace(self.trace_id):
                # Another turn owns this id's metrics and events; touch neither.
                logger.warning("turn_rejected_trace_in_use")
                error = ErrorInfo.create(
                    ErrorKind.EXECUTION_FAILED,
                    f"Trace id {self.trace_id} already has a turn in progress",
                    retryable=True,
                )
                await queue.put(TurnIncrement(
                    type=IncrementType.DONE,
                    trace_id=self.trace_id,
                    outcome=TurnOutcome(
                        ok=False,
                        error_kind=error.kind.value,
                        user_message=user_message_for(error),
                        duration_ms=int((time.monotonic() - start_time) * 1000),
                    ),
                ))
                return

            try:
                if metrics is not None:
                    metrics.start(self.trace_id)
                logger.info("turn_started", history_messages=len(messages) - 2)
                await self._publish(EventType.TURN_STARTED, {"message": parent_context["user_message"][:200]})

                try:
                    result = await asyncio.wait_for(
                        self._drive(queue, messages, parent_context, cancel_event),
                        timeout=runtime.turn_timeout_seconds,
                    )
                except TimeoutError:
                    cancel_event.set()
                    logger.warning("turn_timeout", timeout_seconds=runtime.turn_timeout_seconds)
                    result = Result.failure(ErrorInfo.create(
                        ErrorKind.TIMEOUT,
                        f"Turn exceeded {runtime.turn_timeout_seconds}s",
                        retryable=False,
                    ))
                except Exception as e:
                    cancel_event.set()
                    logger.error("turn_failed", error=str(e), error_type=type(e).__name__)
                    result = Result.failure(error_from_exception(e))

                duration_ms = int((time.monotonic() - start_time) * 1000)
                if result.ok:
                    outcome = TurnOutcome(
                        ok=True,
                        text=str(result.value),
                        iterations=self.iterations,
                        duration_ms=duration_ms,
                    )
                else:
                    assert result.error is not None
                    outcome = TurnOutcome(
                        ok=False,
                        error_kind=result.error.kind.value,
                        user_message=user_message_for(result.error),
                        iterations=self.iterations,
                        duration_ms=duration_ms,
                    )

                turn_metrics = metrics.finish(self.trace_id) if metrics is not None else None
                logger.info(
                    "turn_completed",
                    ok=outcome.ok,
                    iterations=outcome.iterations,
                    duration_ms=duration_ms,
                    error_kind=outcome.error_kind,
                    error_message=result.error.message if result.error else None,
                )
                await self._publish(EventType.TURN_COMPLETE, {
                    "ok": outcome.ok,
                    "error_kind": outcome.error_kind,
                    "metrics": turn_metrics.to_dict() if turn_metrics else None,
                })
                await queue.put(TurnIncrement(type=IncrementType.DONE, trace_id=self.trace_id, outcome=outcome))
            except asyncio.CancelledError:
                logger.info("turn_abandoned", iterations=self.iterations)
                raise
            finally:
                # Also runs when the consumer closes early.
                if metrics is not None and metrics.get(self.trace_id) is not None:
                    metrics.finish(self.trace_id)
                if runtime.event_bus is not None:
                    await runtime.event_bus.close_trace(self.trace_id)
                runtime._release_trace(self.trace_id)

    async def _drive(
        self,
        queue: asyncio.Queue[TurnIncrement],
        messages: list[dict[str, Any]],
        parent_context: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> Result[str]:
        """The reasoning loop proper. Returns the final answer or a failure."""
        runtime = self.runtime
        tools = runtime.registry.definitions_for_llm()
        consumed_call_ids: set[str] = set()
        answer_attempts = 0

        async def emit(increment_type: IncrementType, text: str = "", **data: Any) -> None:
            await queue.put(TurnIncrement(type=increment_type, trace_id=self.trace_id, text=text, data=data))

        for iteration in range(1, runtime.max_turns + 1):
            self.iterations = iteration
            response = await self._call_engine(sliding_window_prune(messages), tools, emit)

            new_calls: list[ToolCallData] = []
            for tc in response.tool_calls:
                if tc.id in consumed_call_ids:
                    logger.debug("duplicate_tool_call_ignored", call_id=tc.id, tool_name=tc.name)
                    continue
                consumed_call_ids.add(tc.id)
                new_calls.append(tc)

            if not new_calls:
                answer_attempts += 1
                verdict = self._verify(response.content, parent_context["user_message"], answer_attempts)
                if verdict.passed:
                    return Result.success(response.content)

                await emit(
                    IncrementType.ANSWER_RETRACTED,
                    attempt=answer_attempts,
                    issues=verdict.rule_names,
                )
                if answer_attempts >= runtime.verification_max_attempts:
                    return Result.failure(ErrorInfo.create(
                        ErrorKind.VALIDATION_FAILED,
                        f"Answer failed verification after {answer_attempts} attempts: {verdict.feedback}",
                    ))
                messages.append({"role": "assistant", "content": response.content})
                messages.append({"role": "user", "content": build_retry_prompt(
                    response.content, verdict, answer_attempts, runtime.verification_max_attempts,
                )})
                continue

            messages.append(format_assistant_message_with_tools(response.content, new_calls))
            logger.info(
                "tool_calls_dispatched",
                iteration=iteration,
                tools=[tc.name for tc in new_calls],
            )
            contents = await asyncio.gather(*(
                self._dispatch(tc, emit, parent_context, cancel_event) for tc in new_calls
            ))
            for tc, content in zip(new_calls, contents):
                messages.append(format_tool_result_for_llm(tc.id, content))

        return Result.failure(ErrorInfo.create(
            ErrorKind.EXECUTION_FAILED,
            f"No answer after {runtime.max_turns} reasoning steps",
        ))

    async def _call_engine(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        emit: Emit,
    ) -> LLMResponse:
        response: LLMResponse | None = None
        async for chunk in self.runtime.llm_client.stream(
            messages,
            tools=tools or None,
            model=self.runtime.model,
            trace_id=self.trace_id,
            agent_id=ORCHESTRATOR_AGENT_ID,
        ):
            if chunk.final:
                response = chunk.response
            elif chunk.text:
                await emit(IncrementType.TEXT_DELTA, chunk.text)
        if response is None:
            raise RuntimeError("Reasoning engine stream ended without a final response")
        return response

    async def _dispatch(
        self,
        tc: ToolCallData,
        emit: Emit,
        parent_context: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> str:
        """Run one tool call and return the text appended for the engine."""
        runtime = self.runtime
        definition = runtime.registry.get(tc.name)
        await emit(IncrementType.TOOL_STARTED, call_id=tc.id, tool_name=tc.name)

        if definition is None or definition.kind == ToolKind.FUNCTION:
            # Unknown names resolve to TOOL_UNAVAILABLE inside the executor.
            result = await runtime.executor.execute(
                ToolCallRequest(tool_name=tc.name, arguments=tc.args, call_id=tc.id),
                trace_id=self.trace_id,
                agent_id=ORCHESTRATOR_AGENT_ID,
                cancel_event=cancel_event,
            )
        elif definition.kind == ToolKind.SUBAGENTS:
            result = await self._run_subagents(definition, tc, emit, parent_context, cancel_event)
            self._count_tool_call(result)
        elif definition.kind == ToolKind.CODE_TASK:
            result = await self._run_code_task(definition, tc, cancel_event)
            self._count_tool_call(result)
        else:
            raise ValueError(f"Unhandled tool kind: {definition.kind}")

        await emit(
            IncrementType.TOOL_FINISHED,
            call_id=tc.id,
            tool_name=tc.name,
            success=result.ok,
            error_kind=result.error.kind.value if result.error else None,
        )
        if result.ok:
            return render_tool_value(result.value)
        assert result.error is not None
        return format_error_for_llm(tc.name, result.error)

    async def _run_subagents(
        self,
        definition: ToolDefinition,
        tc: ToolCallData,
        emit: Emit,
        parent_context: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> Result[Any]:
        try:
            args = definition.validate(tc.args)
        except ValidationError as e:
            return Result.failure(ErrorInfo.create(ErrorKind.TOOL_INVALID_INPUT, summarize_validation_error(e)))
        assert isinstance(args, SpawnSubagentsInput)

        configs = [SubagentConfig.for_role(s.role, s.task) for s in args.subagents]

        async def on_progress(index: int, result: SubagentResult) -> None:
            await emit(
                IncrementType.SUBAGENT_PROGRESS,
                call_id=tc.id,
                index=index,
                role=result.role,
                success=result.success,
                completed=True,
            )

        results = await self.runtime.coordinator.run_all(
            configs,
            parent_context,
            trace_id=self.trace_id,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )
        synthesis = await self.runtime.synthesizer.synthesize(results, args.query, trace_id=self.trace_id)
        self._sources.extend(s for s in synthesis.sources if s not in self._sources)
        return Result.success(synthesis)

    async def _run_code_task(
        self,
        definition: ToolDefinition,
        tc: ToolCallData,
        cancel_event: asyncio.Event,
    ) -> Result[Any]:
        try:
            args = definition.validate(tc.args)
        except ValidationError as e:
            return Result.failure(ErrorInfo.create(ErrorKind.TOOL_INVALID_INPUT, summarize_validation_error(e)))
        assert isinstance(args, CodeTaskInput)
        return await self.runtime.pipeline.run(args.task, trace_id=self.trace_id, cancel_event=cancel_event)

    def _count_tool_call(self, result: Result[Any]) -> None:
        if self.runtime.metrics_collector is not None:
            self.runtime.metrics_collector.record_tool_call(self.trace_id, success=result.ok)

    def _verify(self, answer: str, user_message: str, attempt: int) -> VerificationResult:
        start_time = time.monotonic()
        verdict = verify_answer(answer, VerificationContext(user_message, tuple(self._sources)))
        if not verdict.passed:
            logger.warning(
                "answer_verification_failed",
                attempt=attempt,
                issues=verdict.rule_names,
            )
        if self.runtime.trace_recorder is not None:
            self.runtime.trace_recorder.record(SpanRecord(
                trace_id=self.trace_id,
                name="turn.verify",
                input={"attempt": attempt, "answer_chars": len(answer)},
                output=verdict.feedback,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                success=verdict.passed,
                metadata={"issues": verdict.rule_names, "agent_id": ORCHESTRATOR_AGENT_ID},
            ))
        return verdict

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.runtime.event_bus is None:
            return
        await self.runtime.event_bus.publish(AgentEvent(
            type=event_type,
            trace_id=self.trace_id,
            agent_id=ORCHESTRATOR_AGENT_ID,
            agent_role="orchestrator",
            data=data,
        ))
