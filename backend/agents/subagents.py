"""Sub-agent spawning and parallel coordination.

A sub-agent is a capability-restricted run of the reasoning engine with an
isolated context: only whitelisted fields of the parent context are copied in,
and only the role's FUNCTION tools are offered. ``SubagentSpawner.spawn`` is
total (it always returns a ``SubagentResult``), which lets the
``SubagentCoordinator`` fan out without first-failure-aborts semantics.

Usage:
    >>> coordinator = SubagentCoordinator(spawner, get_admission_gate())
    >>> results = await coordinator.run_all(configs, parent_context, trace_id="t1")
"""

import asyncio
import copy
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog

from admission import AdmissionGate, get_admission_gate
from agents.prompts import (
    SUBAGENT_ROLES,
    SubagentRole,
    get_subagent_prompt,
    render_isolated_context,
)
from agents.resilience import with_timeout
from agents.result import (
    ErrorInfo,
    ErrorKind,
    ExecutionFailedError,
    error_from_exception,
    format_error_for_llm,
)
from agents.tools import ToolCallRequest, ToolExecutor, ToolKind, ToolRegistry, render_tool_value
from agents.utils import (
    LLMClient,
    extract_citations,
    extract_keywords,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)
from config import settings
from events.bus import EventBus
from events.tracing import SpanRecord
from events.types import AgentEvent, EventType

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger()

ProgressCallback = Callable[[int, "SubagentResult"], Awaitable[None] | None]


@dataclass(frozen=True)
class SubagentConfig:
    """What to spawn and which parent context fields it may see."""

    role: str
    task: str
    allowed_context_fields: frozenset[str] = frozenset()

    @classmethod
    def for_role(cls, role: str, task: str) -> "SubagentConfig":
        """Config using the role's default context whitelist (empty if unknown)."""
        known = SUBAGENT_ROLES.get(role)
        fields = known.default_context_fields if known else frozenset()
        return cls(role=role, task=task, allowed_context_fields=fields)


@dataclass(frozen=True)
class SubagentMetrics:
    duration_ms: int = 0
    tokens_used: int = 0


@dataclass(frozen=True)
class SubagentResult:
    """Outcome of one sub-agent run.

    Attributes:
        success: Whether the run produced output.
        role: Role the sub-agent ran as.
        task: Task it was given.
        output: Task-filtered output with citations (success only).
        error: Failure description (failure only).
        metrics: Duration and token usage.
        relevance: Share of task keywords covered by the raw output (0..1).
    """

    success: bool
    role: str
    task: str
    output: str | None = None
    error: ErrorInfo | None = None
    metrics: SubagentMetrics = field(default_factory=SubagentMetrics)
    relevance: float = 0.0

    def __post_init__(self) -> None:
        if self.success and (self.output is None or self.error is not None):
            raise ValueError("A successful SubagentResult carries output and no error")
        if not self.success and self.error is None:
            raise ValueError("A failed SubagentResult carries an error")


def build_isolated_context(
    parent_context: Mapping[str, Any],
    allowed_fields: frozenset[str],
) -> dict[str, Any]:
    """Copy only whitelisted fields out of the parent context.

    Values are deep-copied so the child cannot mutate parent state.
    """
    return {
        key: copy.deepcopy(parent_context[key])
        for key in allowed_fields
        if key in parent_context
    }


def filter_relevant_output(raw: str, task: str) -> tuple[str, float]:
    """Keep the parts of a sub-agent's output that concern its task.

    Paragraphs mentioning at least one task keyword are kept in order.
    Citations found anywhere in the raw output are appended verbatim when the
    kept paragraphs do not already contain them.

    Returns:
        (filtered_text, relevance) where relevance is the share of task
        keywords present in the raw output; 1.0 when the task has none.
    """
    keywords = extract_keywords(task)
    citations = extract_citations(raw)
    paragraphs = [p.strip() for p in raw.split("\n\n") if p.strip()]

    if not keywords:
        kept = paragraphs
        relevance = 1.0
    else:
        lowered = raw.lower()
        matched = [k for k in keywords if k in lowered]
        relevance = len(matched) / len(keywords)
        kept = [p for p in paragraphs if any(k in p.lower() for k in keywords)]

    text = "\n\n".join(kept)
    missing = [c for c in citations if c not in text]
    if missing:
        sources = "Sources:\n" + "\n".join(missing)
        text = f"{text}\n\n{sources}" if text else sources
    return text, round(relevance, 3)


class SubagentSpawner:
    """Runs one sub-agent to completion under its own deadline.

    Attributes:
        llm_client: Reasoning engine client.
        executor: Tool executor for the role's FUNCTION tools.
        registry: Tool registry the role's capability set is drawn from.
        roles: Known roles.
        model: Model used for sub-agents.
        timeout_seconds: Deadline for one run.
        max_iterations: Tool-loop iterations before a forced final answer.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        executor: ToolExecutor,
        registry: ToolRegistry,
        roles: Mapping[str, SubagentRole] | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        max_iterations: int | None = None,
        event_bus: EventBus | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
    ) -> None:
        self.llm_client = llm_client
        self.executor = executor
        self.registry = registry
        self.roles = roles if roles is not None else SUBAGENT_ROLES
        self.model = model or settings.subagent_model
        self.timeout_seconds = timeout_seconds or settings.subagent_timeout_seconds
        self.max_iterations = max_iterations or settings.subagent_max_iterations
        self.event_bus = event_bus
        self.metrics_collector = metrics_collector

    async def spawn(
        self,
        config: SubagentConfig,
        parent_context: Mapping[str, Any],
        *,
        trace_id: str = "untraced",
        cancel_event: asyncio.Event | None = None,
    ) -> SubagentResult:
        """Run a sub-agent and package its outcome. Never raises for run failures."""
        start_time = time.monotonic()
        agent_id = f"subagent_{config.role}_{uuid.uuid4().hex[:8]}"

        role = self.roles.get(config.role)
        if role is None:
            error = ErrorInfo.create(ErrorKind.TOOL_INVALID_INPUT, f"Unknown sub-agent role: {config.role}")
            logger.warning("subagent_failed", role=config.role, error_kind=error.kind.value, reason=error.message)
            return SubagentResult(success=False, role=config.role, task=config.task, error=error)

        try:
            return await self._run_role(
                role, config, parent_context, agent_id, start_time, trace_id, cancel_event,
            )
        except Exception as e:
            error = error_from_exception(e)
            logger.warning(
                "subagent_failed",
                role=role.name,
                agent_id=agent_id,
                error_kind=error.kind.value,
                reason=error.message,
            )
            result = SubagentResult(
                success=False,
                role=role.name,
                task=config.task,
                error=error,
                metrics=SubagentMetrics(duration_ms=int((time.monotonic() - start_time) * 1000)),
            )
            self._record_span(result, agent_id, trace_id)
            return result

    async def _run_role(
        self,
        role: SubagentRole,
        config: SubagentConfig,
        parent_context: Mapping[str, Any],
        agent_id: str,
        start_time: float,
        trace_id: str,
        cancel_event: asyncio.Event | None,
    ) -> SubagentResult:
        tokens_used = 0
        context = build_isolated_context(parent_context, config.allowed_context_fields)
        if self.metrics_collector is not None:
            self.metrics_collector.record_subagent(trace_id)
        await self._publish(EventType.AGENT_SPAWNED, trace_id, agent_id, role.name, {"task": config.task})

        async def run(signal: asyncio.Event) -> str:
            nonlocal tokens_used
            tools = (
                self.registry.definitions_for_llm(names=role.tools, kinds=[ToolKind.FUNCTION])
                if role.tools else []
            )
            messages: list[dict[str, Any]] = [
                {"role": "system", "content": get_subagent_prompt(role, config.task)},
                {"role": "user", "content": render_isolated_context(context)},
            ]

            for _ in range(self.max_iterations):
                response = await self.llm_client.call(
                    messages,
                    tools=tools or None,
                    model=self.model,
                    trace_id=trace_id,
                    agent_id=agent_id,
                )
                tokens_used += response.metrics.total_tokens
                if not response.tool_calls:
                    if not response.content.strip():
                        raise ExecutionFailedError("Sub-agent returned no output")
                    return response.content

                messages.append(format_assistant_message_with_tools(response.content, response.tool_calls))
                for tc in response.tool_calls:
                    if tc.name not in role.tools:
                        content = format_error_for_llm(tc.name, ErrorInfo.create(
                            ErrorKind.TOOL_UNAVAILABLE, f"{tc.name} is not available to {role.name}",
                        ))
                    else:
                        result = await self.executor.execute(
                            ToolCallRequest(tool_name=tc.name, arguments=tc.args, call_id=tc.id),
                            trace_id=trace_id,
                            agent_id=agent_id,
                            cancel_event=signal,
                        )
                        content = (
                            render_tool_value(result.value) if result.ok
                            else format_error_for_llm(tc.name, result.error)  # type: ignore[arg-type]
                        )
                    messages.append(format_tool_result_for_llm(tc.id, content))

            # Out of iterations: ask for a final answer without tools.
            messages.append({"role": "user", "content": "Stop using tools and report your findings now."})
            response = await self.llm_client.call(
                messages, model=self.model, trace_id=trace_id, agent_id=agent_id,
            )
            tokens_used += response.metrics.total_tokens
            if not response.content.strip():
                raise ExecutionFailedError("Sub-agent returned no output")
            return response.content

        outcome = await with_timeout(
            run,
            self.timeout_seconds,
            cancel_event=cancel_event,
            operation=f"subagent {role.name}",
        )
        metrics = SubagentMetrics(
            duration_ms=int((time.monotonic() - start_time) * 1000),
            tokens_used=tokens_used,
        )

        if outcome.ok:
            output, relevance = filter_relevant_output(str(outcome.value), config.task)
            result = SubagentResult(
                success=True,
                role=role.name,
                task=config.task,
                output=output,
                metrics=metrics,
                relevance=relevance,
            )
            logger.info(
                "subagent_completed",
                role=role.name,
                agent_id=agent_id,
                relevance=relevance,
                duration_ms=metrics.duration_ms,
                tokens_used=tokens_used,
            )
            await self._publish(EventType.AGENT_COMPLETE, trace_id, agent_id, role.name, {
                "task": config.task, "relevance": relevance,
            })
        else:
            assert outcome.error is not None
            result = SubagentResult(
                success=False,
                role=role.name,
                task=config.task,
                error=outcome.error,
                metrics=metrics,
            )
            logger.warning(
                "subagent_failed",
                role=role.name,
                agent_id=agent_id,
                error_kind=outcome.error.kind.value,
                reason=outcome.error.message,
                duration_ms=metrics.duration_ms,
            )
            await self._publish(EventType.AGENT_ERROR, trace_id, agent_id, role.name, {
                "task": config.task, "error_kind": outcome.error.kind.value,
            })

        self._record_span(result, agent_id, trace_id)
        return result

    def _record_span(self, result: SubagentResult, agent_id: str, trace_id: str) -> None:
        recorder = self.executor.trace_recorder
        if recorder is None:
            return
        metadata: dict[str, Any] = {
            "agent_id": agent_id,
            "tokens_used": result.metrics.tokens_used,
            "relevance": result.relevance,
        }
        if result.error is not None:
            metadata["error_kind"] = result.error.kind.value
            metadata["error_message"] = result.error.message
        recorder.record(SpanRecord(
            trace_id=trace_id,
            name=f"subagent.{result.role}",
            input={"task": result.task},
            output=(result.output or "")[:500] if result.success else None,
            duration_ms=result.metrics.duration_ms,
            success=result.success,
            metadata=metadata,
        ))

    async def _publish(
        self,
        event_type: EventType,
        trace_id: str,
        agent_id: str,
        role: str,
        data: dict[str, Any],
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(AgentEvent(
            type=event_type,
            trace_id=trace_id,
            agent_id=agent_id,
            agent_role=role,
            data={"role": role, **data},
        ))


class SubagentCoordinator:
    """Fans sub-agent runs out under the process-wide admission gate.

    Attributes:
        spawner: Runs individual sub-agents.
        gate: Shared FIFO admission gate bounding in-flight spawns.
    """

    def __init__(self, spawner: SubagentSpawner, gate: AdmissionGate | None = None) -> None:
        self.spawner = spawner
        self.gate = gate or get_admission_gate()

    async def run_all(
        self,
        configs: Sequence[SubagentConfig],
        parent_context: Mapping[str, Any],
        *,
        trace_id: str = "untraced",
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[SubagentResult]:
        """Run every config and return one result per config, in input order.

        Each run waits for a gate slot in submission order. A failing run never
        affects its siblings. ``on_progress(index, result)`` is called once per
        finished run in completion order, after its slot is released; errors it
        raises are logged and ignored.

        Cancelling ``run_all`` cancels every queued and running sub-agent and
        discards results already collected.
        """

        async def run_one(index: int, config: SubagentConfig) -> SubagentResult:
            async with self.gate.slot():
                result = await self.spawner.spawn(
                    config,
                    parent_context,
                    trace_id=trace_id,
                    cancel_event=cancel_event,
                )
            if on_progress is not None:
                try:
                    notified = on_progress(index, result)
                    if inspect.isawaitable(notified):
                        await notified
                except Exception as e:
                    logger.warning("subagent_progress_callback_failed", index=index, error=str(e))
            return result

        logger.info("subagent_fanout_started", trace_id=trace_id, count=len(configs), **self.gate.get_status())
        results = await asyncio.gather(*(run_one(i, c) for i, c in enumerate(configs)))
        logger.info(
            "subagent_fanout_finished",
            trace_id=trace_id,
            count=len(results),
            failed=sum(1 for r in results if not r.success),
        )
        return list(results)
