"""In-memory metrics collection for active turns.

This module provides the MetricsCollector class that accumulates token usage,
tool activity and sub-agent counts for running turns. When a turn completes,
``finish()`` returns the final figures and forgets the turn.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("trace_abc123")
    >>> collector.record_llm_call("trace_abc123", prompt_tokens=100, completion_tokens=50)
    >>> collector.record_tool_call("trace_abc123", success=True)
    >>> final = collector.finish("trace_abc123")
    >>> print(final)  # TurnMetricsData(...)
"""

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class TurnMetricsData:
    """Accumulated metrics for a single turn.

    Attributes:
        total_tokens: Sum of prompt and completion tokens.
        prompt_tokens: Total input/prompt tokens across all LLM calls.
        completion_tokens: Total output/completion tokens across all LLM calls.
        llm_calls: Number of LLM invocations (sub-agents included).
        tool_calls: Number of tool executions.
        tool_failures: Tool executions that ended in a failure envelope.
        subagents_spawned: Sub-agent runs started for this turn.
        duration_ms: Total execution time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    tool_calls: int = 0
    tool_failures: int = 0
    subagents_spawned: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int]:
        return {
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "llm_calls": self.llm_calls,
            "tool_calls": self.tool_calls,
            "tool_failures": self.tool_failures,
            "subagents_spawned": self.subagents_spawned,
            "duration_ms": self.duration_ms,
        }


class MetricsCollector:
    """In-memory collector that tracks per-turn metrics.

    Each active turn gets its own TurnMetricsData instance, keyed by trace id.
    All mutations are synchronous dict/attribute updates, so concurrent tasks
    on one event loop never interleave inside a single update.

    Recording against an unknown trace id is a no-op: sub-agent and tool
    calls made outside a tracked turn (tests, ad-hoc use) are simply not
    counted.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._turns: dict[str, TurnMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def start(self, trace_id: str) -> None:
        """Begin tracking metrics for a turn. No-op if already tracked."""
        if trace_id in self._turns:
            logger.debug("metrics_already_tracking", trace_id=trace_id)
            return
        self._turns[trace_id] = TurnMetricsData()
        logger.debug("metrics_tracking_started", trace_id=trace_id)

    def record_llm_call(
        self,
        trace_id: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> None:
        """Record token usage from a single LLM call.

        Args:
            trace_id: The turn the LLM call belongs to.
            prompt_tokens: Number of input tokens used.
            completion_tokens: Number of output tokens used.
        """
        data = self._turns.get(trace_id)
        if data is None:
            return

        data.prompt_tokens += prompt_tokens
        data.completion_tokens += completion_tokens
        data.total_tokens += prompt_tokens + completion_tokens
        data.llm_calls += 1

        logger.debug(
            "metrics_llm_call_recorded",
            trace_id=trace_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_llm_calls=data.llm_calls,
        )

    def record_tool_call(self, trace_id: str, *, success: bool = True) -> None:
        data = self._turns.get(trace_id)
        if data is None:
            return
        data.tool_calls += 1
        if not success:
            data.tool_failures += 1

    def record_subagent(self, trace_id: str) -> None:
        data = self._turns.get(trace_id)
        if data is None:
            return
        data.subagents_spawned += 1

    def finish(self, trace_id: str) -> TurnMetricsData | None:
        """Finalize metrics for a turn, calculating duration.

        The turn's data is removed from the collector after this call.

        Returns:
            The final TurnMetricsData, or None if not tracked.
        """
        data = self._turns.pop(trace_id, None)
        if data is None:
            logger.warning("metrics_finish_no_turn", trace_id=trace_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_turn_finished",
            trace_id=trace_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            tool_calls=data.tool_calls,
            tool_failures=data.tool_failures,
            subagents_spawned=data.subagents_spawned,
            duration_ms=data.duration_ms,
        )
        return data

    def get(self, trace_id: str) -> TurnMetricsData | None:
        """Get current (in-progress) metrics for a turn without removing it."""
        return self._turns.get(trace_id)
