"""Event type definitions for the Orion event system.

Two families of events live here:

- ``AgentEvent``: telemetry published on the EventBus (trace spans, LLM call
  metrics, sub-agent lifecycle). Observers subscribe per trace id.
- ``TurnIncrement``: the output increments streamed back to the caller of
  ``AgentLoop.run_turn``. The last increment of a turn is always ``DONE``.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All telemetry event types in the Orion system."""

    # Turn lifecycle
    TURN_STARTED = "turn_started"
    TURN_COMPLETE = "turn_complete"
    TRACE_CLOSED = "trace_closed"

    # Sub-agent lifecycle
    AGENT_SPAWNED = "agent_spawned"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ERROR = "agent_error"

    # Observability
    SPAN_RECORDED = "span_recorded"
    LLM_CALL_COMPLETE = "llm_call_complete"


class AgentEvent(BaseModel):
    """An event emitted during turn execution.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - trace_id: Which turn this event belongs to
    - agent_id: Which agent produced this event (if applicable)
    - agent_role: Role name (e.g., "orchestrator", "researcher")
    - data: Event-specific payload

    Payload schemas by event type:

    SPAN_RECORDED:
        - name: str - Span name (e.g. "tool.execute_code")
        - input: dict - Sanitized span input
        - output: Any - Span output summary
        - duration_ms: int - Span duration
        - success: bool - Whether the spanned work succeeded
        - metadata: dict - error_kind, error_message, attempts, ...

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds

    AGENT_SPAWNED / AGENT_COMPLETE / AGENT_ERROR:
        - role: str - Sub-agent role
        - task: str - Assigned task
        - error_kind: str - Present on AGENT_ERROR
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    trace_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens


class IncrementType(StrEnum):
    """Kinds of output increments streamed by ``run_turn``."""

    TEXT_DELTA = "text_delta"
    TOOL_STARTED = "tool_started"
    TOOL_FINISHED = "tool_finished"
    SUBAGENT_PROGRESS = "subagent_progress"
    ANSWER_RETRACTED = "answer_retracted"
    DONE = "done"


class TurnOutcome(BaseModel):
    """Final result of a turn, carried by the terminal increment.

    Attributes:
        ok: Whether the turn produced an answer.
        text: The final answer (empty on failure).
        error_kind: Failure category when ok is False.
        user_message: User-safe failure explanation with a suggested alternative.
        iterations: Reasoning-engine round trips used.
        duration_ms: Wall-clock duration of the turn.
    """

    ok: bool
    text: str = ""
    error_kind: str | None = None
    user_message: str | None = None
    iterations: int = 0
    duration_ms: int = 0


class TurnIncrement(BaseModel):
    """One element of the lazy output sequence produced by a turn."""

    type: IncrementType
    trace_id: str
    text: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    outcome: TurnOutcome | None = None

    @property
    def terminal(self) -> bool:
        """True for the increment that ends the turn."""
        return self.type == IncrementType.DONE
