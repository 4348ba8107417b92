"""Shared test fixtures for backend tests.

Provides fake sandbox runners, event buses, LLM clients, and response
factories so tests never touch real Docker containers or LLM APIs.
"""

import asyncio
import sys
from collections import defaultdict
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from admission import reset_admission_gate  # noqa: E402
from agents.resilience import BackoffPolicy  # noqa: E402
from agents.utils import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import LLMMetrics  # noqa: E402
from sandbox.docker_sandbox import ExecutionResult  # noqa: E402

# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singletons() -> Any:
    """Give every test a fresh admission gate and event bus."""
    reset_admission_gate()
    reset_event_bus()
    yield
    reset_admission_gate()
    reset_event_bus()


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


# ---------------------------------------------------------------------------
# Retry timing
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def fast_backoff() -> BackoffPolicy:
    """Backoff without jitter so delays are deterministic."""
    return BackoffPolicy(
        base_delay_seconds=0.01,
        max_delay_seconds=0.05,
        jitter_ratio=0.0,
        max_retry_after_seconds=0.05,
    )


# ---------------------------------------------------------------------------
# Fake sandbox
# ---------------------------------------------------------------------------


def make_execution_result(
    stdout: str = "",
    stderr: str = "",
    exit_code: int = 0,
    timed_out: bool = False,
    duration_ms: int = 12,
) -> ExecutionResult:
    return ExecutionResult(
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        duration_ms=duration_ms,
    )


class FakeCodeRunner:
    """Scripted replacement for DockerCodeRunner.

    Returns (or raises) the scripted outcomes in order and records each run.
    When the script runs out the last outcome is repeated.
    """

    def __init__(
        self,
        outcomes: list[ExecutionResult | Exception] | None = None,
        delay: float = 0.0,
        docker_available: bool = True,
    ) -> None:
        self.outcomes = list(outcomes) if outcomes else [make_execution_result(stdout="ok\n")]
        self.delay = delay
        self.docker_available = docker_available
        self.runs: list[dict[str, Any]] = []

    async def run(
        self,
        code: str,
        language: str,
        timeout_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        index = min(len(self.runs), len(self.outcomes) - 1)
        self.runs.append({"code": code, "language": language, "timeout_ms": timeout_ms})
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def is_docker_available(self) -> bool:
        return self.docker_available


@pytest.fixture()
def fake_code_runner() -> FakeCodeRunner:
    return FakeCodeRunner()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


# ---------------------------------------------------------------------------
# RoutingMockLLMClient
# ---------------------------------------------------------------------------


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by agent_id prefix for fan-out tests.

    Sub-agents run concurrently sharing one client and carry generated ids
    such as ``subagent_researcher_1a2b3c4d``, so responses are routed by the
    longest key the agent_id starts with.

    Args:
        response_map: Dict mapping agent_id prefix -> list of responses
                      (an Exception entry is raised). Use ``"default"`` for
                      calls without a matching prefix.
        delays: Optional per-key latency in seconds.
    """

    def __init__(
        self,
        response_map: dict[str, list[LLMResponse | Exception]],
        delays: dict[str, float] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._response_map: dict[str, list[LLMResponse | Exception]] = {
            k: list(v) for k, v in response_map.items()
        }
        self._delays = delays or {}
        self._indexes: dict[str, int] = defaultdict(int)

    def _route(self, agent_id: str | None) -> str:
        matches = [k for k in self._response_map if agent_id and agent_id.startswith(k)]
        return max(matches, key=len) if matches else "default"

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        key = self._route(agent_id)
        self.call_history.append({
            "agent_id": agent_id,
            "route": key,
            "messages": list(messages),
            "tools": tools,
            "model": model,
        })
        if self._delays.get(key):
            await asyncio.sleep(self._delays[key])

        script = self._response_map[key]
        idx = self._indexes[key]
        self._indexes[key] = idx + 1
        # Repeat the last scripted response once the script runs out.
        response = script[min(idx, len(script) - 1)]
        if isinstance(response, Exception):
            raise response
        return response
