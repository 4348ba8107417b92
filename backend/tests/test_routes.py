"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with a runtime wired around a
FakeCodeRunner and a scripted LLM client. No real Docker or LLM calls are made.
"""

import json
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from admission import AdmissionGate
from agents.loop import AgentRuntime
from agents.tools import EXECUTE_CODE_TOOL
from api.routes import get_runtime, router, set_runtime
from events.bus import EventBus
from tests.conftest import (
    FakeCodeRunner,
    RoutingMockLLMClient,
    make_execution_result,
    make_llm_response,
    make_tool_call,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_runtime(docker_available: bool = True) -> AgentRuntime:
    llm = RoutingMockLLMClient({
        "default": [make_llm_response("unused")],
        "orchestrator": [
            make_llm_response(tool_calls=[make_tool_call(EXECUTE_CODE_TOOL, {"code": "print(6*7)"}, "c1")]),
            make_llm_response("6*7 is 42."),
        ],
    })
    runner = FakeCodeRunner([make_execution_result(stdout="42\n")], docker_available=docker_available)
    return AgentRuntime.create(
        runner,  # type: ignore[arg-type]
        llm_client=llm,
        event_bus=EventBus(),
        gate=AdmissionGate(capacity=3),
    )


def _make_client(runtime: AgentRuntime | None) -> Generator[TestClient, None, None]:
    app = FastAPI()
    app.include_router(router)
    set_runtime(runtime)
    with TestClient(app) as c:
        yield c
    set_runtime(None)


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    """TestClient with a configured runtime."""
    yield from _make_client(_make_runtime())


@pytest.fixture()
def bare_client() -> Generator[TestClient, None, None]:
    """TestClient before the runtime is configured."""
    yield from _make_client(None)


def _lines(body: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_healthy(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["docker_available"] is True
        assert data["version"] == "0.1.0"
        assert data["admission"] == {"capacity": 3, "in_flight": 0, "waiting": 0, "peak_in_flight": 0}
        assert EXECUTE_CODE_TOOL in data["tools"]

    def test_degraded_without_docker(self) -> None:
        for c in _make_client(_make_runtime(docker_available=False)):
            data = c.get("/health").json()
            assert data["status"] == "degraded"
            assert data["docker_available"] is False

    def test_degraded_without_runtime(self, bare_client: TestClient) -> None:
        data = bare_client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["admission"] is None
        assert data["tools"] == []


# =========================================================================
# Turns
# =========================================================================


class TestRunTurn:
    """POST /turns streams NDJSON increments."""

    def test_streams_increments(self, client: TestClient) -> None:
        resp = client.post("/turns", json={"message": "What is 6*7?", "trace_id": "turn_http_1"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")
        assert resp.headers["x-trace-id"] == "turn_http_1"

        lines = _lines(resp.text)
        types = [line["type"] for line in lines]
        assert types[0] == "tool_started"
        assert "tool_finished" in types
        assert types[-1] == "done"
        assert types.count("done") == 1
        outcome = lines[-1]["outcome"]
        assert outcome["ok"] is True
        assert outcome["text"] == "6*7 is 42."
        text = "".join(line["text"] for line in lines if line["type"] == "text_delta")
        assert text == "6*7 is 42."

    def test_generated_trace_id(self, client: TestClient) -> None:
        resp = client.post("/turns", json={
            "message": "hi",
            "conversation": [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}],
        })
        trace_id = resp.headers["x-trace-id"]
        assert trace_id.startswith("turn_")
        assert all(line["trace_id"] == trace_id for line in _lines(resp.text))

    def test_empty_message_rejected(self, client: TestClient) -> None:
        assert client.post("/turns", json={"message": ""}).status_code == 422

    def test_bad_trace_id_rejected(self, client: TestClient) -> None:
        resp = client.post("/turns", json={"message": "hi", "trace_id": "../etc/passwd"})
        assert resp.status_code == 422

    def test_bad_role_rejected(self, client: TestClient) -> None:
        resp = client.post("/turns", json={"message": "hi", "conversation": [{"role": "tool", "content": "x"}]})
        assert resp.status_code == 422

    def test_runtime_missing(self, bare_client: TestClient) -> None:
        resp = bare_client.post("/turns", json={"message": "hi"})
        assert resp.status_code == 503

    def test_trace_id_in_progress_rejected(self, client: TestClient) -> None:
        runtime = get_runtime()
        assert runtime._claim_trace("turn_busy")

        resp = client.post("/turns", json={"message": "hi", "trace_id": "turn_busy"})

        assert resp.status_code == 409
        assert runtime.event_bus.get_event_history("turn_busy") == []  # type: ignore[union-attr]

        runtime._release_trace("turn_busy")
        resp = client.post("/turns", json={"message": "What is 6*7?", "trace_id": "turn_busy"})
        assert resp.status_code == 200
        assert _lines(resp.text)[-1]["type"] == "done"


# =========================================================================
# Traces
# =========================================================================


class TestGetTrace:
    """GET /traces/{trace_id}."""

    def test_spans_of_finished_turn(self, client: TestClient) -> None:
        client.post("/turns", json={"message": "What is 6*7?", "trace_id": "turn_http_2"})

        resp = client.get("/traces/turn_http_2")

        assert resp.status_code == 200
        data = resp.json()
        assert data["trace_id"] == "turn_http_2"
        assert data["event_count"] >= 2
        names = [span["name"] for span in data["spans"]]
        assert "tool.execute_code" in names
        span = data["spans"][names.index("tool.execute_code")]
        assert span["success"] is True
        assert span["input"] == {"code": "print(6*7)"}

    def test_unknown_trace(self, client: TestClient) -> None:
        assert client.get("/traces/nope").status_code == 404
