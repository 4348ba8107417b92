"""Tests for metrics.py -- per-turn metrics collection."""

from metrics import MetricsCollector, TurnMetricsData


class TestMetricsCollector:
    """Accumulation and finalization."""

    def test_accumulates_llm_calls(self) -> None:
        collector = MetricsCollector()
        collector.start("t1")
        collector.record_llm_call("t1", prompt_tokens=100, completion_tokens=40)
        collector.record_llm_call("t1", prompt_tokens=10, completion_tokens=5)

        data = collector.get("t1")
        assert data is not None
        assert data.llm_calls == 2
        assert data.prompt_tokens == 110
        assert data.completion_tokens == 45
        assert data.total_tokens == 155

    def test_tool_calls_and_failures(self) -> None:
        collector = MetricsCollector()
        collector.start("t1")
        collector.record_tool_call("t1")
        collector.record_tool_call("t1", success=False)
        data = collector.get("t1")
        assert data is not None
        assert data.tool_calls == 2
        assert data.tool_failures == 1

    def test_subagents(self) -> None:
        collector = MetricsCollector()
        collector.start("t1")
        collector.record_subagent("t1")
        collector.record_subagent("t1")
        assert collector.get("t1").subagents_spawned == 2  # type: ignore[union-attr]

    def test_unknown_trace_is_noop(self) -> None:
        collector = MetricsCollector()
        collector.record_llm_call("ghost", prompt_tokens=1, completion_tokens=1)
        collector.record_tool_call("ghost")
        collector.record_subagent("ghost")
        assert collector.get("ghost") is None

    def test_start_twice_keeps_counts(self) -> None:
        collector = MetricsCollector()
        collector.start("t1")
        collector.record_tool_call("t1")
        collector.start("t1")
        assert collector.get("t1").tool_calls == 1  # type: ignore[union-attr]

    def test_finish_removes_turn(self) -> None:
        collector = MetricsCollector()
        collector.start("t1")
        data = collector.finish("t1")
        assert isinstance(data, TurnMetricsData)
        assert data.duration_ms >= 0
        assert collector.get("t1") is None
        assert collector.finish("t1") is None

    def test_turns_are_isolated(self) -> None:
        collector = MetricsCollector()
        collector.start("a")
        collector.start("b")
        collector.record_tool_call("a")
        assert collector.get("a").tool_calls == 1  # type: ignore[union-attr]
        assert collector.get("b").tool_calls == 0  # type: ignore[union-attr]

    def test_to_dict(self) -> None:
        data = TurnMetricsData(prompt_tokens=3, completion_tokens=4, total_tokens=7, llm_calls=1)
        as_dict = data.to_dict()
        assert as_dict["total_tokens"] == 7
        assert "started_at" not in as_dict
