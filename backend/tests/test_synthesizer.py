"""Tests for agents/synthesizer.py -- filtering, contradictions and summaries."""

from agents.result import ErrorInfo, ErrorKind
from agents.subagents import SubagentResult
from agents.synthesizer import (
    NO_SUFFICIENT_INFORMATION,
    Synthesizer,
    claims_conflict,
    extract_claims,
    find_contradictions,
)
from agents.utils import MockLLMClient
from tests.conftest import make_llm_response


def _finding(role: str, output: str, relevance: float = 0.9) -> SubagentResult:
    return SubagentResult(success=True, role=role, task="t", output=output, relevance=relevance)


def _failure(role: str) -> SubagentResult:
    return SubagentResult(
        success=False,
        role=role,
        task="t",
        error=ErrorInfo.create(ErrorKind.TIMEOUT, "too slow"),
    )


# =========================================================================
# Claims
# =========================================================================


class TestClaims:
    """Copular claim extraction and conflict rules."""

    def test_extracts_subject_and_value(self) -> None:
        [claim] = extract_claims("researcher", "The capital of Australia is Canberra.")
        assert claim.subject == "capital of australia"
        assert claim.value == "canberra"
        assert claim.negated is False
        assert claim.text == "The capital of Australia is Canberra"

    def test_bullets_and_negation(self) -> None:
        claims = extract_claims("reviewer", "- Coffee is not harmful\n- Tea is popular")
        assert [(c.subject, c.negated) for c in claims] == [("coffee", True), ("tea", False)]

    def test_different_identities_conflict(self) -> None:
        a, b = extract_claims("a", "The capital is Canberra. The capital is Sydney.")
        assert claims_conflict(a, b)

    def test_negation_conflicts(self) -> None:
        a, b = extract_claims("a", "Coffee is healthy. Coffee is not healthy.")
        assert claims_conflict(a, b)

    def test_different_numbers_conflict(self) -> None:
        a, b = extract_claims("a", "Lyon population is 520,000. Lyon population is 513,000.")
        assert claims_conflict(a, b)

    def test_compatible_values(self) -> None:
        a, b = extract_claims("a", "Lyon is large. Lyon is a large city.")
        assert not claims_conflict(a, b)

    def test_different_subjects(self) -> None:
        a, b = extract_claims("a", "Lyon is large. Nice is small.")
        assert not claims_conflict(a, b)


class TestFindContradictions:
    """Only claims from different results are compared."""

    def test_across_results(self) -> None:
        found = find_contradictions([
            _finding("researcher", "The capital of Australia is Canberra."),
            _finding("reviewer", "The capital of Australia is Sydney."),
        ])
        assert len(found) == 1
        assert found[0].first_role == "researcher"
        assert found[0].second_role == "reviewer"
        assert "Canberra" in found[0].describe()

    def test_within_one_result_ignored(self) -> None:
        found = find_contradictions([
            _finding("researcher", "The capital is Canberra. The capital is Sydney."),
        ])
        assert found == []


# =========================================================================
# Synthesizer
# =========================================================================


class TestSynthesizer:
    """synthesize() filters, summarizes and annotates."""

    def test_select_uses_strict_threshold(self) -> None:
        synthesizer = Synthesizer(MockLLMClient(), relevance_threshold=0.5)
        kept = synthesizer.select([
            _finding("a", "x", relevance=0.5),
            _finding("b", "x", relevance=0.51),
            _failure("c"),
        ])
        assert [r.role for r in kept] == ["b"]

    async def test_no_usable_results(self) -> None:
        llm = MockLLMClient()
        result = await Synthesizer(llm, relevance_threshold=0.5).synthesize(
            [_failure("researcher"), _finding("analyst", "off topic", relevance=0.1)],
            "What is the capital?",
        )
        assert result.summary == NO_SUFFICIENT_INFORMATION
        assert result.discarded_count == 2
        assert llm.call_history == []

    async def test_summary_with_sources_and_contradictions(self) -> None:
        llm = MockLLMClient([make_llm_response("Sources disagree on the capital.")])
        result = await Synthesizer(llm, relevance_threshold=0.5, model="summary-model").synthesize(
            [
                _finding("researcher", "The capital of Australia is Canberra.\n\n[1] Gov site - https://australia.gov.au"),
                _finding("reviewer", "The capital of Australia is Sydney.\n\nSee https://example.com/sydney"),
                _failure("analyst"),
            ],
            "What is the capital of Australia?",
        )

        assert result.summary == "Sources disagree on the capital."
        assert result.used_roles == ["researcher", "reviewer"]
        assert result.discarded_count == 1
        assert result.sources == ["[1] Gov site - https://australia.gov.au", "https://example.com/sydney"]
        assert len(result.contradictions) == 1
        assert llm.call_history[0]["model"] == "summary-model"
        assert llm.call_history[0]["agent_id"] == "synthesizer"

        text = result.to_llm_text()
        assert "Contradictions between findings:" in text
        assert "Sources:" in text

    async def test_llm_failure_falls_back_to_digest(self) -> None:
        llm = MockLLMClient([RuntimeError("engine down")])
        result = await Synthesizer(llm, relevance_threshold=0.5).synthesize(
            [_finding("researcher", "Canberra is the capital.\n\nMore detail.")],
            "capital?",
        )
        assert result.summary == "Findings:\n- researcher: Canberra is the capital."

    async def test_blank_summary_falls_back_to_digest(self) -> None:
        llm = MockLLMClient([make_llm_response("  ")])
        result = await Synthesizer(llm, relevance_threshold=0.5).synthesize(
            [_finding("analyst", "Numbers check out.")],
            "check",
        )
        assert result.summary.startswith("Findings:")
