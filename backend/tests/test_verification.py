"""Tests for agents/verification.py -- answer rules, feedback and retry prompts."""

from agents.verification import (
    VERIFICATION_RULES,
    VerificationContext,
    VerificationResult,
    VerificationRule,
    VerificationSeverity,
    build_retry_prompt,
    count_citation_markers,
    has_factual_claims,
    verify_answer,
)

LYON = VerificationContext("How many people live in Lyon?")
LYON_WITH_SOURCES = VerificationContext("How many people live in Lyon?", ("https://insee.fr/lyon",))


# =========================================================================
# Helpers
# =========================================================================


class TestClaimDetection:
    """Factual claims and citation markers."""

    def test_figures_and_years_are_claims(self) -> None:
        assert has_factual_claims("Lyon had 520,000 inhabitants in 2020.")
        assert has_factual_claims("Unemployment fell to 7.1% last quarter.")
        assert has_factual_claims("According to the census, it grew.")

    def test_plain_prose_is_not_a_claim(self) -> None:
        assert not has_factual_claims("Lyon is a lovely city on two rivers.")

    def test_distinct_positive_markers_counted(self) -> None:
        assert count_citation_markers("See [1] and [2], again [1], not [0].") == 2
        assert count_citation_markers("No markers here.") == 0


# =========================================================================
# verify_answer
# =========================================================================


class TestVerifyAnswer:
    """Only ERROR rules block an answer."""

    def test_good_answer_passes_clean(self) -> None:
        result = verify_answer("About 520,000 people live in Lyon.", LYON)
        assert result.passed
        assert result.issues == ()
        assert result.feedback == "Verification passed"

    def test_empty_answer_blocked(self) -> None:
        result = verify_answer("   ", LYON)
        assert not result.passed
        assert result.rule_names[0] == "not_empty"
        assert result.feedback.startswith("Please fix: Response cannot be empty")

    def test_warnings_alone_do_not_block(self) -> None:
        result = verify_answer("Yes.", VerificationContext("What is the capital of France?"))
        assert result.passed
        assert "minimum_length" in result.rule_names
        assert "addresses_question" in result.rule_names
        assert all(i.severity == VerificationSeverity.WARNING for i in result.issues)

    def test_uncited_claims_blocked_when_sources_gathered(self) -> None:
        result = verify_answer("Lyon has about 520,000 inhabitants.", LYON_WITH_SOURCES)
        assert not result.passed
        assert result.rule_names == ["cites_sources"]

    def test_markers_or_sources_list_satisfy_citations(self) -> None:
        assert verify_answer("Lyon has about 520,000 inhabitants [1].", LYON_WITH_SOURCES).passed
        assert verify_answer(
            "Lyon has about 520,000 inhabitants.\n\nSources:\nhttps://insee.fr/lyon",
            LYON_WITH_SOURCES,
        ).passed

    def test_citations_not_required_without_claims(self) -> None:
        assert verify_answer("Lyon is a lively city where many people live.", LYON_WITH_SOURCES).passed

    def test_citations_not_required_without_sources(self) -> None:
        assert verify_answer("Lyon has about 520,000 inhabitants.", LYON).passed

    def test_repeated_phrase_flagged(self) -> None:
        result = verify_answer(
            "The quick brown fox jumps over the quick brown fox again in Lyon.",
            LYON,
        )
        assert result.passed
        assert "response_coherence" in result.rule_names

    def test_strong_claims_without_sources_flagged(self) -> None:
        result = verify_answer("Studies show Lyon definitely has many people.", LYON)
        assert "supported_claims" in result.rule_names

    def test_custom_rules(self) -> None:
        shouting = VerificationRule(
            name="no_shouting",
            check=lambda answer, _: not answer.isupper(),
            feedback="Do not shout",
            severity=VerificationSeverity.ERROR,
        )
        result = verify_answer("LYON IS BIG", LYON, rules=[shouting])
        assert not result.passed
        assert result.feedback == "Please fix: Do not shout"

    def test_rule_names_are_unique(self) -> None:
        names = [rule.name for rule in VERIFICATION_RULES]
        assert len(names) == len(set(names))


# =========================================================================
# build_retry_prompt
# =========================================================================


class TestRetryPrompt:
    """Corrective message sent after a rejected answer."""

    def test_carries_attempt_and_feedback(self) -> None:
        result = verify_answer("", LYON)
        prompt = build_retry_prompt("", result, attempt=2, max_attempts=3)
        assert prompt.startswith("[Verification failed - attempt 2/3]")
        assert result.feedback in prompt

    def test_long_answer_excerpted(self) -> None:
        answer = "x" * 600
        prompt = build_retry_prompt(answer, VerificationResult(passed=False), attempt=1, max_attempts=3)
        assert "x" * 500 + "..." in prompt
        assert "x" * 501 not in prompt
