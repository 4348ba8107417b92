"""Rule-based checks on the agent's final answer.

Before a turn ends, the direct answer is run through ``VERIFICATION_RULES``.
Rules with ERROR severity block the answer: the loop re-prompts the engine
with the structured feedback, up to ``verification_max_attempts`` answers per
turn, and then fails the turn gracefully. WARNING rules never block on their
own but ride along in the feedback when a retry happens.
"""

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from agents.utils import extract_keywords


class VerificationSeverity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class VerificationContext:
    """What the answer is checked against.

    Attributes:
        user_message: The question of the turn.
        sources: Citations gathered by tools during the turn.
    """

    user_message: str
    sources: Sequence[str] = ()


@dataclass(frozen=True)
class VerificationIssue:
    rule: str
    severity: VerificationSeverity
    feedback: str


@dataclass(frozen=True)
class VerificationResult:
    passed: bool
    issues: tuple[VerificationIssue, ...] = field(default_factory=tuple)

    @property
    def feedback(self) -> str:
        if not self.issues:
            return "Verification passed"
        return "Please fix: " + "; ".join(issue.feedback for issue in self.issues)

    @property
    def rule_names(self) -> list[str]:
        return [issue.rule for issue in self.issues]


@dataclass(frozen=True)
class VerificationRule:
    name: str
    check: Callable[[str, VerificationContext], bool]
    feedback: str
    severity: VerificationSeverity


_CITATION_MARKER = re.compile(r"\[(\d+)\]")
_SOURCES_FOOTER = re.compile(r"\bsources:", re.IGNORECASE)
_FACTUAL_INDICATORS = (
    re.compile(r"\b\d{4}\b"),
    re.compile(r"\d+(?:\.\d+)?\s?%"),
    re.compile(r"\$[\d,]+"),
    re.compile(r"\d{1,3}(?:,\d{3})+"),
    re.compile(r"according to", re.IGNORECASE),
    re.compile(r"studies show|research indicates|officially", re.IGNORECASE),
)
_STRONG_CLAIMS = re.compile(
    r"\b(?:definitely|certainly|guaranteed|studies show|research proves|data shows|scientists agree)\b|100%",
    re.IGNORECASE,
)


def has_factual_claims(text: str) -> bool:
    return any(pattern.search(text) for pattern in _FACTUAL_INDICATORS)


def count_citation_markers(text: str) -> int:
    """Number of distinct ``[n]`` markers with n > 0."""
    return len({int(n) for n in _CITATION_MARKER.findall(text) if int(n) > 0})


def _cites_sources(answer: str, context: VerificationContext) -> bool:
    if not context.sources:
        return True
    if count_citation_markers(answer) or _SOURCES_FOOTER.search(answer):
        return True
    return not has_factual_claims(answer)


def _addresses_question(answer: str, context: VerificationContext) -> bool:
    keywords = extract_keywords(context.user_message)
    if not keywords:
        return True
    lowered = answer.lower()
    return any(k in lowered for k in keywords)


def _coherent(answer: str, context: VerificationContext) -> bool:
    sentences = [s for s in re.split(r"[.!?]+", answer) if s.strip()]
    if not sentences:
        return True
    short = sum(1 for s in sentences if len(s.strip()) < 10)
    if short / len(sentences) > 0.5 and len(sentences) > 2:
        return False
    words = answer.lower().split()
    for i in range(len(words) - 5):
        phrase = " ".join(words[i:i + 3])
        if len(phrase) > 10 and phrase in " ".join(words[i + 3:]):
            return False
    return True


VERIFICATION_RULES: tuple[VerificationRule, ...] = (
    VerificationRule(
        name="not_empty",
        check=lambda answer, _: bool(answer.strip()),
        feedback="Response cannot be empty",
        severity=VerificationSeverity.ERROR,
    ),
    VerificationRule(
        name="cites_sources",
        check=_cites_sources,
        feedback="Sources were gathered but the factual claims carry no citation markers [1], [2] or Sources list",
        severity=VerificationSeverity.ERROR,
    ),
    VerificationRule(
        name="minimum_length",
        check=lambda answer, ctx: len(answer.strip()) >= min(len(ctx.user_message.strip()), 50),
        feedback="Response is too short for the question",
        severity=VerificationSeverity.WARNING,
    ),
    VerificationRule(
        name="addresses_question",
        check=_addresses_question,
        feedback="Response does not appear to address the question",
        severity=VerificationSeverity.WARNING,
    ),
    VerificationRule(
        name="response_coherence",
        check=_coherent,
        feedback="Response appears incoherent or repeats phrases",
        severity=VerificationSeverity.WARNING,
    ),
    VerificationRule(
        name="supported_claims",
        check=lambda answer, ctx: bool(ctx.sources) or not _STRONG_CLAIMS.search(answer),
        feedback="Response makes strong factual claims without source support",
        severity=VerificationSeverity.WARNING,
    ),
)


def verify_answer(
    answer: str,
    context: VerificationContext,
    rules: Sequence[VerificationRule] = VERIFICATION_RULES,
) -> VerificationResult:
    """Run every rule; the answer passes when no ERROR rule fails."""
    issues = tuple(
        VerificationIssue(rule=rule.name, severity=rule.severity, feedback=rule.feedback)
        for rule in rules
        if not rule.check(answer, context)
    )
    passed = not any(issue.severity == VerificationSeverity.ERROR for issue in issues)
    return VerificationResult(passed=passed, issues=issues)


def build_retry_prompt(answer: str, result: VerificationResult, attempt: int, max_attempts: int) -> str:
    """Corrective user message appended after a rejected answer."""
    excerpt = answer[:500] + ("..." if len(answer) > 500 else "")
    return (
        f"[Verification failed - attempt {attempt}/{max_attempts}]\n\n"
        f"Your previous answer failed verification:\n{result.feedback}\n\n"
        "Revise the answer to fix these issues. Answer the user's question directly "
        "and cite gathered sources with [n] markers.\n\n"
        f"Previous answer:\n---\n{excerpt}\n---\n\n"
        "Provide the corrected answer:"
    )
