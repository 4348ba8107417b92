"""Aggregation of sub-agent findings into one contradiction-annotated summary.

Only successful results above the relevance threshold are used. Contradictions
are detected deterministically from simple copular claims so they are listed
even when the summarizing model glosses over them.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from itertools import combinations

import structlog

from agents.prompts import build_synthesis_messages
from agents.subagents import SubagentResult
from agents.utils import LLMClient, extract_citations
from config import settings

logger = structlog.get_logger()

NO_SUFFICIENT_INFORMATION = (
    "No sufficient information was found to answer this question: none of the "
    "specialists returned relevant findings."
)

# "<subject> is|are|was|were [not] <value>"
_CLAIM_PATTERN = re.compile(
    r"^(?P<subject>[A-Za-z0-9][\w\s\-']{1,80}?)\s+(?P<verb>is|are|was|were)\s+"
    r"(?P<neg>not\s+)?(?P<value>[^.;!?]{1,120})",
    re.IGNORECASE,
)
_NUMBER_PATTERN = re.compile(r"-?\d+(?:[.,]\d+)*")
_LEADING_ARTICLES = ("the ", "a ", "an ")
# Values longer than this are descriptions rather than identities.
_MAX_IDENTITY_TOKENS = 3


@dataclass(frozen=True)
class Claim:
    role: str
    subject: str
    negated: bool
    value: str
    text: str


@dataclass(frozen=True)
class Contradiction:
    """Two findings that assert incompatible things about one subject."""

    subject: str
    first_role: str
    first_claim: str
    second_role: str
    second_claim: str

    def describe(self) -> str:
        return (
            f"{self.subject}: {self.first_role} says \"{self.first_claim}\" but "
            f"{self.second_role} says \"{self.second_claim}\""
        )


@dataclass
class SynthesisResult:
    """Merged findings.

    Attributes:
        summary: Structured natural-language summary.
        sources: Citations from the used findings, verbatim, deduplicated.
        contradictions: Incompatible claims found across findings.
        used_roles: Roles whose findings passed the filter.
        discarded_count: Results dropped (failed or below threshold).
    """

    summary: str
    sources: list[str] = field(default_factory=list)
    contradictions: list[Contradiction] = field(default_factory=list)
    used_roles: list[str] = field(default_factory=list)
    discarded_count: int = 0

    def to_llm_text(self) -> str:
        parts = [self.summary.strip()]
        if self.contradictions:
            parts.append(
                "Contradictions between findings:\n"
                + "\n".join(f"- {c.describe()}" for c in self.contradictions)
            )
        if self.sources:
            parts.append("Sources:\n" + "\n".join(self.sources))
        return "\n\n".join(parts)


def _normalize(text: str) -> str:
    text = " ".join(text.lower().split()).strip(" .,:;\"'")
    for article in _LEADING_ARTICLES:
        if text.startswith(article):
            text = text[len(article):]
    return text


def extract_claims(role: str, text: str) -> list[Claim]:
    """Pull copular claims out of sentences and bullet lines."""
    claims = []
    for raw_sentence in re.split(r"(?<=[.!?])\s+|\n+", text):
        sentence = raw_sentence.strip().lstrip("-*• ").strip()
        match = _CLAIM_PATTERN.match(sentence)
        if match is None:
            continue
        claims.append(Claim(
            role=role,
            subject=_normalize(match.group("subject")),
            negated=match.group("neg") is not None,
            value=_normalize(match.group("value")),
            text=sentence.rstrip(".!?"),
        ))
    return claims


def claims_conflict(a: Claim, b: Claim) -> bool:
    """Whether two claims on the same subject are incompatible."""
    if a.subject != b.subject:
        return False
    if a.value == b.value:
        return a.negated != b.negated
    if a.negated or b.negated:
        return False

    numbers_a = _NUMBER_PATTERN.findall(a.value)
    numbers_b = _NUMBER_PATTERN.findall(b.value)
    if numbers_a and numbers_b:
        return numbers_a != numbers_b

    short = len(a.value.split()) <= _MAX_IDENTITY_TOKENS and len(b.value.split()) <= _MAX_IDENTITY_TOKENS
    if short:
        return a.value not in b.value and b.value not in a.value
    return False


def find_contradictions(results: Sequence[SubagentResult]) -> list[Contradiction]:
    """Scan findings pairwise (across different results) for conflicting claims."""
    claims_by_result = [extract_claims(r.role, r.output or "") for r in results]
    found: list[Contradiction] = []
    seen: set[tuple[str, str, str]] = set()
    for left, right in combinations(range(len(results)), 2):
        for a in claims_by_result[left]:
            for b in claims_by_result[right]:
                if not claims_conflict(a, b):
                    continue
                key = (a.subject, *sorted((a.text, b.text)))
                if key in seen:
                    continue
                seen.add(key)
                found.append(Contradiction(
                    subject=a.subject,
                    first_role=a.role,
                    first_claim=a.text,
                    second_role=b.role,
                    second_claim=b.text,
                ))
    return found


def _digest(results: Sequence[SubagentResult]) -> str:
    """Deterministic summary used when the summarizing model is unavailable."""
    lines = []
    for result in results:
        first = (result.output or "").strip().split("\n\n")[0].strip()
        lines.append(f"- {result.role}: {first}")
    return "Findings:\n" + "\n".join(lines)


class Synthesizer:
    """Merges sub-agent results.

    Attributes:
        llm_client: Reasoning engine used for the summary.
        relevance_threshold: Results must score strictly above this.
        model: Model used for the summary.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        relevance_threshold: float | None = None,
        model: str | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.relevance_threshold = (
            settings.subagent_relevance_threshold if relevance_threshold is None
            else relevance_threshold
        )
        self.model = model or settings.synthesizer_model

    def select(self, results: Sequence[SubagentResult]) -> list[SubagentResult]:
        return [
            r for r in results
            if r.success and r.relevance > self.relevance_threshold
        ]

    async def synthesize(
        self,
        results: Sequence[SubagentResult],
        query: str,
        *,
        trace_id: str | None = None,
    ) -> SynthesisResult:
        """Summarize the usable results and list their contradictions."""
        used = self.select(results)
        discarded = len(results) - len(used)

        if not used:
            logger.info("synthesis_no_usable_results", discarded=discarded, trace_id=trace_id)
            return SynthesisResult(summary=NO_SUFFICIENT_INFORMATION, discarded_count=discarded)

        sources: dict[str, None] = {}
        for result in used:
            for citation in extract_citations(result.output or ""):
                sources.setdefault(citation, None)
        contradictions = find_contradictions(used)

        try:
            response = await self.llm_client.call(
                build_synthesis_messages(query, [(r.role, r.output or "") for r in used]),
                model=self.model,
                trace_id=trace_id,
                agent_id="synthesizer",
            )
            summary = response.content.strip() or _digest(used)
        except Exception as e:
            logger.warning("synthesis_llm_failed", error=str(e), error_type=type(e).__name__)
            summary = _digest(used)

        logger.info(
            "synthesis_completed",
            used=len(used),
            discarded=discarded,
            contradictions=len(contradictions),
            sources=len(sources),
        )
        return SynthesisResult(
            summary=summary,
            sources=list(sources),
            contradictions=contradictions,
            used_roles=[r.role for r in used],
            discarded_count=discarded,
        )
