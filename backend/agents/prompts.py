"""System prompts for the orchestrator, sub-agent roles, code tasks and synthesis.

This module contains the prompt templates used by the orchestration core:
- ORCHESTRATOR_PROMPT: Drives the top-level agent loop
- SUBAGENT_ROLES: Specialist roles a sub-agent can be spawned with
- CODE_GENERATION_PROMPT / CODE_RETRY_PROMPT: Code task pipeline
- SYNTHESIS_PROMPT: Merges sub-agent findings into one summary
"""

from dataclasses import dataclass
from typing import Any

from agents.tools import EXECUTE_CODE_TOOL, RUN_CODE_TASK_TOOL, SPAWN_SUBAGENTS_TOOL


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


# Orchestrator prompt for the top-level agent loop
ORCHESTRATOR_PROMPT = f"""\
You are a helpful assistant in a team chat. Answer the user's latest message \
directly when you can. Use tools only when they add something you cannot do \
from the conversation alone.

## Tools
- `{SPAWN_SUBAGENTS_TOOL}`: hand focused questions to specialists that work in \
parallel (researcher, analyst, reviewer). Give each one a narrow task.
- `{RUN_CODE_TASK_TOOL}`: when the answer needs a computation, have code written, \
run and checked for you.
- `{EXECUTE_CODE_TOOL}`: run a short program you wrote yourself.

## Rules
- Tool results may report failures. Read them, adapt, and do not repeat a call \
that failed for the same reason.
- Keep any source citations from tool results exactly as given.
- If the findings disagree, say so instead of picking a side silently.
- Answer in plain prose. Keep it concise."""


def build_turn_context(context: dict[str, Any] | None) -> str:
    """Render caller-supplied context (channel, user, ...) as a prompt section."""
    if not context:
        return ""
    lines = [f"- {key}: {value}" for key, value in sorted(context.items())]
    return "## Conversation Context\n" + "\n".join(lines)


def get_orchestrator_prompt(context: dict[str, Any] | None = None) -> str:
    return compose_prompt_sections(ORCHESTRATOR_PROMPT, build_turn_context(context))


# ---------------------------------------------------------------------------
# Sub-agent roles
# ---------------------------------------------------------------------------


SUBAGENT_BASE_PROMPT = """\
You are a specialist working on one narrow task for a coordinating assistant. \
You only see the context you were given; do not ask for more. Stay on your task, \
state facts plainly, and list any sources you used as `[n] title - url` lines at \
the end."""


@dataclass(frozen=True)
class SubagentRole:
    """Capabilities of one specialist role.

    Attributes:
        name: Role name used in spawn requests.
        system_prompt: Role-specific instructions.
        tools: Names of FUNCTION tools the role may call. Never includes the
            spawn tool, so sub-agents cannot spawn further sub-agents.
        default_context_fields: Parent context fields copied into the child.
    """

    name: str
    system_prompt: str
    tools: tuple[str, ...] = ()
    default_context_fields: frozenset[str] = frozenset({"user_message"})


SUBAGENT_ROLES: dict[str, SubagentRole] = {
    "researcher": SubagentRole(
        name="researcher",
        system_prompt=(
            "You are a researcher. Gather the facts relevant to your task, "
            "note where each fact comes from, and flag anything uncertain."
        ),
        default_context_fields=frozenset({"user_message", "thread_history"}),
    ),
    "analyst": SubagentRole(
        name="analyst",
        system_prompt=(
            "You are an analyst. Work through numbers and comparisons carefully. "
            f"Use `{EXECUTE_CODE_TOOL}` for any calculation that is not trivial, "
            "and report the figures you computed."
        ),
        tools=(EXECUTE_CODE_TOOL,),
        default_context_fields=frozenset({"user_message"}),
    ),
    "reviewer": SubagentRole(
        name="reviewer",
        system_prompt=(
            "You are a reviewer. Check the claims and reasoning in the context "
            "against your task, point out errors and gaps, and say what holds up."
        ),
        default_context_fields=frozenset({"user_message", "thread_history"}),
    ),
}


def get_subagent_prompt(role: SubagentRole, task: str) -> str:
    return compose_prompt_sections(
        SUBAGENT_BASE_PROMPT,
        role.system_prompt,
        f"## Your Task\n{task.strip()}",
    )


def render_isolated_context(context: dict[str, Any]) -> str:
    """Render a sub-agent's isolated context as its only user message."""
    sections = []
    if "thread_history" in context:
        history = context["thread_history"]
        if isinstance(history, list):
            history = "\n".join(
                f"{m.get('role', 'user')}: {m.get('content', '')}" if isinstance(m, dict) else str(m)
                for m in history
            )
        sections.append(f"## Thread So Far\n{history}")
    for key, value in context.items():
        if key in ("thread_history", "user_message"):
            continue
        sections.append(f"## {key.replace('_', ' ').title()}\n{value}")
    if "user_message" in context:
        sections.append(f"## User Question\n{context['user_message']}")
    return compose_prompt_sections(*sections) or "(no additional context)"


# ---------------------------------------------------------------------------
# Code task pipeline
# ---------------------------------------------------------------------------


CODE_GENERATION_PROMPT = """\
You write small, self-contained programs that answer a question by printing \
the result. The program runs once in a sandbox with no network and no input, \
with a time limit of a few seconds.

Respond with only a JSON object:
{"language": "python" | "javascript" | "bash", "code": "<program>", \
"purpose": "<one sentence>"}

Print the answer to stdout. Do not write files. Prefer python."""


CODE_RETRY_PROMPT = """\
The previous program did not pass validation. Fix it.

## Previous Program ({language})
```
{code}
```

## Problems Found
{issues}

Respond with only a corrected JSON object in the same format. If the task \
itself cannot succeed (for example it divides by zero), make the program \
report that clearly on stdout and exit with code 0."""


def build_code_generation_messages(task: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": CODE_GENERATION_PROMPT},
        {"role": "user", "content": f"Task: {task.strip()}"},
    ]


def build_code_retry_messages(
    task: str,
    code: str,
    language: str,
    issues: list[str],
) -> list[dict[str, str]]:
    """Messages for the single corrective regeneration."""
    issue_lines = "\n".join(f"- {issue}" for issue in issues) or "- (none reported)"
    return [
        {"role": "system", "content": CODE_GENERATION_PROMPT},
        {"role": "user", "content": f"Task: {task.strip()}"},
        {
            "role": "user",
            "content": CODE_RETRY_PROMPT.format(language=language, code=code, issues=issue_lines),
        },
    ]


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


SYNTHESIS_PROMPT = """\
You merge findings from several specialists into one answer to the question \
below. Use only what the findings say; do not add facts of your own.

## Question
{query}

## Findings
{findings}

## Instructions
- Write a short structured summary (a few sentences or bullets).
- Keep citation lines exactly as written.
- Where findings disagree, state both positions."""


def build_synthesis_messages(query: str, findings: list[tuple[str, str]]) -> list[dict[str, str]]:
    """Messages for the synthesis call.

    Args:
        query: The question the specialists worked on.
        findings: (role, output) pairs that passed the relevance filter.
    """
    rendered = "\n\n".join(f"### {role}\n{output.strip()}" for role, output in findings)
    return [
        {"role": "user", "content": SYNTHESIS_PROMPT.format(query=query.strip(), findings=rendered)},
    ]
