"""Code task pipeline LangGraph implementation.

Generates a program for a task, runs it in the sandbox through the
ToolExecutor, validates the run, and allows exactly one corrective
regeneration:

    START -> generate -> execute -> validate -> [finalize | regenerate -> execute]
    finalize -> END

The second validation outcome is final whatever it says. The phase history
(GENERATING, EXECUTING, VALIDATING, RETRYING, DONE) is recorded in the state.
"""

import asyncio
import operator
import re
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import build_code_generation_messages, build_code_retry_messages
from agents.result import ErrorInfo, ErrorKind, Result, error_from_exception
from agents.tools import EXECUTE_CODE_TOOL, ToolCallRequest, ToolExecutor
from agents.utils import LLMClient, extract_json_from_response
from config import settings
from events.tracing import SpanRecord
from sandbox.docker_sandbox import ExecutionResult
from sandbox.security import normalize_language

logger = structlog.get_logger()

# One corrective regeneration per task.
MAX_CODE_RETRIES = 1

_STDERR_ERROR_MARKERS = re.compile(
    r"Traceback \(most recent call last\)|\b\w*Error:|\bException:|\bFATAL\b|\bpanic:",
)
_FENCED_CODE = re.compile(r"```([\w+-]*)[ \t]*\n([\s\S]*?)```")


class CodeTaskPhase(StrEnum):
    GENERATING = "generating"
    EXECUTING = "executing"
    VALIDATING = "validating"
    RETRYING = "retrying"
    DONE = "done"


@dataclass(frozen=True)
class ValidationResult:
    """Verdict on one sandbox run.

    Attributes:
        passed: True when no issues were found.
        issues: Problems in detection order.
        sanitized_output: Program output, truncated to the ceiling.
    """

    passed: bool
    issues: tuple[str, ...] = ()
    sanitized_output: str | None = None


@dataclass(frozen=True)
class GeneratedCode:
    language: str
    code: str
    purpose: str = ""


@dataclass
class CodeTaskOutcome:
    """Final report of a code task."""

    task: str
    language: str
    code: str
    purpose: str
    passed: bool
    issues: list[str]
    output: str
    cycles: int
    phases: list[str] = field(default_factory=list)

    def to_llm_text(self) -> str:
        verdict = "passed validation" if self.passed else "did not pass validation"
        runs = "run" if self.cycles == 1 else "runs"
        parts = [
            f"Code task {verdict} after {self.cycles} {runs}.",
            f"Purpose: {self.purpose}" if self.purpose else "",
            f"Program ({self.language}):\n```{self.language}\n{self.code.strip()}\n```",
            f"Output:\n{self.output.strip()}" if self.output.strip() else "Output: (none)",
        ]
        if self.issues:
            parts.append("Issues:\n" + "\n".join(f"- {issue}" for issue in self.issues))
        return "\n\n".join(p for p in parts if p)


def validate_execution(result: ExecutionResult, max_output_chars: int) -> ValidationResult:
    """Check a sandbox run.

    Issues are recorded in this order: timeout; non-zero exit code; an error
    marker on stderr (only when the exit code is zero); output over the
    ceiling, which is truncated and kept rather than discarded.
    """
    issues: list[str] = []

    if result.timed_out:
        issues.append("Execution timed out")
    elif result.exit_code != 0:
        issues.append(f"Non-zero exit code: {result.exit_code}")

    if result.exit_code == 0 and not result.timed_out:
        marker = _STDERR_ERROR_MARKERS.search(result.stderr or "")
        if marker is not None:
            line = next(
                (ln.strip() for ln in result.stderr.splitlines() if marker.group(0) in ln),
                marker.group(0),
            )
            issues.append(f"Error reported on stderr: {line[:200]}")

    output = result.stdout or ""
    if len(output) > max_output_chars:
        issues.append(f"Output exceeded {max_output_chars} characters and was truncated")
        output = output[:max_output_chars] + "\n...[output truncated]"

    return ValidationResult(passed=not issues, issues=tuple(issues), sanitized_output=output)


def parse_generated_code(text: str) -> GeneratedCode | None:
    """Read the program out of a generation response.

    Expects a JSON object with ``language``/``code``/``purpose``; falls back to
    the first fenced code block.
    """
    data = extract_json_from_response(text)
    if data is not None and isinstance(data.get("code"), str) and data["code"].strip():
        language = str(data.get("language") or "python")
        return GeneratedCode(
            language=normalize_language(language) or language,
            code=data["code"],
            purpose=str(data.get("purpose") or ""),
        )

    match = _FENCED_CODE.search(text)
    if match is not None and match.group(2).strip():
        tag = match.group(1) or "python"
        return GeneratedCode(language=normalize_language(tag) or tag, code=match.group(2))

    return None


class CodeTaskState(TypedDict):
    """State for the code task graph.

    Attributes:
        task: What the program should compute.
        trace_id: Trace for spans and metrics.
        cancel_event: Enclosing cancellation signal, if any.
        generated: The program currently being tried.
        execution: Result of the latest run (None if the run failed).
        execution_error: Executor failure of the latest run.
        validation: Verdict of the latest run.
        cycles: Completed execute/validate cycles.
        retries_used: Corrective regenerations used.
        regenerated: Whether the latest regeneration produced a program.
        error: Fatal failure (no program could be produced).
        phases: Phase history, appended by each node.
    """

    task: str
    trace_id: str
    cancel_event: asyncio.Event | None
    generated: GeneratedCode | None
    execution: ExecutionResult | None
    execution_error: ErrorInfo | None
    validation: ValidationResult | None
    cycles: int
    retries_used: int
    regenerated: bool
    error: ErrorInfo | None
    phases: Annotated[list[str], operator.add]


class CodeTaskPipeline:
    """Generate -> execute -> validate with one corrective retry.

    Attributes:
        llm_client: Reasoning engine used to write programs.
        executor: Runs ``execute_code`` with timeout and retry.
        model: Model used for generation.
        max_output_chars: Output ceiling applied by validation.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        executor: ToolExecutor,
        model: str | None = None,
        max_output_chars: int | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.executor = executor
        self.model = model or settings.code_model
        self.max_output_chars = max_output_chars or settings.code_max_output_chars
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(CodeTaskState)

        graph.add_node("generate", self._generate)
        graph.add_node("execute", self._execute)
        graph.add_node("validate", self._validate)
        graph.add_node("regenerate", self._regenerate)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "generate")
        graph.add_conditional_edges(
            "generate",
            self._has_program,
            {"execute": "execute", "finalize": "finalize"},
        )
        graph.add_edge("execute", "validate")
        graph.add_conditional_edges(
            "validate",
            self._should_retry,
            {"retry": "regenerate", "done": "finalize"},
        )
        graph.add_conditional_edges(
            "regenerate",
            self._after_regenerate,
            {"execute": "execute", "finalize": "finalize"},
        )
        graph.add_edge("finalize", END)

        return graph.compile()

    async def _ask_for_code(
        self,
        messages: list[dict[str, str]],
        trace_id: str,
    ) -> tuple[GeneratedCode | None, ErrorInfo | None]:
        try:
            response = await self.llm_client.call(
                messages,
                model=self.model,
                trace_id=trace_id,
                agent_id="code_task",
            )
        except Exception as e:
            return None, error_from_exception(e)

        generated = parse_generated_code(response.content)
        if generated is None:
            return None, ErrorInfo.create(
                ErrorKind.VALIDATION_FAILED,
                "Code generation returned no program",
            )
        return generated, None

    async def _generate(self, state: CodeTaskState) -> dict[str, Any]:
        generated, error = await self._ask_for_code(
            build_code_generation_messages(state["task"]),
            state["trace_id"],
        )
        if error is not None:
            logger.warning("code_generation_failed", kind=error.kind.value, reason=error.message)
        return {
            "generated": generated,
            "error": error,
            "phases": [CodeTaskPhase.GENERATING.value],
        }

    async def _execute(self, state: CodeTaskState) -> dict[str, Any]:
        generated = state["generated"]
        assert generated is not None
        cycle = state["cycles"] + 1
        result = await self.executor.execute(
            ToolCallRequest(
                tool_name=EXECUTE_CODE_TOOL,
                arguments={"code": generated.code, "language": generated.language},
                call_id=f"code_task_run_{cycle}",
            ),
            trace_id=state["trace_id"],
            agent_id="code_task",
            cancel_event=state["cancel_event"],
        )
        return {
            "execution": result.value if result.ok else None,
            "execution_error": result.error,
            "cycles": cycle,
            "phases": [CodeTaskPhase.EXECUTING.value],
        }

    async def _validate(self, state: CodeTaskState) -> dict[str, Any]:
        error = state["execution_error"]
        execution = state["execution"]
        if error is not None or execution is None:
            kind = error.kind.value if error is not None else ErrorKind.UNKNOWN.value
            validation = ValidationResult(passed=False, issues=(f"Execution failed: {kind}",))
        else:
            validation = validate_execution(execution, self.max_output_chars)

        logger.info(
            "code_task_validated",
            cycle=state["cycles"],
            passed=validation.passed,
            issues=list(validation.issues),
        )
        return {"validation": validation, "phases": [CodeTaskPhase.VALIDATING.value]}

    async def _regenerate(self, state: CodeTaskState) -> dict[str, Any]:
        previous = state["generated"]
        validation = state["validation"]
        assert previous is not None and validation is not None
        generated, error = await self._ask_for_code(
            build_code_retry_messages(
                state["task"],
                previous.code,
                previous.language,
                list(validation.issues),
            ),
            state["trace_id"],
        )
        update: dict[str, Any] = {
            "retries_used": state["retries_used"] + 1,
            "regenerated": generated is not None,
            "phases": [CodeTaskPhase.RETRYING.value],
        }
        if generated is not None:
            update["generated"] = generated
        elif error is not None:
            # The first program and its verdict stay the final outcome.
            logger.warning("code_regeneration_failed", kind=error.kind.value, reason=error.message)
        return update

    async def _finalize(self, state: CodeTaskState) -> dict[str, Any]:
        return {"phases": [CodeTaskPhase.DONE.value]}

    def _has_program(self, state: CodeTaskState) -> Literal["execute", "finalize"]:
        return "execute" if state["generated"] is not None else "finalize"

    def _after_regenerate(self, state: CodeTaskState) -> Literal["execute", "finalize"]:
        return "execute" if state["regenerated"] else "finalize"

    def _should_retry(self, state: CodeTaskState) -> Literal["retry", "done"]:
        validation = state["validation"]
        assert validation is not None
        if validation.passed or not validation.issues:
            return "done"
        if state["retries_used"] >= MAX_CODE_RETRIES:
            return "done"
        return "retry"

    async def run(
        self,
        task: str,
        *,
        trace_id: str = "untraced",
        cancel_event: asyncio.Event | None = None,
    ) -> Result[CodeTaskOutcome]:
        """Run the pipeline for one task.

        Returns:
            Success with a CodeTaskOutcome (which may report a failed
            validation), or a failure when no program could be produced.
        """
        start_time = time.monotonic()
        initial_state = CodeTaskState(
            task=task,
            trace_id=trace_id,
            cancel_event=cancel_event,
            generated=None,
            execution=None,
            execution_error=None,
            validation=None,
            cycles=0,
            retries_used=0,
            regenerated=False,
            error=None,
            phases=[],
        )
        final_state = await self._compiled_graph.ainvoke(initial_state)

        generated = final_state["generated"]
        validation = final_state["validation"]
        if generated is None or validation is None:
            error = final_state["error"] or ErrorInfo.create(
                ErrorKind.EXECUTION_FAILED, "Code task produced no program",
            )
            result: Result[CodeTaskOutcome] = Result.failure(error)
        else:
            result = Result.success(CodeTaskOutcome(
                task=task,
                language=generated.language,
                code=generated.code,
                purpose=generated.purpose,
                passed=validation.passed,
                issues=list(validation.issues),
                output=validation.sanitized_output or "",
                cycles=final_state["cycles"],
                phases=list(final_state["phases"]),
            ))

        duration_ms = int((time.monotonic() - start_time) * 1000)
        self._record_span(task, result, final_state, duration_ms, trace_id)
        logger.info(
            "code_task_finished",
            ok=result.ok,
            cycles=final_state["cycles"],
            passed=result.value.passed if result.ok and result.value else False,
            phases=final_state["phases"],
            duration_ms=duration_ms,
        )
        return result

    def _record_span(
        self,
        task: str,
        result: Result[CodeTaskOutcome],
        final_state: dict[str, Any],
        duration_ms: int,
        trace_id: str,
    ) -> None:
        recorder = self.executor.trace_recorder
        if recorder is None:
            return
        metadata: dict[str, Any] = {
            "cycles": final_state["cycles"],
            "phases": list(final_state["phases"]),
        }
        if result.error is not None:
            metadata["error_kind"] = result.error.kind.value
            metadata["error_message"] = result.error.message
        recorder.record(SpanRecord(
            trace_id=trace_id,
            name="code_task",
            input={"task": task[:200]},
            output={"passed": result.value.passed} if result.ok and result.value else None,
            duration_ms=duration_ms,
            success=result.ok,
            metadata=metadata,
        ))
