"""Result envelope and error taxonomy shared by every async boundary.

Tool calls, sub-agent runs and sandbox executions all report their outcome
as a ``Result``: either a value or an ``ErrorInfo``, never both and never
neither. Faults raised inside a unit of work are converted into an
``ErrorInfo`` at the boundary via ``error_from_exception``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

T = TypeVar("T")


class ErrorKind(StrEnum):
    """Closed set of failure categories."""

    TIMEOUT = "timeout"
    VALIDATION_FAILED = "validation_failed"
    TOOL_UNAVAILABLE = "tool_unavailable"
    TOOL_INVALID_INPUT = "tool_invalid_input"
    EXECUTION_FAILED = "execution_failed"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UNKNOWN = "unknown"


# Kinds that can never be retried without changed input.
PERMANENT_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.VALIDATION_FAILED,
    ErrorKind.TOOL_UNAVAILABLE,
    ErrorKind.TOOL_INVALID_INPUT,
    ErrorKind.UNKNOWN,
})

_RETRYABLE_BY_DEFAULT: frozenset[ErrorKind] = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.UPSTREAM_UNAVAILABLE,
})


@dataclass(frozen=True)
class ErrorInfo:
    """Immutable description of a failure.

    Attributes:
        kind: Failure category.
        message: Internal description (logged and traced, never shown to users).
        retryable: Whether repeating the same work may succeed.
        cause: The failure this one wraps, if any.
        retry_after_seconds: Upstream hint for the earliest useful retry.
    """

    kind: ErrorKind
    message: str
    retryable: bool = False
    cause: ErrorInfo | None = None
    retry_after_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.retryable and self.kind in PERMANENT_KINDS:
            raise ValueError(f"{self.kind.value} errors cannot be retryable")

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool | None = None,
        cause: ErrorInfo | None = None,
        retry_after_seconds: float | None = None,
    ) -> ErrorInfo:
        """Build an ErrorInfo, deriving retryability from the kind when omitted."""
        if retryable is None:
            retryable = kind in _RETRYABLE_BY_DEFAULT
        return cls(
            kind=kind,
            message=message,
            retryable=retryable,
            cause=cause,
            retry_after_seconds=retry_after_seconds,
        )

    def wrap(self, kind: ErrorKind, message: str, *, retryable: bool | None = None) -> ErrorInfo:
        """Return a new ErrorInfo whose cause is this one."""
        return ErrorInfo.create(kind, message, retryable=retryable, cause=self)

    def chain(self) -> list[ErrorInfo]:
        """Return this error followed by its causes, outermost first."""
        chain: list[ErrorInfo] = []
        current: ErrorInfo | None = self
        while current is not None:
            chain.append(current)
            current = current.cause
        return chain

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "cause": self.cause.to_dict() if self.cause else None,
        }


@dataclass(frozen=True)
class Result(Generic[T]):
    """Uniform success/failure wrapper.

    Use ``Result.success(value)`` and ``Result.failure(error)`` rather than the
    constructor; both enforce that exactly one of value/error is populated.
    """

    ok: bool
    value: T | None = None
    error: ErrorInfo | None = None

    def __post_init__(self) -> None:
        if self.ok:
            if self.error is not None or self.value is None:
                raise ValueError("A successful Result carries a value and no error")
        elif self.error is None or self.value is not None:
            raise ValueError("A failed Result carries an error and no value")

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorInfo) -> Result[T]:
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise if this is a failure."""
        if not self.ok:
            raise RuntimeError(f"unwrap() on failed Result: {self.error}")
        return self.value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Typed faults raised by tool implementations
# ---------------------------------------------------------------------------


class ToolFault(Exception):
    """Base class for faults that know which ErrorKind they represent."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED
    retryable: bool | None = None

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo.create(
            self.kind,
            str(self),
            retryable=self.retryable,
            retry_after_seconds=self.retry_after_seconds,
        )


class ToolInputError(ToolFault):
    """The arguments were rejected by the tool."""

    kind = ErrorKind.TOOL_INVALID_INPUT


class ToolUnavailableError(ToolFault):
    """The tool exists but cannot serve requests (auth, disabled, missing)."""

    kind = ErrorKind.TOOL_UNAVAILABLE


class UpstreamUnavailableError(ToolFault):
    """A dependency (model provider, Docker daemon, remote API) is unreachable."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ExecutionFailedError(ToolFault):
    """The tool ran but failed. Pass ``transient=True`` when a retry may help."""

    kind = ErrorKind.EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message, retry_after_seconds=retry_after_seconds)
        self.retryable = transient


def error_from_exception(exc: BaseException) -> ErrorInfo:
    """Convert a raised fault into an ErrorInfo.

    Typed faults keep their kind; pydantic validation errors become invalid
    input; anything else is an UNKNOWN, non-retryable internal fault.
    """
    if isinstance(exc, ToolFault):
        return exc.to_error_info()
    if isinstance(exc, ValidationError):
        return ErrorInfo.create(ErrorKind.TOOL_INVALID_INPUT, summarize_validation_error(exc))
    return ErrorInfo.create(
        ErrorKind.UNKNOWN,
        f"{type(exc).__name__}: {exc}",
        retryable=False,
    )


def summarize_validation_error(exc: ValidationError) -> str:
    """Render a pydantic ValidationError as one line per failing field."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(loc) for loc in err.get("loc", ())) or "arguments"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid arguments"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_error_for_llm(tool_name: str, error: ErrorInfo) -> str:
    """Render a failed tool result as the text returned to the reasoning engine."""
    if error.kind == ErrorKind.UPSTREAM_UNAVAILABLE and error.retry_after_seconds:
        return f"The {tool_name} tool is rate limited right now. Please wait a bit and try again."
    if error.kind == ErrorKind.TOOL_INVALID_INPUT:
        return (
            f"The {tool_name} tool request was invalid ({error.message}). "
            "Fix the arguments or provide the required fields."
        )
    if error.kind == ErrorKind.TOOL_UNAVAILABLE:
        return f"The {tool_name} tool is not available. Use a different approach."
    if error.kind == ErrorKind.UPSTREAM_UNAVAILABLE:
        return f"I couldn't reach the service behind the {tool_name} tool. Try again in a moment."
    if error.kind == ErrorKind.TIMEOUT:
        return f"The {tool_name} tool timed out. Try a smaller request or a different approach."
    if error.kind == ErrorKind.VALIDATION_FAILED:
        return f"The {tool_name} tool output failed validation: {error.message}"
    return f"The {tool_name} tool failed. Try again or use a different approach."


_USER_MESSAGES: dict[ErrorKind, tuple[str, str]] = {
    ErrorKind.TIMEOUT: (
        "Your request took too long to finish.",
        "Try a simpler or more specific question.",
    ),
    ErrorKind.VALIDATION_FAILED: (
        "I couldn't produce a result I was confident in.",
        "Try rephrasing your question or giving more context.",
    ),
    ErrorKind.TOOL_UNAVAILABLE: (
        "One of the tools I need isn't available right now.",
        "Try again later, or ask in a way that doesn't need that tool.",
    ),
    ErrorKind.TOOL_INVALID_INPUT: (
        "I didn't understand that well enough to act on it.",
        "Could you rephrase your question with more detail?",
    ),
    ErrorKind.EXECUTION_FAILED: (
        "I had trouble processing your request.",
        "Try breaking it into smaller steps.",
    ),
    ErrorKind.UPSTREAM_UNAVAILABLE: (
        "I'm having trouble connecting to an external service.",
        "Please try again in a few minutes.",
    ),
    ErrorKind.UNKNOWN: (
        "Something unexpected happened.",
        "Please try again. If this persists, start a new conversation.",
    ),
}


def user_message_for(error: ErrorInfo) -> str:
    """Render a user-visible failure: explanation plus suggested alternative.

    The internal ``error.message`` is deliberately not included.
    """
    explanation, alternative = _USER_MESSAGES[error.kind]
    return f"{explanation} {alternative}"
