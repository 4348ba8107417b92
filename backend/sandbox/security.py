"""Input and output checks for sandboxed code execution.

The container is the isolation boundary; these checks only reject programs
that cannot run at all and keep program output safe to hand back to a model.
"""

import re

LANGUAGE_ALIASES: dict[str, str] = {
    "python": "python",
    "python3": "python",
    "py": "python",
    "javascript": "javascript",
    "js": "javascript",
    "node": "javascript",
    "nodejs": "javascript",
    "bash": "bash",
    "sh": "bash",
    "shell": "bash",
}

SUPPORTED_LANGUAGES: tuple[str, ...] = ("python", "javascript", "bash")

# Upper bound on program source size.
MAX_CODE_CHARS = 100_000

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def normalize_language(language: str) -> str | None:
    """Map a declared language to its canonical name.

    Examples:
        >>> normalize_language("py")
        'python'
        >>> normalize_language("Node")
        'javascript'
        >>> normalize_language("cobol") is None
        True
    """
    return LANGUAGE_ALIASES.get(language.strip().lower())


def validate_code(code: str) -> tuple[bool, str]:
    """Check that a program can be handed to the sandbox.

    Returns:
        A tuple of (is_valid, error_message). If valid, error_message is an
        empty string.
    """
    if not code or not code.strip():
        return False, "Code cannot be empty"

    # Null bytes break file transfer into the container.
    if "\x00" in code:
        return False, "Code contains null byte"

    if len(code) > MAX_CODE_CHARS:
        return False, f"Code exceeds {MAX_CODE_CHARS} characters"

    return True, ""


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Sanitize program output for safe transmission.

    Strips ANSI escape sequences and control characters (newlines and tabs
    are kept) and truncates excessively long output.

    Args:
        output: The raw program output.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", output))

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
