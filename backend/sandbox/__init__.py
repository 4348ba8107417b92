"""Sandboxed code execution.

This module provides the DockerCodeRunner that runs model-generated programs
in single-use Docker containers, plus input/output checks.
"""

from sandbox.docker_sandbox import DockerCodeRunner, ExecutionResult
from sandbox.security import normalize_language, sanitize_output, validate_code

__all__ = [
    "DockerCodeRunner",
    "ExecutionResult",
    "normalize_language",
    "sanitize_output",
    "validate_code",
]
