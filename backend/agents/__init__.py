"""Agent orchestration core.

This package exports the components needed to run a turn:
- Result envelope and error taxonomy shared by every async boundary
- Timeout guard and retry policy
- Tool registry and executor
- Sub-agent spawner, parallel coordinator and synthesizer
- Code task pipeline (LangGraph)
- Agent loop and the runtime that wires it together
"""

from agents.result import (
    ErrorInfo,
    ErrorKind,
    Result,
    error_from_exception,
    format_error_for_llm,
    user_message_for,
)
from agents.resilience import BackoffPolicy, with_retry, with_timeout
from agents.tools import (
    ToolCallRequest,
    ToolDefinition,
    ToolExecutor,
    ToolKind,
    ToolRegistry,
    build_default_registry,
)
from agents.utils import LLMClient, LLMResponse, MockLLMClient, StreamChunk, ToolCallData
from agents.subagents import (
    SubagentConfig,
    SubagentCoordinator,
    SubagentResult,
    SubagentSpawner,
)
from agents.synthesizer import SynthesisResult, Synthesizer
from agents.code_task import CodeTaskOutcome, CodeTaskPipeline, validate_execution
from agents.loop import AgentLoop, AgentRuntime

__all__ = [
    # Results
    "ErrorInfo",
    "ErrorKind",
    "Result",
    "error_from_exception",
    "format_error_for_llm",
    "user_message_for",
    # Resilience
    "BackoffPolicy",
    "with_retry",
    "with_timeout",
    # Tools
    "ToolCallRequest",
    "ToolDefinition",
    "ToolExecutor",
    "ToolKind",
    "ToolRegistry",
    "build_default_registry",
    # LLM
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "StreamChunk",
    "ToolCallData",
    # Sub-agents
    "SubagentConfig",
    "SubagentCoordinator",
    "SubagentResult",
    "SubagentSpawner",
    "SynthesisResult",
    "Synthesizer",
    # Code tasks
    "CodeTaskOutcome",
    "CodeTaskPipeline",
    "validate_execution",
    # Loop
    "AgentLoop",
    "AgentRuntime",
]
