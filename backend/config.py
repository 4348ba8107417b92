"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Orion
orchestration core. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        orchestrator_model: Model driving the top-level agent loop.
        subagent_model: Model used by spawned specialist sub-agents.
        code_model: Model used to generate and regenerate code for code tasks.
        synthesizer_model: Model used to summarize sub-agent findings.
        llm_fallback_model: Optional model tried once after retries are exhausted.
        llm_max_retries: Retries on transient reasoning-engine failures.
        llm_request_timeout_seconds: Per-request timeout passed to LiteLLM.
        llm_temperature: Default sampling temperature.
        tool_timeout_seconds: Deadline for a single tool attempt.
        tool_max_attempts: Total attempts (including the first) for a tool call.
        retry_base_delay_seconds: First backoff delay between attempts.
        retry_max_delay_seconds: Ceiling for a computed backoff delay.
        retry_jitter_ratio: Fraction of each delay that is randomized.
        rate_limit_retry_seconds: Ceiling for an upstream retry-after hint.
        turn_timeout_seconds: Hard deadline for one user turn.
        max_agent_turns: Maximum reasoning-engine round trips per turn.
        verification_max_attempts: Answers checked per turn before it fails.
        turn_stream_buffer: Increments buffered ahead of a slow consumer.
        context_max_messages: Message count that triggers history pruning.
        context_prune_threshold_tokens: Token estimate that triggers pruning.
        max_subagent_concurrency: Process-wide ceiling on in-flight sub-agents.
        max_subagents_per_call: Maximum sub-agents one spawn request may ask for.
        subagent_timeout_seconds: Deadline for a single sub-agent run.
        subagent_max_iterations: Tool-loop iterations available to a sub-agent.
        subagent_relevance_threshold: Minimum relevance kept by the synthesizer.
        code_max_output_chars: Output ceiling applied when validating code runs.
        sandbox_timeout_seconds: Wall-clock limit for a sandboxed program.
        sandbox_python_image: Image used for python and bash programs.
        sandbox_node_image: Image used for javascript programs.
        sandbox_mem_limit: Memory limit for sandbox containers.
        sandbox_network_disabled: Whether sandbox containers get no network.
        trace_sink_timeout_seconds: Delivery deadline for one trace span.
        trace_history_per_trace: Events retained per trace for replay.
        trace_history_max_traces: Traces retained before the oldest is evicted.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Reasoning engine
    # Model names must include provider prefix for LiteLLM (e.g., anthropic/, gemini/)
    orchestrator_model: str = "anthropic/claude-sonnet-4-5"
    subagent_model: str = "anthropic/claude-haiku-4-5"
    code_model: str = "anthropic/claude-sonnet-4-5"
    synthesizer_model: str = "anthropic/claude-haiku-4-5"
    llm_fallback_model: str | None = None
    llm_max_retries: int = Field(default=2, ge=0)
    llm_request_timeout_seconds: float = Field(default=60.0, gt=0)
    llm_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    # Tool resilience
    tool_timeout_seconds: float = Field(default=30.0, gt=0)
    tool_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    retry_max_delay_seconds: float = Field(default=8.0, ge=0)
    retry_jitter_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    rate_limit_retry_seconds: float = Field(default=30.0, ge=0)

    # Turn limits
    turn_timeout_seconds: float = Field(default=240.0, gt=0)
    max_agent_turns: int = Field(default=10, ge=1)
    verification_max_attempts: int = Field(default=3, ge=1)
    turn_stream_buffer: int = Field(default=32, ge=1)
    context_max_messages: int = Field(default=30, ge=4)
    context_prune_threshold_tokens: int = Field(default=40000, gt=0)

    # Sub-agents
    max_subagent_concurrency: int = Field(default=3, ge=1)
    max_subagents_per_call: int = Field(default=5, ge=1)
    subagent_timeout_seconds: float = Field(default=90.0, gt=0)
    subagent_max_iterations: int = Field(default=4, ge=1)
    subagent_relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # Code tasks and sandbox
    code_max_output_chars: int = Field(default=10000, gt=0)
    sandbox_timeout_seconds: float = Field(default=25.0, gt=0)
    sandbox_python_image: str = "python:3.12-slim"
    sandbox_node_image: str = "node:20-slim"
    sandbox_mem_limit: str = "256m"
    sandbox_network_disabled: bool = True

    # Telemetry
    trace_sink_timeout_seconds: float = Field(default=5.0, gt=0)
    trace_history_per_trace: int = Field(default=500, ge=1)
    trace_history_max_traces: int = Field(default=200, ge=1)

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
