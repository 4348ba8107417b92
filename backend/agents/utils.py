"""LLM client utilities and helper functions for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model support,
  streaming, and metrics tracking
- MockLLMClient: Scripted client for tests
- Message helpers: tool-result/assistant message formatting, history pruning,
  token estimates
- Text helpers: JSON extraction, keyword and citation extraction
"""

import asyncio
import json
import re
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agents.result import UpstreamUnavailableError
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType, LLMMetrics

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger()

TRANSIENT_LLM_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). This helper guarantees downstream tool
    execution always receives a dict-like payload.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


@dataclass
class StreamChunk:
    """One element of a streamed LLM call.

    Text chunks carry ``text``; the last chunk of every stream carries the
    assembled ``response`` and no text.
    """

    text: str = ""
    response: LLMResponse | None = None

    @property
    def final(self) -> bool:
        return self.response is not None


def _retry_after_hint(exc: BaseException) -> float | None:
    """Read a Retry-After header from a provider error, if it carries one."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback, streaming and metrics.

    The LLMClient provides:
    - Multi-provider support via LiteLLM
    - Automatic retry on transient failures with capped exponential backoff
    - Fallback model support when the primary model fails after retries
    - Streaming of text deltas with tool-call fragments merged by index
    - Token counting and latency tracking (event bus + metrics collector)

    Exhausted transient failures are raised as ``UpstreamUnavailableError`` so
    callers at a Result boundary classify them as retryable upstream faults.

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Default model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retries after the first attempt
        retry_delay: Base delay between retry attempts in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        metrics_collector: Optional["MetricsCollector"] = None,
    ) -> None:
        """Initialize the LLM client.

        Args:
            event_bus: Optional EventBus for metric emission
            default_model: Model to use if not specified in calls
            fallback_model: Model to try if primary fails (defaults to config)
            retry_attempts: Number of retries (defaults to config llm_max_retries)
            retry_delay: Base seconds between retries (exponential backoff applied)
            metrics_collector: Optional MetricsCollector for per-turn token tracking
        """
        self.event_bus = event_bus
        self.default_model = default_model or settings.orchestrator_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.metrics_collector = metrics_collector

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic, fallback, and metrics.

        Retries on: RateLimitError (429), ServiceUnavailableError (500/502/503),
        Timeout errors.
        Does NOT retry on: AuthenticationError (401/403), BadRequestError (400).

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (defaults to config)
            max_tokens: Maximum tokens in response
            trace_id: Optional trace ID for event emission and metrics
            agent_id: Optional agent ID for event emission

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            UpstreamUnavailableError: After all retries and fallback exhausted
        """
        start_time = time.time()
        response, used_model = await self._request_with_retries(
            messages=messages,
            tools=tools,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=False,
            trace_id=trace_id,
            agent_id=agent_id,
        )

        latency_ms = int((time.time() - start_time) * 1000)
        llm_response = self._parse_response(response, used_model, latency_ms)
        await self._record_call(llm_response, trace_id, agent_id)
        return llm_response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
        agent_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream an LLM call as text deltas followed by one final chunk.

        Retries and fallback apply to opening the stream only; once the first
        delta has been yielded a provider failure propagates to the caller.

        Yields:
            StreamChunk with ``text`` for each content delta, then a final
            StreamChunk carrying the assembled LLMResponse.
        """
        start_time = time.time()
        stream, used_model = await self._request_with_retries(
            messages=messages,
            tools=tools,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            trace_id=trace_id,
            agent_id=agent_id,
        )

        content_parts: list[str] = []
        fragments: dict[int, dict[str, str]] = {}
        finish_reason = "unknown"
        input_tokens = 0
        output_tokens = 0

        async for chunk in stream:
            usage = getattr(chunk, "usage", None)
            if usage:
                input_tokens = usage.prompt_tokens or input_tokens
                output_tokens = usage.completion_tokens or output_tokens

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta.content:
                content_parts.append(delta.content)
                yield StreamChunk(text=delta.content)

            for tc in getattr(delta, "tool_calls", None) or []:
                slot = fragments.setdefault(tc.index or 0, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function.arguments:
                        slot["arguments"] += tc.function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        tool_calls = [
            ToolCallData(
                id=slot["id"] or f"call_{uuid.uuid4().hex[:8]}",
                name=slot["name"],
                args=normalize_tool_args(slot["arguments"]),
            )
            for _, slot in sorted(fragments.items())
        ]
        content = "".join(content_parts)
        if not output_tokens:
            output_tokens = count_tokens_estimate(content)

        llm_response = LLMResponse(
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            metrics=LLMMetrics(
                model=used_model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                latency_ms=int((time.time() - start_time) * 1000),
            ),
        )
        await self._record_call(llm_response, trace_id, agent_id)
        yield StreamChunk(response=llm_response)

    async def _request_with_retries(
        self,
        *,
        model: str,
        trace_id: str | None,
        agent_id: str | None,
        **request: Any,
    ) -> tuple[Any, str]:
        """Issue a request with retries, then the fallback model.

        Returns:
            The LiteLLM result and the model that produced it.
        """
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                return await self._make_request(model=model, **request), model
            except TRANSIENT_LLM_ERRORS as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._emit_error_event(trace_id, agent_id, e, model, used_fallback=False)
                raise

        used_fallback = bool(self.fallback_model and self.fallback_model != model)
        if used_fallback:
            assert self.fallback_model is not None
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_error=str(last_exception),
            )
            try:
                result = await self._make_request(model=self.fallback_model, **request)
            except TRANSIENT_LLM_ERRORS as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
            else:
                logger.info("llm_fallback_success", fallback_model=self.fallback_model)
                return result, self.fallback_model

        assert last_exception is not None
        await self._emit_error_event(trace_id, agent_id, last_exception, model, used_fallback)
        raise UpstreamUnavailableError(
            f"{model} unavailable after {self.retry_attempts + 1} attempts: "
            f"{type(last_exception).__name__}",
            retry_after_seconds=_retry_after_hint(last_exception),
        ) from last_exception

    async def _make_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> Any:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": settings.llm_temperature if temperature is None else temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _record_call(
        self,
        llm_response: LLMResponse,
        trace_id: str | None,
        agent_id: str | None,
    ) -> None:
        metrics = llm_response.metrics

        if self.metrics_collector and trace_id:
            self.metrics_collector.record_llm_call(
                trace_id,
                prompt_tokens=metrics.input_tokens,
                completion_tokens=metrics.output_tokens,
            )

        if self.event_bus and trace_id:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    trace_id=trace_id,
                    agent_id=agent_id,
                    data={
                        "model": metrics.model,
                        "input_tokens": metrics.input_tokens,
                        "output_tokens": metrics.output_tokens,
                        "latency_ms": metrics.latency_ms,
                    },
                )
            )

        logger.info(
            "llm_call_complete",
            model=metrics.model,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            latency_ms=metrics.latency_ms,
            tool_calls=len(llm_response.tool_calls),
        )

    async def _emit_error_event(
        self,
        trace_id: str | None,
        agent_id: str | None,
        error: Exception,
        model: str,
        used_fallback: bool,
    ) -> None:
        """Emit an AGENT_ERROR event when an LLM call fails for good."""
        if not (self.event_bus and trace_id):
            return
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.AGENT_ERROR,
                trace_id=trace_id,
                agent_id=agent_id,
                data={
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "model": model,
                    "used_fallback": used_fallback,
                    "fallback_model": self.fallback_model,
                    "phase": "llm_call",
                },
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def format_tool_result_for_llm(
    tool_call_id: str,
    result: str,
) -> dict[str, Any]:
    """Format a tool result as a message for the LLM.

    Args:
        tool_call_id: The ID of the tool call this result corresponds to
        result: The string result from tool execution

    Returns:
        A message dict in the format expected by LLMs
    """
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that includes tool calls."""
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


def count_tokens_estimate(text: str) -> int:
    """Estimate token count for a text string (~4 characters per token)."""
    return len(text) // 4


def count_messages_tokens(messages: list[dict[str, Any]]) -> int:
    """Estimate total token count for a list of messages.

    Counts content and tool call arguments using the ~4 characters per token
    heuristic.
    """
    total_chars = 0
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            total_chars += len(content)

        for tc in msg.get("tool_calls", []) or []:
            args = tc.get("function", {}).get("arguments", "")
            if isinstance(args, str):
                total_chars += len(args)
            elif isinstance(args, dict):
                total_chars += len(json.dumps(args))

    return total_chars // 4


def sliding_window_prune(
    messages: list[dict[str, Any]],
    max_messages: int | None = None,
    max_tokens: int | None = None,
) -> list[dict[str, Any]]:
    """Prune message history with a sliding window.

    Keeps the leading system messages, the most recent messages that fit
    within the message and token limits, and the latest user message even if
    it falls outside the window. A note replaces the dropped middle. The kept
    window never starts with a tool result whose assistant request was
    dropped.

    Args:
        messages: Full message history
        max_messages: Maximum number of messages to keep (defaults to config)
        max_tokens: Token threshold to trigger pruning (defaults to config)

    Returns:
        Pruned message list (the input list itself when no pruning is needed)
    """
    if max_messages is None:
        max_messages = settings.context_max_messages
    if max_tokens is None:
        max_tokens = settings.context_prune_threshold_tokens

    if len(messages) <= max_messages and count_messages_tokens(messages) <= max_tokens:
        return messages

    prefix_count = 0
    while prefix_count < len(messages) and messages[prefix_count].get("role") == "system":
        prefix_count += 1
    prefix = messages[:prefix_count]
    body = messages[prefix_count:]

    # Reserve one slot for the prune marker and one for the anchored user message.
    window_cap = max(max_messages - prefix_count - 2, 1)
    tokens = count_messages_tokens(prefix)
    window: list[dict[str, Any]] = []
    for msg in reversed(body):
        if len(window) >= window_cap:
            break
        msg_tokens = count_messages_tokens([msg])
        if window and tokens + msg_tokens > max_tokens:
            break
        window.append(msg)
        tokens += msg_tokens
    window.reverse()

    while window and window[0].get("role") == "tool":
        window.pop(0)

    anchor: list[dict[str, Any]] = []
    last_user = next((m for m in reversed(body) if m.get("role") == "user"), None)
    if last_user is not None and not any(m is last_user for m in window):
        anchor = [last_user]

    dropped_count = len(body) - len(window) - len(anchor)
    if dropped_count <= 0:
        return messages

    marker = {
        "role": "user",
        "content": (
            f"[Note: {dropped_count} earlier messages were pruned for context limits. "
            "The system prompt and the most recent exchange were preserved.]"
        ),
    }

    logger.debug(
        "context_pruned",
        original_messages=len(messages),
        dropped_count=dropped_count,
        kept_messages=len(prefix) + len(anchor) + len(window),
    )
    return [*prefix, marker, *anchor, *window]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM response that may contain extra text.

    Tries, in order: the whole response, fenced code blocks, then any
    balanced ``{...}`` span.

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    for match in re.finditer(r"```(?:json)?\s*([\s\S]*?)\s*```", response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


STOPWORDS: frozenset[str] = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had",
    "her", "was", "one", "our", "out", "has", "him", "his", "how", "its", "may",
    "new", "now", "old", "see", "two", "who", "did", "get", "let", "put", "say",
    "she", "too", "use", "with", "that", "this", "from", "they", "will", "would",
    "there", "their", "what", "about", "which", "when", "make", "like", "into",
    "than", "then", "them", "these", "some", "could", "other", "been", "were",
    "have", "your", "more", "also", "does", "each", "find", "give", "over",
    "should", "such", "only", "very", "just", "being", "where", "while", "why",
    "please", "tell", "show", "explain", "describe", "list", "using",
})

_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9_\-]*")
_URL_PATTERN = re.compile(r"https?://[^\s)>\]]+")
_REFERENCE_LINE = re.compile(r"^\s*\[\d+\]\s+\S")


def extract_keywords(text: str) -> list[str]:
    """Lower-cased word tokens of at least 3 characters, minus stopwords.

    Returns:
        Unique keywords in first-seen order.
    """
    seen: dict[str, None] = {}
    for token in _WORD_PATTERN.findall(text.lower()):
        token = token.strip("-_")
        if len(token) >= 3 and token not in STOPWORDS:
            seen.setdefault(token, None)
    return list(seen)


def extract_citations(text: str) -> list[str]:
    """Collect source citations verbatim.

    A ``[n] ...`` reference line is kept whole; elsewhere each URL is kept on
    its own. Duplicates are dropped, first-seen order is preserved.
    """
    seen: dict[str, None] = {}
    for line in text.splitlines():
        if _REFERENCE_LINE.match(line):
            seen.setdefault(line.strip(), None)
            continue
        for url in _URL_PATTERN.findall(line):
            seen.setdefault(url.rstrip(".,;"), None)
    return list(seen)


# ---------------------------------------------------------------------------
# Test double
# ---------------------------------------------------------------------------


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Returns predefined responses in order from both ``call`` and ``stream``.
    An exception instance in the list is raised instead of returned.

    Usage:
        >>> client = MockLLMClient(responses=[make_llm_response("Hello")])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        stream_chunk_size: int = 16,
        **kwargs: Any,
    ) -> None:
        """Initialize with predefined responses.

        Args:
            responses: Responses (or exceptions to raise) in order
            stream_chunk_size: Characters per streamed text chunk
            **kwargs: Additional args passed to parent
        """
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.stream_chunk_size = stream_chunk_size
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    def _next_response(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
        agent_id: str | None,
    ) -> LLMResponse:
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Raises:
            IndexError: If no more responses available
        """
        response = self._next_response(messages, tools, model, temperature, max_tokens, agent_id)
        if self.metrics_collector and trace_id:
            self.metrics_collector.record_llm_call(
                trace_id,
                prompt_tokens=response.metrics.input_tokens,
                completion_tokens=response.metrics.output_tokens,
            )
        return response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
        agent_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream the next predefined response in fixed-size text chunks."""
        response = await self.call(
            messages, tools, model, temperature, max_tokens, trace_id, agent_id,
        )
        content = response.content
        for start in range(0, len(content), self.stream_chunk_size):
            yield StreamChunk(text=content[start : start + self.stream_chunk_size])
        yield StreamChunk(response=response)

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
