"""Async event bus for turn telemetry.

This module provides an EventBus class that delivers telemetry events
(trace spans, LLM call metrics, sub-agent lifecycle) to observers keyed by
trace id.

The event bus supports:
- Multiple subscribers per trace
- Async event delivery via asyncio.Queue
- Bounded per-trace history for late observers (e.g. GET /traces/{id})
- Trace lifecycle management (close trace terminates all subscribers)
"""

import asyncio
import threading
from collections import OrderedDict, defaultdict

import structlog

from config import settings
from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for telemetry events.

    Subscribers register per trace id and receive every event published for
    that trace afterwards. Every event is also kept in a bounded history so
    observers that arrive late can replay what happened.

    History bounds:
        Each trace keeps at most ``max_history_per_trace`` events, and at most
        ``max_traces`` traces are retained. When a new trace would exceed the
        limit, the least recently published trace is evicted.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("trace_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.SPAN_RECORDED,
        ...     trace_id="trace_123",
        ...     data={"name": "tool.execute_code"},
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_trace("trace_123")
    """

    def __init__(
        self,
        max_history_per_trace: int | None = None,
        max_traces: int | None = None,
        delivery_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize an empty event bus.

        Args:
            max_history_per_trace: Events retained per trace.
            max_traces: Traces retained before the oldest is evicted.
            delivery_timeout_seconds: Time allowed to enqueue into one subscriber.
        """
        self.max_history_per_trace = max_history_per_trace or settings.trace_history_per_trace
        self.max_traces = max_traces or settings.trace_history_max_traces
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_history: OrderedDict[str, list[AgentEvent]] = OrderedDict()
        self._lock = threading.Lock()
        logger.info(
            "event_bus_initialized",
            max_history_per_trace=self.max_history_per_trace,
            max_traces=self.max_traces,
        )

    def subscribe(self, trace_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a trace.

        Args:
            trace_id: The trace to subscribe to

        Returns:
            An asyncio.Queue that will receive AgentEvent objects
            as they are published for this trace
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        with self._lock:
            self._subscribers[trace_id].append(queue)
            subscriber_count = len(self._subscribers[trace_id])

        logger.info("subscriber_added", trace_id=trace_id, subscriber_count=subscriber_count)
        return queue

    def unsubscribe(self, trace_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Unsubscribe a queue from trace events.

        If the queue is not registered, this is a no-op.
        """
        with self._lock:
            queues = self._subscribers.get(trace_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", trace_id=trace_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[trace_id]
            logger.info("subscriber_removed", trace_id=trace_id, subscriber_count=len(queues))

    def _remember(self, event: AgentEvent) -> None:
        """Append an event to its trace history. Caller holds the lock."""
        history = self._event_history.get(event.trace_id)
        if history is None:
            history = []
            self._event_history[event.trace_id] = history
            while len(self._event_history) > self.max_traces:
                evicted, _ = self._event_history.popitem(last=False)
                logger.debug("trace_history_evicted", trace_id=evicted)
        else:
            self._event_history.move_to_end(event.trace_id)

        history.append(event)
        if len(history) > self.max_history_per_trace:
            del history[: len(history) - self.max_history_per_trace]

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its trace.

        The event is stored in the trace history first. Delivery to each
        subscriber is bounded by ``delivery_timeout_seconds`` so a stalled
        consumer cannot block the publisher.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.TRACE_CLOSED:
                self._remember(event)
            subscribers = list(self._subscribers.get(event.trace_id, []))

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.delivery_timeout_seconds)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    trace_id=event.trace_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            trace_id=event.trace_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            agent_id=event.agent_id,
        )

    def get_event_history(self, trace_id: str) -> list[AgentEvent]:
        """Get all retained events for a trace in publication order."""
        with self._lock:
            return list(self._event_history.get(trace_id, []))

    def get_trace_ids(self) -> list[str]:
        """Trace ids with retained history, oldest first."""
        with self._lock:
            return list(self._event_history.keys())

    async def close_trace(self, trace_id: str) -> None:
        """Close a trace and notify all subscribers.

        Puts a TRACE_CLOSED sentinel into each subscriber queue so consumers
        can stop reading, then removes the subscribers. History is kept.

        Args:
            trace_id: The trace to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(trace_id, [])

        sentinel = AgentEvent(
            type=EventType.TRACE_CLOSED,
            trace_id=trace_id,
            data={"reason": "trace_closed"},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        logger.debug("trace_closed", trace_id=trace_id, subscribers_removed=len(queues_to_signal))

    def get_subscriber_count(self, trace_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(trace_id, []))

    def clear_event_history(self, trace_id: str) -> None:
        with self._lock:
            self._event_history.pop(trace_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
