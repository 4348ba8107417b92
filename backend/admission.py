"""Process-wide admission gate for sub-agent spawning.

The gate is a FIFO counting semaphore: at most ``capacity`` holders at a
time, and queued callers are admitted strictly in arrival order. Every
concurrent turn in the process shares the same instance.

Usage:
    >>> from admission import get_admission_gate
    >>> gate = get_admission_gate()
    >>> async with gate.slot():
    ...     result = await spawner.spawn(config, parent_context)
"""

import asyncio
import contextlib
from collections import deque
from collections.abc import AsyncIterator

import structlog

from config import settings

logger = structlog.get_logger(__name__)


class AdmissionGate:
    """FIFO counting semaphore with occupancy instrumentation.

    ``acquire()`` and ``release()`` update the in-flight counter without
    suspending between the check and the update, so the event loop sees each
    change atomically. On release the slot is handed straight to the oldest
    waiter instead of being returned to the pool, which keeps admission order
    FIFO even when new callers arrive at the same moment.

    Attributes:
        capacity: Maximum number of concurrent holders.
    """

    def __init__(self, capacity: int = 3) -> None:
        """Initialize the gate.

        Args:
            capacity: Maximum number of concurrent holders (must be >= 1).
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._in_flight = 0
        self._peak_in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

        logger.info("admission_gate_initialized", capacity=capacity)

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest number of slots held at once since creation."""
        return self._peak_in_flight

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _grant(self) -> None:
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    async def acquire(self) -> None:
        """Wait for a slot, queueing behind earlier callers."""
        if self._in_flight < self.capacity and not self._waiters:
            self._grant()
            logger.debug("admission_granted", in_flight=self._in_flight)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("admission_queued", in_flight=self._in_flight, waiting=self.waiting)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation landed.
                self.release()
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            raise
        logger.debug("admission_granted", in_flight=self._in_flight)

    def release(self) -> None:
        """Free a slot, handing it to the oldest live waiter if there is one."""
        if self._in_flight <= 0:
            raise RuntimeError("release() called without a matching acquire()")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

        self._in_flight -= 1

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the ``async with`` block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def get_status(self) -> dict[str, int]:
        """Return current gate occupancy for diagnostics."""
        return {
            "capacity": self.capacity,
            "in_flight": self._in_flight,
            "waiting": self.waiting,
            "peak_in_flight": self._peak_in_flight,
        }


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_admission_gate: AdmissionGate | None = None


def get_admission_gate() -> AdmissionGate:
    """Get the global AdmissionGate singleton.

    The singleton is created on first call using
    ``settings.max_subagent_concurrency``.

    Returns:
        The global AdmissionGate instance.
    """
    global _admission_gate
    if _admission_gate is None:
        _admission_gate = AdmissionGate(capacity=settings.max_subagent_concurrency)
    return _admission_gate


def reset_admission_gate() -> None:
    """Reset the global AdmissionGate singleton.

    Primarily useful for testing.
    """
    global _admission_gate
    _admission_gate = None
