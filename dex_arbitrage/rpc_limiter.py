"""
Read-admission limiter for blockchain RPC calls.

A fixed-size window of in-flight reads protects upstream rate limits. Calls
beyond the window wait in FIFO order. A small fast lane serves cheap,
latency-sensitive methods (block number checks) so health probing is never
starved behind heavy ``eth_call`` traffic.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_FAST_LANE_METHODS = frozenset({"get_block_number"})


class _FifoWindow:
    """Counting window whose waiters are released strictly in arrival order."""

    def __init__(self, size: int, max_waiters: Optional[int] = None):
        self.size = size
        self.max_waiters = max_waiters
        self.active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    async def acquire(self) -> None:
        if self.active < self.size and not self._waiters:
            self.active += 1
            return

        if self.max_waiters is not None and len(self._waiters) >= self.max_waiters:
            raise OverflowError(
                f"RPC queue overflow: >{self.max_waiters} pending requests"
            )

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Hand the slot directly to the next waiter
                fut.set_result(None)
                return
        self.active -= 1

    @property
    def waiting(self) -> int:
        return len(self._waiters)


class AdmissionLimiter:
    """
    Gate for blockchain reads: general FIFO window plus a fast lane.

    Args:
        max_inflight: Concurrent general reads allowed (typically 2-8)
        fast_lane_methods: Method names served by the fast lane
        fast_lane_size: Concurrent fast-lane calls allowed
        max_queue: Maximum waiting general calls before rejecting
    """

    def __init__(
        self,
        max_inflight: int = 4,
        fast_lane_methods: Iterable[str] = DEFAULT_FAST_LANE_METHODS,
        fast_lane_size: int = 1,
        max_queue: Optional[int] = 1000,
    ):
        if max_inflight < 1:
            raise ValueError(f"max_inflight must be >= 1: {max_inflight}")
        self.max_inflight = max_inflight
        self.fast_lane_methods = frozenset(fast_lane_methods)
        self._general = _FifoWindow(max_inflight, max_queue)
        self._fast = _FifoWindow(max(1, fast_lane_size))
        self.calls_by_lane: Dict[str, int] = {"general": 0, "fast": 0}

    def is_fast_lane(self, method: str) -> bool:
        return method in self.fast_lane_methods

    @asynccontextmanager
    async def slot(self, method: str) -> AsyncIterator[None]:
        """Hold one admission slot for the duration of the block."""
        lane = "fast" if self.is_fast_lane(method) else "general"
        window = self._fast if lane == "fast" else self._general
        await window.acquire()
        self.calls_by_lane[lane] += 1
        try:
            yield
        finally:
            window.release()

    @property
    def active(self) -> int:
        return self._general.active

    @property
    def waiting(self) -> int:
        return self._general.waiting

    def get_stats(self) -> Dict[str, int]:
        """Get current statistics."""
        return {
            "active": self._general.active,
            "waiting": self._general.waiting,
            "fast_active": self._fast.active,
            "general_calls": self.calls_by_lane["general"],
            "fast_calls": self.calls_by_lane["fast"],
        }
