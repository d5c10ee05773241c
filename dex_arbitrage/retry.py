"""
Central retry policy for every call that reaches an RPC node.

All components that talk to the read accessor, a price feed or a relay go
through ``RetryPolicy`` instead of rolling their own sleep loops. Only errors
classified as transient by ``is_retryable_error`` are retried.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings seen in rate-limit and connection failures across node vendors
RETRYABLE_MARKERS = (
    "429",
    "too many requests",
    "-32005",  # BSC/Polygon/Ethereum rate limit code
    "limit exceeded",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "socket hang up",
    "503",
    "502",
)


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify an exception as a transient infrastructure error.

    Args:
        exc: Exception raised by an external call

    Returns:
        True if the call may succeed when tried again
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, NetworkError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


class RetryPolicy:
    """
    Bounded attempts with exponential backoff and a per-attempt timeout.

    ``max_attempts=2`` gives the "retry once" behaviour used throughout the
    engine. ``fn`` is called once per attempt, so a factory that selects an
    accessor on each call gives the retry a fresh one.
    """

    def __init__(
        self,
        max_attempts: int = 2,
        base_delay: float = 0.25,
        max_delay: float = 2.0,
        timeout: Optional[float] = 5.0,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {max_attempts}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (0-based)."""
        return min(self.max_delay, self.base_delay * (2**attempt))

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        label: str = "call",
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``fn`` under the policy.

        Args:
            fn: Zero-argument coroutine factory, called once per attempt
            label: Name used in log lines
            timeout: Override for the per-attempt timeout

        Returns:
            Result of the first successful attempt

        Raises:
            The last error if every attempt failed, or the first
            non-retryable error immediately
        """
        attempt_timeout = timeout if timeout is not None else self.timeout
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                if attempt_timeout is not None:
                    return await asyncio.wait_for(fn(), attempt_timeout)
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if not is_retryable_error(e) or attempt == self.max_attempts - 1:
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    f"{label} failed ({type(e).__name__}: {e}), "
                    f"retrying in {delay:.2f}s ({attempt + 1}/{self.max_attempts})"
                )
                await asyncio.sleep(delay)

        # Should never reach here, but for type safety
        raise NetworkError(f"{label} failed: {last_error}")
