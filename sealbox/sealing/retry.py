"""
Caller-owned retry policy for external collaborators.

The escrow gate and the content-store adapters never retry on their own;
they raise TransientError and leave the decision to the caller, who wraps
the call with retry_call() and a RetryPolicy.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .exceptions import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for transient collaborator failures."""

    attempts: int = 3
    delay: float = 0.5  # seconds before the first retry
    backoff: float = 2.0  # multiplier applied after each retry
    max_delay: float = 10.0
    timeout: Optional[float] = None  # overall deadline in seconds

    def delays(self):
        """Yield the sleep before each retry."""
        delay = self.delay
        for _ in range(max(self.attempts - 1, 0)):
            yield min(delay, self.max_delay)
            delay *= self.backoff


NO_RETRY = RetryPolicy(attempts=1)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy = NO_RETRY,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call fn, retrying only on TransientError.

    Args:
        fn: Zero-argument callable
        policy: Retry policy
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        The callable's result

    Raises:
        TransientError: The last transient failure once attempts or the deadline run out
    """
    deadline = clock() + policy.timeout if policy.timeout else None
    delays = policy.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except TransientError as e:
            delay = next(delays, None)
            if delay is None:
                raise
            if deadline is not None and clock() + delay > deadline:
                logger.warning(f"Retry deadline reached after {attempt} attempts: {e}")
                raise
            logger.warning(f"Transient failure (attempt {attempt}), retrying in {delay:.2f}s: {e}")
            sleep(delay)
