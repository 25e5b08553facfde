# =============================================================================
# Retry Policy
# =============================================================================
# One backoff policy is shared by everything that talks to the network:
# delta syncs, remote mutations and token refreshes.
#
#   attempt 1 fails -> wait initial_delay
#   attempt 2 fails -> wait initial_delay * multiplier
#   ...                capped at max_delay
#   attempt N fails -> give up, re-raise the last error
#
# Each attempt is bounded by attempt_timeout. A timed out attempt counts as a
# retryable failure.
# =============================================================================

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from kestrel_tui.config import SyncConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff settings.

    Attributes:
        initial_delay: Seconds to wait after the first failure.
        multiplier: Growth factor between consecutive waits.
        max_delay: Upper bound for a single wait.
        max_attempts: Total attempts, including the first.
        attempt_timeout: Seconds a single attempt may take.
    """
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5
    attempt_timeout: float = 20.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, failures: int) -> float:
        """
        Wait before the next attempt.

        Args:
            failures: Number of attempts that have failed so far (1-based).
        """
        return min(self.initial_delay * self.multiplier ** (failures - 1), self.max_delay)

    @classmethod
    def from_config(cls, sync: SyncConfig) -> "RetryPolicy":
        return cls(
            initial_delay=sync.initial_backoff_seconds,
            max_delay=sync.max_backoff_seconds,
            max_attempts=sync.max_attempts,
            attempt_timeout=sync.attempt_timeout_seconds,
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool],
    timeout_error: Callable[[], BaseException] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run an async operation under a retry policy.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Backoff settings.
        is_retryable: Decides whether a failure is worth another attempt.
        timeout_error: Builds the error raised in place of a timeout, so
                       callers see their own error type.
        on_retry: Called with (failures, error, delay) before each wait.
        sleep: Awaitable sleep, replaceable in tests.
        description: Used in log messages.

    Returns:
        Whatever the first successful attempt returns.

    Raises:
        The last error once it is not retryable or attempts are exhausted.
    """
    failures = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), policy.attempt_timeout)
        except asyncio.TimeoutError as e:
            error: BaseException = timeout_error() if timeout_error else e
            retryable = True
        except Exception as e:
            error = e
            retryable = is_retryable(e)

        failures += 1
        if not retryable:
            raise error
        if failures >= policy.max_attempts:
            logger.warning(f"{description} failed after {failures} attempts: {error}")
            raise error

        delay = policy.delay_for(failures)
        logger.info(f"{description} failed ({error}), retrying in {delay:.1f}s")
        if on_retry:
            on_retry(failures, error, delay)
        await sleep(delay)
