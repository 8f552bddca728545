"""
Retry with exponential backoff.

Delay for attempt i (0-indexed) is min(base_delay * 2**i, max_delay), so
delays never decrease and never exceed max_delay. A predicate decides which
failures are worth retrying; a False answer ends the loop immediately.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import InferenceServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERROR_MARKERS = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "timed out",
    "timeout",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
    "getaddrinfo failed",
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
)


class AttemptTimeout(Exception):
    """A single attempt exceeded its per-attempt timeout."""


def is_transport_error(error: BaseException) -> bool:
    """Default predicate: retry connection, timeout and DNS failures.

    Known transport types match directly. Any other error matches by message,
    which covers third-party clients that wrap socket failures in their own
    exception types. Upstream HTTP errors are decided by status code only.
    """
    if isinstance(error, (httpx.TransportError, AttemptTimeout, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(error, ConnectionError):
        return True
    if isinstance(error, InferenceServiceError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in TRANSPORT_ERROR_MARKERS)


def is_inference_retryable(error: BaseException) -> bool:
    """Predicate for inference calls: transport errors, 5xx and 429 only."""
    if is_transport_error(error):
        return True
    if isinstance(error, InferenceServiceError):
        status = error.status_code
        return status == 429 or 500 <= status <= 599
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry parameters."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_transport_error

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def delay_for(self, attempt: int) -> float:
        return compute_delay(attempt, self.base_delay, self.max_delay)


def inference_policy(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0
) -> RetryPolicy:
    """Retry policy for calls to the inference service."""
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        is_retryable=is_inference_retryable,
    )


def compute_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Backoff delay in seconds for a 0-indexed attempt number."""
    if attempt < 0:
        raise ValueError("attempt cannot be negative")
    # Avoid float overflow for very large attempt numbers
    if base_delay > 0 and attempt > 64:
        return max_delay
    return min(base_delay * (2 ** attempt), max_delay)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation, retrying retryable failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry parameters (defaults to RetryPolicy())
        sleep: Awaitable sleep function, injectable for tests

    Returns:
        The first successful result

    Raises:
        The last exception, once attempts are exhausted or the predicate
        rejects it
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as error:
            if attempt == policy.max_attempts - 1 or not policy.is_retryable(error):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retry attempt %d/%d after %.2fs. Error: %s",
                attempt + 1, policy.max_attempts - 1, delay, error
            )
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover


async def retry_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Like retry, but each attempt is raced against a timer.

    A timed-out attempt raises AttemptTimeout, which the default predicate
    treats as retryable.
    """
    async def attempt() -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeout(f"Attempt exceeded {timeout}s")

    return await retry(attempt, policy, sleep)
