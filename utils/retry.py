"""
Retry with exponential backoff and jitter.

Wraps any awaitable-returning callable. Used for every network call in the
bulk upload pipeline: SKU lookups, image uploads, batch inserts.

Delay before retry n (0-based) is min(base * 2**n, max_delay) plus uniform
jitter in [0, jitter). The last error is re-raised unchanged, never wrapped,
so callers see the original failure. This module does no logging; pass
on_retry to observe attempts.
"""

import asyncio
import errno
import random
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

T = TypeVar("T")

RETRYABLE_ERROR_CODES = frozenset({"ETIMEDOUT", "ECONNRESET", "ENOTFOUND", "ECONNREFUSED"})
RETRYABLE_ERRNOS = frozenset({errno.ETIMEDOUT, errno.ECONNRESET, errno.ECONNREFUSED})
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def _status_of(error: BaseException) -> Optional[int]:
    """HTTP status from .status, .status_code or .response.status_code."""
    for candidate in (
        getattr(error, "status", None),
        getattr(error, "status_code", None),
        getattr(getattr(error, "response", None), "status_code", None),
    ):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def is_retryable(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Retryable:
        - error code ETIMEDOUT, ECONNRESET, ENOTFOUND, ECONNREFUSED
          (as .code, or the matching errno / Python exception type)
        - DNS failure (socket.gaierror), httpx timeouts and network errors
        - HTTP status 408, 429, 500, 502, 503, 504
        - any message containing "timeout"
    """
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return True

    if isinstance(error, (TimeoutError, ConnectionResetError, ConnectionRefusedError, socket.gaierror)):
        return True
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    status = _status_of(error)
    if status is not None and status in RETRYABLE_STATUS_CODES:
        return True

    message = getattr(error, "message", None) or str(error)
    return "timeout" in str(message).lower()


@dataclass
class RetryPolicy:
    """Backoff settings. Delays are in seconds."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0
    should_retry: Callable[[BaseException], bool] = is_retryable
    random_source: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        """Build the default policy from application settings."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Exponential part of the delay for a 0-based attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Backoff plus jitter in [0, jitter)."""
        return self.backoff(attempt) + self.random_source() * self.jitter


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying transient failures.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Backoff settings (defaults to RetryPolicy())
        on_retry: Called before each wait with (attempt number starting
                  at 1, error, delay seconds)
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Whatever operation returns on its first successful attempt

    Raises:
        The original exception when it is not retryable or when the final
        attempt fails.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as error:
            if attempt == attempts - 1 or not policy.should_retry(error):
                raise

            delay = policy.compute_delay(attempt)
            if on_retry:
                on_retry(attempt + 1, error, delay)
            await sleep(delay)

    raise RuntimeError("unreachable")  # loop always returns or raises
