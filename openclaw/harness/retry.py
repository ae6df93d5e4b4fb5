"""
Retry Logic — resilience against transient backend failures.

API calls fail. Networks drop. Rate limits hit. This module makes sure a
transient failure costs a short wait instead of a failed turn:

- Exponential backoff: the delay starts at initial_delay and doubles per retry
- Capped: no single wait exceeds max_delay
- Classified: only 429, 5xx and network-level failures are retried
- Bounded: max_attempts counts every call, the first one included

The backoff state is an explicit object advanced between calls, and waits go
through asyncio.sleep so a cancelled turn stops waiting immediately.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

import anthropic
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.initial_delay = max(0.0, float(initial_delay))
        self.max_delay = max(self.initial_delay, float(max_delay))
        self.multiplier = max(1.0, float(multiplier))


class Backoff:
    """Attempt counter plus the delay to wait before the next attempt."""

    def __init__(self, config: RetryConfig):
        self._config = config
        self.attempt = 0
        self.next_delay = config.initial_delay

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self._config.max_attempts

    def record_attempt(self) -> None:
        self.attempt += 1

    def advance(self) -> float:
        """Return the delay to wait now and double the one after it (capped)."""
        delay = min(self.next_delay, self._config.max_delay)
        self.next_delay = min(self.next_delay * self._config.multiplier, self._config.max_delay)
        return delay


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable:
    - 429 (rate limit)
    - any 5xx (server errors, including Anthropic's 529 overloaded)
    - connection failures and timeouts

    NOT retryable:
    - every other HTTP status (400, 401, 403, 404, ...)
    - anything that is not a transport failure
    """
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code == 429 or error.status_code >= 500
    if isinstance(error, anthropic.APIConnectionError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    # OSError covers network-level issues
    if isinstance(error, OSError):
        return True
    return False


async def with_retries(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], Any]] = None,
) -> T:
    """
    Execute an async function with retry logic.

    Args:
        func: The async function to execute (no arguments — use a closure)
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback (sync or async) receiving attempt, error, delay

    Returns:
        The result of the function call

    Raises:
        The error itself when it is not retryable, or the last error once
        every attempt has been used.
    """
    if config is None:
        config = RetryConfig()

    backoff = Backoff(config)
    while True:
        backoff.record_attempt()
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    attempt=backoff.attempt,
                )
                raise

            if backoff.exhausted:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=backoff.attempt,
                )
                raise

            delay = backoff.advance()
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=backoff.attempt,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
            )

            if on_retry:
                maybe_awaitable = on_retry(backoff.attempt, e, delay)
                if inspect.isawaitable(maybe_awaitable):
                    await maybe_awaitable

            await asyncio.sleep(delay)
