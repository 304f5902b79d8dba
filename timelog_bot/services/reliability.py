"""Bounded retries for outbound calls to Slack and the LLM.

Callers decide which exceptions are worth another attempt. An exception that
carries a ``retry_after`` attribute (seconds) stretches the wait for that
attempt, which is how Slack and OpenAI ``Retry-After`` headers are honoured.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_BACKOFF_S = 1.0


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def _wait_for(exc: Exception, backoff_s: float) -> float:
    hint = getattr(exc, "retry_after", None)
    if isinstance(hint, (int, float)) and hint > backoff_s:
        return float(hint)
    return backoff_s


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    retryable: tuple[type[Exception], ...],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_backoff_s: float = DEFAULT_BASE_BACKOFF_S,
    operation: str = "call",
) -> T:
    """Await ``fn()`` until it succeeds, doubling the pause after each retryable failure.

    Anything outside ``retryable`` propagates on the spot. When the last attempt
    still fails, ``RetryExhaustedError`` is raised with that attempt's error.
    """
    attempt = 0
    backoff_s = base_backoff_s
    while True:
        attempt += 1
        try:
            return await fn()
        except retryable as exc:
            if attempt >= max_attempts:
                raise RetryExhaustedError(attempt, exc) from exc
            wait_s = _wait_for(exc, backoff_s)
            logger.info(
                "%s failed on attempt %d/%d (%s); retrying in %.1fs",
                operation,
                attempt,
                max_attempts,
                type(exc).__name__,
                wait_s,
            )
            await asyncio.sleep(wait_s)
            backoff_s *= 2
