"""Bounded retry around AI backend calls.

Backoff is linear and unjittered: the wait before attempt n+1 is
base_delay * n. The fixed schedule keeps retry timing auditable from the logs.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from agentcore.orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_CODES = {"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "RATE_LIMITED"}
RETRYABLE_STATUSES = {429, 502, 503, 504}
RETRYABLE_EXCEPTIONS = (ConnectionResetError, ConnectionRefusedError, TimeoutError, asyncio.TimeoutError)


class RetryPolicy(BaseModel):
    """Retry configuration for AI backend calls."""
    max_retries: int = 3  # total attempts
    base_delay: float = 1.0  # seconds

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt


def is_retryable_error(error: Any) -> bool:
    """
    Classify an AI backend failure as transient.

    Matches network resets, timeouts, refused connections, explicit rate-limit
    codes, HTTP 429/502/503/504, and messages mentioning "timeout" or
    "rate limit". The substring checks are intentionally coarse.
    """
    if error is None:
        return False
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True
    if getattr(error, "code", None) in RETRYABLE_CODES:
        return True
    for attr in ("status", "status_code"):
        if getattr(error, attr, None) in RETRYABLE_STATUSES:
            return True

    message = str(error).lower()
    return "timeout" in message or "rate limit" in message


async def get_ai_response_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    token: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "AI request"
) -> T:
    """
    Run an AI backend call with bounded retries.

    Args:
        call: Zero-argument factory returning a fresh awaitable per attempt
        policy: Retry policy (default: 3 attempts, 1s base delay)
        token: Cancellation token; each attempt is raced against it
        sleep: Sleep function used between attempts
        label: Name used in log messages

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last failure, or the first non-retryable one
        TaskCancelledError: If the token is cancelled
    """
    policy = policy or RetryPolicy()
    attempt = 1

    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            if token is not None:
                return await token.run(call())
            return await call()
        except Exception as e:
            if token is not None and token.cancelled:
                raise
            if attempt >= policy.max_retries or not is_retryable_error(e):
                if attempt > 1:
                    logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Retrying {label}, attempt {attempt + 1}/{policy.max_retries} "
                f"in {delay:.1f}s: {e}"
            )
            await sleep(delay)
            attempt += 1
