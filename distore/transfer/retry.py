"""
Retry Policy

Design Decision: Two Retry Budgets
==================================

The backend fails in two different ways:

1. RateLimited(retry_after) - the backend told us exactly how long to wait.
   Waiting is the correct response, so these get their own, larger budget
   and sleep for the signalled delay (no exponential growth).
2. TransportError - network fault or 5xx. Retried with exponential backoff
   plus jitter, up to max_attempts total attempts.

Everything else (PayloadTooLarge, NotFound, IntegrityError, ConfigError...)
is not transient and propagates on the first occurrence.

The sleep happens inside the task that made the call, so a rate-limited
worker backs off alone while the rest of the pool keeps going.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from ..errors import ConfigError, RateLimited, TransportError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Bounded retry for transport calls."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_rate_limit_retries: int = 10
    # Fraction of the backoff delay added as random jitter
    jitter: float = 0.1
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False, compare=False
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.max_rate_limit_retries < 0:
            raise ConfigError("max_rate_limit_retries cannot be negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("Retry delays cannot be negative")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter and delay:
            delay += random.uniform(0, delay * self.jitter)
        return delay


async def call_with_retry(operation: Callable[[], Awaitable[T]],
                          policy: RetryPolicy,
                          description: str = "request") -> T:
    """
    Run operation() until it succeeds or a retry budget is exhausted.

    Raises:
        RateLimited: rate-limit budget exhausted
        TransportError: attempt budget exhausted
        Any non-transient error from operation() unchanged
    """
    attempt = 1
    rate_limited = 0

    while True:
        try:
            return await operation()
        except RateLimited as e:
            rate_limited += 1
            if rate_limited > policy.max_rate_limit_retries:
                logger.warning(f"{description}: still rate limited after {rate_limited - 1} waits")
                raise
            logger.debug(f"{description}: rate limited, waiting {e.retry_after:.2f}s")
            await policy.sleep(e.retry_after)
        except TransportError as e:
            if attempt >= policy.max_attempts:
                logger.warning(f"{description}: giving up after {attempt} attempts: {e}")
                raise
            delay = policy.backoff_delay(attempt)
            logger.debug(f"{description}: attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
            attempt += 1
            await policy.sleep(delay)
