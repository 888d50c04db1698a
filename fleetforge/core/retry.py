"""Bounded exponential backoff with jitter for control-plane calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

from fleetforge.core.errors import FleetForgeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryPolicy(BaseModel):
    """Attempt budget and backoff curve for one retryable step."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, le=1)

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        raw = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return jittered(raw, self.jitter)


def jittered(interval: float, jitter: float) -> float:
    """Spread ``interval`` uniformly by ±``jitter`` (a fraction)."""
    if interval <= 0 or jitter <= 0:
        return max(interval, 0.0)
    return interval * random.uniform(1.0 - jitter, 1.0 + jitter)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (FleetForgeError,),
    description: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or the budget is spent.

    Only exceptions in ``retry_on`` whose ``retryable`` attribute is true
    (or that have no such attribute) are retried.  The last error is
    re-raised unchanged once ``policy.max_attempts`` is reached.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if not getattr(exc, "retryable", True):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempt(s): %s", description, attempt, exc
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
