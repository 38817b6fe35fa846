"""Reusable retry policy for fallible async operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..errors import GenerationError, GenerationExhausted

log = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(attempt: int) -> float:
    """Seconds to wait after failed attempt number *attempt* (1-based)."""
    return float(2 ** attempt)


def is_generation_error(exc: BaseException) -> bool:
    return isinstance(exc, GenerationError)


@dataclass
class RetryPolicy:
    """Max attempts, a backoff function and a retryable-error predicate.

    Usage:
        policy = RetryPolicy(max_attempts=3)
        text = await policy.run(lambda attempt: call_backend())
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = exponential_backoff
    retryable: Callable[[BaseException], bool] = is_generation_error
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    async def run(self, op: Callable[[int], Awaitable[T]]) -> T:
        """Call ``op(attempt)`` until it succeeds or attempts run out.

        Non-retryable errors propagate at once. Exhaustion raises
        GenerationExhausted carrying the last error.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await op(attempt)
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                last_error = exc
                log.warning(
                    "attempt %d/%d failed: %s", attempt, self.max_attempts, exc,
                )
                if attempt < self.max_attempts:
                    await self.sleep(self.backoff(attempt))
        raise GenerationExhausted(self.max_attempts, last_error) from last_error
