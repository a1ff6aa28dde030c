"""Retry strategies for caller-side conflict handling.

The remote registry reports a lost compare-and-swap race as
``ConcurrentModificationError`` and never retries. The orchestrator decides
explicitly how to react by holding one of these strategies:

- ExponentialBackoffStrategy: re-read and re-apply with growing delays
- NoRetryStrategy: surface the conflict immediately

Usage:
    strategy = ExponentialBackoffStrategy(max_retries=3, base_delay=0.5)
    ctx = RetryContext(target="forest-1700000000", operation="register_node")

    while True:
        try:
            return await registry.register_node(node)
        except ConcurrentModificationError as e:
            ctx.record_failure(e)
            if not strategy.should_retry(ctx):
                raise
            await asyncio.sleep(strategy.get_delay(ctx))
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RetryContext:
    """Retry state for a single operation."""

    target: str = ""  # Forest ID the operation touches
    operation: str = ""  # Operation name for logging
    attempt: int = 0  # Failures so far (0 = first try)
    failures: list[Exception] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)

    def record_failure(self, error: Exception) -> None:
        self.failures.append(error)
        self.attempt += 1

    @property
    def elapsed_time(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def last_error(self) -> Exception | None:
        return self.failures[-1] if self.failures else None


class RetryStrategy(ABC):
    """Decides whether and when to retry.

    ``should_retry`` is consulted after ``ctx.record_failure``; with
    ``max_retries=3`` the operation runs at most four times.
    """

    def __init__(
        self,
        max_retries: int = 3,
        max_delay: float = 30.0,
        max_total_time: float = 120.0,
    ):
        self.max_retries = max_retries
        self.max_delay = max_delay
        self.max_total_time = max_total_time

    @abstractmethod
    def get_delay(self, ctx: RetryContext) -> float:
        """Seconds to wait before the next attempt."""

    def should_retry(self, ctx: RetryContext) -> bool:
        if ctx.attempt > self.max_retries:
            return False
        if ctx.elapsed_time >= self.max_total_time:
            return False
        return True

    def on_retry(self, ctx: RetryContext, delay: float) -> None:
        logger.debug(
            f"[{self.__class__.__name__}] Retry {ctx.attempt}/{self.max_retries} "
            f"for {ctx.operation} on {ctx.target} in {delay:.2f}s"
        )


class ExponentialBackoffStrategy(RetryStrategy):
    """Delay grows as base_delay * multiplier ** (attempt - 1), with jitter.

    Jitter spreads concurrent writers that lost the same race.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        max_total_time: float = 120.0,
        jitter: float = 0.25,
    ):
        super().__init__(max_retries, max_delay, max_total_time)
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.jitter = jitter

    def get_delay(self, ctx: RetryContext) -> float:
        delay = self.base_delay * (self.multiplier ** max(ctx.attempt - 1, 0))
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, min(delay, self.max_delay))


class NoRetryStrategy(RetryStrategy):
    """Fail on the first conflict."""

    def __init__(self):
        super().__init__(max_retries=0, max_delay=0, max_total_time=0)

    def should_retry(self, ctx: RetryContext) -> bool:
        return False

    def get_delay(self, ctx: RetryContext) -> float:
        return 0.0


def conflict_retry(max_retries: int = 3) -> RetryStrategy:
    """Default policy for registry conflicts (``0`` disables retrying)."""
    if max_retries <= 0:
        return NoRetryStrategy()
    return ExponentialBackoffStrategy(max_retries=max_retries, base_delay=0.5, max_delay=5.0)


__all__ = [
    "ExponentialBackoffStrategy",
    "NoRetryStrategy",
    "RetryContext",
    "RetryStrategy",
    "conflict_retry",
]
