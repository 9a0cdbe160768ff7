"""
Retry policy for Amazon Ads calls: exponential backoff with jitter.

The sleep and random sources are injected so tests can run the policy
without waiting.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class AttemptOutcome:
    result: Any = None
    error: Optional[Exception] = None
    attempts: int = 0
    # True when the last error was retriable but attempts ran out
    exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    rand: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls, settings, **overrides) -> "BackoffPolicy":
        values = {
            "max_attempts": settings.worker_max_attempts,
            "base_delay": settings.worker_base_delay_seconds,
            "max_delay": settings.worker_max_delay_seconds,
            "jitter": settings.worker_jitter,
        }
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay after failed attempt number `attempt` (1-based). A server
        Retry-After wins but is still capped at max_delay.
        """
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        return delay * (1 + self.jitter * self.rand())

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        is_retriable: Callable[[Exception], bool],
        retry_after: Callable[[Exception], Optional[float]] = lambda exc: None,
        label: str = "operation",
    ) -> AttemptOutcome:
        """Run `operation` until it succeeds, fails permanently, or attempts run out. Never raises."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
                return AttemptOutcome(result=result, attempts=attempt)
            except Exception as exc:
                if not is_retriable(exc):
                    return AttemptOutcome(error=exc, attempts=attempt)
                if attempt == self.max_attempts:
                    logger.warning(f"{label}: giving up after {attempt} attempts: {exc}")
                    return AttemptOutcome(error=exc, attempts=attempt, exhausted=True)
                delay = self.delay_for(attempt, retry_after(exc))
                logger.info(f"{label}: attempt {attempt}/{self.max_attempts} failed ({exc}); retrying in {delay:.2f}s")
                await self.sleep(delay)
        raise RuntimeError("max_attempts must be at least 1")
