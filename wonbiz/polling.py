"""Retry policy used to poll long running provider jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import TranscriptionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeout(TranscriptionError):
    """Raised when the attempt budget is exhausted before a terminal state."""


@dataclass
class RetryPolicy:
    """Fixed-interval polling with an attempt budget.

    ``sleep`` is injectable so tests can drive the policy with a fake clock.
    """

    interval: float = 5.0
    max_attempts: int = 60
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def poll(self, fetch: Callable[[], Awaitable[T]], is_terminal: Callable[[T], bool]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            value = await fetch()
            if is_terminal(value):
                return value
            logger.debug("Poll attempt %d/%d not terminal yet", attempt, self.max_attempts)
            if attempt < self.max_attempts:
                await self.sleep(self.interval)
        raise PollTimeout(f"Gave up after {self.max_attempts} attempts")
