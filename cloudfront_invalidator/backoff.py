import asyncio
from typing import Awaitable, Callable, Optional

from cloudfront_invalidator.models import BackoffConfig

SleepFunc = Callable[[float], Awaitable[None]]


class Backoff:
    """Truncated exponential backoff without jitter or attempt limit.

    The delay multiplier starts at 1 and doubles after every wait until it
    reaches ``max_multiplier``, after which the delay stays constant.
    ``attempts`` and ``multiplier`` are public so callers can impose their own
    bounds from the outside.
    """

    def __init__(self, config: Optional[BackoffConfig] = None):
        self.config = config or BackoffConfig()
        self.multiplier = 1
        self.attempts = 0

    def current_delay(self) -> float:
        return self.multiplier * self.config.base_delay

    def advance(self) -> float:
        """Returns the delay for this attempt and doubles the multiplier"""
        delay = self.current_delay()
        self.attempts += 1
        if self.multiplier < self.config.max_multiplier:
            self.multiplier = min(self.multiplier * 2, self.config.max_multiplier)
        return delay

    async def wait(self, sleep: SleepFunc = asyncio.sleep) -> float:
        delay = self.current_delay()
        await sleep(delay)
        self.advance()
        return delay
