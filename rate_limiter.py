from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Keeps successive gated calls at least ``min_delay`` seconds apart.

    The spacing is measured between call starts. There is no queue: callers
    racing on the same limiter each re-check the elapsed time after their
    own wait, so under concurrency two calls can start closer together than
    ``min_delay``. Callers that need strict spacing serialize themselves.
    """

    def __init__(
        self,
        min_delay: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.min_delay = max(0.0, float(min_delay))
        self._clock = clock
        self._sleep = sleep
        self._last_start: float | None = None

    async def wait(self) -> None:
        if self._last_start is not None and self.min_delay > 0:
            elapsed = self._clock() - self._last_start
            wait_for = self.min_delay - elapsed
            if wait_for > 0:
                await self._sleep(wait_for)
        self._last_start = self._clock()

    async def execute(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await self.wait()
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result
