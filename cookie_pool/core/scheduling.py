"""Self-rescheduling timer with explicit start/stop and jitter.

A ``PeriodicTask`` owns one asyncio task that sleeps for a jittered delay,
awaits its callback, and repeats.  Errors raised by the callback are logged
and never stop the loop.  ``stop()`` is the single cancellation point.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


def jittered_delay(
    interval: float,
    jitter: float = 0.0,
    floor: float = 0.0,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Return ``interval ± jitter`` clamped to at least *floor* seconds."""
    delay = interval + (rng(-jitter, jitter) if jitter else 0.0)
    return max(floor, delay)


class PeriodicTask:
    """Run *func* forever with a jittered pause between runs."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        *,
        jitter: float = 0.0,
        floor: float = 0.0,
    ) -> None:
        self.name = name
        self.interval = interval
        self.jitter = jitter
        self.floor = floor
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        return jittered_delay(self.interval, self.jitter, self.floor)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug("Timer %s started (interval=%.1fs).", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Timer %s stopped.", self.name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.next_delay())
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer %s callback failed", self.name)
