"""
Repeating Poll Timer

Provides PollTimer, a cancellable asyncio task that fires a callback
repeatedly, re-reading its interval before every wait.

Unlike the wall-clock aligned loops used for reporting, a poll timer is
relative: each wait starts when the previous callback finished, so a slow
read only stretches the cadence of its own source.

Usage:
    async def tick():
        # Do work...
        pass

    timer = PollTimer(lambda: source.interval_ms / 1000, tick, name="source_0010")
    timer.start()

    # Later (must happen before the owner of `tick` is released):
    timer.stop()
"""

import asyncio
import time
from typing import Callable, Awaitable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class PollTimer:
    """
    Repeating timer bound to the running event loop.

    Attributes:
        interval: Callable returning the next wait in seconds
        callback: Async function to call each tick
        name: Name for logging/identification
        fire_immediately: Tick once on start instead of after one interval
    """

    def __init__(
        self,
        interval: Callable[[], float],
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        fire_immediately: bool = False,
    ):
        self.interval = interval
        self.callback = callback
        self.name = name
        self.fire_immediately = fire_immediately

        self._task: asyncio.Task | None = None

        # Observability metrics
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Arm the timer on the running loop."""
        if self.running:
            return

        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"poll:{self.name}")

    def stop(self) -> None:
        """Cancel the timer, including a tick that is in progress."""
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        """Wait, tick, repeat until cancelled."""
        first = True
        while True:
            if not (first and self.fire_immediately):
                await asyncio.sleep(self.interval())
            first = False

            try:
                start = time.monotonic()
                await self.callback()
                self._last_execution_time = time.monotonic() - start
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.error(f"Poll timer '{self.name}' callback error: {e}")

    @property
    def execution_count(self) -> int:
        """Total number of completed ticks."""
        return self._execution_count

    @property
    def error_count(self) -> int:
        """Ticks whose callback raised."""
        return self._error_count

    def get_stats(self) -> dict:
        """Get timer statistics for observability."""
        return {
            "name": self.name,
            "running": self.running,
            "interval_s": self.interval(),
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
