"""Timer-driven periodic task with a per-task reentrancy guard.

Each firing of the timer spawns one tick. If the previous tick is still in
flight the new one is skipped outright: no queueing, no delay, no work.
``stop()`` cancels the timer and clears the running flag; a tick that is
already executing is left to finish on its own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

LOGGER = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``tick`` every ``interval`` seconds until stopped.

    Parameters
    ----------
    name:
        Label used in log lines.
    tick:
        Coroutine function executed on every firing. Exceptions are logged and
        swallowed so the schedule survives a failing tick.
    interval:
        Seconds between firings.
    run_immediately:
        Fire once at start instead of waiting a full interval.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[None]],
        interval: float,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self._tick = tick
        self._interval = interval
        self._run_immediately = run_immediately
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._running = False
        self.ticks_started = 0
        self.ticks_skipped = 0
        self.ticks_failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._timer = asyncio.get_running_loop().create_task(self._timer_loop(), name=f"{self.name}-timer")

    async def stop(self) -> None:
        self._running = False
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

    async def wait_idle(self) -> None:
        """Wait for any in-flight tick to finish."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def run_tick(self) -> bool:
        """Execute one guarded tick. Returns False when skipped."""
        if self._lock.locked():
            self.ticks_skipped += 1
            LOGGER.debug("%s: previous tick still in progress, skipping", self.name)
            return False
        async with self._lock:
            self.ticks_started += 1
            try:
                await self._tick()
            except Exception:
                self.ticks_failed += 1
                LOGGER.exception("%s: tick failed", self.name)
        return True

    def fire(self) -> None:
        """Spawn a tick without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.run_tick(), name=f"{self.name}-tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _timer_loop(self) -> None:
        if self._run_immediately and self._running:
            self.fire()
        while self._running:
            await asyncio.sleep(self._interval)
            if not self._running:
                break
            self.fire()
