"""Periodic asyncio task runner used for the batch schedule."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a coroutine function every ``interval_seconds`` on the event loop.

    Each wait is the interval plus or minus a uniform jitter. Runs never
    overlap: a tick that finds the previous run still in progress is skipped.
    Exceptions from ``func`` are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        jitter_seconds: float = 0.0,
        run_immediately: bool = True,
        rng: Optional[random.Random] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.jitter_seconds = max(0.0, jitter_seconds)
        self.run_immediately = run_immediately
        self._func = func
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.run_count = 0
        self.skipped_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.is_running:
            logger.warning(f"Periodic task '{self.name}' already running")
            return False
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Periodic task '{self.name}' started (every {self.interval_seconds:.0f}s)")
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task '{self.name}' stopped")

    def next_delay(self) -> float:
        if not self.jitter_seconds:
            return self.interval_seconds
        # Never shorter than the interval
        return self.interval_seconds + self._rng.uniform(0.0, self.jitter_seconds)

    async def run_once(self) -> bool:
        """Run ``func`` unless a run is already in progress.

        Returns:
            True if the function ran (successfully or not)
        """
        if self._lock.locked():
            self.skipped_count += 1
            logger.warning(f"Periodic task '{self.name}' still running, skipping tick")
            return False

        async with self._lock:
            self.run_count += 1
            try:
                await self._func()
            except Exception as e:
                logger.error(f"Periodic task '{self.name}' failed: {e}", exc_info=True)
        return True

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.next_delay())
            await self.run_once()
