"""Simple asyncio scheduler for periodic tasks (learning ingestion, approval expiry sweep)."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `coro` immediately and then every `interval_seconds` until stopped.

    The stop signal is an asyncio.Event checked between iterations and awaited
    in place of a plain sleep, so stop() takes effect without waiting out the
    interval. A failing iteration is logged and does not end the loop.
    """

    def __init__(self, name: str, interval_seconds: float, coro: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._coro = coro
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.iterations = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"Started periodic task {self.name} (every {self.interval_seconds}s)")
        return self

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.interval_seconds + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info(f"Stopped periodic task {self.name}")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self._coro()
            except Exception as e:
                logger.error(f"Scheduled task {self.name} error: {e}", exc_info=True)
            self.iterations += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass


def start_scheduler(name: str, interval_seconds: float, coro: Callable[[], Awaitable[object]]) -> PeriodicTask:
    """Start periodic coro as background task and return its handle."""
    return PeriodicTask(name, interval_seconds, coro).start()
