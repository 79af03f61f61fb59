"""
Fixed-interval tick source for the polling loops.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Set

from trading_engine.config import logger


class PeriodicScheduler:
    """
    Runs an async callback every `interval` seconds.

    Each tick runs as its own task, so a slow tick does not delay the next
    one and ticks may overlap. stop() cancels only the timer; ticks already
    in flight run to completion. Tests drive the callback through tick()
    instead of waiting on the timer.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval: float, name: str = "scheduler"):
        self.callback = callback
        self.interval = interval
        self.name = name
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self):
        """Start the timer loop. No-op if already running."""
        if self.running:
            return
        self._timer = asyncio.create_task(self._run(), name=f"{self.name}-timer")
        logger.info(f"Started {self.name} with {self.interval}s interval")

    def stop(self):
        """Cancel the timer loop. Idempotent."""
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        logger.info(f"Stopped {self.name}")

    async def tick(self):
        """Run the callback once, logging any error."""
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in {self.name} tick: {e}", exc_info=True)

    async def wait_idle(self):
        """Wait for ticks already in flight to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _run(self):
        try:
            while True:
                await asyncio.sleep(self.interval)
                task = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
        except asyncio.CancelledError:
            logger.debug(f"{self.name} timer cancelled")
