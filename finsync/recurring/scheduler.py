"""
Recurring Scheduler

Runs the recurring engine once at startup and then on a fixed interval,
as a background asyncio task on the application's event loop.
"""

import asyncio
from typing import Optional

import structlog

from finsync.config import get_settings
from finsync.recurring.engine import RecurringEngine, RecurringRunResult


logger = structlog.get_logger(__name__)


class RecurringScheduler:
    """Periodic driver for RecurringEngine."""

    def __init__(
        self,
        engine: RecurringEngine,
        interval_seconds: Optional[float] = None,
    ):
        """
        Args:
            engine: The engine to drive
            interval_seconds: Pause between runs (default from settings)
        """
        self._engine = engine
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else get_settings().recurring.interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[RecurringRunResult] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop. The first run happens immediately."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("recurring_scheduler_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("recurring_scheduler_stopped", runs=self.runs)

    async def run_once(self) -> Optional[RecurringRunResult]:
        """
        One engine pass.

        A failure of the whole pass (e.g. the store is unreadable) is
        logged and the loop keeps going; returns None in that case.
        """
        try:
            result = await self._engine.process()
        except Exception as e:
            logger.error("recurring_run_failed", error=str(e), exc_info=True)
            return None
        finally:
            self.runs += 1
        self.last_result = result
        return result

    async def _run_loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)
