"""Interval scheduler for the market monitor: run now, then every `interval` seconds."""

import asyncio
import logging
from typing import Optional

from market_mirror.monitor.service import MarketMonitor

logger = logging.getLogger(__name__)


class MonitorScheduler:
    def __init__(self, monitor: MarketMonitor, interval: float, shutdown_max_wait: float = 60.0):
        self.monitor = monitor
        self.interval = interval
        self.shutdown_max_wait = shutdown_max_wait
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.started:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="market-monitor")
        logger.info(f"[SCHEDULER] started, interval {self.interval:.0f}s")

    async def tick(self) -> None:
        try:
            await self.monitor.run()
        except Exception:
            logger.exception("[SCHEDULER] monitor run failed")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def stop(self) -> None:
        """Withhold new runs, wait (bounded) for the in-flight one, then stop the loop."""
        self._stopping.set()
        drained = await self.monitor.shutdown(self.shutdown_max_wait)
        if self._task is None:
            return
        if not drained:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.warning("[SCHEDULER] loop cancelled with a run in flight")
        self._task = None
        logger.info("[SCHEDULER] stopped")
