"""Standalone market monitor: python -m market_mirror.monitor"""

import asyncio
import logging
import signal

from market_mirror.core.config import settings
from market_mirror.core.logging import configure_logging
from market_mirror.db.session import async_session_maker, engine
from market_mirror.monitor.scheduler import MonitorScheduler
from market_mirror.monitor.service import build_market_monitor

logger = logging.getLogger("market_mirror.monitor")


async def main() -> None:
    monitor = build_market_monitor(settings, async_session_maker)
    await monitor.validate()

    scheduler = MonitorScheduler(
        monitor,
        interval=monitor.config.interval_seconds,
        shutdown_max_wait=monitor.config.shutdown_max_wait,
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    await stop.wait()
    logger.info("[MONITOR] signal received, shutting down")
    await scheduler.stop()
    await monitor.submitter.rpc.close()
    await engine.dispose()


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL, debug=settings.DEBUG or settings.MONITOR_DEBUG)
    if not settings.MONITOR_ENABLED:
        raise SystemExit("MONITOR_ENABLED is not set")
    asyncio.run(main())
