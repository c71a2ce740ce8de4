"""Market Mirror - FastAPI Application.

Ledger webhook ingestion and automatic market finalization.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from market_mirror.api import admin, monitor, webhooks
from market_mirror.core.config import settings
from market_mirror.core.logging import configure_logging
from market_mirror.db.session import async_session_maker, engine
from market_mirror.monitor.scheduler import MonitorScheduler
from market_mirror.monitor.service import build_market_monitor, get_market_monitor, set_market_monitor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, debug=settings.DEBUG)
    if settings.MONITOR_DEBUG:
        logging.getLogger("market_mirror.monitor").setLevel(logging.DEBUG)

    scheduler = None
    if settings.MONITOR_ENABLED:
        market_monitor = build_market_monitor(settings, async_session_maker)
        # Authority mismatch or unreachable RPC aborts startup.
        await market_monitor.validate()
        set_market_monitor(market_monitor)
        scheduler = MonitorScheduler(
            market_monitor,
            interval=market_monitor.config.interval_seconds,
            shutdown_max_wait=market_monitor.config.shutdown_max_wait,
        )
        scheduler.start()
    else:
        logger.info("[MONITOR] disabled (MONITOR_ENABLED=false)")

    yield

    if scheduler:
        await scheduler.stop()
        await scheduler.monitor.submitter.rpc.close()
        set_market_monitor(None)
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Off-chain mirror of prediction-market program state with automatic finalization",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)  # Ledger webhook ingress
app.include_router(monitor.router)  # Auto-finalization status / trigger
app.include_router(admin.router)  # Raw event replay, attempt audit


@app.get("/")
async def root():
    return {
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "status": "operational",
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as exc:
        logger.error(f"[HEALTH] database check failed: {exc}")
        database = "unavailable"

    market_monitor = get_market_monitor()
    return {
        "status": "ok" if database == "connected" else "degraded",
        "database": database,
        "monitor": {
            "enabled": market_monitor is not None,
            "running": market_monitor.is_running if market_monitor else False,
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("market_mirror.main:app", host="0.0.0.0", port=8000)
