"""Dependency injection helpers for FastAPI."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from market_mirror.core.config import settings
from market_mirror.monitor.service import MarketMonitor, get_market_monitor


async def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Guard for operator endpoints."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ADMIN_API_KEY not configured",
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


async def require_market_monitor() -> MarketMonitor:
    monitor = get_market_monitor()
    if monitor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Market monitor is not enabled",
        )
    return monitor
