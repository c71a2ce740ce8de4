from fastapi import APIRouter, Depends

from market_mirror.dependencies import require_admin_key, require_market_monitor
from market_mirror.monitor.service import MarketMonitor, RunSummary, get_market_monitor

router = APIRouter(prefix="/monitor", tags=["monitor"])


@router.get("/status")
async def monitor_status():
    """Current state of the auto-finalization monitor."""
    monitor = get_market_monitor()
    if monitor is None:
        return {"enabled": False}
    return {"enabled": True, **monitor.status()}


@router.post("/run", response_model=RunSummary, dependencies=[Depends(require_admin_key)])
async def trigger_run(monitor: MarketMonitor = Depends(require_market_monitor)):
    """Run one scan/finalize cycle now. Returns a skipped summary if one is already running."""
    return await monitor.run()
