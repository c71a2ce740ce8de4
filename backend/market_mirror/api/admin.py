from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_mirror.db.models import FinalizationAttempt, RawEvent
from market_mirror.db.session import get_db
from market_mirror.dependencies import require_admin_key
from market_mirror.indexer.service import IndexerService, ReplaySummary, get_indexer_service

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


class RawEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: str
    event_type: str
    tx_signature: str
    slot: int
    processed: bool
    error: Optional[str] = None
    payload: dict[str, Any]
    received_at: Optional[datetime] = None


class FinalizationAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    market_id: UUID
    market_address: str
    run_id: Optional[str] = None
    attempted_at: Optional[datetime] = None
    outcome: str
    tx_signature: Optional[str] = None
    error_message: Optional[str] = None
    attempt_count: int
    processing_time_ms: int


@router.get("/raw-events/failed", response_model=list[RawEventOut])
async def list_failed_events(
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Unprocessed raw events carrying an error, newest first."""
    result = await db.execute(
        select(RawEvent)
        .where(RawEvent.processed.is_(False))
        .where(RawEvent.error.is_not(None))
        .order_by(RawEvent.received_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.post("/replay", response_model=ReplaySummary)
async def replay_failed_events(
    limit: int = Query(default=100, ge=1, le=1000),
    indexer: IndexerService = Depends(get_indexer_service),
):
    """Re-apply unprocessed raw events in slot order."""
    return await indexer.replay_pending(limit=limit)


@router.get("/finalization-attempts", response_model=list[FinalizationAttemptOut])
async def list_finalization_attempts(
    market: Optional[str] = Query(default=None, description="Market ledger address"),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(FinalizationAttempt).order_by(FinalizationAttempt.attempted_at.desc()).limit(limit)
    if market:
        query = query.where(FinalizationAttempt.market_address == market)
    result = await db.execute(query)
    return result.scalars().all()
