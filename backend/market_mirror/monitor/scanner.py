"""
Market Mirror - Deadline Scanner

Finds RESOLVING markets whose dispute window has closed. Read-only.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_mirror.db.models import Market, MarketState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverdueMarket:
    id: UUID
    address: str
    proposed_outcome: Optional[str]
    resolution_proposed_at: Optional[datetime]
    dispute_deadline_at: datetime


class DeadlineScanner:
    """Selects markets eligible for auto-finalization, oldest deadline first."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        batch_size: int = 10,
        safety_buffer: float = 60.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_maker = session_maker
        self.batch_size = batch_size
        self.safety_buffer = timedelta(seconds=safety_buffer)
        self.clock = clock

    def cutoff(self) -> datetime:
        """Latest deadline that is eligible right now."""
        return self.clock() - self.safety_buffer

    async def scan(self) -> list[OverdueMarket]:
        cutoff = self.cutoff()
        async with self.session_maker() as db:
            rows = (
                await db.execute(
                    select(
                        Market.id,
                        Market.address,
                        Market.proposed_outcome,
                        Market.resolution_proposed_at,
                        Market.dispute_deadline_at,
                    )
                    .where(Market.state == MarketState.RESOLVING.value)
                    .where(Market.dispute_deadline_at.is_not(None))
                    .where(Market.dispute_deadline_at <= cutoff)
                    .order_by(Market.dispute_deadline_at.asc())
                    .limit(self.batch_size)
                )
            ).all()

        markets = [OverdueMarket(*row) for row in rows]
        logger.info(f"[SCANNER] {len(markets)} market(s) past deadline (cutoff {cutoff.isoformat()})")
        return markets
