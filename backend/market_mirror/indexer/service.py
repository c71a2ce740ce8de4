"""
Market Mirror - Indexer Service

Glue between the webhook and the writer: decode a batch of notifications,
apply each event in arrival order, and replay raw events that failed earlier.
Events parked behind a missing predecessor are retried automatically once a
batch applies something new.
"""

import logging
from typing import Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_mirror.core.config import settings
from market_mirror.db.models import RawEvent
from market_mirror.db.session import async_session_maker
from market_mirror.indexer.decoder import (
    DecodeError,
    EventDecoder,
    LedgerNotification,
    NotificationInstruction,
)
from market_mirror.indexer.events import EventType
from market_mirror.indexer.writer import MirrorWriter

logger = logging.getLogger(__name__)


class IngestSummary(BaseModel):
    notifications: int = 0
    events_processed: int = 0
    events_failed: int = 0
    duplicates: int = 0
    decode_errors: int = 0
    events_replayed: int = 0


class ReplaySummary(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


class IndexerService:
    """Decoder -> Writer pipeline."""

    def __init__(self, decoder: EventDecoder, writer: MirrorWriter):
        self.decoder = decoder
        self.writer = writer

    async def ingest(self, notifications: Iterable[LedgerNotification], source: str = "helius") -> IngestSummary:
        summary = IngestSummary()
        applied = 0
        for notification in notifications:
            summary.notifications += 1
            decoded = self.decoder.decode(notification)
            for error in decoded.errors:
                summary.decode_errors += 1
                logger.warning(
                    f"[INDEXER] skipping instruction {error.instruction_index} of "
                    f"{error.signature}: {error}"
                )
            for event in decoded.events:
                result = await self.writer.apply(event, source=source)
                if not result.success:
                    summary.events_failed += 1
                    continue
                summary.events_processed += 1
                if result.duplicate:
                    summary.duplicates += 1
                else:
                    applied += 1

        # Something new landed, so a parked event may now have its predecessor
        if applied:
            summary.events_replayed = await self.drain_deferred()
        return summary

    async def drain_deferred(self) -> int:
        """Replay until a pass applies nothing; returns events applied."""
        replayed = 0
        while True:
            replay = await self.replay_pending()
            replayed += replay.succeeded
            if not replay.succeeded or not replay.failed:
                return replayed

    async def replay_pending(self, limit: int = 100) -> ReplaySummary:
        """Re-decode and re-apply unprocessed raw events, oldest slot first."""
        summary = ReplaySummary()
        async with self.writer.session_maker() as db:
            rows = (
                await db.execute(
                    select(RawEvent)
                    .where(RawEvent.processed.is_(False))
                    .where(RawEvent.event_type != EventType.UNKNOWN.value)
                    .order_by(RawEvent.slot, RawEvent.instruction_index)
                    .limit(limit)
                )
            ).scalars().all()

        for row in rows:
            summary.attempted += 1
            instruction = row.payload.get("instruction")
            timestamp = row.payload.get("event", {}).get("timestamp")
            if not instruction or timestamp is None:
                logger.error(f"[INDEXER] raw event {row.id} has no stored instruction; cannot replay")
                summary.failed += 1
                continue
            try:
                event = self.decoder.decode_instruction(
                    NotificationInstruction.model_validate(instruction),
                    signature=row.tx_signature,
                    slot=row.slot,
                    timestamp=timestamp,
                    index=row.instruction_index,
                )
            except DecodeError as exc:
                logger.error(f"[INDEXER] raw event {row.id} no longer decodes: {exc}")
                summary.failed += 1
                continue

            result = await self.writer.apply(event, source=row.source)
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        if summary.attempted:
            logger.info(
                f"[INDEXER] replay: {summary.succeeded}/{summary.attempted} applied, {summary.failed} still failing"
            )
        return summary


def build_indexer_service(session_maker: async_sessionmaker[AsyncSession]) -> IndexerService:
    return IndexerService(
        decoder=EventDecoder(
            program_id=settings.PROGRAM_ID,
            dispute_window_seconds=settings.DISPUTE_WINDOW_SECONDS,
        ),
        writer=MirrorWriter(
            session_maker,
            dispute_success_threshold_bps=settings.DISPUTE_SUCCESS_THRESHOLD_BPS,
        ),
    )


_indexer_service: Optional[IndexerService] = None


def get_indexer_service() -> IndexerService:
    """Get singleton indexer service."""
    global _indexer_service
    if _indexer_service is None:
        _indexer_service = build_indexer_service(async_session_maker)
    return _indexer_service
