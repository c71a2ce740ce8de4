"""
Market Mirror - Mirror Writer

Applies decoded events to the relational mirror. One database transaction per
event:

1. Claim the raw event (insert-if-absent on tx_signature + event_type). A row
   that is already processed means the mutation happened; stop.
2. Ensure-or-create the referenced market / wallet rows.
3. Apply the mutation. Balances move by atomic increments
   (`col = col + excluded.col`); lifecycle moves by conditional UPDATE.
4. Mark the raw event processed.

If any step fails the transaction rolls back and the error is written onto the
raw event in a second transaction, so the event can be replayed later.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_mirror.db.models import (
    Dispute,
    Market,
    MarketState,
    Outcome,
    Position,
    Proposal,
    ProposalStatus,
    RawEvent,
    Resolution,
    Trade,
    User,
)
from market_mirror.db.upsert import insert_for
from market_mirror.indexer.events import (
    EVENT_CLASSES,
    BaseEvent,
    DisputeRaised,
    DisputeResolved,
    MarketActivated,
    MarketCancelled,
    MarketCreated,
    MarketFinalized,
    MarketResolved,
    ProposalApproved,
    TradeExecuted,
    TypedEvent,
    UnknownInstruction,
    VotesAggregated,
    WinningsClaimed,
)
from market_mirror.indexer.fsm import MarketFSM, get_market_fsm

logger = logging.getLogger(__name__)

DEFAULT_DISPUTE_SUCCESS_THRESHOLD_BPS = 6000


class WriteResult(BaseModel):
    """Outcome of applying one event."""
    event_type: str
    signature: str
    success: bool
    duplicate: bool = False
    error: Optional[str] = None


def flip_outcome(outcome: Optional[str]) -> Optional[str]:
    if outcome == Outcome.YES.value:
        return Outcome.NO.value
    if outcome == Outcome.NO.value:
        return Outcome.YES.value
    return outcome


def tally_outcome(agree: int, disagree: int, threshold_bps: int) -> str:
    """Outcome of a disputed market from its vote tally."""
    total = agree + disagree
    if total == 0:
        raise ValueError("dispute tally has no votes")
    return Outcome.YES.value if agree * 10000 // total >= threshold_bps else Outcome.NO.value


class MirrorWriter:
    """Per-event-type handlers over the mirror tables."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        fsm: Optional[MarketFSM] = None,
        dispute_success_threshold_bps: int = DEFAULT_DISPUTE_SUCCESS_THRESHOLD_BPS,
    ):
        self.session_maker = session_maker
        self.fsm = fsm or get_market_fsm()
        self.dispute_success_threshold_bps = dispute_success_threshold_bps
        self._handlers: dict[type[BaseEvent], Callable[[AsyncSession, TypedEvent], Awaitable[None]]] = {
            MarketCreated: self._market_created,
            TradeExecuted: self._trade_executed,
            ProposalApproved: self._proposal_approved,
            MarketResolved: self._market_resolved,
            DisputeRaised: self._dispute_raised,
            DisputeResolved: self._dispute_resolved,
            WinningsClaimed: self._winnings_claimed,
            VotesAggregated: self._votes_aggregated,
            MarketActivated: self._market_activated,
            MarketFinalized: self._market_finalized,
            MarketCancelled: self._market_cancelled,
        }
        missing = set(EVENT_CLASSES.values()) - set(self._handlers) - {UnknownInstruction}
        if missing:
            raise RuntimeError(f"No writer handler for: {sorted(c.__name__ for c in missing)}")

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def apply(self, event: TypedEvent, source: str = "helius") -> WriteResult:
        """Apply one event. Never raises; failures come back as success=False."""
        event_type = event.event_type.value

        if isinstance(event, UnknownInstruction):
            error = f"unrecognized discriminator {event.discriminator}"
            logger.warning(f"[WRITER] {error} in {event.signature}[{event.instruction_index}]")
            await self._record_failure(event, source, error)
            return WriteResult(event_type=event_type, signature=event.signature, success=False, error=error)

        handler = self._handlers[type(event)]
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    if not await self._claim(db, event, source):
                        logger.debug(f"[WRITER] duplicate {event_type} {event.signature}, skipping")
                        return WriteResult(
                            event_type=event_type, signature=event.signature, success=True, duplicate=True
                        )
                    await handler(db, event)
                    await db.execute(
                        update(RawEvent)
                        .where(RawEvent.tx_signature == event.signature)
                        .where(RawEvent.event_type == event_type)
                        .values(processed=True, error=None, processed_at=func.now())
                    )
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error(f"[WRITER] failed to apply {event_type} {event.signature}: {error}")
            await self._record_failure(event, source, error)
            return WriteResult(event_type=event_type, signature=event.signature, success=False, error=error)

        logger.info(f"[WRITER] applied {event_type} {event.signature}")
        return WriteResult(event_type=event_type, signature=event.signature, success=True)

    # =========================================================================
    # RAW EVENT BOOKKEEPING
    # =========================================================================

    def _raw_values(self, event: BaseEvent, source: str) -> dict:
        return dict(
            source=source,
            event_type=event.event_type.value,
            tx_signature=event.signature,
            slot=event.slot,
            instruction_index=event.instruction_index,
            payload=event.to_payload(),
        )

    async def _claim(self, db: AsyncSession, event: BaseEvent, source: str) -> bool:
        """Insert-if-absent; True when the mutation still has to be applied."""
        stmt = insert_for(db, RawEvent).values(**self._raw_values(event, source), processed=False)
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["tx_signature", "event_type"]))
        processed = (
            await db.execute(
                select(RawEvent.processed)
                .where(RawEvent.tx_signature == event.signature)
                .where(RawEvent.event_type == event.event_type.value)
                .with_for_update()
            )
        ).scalar_one()
        return not processed

    async def _record_failure(self, event: BaseEvent, source: str, error: str) -> None:
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    stmt = insert_for(db, RawEvent).values(
                        **self._raw_values(event, source), processed=False, error=error
                    )
                    await db.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["tx_signature", "event_type"],
                            set_={"error": stmt.excluded.error},
                            where=RawEvent.processed.is_(False),
                        )
                    )
        except Exception:
            logger.exception(f"[WRITER] could not record failure for {event.signature}")

    # =========================================================================
    # REFERENCES
    # =========================================================================

    async def _ensure_user(self, db: AsyncSession, wallet: str) -> None:
        stmt = insert_for(db, User).values(wallet=wallet)
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["wallet"]))

    async def _ensure_market(self, db: AsyncSession, address: str) -> UUID:
        """Market id for `address`, creating a PROPOSED placeholder if needed."""
        stmt = insert_for(db, Market).values(address=address, state=MarketState.PROPOSED.value)
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["address"]))
        return (await db.execute(select(Market.id).where(Market.address == address))).scalar_one()

    async def _market_row(self, db: AsyncSession, address: str) -> Market:
        await self._ensure_market(db, address)
        return (await db.execute(select(Market).where(Market.address == address))).scalar_one()

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _market_created(self, db: AsyncSession, event: MarketCreated) -> None:
        await self._ensure_user(db, event.creator)
        stmt = insert_for(db, Market).values(
            address=event.market,
            creator=event.creator,
            question=event.question,
            liquidity=event.liquidity,
            state=MarketState.PROPOSED.value,
            created_at=event.block_time,
        )
        # Fills a placeholder left by an earlier out-of-order event; never resets state.
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["address"],
                set_={
                    "creator": stmt.excluded.creator,
                    "question": stmt.excluded.question,
                    "liquidity": stmt.excluded.liquidity,
                    "created_at": stmt.excluded.created_at,
                },
                where=Market.question.is_(None),
            )
        )

    async def _trade_executed(self, db: AsyncSession, event: TradeExecuted) -> None:
        market_id = await self._ensure_market(db, event.market)

        trade = insert_for(db, Trade).values(
            tx_signature=event.signature,
            market_id=market_id,
            wallet=event.trader,
            side=event.side.value,
            outcome=event.outcome.value,
            shares=event.shares,
            cost=event.cost,
            slot=event.slot,
            block_time=event.block_time,
        )
        inserted = await db.execute(trade.on_conflict_do_nothing(index_elements=["tx_signature"]))
        if not inserted.rowcount:
            logger.debug(f"[WRITER] trade {event.signature} already recorded")
            return

        delta_yes, delta_no = event.share_deltas

        position = insert_for(db, Position).values(
            market_id=market_id,
            wallet=event.trader,
            shares_yes=delta_yes,
            shares_no=delta_no,
            total_invested=event.invested_delta,
        )
        await db.execute(
            position.on_conflict_do_update(
                index_elements=["market_id", "wallet"],
                set_={
                    "shares_yes": Position.shares_yes + position.excluded.shares_yes,
                    "shares_no": Position.shares_no + position.excluded.shares_no,
                    "total_invested": Position.total_invested + position.excluded.total_invested,
                    "updated_at": func.now(),
                },
            )
        )

        user = insert_for(db, User).values(wallet=event.trader, total_trades=1, total_volume=event.cost)
        await db.execute(
            user.on_conflict_do_update(
                index_elements=["wallet"],
                set_={
                    "total_trades": User.total_trades + user.excluded.total_trades,
                    "total_volume": User.total_volume + user.excluded.total_volume,
                },
            )
        )

        await db.execute(
            update(Market)
            .where(Market.id == market_id)
            .values(
                shares_yes=Market.shares_yes + delta_yes,
                shares_no=Market.shares_no + delta_no,
                total_volume=Market.total_volume + event.cost,
                trade_count=Market.trade_count + 1,
            )
        )

    async def _proposal_approved(self, db: AsyncSession, event: ProposalApproved) -> None:
        market_id = await self._ensure_market(db, event.market) if event.market else None
        stmt = insert_for(db, Proposal).values(
            proposal_id=event.proposal_id,
            market_id=market_id,
            status=ProposalStatus.APPROVED.value,
            likes=event.likes,
            dislikes=event.dislikes,
            total_votes=event.likes + event.dislikes,
            approved_at=event.block_time,
        )
        # Tallies are the final on-chain counts, not deltas.
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["proposal_id"],
                set_={
                    "status": stmt.excluded.status,
                    "likes": stmt.excluded.likes,
                    "dislikes": stmt.excluded.dislikes,
                    "total_votes": stmt.excluded.total_votes,
                    "approved_at": func.coalesce(Proposal.approved_at, stmt.excluded.approved_at),
                    "market_id": func.coalesce(Proposal.market_id, stmt.excluded.market_id),
                },
            )
        )
        if event.market:
            await self.fsm.transition(db, event.market, MarketState.APPROVED)

    async def _market_resolved(self, db: AsyncSession, event: MarketResolved) -> None:
        market_id = await self._ensure_market(db, event.market)
        await self._ensure_user(db, event.resolver)
        await self.fsm.transition(
            db,
            event.market,
            MarketState.RESOLVING,
            proposed_outcome=event.outcome.value,
            resolver=event.resolver,
            resolution_proposed_at=event.resolving_at,
            dispute_deadline_at=event.dispute_deadline,
        )
        stmt = insert_for(db, Resolution).values(
            market_id=market_id,
            resolver=event.resolver,
            proposed_outcome=event.outcome.value,
            resolving_at=event.resolving_at,
            dispute_deadline_at=event.dispute_deadline,
        )
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["market_id"]))

    async def _dispute_raised(self, db: AsyncSession, event: DisputeRaised) -> None:
        market_id = await self._ensure_market(db, event.market)
        await self._ensure_user(db, event.disputer)
        if not await self.fsm.transition(db, event.market, MarketState.DISPUTED):
            return
        await db.execute(
            update(Resolution).where(Resolution.market_id == market_id).values(disputed=True)
        )
        stmt = insert_for(db, Dispute).values(
            market_id=market_id,
            disputer=event.disputer,
            raised_at=event.block_time,
        )
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["market_id"]))

    async def _dispute_resolved(self, db: AsyncSession, event: DisputeResolved) -> None:
        market = await self._market_row(db, event.market)
        final_outcome = (
            flip_outcome(market.proposed_outcome) if event.outcome_changed else market.proposed_outcome
        )
        moved = await self.fsm.transition(
            db,
            event.market,
            MarketState.FINALIZED,
            via=[MarketState.DISPUTED],
            final_outcome=final_outcome,
            finalized_at=event.block_time,
        )
        if not moved:
            return
        await self._finalize_resolution(db, market.id, final_outcome, event.block_time)
        await db.execute(
            update(Dispute)
            .where(Dispute.market_id == market.id)
            .where(Dispute.resolved.is_(False))
            .values(
                resolved=True,
                resolved_at=event.block_time,
                outcome_changed=event.outcome_changed,
                support_votes=event.support_votes,
                reject_votes=event.reject_votes,
            )
        )

    async def _winnings_claimed(self, db: AsyncSession, event: WinningsClaimed) -> None:
        market_id = await self._ensure_market(db, event.market)
        stmt = insert_for(db, Position).values(
            market_id=market_id,
            wallet=event.claimer,
            has_claimed=True,
            claimed_amount=event.amount,
        )
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["market_id", "wallet"],
                set_={
                    "has_claimed": True,
                    "claimed_amount": stmt.excluded.claimed_amount,
                    "updated_at": func.now(),
                },
                where=Position.has_claimed.is_(False),
            )
        )

    async def _votes_aggregated(self, db: AsyncSession, event: VotesAggregated) -> None:
        # Audit only: the raw event row is the record.
        logger.info(
            f"[WRITER] {event.vote_type} votes aggregated for {event.subject}: "
            f"{event.approve_votes} approve / {event.reject_votes} reject"
        )

    async def _market_activated(self, db: AsyncSession, event: MarketActivated) -> None:
        await self._ensure_market(db, event.market)
        await self.fsm.transition(db, event.market, MarketState.ACTIVE, activated_at=event.block_time)

    async def _market_finalized(self, db: AsyncSession, event: MarketFinalized) -> None:
        market = await self._market_row(db, event.market)
        disputed = event.agree_votes is not None and event.disagree_votes is not None
        if disputed:
            final_outcome = tally_outcome(
                event.agree_votes, event.disagree_votes, self.dispute_success_threshold_bps
            )
        else:
            final_outcome = market.proposed_outcome

        # A tallied finalization settles a dispute, so the market must be DISPUTED
        moved = await self.fsm.transition(
            db,
            event.market,
            MarketState.FINALIZED,
            via=[MarketState.DISPUTED] if disputed else None,
            final_outcome=final_outcome,
            finalized_at=event.block_time,
        )
        if not moved:
            return
        await self._finalize_resolution(db, market.id, final_outcome, event.block_time)
        if disputed:
            await db.execute(
                update(Dispute)
                .where(Dispute.market_id == market.id)
                .where(Dispute.resolved.is_(False))
                .values(
                    resolved=True,
                    resolved_at=event.block_time,
                    support_votes=event.agree_votes,
                    reject_votes=event.disagree_votes,
                )
            )

    async def _market_cancelled(self, db: AsyncSession, event: MarketCancelled) -> None:
        await self._ensure_market(db, event.market)
        await self.fsm.transition(
            db, event.market, MarketState.CANCELLED, cancelled_at=event.block_time
        )

    async def _finalize_resolution(
        self, db: AsyncSession, market_id: UUID, final_outcome: Optional[str], at: datetime
    ) -> None:
        await db.execute(
            update(Resolution)
            .where(Resolution.market_id == market_id)
            .where(Resolution.finalized.is_(False))
            .values(finalized=True, final_outcome=final_outcome, finalized_at=at)
        )
