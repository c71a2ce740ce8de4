"""
Market Mirror - SQLAlchemy ORM Models
Off-chain mirror of the prediction-market program state.

Every row here is derived from ingested ledger events except
finalization_attempts and monitor_leases, which belong to the market monitor.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# =============================================================================
# ENUMS
# =============================================================================

class MarketState(str, Enum):
    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    RESOLVING = "RESOLVING"
    DISPUTED = "DISPUTED"
    FINALIZED = "FINALIZED"
    CANCELLED = "CANCELLED"


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"
    INVALID = "INVALID"


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ProposalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    DRY_RUN = "dry_run"
    FAILED = "failed"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


def _in(values: type[Enum]) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


# =============================================================================
# INGESTION AUDIT
# =============================================================================

class RawEvent(Base):
    """Every decoded event as delivered. Never deleted."""

    __tablename__ = "raw_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="helius")
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    instruction_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("tx_signature", "event_type", name="raw_events_signature_type_key"),
        Index("idx_raw_events_unprocessed", "processed", "slot"),
    )


# =============================================================================
# MARKETS & ACTORS
# =============================================================================

class Market(Base):
    """Mirror of an on-chain market account, keyed by its ledger address."""

    __tablename__ = "markets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    creator: Mapped[Optional[str]] = mapped_column(String(64))
    question: Mapped[Optional[str]] = mapped_column(Text)
    liquidity: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MarketState.PROPOSED.value
    )
    proposed_outcome: Mapped[Optional[str]] = mapped_column(String(10))
    final_outcome: Mapped[Optional[str]] = mapped_column(String(10))
    resolver: Mapped[Optional[str]] = mapped_column(String(64))
    resolution_proposed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dispute_deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    shares_yes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shares_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_volume: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trade_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(f"state IN ({_in(MarketState)})", name="markets_state_valid"),
        Index("idx_markets_state_deadline", "state", "dispute_deadline_at"),
    )


class User(Base):
    """Wallet-level aggregate, created on first reference."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    total_trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Position(Base):
    """Per (market, wallet) holdings. Only ever changed by atomic deltas."""

    __tablename__ = "positions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    market_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("markets.id"), nullable=False
    )
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    shares_yes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shares_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_invested: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    has_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("market_id", "wallet", name="positions_market_wallet_key"),
    )


class Trade(Base):
    __tablename__ = "trades"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    market_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("markets.id"), nullable=False
    )
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    shares: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(f"side IN ({_in(TradeSide)})", name="trades_side_valid"),
        Index("idx_trades_market", "market_id"),
    )


# =============================================================================
# GOVERNANCE
# =============================================================================

class Proposal(Base):
    __tablename__ = "proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    market_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("markets.id"))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProposalStatus.PENDING.value
    )
    likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dislikes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Resolution(Base):
    """One per market, opened by the resolution proposal."""

    __tablename__ = "resolutions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    market_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("markets.id"), nullable=False, unique=True
    )
    resolver: Mapped[Optional[str]] = mapped_column(String(64))
    proposed_outcome: Mapped[Optional[str]] = mapped_column(String(10))
    resolving_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dispute_deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    final_outcome: Mapped[Optional[str]] = mapped_column(String(10))
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Dispute(Base):
    """One per market."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    market_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("markets.id"), nullable=False, unique=True
    )
    disputer: Mapped[Optional[str]] = mapped_column(String(64))
    raised_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    support_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reject_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outcome_changed: Mapped[Optional[bool]] = mapped_column(Boolean)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =============================================================================
# MARKET MONITOR
# =============================================================================

class FinalizationAttempt(Base):
    """Append-only audit of auto-finalization attempts. Never read by the scanner."""

    __tablename__ = "finalization_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    market_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("markets.id"), nullable=False
    )
    market_address: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(64))
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_signature: Mapped[Optional[str]] = mapped_column(String(128))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(f"outcome IN ({_in(AttemptOutcome)})", name="finalization_attempts_outcome_valid"),
        Index("idx_finalization_attempts_market", "market_id", "attempted_at"),
    )


class MonitorLease(Base):
    """Cross-process run lease for the market monitor."""

    __tablename__ = "monitor_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(String(128))
    acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
