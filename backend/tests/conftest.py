"""
Market Mirror - shared test fixtures

Every test gets a fresh in-memory SQLite database built from the ORM
metadata; the SQL the writer emits (ON CONFLICT upserts, conditional updates)
runs unchanged on SQLite.
"""

import base64
import struct
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from market_mirror.db.models import Base, Market, MarketState
from market_mirror.indexer.decoder import EventDecoder, LedgerNotification
from market_mirror.indexer.service import IndexerService
from market_mirror.indexer.writer import MirrorWriter

PROGRAM_ID = "7h3gXfBfYFueFVLYyfL5Qo3FR5CbRFSgYuqQMzvhNF9y"
DISPUTE_WINDOW = 48 * 60 * 60
T0 = 1_700_000_000


# =============================================================================
# DATABASE
# =============================================================================

@pytest_asyncio.fixture
async def make_session_maker():
    engines = []

    async def factory() -> async_sessionmaker[AsyncSession]:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        engines.append(engine)
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield factory
    for engine in engines:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(make_session_maker):
    return await make_session_maker()


@pytest.fixture
def indexer(session_maker) -> IndexerService:
    return IndexerService(
        decoder=EventDecoder(program_id=PROGRAM_ID, dispute_window_seconds=DISPUTE_WINDOW),
        writer=MirrorWriter(session_maker),
    )


async def seed_market(
    session_maker,
    address: str,
    state: MarketState = MarketState.RESOLVING,
    resolution_proposed_at: Optional[datetime] = None,
    window: timedelta = timedelta(seconds=DISPUTE_WINDOW),
    proposed_outcome: str = "YES",
) -> Market:
    market = Market(
        address=address,
        state=state.value,
        proposed_outcome=proposed_outcome,
        resolution_proposed_at=resolution_proposed_at,
        dispute_deadline_at=resolution_proposed_at + window if resolution_proposed_at else None,
    )
    async with session_maker() as db:
        db.add(market)
        await db.commit()
    return market


def utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


# =============================================================================
# INSTRUCTION ENCODING
# =============================================================================

def u8(value: int) -> bytes:
    return struct.pack("<B", value)


def u32(value: int) -> bytes:
    return struct.pack("<I", value)


def u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return u32(len(raw)) + raw


def instruction(discriminator: int, payload: bytes = b"", accounts: tuple = (), program_id: str = PROGRAM_ID) -> dict:
    return {
        "programId": program_id,
        "accounts": list(accounts),
        "data": base64.b64encode(bytes([discriminator]) + payload).decode("ascii"),
    }


def notification(signature: str, *instructions: dict, slot: int = 1, timestamp: int = T0) -> dict:
    return {
        "signature": signature,
        "slot": slot,
        "timestamp": timestamp,
        "instructions": list(instructions),
    }


def parse(*notifications: dict) -> list[LedgerNotification]:
    return [LedgerNotification.model_validate(n) for n in notifications]


def create_market_ix(market: str, creator: str, question: str = "Will it rain?", liquidity: int = 1_000) -> dict:
    return instruction(0, string(question) + u64(liquidity), (creator, market))


def trade_ix(market: str, trader: str, buy: bool, outcome_yes: bool, shares: int, cost: int) -> dict:
    payload = u8(0 if outcome_yes else 1) + u64(shares) + u64(cost)
    return instruction(1 if buy else 2, payload, (trader, market))


def approve_proposal_ix(proposal_id: str, market: Optional[str] = None, likes: int = 10, dislikes: int = 2) -> dict:
    accounts = ("admin", market) if market else ("admin",)
    return instruction(3, string(proposal_id) + u32(likes) + u32(dislikes), accounts)


def activate_ix(market: str) -> dict:
    return instruction(10, b"", ("admin", market))


def resolve_ix(market: str, resolver: str, outcome: int = 0) -> dict:
    return instruction(4, u8(outcome), (resolver, market))


def dispute_ix(market: str, disputer: str) -> dict:
    return instruction(5, b"", (disputer, market))


def resolve_dispute_ix(market: str, changed: bool, support: int = 7, reject: int = 3) -> dict:
    return instruction(6, u8(1 if changed else 0) + u32(support) + u32(reject), ("admin", market))


def claim_ix(market: str, user: str, amount: int) -> dict:
    return instruction(7, u64(amount) + u64(0) + u64(0), (user, market))


def finalize_ix(market: str, agree: Optional[int] = None, disagree: Optional[int] = None) -> dict:
    payload = b""
    for value in (agree, disagree):
        payload += u8(0) if value is None else u8(1) + u32(value)
    return instruction(11, payload, ("global-config", market, "backend-authority"))


def cancel_ix(market: str) -> dict:
    return instruction(12, b"", ("admin", market))
