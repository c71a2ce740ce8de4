"""
Market Mirror - Event Catalogue

One frozen dataclass per program instruction the mirror understands, plus
UnknownInstruction for discriminators outside the catalogue. TypedEvent is the
closed union the writer dispatches over.

Discriminator (first byte of instruction data) -> event:
    0      create_market              MarketCreated
    1 / 2  buy_shares / sell_shares   TradeExecuted
    3      approve_proposal           ProposalApproved
    4      resolve_market             MarketResolved
    5      raise_dispute              DisputeRaised
    6      resolve_dispute            DisputeResolved
    7      claim_winnings             WinningsClaimed
    8 / 9  aggregate_*_votes          VotesAggregated
    10     activate_market            MarketActivated
    11     finalize_market            MarketFinalized
    12     cancel_market              MarketCancelled
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, ClassVar, Optional, Union

from market_mirror.db.models import Outcome, TradeSide


class Instruction(IntEnum):
    CREATE_MARKET = 0
    BUY_SHARES = 1
    SELL_SHARES = 2
    APPROVE_PROPOSAL = 3
    RESOLVE_MARKET = 4
    RAISE_DISPUTE = 5
    RESOLVE_DISPUTE = 6
    CLAIM_WINNINGS = 7
    AGGREGATE_PROPOSAL_VOTES = 8
    AGGREGATE_DISPUTE_VOTES = 9
    ACTIVATE_MARKET = 10
    FINALIZE_MARKET = 11
    CANCEL_MARKET = 12


class EventType(str, Enum):
    MARKET_CREATED = "MarketCreated"
    TRADE_EXECUTED = "TradeExecuted"
    PROPOSAL_APPROVED = "ProposalApproved"
    MARKET_RESOLVED = "MarketResolved"
    DISPUTE_RAISED = "DisputeRaised"
    DISPUTE_RESOLVED = "DisputeResolved"
    WINNINGS_CLAIMED = "WinningsClaimed"
    VOTES_AGGREGATED = "VotesAggregated"
    MARKET_ACTIVATED = "MarketActivated"
    MARKET_FINALIZED = "MarketFinalized"
    MARKET_CANCELLED = "MarketCancelled"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class RawInstruction:
    """The instruction exactly as delivered; kept on the raw event for replay."""

    program_id: str
    accounts: tuple[str, ...]
    data: str  # base64


@dataclass(frozen=True, kw_only=True)
class BaseEvent:
    event_type: ClassVar[EventType]

    signature: str
    slot: int
    timestamp: int
    instruction_index: int = 0
    raw: Optional[RawInstruction] = None

    @property
    def block_time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict for raw_events.payload."""
        data = asdict(self)
        raw = data.pop("raw")
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        payload: dict[str, Any] = {"event": data}
        if raw is not None:
            payload["instruction"] = {
                "programId": raw["program_id"],
                "accounts": list(raw["accounts"]),
                "data": raw["data"],
            }
        return payload


@dataclass(frozen=True, kw_only=True)
class MarketCreated(BaseEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_CREATED

    market: str
    creator: str
    question: str
    liquidity: int


@dataclass(frozen=True, kw_only=True)
class TradeExecuted(BaseEvent):
    event_type: ClassVar[EventType] = EventType.TRADE_EXECUTED

    market: str
    trader: str
    side: TradeSide
    outcome: Outcome
    shares: int
    cost: int

    @property
    def share_deltas(self) -> tuple[int, int]:
        """(yes, no) share deltas; sells are negative."""
        signed = self.shares if self.side == TradeSide.BUY else -self.shares
        if self.outcome == Outcome.YES:
            return signed, 0
        return 0, signed

    @property
    def invested_delta(self) -> int:
        return self.cost if self.side == TradeSide.BUY else -self.cost


@dataclass(frozen=True, kw_only=True)
class ProposalApproved(BaseEvent):
    event_type: ClassVar[EventType] = EventType.PROPOSAL_APPROVED

    proposal_id: str
    likes: int
    dislikes: int
    market: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class MarketResolved(BaseEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_RESOLVED

    market: str
    resolver: str
    outcome: Outcome
    resolving_at: datetime
    dispute_deadline: datetime


@dataclass(frozen=True, kw_only=True)
class DisputeRaised(BaseEvent):
    event_type: ClassVar[EventType] = EventType.DISPUTE_RAISED

    market: str
    disputer: str


@dataclass(frozen=True, kw_only=True)
class DisputeResolved(BaseEvent):
    event_type: ClassVar[EventType] = EventType.DISPUTE_RESOLVED

    market: str
    outcome_changed: bool
    support_votes: int
    reject_votes: int


@dataclass(frozen=True, kw_only=True)
class WinningsClaimed(BaseEvent):
    event_type: ClassVar[EventType] = EventType.WINNINGS_CLAIMED

    market: str
    claimer: str
    amount: int
    shares_yes: int
    shares_no: int


@dataclass(frozen=True, kw_only=True)
class VotesAggregated(BaseEvent):
    event_type: ClassVar[EventType] = EventType.VOTES_AGGREGATED

    vote_type: str  # "proposal" | "dispute"
    subject: str  # proposal id or market address
    approve_votes: int
    reject_votes: int


@dataclass(frozen=True, kw_only=True)
class MarketActivated(BaseEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_ACTIVATED

    market: str
    authority: str


@dataclass(frozen=True, kw_only=True)
class MarketFinalized(BaseEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_FINALIZED

    market: str
    agree_votes: Optional[int] = None
    disagree_votes: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class MarketCancelled(BaseEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_CANCELLED

    market: str
    authority: str


@dataclass(frozen=True, kw_only=True)
class UnknownInstruction(BaseEvent):
    event_type: ClassVar[EventType] = EventType.UNKNOWN

    discriminator: Optional[int] = None


TypedEvent = Union[
    MarketCreated,
    TradeExecuted,
    ProposalApproved,
    MarketResolved,
    DisputeRaised,
    DisputeResolved,
    WinningsClaimed,
    VotesAggregated,
    MarketActivated,
    MarketFinalized,
    MarketCancelled,
    UnknownInstruction,
]

EVENT_CLASSES: dict[EventType, type[BaseEvent]] = {
    cls.event_type: cls
    for cls in (
        MarketCreated,
        TradeExecuted,
        ProposalApproved,
        MarketResolved,
        DisputeRaised,
        DisputeResolved,
        WinningsClaimed,
        VotesAggregated,
        MarketActivated,
        MarketFinalized,
        MarketCancelled,
        UnknownInstruction,
    )
}
