"""Market lifecycle FSM

State Flow:
PROPOSED -> APPROVED -> ACTIVE -> RESOLVING -> FINALIZED
                                           -> DISPUTED -> FINALIZED
PROPOSED / APPROVED -> CANCELLED

Forward only. The writer applies a transition as a conditional UPDATE whose
WHERE clause lists the legal source states, so replays and reordered
deliveries cannot move a market backwards.
"""

from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from market_mirror.db.models import Market, MarketState


class FSMTransitionError(Exception):
    """Invalid state transition."""
    pass


class TransitionDeferred(FSMTransitionError):
    """The market has not reached a predecessor of the target state yet.

    Raised when an event arrives ahead of the event that unlocks it. The raw
    event keeps the error and is picked up again by replay.
    """

    def __init__(self, address: str, current: MarketState, target: MarketState):
        super().__init__(
            f"market {address} is {current.value}; cannot apply {target.value} yet"
        )
        self.address = address
        self.current = current
        self.target = target


class MarketFSM:
    """Manages lifecycle transitions for mirrored markets."""

    # Valid state transitions
    TRANSITIONS: dict[MarketState, list[MarketState]] = {
        MarketState.PROPOSED: [MarketState.APPROVED, MarketState.CANCELLED],
        MarketState.APPROVED: [MarketState.ACTIVE, MarketState.CANCELLED],
        MarketState.ACTIVE: [MarketState.RESOLVING],
        MarketState.RESOLVING: [MarketState.DISPUTED, MarketState.FINALIZED],
        MarketState.DISPUTED: [MarketState.FINALIZED],
        MarketState.FINALIZED: [],  # Terminal state
        MarketState.CANCELLED: [],  # Terminal state
    }

    def can_transition(self, current: MarketState, target: MarketState) -> bool:
        """Check if a transition is valid."""
        return target in self.TRANSITIONS.get(current, [])

    def sources(self, target: MarketState) -> list[MarketState]:
        """States from which `target` is directly reachable."""
        return [state for state, targets in self.TRANSITIONS.items() if target in targets]

    def reachable(self, current: MarketState, target: MarketState) -> bool:
        """True if `target` lies ahead of `current` on some forward path."""
        frontier = list(self.TRANSITIONS.get(current, []))
        seen: set[MarketState] = set()
        while frontier:
            state = frontier.pop()
            if state == target:
                return True
            if state in seen:
                continue
            seen.add(state)
            frontier.extend(self.TRANSITIONS.get(state, []))
        return False

    async def transition(
        self,
        db: AsyncSession,
        address: str,
        target: MarketState,
        via: Optional[Iterable[MarketState]] = None,
        **values,
    ) -> bool:
        """
        Move a market to `target` if it currently sits in a legal source state.

        Args:
            db: Session inside the caller's transaction
            address: Market ledger address
            target: The target state
            via: Narrower set of source states the event requires, e.g. a
                dispute resolution only finalizes a DISPUTED market
            **values: Additional columns to set with the transition

        Returns:
            True if the row moved, False if it was already at or past `target`
            (a replay or a late delivery; nothing to do)

        Raises:
            TransitionDeferred: If the market has not reached a required source
                state yet
        """
        allowed = list(via) if via is not None else self.sources(target)
        for state in allowed:
            if not self.can_transition(state, target):
                raise FSMTransitionError(f"{state.value} -> {target.value} is not a transition")

        result = await db.execute(
            update(Market)
            .where(Market.address == address)
            .where(Market.state.in_([s.value for s in allowed]))
            .values(state=target.value, **values)
        )
        if result.rowcount:
            return True

        current = MarketState(
            (await db.execute(select(Market.state).where(Market.address == address))).scalar_one()
        )
        if any(self.reachable(current, state) for state in allowed):
            raise TransitionDeferred(address, current, target)
        return False


_fsm: MarketFSM | None = None


def get_market_fsm() -> MarketFSM:
    """Get singleton market FSM."""
    global _fsm
    if _fsm is None:
        _fsm = MarketFSM()
    return _fsm
