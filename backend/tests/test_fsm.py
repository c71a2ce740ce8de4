"""
Market Mirror - Lifecycle FSM Tests
"""

import pytest
from sqlalchemy import select

from market_mirror.db.models import Market, MarketState
from market_mirror.indexer.fsm import FSMTransitionError, MarketFSM, TransitionDeferred, get_market_fsm

from conftest import seed_market

ORDER = [
    MarketState.PROPOSED,
    MarketState.APPROVED,
    MarketState.ACTIVE,
    MarketState.RESOLVING,
    MarketState.DISPUTED,
    MarketState.FINALIZED,
]


class TestTransitionTable:
    """Tests for the static transition table."""

    def setup_method(self):
        self.fsm = MarketFSM()

    def test_happy_path(self):
        assert self.fsm.can_transition(MarketState.PROPOSED, MarketState.APPROVED)
        assert self.fsm.can_transition(MarketState.APPROVED, MarketState.ACTIVE)
        assert self.fsm.can_transition(MarketState.ACTIVE, MarketState.RESOLVING)
        assert self.fsm.can_transition(MarketState.RESOLVING, MarketState.FINALIZED)

    def test_dispute_path(self):
        assert self.fsm.can_transition(MarketState.RESOLVING, MarketState.DISPUTED)
        assert self.fsm.can_transition(MarketState.DISPUTED, MarketState.FINALIZED)

    def test_cancel_only_before_activation(self):
        assert self.fsm.can_transition(MarketState.PROPOSED, MarketState.CANCELLED)
        assert self.fsm.can_transition(MarketState.APPROVED, MarketState.CANCELLED)
        assert not self.fsm.can_transition(MarketState.ACTIVE, MarketState.CANCELLED)
        assert not self.fsm.can_transition(MarketState.RESOLVING, MarketState.CANCELLED)

    def test_terminal_states(self):
        assert self.fsm.TRANSITIONS[MarketState.FINALIZED] == []
        assert self.fsm.TRANSITIONS[MarketState.CANCELLED] == []

    def test_no_backward_edges(self):
        for i, later in enumerate(ORDER):
            for earlier in ORDER[:i]:
                assert not self.fsm.can_transition(later, earlier), f"{later} -> {earlier}"

    def test_sources(self):
        assert set(self.fsm.sources(MarketState.FINALIZED)) == {MarketState.RESOLVING, MarketState.DISPUTED}
        assert self.fsm.sources(MarketState.RESOLVING) == [MarketState.ACTIVE]
        assert self.fsm.sources(MarketState.PROPOSED) == []

    def test_reachable(self):
        assert self.fsm.reachable(MarketState.PROPOSED, MarketState.FINALIZED)
        assert self.fsm.reachable(MarketState.ACTIVE, MarketState.DISPUTED)
        assert not self.fsm.reachable(MarketState.FINALIZED, MarketState.ACTIVE)
        assert not self.fsm.reachable(MarketState.ACTIVE, MarketState.CANCELLED)
        assert not self.fsm.reachable(MarketState.RESOLVING, MarketState.RESOLVING)

    def test_singleton(self):
        assert get_market_fsm() is get_market_fsm()


class TestConditionalTransition:
    """Tests for transitions applied against the database."""

    async def _state(self, session_maker, address):
        async with session_maker() as db:
            return (await db.execute(select(Market.state).where(Market.address == address))).scalar_one()

    async def test_moves_from_legal_source(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.ACTIVE)
        fsm = MarketFSM()

        async with session_maker() as db:
            async with db.begin():
                moved = await fsm.transition(db, "m1", MarketState.RESOLVING, proposed_outcome="NO")

        assert moved is True
        assert await self._state(session_maker, "m1") == MarketState.RESOLVING.value

    async def test_replay_is_a_noop(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.FINALIZED)
        fsm = MarketFSM()

        async with session_maker() as db:
            async with db.begin():
                assert await fsm.transition(db, "m1", MarketState.FINALIZED) is False
                # Late activation after finalization never moves the market back
                assert await fsm.transition(db, "m1", MarketState.ACTIVE) is False

        assert await self._state(session_maker, "m1") == MarketState.FINALIZED.value

    async def test_behind_raises_deferred(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.PROPOSED)
        fsm = MarketFSM()

        async with session_maker() as db:
            with pytest.raises(TransitionDeferred) as exc_info:
                async with db.begin():
                    await fsm.transition(db, "m1", MarketState.RESOLVING)

        assert exc_info.value.current == MarketState.PROPOSED
        assert exc_info.value.target == MarketState.RESOLVING
        assert await self._state(session_maker, "m1") == MarketState.PROPOSED.value

    async def test_required_source_defers_from_resolving(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.RESOLVING)
        fsm = MarketFSM()

        async with session_maker() as db:
            with pytest.raises(TransitionDeferred) as exc_info:
                async with db.begin():
                    await fsm.transition(db, "m1", MarketState.FINALIZED, via=[MarketState.DISPUTED])

        assert exc_info.value.current == MarketState.RESOLVING
        assert await self._state(session_maker, "m1") == MarketState.RESOLVING.value

    async def test_required_source_moves_disputed(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.DISPUTED)
        fsm = MarketFSM()

        async with session_maker() as db:
            async with db.begin():
                moved = await fsm.transition(db, "m1", MarketState.FINALIZED, via=[MarketState.DISPUTED])

        assert moved is True
        assert await self._state(session_maker, "m1") == MarketState.FINALIZED.value

    async def test_required_source_after_finalize_is_a_noop(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.FINALIZED)
        fsm = MarketFSM()

        async with session_maker() as db:
            async with db.begin():
                assert await fsm.transition(db, "m1", MarketState.FINALIZED, via=[MarketState.DISPUTED]) is False

    async def test_illegal_source_is_rejected(self, session_maker):
        await seed_market(session_maker, "m1", state=MarketState.ACTIVE)
        fsm = MarketFSM()

        async with session_maker() as db:
            with pytest.raises(FSMTransitionError):
                async with db.begin():
                    await fsm.transition(db, "m1", MarketState.FINALIZED, via=[MarketState.ACTIVE])
