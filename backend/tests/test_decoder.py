"""
Market Mirror - Decoder Tests

The decoder is pure: notification in, typed events (and decode errors) out.
"""

import base64

import pytest

from market_mirror.db.models import Outcome, TradeSide
from market_mirror.indexer.decoder import (
    DecodeError,
    EventDecoder,
    LedgerNotification,
    NotificationInstruction,
)
from market_mirror.indexer.events import (
    DisputeRaised,
    DisputeResolved,
    EventType,
    MarketActivated,
    MarketCancelled,
    MarketCreated,
    MarketFinalized,
    MarketResolved,
    ProposalApproved,
    TradeExecuted,
    UnknownInstruction,
    VotesAggregated,
    WinningsClaimed,
)

from conftest import (
    DISPUTE_WINDOW,
    PROGRAM_ID,
    T0,
    activate_ix,
    approve_proposal_ix,
    cancel_ix,
    claim_ix,
    create_market_ix,
    dispute_ix,
    finalize_ix,
    instruction,
    notification,
    resolve_dispute_ix,
    resolve_ix,
    string,
    trade_ix,
    u32,
    u64,
    utc,
)


@pytest.fixture
def decoder() -> EventDecoder:
    return EventDecoder(program_id=PROGRAM_ID, dispute_window_seconds=DISPUTE_WINDOW)


def decode_one(decoder: EventDecoder, ix: dict, signature: str = "sig-1"):
    result = decoder.decode(LedgerNotification.model_validate(notification(signature, ix, slot=42)))
    assert result.errors == []
    assert len(result.events) == 1
    return result.events[0]


class TestCatalogue:
    """Each discriminator decodes to its event with the right fields."""

    def test_market_created(self, decoder):
        event = decode_one(decoder, create_market_ix("market-a", "alice", "Will BTC hit 100k?", 5_000))
        assert isinstance(event, MarketCreated)
        assert event.market == "market-a"
        assert event.creator == "alice"
        assert event.question == "Will BTC hit 100k?"
        assert event.liquidity == 5_000
        assert event.signature == "sig-1"
        assert event.slot == 42
        assert event.block_time == utc(T0)

    def test_buy_and_sell(self, decoder):
        buy = decode_one(decoder, trade_ix("m", "bob", buy=True, outcome_yes=True, shares=10, cost=55))
        sell = decode_one(decoder, trade_ix("m", "bob", buy=False, outcome_yes=False, shares=4, cost=20))

        assert isinstance(buy, TradeExecuted)
        assert buy.side == TradeSide.BUY
        assert buy.outcome == Outcome.YES
        assert (buy.shares, buy.cost) == (10, 55)
        assert buy.share_deltas == (10, 0)
        assert buy.invested_delta == 55

        assert sell.side == TradeSide.SELL
        assert sell.outcome == Outcome.NO
        assert sell.share_deltas == (0, -4)
        assert sell.invested_delta == -20

    def test_proposal_approved_with_and_without_market(self, decoder):
        with_market = decode_one(decoder, approve_proposal_ix("prop-1", market="m", likes=9, dislikes=1))
        bare = decode_one(decoder, approve_proposal_ix("prop-2"))

        assert isinstance(with_market, ProposalApproved)
        assert with_market.proposal_id == "prop-1"
        assert (with_market.likes, with_market.dislikes) == (9, 1)
        assert with_market.market == "m"
        assert bare.market is None

    @pytest.mark.parametrize("code,expected", [(0, Outcome.YES), (1, Outcome.NO), (2, Outcome.INVALID), (255, Outcome.INVALID)])
    def test_market_resolved_outcomes(self, decoder, code, expected):
        event = decode_one(decoder, resolve_ix("m", "carol", outcome=code))
        assert isinstance(event, MarketResolved)
        assert event.outcome == expected
        assert event.resolver == "carol"

    def test_market_resolved_deadline_uses_dispute_window(self):
        decoder = EventDecoder(program_id=PROGRAM_ID, dispute_window_seconds=3600)
        event = decode_one(decoder, resolve_ix("m", "carol"))
        assert event.resolving_at == utc(T0)
        assert event.dispute_deadline == utc(T0 + 3600)

    def test_dispute_raised(self, decoder):
        event = decode_one(decoder, dispute_ix("m", "dave"))
        assert isinstance(event, DisputeRaised)
        assert (event.market, event.disputer) == ("m", "dave")

    def test_dispute_resolved(self, decoder):
        event = decode_one(decoder, resolve_dispute_ix("m", changed=True, support=12, reject=4))
        assert isinstance(event, DisputeResolved)
        assert event.outcome_changed is True
        assert (event.support_votes, event.reject_votes) == (12, 4)

    def test_winnings_claimed(self, decoder):
        event = decode_one(decoder, claim_ix("m", "erin", 777))
        assert isinstance(event, WinningsClaimed)
        assert (event.claimer, event.amount) == ("erin", 777)

    def test_vote_aggregation(self, decoder):
        proposal = decode_one(decoder, instruction(8, string("prop-9") + u32(30) + u32(5), ("admin",)))
        dispute = decode_one(decoder, instruction(9, u32(8) + u32(2), ("admin", "m")))

        assert isinstance(proposal, VotesAggregated)
        assert (proposal.vote_type, proposal.subject) == ("proposal", "prop-9")
        assert (proposal.approve_votes, proposal.reject_votes) == (30, 5)
        assert (dispute.vote_type, dispute.subject) == ("dispute", "m")

    def test_lifecycle_instructions(self, decoder):
        assert isinstance(decode_one(decoder, activate_ix("m")), MarketActivated)
        assert isinstance(decode_one(decoder, cancel_ix("m")), MarketCancelled)

        finalized = decode_one(decoder, finalize_ix("m"))
        assert isinstance(finalized, MarketFinalized)
        assert finalized.market == "m"
        assert finalized.agree_votes is None and finalized.disagree_votes is None

        tallied = decode_one(decoder, finalize_ix("m", agree=60, disagree=40))
        assert (tallied.agree_votes, tallied.disagree_votes) == (60, 40)

    def test_raw_instruction_is_kept_for_replay(self, decoder):
        ix = create_market_ix("market-a", "alice")
        event = decode_one(decoder, ix)
        payload = event.to_payload()

        assert payload["instruction"] == ix
        assert payload["event"]["market"] == "market-a"
        assert payload["event"]["timestamp"] == T0


class TestMalformedInput:
    """One bad instruction never blocks its siblings."""

    def test_unknown_discriminator_is_typed_not_an_error(self, decoder):
        event = decode_one(decoder, instruction(200, b"\x01\x02", ("x", "y")))
        assert isinstance(event, UnknownInstruction)
        assert event.discriminator == 200
        assert event.event_type == EventType.UNKNOWN

    def test_truncated_payload_is_skipped_and_siblings_decode(self, decoder):
        truncated = instruction(1, b"\x00" + u64(10), ("bob", "m"))  # missing cost
        result = decoder.decode(
            LedgerNotification.model_validate(
                notification("sig-multi", truncated, create_market_ix("m", "alice"))
            )
        )
        assert len(result.errors) == 1
        assert result.errors[0].signature == "sig-multi"
        assert result.errors[0].instruction_index == 0
        assert [type(e) for e in result.events] == [MarketCreated]
        assert result.events[0].instruction_index == 1

    def test_missing_accounts(self, decoder):
        with pytest.raises(DecodeError, match="market"):
            decoder.decode_instruction(
                NotificationInstruction.model_validate(instruction(5, b"", ("dave",))),
                signature="s", slot=1, timestamp=T0,
            )

    def test_invalid_base64(self, decoder):
        bad = {"programId": PROGRAM_ID, "accounts": ["a", "b"], "data": "***not base64***"}
        with pytest.raises(DecodeError, match="base64"):
            decoder.decode_instruction(
                NotificationInstruction.model_validate(bad), signature="s", slot=1, timestamp=T0
            )

    def test_empty_data(self, decoder):
        empty = {"programId": PROGRAM_ID, "accounts": [], "data": ""}
        with pytest.raises(DecodeError, match="empty"):
            decoder.decode_instruction(
                NotificationInstruction.model_validate(empty), signature="s", slot=1, timestamp=T0
            )

    def test_string_length_overrun(self, decoder):
        data = bytes([0]) + u32(1000) + b"short"
        ix = {"programId": PROGRAM_ID, "accounts": ["a", "m"], "data": base64.b64encode(data).decode()}
        with pytest.raises(DecodeError, match="overruns"):
            decoder.decode_instruction(
                NotificationInstruction.model_validate(ix), signature="s", slot=1, timestamp=T0
            )

    def test_other_programs_are_ignored(self, decoder):
        foreign = instruction(0, string("q") + u64(1), ("alice", "m"), program_id="OtherProgram111")
        result = decoder.decode(LedgerNotification.model_validate(notification("sig", foreign)))
        assert result.events == [] and result.errors == []

    def test_program_address_alias_accepted(self, decoder):
        ix = create_market_ix("m", "alice")
        ix["programAddress"] = ix.pop("programId")
        event = decode_one(decoder, ix)
        assert isinstance(event, MarketCreated)
