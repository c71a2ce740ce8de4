"""
Market Mirror - Instruction Decoder

Pure mapping from a ledger notification to typed events. No I/O.

Instruction data is base64; byte 0 is the discriminator, the rest is the
little-endian payload. accounts[0] is the acting wallet and accounts[1] the
market for every instruction that names one.
"""

import base64
import binascii
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from market_mirror.db.models import Outcome, TradeSide
from market_mirror.indexer.events import (
    DisputeRaised,
    DisputeResolved,
    Instruction,
    MarketActivated,
    MarketCancelled,
    MarketCreated,
    MarketFinalized,
    MarketResolved,
    ProposalApproved,
    RawInstruction,
    TradeExecuted,
    TypedEvent,
    UnknownInstruction,
    VotesAggregated,
    WinningsClaimed,
)

DEFAULT_DISPUTE_WINDOW_SECONDS = 48 * 60 * 60


# =============================================================================
# NOTIFICATION SCHEMA
# =============================================================================

class NotificationInstruction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    program_id: str = Field(validation_alias=AliasChoices("programId", "programAddress", "program_id"))
    accounts: list[str] = Field(default_factory=list)
    data: str = ""


class LedgerNotification(BaseModel):
    """One transaction as delivered by the webhook provider."""

    model_config = ConfigDict(extra="ignore")

    signature: str
    slot: int
    timestamp: int
    instructions: list[NotificationInstruction] = Field(default_factory=list)


# =============================================================================
# ERRORS & RESULTS
# =============================================================================

class DecodeError(Exception):
    """Malformed instruction. Logged and skipped, never fatal."""

    def __init__(self, message: str, signature: Optional[str] = None, instruction_index: Optional[int] = None):
        super().__init__(message)
        self.signature = signature
        self.instruction_index = instruction_index


@dataclass
class DecodeResult:
    events: list[TypedEvent] = field(default_factory=list)
    errors: list[DecodeError] = field(default_factory=list)


class _Reader:
    def __init__(self, buf: bytes, offset: int = 1):
        self.buf = buf
        self.offset = offset

    def _unpack(self, fmt: str):
        try:
            (value,) = struct.unpack_from(fmt, self.buf, self.offset)
        except struct.error as exc:
            raise DecodeError(f"payload truncated at byte {self.offset}") from exc
        self.offset += struct.calcsize(fmt)
        return value

    def u8(self) -> int:
        return self._unpack("<B")

    def u32(self) -> int:
        return self._unpack("<I")

    def u64(self) -> int:
        return self._unpack("<Q")

    def string(self) -> str:
        length = self.u32()
        end = self.offset + length
        if end > len(self.buf):
            raise DecodeError(f"string of length {length} overruns payload")
        try:
            value = self.buf[self.offset:end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("string is not valid utf-8") from exc
        self.offset = end
        return value

    def option_u32(self) -> Optional[int]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return self.u32()
        raise DecodeError(f"invalid option tag {tag}")


def _account(accounts: list[str], index: int, role: str) -> str:
    if len(accounts) <= index:
        raise DecodeError(f"missing {role} account (index {index})")
    return accounts[index]


def _resolution_outcome(value: int) -> Outcome:
    if value == 0:
        return Outcome.YES
    if value == 1:
        return Outcome.NO
    return Outcome.INVALID


# =============================================================================
# DECODER
# =============================================================================

class EventDecoder:
    """Decodes notifications for one program into the event catalogue."""

    def __init__(
        self,
        program_id: Optional[str] = None,
        dispute_window_seconds: int = DEFAULT_DISPUTE_WINDOW_SECONDS,
    ):
        self.program_id = program_id
        self.dispute_window = timedelta(seconds=dispute_window_seconds)

    def decode(self, notification: LedgerNotification) -> DecodeResult:
        """Decode every instruction addressed to our program.

        A malformed instruction lands in `errors`; its siblings still decode.
        """
        result = DecodeResult()
        for index, instruction in enumerate(notification.instructions):
            if self.program_id and instruction.program_id != self.program_id:
                continue
            try:
                result.events.append(
                    self.decode_instruction(
                        instruction,
                        signature=notification.signature,
                        slot=notification.slot,
                        timestamp=notification.timestamp,
                        index=index,
                    )
                )
            except DecodeError as exc:
                exc.signature = notification.signature
                exc.instruction_index = index
                result.errors.append(exc)
        return result

    def decode_instruction(
        self,
        instruction: NotificationInstruction,
        *,
        signature: str,
        slot: int,
        timestamp: int,
        index: int = 0,
    ) -> TypedEvent:
        try:
            data = base64.b64decode(instruction.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError("instruction data is not valid base64") from exc
        if not data:
            raise DecodeError("empty instruction data")

        accounts = instruction.accounts
        common = dict(
            signature=signature,
            slot=slot,
            timestamp=timestamp,
            instruction_index=index,
            raw=RawInstruction(
                program_id=instruction.program_id,
                accounts=tuple(accounts),
                data=instruction.data,
            ),
        )
        reader = _Reader(data)
        discriminator = data[0]

        try:
            kind = Instruction(discriminator)
        except ValueError:
            return UnknownInstruction(discriminator=discriminator, **common)

        if kind == Instruction.CREATE_MARKET:
            question = reader.string()
            return MarketCreated(
                creator=_account(accounts, 0, "creator"),
                market=_account(accounts, 1, "market"),
                question=question,
                liquidity=reader.u64(),
                **common,
            )

        if kind in (Instruction.BUY_SHARES, Instruction.SELL_SHARES):
            outcome = Outcome.YES if reader.u8() == 0 else Outcome.NO
            return TradeExecuted(
                trader=_account(accounts, 0, "trader"),
                market=_account(accounts, 1, "market"),
                side=TradeSide.BUY if kind == Instruction.BUY_SHARES else TradeSide.SELL,
                outcome=outcome,
                shares=reader.u64(),
                cost=reader.u64(),
                **common,
            )

        if kind == Instruction.APPROVE_PROPOSAL:
            return ProposalApproved(
                proposal_id=reader.string(),
                likes=reader.u32(),
                dislikes=reader.u32(),
                market=accounts[1] if len(accounts) > 1 else None,
                **common,
            )

        if kind == Instruction.RESOLVE_MARKET:
            outcome = _resolution_outcome(reader.u8())
            resolving_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
            return MarketResolved(
                resolver=_account(accounts, 0, "resolver"),
                market=_account(accounts, 1, "market"),
                outcome=outcome,
                resolving_at=resolving_at,
                dispute_deadline=resolving_at + self.dispute_window,
                **common,
            )

        if kind == Instruction.RAISE_DISPUTE:
            return DisputeRaised(
                disputer=_account(accounts, 0, "disputer"),
                market=_account(accounts, 1, "market"),
                **common,
            )

        if kind == Instruction.RESOLVE_DISPUTE:
            return DisputeResolved(
                market=_account(accounts, 1, "market"),
                outcome_changed=reader.u8() != 0,
                support_votes=reader.u32(),
                reject_votes=reader.u32(),
                **common,
            )

        if kind == Instruction.CLAIM_WINNINGS:
            return WinningsClaimed(
                claimer=_account(accounts, 0, "claimer"),
                market=_account(accounts, 1, "market"),
                amount=reader.u64(),
                shares_yes=reader.u64(),
                shares_no=reader.u64(),
                **common,
            )

        if kind == Instruction.AGGREGATE_PROPOSAL_VOTES:
            return VotesAggregated(
                vote_type="proposal",
                subject=reader.string(),
                approve_votes=reader.u32(),
                reject_votes=reader.u32(),
                **common,
            )

        if kind == Instruction.AGGREGATE_DISPUTE_VOTES:
            return VotesAggregated(
                vote_type="dispute",
                subject=_account(accounts, 1, "market"),
                approve_votes=reader.u32(),
                reject_votes=reader.u32(),
                **common,
            )

        if kind == Instruction.ACTIVATE_MARKET:
            return MarketActivated(
                authority=_account(accounts, 0, "authority"),
                market=_account(accounts, 1, "market"),
                **common,
            )

        if kind == Instruction.FINALIZE_MARKET:
            # accounts: [global_config, market, backend_authority]
            return MarketFinalized(
                market=_account(accounts, 1, "market"),
                agree_votes=reader.option_u32(),
                disagree_votes=reader.option_u32(),
                **common,
            )

        # Instruction.CANCEL_MARKET
        return MarketCancelled(
            authority=_account(accounts, 0, "authority"),
            market=_account(accounts, 1, "market"),
            **common,
        )
