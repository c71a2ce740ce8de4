"""
Market Mirror - Finalization Submitter

Sends finalize_market for one overdue market and waits for confirmation.

The submitter never touches the market row. The market only becomes FINALIZED
in the mirror when the resulting transaction comes back through the webhook.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from market_mirror.bridges.solana import (
    ConfirmationTimeout,
    RpcError,
    RpcTransportError,
    SolanaRpcClient,
    build_finalize_instruction,
    derive_global_config_address,
    read_backend_authority,
    sign_transaction,
)
from market_mirror.core.config import MonitorConfig
from market_mirror.monitor.retry import RetryExhausted, with_retry
from market_mirror.monitor.scanner import OverdueMarket

logger = logging.getLogger(__name__)

DRY_RUN_SIGNATURE = "dry-run-signature"


class AuthorityMismatchError(Exception):
    """Local signer is not the backend authority recorded on-chain. Fatal at startup."""
    pass


class TerminalSubmissionError(Exception):
    """The ledger rejected the instruction; retrying will not help."""

    def __init__(self, market_address: str, cause: BaseException, attempts: int):
        super().__init__(f"finalize_market rejected for {market_address}: {cause}")
        self.market_address = market_address
        self.cause = cause
        self.attempts = attempts


def is_transient(exc: BaseException) -> bool:
    """Transient infrastructure failures are retried; everything else is terminal."""
    if isinstance(exc, (RpcTransportError, ConfirmationTimeout)):
        return True
    if isinstance(exc, RpcError):
        return exc.is_transient
    return False


@dataclass
class FinalizationResult:
    signature: str
    attempts: int
    dry_run: bool = False


class FinalizationSubmitter:
    """Builds, signs, submits and confirms finalize_market."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        program_id: Pubkey,
        signer: Optional[Keypair],
        config: MonitorConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if signer is None and not config.dry_run:
            raise ValueError("a signer is required outside dry-run")
        self.rpc = rpc
        self.program_id = program_id
        self.signer = signer
        self.config = config
        self.sleep = sleep

    async def validate_authority(self) -> Pubkey:
        """
        Check the local key against GlobalConfig.backend_authority.

        Raises:
            AuthorityMismatchError: missing config account or different key
        """
        global_config = derive_global_config_address(self.program_id)
        data = await self.rpc.get_account_data(global_config)
        if data is None:
            raise AuthorityMismatchError(f"global config {global_config} not found on-chain")
        onchain = read_backend_authority(data)

        if self.signer is None:
            logger.warning(f"[FINALIZE] dry-run without signer; on-chain authority is {onchain}")
            return onchain
        if onchain != self.signer.pubkey():
            raise AuthorityMismatchError(
                f"backend authority mismatch: on-chain {onchain}, local {self.signer.pubkey()}"
            )
        logger.info(f"[FINALIZE] backend authority verified: {onchain}")
        return onchain

    async def finalize(self, market: OverdueMarket) -> FinalizationResult:
        """
        Finalize one market on the no-dispute path.

        Raises:
            TerminalSubmissionError: instruction rejected (not retried)
            RetryExhausted: every attempt failed transiently
        """
        if self.config.dry_run:
            logger.info(
                f"[FINALIZE] DRY RUN: would finalize {market.address} "
                f"(proposed {market.proposed_outcome}, deadline {market.dispute_deadline_at})"
            )
            return FinalizationResult(signature=DRY_RUN_SIGNATURE, attempts=0, dry_run=True)

        try:
            market_key = Pubkey.from_string(market.address)
        except ValueError as exc:
            raise TerminalSubmissionError(market.address, exc, attempts=0) from exc

        instruction = build_finalize_instruction(self.program_id, market_key, self.signer.pubkey())
        attempts = 0
        last_signature: Optional[str] = None

        async def attempt() -> str:
            nonlocal attempts, last_signature
            attempts += 1
            # A previous attempt may have landed after its confirmation timed out.
            if last_signature and await self.rpc.check_landed(last_signature):
                logger.info(f"[FINALIZE] earlier submission {last_signature} landed")
                return last_signature

            blockhash = await self.rpc.get_latest_blockhash()
            transaction = sign_transaction(instruction, self.signer, blockhash)
            signature = str(transaction.signatures[0])
            last_signature = signature
            await self.rpc.send_transaction(transaction)
            await self.rpc.confirm_transaction(signature, timeout=self.config.confirmation_timeout)
            return signature

        def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                f"[FINALIZE] {market.address} attempt {attempt_no}/{self.config.max_retries} "
                f"failed: {exc}; retrying in {delay:.1f}s"
            )

        try:
            signature = await with_retry(
                attempt,
                max_attempts=self.config.max_retries,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
                backoff_factor=self.config.retry_backoff_factor,
                retry_on=is_transient,
                sleep=self.sleep,
                on_retry=on_retry,
            )
        except RetryExhausted:
            raise
        except Exception as exc:
            logger.error(
                f"[FINALIZE] MANUAL REVIEW: finalize_market rejected for {market.address} "
                f"(market id {market.id}, deadline {market.dispute_deadline_at}, "
                f"attempt {attempts}, last signature {last_signature}): {exc}"
            )
            raise TerminalSubmissionError(market.address, exc, attempts) from exc

        logger.info(f"[FINALIZE] {market.address} finalized in tx {signature} after {attempts} attempt(s)")
        return FinalizationResult(signature=signature, attempts=attempts)
