"""
Market Mirror - Market Monitor

One run = scan for overdue RESOLVING markets, then finalize them one at a time.

- A run started while another is in flight returns a skipped summary.
- Each market gets its own timeout; a failure is recorded and the batch moves on.
- A failing scan query aborts the run.
- Failed markets stay RESOLVING, so the next scan picks them up again.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field
from solders.pubkey import Pubkey
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_mirror.bridges.solana import SolanaRpcClient, load_keypair
from market_mirror.core.config import MonitorConfig, Settings
from market_mirror.db.models import AttemptOutcome, FinalizationAttempt
from market_mirror.monitor.finalization import FinalizationSubmitter, TerminalSubmissionError
from market_mirror.monitor.lease import DatabaseLease, RunToken
from market_mirror.monitor.retry import RetryExhausted
from market_mirror.monitor.scanner import DeadlineScanner, OverdueMarket

logger = logging.getLogger(__name__)


class AttemptSummary(BaseModel):
    market_id: str
    market_address: str
    outcome: AttemptOutcome
    tx_signature: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    processing_time_ms: int = 0


class RunSummary(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    markets_found: int = 0
    success_count: int = 0
    fail_count: int = 0
    skipped_count: int = 0
    dry_run: bool = False
    attempts: list[AttemptSummary] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketMonitor:
    """Scan + finalize cycle guarded by an explicit run token."""

    def __init__(
        self,
        scanner: DeadlineScanner,
        submitter: FinalizationSubmitter,
        session_maker: async_sessionmaker[AsyncSession],
        config: MonitorConfig,
        lease: Optional[DatabaseLease] = None,
    ):
        self.scanner = scanner
        self.submitter = submitter
        self.session_maker = session_maker
        self.config = config
        self.lease = lease
        self.token = RunToken()
        self.accepting = True
        self.run_count = 0
        self.skipped_runs = 0
        self.last_summary: Optional[RunSummary] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.token.running

    def _skipped(self, run_id: str, reason: str) -> RunSummary:
        self.skipped_runs += 1
        logger.info(f"[MONITOR] run {run_id} skipped: {reason}")
        now = _utcnow()
        return RunSummary(run_id=run_id, started_at=now, finished_at=now, skipped_count=1)

    async def run(self) -> RunSummary:
        run_id = uuid.uuid4().hex[:12]
        if not self.accepting:
            return self._skipped(run_id, "shutting down")
        if not self.token.try_acquire(run_id):
            return self._skipped(run_id, f"run {self.token.holder} in progress")

        try:
            if self.lease and not await self.lease.acquire():
                return self._skipped(run_id, "lease held elsewhere")
            try:
                return await self._execute(run_id)
            finally:
                if self.lease:
                    await self.lease.release()
        finally:
            self.token.release(run_id)

    async def _execute(self, run_id: str) -> RunSummary:
        self.run_count += 1
        summary = RunSummary(run_id=run_id, started_at=_utcnow(), dry_run=self.config.dry_run)
        started = time.monotonic()
        logger.info(f"[MONITOR] run {run_id} started (#{self.run_count})")

        try:
            markets = await self.scanner.scan()
        except Exception as exc:
            self.last_error = f"scan failed: {exc}"
            logger.error(f"[MONITOR] run {run_id} aborted, scan failed: {exc}")
            raise

        summary.markets_found = len(markets)
        for market in markets:
            attempt = await self._process(run_id, market)
            summary.attempts.append(attempt)
            if attempt.outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.DRY_RUN):
                summary.success_count += 1
            else:
                summary.fail_count += 1

        summary.finished_at = _utcnow()
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self.last_summary = summary
        self.last_error = None
        logger.info(
            f"[MONITOR] run {run_id} done in {summary.duration_ms}ms: "
            f"{summary.markets_found} found, {summary.success_count} ok, {summary.fail_count} failed"
        )
        return summary

    async def _process(self, run_id: str, market: OverdueMarket) -> AttemptSummary:
        started = time.monotonic()
        signature: Optional[str] = None
        error: Optional[str] = None
        attempts = 0
        try:
            result = await asyncio.wait_for(
                self.submitter.finalize(market), timeout=self.config.max_processing_time
            )
            signature = result.signature
            attempts = result.attempts
            outcome = AttemptOutcome.DRY_RUN if result.dry_run else AttemptOutcome.SUCCESS
        except asyncio.TimeoutError:
            outcome = AttemptOutcome.TIMEOUT
            error = f"processing exceeded {self.config.max_processing_time:.0f}s"
            logger.error(f"[MONITOR] {market.address}: {error}")
        except TerminalSubmissionError as exc:
            outcome = AttemptOutcome.REJECTED
            error = str(exc.cause)
            attempts = exc.attempts
        except RetryExhausted as exc:
            outcome = AttemptOutcome.FAILED
            error = str(exc.last_error)
            attempts = exc.attempts
            logger.error(f"[MONITOR] {market.address}: {exc}")
        except Exception as exc:
            outcome = AttemptOutcome.FAILED
            error = f"{type(exc).__name__}: {exc}"
            logger.exception(f"[MONITOR] {market.address}: unexpected error")

        attempt = AttemptSummary(
            market_id=str(market.id),
            market_address=market.address,
            outcome=outcome,
            tx_signature=signature,
            error=error,
            attempts=attempts,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        await self._record(run_id, market, attempt)
        return attempt

    async def _record(self, run_id: str, market: OverdueMarket, attempt: AttemptSummary) -> None:
        try:
            async with self.session_maker() as db:
                db.add(
                    FinalizationAttempt(
                        market_id=market.id,
                        market_address=market.address,
                        run_id=run_id,
                        outcome=attempt.outcome.value,
                        tx_signature=attempt.tx_signature,
                        error_message=attempt.error,
                        attempt_count=max(attempt.attempts, 1),
                        processing_time_ms=attempt.processing_time_ms,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception(f"[MONITOR] could not record finalization attempt for {market.address}")

    async def validate(self) -> None:
        """Startup checks: database reachable, RPC reachable, authority matches."""
        async with self.session_maker() as db:
            await db.execute(text("SELECT 1"))
        slot = await self.submitter.rpc.get_slot()
        logger.info(f"[MONITOR] RPC reachable at slot {slot}")
        await self.submitter.validate_authority()

    async def shutdown(self, max_wait: Optional[float] = None, poll_interval: float = 1.0) -> bool:
        """Stop accepting runs and wait for the in-flight one. False if it was still running."""
        self.accepting = False
        max_wait = self.config.shutdown_max_wait if max_wait is None else max_wait
        waited = 0.0
        while self.is_running and waited < max_wait:
            await asyncio.sleep(poll_interval)
            waited += poll_interval
        if self.is_running:
            logger.warning(f"[MONITOR] shutdown proceeding with run {self.token.holder} still in flight")
            return False
        logger.info("[MONITOR] shutdown complete")
        return True

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "accepting": self.accepting,
            "run_count": self.run_count,
            "skipped_runs": self.skipped_runs,
            "last_error": self.last_error,
            "last_summary": self.last_summary.model_dump(mode="json") if self.last_summary else None,
            "config": {
                "interval_seconds": self.config.interval_seconds,
                "batch_size": self.config.batch_size,
                "max_retries": self.config.max_retries,
                "dry_run": self.config.dry_run,
                "commitment": self.config.commitment,
                "lease_enabled": self.lease is not None,
            },
        }


def build_market_monitor(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    rpc: Optional[SolanaRpcClient] = None,
) -> MarketMonitor:
    config = MonitorConfig.from_settings(settings)
    signer = (
        load_keypair(settings.BACKEND_AUTHORITY_PRIVATE_KEY)
        if settings.BACKEND_AUTHORITY_PRIVATE_KEY
        else None
    )
    rpc = rpc or SolanaRpcClient(settings.SOLANA_RPC_URL, commitment=config.commitment)
    return MarketMonitor(
        scanner=DeadlineScanner(session_maker, batch_size=config.batch_size, safety_buffer=config.safety_buffer),
        submitter=FinalizationSubmitter(
            rpc=rpc,
            program_id=Pubkey.from_string(settings.PROGRAM_ID),
            signer=signer,
            config=config,
        ),
        session_maker=session_maker,
        config=config,
        lease=(
            DatabaseLease(session_maker, ttl_seconds=config.lease_ttl_seconds)
            if config.lease_enabled
            else None
        ),
    )


_market_monitor: Optional[MarketMonitor] = None


def set_market_monitor(monitor: Optional[MarketMonitor]) -> None:
    global _market_monitor
    _market_monitor = monitor


def get_market_monitor() -> Optional[MarketMonitor]:
    """The process-wide monitor, if one was started."""
    return _market_monitor
