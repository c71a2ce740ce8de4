"""
Market Mirror - Webhook Receiver

POST /webhooks/{source}

- HMAC-SHA256 of the raw body, hex, in the signature header. 401 on mismatch.
- Per-client fixed-window rate limit. 429 when exceeded.
- Once the body parses, the answer is 200 even if individual events fail;
  failures stay on raw_events.error for replay. Acknowledging keeps the
  provider from redelivering on top of our own retries.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import TypeAdapter, ValidationError

from market_mirror.core.config import settings
from market_mirror.indexer.decoder import LedgerNotification
from market_mirror.indexer.service import IndexerService, get_indexer_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_notifications = TypeAdapter(list[LedgerNotification])


# =============================================================================
# SIGNATURE
# =============================================================================

def compute_signature(body: bytes, secret: str) -> str:
    mac = crypto_hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(body)
    return mac.finalize().hex()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 (optionally prefixed 'sha256=')."""
    if not signature:
        return False
    signature = signature.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    try:
        expected = bytes.fromhex(signature)
    except ValueError:
        return False
    mac = crypto_hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(body)
    try:
        mac.verify(expected)
    except InvalidSignature:
        return False
    return True


# =============================================================================
# RATE LIMIT
# =============================================================================

@dataclass
class _Window:
    started: float
    count: int = 0


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


@dataclass
class RateLimiter:
    """Fixed-window counter per client key, in memory."""

    limit: int
    window_seconds: float = 60.0
    clock: Callable[[], float] = time.time
    _windows: dict[str, _Window] = field(default_factory=dict)

    def hit(self, key: str) -> RateLimitDecision:
        now = self.clock()
        window = self._windows.get(key)
        if window is None or now - window.started >= self.window_seconds:
            window = self._windows[key] = _Window(started=now)
            self._evict(now)
        window.count += 1
        return RateLimitDecision(
            allowed=window.count <= self.limit,
            limit=self.limit,
            remaining=max(self.limit - window.count, 0),
            reset_at=window.started + self.window_seconds,
        )

    def _evict(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now - w.started >= self.window_seconds]
        for key in expired:
            del self._windows[key]


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get singleton webhook rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(limit=settings.WEBHOOK_RATE_LIMIT_PER_MINUTE)
    return _rate_limiter


# =============================================================================
# ENDPOINT
# =============================================================================

def _authenticate(request: Request, body: bytes) -> None:
    if not settings.WEBHOOK_SECRET:
        if settings.WEBHOOK_ALLOW_UNSIGNED:
            logger.warning("[WEBHOOK] WEBHOOK_SECRET not set; accepting unsigned request")
            return
        logger.error("[WEBHOOK] WEBHOOK_SECRET not set; rejecting request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    if not verify_signature(body, signature, settings.WEBHOOK_SECRET):
        logger.warning(f"[WEBHOOK] signature check failed for {request.client.host if request.client else '?'}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


@router.post("/{source}")
async def receive_webhook(
    source: str,
    request: Request,
    response: Response,
    indexer: IndexerService = Depends(get_indexer_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Ingest a batch of ledger notifications."""
    client = request.client.host if request.client else "unknown"
    decision = limiter.hit(client)
    if not decision.allowed:
        logger.warning(f"[WEBHOOK] rate limit exceeded for {client}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers=decision.headers,
        )
    response.headers.update(decision.headers)

    body = await request.body()
    _authenticate(request, body)

    try:
        raw = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if isinstance(raw, dict):
        raw = [raw]
    try:
        notifications = _notifications.validate_python(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed notification batch: {exc.error_count()} error(s)",
        )

    summary = await indexer.ingest(notifications, source=source)
    logger.info(
        f"[WEBHOOK] {source}: {summary.notifications} notification(s), "
        f"{summary.events_processed} applied, {summary.events_failed} failed, "
        f"{summary.decode_errors} undecodable, "
        f"{summary.events_replayed} parked event(s) replayed"
    )
    return {"received": True, "eventsProcessed": summary.events_processed}
