"""
Market Mirror - Webhook Receiver Tests
"""

import json

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import func, select

from market_mirror.api import webhooks
from market_mirror.api.webhooks import RateLimiter, compute_signature, verify_signature
from market_mirror.core.config import settings
from market_mirror.db.models import Market, RawEvent
from market_mirror.indexer.service import get_indexer_service

from conftest import create_market_ix, instruction, notification, trade_ix

SECRET = "test-webhook-secret"


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(limit=100, clock=lambda: 1_000.0)


@pytest.fixture
def app(indexer, limiter, monkeypatch) -> FastAPI:
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", SECRET)
    app = FastAPI()
    app.include_router(webhooks.router)
    app.dependency_overrides[get_indexer_service] = lambda: indexer
    app.dependency_overrides[webhooks.get_rate_limiter] = lambda: limiter
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def post(client, payload, secret: str = SECRET, header: str = "x-helius-signature"):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {"content-type": "application/json"}
    if secret:
        headers[header] = compute_signature(body, secret)
    return await client.post("/webhooks/helius", content=body, headers=headers)


class TestSignature:
    """Tests for HMAC verification."""

    def test_roundtrip(self):
        sig = compute_signature(b"body", SECRET)
        assert verify_signature(b"body", sig, SECRET)
        assert verify_signature(b"body", f"sha256={sig}", SECRET)

    def test_rejects_tampered_body(self):
        sig = compute_signature(b"body", SECRET)
        assert not verify_signature(b"body!", sig, SECRET)

    def test_rejects_garbage(self):
        assert not verify_signature(b"body", None, SECRET)
        assert not verify_signature(b"body", "not-hex", SECRET)

    async def test_bad_signature_is_401(self, client, session_maker):
        response = await post(client, [notification("s1", create_market_ix("A", "alice"))], secret="wrong")
        assert response.status_code == 401
        async with session_maker() as db:
            assert (await db.execute(select(func.count()).select_from(RawEvent))).scalar_one() == 0

    async def test_missing_signature_is_401(self, client):
        response = await post(client, [notification("s1", create_market_ix("A", "alice"))], secret=None)
        assert response.status_code == 401

    async def test_unsigned_allowed_when_no_secret_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", None)
        monkeypatch.setattr(settings, "WEBHOOK_ALLOW_UNSIGNED", True)
        response = await post(client, [notification("s1", create_market_ix("A", "alice"))], secret=None)
        assert response.status_code == 200

    async def test_no_secret_and_unsigned_not_allowed(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", None)
        monkeypatch.setattr(settings, "WEBHOOK_ALLOW_UNSIGNED", False)
        response = await post(client, [notification("s1", create_market_ix("A", "alice"))], secret=None)
        assert response.status_code == 401


class TestRateLimit:
    """Tests for the fixed-window limiter."""

    def test_window_resets(self):
        now = [0.0]
        limiter = RateLimiter(limit=2, window_seconds=60, clock=lambda: now[0])

        assert limiter.hit("a").allowed
        assert limiter.hit("a").allowed
        assert not limiter.hit("a").allowed
        assert limiter.hit("b").allowed

        now[0] = 60.0
        decision = limiter.hit("a")
        assert decision.allowed
        assert decision.remaining == 1

    async def test_over_limit_is_429(self, app, client):
        tight = RateLimiter(limit=1, clock=lambda: 0.0)
        app.dependency_overrides[webhooks.get_rate_limiter] = lambda: tight
        payload = [notification("s1", create_market_ix("A", "alice"))]

        first = await post(client, payload)
        second = await post(client, payload)

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "0"
        assert second.status_code == 429
        assert second.headers["X-RateLimit-Limit"] == "1"


class TestIngest:
    """Tests for the ingest path behind the webhook."""

    async def test_batch_is_applied(self, client, session_maker):
        response = await post(
            client,
            [
                notification("s1", create_market_ix("A", "alice")),
                notification("s2", trade_ix("A", "bob", buy=True, outcome_yes=True, shares=3, cost=9)),
            ],
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "eventsProcessed": 2}
        async with session_maker() as db:
            market = (await db.execute(select(Market))).scalar_one()
        assert market.trade_count == 1

    async def test_single_object_body(self, client):
        response = await post(client, notification("s1", create_market_ix("A", "alice")))
        assert response.status_code == 200
        assert response.json()["eventsProcessed"] == 1

    async def test_partial_failure_still_acknowledged(self, client, session_maker):
        response = await post(
            client,
            [
                notification("s1", create_market_ix("A", "alice")),
                notification("s2", instruction(250, b"", ("x", "A"))),
                notification("s3", instruction(1, b"\x00", ("bob", "A"))),
            ],
        )

        assert response.status_code == 200
        assert response.json()["eventsProcessed"] == 1
        async with session_maker() as db:
            failed = (
                await db.execute(select(RawEvent).where(RawEvent.error.is_not(None)))
            ).scalars().all()
        assert [row.tx_signature for row in failed] == ["s2"]

    async def test_duplicate_delivery(self, client, session_maker):
        payload = [notification("s1", create_market_ix("A", "alice"))]
        await post(client, payload)
        response = await post(client, payload)

        assert response.status_code == 200
        assert response.json()["eventsProcessed"] == 1
        async with session_maker() as db:
            assert (await db.execute(select(func.count()).select_from(Market))).scalar_one() == 1

    async def test_invalid_json_is_400(self, client):
        response = await post(client, b"{not json")
        assert response.status_code == 400

    async def test_malformed_notification_is_400(self, client):
        response = await post(client, [{"signature": "s1"}])
        assert response.status_code == 400
