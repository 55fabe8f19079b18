"""Shared fixtures for the billing core test suite."""

from __future__ import annotations

import base64
import itertools
import json
import time
import uuid
from datetime import datetime, timezone

import pytest

from billing.config import Settings
from billing.entitlements.store import InMemoryEntitlementStore
from billing.webhooks.idempotency import InMemoryEventLedger
from billing.webhooks.verification import VerifiedEvent, sign

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"querystudio-test-signing-key").decode()
SESSION_SECRET = "test-session-secret-not-for-production"

ACCOUNT_A = "acct_a"
ACCOUNT_B = "acct_b"
CUSTOMER_A = "cus_a"
CUSTOMER_B = "cus_b"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        polar_webhook_secret=WEBHOOK_SECRET,
        session_secret=SESSION_SECRET,
        redis_url="",
        rate_limit_storage_uri="memory://",
    )


@pytest.fixture()
def store() -> InMemoryEntitlementStore:
    """Store with ACCOUNT_A and ACCOUNT_B linked to their provider customers."""
    s = InMemoryEntitlementStore(lock_timeout=1.0)
    s.link_customer(ACCOUNT_A, CUSTOMER_A)
    s.link_customer(ACCOUNT_B, CUSTOMER_B)
    return s


@pytest.fixture()
def ledger() -> InMemoryEventLedger:
    return InMemoryEventLedger()


@pytest.fixture()
def make_event():
    """Factory for VerifiedEvent; occurred_at is unix seconds.

    Without an explicit occurred_at each call is one second later than the last.
    """
    clock = itertools.count(1)

    def _make(
        event_type: str = "order.paid",
        customer_id: str | None = CUSTOMER_A,
        *,
        occurred_at: float | None = None,
        event_id: str | None = None,
        subscription_id: str | None = None,
        product_id: str | None = None,
        cancel_at_period_end: bool | None = None,
    ) -> VerifiedEvent:
        ts = occurred_at if occurred_at is not None else 1_760_000_000 + next(clock)
        return VerifiedEvent(
            event_id=event_id or f"msg_{uuid.uuid4().hex[:16]}",
            event_type=event_type,
            customer_id=customer_id,
            occurred_at=datetime.fromtimestamp(ts, tz=timezone.utc),
            sequence=int(round(ts * 1_000_000)),
            subscription_id=subscription_id,
            product_id=product_id,
            cancel_at_period_end=cancel_at_period_end,
        )

    return _make


@pytest.fixture()
def polar_payload():
    """Factory for provider payload dicts in the Polar webhook shape."""

    def _payload(
        event_type: str,
        customer_id: str | None = CUSTOMER_A,
        *,
        occurred_at: str = "2026-10-01T12:00:00Z",
        **data,
    ) -> dict:
        data.setdefault("id", "sub_1" if event_type.startswith("subscription.") else "order_1")
        if customer_id is not None:
            data["customer_id"] = customer_id
        return {"type": event_type, "timestamp": occurred_at, "data": data}

    return _payload


@pytest.fixture()
def make_delivery():
    """Factory returning (body, headers) for a signed Standard Webhooks delivery."""

    def _make(
        payload: dict | bytes,
        *,
        webhook_id: str | None = None,
        timestamp: int | None = None,
        secret: str = WEBHOOK_SECRET,
    ) -> tuple[bytes, dict[str, str]]:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        ts = int(time.time()) if timestamp is None else timestamp
        wid = webhook_id or f"msg_{uuid.uuid4().hex[:16]}"
        headers = {
            "webhook-id": wid,
            "webhook-timestamp": str(ts),
            "webhook-signature": sign(body, wid, ts, secret),
            "content-type": "application/json",
        }
        return body, headers

    return _make
