"""Security test fixtures.

Responsibilities:
- Builds an isolated FastAPI `app` per test (fresh store, ledger, buckets)
- Wraps it in client / make_session helpers
- Scoped to tests/security/ only -- invisible to the unit tests

The global tests/conftest.py provides settings, signing and event factories.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from billing.security.admission import (
    AdmissionController,
    AdmissionPolicy,
    FailurePolicy,
    RouteClass,
)
from billing.security.auth import create_session_token
from billing.serve import create_app
from billing.services import build_services


@pytest.fixture
def make_app(settings, store):
    """Factory for an app wired to the shared store with small admission buckets.

    Admission runs inline (no executor) so window counts are deterministic.
    """

    def _make(ingestion_limit: int = 50, realtime_limit: int = 50, store_override=None):
        admission = AdmissionController(
            MemoryStorage(),
            {
                RouteClass.INGESTION: AdmissionPolicy(ingestion_limit, 60, FailurePolicy.OPEN),
                RouteClass.REALTIME: AdmissionPolicy(realtime_limit, 60, FailurePolicy.CLOSED),
            },
            timeout_seconds=None,
        )
        services = build_services(settings, store=store_override or store, admission=admission)
        return create_app(settings, services)

    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def make_session(settings):
    """Factory for session auth headers: {"Authorization": "Bearer <jwt>"}."""

    def _make(account_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_session_token(account_id, settings)}"}

    return _make


@pytest.fixture
def session_token(settings):
    def _make(account_id: str) -> str:
        return create_session_token(account_id, settings)

    return _make
