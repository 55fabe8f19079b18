"""Webhook HTTP handler: FastAPI route for inbound Polar deliveries.

The handler:
1. Admits the request against the ingestion bucket (429 when denied)
2. Reads the raw body (needed for HMAC verification)
3. Verifies signature, signing window and payload structure (400 on failure)
4. Reconciles the event into the entitlement store
5. Returns 200 for every acknowledged outcome (applied, duplicate, stale,
   unknown account, unhandled type)

Security contract:
- Never return error details to the webhook caller (info disclosure)
- 500 only when the entitlement write failed, so the provider redelivers
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import asyncio
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing.exceptions import AdmissionDenied, PersistenceFailure
from billing.security.admission import RouteClass
from billing.security.middleware import get_client_ip
from billing.webhooks.verification import HEADER_ID, VerificationError, verify

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/polar/webhooks"
_PROVIDER = "polar"


def _log_webhook(event_type: str, webhook_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s",
        _PROVIDER,
        event_type,
        webhook_id,
        status,
    )


async def handle_polar_webhook(request: Request) -> JSONResponse:
    """Process one provider delivery. Never returns error details."""
    start = time.time()
    services = request.app.state.services
    settings = services.settings

    decision = await asyncio.to_thread(
        services.admission.allow, get_client_ip(request), RouteClass.INGESTION
    )
    if not decision.allowed:
        _log_webhook("unknown", request.headers.get(HEADER_ID, "unknown"), "rate_limited")
        raise AdmissionDenied(decision)

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    result = verify(
        body,
        headers,
        settings.polar_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
    if isinstance(result, VerificationError):
        _log_webhook("unknown", headers.get(HEADER_ID, "unknown"), f"rejected:{result.reason.value}")
        return JSONResponse(
            {"status": "rejected"},
            status_code=400,
            headers=decision.headers(),
        )

    try:
        outcome = await asyncio.to_thread(services.reconciler.apply, result)
    except PersistenceFailure:
        logger.exception("Entitlement write failed for %s/%s", result.event_type, result.event_id)
        _log_webhook(result.event_type, result.event_id, "persistence_failed")
        return JSONResponse({"status": "error"}, status_code=500)
    except Exception:
        logger.exception("Unexpected failure reconciling %s/%s", result.event_type, result.event_id)
        _log_webhook(result.event_type, result.event_id, "failed")
        return JSONResponse({"status": "error"}, status_code=500)

    _log_webhook(result.event_type, result.event_id, outcome.outcome.value)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s/%s", elapsed_ms, _PROVIDER, result.event_type)

    return JSONResponse({"status": "received"}, status_code=200, headers=decision.headers())


def register_webhook_routes(app: FastAPI) -> None:
    """Register the provider webhook endpoint on the FastAPI app."""

    @app.post(WEBHOOK_PATH)
    async def polar_webhook(request: Request):
        """Receive Polar webhooks (signature-verified)."""
        return await handle_polar_webhook(request)

    logger.info("Webhook routes registered: %s", WEBHOOK_PATH)
