"""Entitlement API routes: session view of the caller's billing state."""

import asyncio
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from billing.config import settings
from billing.exceptions import PersistenceFailure
from billing.security.auth import resolve_identity
from billing.security.middleware import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/entitlement")
@limiter.limit(settings.api_rate_limit)
async def get_entitlement(request: Request):
    """Current entitlement of the session account (dashboard billing view)."""
    services = request.app.state.services
    account_id = resolve_identity(request, services.settings)
    if account_id is None:
        return JSONResponse({"error": "Authentication required"}, status_code=401)

    try:
        state = await asyncio.to_thread(services.store.read, account_id)
    except PersistenceFailure:
        logger.warning("Entitlement read failed for %s", account_id, exc_info=True)
        return JSONResponse({"error": "Entitlement temporarily unavailable"}, status_code=503)

    return {
        "account_id": account_id,
        "active": state.active,
        "plan_id": state.plan_id,
        "subscription_id": state.subscription_id,
        "cancel_at_period_end": state.cancel_at_period_end,
        "updated_at": state.updated_at.isoformat() if state.updated_at else None,
    }
