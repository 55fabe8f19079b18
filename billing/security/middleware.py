"""Security middleware for FastAPI: CORS, HTTP rate limiting, admission errors.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight
2. Rate limiting -- slowapi for the general session API; the webhook ingress
   and realtime endpoints use the AdmissionController buckets instead
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import HTTPConnection

from billing.config import settings
from billing.exceptions import AdmissionDenied

logger = logging.getLogger(__name__)


def get_client_ip(request: HTTPConnection) -> str:
    """Extract client IP, respecting the app's TRUSTED_PROXIES config.

    Works for HTTP requests and WebSockets alike.
    """
    services = getattr(request.app.state, "services", None)
    active = services.settings if services is not None else settings
    if active.trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# General API limiter (moving window, same algorithm as the admission buckets)
limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=settings.rate_limit_storage_uri,
    strategy="moving-window",
)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle slowapi rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"error": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def _admission_denied_handler(request: Request, exc: AdmissionDenied):
    """Handle admission controller denials (webhook ingress, realtime)."""
    decision = exc.decision
    logger.info(
        "Admission denied path=%s client=%s limit=%d",
        request.url.path,
        get_client_ip(request),
        decision.limit,
    )
    return JSONResponse(
        {"error": "Too many requests", "retry_after": decision.retry_after},
        status_code=429,
        headers=decision.headers(),
    )


def install_security_middleware(app: FastAPI, cors_origins: list[str] | None = None) -> None:
    """Install rate-limit handlers and CORS on the app.

    Call this AFTER all routes are registered.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(AdmissionDenied, _admission_denied_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )
