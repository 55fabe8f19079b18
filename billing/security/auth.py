"""Session identity: HS256 JWT issued by the host app, ``sub`` = account id.

The session itself is owned by the host application; this module only reads
the token and trusts its subject as the caller's account id.

Token sources, in order:
- ``studio_session`` cookie (browser)
- ``Authorization: Bearer <token>`` header
- ``?token=`` query parameter (WebSocket only; browsers can't set headers)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import Request, WebSocket
from jose import JWTError, jwt

from billing.config import Settings

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TTL = timedelta(hours=24)


def create_session_token(account_id: str, settings: Settings, ttl: timedelta = _TOKEN_TTL) -> str:
    """Create a session JWT for *account_id* (host app and tests)."""
    now = datetime.now(timezone.utc)
    payload = {"sub": account_id, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, settings.session_secret, algorithm=_ALGORITHM)


def verify_session_token(token: str, settings: Settings) -> str | None:
    """Return the account id carried by *token*, or None if invalid/expired."""
    try:
        claims = jwt.decode(token, settings.session_secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) and subject else None


def extract_bearer_token(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_identity(request: Request, settings: Settings) -> str | None:
    """Account id of the HTTP caller, or None when unauthenticated."""
    token = request.cookies.get(settings.session_cookie_name) or extract_bearer_token(
        request.headers.get("authorization")
    )
    if not token:
        return None
    return verify_session_token(token, settings)


def resolve_ws_identity(websocket: WebSocket, settings: Settings) -> str | None:
    """Account id of the WebSocket caller, or None when unauthenticated."""
    token = (
        websocket.cookies.get(settings.session_cookie_name)
        or extract_bearer_token(websocket.headers.get("authorization"))
        or websocket.query_params.get("token")
    )
    if not token:
        return None
    return verify_session_token(token, settings)
