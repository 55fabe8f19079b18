"""Webhook signature verification for Polar (Standard Webhooks scheme).

Security contract:
- Signatures compared with hmac.compare_digest() (constant-time)
- Missing secret -> verification always fails (fail-closed)
- Timestamp tolerance: 300s by default to prevent replay
- Malformed payloads are rejected before any state-mutating code runs
- Never logs the secret or the signature header
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

HEADER_ID = "webhook-id"
HEADER_TIMESTAMP = "webhook-timestamp"
HEADER_SIGNATURE = "webhook-signature"

DEFAULT_TOLERANCE_SECONDS = 300

_SECRET_PREFIX = "whsec_"
_SIGNATURE_VERSION = "v1"


class VerificationFailure(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class VerificationError:
    """Rejected delivery. Returned, not raised; the HTTP boundary maps it to 400."""

    reason: VerificationFailure
    detail: str = ""


@dataclass(frozen=True)
class VerifiedEvent:
    """Normalized provider event that passed signature and structure checks."""

    event_id: str
    event_type: str
    customer_id: str | None
    occurred_at: datetime
    sequence: int
    subscription_id: str | None = None
    product_id: str | None = None
    cancel_at_period_end: bool | None = None
    payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


def _secret_bytes(secret: str) -> bytes:
    """Standard Webhooks secrets carry a whsec_ prefix over base64 key material."""
    if secret.startswith(_SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(_SECRET_PREFIX):])
        except (binascii.Error, ValueError):
            logger.warning("Webhook secret has whsec_ prefix but is not valid base64")
    return secret.encode("utf-8")


def sign(raw_payload: bytes, webhook_id: str, timestamp: int, shared_secret: str) -> str:
    """Compute the ``v1,<base64>`` signature for a delivery."""
    signed_content = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_payload
    digest = hmac.new(_secret_bytes(shared_secret), signed_content, hashlib.sha256).digest()
    return f"{_SIGNATURE_VERSION},{base64.b64encode(digest).decode('ascii')}"


def _signature_candidates(header: str) -> list[str]:
    # Several space-delimited signatures may be present during key rotation
    candidates = []
    for part in header.split():
        version, _, value = part.partition(",")
        if version == _SIGNATURE_VERSION and value:
            candidates.append(f"{version},{value}")
    return candidates


def _parse_occurred_at(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value or None
    raise TypeError(key)


def _normalize(webhook_id: str, timestamp: int, payload: Any) -> VerifiedEvent | VerificationError:
    if not isinstance(payload, dict):
        return VerificationError(VerificationFailure.MALFORMED, "payload is not an object")

    event_type = payload.get("type")
    data = payload.get("data")
    if not isinstance(event_type, str) or not event_type:
        return VerificationError(VerificationFailure.MALFORMED, "missing event type")
    if not isinstance(data, dict):
        return VerificationError(VerificationFailure.MALFORMED, "missing event data")

    try:
        customer_id = _optional_str(data, "customer_id")
        if customer_id is None and isinstance(data.get("customer"), dict):
            customer_id = _optional_str(data["customer"], "id")
        product_id = _optional_str(data, "product_id")
        if event_type.startswith("subscription."):
            subscription_id = _optional_str(data, "id")
        else:
            subscription_id = _optional_str(data, "subscription_id")
    except TypeError as exc:
        return VerificationError(VerificationFailure.MALFORMED, f"field {exc} has wrong type")

    cancel_flag = data.get("cancel_at_period_end")
    if cancel_flag is not None and not isinstance(cancel_flag, bool):
        return VerificationError(VerificationFailure.MALFORMED, "cancel_at_period_end has wrong type")

    occurred_at = _parse_occurred_at(payload.get("timestamp"))
    if occurred_at is None:
        occurred_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)

    # Integer microseconds keep recency comparisons exact
    delta = occurred_at - datetime(1970, 1, 1, tzinfo=timezone.utc)
    sequence = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds

    return VerifiedEvent(
        event_id=webhook_id,
        event_type=event_type,
        customer_id=customer_id,
        occurred_at=occurred_at,
        sequence=sequence,
        subscription_id=subscription_id,
        product_id=product_id,
        cancel_at_period_end=cancel_flag,
        payload=payload,
    )


def verify(
    raw_payload: bytes,
    headers: Mapping[str, str],
    shared_secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent | VerificationError:
    """Verify a provider delivery and normalize it into a VerifiedEvent.

    Args:
        raw_payload: Raw request body bytes (exactly as received)
        headers: Request headers (any casing)
        shared_secret: Webhook signing secret
        tolerance_seconds: Allowed clock skew between provider and us

    Returns:
        VerifiedEvent on success, VerificationError otherwise
    """
    if not shared_secret:
        logger.warning("POLAR_WEBHOOK_SECRET not set, rejecting webhook")
        return VerificationError(VerificationFailure.BAD_SIGNATURE, "no secret configured")

    lowered = {k.lower(): v for k, v in headers.items()}
    webhook_id = lowered.get(HEADER_ID, "")
    timestamp_str = lowered.get(HEADER_TIMESTAMP, "")
    signature_header = lowered.get(HEADER_SIGNATURE, "")

    if not webhook_id or not timestamp_str:
        return VerificationError(VerificationFailure.MALFORMED, "missing webhook id or timestamp")
    if not signature_header:
        return VerificationError(VerificationFailure.BAD_SIGNATURE, "missing signature")

    try:
        timestamp = int(timestamp_str)
    except ValueError:
        return VerificationError(VerificationFailure.MALFORMED, "timestamp is not an integer")

    # Replay protection
    if abs(time.time() - timestamp) > tolerance_seconds:
        logger.warning("Webhook timestamp outside tolerance: id=%s ts=%s", webhook_id, timestamp)
        return VerificationError(VerificationFailure.EXPIRED, "timestamp outside tolerance")

    expected = sign(raw_payload, webhook_id, timestamp, shared_secret)
    expected_bytes = expected.encode("ascii")
    candidates = _signature_candidates(signature_header)
    if not any(hmac.compare_digest(expected_bytes, c.encode("utf-8")) for c in candidates):
        return VerificationError(VerificationFailure.BAD_SIGNATURE, "signature mismatch")

    try:
        payload = json.loads(raw_payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return VerificationError(VerificationFailure.MALFORMED, "body is not JSON")

    return _normalize(webhook_id, timestamp, payload)
