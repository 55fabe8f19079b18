"""Webhook idempotency: event-identity ledger with bounded retention.

Security contract:
- Tracks provider webhook ids for a bounded window (default 72h)
- Duplicates are acknowledged with 200 (provider retries on errors)
- Key pattern: webhook:seen:{provider}:{webhook_id}
- Ids are marked only after the entitlement write commits, so a failed
  write leaves the delivery eligible for redelivery
- If Redis is down, seen() answers False (fail-open); the reconciler's
  recency check still blocks re-application
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 72 * 3600

_KEY_PREFIX = "webhook:seen"


@runtime_checkable
class EventLedger(Protocol):
    """Remembers which provider events have been fully processed."""

    def seen(self, event_id: str) -> bool: ...

    def mark(self, event_id: str) -> None: ...


class InMemoryEventLedger:
    """Thread-safe in-process ledger; expired ids are purged lazily."""

    def __init__(self, provider: str = "polar", retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self._provider = provider
        self._retention = retention_seconds
        self._lock = threading.Lock()
        self._expiry: dict[str, float] = {}

    def seen(self, event_id: str) -> bool:
        if not event_id:
            return False
        now = time.time()
        with self._lock:
            expires_at = self._expiry.get(event_id)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._expiry[event_id]
                return False
            return True

    def mark(self, event_id: str) -> None:
        if not event_id:
            return
        now = time.time()
        with self._lock:
            self._expiry[event_id] = now + self._retention
            if len(self._expiry) > 10_000:
                self._purge(now)

    def _purge(self, now: float) -> None:
        for key in [k for k, exp in self._expiry.items() if exp <= now]:
            del self._expiry[key]


class RedisEventLedger:
    """Redis-backed ledger shared by every worker process."""

    def __init__(self, client, provider: str = "polar", retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self._redis = client
        self._provider = provider
        self._retention = retention_seconds

    def _key(self, event_id: str) -> str:
        return f"{_KEY_PREFIX}:{self._provider}:{event_id}"

    def seen(self, event_id: str) -> bool:
        if not event_id:
            return False
        try:
            return bool(self._redis.exists(self._key(event_id)))
        except Exception:
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s/%s",
                self._provider,
                event_id,
                exc_info=True,
            )
            return False

    def mark(self, event_id: str) -> None:
        if not event_id:
            return
        try:
            self._redis.set(self._key(event_id), "1", ex=self._retention)
        except Exception:
            logger.warning("Failed to mark webhook as seen: %s/%s", self._provider, event_id)
