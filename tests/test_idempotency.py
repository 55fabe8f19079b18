"""Tests for the webhook event ledger (in-process and Redis-backed)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

from freezegun import freeze_time
from redis.exceptions import ConnectionError as RedisConnectionError

from billing.webhooks.idempotency import (
    DEFAULT_RETENTION_SECONDS,
    EventLedger,
    InMemoryEventLedger,
    RedisEventLedger,
)


class TestInMemoryEventLedger:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryEventLedger(), EventLedger)

    def test_unmarked_event_not_seen(self):
        assert InMemoryEventLedger().seen("msg_1") is False

    def test_marked_event_seen(self):
        ledger = InMemoryEventLedger()
        ledger.mark("msg_1")
        assert ledger.seen("msg_1") is True
        assert ledger.seen("msg_2") is False

    def test_empty_id_never_seen(self):
        ledger = InMemoryEventLedger()
        ledger.mark("")
        assert ledger.seen("") is False

    def test_default_retention_is_72_hours(self):
        assert DEFAULT_RETENTION_SECONDS == 72 * 3600

    def test_retention_expires_entries(self):
        with freeze_time("2026-10-01 00:00:00") as frozen:
            ledger = InMemoryEventLedger(retention_seconds=3600)
            ledger.mark("msg_1")
            frozen.tick(timedelta(seconds=3599))
            assert ledger.seen("msg_1") is True
            frozen.tick(timedelta(seconds=2))
            assert ledger.seen("msg_1") is False

    def test_purge_keeps_live_entries(self):
        with freeze_time("2026-10-01 00:00:00") as frozen:
            ledger = InMemoryEventLedger(retention_seconds=10)
            for i in range(10_001):
                ledger.mark(f"old_{i}")
            frozen.tick(timedelta(seconds=11))
            ledger.mark("fresh")
            assert ledger.seen("fresh") is True
            assert ledger.seen("old_0") is False


class TestRedisEventLedger:
    def test_key_pattern_and_ttl(self):
        client = MagicMock()
        ledger = RedisEventLedger(client, retention_seconds=7200)
        ledger.mark("msg_abc")
        client.set.assert_called_once_with("webhook:seen:polar:msg_abc", "1", ex=7200)

    def test_seen_uses_exists(self):
        client = MagicMock()
        client.exists.return_value = 1
        ledger = RedisEventLedger(client)
        assert ledger.seen("msg_abc") is True
        client.exists.assert_called_once_with("webhook:seen:polar:msg_abc")

    def test_not_seen(self):
        client = MagicMock()
        client.exists.return_value = 0
        assert RedisEventLedger(client).seen("msg_abc") is False

    def test_redis_down_fails_open(self):
        """Dedup outage must not block processing; recency still guards state."""
        client = MagicMock()
        client.exists.side_effect = RedisConnectionError("connection refused")
        assert RedisEventLedger(client).seen("msg_abc") is False

    def test_mark_failure_does_not_raise(self):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("connection refused")
        RedisEventLedger(client).mark("msg_abc")

    def test_empty_id_skips_redis(self):
        client = MagicMock()
        ledger = RedisEventLedger(client)
        assert ledger.seen("") is False
        ledger.mark("")
        client.exists.assert_not_called()
        client.set.assert_not_called()

    def test_provider_namespacing(self):
        client = MagicMock()
        RedisEventLedger(client, provider="other").mark("msg_1")
        assert client.set.call_args[0][0] == "webhook:seen:other:msg_1"
