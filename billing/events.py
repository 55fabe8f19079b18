"""Event broadcasting for real-time entitlement notifications.

Provides:
- ChangeBroadcaster: fan-out of channel events to connected WebSocket clients
- account_channel / entitled_channel: channel names for an account

Publishing never blocks and may happen from any thread; delivery is handed
to each subscriber's event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from billing.entitlements.models import EntitlementState

logger = logging.getLogger(__name__)

ACCOUNT_CHANNEL_PREFIX = "backend-user-"
ENTITLED_CHANNEL_PREFIX = "backend-pro-"

_QUEUE_MAXSIZE = 500


def account_channel(account_id: str) -> str:
    """Channel visible to the account owner regardless of entitlement."""
    return f"{ACCOUNT_CHANNEL_PREFIX}{account_id}"


def entitled_channel(account_id: str) -> str:
    """Channel visible to the account owner only while entitled."""
    return f"{ENTITLED_CHANNEL_PREFIX}{account_id}"


@dataclass
class _Subscriber:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    channels: set[str] = field(default_factory=set)


class ChangeBroadcaster:
    """Fans out channel events to every subscriber attached to that channel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, _Subscriber] = {}

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        """Register a subscriber on the running loop. Returns (subscriber_id, queue)."""
        sub_id = str(uuid.uuid4())[:8]
        queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
        with self._lock:
            self._subscribers[sub_id] = _Subscriber(queue=queue, loop=asyncio.get_running_loop())
            total = len(self._subscribers)
        logger.info("Realtime subscriber connected: %s (total: %d)", sub_id, total)
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)
            total = len(self._subscribers)
        logger.info("Realtime subscriber disconnected: %s (total: %d)", sub_id, total)

    def attach(self, sub_id: str, channel: str) -> None:
        with self._lock:
            subscriber = self._subscribers.get(sub_id)
            if subscriber is not None:
                subscriber.channels.add(channel)

    def detach(self, sub_id: str, channel: str) -> None:
        with self._lock:
            subscriber = self._subscribers.get(sub_id)
            if subscriber is not None:
                subscriber.channels.discard(channel)

    def channels(self, sub_id: str) -> set[str]:
        with self._lock:
            subscriber = self._subscribers.get(sub_id)
            return set(subscriber.channels) if subscriber else set()

    def publish(self, channel: str, event: dict[str, Any]) -> int:
        """Send an event to every subscriber on *channel* (non-blocking).

        Returns the number of subscribers the event was handed to.
        """
        message = {**event, "channel": channel, "timestamp": time.time()}
        with self._lock:
            targets = [s for s in self._subscribers.values() if channel in s.channels]
        delivered = 0
        for subscriber in targets:
            try:
                subscriber.loop.call_soon_threadsafe(_enqueue, subscriber.queue, message)
                delivered += 1
            except RuntimeError:
                # Loop already closed; the subscriber is going away
                continue
        return delivered


def entitlement_notifier(broadcaster: ChangeBroadcaster):
    """Reconciler hook: announce entitlement changes.

    Every change goes to the account channel. A change that leaves the
    account inactive also goes to the entitled channel, so its subscribers
    are re-authorized and detached right away.
    """

    def _notify(account_id: str, state: EntitlementState) -> None:
        event = {
            "type": "entitlement.changed",
            "active": state.active,
            "plan_id": state.plan_id,
            "cancel_at_period_end": state.cancel_at_period_end,
        }
        broadcaster.publish(account_channel(account_id), event)
        if not state.active:
            broadcaster.publish(entitled_channel(account_id), event)

    return _notify


def _enqueue(queue: asyncio.Queue, event: dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        # Drop oldest event to make room
        try:
            queue.get_nowait()
            queue.put_nowait(event)
        except (asyncio.QueueEmpty, asyncio.QueueFull):
            pass
