"""Tests for the realtime change broadcaster."""

from __future__ import annotations

import asyncio
import threading

from billing.entitlements.models import EntitlementState
from billing.events import ChangeBroadcaster, account_channel, entitled_channel, entitlement_notifier


def _run(coro):
    return asyncio.run(coro)


class TestChangeBroadcaster:
    def test_publish_reaches_attached_subscriber(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, "backend-user-acct_a")
            assert broadcaster.publish("backend-user-acct_a", {"type": "ping"}) == 1
            return await asyncio.wait_for(queue.get(), 1)

        event = _run(scenario())
        assert event["type"] == "ping"
        assert event["channel"] == "backend-user-acct_a"
        assert "timestamp" in event

    def test_unattached_channel_not_delivered(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, "backend-user-acct_a")
            delivered = broadcaster.publish("backend-user-acct_b", {"type": "ping"})
            await asyncio.sleep(0)
            return delivered, queue.qsize()

        assert _run(scenario()) == (0, 0)

    def test_detach_and_unsubscribe(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, _ = broadcaster.subscribe()
            broadcaster.attach(sub_id, "backend-user-acct_a")
            broadcaster.detach(sub_id, "backend-user-acct_a")
            after_detach = broadcaster.publish("backend-user-acct_a", {"type": "ping"})
            broadcaster.attach(sub_id, "backend-user-acct_a")
            broadcaster.unsubscribe(sub_id)
            after_unsubscribe = broadcaster.publish("backend-user-acct_a", {"type": "ping"})
            return after_detach, after_unsubscribe, broadcaster.channels(sub_id)

        assert _run(scenario()) == (0, 0, set())

    def test_publish_from_worker_thread(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, "backend-user-acct_a")
            worker = threading.Thread(
                target=broadcaster.publish, args=("backend-user-acct_a", {"type": "from_thread"})
            )
            worker.start()
            event = await asyncio.wait_for(queue.get(), 1)
            worker.join()
            return event

        assert _run(scenario())["type"] == "from_thread"

    def test_full_queue_drops_oldest(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, "c")
            for i in range(queue.maxsize + 1):
                broadcaster.publish("c", {"n": i})
            await asyncio.sleep(0)
            return queue.qsize(), queue.maxsize, queue.get_nowait()["n"]

        size, maxsize, first = _run(scenario())
        assert size == maxsize
        assert first == 1


class TestEntitlementNotifier:
    def test_publishes_on_account_channel(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, account_channel("acct_a"))
            notify = entitlement_notifier(broadcaster)
            notify("acct_a", EntitlementState(active=True, plan_id="prod_pro"))
            return await asyncio.wait_for(queue.get(), 1)

        event = _run(scenario())
        assert event["type"] == "entitlement.changed"
        assert event["active"] is True
        assert event["plan_id"] == "prod_pro"
        assert event["channel"] == "backend-user-acct_a"

    def test_deactivation_published_on_entitled_channel(self):
        async def scenario():
            broadcaster = ChangeBroadcaster()
            sub_id, queue = broadcaster.subscribe()
            broadcaster.attach(sub_id, entitled_channel("acct_a"))
            notify = entitlement_notifier(broadcaster)
            notify("acct_a", EntitlementState(active=True, plan_id="prod_pro"))
            notify("acct_a", EntitlementState(active=False))
            return await asyncio.wait_for(queue.get(), 1), queue.qsize()

        event, remaining = _run(scenario())
        assert event["channel"] == "backend-pro-acct_a"
        assert event["active"] is False
        assert remaining == 0
