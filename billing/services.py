"""Service assembly: one set of collaborators per app instance."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis

from billing.config import Settings
from billing.entitlements.reconciler import EntitlementReconciler
from billing.entitlements.store import (
    EntitlementStore,
    InMemoryEntitlementStore,
    RedisEntitlementStore,
)
from billing.events import ChangeBroadcaster, entitlement_notifier
from billing.realtime.channels import ChannelAuthorizer
from billing.security.admission import AdmissionController, create_admission_controller
from billing.webhooks.idempotency import EventLedger, InMemoryEventLedger, RedisEventLedger

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    store: EntitlementStore
    ledger: EventLedger
    admission: AdmissionController
    broadcaster: ChangeBroadcaster
    reconciler: EntitlementReconciler
    authorizer: ChannelAuthorizer


def build_services(
    settings: Settings,
    *,
    store: EntitlementStore | None = None,
    ledger: EventLedger | None = None,
    admission: AdmissionController | None = None,
) -> BillingServices:
    """Wire the billing core from settings; explicit collaborators win."""
    if store is None or ledger is None:
        if settings.redis_url:
            client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.store_timeout_seconds,
                socket_connect_timeout=settings.store_timeout_seconds,
            )
            store = store or RedisEntitlementStore(client)
            ledger = ledger or RedisEventLedger(client, retention_seconds=settings.event_retention_seconds)
            logger.info("Billing core using Redis entitlement store")
        else:
            store = store or InMemoryEntitlementStore(lock_timeout=settings.store_timeout_seconds)
            ledger = ledger or InMemoryEventLedger(retention_seconds=settings.event_retention_seconds)
            logger.info("Billing core using in-process entitlement store")

    broadcaster = ChangeBroadcaster()
    return BillingServices(
        settings=settings,
        store=store,
        ledger=ledger,
        admission=admission or create_admission_controller(settings),
        broadcaster=broadcaster,
        reconciler=EntitlementReconciler(store, ledger, notifier=entitlement_notifier(broadcaster)),
        authorizer=ChannelAuthorizer(store),
    )
