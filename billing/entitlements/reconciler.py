"""Entitlement reconciler: verified provider events -> entitlement transitions.

Idempotency is enforced twice:
1. The event ledger short-circuits deliveries whose id was already processed.
2. Inside the per-account atomic unit, an event whose sequence is not newer
   than the last applied one is treated as stale and leaves state untouched.

The second check is authoritative: it also covers racing duplicates and
out-of-order arrival (a "canceled" that occurred before an "active" can never
undo it, whatever order they arrive in).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from billing.entitlements.models import (
    EntitlementState,
    EventType,
    ReconcileOutcome,
    ReconcileResult,
)
from billing.entitlements.store import EntitlementStore
from billing.webhooks.idempotency import EventLedger
from billing.webhooks.verification import VerifiedEvent

logger = logging.getLogger(__name__)

Transition = Callable[[EntitlementState, VerifiedEvent], EntitlementState]
ChangeNotifier = Callable[[str, EntitlementState], None]


def _order_paid(state: EntitlementState, event: VerifiedEvent) -> EntitlementState:
    return replace(state, active=True, plan_id=event.product_id or state.plan_id)


def _subscription_active(state: EntitlementState, event: VerifiedEvent) -> EntitlementState:
    return replace(
        state,
        active=True,
        subscription_id=event.subscription_id or state.subscription_id,
        plan_id=event.product_id or state.plan_id,
        cancel_at_period_end=bool(event.cancel_at_period_end),
    )


def _subscription_uncanceled(state: EntitlementState, event: VerifiedEvent) -> EntitlementState:
    return replace(
        state,
        active=True,
        subscription_id=event.subscription_id or state.subscription_id,
        cancel_at_period_end=False,
    )


def _subscription_canceled(state: EntitlementState, event: VerifiedEvent) -> EntitlementState:
    cancel_flag = state.cancel_at_period_end
    if event.cancel_at_period_end is not None:
        cancel_flag = event.cancel_at_period_end
    return replace(state, active=False, cancel_at_period_end=cancel_flag)


def _subscription_revoked(state: EntitlementState, event: VerifiedEvent) -> EntitlementState:
    return replace(state, active=False, cancel_at_period_end=False)


TRANSITIONS: dict[str, Transition] = {
    EventType.ORDER_PAID.value: _order_paid,
    EventType.SUBSCRIPTION_ACTIVE.value: _subscription_active,
    EventType.SUBSCRIPTION_UNCANCELED.value: _subscription_uncanceled,
    EventType.SUBSCRIPTION_CANCELED.value: _subscription_canceled,
    EventType.SUBSCRIPTION_REVOKED.value: _subscription_revoked,
}


class EntitlementReconciler:
    """Applies verified events to the entitlement store exactly-once in effect."""

    def __init__(
        self,
        store: EntitlementStore,
        ledger: EventLedger,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._notifier = notifier

    def apply(self, event: VerifiedEvent) -> ReconcileResult:
        """Apply *event*; raises PersistenceFailure if the atomic write fails."""
        transition = TRANSITIONS.get(event.event_type)
        if transition is None:
            logger.info("Unhandled event type: %s (id=%s)", event.event_type, event.event_id)
            self._ledger.mark(event.event_id)
            return self._result(ReconcileOutcome.IGNORED, event)

        if self._ledger.seen(event.event_id):
            logger.info("Duplicate event acknowledged: %s", event.event_id)
            return self._result(ReconcileOutcome.DUPLICATE, event)

        account_id = self._store.account_for_customer(event.customer_id) if event.customer_id else None
        if account_id is None:
            # Some provider events precede account linkage
            logger.info(
                "No account linked to customer %s, acknowledging %s",
                event.customer_id,
                event.event_id,
            )
            self._ledger.mark(event.event_id)
            return self._result(ReconcileOutcome.UNKNOWN_ACCOUNT, event)

        outcome = ReconcileOutcome.STALE

        def _step(current: EntitlementState) -> EntitlementState:
            nonlocal outcome
            if current.supersedes(event.sequence):
                outcome = ReconcileOutcome.STALE
                return current
            outcome = ReconcileOutcome.APPLIED
            updated = transition(current, event)
            return replace(
                updated,
                last_event_sequence=event.sequence,
                last_event_id=event.event_id,
                updated_at=datetime.now(timezone.utc),
            )

        state = self._store.read_modify_write(account_id, _step)
        self._ledger.mark(event.event_id)

        if outcome is ReconcileOutcome.APPLIED:
            logger.info(
                "Entitlement %s for account %s via %s (active=%s)",
                outcome.value,
                account_id,
                event.event_type,
                state.active,
            )
            self._notify(account_id, state)
        else:
            logger.info(
                "Stale event %s for account %s ignored (sequence %d <= %s)",
                event.event_id,
                account_id,
                event.sequence,
                state.last_event_sequence,
            )
        return self._result(outcome, event, account_id, state)

    def _notify(self, account_id: str, state: EntitlementState) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(account_id, state)
        except Exception:
            logger.warning("Entitlement change notification failed for %s", account_id, exc_info=True)

    @staticmethod
    def _result(
        outcome: ReconcileOutcome,
        event: VerifiedEvent,
        account_id: str | None = None,
        state: EntitlementState | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            outcome=outcome,
            event_id=event.event_id,
            event_type=event.event_type,
            account_id=account_id,
            state=state,
        )
