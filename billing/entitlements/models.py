"""Entitlement data model.

EntitlementState is immutable; every transition produces a new record via
``dataclasses.replace`` so a read never observes a half-applied event.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    """Provider lifecycle events that move entitlement state."""

    ORDER_PAID = "order.paid"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_UNCANCELED = "subscription.uncanceled"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"


@dataclass(frozen=True)
class EntitlementState:
    """Per-account entitlement record. Default is inactive."""

    active: bool = False
    plan_id: str | None = None
    subscription_id: str | None = None
    cancel_at_period_end: bool = False
    last_event_sequence: int | None = None
    last_event_id: str | None = None
    updated_at: datetime | None = None

    def supersedes(self, sequence: int) -> bool:
        """True if an event with *sequence* is stale against this record."""
        return self.last_event_sequence is not None and sequence <= self.last_event_sequence

    def to_dict(self) -> dict:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict) -> EntitlementState:
        updated_at = data.get("updated_at")
        return cls(
            active=bool(data.get("active", False)),
            plan_id=data.get("plan_id"),
            subscription_id=data.get("subscription_id"),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            last_event_sequence=data.get("last_event_sequence"),
            last_event_id=data.get("last_event_id"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )

    @classmethod
    def from_json(cls, raw: str) -> EntitlementState:
        return cls.from_dict(json.loads(raw))


class ReconcileOutcome(str, Enum):
    """How the reconciler disposed of a verified event.

    Every outcome is acknowledged to the provider with 200.
    """

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_ACCOUNT = "unknown_account"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    event_id: str
    event_type: str
    account_id: str | None = None
    state: EntitlementState | None = None

    @property
    def changed(self) -> bool:
        return self.outcome is ReconcileOutcome.APPLIED
