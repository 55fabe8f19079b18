"""Exception hierarchy for the billing core.

Only failures that must cross a component boundary are exceptions.
Signature verification failures are returned as values
(``billing.webhooks.verification.VerificationError``) and channel denials
are grants with ``allowed=False``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from billing.security.admission import AdmissionDecision


class BillingError(Exception):
    """Base class for all billing core errors."""


class PersistenceFailure(BillingError):
    """Entitlement store read or write failed or timed out.

    Retryable: the webhook boundary answers 500 so the provider redelivers.
    """


class CustomerAlreadyLinked(BillingError):
    """A provider customer id is already bound to a different account."""

    def __init__(self, customer_id: str, account_id: str) -> None:
        super().__init__(f"customer {customer_id} is already linked to another account")
        self.customer_id = customer_id
        self.account_id = account_id


class AdmissionDenied(BillingError):
    """Request rejected by the admission controller."""

    def __init__(self, decision: AdmissionDecision) -> None:
        super().__init__("rate limit exceeded")
        self.decision = decision
