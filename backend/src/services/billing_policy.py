"""Configurable billing business rules."""

from dataclasses import dataclass

from core.config import (
    BILLING_MAX_PARTIAL_PAYMENTS,
    BILLING_MAX_OUTSTANDING_INVOICES,
    BILLING_COMPLETE_VISIT_ON_PAYMENT,
)


@dataclass(frozen=True)
class BillingPolicy:
    max_partial_payments: int = BILLING_MAX_PARTIAL_PAYMENTS
    """Prior payments below the invoice total allowed before the next payment must clear the balance."""

    max_outstanding_invoices: int = BILLING_MAX_OUTSTANDING_INVOICES
    """Unpaid invoices a patient may carry before a new one is refused."""

    complete_visit_on_payment: bool = BILLING_COMPLETE_VISIT_ON_PAYMENT
    """Drive the visit to completed on any payment, not only when the invoice is fully paid."""


DEFAULT_POLICY = BillingPolicy()
