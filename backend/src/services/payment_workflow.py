"""
Payment recording and payment reports.

A payment touches two tables (the invoice row and a new payment transaction)
and may drive a third (the visit). The invoice write comes first and is a
compare-and-swap on the version that was read, which is what prevents two
cashiers from charging against the same invoice state: only one of them can
claim a given version, and the payment row is only inserted by the claimant.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from core.constants import (
    AUDIENCE_CASHIERS,
    DEFAULT_PARTIAL_PAYMENT_HOLD_REASON,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIAL_PAID,
    PAYABLE_INVOICE_STATUSES,
    PAYMENT_METHODS,
)
from models.invoice import Invoice
from models.payment_transaction import PaymentTransaction
from services.billing_errors import (
    InvalidBillingInputError,
    InvalidPaymentError,
    InvoiceNotPayableError,
    PartialPaymentLimitExceededError,
    PaymentExceedsBalanceError,
    PaymentNotFoundError,
    VersionConflictError,
)
from services.billing_gateways import notify_best_effort
from services.billing_workflow_base import BillingWorkflowBase, snapshot
from services.compensating_transaction import SagaOutcome, SagaStep, run_saga
from services.idempotency_guard import guard_stale_version
from services.invoice_totals_calculator import (
    ZERO,
    count_partial_payments,
    to_money,
)
from utils.datetime_utils import CLINIC_TZ, clinic_now
from utils.retry import retry_on_transient_failure

logger = logging.getLogger(__name__)

_TERMINAL = frozenset({INVOICE_STATUS_PAID})
_RESTORED_FIELDS = [
    "status", "paid_amount", "balance",
    "on_hold", "hold_reason", "hold_date", "payment_due_date",
    "completed_by", "completed_at",
]

STEP_CLAIM_INVOICE = "apply_payment_to_invoice"
STEP_INSERT_PAYMENT = "insert_payment_transaction"


@dataclass
class PaymentResult:
    invoice: Invoice
    transaction: Optional[PaymentTransaction] = None
    """None for idempotent retries (nothing was charged)."""
    idempotent: bool = False
    visit_completed: bool = False


class PaymentWorkflow(BillingWorkflowBase):
    """Records payments against invoices."""

    @staticmethod
    def _validate_payment_data(payment_data: Dict[str, Any]) -> Tuple[Decimal, str]:
        try:
            amount = to_money(payment_data.get("amount"))
        except ValueError as e:
            raise InvalidPaymentError(str(e))
        if amount <= ZERO:
            raise InvalidPaymentError("Payment amount must be greater than 0", {"amount": str(amount)})

        method = payment_data.get("payment_method")
        if method not in PAYMENT_METHODS:
            raise InvalidPaymentError(
                f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}",
                {"payment_method": method},
            )
        return amount, method

    def record_partial_payment(
        self,
        invoice_id: int,
        payment_data: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> PaymentResult:
        """
        Record a (possibly partial) payment against an invoice.

        Args:
            invoice_id: Invoice being paid
            payment_data: amount, payment_method, and optionally payment_reference,
                notes, processed_by, received_by, hold_reason, payment_due_date
            expected_version: Invoice version the caller last read

        Returns:
            PaymentResult. idempotent=True (and transaction=None) when a stale
            request hits an invoice that is already paid.

        Raises:
            InvalidPaymentError: amount <= 0 or unknown payment method
            InvoiceNotFoundError: unknown invoice
            VersionConflictError: stale expected_version on an unpaid invoice
            InvoiceNotPayableError: invoice is paid or cancelled
            PaymentExceedsBalanceError: amount is larger than the balance
            PartialPaymentLimitExceededError: installment cap reached and the
                amount does not clear the balance
            RollbackIncompleteError: payment insert failed and the invoice
                could not be restored
        """
        amount, method = self._validate_payment_data(payment_data)

        invoice, version = self.invoices.get(invoice_id)

        # Terminal state first, version second
        if guard_stale_version(
            entity="Invoice",
            record_id=invoice_id,
            status=invoice.status,
            current_version=version,
            expected_version=expected_version,
            terminal_statuses=_TERMINAL,
        ):
            return PaymentResult(invoice=invoice, idempotent=True)

        if invoice.status not in PAYABLE_INVOICE_STATUSES:
            raise InvoiceNotPayableError(
                f"Invoice {invoice_id} cannot accept payments in status '{invoice.status}'",
                {"status": invoice.status},
            )

        # Charge against the totals stored at the version we read. The items table
        # can hold a line whose recalculation has not committed yet.
        payments = self._load_payments(invoice_id)
        total_amount = to_money(invoice.total_amount)
        paid_amount = sum((to_money(p.amount) for p in payments), ZERO)
        balance = total_amount - paid_amount

        if amount > balance:
            raise PaymentExceedsBalanceError(
                f"Payment amount ({amount}) exceeds balance due ({balance})",
                {"amount": str(amount), "balance": str(balance)},
            )

        clears_balance = amount >= balance
        prior_partials = count_partial_payments(payments, total_amount)
        if prior_partials >= self.policy.max_partial_payments and not clears_balance:
            raise PartialPaymentLimitExceededError(
                f"Invoice {invoice_id} already has {prior_partials} partial payments; "
                f"the next payment must clear the balance of {balance}",
                {
                    "partial_payments": prior_partials,
                    "limit": self.policy.max_partial_payments,
                    "balance": str(balance),
                },
            )

        new_balance = balance - amount
        actor = payment_data.get("processed_by") or payment_data.get("received_by")
        fully_paid = new_balance <= ZERO
        now = clinic_now()

        patch: Dict[str, Any] = {"paid_amount": paid_amount + amount, "balance": new_balance}
        if fully_paid:
            patch.update({
                "status": INVOICE_STATUS_PAID,
                "on_hold": False,
                "completed_at": now,
                "completed_by": actor,
            })
        else:
            patch.update({
                "status": INVOICE_STATUS_PARTIAL_PAID,
                "on_hold": True,
                "hold_reason": payment_data.get("hold_reason") or DEFAULT_PARTIAL_PAYMENT_HOLD_REASON,
                "hold_date": now,
                "payment_due_date": payment_data.get("payment_due_date"),
            })

        prior = snapshot(invoice, _RESTORED_FIELDS)
        claimed: Dict[str, int] = {}

        def apply_to_invoice() -> Invoice:
            updated = self.invoices.update(invoice_id, version, patch)
            claimed["version"] = updated.version
            return updated

        def restore_invoice() -> None:
            self.invoices.update(invoice_id, claimed["version"], prior)
            logger.info(f"Invoice {invoice_id} restored after failed payment insert")

        def insert_payment() -> PaymentTransaction:
            return self._insert_payment(PaymentTransaction(
                invoice_id=invoice_id,
                amount=amount,
                payment_method=method,
                payment_reference=payment_data.get("payment_reference"),
                payment_notes=payment_data.get("notes") or payment_data.get("payment_notes"),
                received_by=payment_data.get("received_by") or actor,
                processed_by=actor,
                invoice_version=claimed["version"],
                payment_date=now,
            ))

        saga = run_saga(
            [
                SagaStep(STEP_CLAIM_INVOICE, apply_to_invoice, restore_invoice),
                SagaStep(STEP_INSERT_PAYMENT, insert_payment),
            ],
            name=f"record_payment:{invoice_id}",
        )

        if saga.outcome is SagaOutcome.ROLLBACK_INCOMPLETE:
            raise self._escalate_rollback_incomplete(saga, invoice_id, "record_partial_payment")
        if saga.outcome is SagaOutcome.ROLLED_BACK:
            if saga.failed_step == STEP_CLAIM_INVOICE and isinstance(saga.error, VersionConflictError):
                return self._recheck_after_conflict(invoice_id, expected_version if expected_version is not None else version)
            logger.error(f"Recording payment on invoice {invoice_id} failed at {saga.failed_step}: {saga.error}")
            raise saga.error  # type: ignore[misc]

        updated_invoice, transaction = saga.results
        logger.info(
            f"Payment recorded: {amount} ({method}) for invoice {invoice_id}, "
            f"new balance: {updated_invoice.balance}, status: {updated_invoice.status}"
        )
        self._audit(
            "PAYMENT_RECORDED", invoice_id, actor,
            payment_id=transaction.id, amount=str(amount), payment_method=method,
            status=updated_invoice.status, balance=str(updated_invoice.balance),
            version=updated_invoice.version,
        )

        if fully_paid:
            notify_best_effort(self.notification_gateway, AUDIENCE_CASHIERS, {
                "title": "Payment Completed",
                "message": f"Invoice {updated_invoice.invoice_number} has been fully paid.",
                "type": "payment_completed",
                "related_entity_type": "invoice",
                "related_entity_id": invoice_id,
            })

        visit_completed = False
        if fully_paid or self.policy.complete_visit_on_payment:
            visit_completed = self._complete_visit_best_effort(updated_invoice, actor, source="payment")

        return PaymentResult(invoice=updated_invoice, transaction=transaction, visit_completed=visit_completed)

    def _recheck_after_conflict(self, invoice_id: int, expected_version: int) -> PaymentResult:
        # Another writer claimed the version between our read and our write
        invoice, version = self.invoices.get(invoice_id)
        if guard_stale_version(
            entity="Invoice",
            record_id=invoice_id,
            status=invoice.status,
            current_version=version,
            expected_version=expected_version,
            terminal_statuses=_TERMINAL,
        ):
            return PaymentResult(invoice=invoice, idempotent=True)
        raise VersionConflictError("Invoice", invoice_id, version, expected_version)

    @retry_on_transient_failure()
    def _insert_payment(self, payment: PaymentTransaction) -> PaymentTransaction:
        try:
            self.db.add(payment)
            self.db.commit()
            self.db.refresh(payment)
        except DBAPIError:
            self.db.rollback()
            raise
        return payment

    def get_payment_history(self, invoice_id: int) -> List[PaymentTransaction]:
        """Payments for an invoice, newest first."""
        self.invoices.get(invoice_id)
        return sorted(
            self._load_payments(invoice_id),
            key=lambda p: (p.payment_date, p.id),
            reverse=True,
        )

    def get_payment(self, payment_id: int) -> PaymentTransaction:
        """
        Look up a single payment transaction.

        Raises:
            PaymentNotFoundError: unknown payment
        """
        payment = self.db.get(PaymentTransaction, payment_id, populate_existing=True)
        if payment is None:
            raise PaymentNotFoundError("Payment", payment_id)
        return payment

    def get_payment_report(self, start_date: date, end_date: date) -> Dict[str, Any]:
        """
        Payments received in a date range, with totals per payment method.

        Args:
            start_date: First clinic-local day of the range
            end_date: Last clinic-local day of the range (inclusive)

        Returns:
            Dictionary with the date range, the payments (newest first) and a
            summary of count, total amount and a per-method breakdown

        Raises:
            InvalidBillingInputError: start_date is after end_date
        """
        if start_date > end_date:
            raise InvalidBillingInputError(
                f"start_date ({start_date}) must not be after end_date ({end_date})",
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        range_start = datetime.combine(start_date, time.min, tzinfo=CLINIC_TZ)
        range_end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=CLINIC_TZ)

        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.payment_date >= range_start, PaymentTransaction.payment_date < range_end)
            .order_by(PaymentTransaction.payment_date.desc(), PaymentTransaction.id.desc())
        )
        payments = list(self.db.execute(stmt).scalars().all())

        total_amount = ZERO
        by_method: Dict[str, Dict[str, Any]] = {}
        for payment in payments:
            amount = to_money(payment.amount)
            total_amount += amount
            method_stats = by_method.setdefault(payment.payment_method, {"count": 0, "amount": ZERO})
            method_stats["count"] += 1
            method_stats["amount"] += amount

        return {
            "date_range": {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
            "payments": payments,
            "summary": {
                "total_payments": len(payments),
                "total_amount": total_amount,
                "by_method": by_method,
            },
        }
