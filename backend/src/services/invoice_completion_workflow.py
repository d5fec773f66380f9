"""
Invoice completion: mark an invoice paid and complete its visit.

The two writes live in different tables with no shared transaction, so they
run as a two-step saga:

1. mark the invoice paid (compensation: restore the previous status and
   completion metadata)
2. complete the visit (no compensation; its failure undoes step 1)

The invoice is written first. If the process dies between the two steps the
invoice is paid while the visit is still open; repair_visit_status() closes
that gap the next time the invoice is read or completed.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from core.constants import (
    COMPLETABLE_INVOICE_STATUSES,
    INVOICE_STATUS_PAID,
    VISIT_STATUS_CANCELLED,
    VISIT_STATUS_COMPLETED,
    AUDIENCE_RECEPTIONISTS,
)
from models.invoice import Invoice
from models.visit import Visit
from services.billing_errors import (
    InvoiceCompletionFailedError,
    InvoiceMissingVisitError,
    InvoiceNotCompletableError,
    VersionConflictError,
)
from services.billing_gateways import notify_best_effort
from services.billing_workflow_base import BillingWorkflowBase, snapshot
from services.compensating_transaction import SagaOutcome, SagaStep, run_saga
from services.idempotency_guard import guard_stale_version, is_terminal
from utils.datetime_utils import clinic_now

logger = logging.getLogger(__name__)

_TERMINAL = frozenset({INVOICE_STATUS_PAID})
_RESTORED_FIELDS = ["status", "completed_by", "completed_at", "on_hold"]

STEP_MARK_PAID = "mark_invoice_paid"
STEP_COMPLETE_VISIT = "complete_visit"


@dataclass
class CompletionResult:
    invoice: Invoice
    idempotent: bool = False
    """True when the invoice was already paid and nothing was changed."""
    visit_completed: bool = False
    """True when this call moved the visit to completed."""
    visit_repaired: bool = False
    """True when an already-paid invoice's open visit was repaired."""


class InvoiceCompletionWorkflow(BillingWorkflowBase):
    """Completes invoices and keeps their visits consistent."""

    def complete_invoice(
        self,
        invoice_id: int,
        completed_by: Optional[int],
        expected_version: Optional[int] = None,
    ) -> CompletionResult:
        """
        Mark an invoice paid and drive its visit to completed.

        Args:
            invoice_id: Invoice to complete
            completed_by: User completing the invoice
            expected_version: Invoice version the caller last read

        Returns:
            CompletionResult; idempotent=True if the invoice was already paid

        Raises:
            InvoiceNotFoundError: unknown invoice
            VersionConflictError: stale expected_version on an unpaid invoice
            InvoiceMissingVisitError: invoice has no visit linked
            InvoiceNotCompletableError: invoice is cancelled or on hold
            InvoiceCompletionFailedError: visit completion failed; invoice rolled back
            RollbackIncompleteError: rollback failed; state is inconsistent
        """
        invoice, version = self.invoices.get(invoice_id)

        # Terminal state first, version second
        if is_terminal(invoice.status, _TERMINAL):
            return self._already_paid(invoice)
        guard_stale_version(
            entity="Invoice",
            record_id=invoice_id,
            status=invoice.status,
            current_version=version,
            expected_version=expected_version,
            terminal_statuses=_TERMINAL,
        )

        if invoice.visit_id is None:
            logger.error(f"Invoice {invoice_id} has no visit linked and cannot be completed")
            raise InvoiceMissingVisitError(
                f"Invoice {invoice_id} is not linked to a visit",
                {"invoice_id": invoice_id},
            )
        if invoice.status not in COMPLETABLE_INVOICE_STATUSES:
            raise InvoiceNotCompletableError(
                f"Invoice {invoice_id} cannot be completed from status '{invoice.status}'",
                {"status": invoice.status},
            )

        visit_id = invoice.visit_id
        prior = snapshot(invoice, _RESTORED_FIELDS)
        claimed = {}

        def mark_paid() -> Invoice:
            updated = self.invoices.update(invoice_id, version, {
                "status": INVOICE_STATUS_PAID,
                "completed_by": completed_by,
                "completed_at": clinic_now(),
                "on_hold": False,
            })
            claimed["version"] = updated.version
            return updated

        def restore_prior_status() -> None:
            self.invoices.update(invoice_id, claimed["version"], prior)
            logger.info(f"Invoice {invoice_id} restored to '{prior['status']}' after failed completion")

        def complete_visit():
            return self.visit_gateway.complete(visit_id, {
                "completed_by": completed_by,
                "invoice_id": invoice_id,
                "source": "invoice_completion",
            })

        saga = run_saga(
            [
                SagaStep(STEP_MARK_PAID, mark_paid, restore_prior_status),
                SagaStep(STEP_COMPLETE_VISIT, complete_visit),
            ],
            name=f"complete_invoice:{invoice_id}",
        )

        if saga.outcome is SagaOutcome.ROLLBACK_INCOMPLETE:
            raise self._escalate_rollback_incomplete(saga, invoice_id, "complete_invoice")

        if saga.outcome is SagaOutcome.ROLLED_BACK:
            if saga.failed_step == STEP_MARK_PAID:
                if isinstance(saga.error, VersionConflictError):
                    # Lost the race; the winner may have completed it already
                    return self._recheck_after_conflict(invoice_id, expected_version if expected_version is not None else version)
                raise saga.error  # type: ignore[misc]
            logger.error(f"Completing visit {visit_id} failed; invoice {invoice_id} rolled back: {saga.error}")
            self._audit("INVOICE_COMPLETION_FAILED", invoice_id, completed_by, visit_id=visit_id, error=str(saga.error))
            raise InvoiceCompletionFailedError(
                f"Failed to complete invoice {invoice_id}: visit {visit_id} could not be completed",
                {"invoice_id": invoice_id, "visit_id": visit_id, "reason": str(saga.error)},
            ) from saga.error

        completed_invoice, visit_result = saga.results
        logger.info(f"Invoice {invoice_id} completed by {completed_by}; visit {visit_id} completed")
        self._audit("INVOICE_COMPLETED", invoice_id, completed_by,
                    visit_id=visit_id, previous_status=prior["status"], version=completed_invoice.version)
        notify_best_effort(self.notification_gateway, AUDIENCE_RECEPTIONISTS, {
            "title": "Visit Completed",
            "message": f"Visit {visit_id} has been completed. Invoice {completed_invoice.invoice_number} has been paid.",
            "type": "success",
            "related_entity_type": "visit",
            "related_entity_id": visit_id,
        })
        return CompletionResult(invoice=completed_invoice, visit_completed=visit_result.changed)

    def _already_paid(self, invoice: Invoice) -> CompletionResult:
        repaired = self.repair_visit_status(invoice)
        logger.info(f"Invoice {invoice.id} already paid; completion is a no-op (visit repaired: {repaired})")
        return CompletionResult(invoice=invoice, idempotent=True, visit_repaired=repaired)

    def _recheck_after_conflict(self, invoice_id: int, expected_version: int) -> CompletionResult:
        invoice, version = self.invoices.get(invoice_id)
        if is_terminal(invoice.status, _TERMINAL):
            return self._already_paid(invoice)
        raise VersionConflictError("Invoice", invoice_id, version, expected_version)

    def reconcile_paid_invoices(self, limit: int = 500) -> int:
        """
        Repair paid invoices whose visit is still open (not completed or cancelled).

        Intended for a periodic maintenance job; the per-read repair covers
        invoices that are looked at, this covers the ones that are not.

        Returns:
            Number of visits repaired
        """
        stmt = (
            select(Invoice)
            .join(Visit, Visit.id == Invoice.visit_id)
            .where(
                Invoice.status == INVOICE_STATUS_PAID,
                Visit.status.notin_([VISIT_STATUS_COMPLETED, VISIT_STATUS_CANCELLED]),
            )
            .order_by(Invoice.id)
            .limit(limit)
        )
        repaired = 0
        for invoice in self.db.execute(stmt).scalars().all():
            if self.repair_visit_status(invoice):
                repaired += 1
        if repaired:
            logger.warning(f"Reconciliation repaired {repaired} visit(s) attached to paid invoices")
        return repaired
