"""
Shared plumbing for the billing workflows.

Holds the injected collaborators and the behaviour both workflows need:
loading invoice children, best-effort visit completion, the self-healing
visit repair, and escalation of incomplete rollbacks.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.constants import (
    INVOICE_STATUS_PAID,
    VISIT_STATUS_COMPLETED,
    AUDIENCE_OPERATORS,
)
from models.invoice import Invoice
from models.invoice_item import InvoiceItem
from models.payment_transaction import PaymentTransaction
from services.billing_errors import InvoiceNotFoundError, RollbackIncompleteError
from services.billing_gateways import (
    AuditEvent,
    AuditGateway,
    NotificationGateway,
    VisitGateway,
    audit_best_effort,
    notify_best_effort,
)
from services.billing_policy import BillingPolicy, DEFAULT_POLICY
from services.compensating_transaction import SagaResult
from services.versioned_record_store import VersionedRecordStore

logger = logging.getLogger(__name__)


class BillingWorkflowBase:
    """
    Base class for workflows operating on one invoice.

    Args:
        db: Database session
        visit_gateway: Reads and completes visits
        notification_gateway: Best-effort staff notifications
        audit_gateway: Best-effort audit trail
        policy: Billing business rules
        invoice_store: Versioned invoice store (built from db when omitted)
    """

    def __init__(
        self,
        db: Session,
        visit_gateway: VisitGateway,
        notification_gateway: NotificationGateway,
        audit_gateway: AuditGateway,
        policy: BillingPolicy = DEFAULT_POLICY,
        invoice_store: Optional[VersionedRecordStore[Invoice]] = None,
    ):
        self.db = db
        self.visit_gateway = visit_gateway
        self.notification_gateway = notification_gateway
        self.audit_gateway = audit_gateway
        self.policy = policy
        self.invoices = invoice_store or VersionedRecordStore(
            db, Invoice, not_found_error=InvoiceNotFoundError, entity_name="Invoice"
        )

    def _load_items(self, invoice_id: int) -> List[InvoiceItem]:
        stmt = (
            select(InvoiceItem)
            .where(InvoiceItem.invoice_id == invoice_id)
            .order_by(InvoiceItem.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def _load_payments(self, invoice_id: int) -> List[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.invoice_id == invoice_id)
            .order_by(PaymentTransaction.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def _audit(self, action: str, invoice_id: int, actor_id: Optional[int], **details: Any) -> None:
        audit_best_effort(
            self.audit_gateway,
            AuditEvent(action=action, entity_type="invoice", entity_id=invoice_id, actor_id=actor_id, details=details),
        )

    def _complete_visit_best_effort(self, invoice: Invoice, actor_id: Optional[int], source: str) -> bool:
        """
        Drive the invoice's visit to completed without failing the caller.

        A failure leaves a paid invoice next to an open visit, which blocks the
        patient from starting a new visit; it is logged, audited and sent to
        operators, and repaired by repair_visit_status() on the next read.

        Returns:
            True if this call changed the visit to completed
        """
        if invoice.visit_id is None:
            logger.warning(f"Invoice {invoice.id} has no visit; skipping visit completion")
            return False
        try:
            result = self.visit_gateway.complete(
                invoice.visit_id,
                {"completed_by": actor_id, "invoice_id": invoice.id, "source": source},
            )
            return result.changed
        except Exception as e:
            logger.error(
                f"Failed to complete visit {invoice.visit_id} for invoice {invoice.id} "
                f"(status '{invoice.status}'): {e}"
            )
            self._audit("VISIT_COMPLETION_FAILED", invoice.id, actor_id, visit_id=invoice.visit_id, error=str(e), source=source)
            notify_best_effort(self.notification_gateway, AUDIENCE_OPERATORS, {
                "title": "Visit completion failed",
                "message": (
                    f"Invoice {invoice.invoice_number} is '{invoice.status}' but visit {invoice.visit_id} "
                    f"could not be completed: {e}"
                ),
                "type": "error",
                "related_entity_type": "invoice",
                "related_entity_id": invoice.id,
            })
            return False

    def repair_visit_status(self, invoice: Invoice) -> bool:
        """
        Self-healing check: a paid invoice must have a completed visit.

        Closes the window left when a process dies between marking an invoice
        paid and completing its visit. Safe to call on every read.

        Returns:
            True if the visit was repaired
        """
        if invoice.status != INVOICE_STATUS_PAID or invoice.visit_id is None:
            return False
        try:
            visit_status = self.visit_gateway.get_status(invoice.visit_id)
        except Exception as e:
            logger.error(f"Could not read visit {invoice.visit_id} for paid invoice {invoice.id}: {e}")
            return False
        if visit_status == VISIT_STATUS_COMPLETED:
            return False

        logger.warning(
            f"Invoice {invoice.id} is paid but visit {invoice.visit_id} is '{visit_status}'; repairing"
        )
        repaired = self._complete_visit_best_effort(invoice, invoice.completed_by, source="self_heal")
        if repaired:
            self._audit("VISIT_STATUS_REPAIRED", invoice.id, invoice.completed_by,
                        visit_id=invoice.visit_id, previous_status=visit_status)
        return repaired

    def _escalate_rollback_incomplete(self, saga: SagaResult, invoice_id: int, operation: str) -> RollbackIncompleteError:
        """
        Build the fatal error for a saga whose compensations failed, after
        raising it to operators. The caller raises the returned error.
        """
        error = RollbackIncompleteError(
            f"{operation} for invoice {invoice_id} failed at '{saga.failed_step}' and could not be rolled back",
            original_error=saga.error,
            compensation_errors=saga.compensation_errors,
            details={"invoice_id": invoice_id, "operation": operation, "failed_step": saga.failed_step},
        )
        logger.critical(
            f"ROLLBACK_INCOMPLETE: {operation} on invoice {invoice_id} left inconsistent state; "
            f"original error: {saga.error!r}; compensation errors: {saga.compensation_errors!r}"
        )
        self._audit("ROLLBACK_INCOMPLETE", invoice_id, None, operation=operation,
                    failed_step=saga.failed_step, error=repr(saga.error))
        notify_best_effort(self.notification_gateway, AUDIENCE_OPERATORS, {
            "title": "Billing rollback incomplete",
            "message": (
                f"{operation} on invoice {invoice_id} failed at '{saga.failed_step}' and its "
                f"compensation failed. Manual reconciliation required."
            ),
            "type": "critical",
            "related_entity_type": "invoice",
            "related_entity_id": invoice_id,
        })
        return error


def snapshot(invoice: Invoice, fields: List[str]) -> Dict[str, Any]:
    """Copy the given invoice columns so a compensation can restore them."""
    return {name: getattr(invoice, name) for name in fields}
