"""
Integration tests for invoice completion and visit consistency.
"""

import logging
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from models.invoice import Invoice
from models.visit import Visit
from services.billing_errors import (
    InvoiceCompletionFailedError,
    InvoiceMissingVisitError,
    InvoiceNotCompletableError,
    InvoiceNotFoundError,
    RollbackIncompleteError,
    VersionConflictError,
)
from services.billing_gateways import SqlVisitGateway
from services.invoice_completion_workflow import InvoiceCompletionWorkflow


def _visit_status(session, visit_id):
    session.expire_all()
    return session.get(Visit, visit_id).status


@pytest.fixture
def failing_visit_gateway():
    gateway = Mock()
    gateway.complete.side_effect = RuntimeError("visit service down")
    return gateway


@pytest.fixture
def mark_paid_without_visit(completion_workflow):
    """Simulate a crash between marking the invoice paid and completing the visit."""
    def mark(invoice):
        return completion_workflow.invoices.update(invoice.id, invoice.version, {"status": "paid", "completed_by": 9})
    return mark


class TestCompleteInvoice:
    """Test complete_invoice()."""

    def test_marks_paid_and_completes_visit(self, db_session, completion_workflow, make_invoice,
                                            audit_gateway, notification_gateway):
        invoice = make_invoice(["100.00"])

        result = completion_workflow.complete_invoice(invoice.id, completed_by=3, expected_version=2)

        assert result.idempotent is False
        assert result.visit_completed is True
        assert result.invoice.status == "paid"
        assert result.invoice.completed_by == 3
        assert result.invoice.completed_at is not None
        assert result.invoice.version == 3
        assert _visit_status(db_session, invoice.visit_id) == "completed"
        assert "INVOICE_COMPLETED" in audit_gateway.actions()
        assert "Visit Completed" in notification_gateway.titles("receptionists")

    def test_unknown_invoice(self, completion_workflow):
        with pytest.raises(InvoiceNotFoundError):
            completion_workflow.complete_invoice(424242, completed_by=1)

    def test_stale_version_on_unpaid_invoice(self, completion_workflow, make_invoice):
        invoice = make_invoice(["100.00"])

        with pytest.raises(VersionConflictError) as exc_info:
            completion_workflow.complete_invoice(invoice.id, completed_by=1, expected_version=1)

        assert exc_info.value.current_version == 2
        unchanged, _ = completion_workflow.invoices.get(invoice.id)
        assert unchanged.status == "pending"

    def test_cancelled_invoice_is_not_completable(self, completion_workflow, invoice_service, make_invoice):
        invoice = make_invoice(["100.00"])
        invoice_service.cancel_invoice(invoice.id, cancelled_by=1)

        with pytest.raises(InvoiceNotCompletableError):
            completion_workflow.complete_invoice(invoice.id, completed_by=1)

    def test_invoice_without_visit(self, db_session, completion_workflow):
        orphan = completion_workflow.invoices.insert(Invoice(visit_id=None, patient_id=1, status="pending"))

        with pytest.raises(InvoiceMissingVisitError) as exc_info:
            completion_workflow.complete_invoice(orphan.id, completed_by=1)

        assert exc_info.value.status_code == 422
        unchanged, version = completion_workflow.invoices.get(orphan.id)
        assert unchanged.status == "pending"
        assert version == 1

    def test_completing_partially_paid_invoice(self, db_session, payment_workflow, completion_workflow, make_invoice):
        invoice = make_invoice(["100.00"])
        paid = payment_workflow.record_partial_payment(
            invoice.id, {"amount": "60.00", "payment_method": "cash"}
        )

        result = completion_workflow.complete_invoice(invoice.id, completed_by=2, expected_version=paid.invoice.version)

        assert result.invoice.status == "paid"
        assert result.invoice.on_hold is False


class TestIdempotentCompletion:
    """Completing a paid invoice again is a no-op."""

    def test_twice_completes_visit_once(self, db_session, make_workflow, make_invoice):
        gateway = Mock(wraps=SqlVisitGateway(db_session))
        workflow = make_workflow(InvoiceCompletionWorkflow, visit_gateway=gateway)
        invoice = make_invoice(["100.00"])

        first = workflow.complete_invoice(invoice.id, completed_by=1, expected_version=2)
        second = workflow.complete_invoice(invoice.id, completed_by=1, expected_version=2)

        assert first.idempotent is False
        assert second.idempotent is True
        assert second.visit_repaired is False
        assert second.invoice.version == first.invoice.version
        assert gateway.complete.call_count == 1

    def test_stale_version_on_paid_invoice_is_idempotent(self, completion_workflow, make_invoice):
        invoice = make_invoice(["100.00"])
        completion_workflow.complete_invoice(invoice.id, completed_by=1)

        result = completion_workflow.complete_invoice(invoice.id, completed_by=1, expected_version=1)

        assert result.idempotent is True


class TestCompletionRollback:
    """A visit failure rolls the invoice back to its previous status."""

    def test_visit_failure_restores_invoice(self, db_session, make_workflow, make_invoice,
                                            failing_visit_gateway, audit_gateway):
        workflow = make_workflow(InvoiceCompletionWorkflow, visit_gateway=failing_visit_gateway)
        invoice = make_invoice(["100.00"])

        with pytest.raises(InvoiceCompletionFailedError) as exc_info:
            workflow.complete_invoice(invoice.id, completed_by=1, expected_version=2)

        assert exc_info.value.code == "INVOICE_COMPLETION_FAILED"
        assert exc_info.value.details["visit_id"] == invoice.visit_id
        restored, version = workflow.invoices.get(invoice.id)
        assert restored.status == "pending"
        assert restored.completed_by is None
        assert restored.completed_at is None
        assert restored.total_amount == Decimal("100.00")
        assert version == 4
        assert _visit_status(db_session, invoice.visit_id) == "in_progress"
        assert "INVOICE_COMPLETION_FAILED" in audit_gateway.actions()

    def test_cancelled_visit_restores_invoice(self, db_session, completion_workflow, make_invoice):
        invoice = make_invoice(["100.00"])
        visit = db_session.get(Visit, invoice.visit_id)
        visit.status = "cancelled"
        db_session.commit()

        with pytest.raises(InvoiceCompletionFailedError):
            completion_workflow.complete_invoice(invoice.id, completed_by=1)

        restored, _ = completion_workflow.invoices.get(invoice.id)
        assert restored.status == "pending"

    def test_failed_restore_is_rollback_incomplete(self, caplog, make_workflow, make_invoice,
                                                   failing_visit_gateway, notification_gateway):
        workflow = make_workflow(InvoiceCompletionWorkflow, visit_gateway=failing_visit_gateway)
        invoice = make_invoice(["100.00"])
        real_update = workflow.invoices.update
        calls = []

        def update_then_fail(*args, **kwargs):
            calls.append(args)
            if len(calls) > 1:
                raise RuntimeError("database went away")
            return real_update(*args, **kwargs)

        with patch.object(workflow.invoices, "update", side_effect=update_then_fail), \
                caplog.at_level(logging.CRITICAL):
            with pytest.raises(RollbackIncompleteError) as exc_info:
                workflow.complete_invoice(invoice.id, completed_by=1)

        error = exc_info.value
        assert error.severity == "fatal"
        assert isinstance(error.original_error, RuntimeError)
        assert len(error.compensation_errors) == 1
        assert error.details["failed_step"] == "complete_visit"
        assert "ROLLBACK_INCOMPLETE" in caplog.text
        assert "Billing rollback incomplete" in notification_gateway.titles("operators")


class TestSelfHealing:
    """A paid invoice next to an open visit is repaired when it is looked at."""

    def test_completion_repairs_open_visit(self, db_session, completion_workflow, make_invoice,
                                           mark_paid_without_visit, audit_gateway):
        invoice = make_invoice(["100.00"])
        mark_paid_without_visit(invoice)
        assert _visit_status(db_session, invoice.visit_id) == "in_progress"

        result = completion_workflow.complete_invoice(invoice.id, completed_by=1)

        assert result.idempotent is True
        assert result.visit_repaired is True
        assert _visit_status(db_session, invoice.visit_id) == "completed"
        assert "VISIT_STATUS_REPAIRED" in audit_gateway.actions()

    def test_read_repairs_open_visit(self, db_session, invoice_service, make_invoice, mark_paid_without_visit):
        invoice = make_invoice(["100.00"])
        mark_paid_without_visit(invoice)

        read = invoice_service.get_invoice(invoice.id)

        assert read.status == "paid"
        assert _visit_status(db_session, invoice.visit_id) == "completed"

    def test_repair_failure_is_not_raised(self, make_workflow, make_invoice, mark_paid_without_visit,
                                          failing_visit_gateway, notification_gateway):
        failing_visit_gateway.get_status.return_value = "in_progress"
        workflow = make_workflow(InvoiceCompletionWorkflow, visit_gateway=failing_visit_gateway)
        invoice = make_invoice(["100.00"])
        paid = mark_paid_without_visit(invoice)

        assert workflow.repair_visit_status(paid) is False
        assert "Visit completion failed" in notification_gateway.titles("operators")

    def test_reconcile_paid_invoices(self, db_session, completion_workflow, make_invoice, mark_paid_without_visit):
        broken = [make_invoice(["10.00"]) for _ in range(2)]
        for invoice in broken:
            mark_paid_without_visit(invoice)
        healthy = make_invoice(["20.00"])
        completion_workflow.complete_invoice(healthy.id, completed_by=1)

        assert completion_workflow.reconcile_paid_invoices() == 2
        assert all(_visit_status(db_session, i.visit_id) == "completed" for i in broken)
        assert completion_workflow.reconcile_paid_invoices() == 0

    def test_reconcile_skips_healthy_invoices_before_limit(self, db_session, completion_workflow, make_invoice,
                                                           mark_paid_without_visit):
        healthy = make_invoice(["20.00"])
        completion_workflow.complete_invoice(healthy.id, completed_by=1)
        broken = make_invoice(["10.00"])
        mark_paid_without_visit(broken)

        assert completion_workflow.reconcile_paid_invoices(limit=1) == 1
        assert _visit_status(db_session, broken.visit_id) == "completed"
