"""
Unit tests for database models.
"""

import pytest
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from models.invoice import Invoice
from models.invoice_item import InvoiceItem
from models.payment_transaction import PaymentTransaction
from models.visit import Visit


class TestInvoiceModel:
    """Test cases for Invoice model."""

    def test_invoice_number(self):
        assert Invoice(id=42).invoice_number == "INV-000042"

    def test_defaults_and_timestamps(self, db_session):
        invoice = Invoice(patient_id=1)
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)

        assert invoice.status == "pending"
        assert invoice.version == 1
        assert invoice.balance == Decimal("0.00")
        assert invoice.on_hold is False
        assert invoice.created_at is not None
        assert invoice.updated_at is not None

    def test_status_is_constrained(self, db_session):
        db_session.add(Invoice(status="refunded"))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_one_invoice_per_visit(self, db_session):
        visit = Visit(patient_id=1, status="in_progress")
        db_session.add(visit)
        db_session.commit()
        db_session.add(Invoice(visit_id=visit.id, patient_id=1))
        db_session.commit()
        db_session.add(Invoice(visit_id=visit.id, patient_id=1))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_relationships(self, db_session):
        visit = Visit(patient_id=1)
        db_session.add(visit)
        db_session.flush()
        invoice = Invoice(visit_id=visit.id, patient_id=1)
        invoice.items.append(InvoiceItem(
            item_type="service", item_name="Consultation",
            quantity=Decimal("1"), unit_price=Decimal("50.00"), total_price=Decimal("50.00"),
        ))
        invoice.payments.append(PaymentTransaction(amount=Decimal("20.00"), payment_method="cash"))
        db_session.add(invoice)
        db_session.commit()

        assert invoice.visit.id == visit.id
        assert invoice.items[0].invoice is invoice
        assert invoice.payments[0].invoice_id == invoice.id
        assert invoice.payments[0].payment_date is not None


class TestLineItemAndPaymentConstraints:
    """Check constraints on items and payments."""

    def _invoice(self, db_session):
        invoice = Invoice(patient_id=1)
        db_session.add(invoice)
        db_session.commit()
        return invoice

    @pytest.mark.parametrize("quantity, unit_price", [
        (Decimal("0"), Decimal("1.00")),
        (Decimal("1"), Decimal("-1.00")),
    ])
    def test_invalid_item_rejected(self, db_session, quantity, unit_price):
        invoice = self._invoice(db_session)
        db_session.add(InvoiceItem(
            invoice_id=invoice.id, item_type="service", item_name="X",
            quantity=quantity, unit_price=unit_price, total_price=Decimal("0"),
        ))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_non_positive_payment_rejected(self, db_session):
        invoice = self._invoice(db_session)
        db_session.add(PaymentTransaction(invoice_id=invoice.id, amount=Decimal("0"), payment_method="cash"))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()
