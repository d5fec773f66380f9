"""
Payment transaction model.

Payment transactions are immutable once created: corrections are made by
cancelling the invoice, never by editing or deleting a payment that was
accepted. The sum of an invoice's payments always equals its paid_amount.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, ForeignKey, TIMESTAMP, Numeric, Text, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from utils.datetime_utils import clinic_now


class PaymentTransaction(Base):
    """A single payment received against an invoice."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="RESTRICT")
    )
    """Invoice this payment was applied to."""

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    """Amount received. Always > 0."""

    payment_method: Mapped[str] = mapped_column(String(30))
    """Valid values: 'cash', 'card', 'insurance', 'mobile_payment'."""

    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    invoice_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Invoice version this payment was claimed against."""

    payment_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=clinic_now)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))

    invoice = relationship("Invoice", back_populates="payments")

    __table_args__ = (
        CheckConstraint('amount > 0', name='check_payment_amount_positive'),
        Index('idx_payment_transactions_invoice', 'invoice_id'),
        Index('idx_payment_transactions_payment_date', 'payment_date'),
    )
