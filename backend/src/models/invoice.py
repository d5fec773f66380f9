"""
Invoice model representing the billing record for a visit.

Invoices carry a version counter used for optimistic concurrency control:
every committed mutation bumps `version` by exactly one, and every
multi-actor business mutation is a compare-and-swap against the version the
caller last observed.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    String, Integer, ForeignKey, TIMESTAMP, Date, Boolean, Numeric, Text,
    Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class Invoice(Base):
    """
    Invoice entity.

    Invariants maintained by the billing engine:
    - total_amount = subtotal - discount_amount + tax_amount
    - balance = total_amount - paid_amount (negative balance is patient credit)
    - status 'paid' implies the linked visit is (or is being driven to) 'completed'

    Invoices are never deleted; they are cancelled instead.
    """

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the invoice."""

    visit_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("visits.id", ondelete="RESTRICT"),
        nullable=True
    )
    """Visit being billed. Required before the invoice can be completed."""

    patient_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Patient being billed (copied from the visit at creation)."""

    status: Mapped[str] = mapped_column(String(20), default="pending")
    """Valid values: 'draft', 'pending', 'partial_paid', 'paid', 'cancelled', 'on_hold'."""

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    """Optimistic concurrency counter, incremented on every committed mutation."""

    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    balance: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))

    on_hold: Mapped[bool] = mapped_column(Boolean, default=False)
    hold_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hold_date: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    payment_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    completed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    cancelled_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))

    # Relationships
    items: Mapped[List["InvoiceItem"]] = relationship(  # type: ignore[name-defined]
        "InvoiceItem",
        back_populates="invoice",
        order_by="InvoiceItem.id",
    )
    """Line items on this invoice."""

    payments: Mapped[List["PaymentTransaction"]] = relationship(  # type: ignore[name-defined]
        "PaymentTransaction",
        back_populates="invoice",
        order_by="PaymentTransaction.id",
    )
    """Payments recorded against this invoice (immutable)."""

    visit = relationship("Visit")
    """Relationship to the Visit being billed."""

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending', 'partial_paid', 'paid', 'cancelled', 'on_hold')",
            name='check_invoice_status_valid'
        ),
        CheckConstraint('version >= 1', name='check_invoice_version_positive'),
        Index('idx_invoices_visit', 'visit_id', unique=True),
        Index('idx_invoices_patient_status', 'patient_id', 'status'),
        Index('idx_invoices_status', 'status'),
    )

    @property
    def invoice_number(self) -> str:
        """Display number used in notifications and receipts (e.g. "INV-000042")."""
        return f"INV-{self.id:06d}"
