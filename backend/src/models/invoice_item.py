"""
Invoice item model representing a billable line (service or medicine).
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, ForeignKey, TIMESTAMP, Numeric, Text, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class InvoiceItem(Base):
    """
    Invoice line item.

    Items may only be created, changed or removed while the parent invoice is
    editable (draft, pending, partial_paid). total_price is always
    quantity * unit_price.
    """

    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE")
    )
    """Invoice this item belongs to."""

    item_type: Mapped[str] = mapped_column(String(20))
    """Valid values: 'service', 'medicine'."""

    item_ref_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Service or prescription this line was created from, if any."""

    item_name: Mapped[str] = mapped_column(String(255))
    item_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))

    added_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))

    invoice = relationship("Invoice", back_populates="items")

    __table_args__ = (
        CheckConstraint("item_type IN ('service', 'medicine')", name='check_invoice_item_type_valid'),
        CheckConstraint('quantity > 0', name='check_invoice_item_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='check_invoice_item_unit_price_non_negative'),
        Index('idx_invoice_items_invoice', 'invoice_id'),
    )
