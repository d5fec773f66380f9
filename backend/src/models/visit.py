"""
Visit model representing a clinical visit.

Visits are owned by the visit subsystem. The billing engine only reads a
visit's status and drives it to 'completed' once its invoice is paid.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, TIMESTAMP, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.database import Base


class Visit(Base):
    """
    Visit entity.

    Only the fields billing needs are mapped here: identity, patient, status
    and completion metadata.
    """

    __tablename__ = "visits"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the visit."""

    patient_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Patient this visit belongs to."""

    status: Mapped[str] = mapped_column(String(20), default="in_progress")
    """Visit status. Valid values: 'scheduled', 'in_progress', 'completed', 'cancelled'."""

    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    """When the visit was completed."""

    completed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """User who completed the visit (usually the cashier who closed the invoice)."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))

    __table_args__ = (
        Index('idx_visits_patient_status', 'patient_id', 'status'),
    )
