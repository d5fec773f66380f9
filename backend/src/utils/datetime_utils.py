"""
Datetime utilities for consistent timezone handling across the application.

All business timestamps (hold dates, completion and cancellation times) are
recorded as timezone-aware datetimes in the clinic's local timezone.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from core.config import CLINIC_UTC_OFFSET_HOURS

logger = logging.getLogger(__name__)

CLINIC_TZ = timezone(timedelta(hours=CLINIC_UTC_OFFSET_HOURS))


def clinic_now() -> datetime:
    """
    Get current clinic-local datetime.

    Returns:
        Current datetime with the clinic timezone attached
    """
    return datetime.now(CLINIC_TZ)


def ensure_clinic_tz(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware in the clinic timezone.

    Naive datetimes (e.g. read back from SQLite) are assumed to already be
    clinic-local.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=CLINIC_TZ)
    return dt.astimezone(CLINIC_TZ)
