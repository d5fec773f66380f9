"""
Unit tests for datetime utilities.

Tests clinic timezone handling.
"""

from datetime import datetime, timezone, timedelta

from core.config import CLINIC_UTC_OFFSET_HOURS
from utils.datetime_utils import clinic_now, CLINIC_TZ, ensure_clinic_tz


class TestClinicTimezone:
    """Test clinic timezone utilities."""

    def test_clinic_now_returns_timezone_aware_datetime(self):
        now = clinic_now()

        assert now.tzinfo is not None
        assert now.tzinfo == CLINIC_TZ

    def test_clinic_tz_uses_configured_offset(self):
        assert CLINIC_TZ.utcoffset(None) == timedelta(hours=CLINIC_UTC_OFFSET_HOURS)

    def test_clinic_now_is_current_instant(self):
        before = datetime.now(timezone.utc)
        now = clinic_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestEnsureClinicTz:
    """Test ensure_clinic_tz function."""

    def test_naive_datetime_is_assumed_clinic_local(self):
        """Naive values read back from SQLite keep their wall-clock time."""
        result = ensure_clinic_tz(datetime(2024, 1, 1, 10, 0, 0))

        assert result.tzinfo == CLINIC_TZ
        assert (result.year, result.month, result.day, result.hour, result.minute) == (2024, 1, 1, 10, 0)

    def test_aware_datetime_is_converted(self):
        utc_dt = datetime(2024, 1, 1, 2, 0, 0, tzinfo=timezone.utc)

        result = ensure_clinic_tz(utc_dt)

        assert result.tzinfo == CLINIC_TZ
        assert result == utc_dt
        assert result.hour == (2 + CLINIC_UTC_OFFSET_HOURS) % 24

    def test_none(self):
        assert ensure_clinic_tz(None) is None
