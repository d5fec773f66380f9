"""
Utility modules for the clinic billing application.

This package contains shared helpers used across the billing engine,
including clinic-timezone datetime handling and retry of transient storage
failures (utils.retry, imported directly by the stores).
"""

from utils.datetime_utils import clinic_now, ensure_clinic_tz

__all__ = ['clinic_now', 'ensure_clinic_tz']
