"""
Application configuration using python-dotenv.

This module loads environment variables from .env file into os.environ
for use throughout the application.
"""

import os
import pathlib
from dotenv import load_dotenv


# Determine if we're running in a test environment
# Don't load .env file during testing to ensure predictable test behavior
is_testing = os.getenv("PYTEST_VERSION") is not None or any("pytest" in str(frame) for frame in __import__('inspect').stack(0))

# Load .env file into os.environ (only outside of testing)
if not is_testing:
    possible_paths = [
        pathlib.Path(__file__).parent.parent.parent / ".env",  # backend/.env (when run from backend/src)
        pathlib.Path(__file__).parent.parent.parent.parent / ".env",  # .env at repository root
        pathlib.Path.cwd() / ".env",
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break


def _get_bool(name: str, default: bool) -> bool:
    """Read a boolean flag ("1", "true", "yes", "on") from the environment."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_database_url():
    """Get the database URL from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost/clinic_billing_dev"
    )

DATABASE_URL = get_database_url()
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Clinic-local timezone used for business timestamps (hold dates, completion times)
CLINIC_UTC_OFFSET_HOURS = int(os.getenv("CLINIC_UTC_OFFSET_HOURS", "8"))

# Billing policy
BILLING_MAX_PARTIAL_PAYMENTS = int(os.getenv("BILLING_MAX_PARTIAL_PAYMENTS", "2"))
BILLING_MAX_OUTSTANDING_INVOICES = int(os.getenv("BILLING_MAX_OUTSTANDING_INVOICES", "2"))
BILLING_COMPLETE_VISIT_ON_PAYMENT = _get_bool("BILLING_COMPLETE_VISIT_ON_PAYMENT", True)

# Retry settings for transient storage failures (never applied to version conflicts)
STORE_TRANSIENT_MAX_RETRIES = int(os.getenv("STORE_TRANSIENT_MAX_RETRIES", "3"))
STORE_TRANSIENT_BASE_DELAY_SECONDS = float(os.getenv("STORE_TRANSIENT_BASE_DELAY_SECONDS", "0.1"))
STORE_TRANSIENT_MAX_DELAY_SECONDS = float(os.getenv("STORE_TRANSIENT_MAX_DELAY_SECONDS", "2.0"))
