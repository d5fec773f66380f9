"""Application constants and configuration values."""

from core.config import FRONTEND_URL

# Database connection settings
DB_POOL_RECYCLE_SECONDS = 300  # 5 minutes

# CORS origins for development and production
_CORS_ORIGINS_RAW = [
    "http://localhost:5173",      # React dev server (Vite)
    FRONTEND_URL,
]

# Filter out None values and empty strings to avoid CORS errors
CORS_ORIGINS = [origin for origin in _CORS_ORIGINS_RAW if origin and origin.strip()]

# Invoice statuses
INVOICE_STATUS_DRAFT = "draft"
INVOICE_STATUS_PENDING = "pending"
INVOICE_STATUS_PARTIAL_PAID = "partial_paid"
INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_CANCELLED = "cancelled"
INVOICE_STATUS_ON_HOLD = "on_hold"

INVOICE_STATUSES = (
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_PARTIAL_PAID,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_CANCELLED,
    INVOICE_STATUS_ON_HOLD,
)

# Line items may only change while the invoice is in one of these statuses
EDITABLE_INVOICE_STATUSES = frozenset({
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_PARTIAL_PAID,
})

# Statuses from which complete_invoice may move an invoice to paid
COMPLETABLE_INVOICE_STATUSES = EDITABLE_INVOICE_STATUSES

# Statuses that accept a new payment
PAYABLE_INVOICE_STATUSES = frozenset({
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_PARTIAL_PAID,
    INVOICE_STATUS_ON_HOLD,
})

# Statuses counted as outstanding for a patient
OUTSTANDING_INVOICE_STATUSES = PAYABLE_INVOICE_STATUSES

# Invoice item types
INVOICE_ITEM_TYPE_SERVICE = "service"
INVOICE_ITEM_TYPE_MEDICINE = "medicine"
INVOICE_ITEM_TYPES = (INVOICE_ITEM_TYPE_SERVICE, INVOICE_ITEM_TYPE_MEDICINE)

# Payment methods accepted at the cashier
PAYMENT_METHODS = ("cash", "card", "insurance", "mobile_payment")

# Visit statuses (owned by the visit subsystem; billing only reads/completes)
VISIT_STATUS_SCHEDULED = "scheduled"
VISIT_STATUS_IN_PROGRESS = "in_progress"
VISIT_STATUS_COMPLETED = "completed"
VISIT_STATUS_CANCELLED = "cancelled"
VISIT_STATUSES = (
    VISIT_STATUS_SCHEDULED,
    VISIT_STATUS_IN_PROGRESS,
    VISIT_STATUS_COMPLETED,
    VISIT_STATUS_CANCELLED,
)

# Default hold reason recorded when a partial payment leaves a balance
DEFAULT_PARTIAL_PAYMENT_HOLD_REASON = "Partial payment - balance due"

# Notification audiences
AUDIENCE_RECEPTIONISTS = "receptionists"
AUDIENCE_CASHIERS = "cashiers"
AUDIENCE_OPERATORS = "operators"
