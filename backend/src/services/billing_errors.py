"""
Error types surfaced by the billing consistency engine.

Every error carries a stable `code` that callers (and the HTTP layer) use to
decide how to react:

- conflicts (VERSION_MISMATCH) are recoverable by refetching and retrying
- policy violations (PAYMENT_EXCEEDS_BALANCE, PARTIAL_PAYMENT_LIMIT_EXCEEDED,
  INVOICE_MISSING_VISIT, ...) are permanent and never retried
- STORAGE_UNAVAILABLE is raised only after internal retries are exhausted
- ROLLBACK_INCOMPLETE is fatal: compensations failed and the stored state is
  known to be inconsistent
"""

from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code = "BILLING_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        body: Dict[str, Any] = {
            "success": False,
            "error_code": self.code,
            "message": self.message,
            "details": self.details,
        }
        return body


class RecordNotFoundError(BillingError):
    """Raised by a VersionedRecordStore when the requested row does not exist."""

    code = "RECORD_NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, record_id: Any):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} {record_id} not found", {"id": record_id})


class InvoiceNotFoundError(RecordNotFoundError):
    code = "INVOICE_NOT_FOUND"


class PaymentNotFoundError(RecordNotFoundError):
    code = "PAYMENT_NOT_FOUND"


class InvoiceItemNotFoundError(RecordNotFoundError):
    code = "INVOICE_ITEM_NOT_FOUND"


class VisitNotFoundError(RecordNotFoundError):
    code = "VISIT_NOT_FOUND"


class VersionConflictError(BillingError):
    """The stored version no longer matches the version the caller observed."""

    code = "VERSION_MISMATCH"
    status_code = 409

    def __init__(self, entity: str, record_id: Any, current_version: int, expected_version: int):
        self.entity = entity
        self.record_id = record_id
        self.current_version = current_version
        self.expected_version = expected_version
        super().__init__(
            f"{entity} {record_id} has been modified by another user "
            f"(current version {current_version}, expected {expected_version})",
            {"current_version": current_version, "expected_version": expected_version},
        )


class InvalidPaymentError(BillingError):
    code = "INVALID_PAYMENT"


class InvalidBillingInputError(BillingError):
    code = "INVALID_BILLING_INPUT"


class PaymentExceedsBalanceError(BillingError):
    code = "PAYMENT_EXCEEDS_BALANCE"


class PartialPaymentLimitExceededError(BillingError):
    code = "PARTIAL_PAYMENT_LIMIT_EXCEEDED"


class InvoiceMissingVisitError(BillingError):
    """Data-integrity error: an invoice without a visit can never be completed."""

    code = "INVOICE_MISSING_VISIT"
    status_code = 422


class InvoiceNotPayableError(BillingError):
    code = "INVOICE_NOT_PAYABLE"
    status_code = 409


class InvoiceNotCompletableError(BillingError):
    code = "INVOICE_NOT_COMPLETABLE"
    status_code = 409


class InvoiceNotEditableError(BillingError):
    code = "INVOICE_NOT_EDITABLE"
    status_code = 409


class InvoiceCompletionFailedError(BillingError):
    """Visit completion failed and the invoice was rolled back to its prior status."""

    code = "INVOICE_COMPLETION_FAILED"
    status_code = 502


class StorageUnavailableError(BillingError):
    """Transient storage failures persisted after all retries."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class RollbackIncompleteError(BillingError):
    """
    One or more compensations failed while undoing a partially applied operation.

    The stored state is known to be inconsistent and needs operator attention.
    """

    code = "ROLLBACK_INCOMPLETE"
    status_code = 500
    severity = "fatal"

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException],
        compensation_errors: List[BaseException],
        details: Optional[Dict[str, Any]] = None,
    ):
        self.original_error = original_error
        self.compensation_errors = compensation_errors
        merged: Dict[str, Any] = {
            "original_error": repr(original_error) if original_error else None,
            "compensation_errors": [repr(e) for e in compensation_errors],
        }
        merged.update(details or {})
        super().__init__(message, merged)
