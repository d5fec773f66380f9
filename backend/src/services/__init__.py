"""
Services package for the billing consistency engine.

This package contains the workflows and primitives shared by the billing
API endpoints and maintenance scripts.
"""

from .versioned_record_store import VersionedRecordStore
from .compensating_transaction import CompensatingTransactionCoordinator, run_saga
from .payment_workflow import PaymentWorkflow
from .invoice_completion_workflow import InvoiceCompletionWorkflow
from .invoice_service import InvoiceService

__all__ = [
    "VersionedRecordStore",
    "CompensatingTransactionCoordinator",
    "run_saga",
    "PaymentWorkflow",
    "InvoiceCompletionWorkflow",
    "InvoiceService",
]
