# Package initialization
# Import all models to ensure relationships are properly established
from .visit import Visit
from .invoice import Invoice
from .invoice_item import InvoiceItem
from .payment_transaction import PaymentTransaction

__all__ = [
    "Visit",
    "Invoice",
    "InvoiceItem",
    "PaymentTransaction",
]
