"""
Billing API endpoints.

Invoice maintenance, payments and invoice completion. Engine errors are not
caught here: every BillingError propagates to the handler registered in
main.py, which renders its stable error code and HTTP status.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.database import get_db
from models.invoice import Invoice
from models.invoice_item import InvoiceItem
from models.payment_transaction import PaymentTransaction
from services.billing_gateways import LoggingAuditGateway, LoggingNotificationGateway, SqlVisitGateway
from services.invoice_completion_workflow import InvoiceCompletionWorkflow
from services.invoice_service import InvoiceService
from services.payment_workflow import PaymentWorkflow
from utils.datetime_utils import ensure_clinic_tz

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependencies
def _collaborators(db: Session) -> dict:
    return {
        "db": db,
        "visit_gateway": SqlVisitGateway(db),
        "notification_gateway": LoggingNotificationGateway(),
        "audit_gateway": LoggingAuditGateway(),
    }


def get_invoice_service(db: Session = Depends(get_db)) -> InvoiceService:
    return InvoiceService(**_collaborators(db))


def get_payment_workflow(db: Session = Depends(get_db)) -> PaymentWorkflow:
    return PaymentWorkflow(**_collaborators(db))


def get_completion_workflow(db: Session = Depends(get_db)) -> InvoiceCompletionWorkflow:
    return InvoiceCompletionWorkflow(**_collaborators(db))


# Request/Response Models
class InvoiceCreateRequest(BaseModel):
    """Request model for creating the invoice of a visit."""
    visit_id: int
    created_by: Optional[int] = None


class InvoiceItemRequest(BaseModel):
    """Request model for adding an invoice line."""
    item_type: str = Field(..., description="'service' or 'medicine'")
    item_name: str = Field(..., min_length=1)
    unit_price: Decimal = Field(..., ge=0)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    item_ref_id: Optional[int] = None
    item_description: Optional[str] = None
    notes: Optional[str] = None
    added_by: Optional[int] = None
    expected_version: Optional[int] = Field(None, description="Invoice version last read by the client")


class InvoiceItemUpdateRequest(BaseModel):
    """Request model for changing an invoice line. Only provided fields change."""
    item_name: Optional[str] = None
    item_description: Optional[str] = None
    quantity: Optional[Decimal] = Field(None, gt=0)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class DiscountRequest(BaseModel):
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    expected_version: Optional[int] = None


class HoldRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    payment_due_date: Optional[date] = None
    expected_version: Optional[int] = None


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = None


class CancelRequest(BaseModel):
    cancelled_by: Optional[int] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class CompleteInvoiceRequest(BaseModel):
    completed_by: Optional[int] = None
    expected_version: Optional[int] = None


class PaymentRequest(BaseModel):
    """Request model for recording a (possibly partial) payment."""
    amount: Decimal
    payment_method: str = Field(..., description="'cash', 'card', 'insurance' or 'mobile_payment'")
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[int] = None
    received_by: Optional[int] = None
    hold_reason: Optional[str] = None
    payment_due_date: Optional[date] = None
    expected_version: Optional[int] = None


class InvoiceItemResponse(BaseModel):
    id: int
    invoice_id: int
    item_type: str
    item_ref_id: Optional[int] = None
    item_name: str
    item_description: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    added_by: Optional[int] = None
    notes: Optional[str] = None


class InvoiceResponse(BaseModel):
    """Response model for an invoice. Clients echo `version` back as expected_version."""
    id: int
    invoice_number: str
    visit_id: Optional[int] = None
    patient_id: Optional[int] = None
    status: str
    version: int
    subtotal: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    on_hold: bool
    hold_reason: Optional[str] = None
    hold_date: Optional[datetime] = None
    payment_due_date: Optional[date] = None
    completed_by: Optional[int] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[InvoiceItemResponse] = []


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]


class PaymentTransactionResponse(BaseModel):
    id: int
    invoice_id: int
    amount: Decimal
    payment_method: str
    payment_reference: Optional[str] = None
    payment_notes: Optional[str] = None
    received_by: Optional[int] = None
    processed_by: Optional[int] = None
    invoice_version: Optional[int] = None
    payment_date: datetime


class PaymentResponse(BaseModel):
    success: bool = True
    idempotent: bool
    visit_completed: bool
    invoice: InvoiceResponse
    payment: Optional[PaymentTransactionResponse] = None


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentTransactionResponse]


class PaymentMethodSummary(BaseModel):
    count: int
    amount: Decimal


class PaymentReportSummary(BaseModel):
    total_payments: int
    total_amount: Decimal
    by_method: Dict[str, PaymentMethodSummary]


class PaymentReportResponse(BaseModel):
    """Payments received between start_date and end_date (inclusive), newest first."""
    start_date: date
    end_date: date
    payments: List[PaymentTransactionResponse]
    summary: PaymentReportSummary


class CompletionResponse(BaseModel):
    success: bool = True
    idempotent: bool
    visit_completed: bool
    visit_repaired: bool
    invoice: InvoiceResponse


class ItemChangeResponse(BaseModel):
    success: bool = True
    item: Optional[InvoiceItemResponse] = None
    invoice: InvoiceResponse


class OutstandingBalanceResponse(BaseModel):
    patient_id: int
    total_outstanding: Decimal
    invoice_count: int
    invoices: List[InvoiceResponse]


class InvoiceEligibilityResponse(BaseModel):
    can_create: bool
    outstanding_count: int
    message: str


# Serialization
def _item_response(item: InvoiceItem) -> InvoiceItemResponse:
    return InvoiceItemResponse(
        id=item.id,
        invoice_id=item.invoice_id,
        item_type=item.item_type,
        item_ref_id=item.item_ref_id,
        item_name=item.item_name,
        item_description=item.item_description,
        quantity=item.quantity,
        unit_price=item.unit_price,
        total_price=item.total_price,
        added_by=item.added_by,
        notes=item.notes,
    )


def _invoice_response(invoice: Invoice, items: Optional[List[InvoiceItem]] = None) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        visit_id=invoice.visit_id,
        patient_id=invoice.patient_id,
        status=invoice.status,
        version=invoice.version,
        subtotal=invoice.subtotal,
        discount_amount=invoice.discount_amount,
        discount_percentage=invoice.discount_percentage,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
        paid_amount=invoice.paid_amount,
        balance=invoice.balance,
        on_hold=invoice.on_hold,
        hold_reason=invoice.hold_reason,
        hold_date=ensure_clinic_tz(invoice.hold_date),
        payment_due_date=invoice.payment_due_date,
        completed_by=invoice.completed_by,
        completed_at=ensure_clinic_tz(invoice.completed_at),
        cancelled_at=ensure_clinic_tz(invoice.cancelled_at),
        cancelled_reason=invoice.cancelled_reason,
        created_at=ensure_clinic_tz(invoice.created_at),
        updated_at=ensure_clinic_tz(invoice.updated_at),
        items=[_item_response(i) for i in (items or [])],
    )


def _payment_response(payment: PaymentTransaction) -> PaymentTransactionResponse:
    return PaymentTransactionResponse(
        id=payment.id,
        invoice_id=payment.invoice_id,
        amount=payment.amount,
        payment_method=payment.payment_method,
        payment_reference=payment.payment_reference,
        payment_notes=payment.payment_notes,
        received_by=payment.received_by,
        processed_by=payment.processed_by,
        invoice_version=payment.invoice_version,
        payment_date=ensure_clinic_tz(payment.payment_date),
    )


# Invoices
@router.post(
    "/invoices",
    summary="Create invoice for a visit",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invoice(
    request: InvoiceCreateRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    """Create the invoice for a visit; returns the existing one if already created."""
    invoice = service.create_invoice(request.visit_id, request.created_by)
    return _invoice_response(invoice, service.list_items(invoice.id))


@router.get("/invoices", summary="List invoices", response_model=InvoiceListResponse)
async def list_invoices(
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceListResponse:
    invoices = service.list_invoices(status_filter, limit=limit, offset=offset)
    return InvoiceListResponse(invoices=[_invoice_response(inv) for inv in invoices])


@router.get("/invoices/{invoice_id}", summary="Get invoice", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.get_invoice(invoice_id)
    return _invoice_response(invoice, service.list_items(invoice_id))


@router.get("/visits/{visit_id}/invoice", summary="Get invoice for a visit", response_model=Optional[InvoiceResponse])
async def get_invoice_by_visit(
    visit_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> Optional[InvoiceResponse]:
    invoice = service.get_invoice_by_visit(visit_id)
    if invoice is None:
        return None
    return _invoice_response(invoice, service.list_items(invoice.id))


@router.post("/invoices/{invoice_id}/recalculate", summary="Recalculate invoice totals", response_model=InvoiceResponse)
async def recalculate_invoice(
    invoice_id: int,
    request: VersionedRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.recalculate_invoice_total(invoice_id, request.expected_version)
    return _invoice_response(invoice, service.list_items(invoice_id))


@router.put("/invoices/{invoice_id}/discount", summary="Update invoice discount", response_model=InvoiceResponse)
async def update_discount(
    invoice_id: int,
    request: DiscountRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.update_discount(
        invoice_id,
        discount_amount=request.discount_amount,
        discount_percentage=request.discount_percentage,
        expected_version=request.expected_version,
    )
    return _invoice_response(invoice, service.list_items(invoice_id))


@router.post("/invoices/{invoice_id}/hold", summary="Put invoice on hold", response_model=InvoiceResponse)
async def put_on_hold(
    invoice_id: int,
    request: HoldRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.put_on_hold(invoice_id, request.reason, request.payment_due_date, request.expected_version)
    return _invoice_response(invoice)


@router.post("/invoices/{invoice_id}/resume", summary="Resume invoice from hold", response_model=InvoiceResponse)
async def resume_from_hold(
    invoice_id: int,
    request: VersionedRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.resume_from_hold(invoice_id, request.expected_version)
    return _invoice_response(invoice)


@router.post("/invoices/{invoice_id}/cancel", summary="Cancel invoice", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: int,
    request: CancelRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.cancel_invoice(invoice_id, request.cancelled_by, request.reason, request.expected_version)
    return _invoice_response(invoice)


@router.post("/invoices/{invoice_id}/complete", summary="Complete invoice", response_model=CompletionResponse)
async def complete_invoice(
    invoice_id: int,
    request: CompleteInvoiceRequest,
    workflow: InvoiceCompletionWorkflow = Depends(get_completion_workflow),
) -> CompletionResponse:
    """
    Mark the invoice paid and complete its visit.

    Returns 502 INVOICE_COMPLETION_FAILED when the visit could not be completed
    (the invoice is rolled back) and 409 VERSION_MISMATCH for stale versions.
    """
    result = workflow.complete_invoice(invoice_id, request.completed_by, request.expected_version)
    return CompletionResponse(
        idempotent=result.idempotent,
        visit_completed=result.visit_completed,
        visit_repaired=result.visit_repaired,
        invoice=_invoice_response(result.invoice),
    )


# Line items
@router.post(
    "/invoices/{invoice_id}/items",
    summary="Add invoice item",
    response_model=ItemChangeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_item(
    invoice_id: int,
    request: InvoiceItemRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> ItemChangeResponse:
    item_data = request.model_dump(exclude={"added_by", "expected_version"})
    item, invoice = service.add_item(invoice_id, item_data, request.added_by, request.expected_version)
    return ItemChangeResponse(item=_item_response(item), invoice=_invoice_response(invoice, service.list_items(invoice_id)))


@router.put("/items/{item_id}", summary="Update invoice item", response_model=ItemChangeResponse)
async def update_item(
    item_id: int,
    request: InvoiceItemUpdateRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> ItemChangeResponse:
    updates = request.model_dump(exclude={"expected_version"}, exclude_unset=True)
    item, invoice = service.update_item(item_id, updates, request.expected_version)
    return ItemChangeResponse(item=_item_response(item), invoice=_invoice_response(invoice, service.list_items(invoice.id)))


@router.delete("/items/{item_id}", summary="Remove invoice item", response_model=ItemChangeResponse)
async def remove_item(
    item_id: int,
    expected_version: Optional[int] = Query(None),
    service: InvoiceService = Depends(get_invoice_service),
) -> ItemChangeResponse:
    invoice = service.remove_item(item_id, expected_version)
    return ItemChangeResponse(invoice=_invoice_response(invoice, service.list_items(invoice.id)))


# Payments
@router.post("/invoices/{invoice_id}/payments", summary="Record payment", response_model=PaymentResponse)
async def record_payment(
    invoice_id: int,
    request: PaymentRequest,
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
) -> PaymentResponse:
    """
    Record a full or partial payment.

    A retry carrying a stale expected_version against an invoice that is
    already paid returns the current invoice with idempotent=true and charges
    nothing.
    """
    payment_data = request.model_dump(exclude={"expected_version"})
    result = workflow.record_partial_payment(invoice_id, payment_data, request.expected_version)
    return PaymentResponse(
        idempotent=result.idempotent,
        visit_completed=result.visit_completed,
        invoice=_invoice_response(result.invoice),
        payment=_payment_response(result.transaction) if result.transaction else None,
    )


@router.get("/invoices/{invoice_id}/payments", summary="Payment history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    invoice_id: int,
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
) -> PaymentHistoryResponse:
    payments = workflow.get_payment_history(invoice_id)
    return PaymentHistoryResponse(payments=[_payment_response(p) for p in payments])


@router.get("/payments/report", summary="Payment report for a date range", response_model=PaymentReportResponse)
async def get_payment_report(
    start_date: date = Query(..., description="First day of the range (clinic local)"),
    end_date: date = Query(..., description="Last day of the range, inclusive"),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
) -> PaymentReportResponse:
    report = workflow.get_payment_report(start_date, end_date)
    summary = report["summary"]
    return PaymentReportResponse(
        start_date=start_date,
        end_date=end_date,
        payments=[_payment_response(p) for p in report["payments"]],
        summary=PaymentReportSummary(
            total_payments=summary["total_payments"],
            total_amount=summary["total_amount"],
            by_method={
                method: PaymentMethodSummary(**stats)
                for method, stats in summary["by_method"].items()
            },
        ),
    )


@router.get("/payments/{payment_id}", summary="Get payment", response_model=PaymentTransactionResponse)
async def get_payment(
    payment_id: int,
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
) -> PaymentTransactionResponse:
    return _payment_response(workflow.get_payment(payment_id))


# Patients
@router.get(
    "/patients/{patient_id}/outstanding",
    summary="Patient outstanding balance",
    response_model=OutstandingBalanceResponse,
)
async def get_patient_outstanding(
    patient_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> OutstandingBalanceResponse:
    summary = service.get_patient_outstanding_balance(patient_id)
    return OutstandingBalanceResponse(
        patient_id=patient_id,
        total_outstanding=summary["total_outstanding"],
        invoice_count=summary["invoice_count"],
        invoices=[_invoice_response(inv) for inv in summary["invoices"]],
    )


@router.get(
    "/patients/{patient_id}/invoice-eligibility",
    summary="Check whether a patient may open another invoice",
    response_model=InvoiceEligibilityResponse,
)
async def check_invoice_eligibility(
    patient_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceEligibilityResponse:
    check = service.can_patient_create_invoice(patient_id)
    return InvoiceEligibilityResponse(
        can_create=check.can_create,
        outstanding_count=check.outstanding_count,
        message=check.message,
    )
