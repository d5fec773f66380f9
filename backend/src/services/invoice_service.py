"""
Invoice maintenance: creation, reads, line items, discounts, holds and cancellation.

Every mutation of an invoice row goes through the versioned store. Item
changes touch two tables (the item and the invoice totals) and run as a
two-step saga so that losing the recalculation race undoes the item write.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Collection, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.constants import (
    EDITABLE_INVOICE_STATUSES,
    INVOICE_ITEM_TYPES,
    INVOICE_STATUS_CANCELLED,
    INVOICE_STATUS_PENDING,
    OUTSTANDING_INVOICE_STATUSES,
    PAYABLE_INVOICE_STATUSES,
)
from models.invoice import Invoice
from models.invoice_item import InvoiceItem
from services.billing_errors import (
    InvalidBillingInputError,
    InvoiceItemNotFoundError,
    InvoiceNotEditableError,
    VersionConflictError,
)
from services.billing_workflow_base import BillingWorkflowBase
from services.compensating_transaction import SagaOutcome, SagaStep, run_saga
from services.idempotency_guard import check_idempotent_retry
from services.invoice_totals_calculator import (
    ZERO,
    calculate_invoice_totals,
    discount_from_percentage,
    line_total,
    to_money,
)
from utils.datetime_utils import clinic_now
from utils.retry import retry_on_transient_failure

logger = logging.getLogger(__name__)

STEP_WRITE_ITEM = "write_invoice_item"
STEP_RECALCULATE = "recalculate_invoice"

_ITEM_FIELDS = ("item_type", "item_ref_id", "item_name", "item_description", "quantity", "unit_price", "notes")


@dataclass(frozen=True)
class InvoiceLimitCheck:
    can_create: bool
    outstanding_count: int
    message: str


class InvoiceService(BillingWorkflowBase):
    """Version-aware invoice maintenance."""

    # Reads

    def get_invoice(self, invoice_id: int) -> Invoice:
        """
        Read an invoice; a paid invoice with an open visit is repaired on the way.

        Raises:
            InvoiceNotFoundError: unknown invoice
        """
        invoice, _ = self.invoices.get(invoice_id)
        if self.repair_visit_status(invoice):
            invoice, _ = self.invoices.get(invoice_id)
        return invoice

    def get_invoice_by_visit(self, visit_id: int) -> Optional[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.visit_id == visit_id)
            .order_by(Invoice.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        invoice = self.db.execute(stmt).scalar_one_or_none()
        if invoice is not None:
            self.repair_visit_status(invoice)
        return invoice

    def list_items(self, invoice_id: int) -> List[InvoiceItem]:
        return self._load_items(invoice_id)

    def list_invoices(
        self,
        statuses: Optional[Collection[str]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Invoice]:
        """Invoices newest first, optionally filtered by status."""
        stmt = select(Invoice).order_by(Invoice.created_at.desc(), Invoice.id.desc())
        if statuses:
            stmt = stmt.where(Invoice.status.in_(list(statuses)))
        stmt = stmt.limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def get_patient_outstanding_invoices(self, patient_id: int) -> List[Invoice]:
        """Unpaid invoices with a positive balance, newest first."""
        stmt = (
            select(Invoice)
            .where(
                Invoice.patient_id == patient_id,
                Invoice.status.in_(list(OUTSTANDING_INVOICE_STATUSES)),
                Invoice.balance > 0,
            )
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_patient_outstanding_balance(self, patient_id: int) -> Dict[str, Any]:
        invoices = self.get_patient_outstanding_invoices(patient_id)
        total = sum((to_money(inv.balance) for inv in invoices), ZERO)
        return {
            "patient_id": patient_id,
            "total_outstanding": total,
            "invoice_count": len(invoices),
            "invoices": invoices,
        }

    def can_patient_create_invoice(self, patient_id: int) -> InvoiceLimitCheck:
        stmt = select(func.count(Invoice.id)).where(
            Invoice.patient_id == patient_id,
            Invoice.status.in_(list(OUTSTANDING_INVOICE_STATUSES)),
            Invoice.balance > 0,
        )
        count = self.db.execute(stmt).scalar_one()
        limit = self.policy.max_outstanding_invoices
        if count >= limit:
            return InvoiceLimitCheck(False, count, f"Patient has reached maximum outstanding invoices ({limit})")
        return InvoiceLimitCheck(True, count, "OK")

    # Creation

    def create_invoice(self, visit_id: int, created_by: Optional[int]) -> Invoice:
        """
        Create the invoice for a visit, or return the one that already exists.

        Raises:
            VisitNotFoundError: unknown visit
        """
        visit_status = self.visit_gateway.get_status(visit_id)

        existing = self.get_invoice_by_visit(visit_id)
        if existing is not None:
            logger.info(f"Invoice {existing.id} already exists for visit {visit_id}")
            return existing

        patient_id = self.visit_gateway.get_patient_id(visit_id)
        try:
            invoice = self._insert_invoice(visit_id, patient_id, created_by)
        except IntegrityError:
            # Another request created it between our lookup and our insert
            existing = self.get_invoice_by_visit(visit_id)
            if existing is None:
                raise
            logger.info(f"Invoice {existing.id} was created concurrently for visit {visit_id}")
            return existing
        logger.info(f"Created invoice {invoice.id} for visit {visit_id} (visit status '{visit_status}')")
        self._audit("INVOICE_CREATED", invoice.id, created_by, visit_id=visit_id, patient_id=patient_id)
        return invoice

    def _insert_invoice(self, visit_id: int, patient_id: Optional[int], created_by: Optional[int]) -> Invoice:
        return self.invoices.insert(Invoice(
            visit_id=visit_id,
            patient_id=patient_id,
            status=INVOICE_STATUS_PENDING,
            created_by=created_by,
            subtotal=ZERO,
            discount_amount=ZERO,
            discount_percentage=ZERO,
            tax_amount=ZERO,
            total_amount=ZERO,
            paid_amount=ZERO,
            balance=ZERO,
        ))

    # Line items

    def add_item(
        self,
        invoice_id: int,
        item_data: Dict[str, Any],
        added_by: Optional[int],
        expected_version: Optional[int] = None,
    ) -> Tuple[InvoiceItem, Invoice]:
        """
        Add a service or medicine line and recalculate the invoice.

        Returns:
            (item, invoice) after the recalculation committed

        Raises:
            InvalidBillingInputError: bad item type, name, quantity or price
            InvoiceNotEditableError: invoice is not in an editable status
            VersionConflictError: invoice changed since expected_version
        """
        fields = self._validate_item(item_data, partial=False)
        invoice, version = self._editable_invoice(invoice_id, expected_version)

        inserted: Dict[str, InvoiceItem] = {}

        def insert_item() -> InvoiceItem:
            inserted["item"] = self._insert_item(InvoiceItem(
                invoice_id=invoice_id,
                added_by=added_by,
                total_price=line_total(fields["quantity"], fields["unit_price"]),
                **fields,
            ))
            return inserted["item"]

        def delete_inserted() -> None:
            self._delete_item(inserted["item"].id)

        updated = self._item_saga(invoice, version, insert_item, delete_inserted, "add_item", added_by)
        item = inserted["item"]
        logger.info(f"Added {item.item_type} item '{item.item_name}' to invoice {invoice_id}")
        return item, updated

    def update_item(
        self,
        item_id: int,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Tuple[InvoiceItem, Invoice]:
        """
        Change an item's fields; total_price follows quantity and unit_price.

        expected_version refers to the parent invoice.
        """
        item = self._get_item(item_id)
        changes = self._validate_item(updates, partial=True)
        if not changes:
            raise InvalidBillingInputError("No item fields to update")

        invoice, version = self._editable_invoice(item.invoice_id, expected_version)
        previous = {name: getattr(item, name) for name in (*changes, "total_price")}
        quantity = changes.get("quantity", item.quantity)
        unit_price = changes.get("unit_price", item.unit_price)
        changes["total_price"] = line_total(quantity, unit_price)

        updated = self._item_saga(
            invoice, version,
            lambda: self._write_item(item_id, changes),
            lambda: self._write_item(item_id, previous),
            "update_item", None,
        )
        return self._get_item(item_id), updated

    def remove_item(self, item_id: int, expected_version: Optional[int] = None) -> Invoice:
        """Delete an item and recalculate; expected_version refers to the parent invoice."""
        item = self._get_item(item_id)
        invoice, version = self._editable_invoice(item.invoice_id, expected_version)
        restore = {name: getattr(item, name) for name in (*_ITEM_FIELDS, "invoice_id", "added_by", "total_price")}

        def reinsert() -> None:
            self._insert_item(InvoiceItem(id=item_id, **restore))

        updated = self._item_saga(
            invoice, version,
            lambda: self._delete_item(item_id),
            reinsert,
            "remove_item", None,
        )
        logger.info(f"Removed item {item_id} from invoice {invoice.id}")
        return updated

    def _item_saga(self, invoice: Invoice, version: int, write, undo, operation: str, actor_id: Optional[int]) -> Invoice:
        saga = run_saga(
            [
                SagaStep(STEP_WRITE_ITEM, write, undo),
                SagaStep(STEP_RECALCULATE, lambda: self._recalculate(invoice.id, version)),
            ],
            name=f"{operation}:{invoice.id}",
        )
        if saga.outcome is SagaOutcome.ROLLBACK_INCOMPLETE:
            raise self._escalate_rollback_incomplete(saga, invoice.id, operation)
        if saga.outcome is SagaOutcome.ROLLED_BACK:
            raise saga.error  # type: ignore[misc]
        updated = saga.results[-1]
        self._audit(operation.upper(), invoice.id, actor_id, total_amount=str(updated.total_amount), version=updated.version)
        return updated

    # Totals and discount

    def recalculate_invoice_total(self, invoice_id: int, expected_version: Optional[int] = None) -> Invoice:
        """Recompute subtotal, total, paid amount and balance from items and payments."""
        _, version = self.invoices.get(invoice_id)
        return self._recalculate(invoice_id, expected_version if expected_version is not None else version)

    def _recalculate(self, invoice_id: int, version: int, **overrides: Any) -> Invoice:
        invoice, _ = self.invoices.get(invoice_id)
        items = self._load_items(invoice_id)
        payments = self._load_payments(invoice_id)
        percentage = to_money(overrides.get("discount_percentage", invoice.discount_percentage))
        discount = overrides.get("discount_amount", invoice.discount_amount)

        subtotal = sum((line_total(i.quantity, i.unit_price) for i in items), ZERO)
        if percentage > ZERO and "discount_amount" not in overrides:
            discount = discount_from_percentage(subtotal, percentage)

        totals = calculate_invoice_totals(items, payments, discount, invoice.tax_amount)
        if totals.total_amount < ZERO:
            raise InvalidBillingInputError(
                f"Discount {totals.discount_amount} exceeds invoice subtotal {totals.subtotal}",
                {"subtotal": str(totals.subtotal), "discount_amount": str(totals.discount_amount)},
            )
        patch = totals.as_patch()
        patch["discount_amount"] = totals.discount_amount
        patch["discount_percentage"] = percentage
        return self.invoices.update(invoice_id, version, patch)

    def update_discount(
        self,
        invoice_id: int,
        discount_amount: Any = None,
        discount_percentage: Any = None,
        expected_version: Optional[int] = None,
    ) -> Invoice:
        """
        Set the invoice discount. A percentage (0-100) derives the amount when
        no amount is given.

        Raises:
            InvalidBillingInputError: negative amount, percentage outside 0-100,
                or a discount larger than the subtotal
        """
        try:
            percentage = to_money(discount_percentage)
            amount = to_money(discount_amount) if discount_amount is not None else None
        except ValueError as e:
            raise InvalidBillingInputError(str(e))
        if percentage < ZERO or percentage > Decimal("100"):
            raise InvalidBillingInputError("Discount percentage must be between 0 and 100", {"discount_percentage": str(percentage)})
        if amount is not None and amount < ZERO:
            raise InvalidBillingInputError("Discount amount cannot be negative", {"discount_amount": str(amount)})

        _, version = self._editable_invoice(invoice_id, expected_version)
        overrides: Dict[str, Any] = {"discount_percentage": percentage}
        if amount is not None:
            overrides["discount_amount"] = amount
        elif percentage == ZERO:
            overrides["discount_amount"] = ZERO

        updated = self._recalculate(invoice_id, version, **overrides)
        logger.info(f"Invoice {invoice_id} discount set to {updated.discount_amount} ({percentage}%)")
        self._audit("DISCOUNT_UPDATED", invoice_id, None,
                    discount_amount=str(updated.discount_amount), discount_percentage=str(percentage))
        return updated

    # Hold and cancellation

    def put_on_hold(
        self,
        invoice_id: int,
        reason: str,
        payment_due_date: Optional[date] = None,
        expected_version: Optional[int] = None,
    ) -> Invoice:
        if not reason or not reason.strip():
            raise InvalidBillingInputError("A hold reason is required")
        invoice, version = self.invoices.get(invoice_id)
        self._check_version(invoice, version, expected_version)
        if invoice.status not in PAYABLE_INVOICE_STATUSES:
            raise InvoiceNotEditableError(
                f"Invoice {invoice_id} cannot be put on hold in status '{invoice.status}'",
                {"status": invoice.status},
            )
        updated = self.invoices.update(invoice_id, version, {
            "on_hold": True,
            "hold_reason": reason.strip(),
            "hold_date": clinic_now(),
            "payment_due_date": payment_due_date,
        })
        logger.info(f"Invoice {invoice_id} put on hold: {reason}")
        self._audit("INVOICE_ON_HOLD", invoice_id, None, reason=reason, payment_due_date=payment_due_date)
        return updated

    def resume_from_hold(self, invoice_id: int, expected_version: Optional[int] = None) -> Invoice:
        invoice, version = self.invoices.get(invoice_id)
        self._check_version(invoice, version, expected_version)
        if not invoice.on_hold:
            raise InvalidBillingInputError(f"Invoice {invoice_id} is not on hold")
        updated = self.invoices.update(invoice_id, version, {
            "on_hold": False,
            "hold_reason": None,
        })
        logger.info(f"Invoice {invoice_id} resumed from hold")
        self._audit("INVOICE_RESUMED", invoice_id, None)
        return updated

    def cancel_invoice(
        self,
        invoice_id: int,
        cancelled_by: Optional[int],
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Invoice:
        """
        Cancel an invoice. Cancelling a cancelled invoice is a no-op.

        Raises:
            InvoiceNotEditableError: the invoice is paid or has payments recorded
        """
        invoice, version = self.invoices.get(invoice_id)
        if invoice.status == INVOICE_STATUS_CANCELLED:
            return invoice
        check_idempotent_retry(invoice, expected_version, {INVOICE_STATUS_CANCELLED}, entity="Invoice")

        if invoice.status not in PAYABLE_INVOICE_STATUSES or to_money(invoice.paid_amount) > ZERO:
            raise InvoiceNotEditableError(
                f"Invoice {invoice_id} cannot be cancelled: it is '{invoice.status}' "
                f"with {invoice.paid_amount} paid",
                {"status": invoice.status, "paid_amount": str(invoice.paid_amount)},
            )

        try:
            updated = self.invoices.update(invoice_id, version, {
                "status": INVOICE_STATUS_CANCELLED,
                "cancelled_by": cancelled_by,
                "cancelled_at": clinic_now(),
                "cancelled_reason": reason,
                "on_hold": False,
            })
        except VersionConflictError:
            current, _ = self.invoices.get(invoice_id)
            if current.status == INVOICE_STATUS_CANCELLED:
                return current
            raise
        logger.info(f"Invoice {invoice_id} cancelled by {cancelled_by}: {reason}")
        self._audit("INVOICE_CANCELLED", invoice_id, cancelled_by, reason=reason)
        return updated

    # Helpers

    @staticmethod
    def _check_version(invoice: Invoice, version: int, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != version:
            raise VersionConflictError("Invoice", invoice.id, version, expected_version)

    def _editable_invoice(self, invoice_id: int, expected_version: Optional[int]) -> Tuple[Invoice, int]:
        invoice, version = self.invoices.get(invoice_id)
        self._check_version(invoice, version, expected_version)
        if invoice.status not in EDITABLE_INVOICE_STATUSES:
            raise InvoiceNotEditableError(
                f"Invoice {invoice_id} cannot be modified in status '{invoice.status}'",
                {"status": invoice.status},
            )
        return invoice, version

    @staticmethod
    def _validate_item(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        fields = {name: data[name] for name in _ITEM_FIELDS if name in data}
        if not partial:
            fields.setdefault("quantity", 1)
            for required in ("item_type", "item_name", "unit_price"):
                if fields.get(required) is None:
                    raise InvalidBillingInputError(f"Missing required item field: {required}")

        if "item_type" in fields and fields["item_type"] not in INVOICE_ITEM_TYPES:
            raise InvalidBillingInputError(
                f"Invalid item type. Must be one of: {', '.join(INVOICE_ITEM_TYPES)}",
                {"item_type": fields["item_type"]},
            )
        if "item_name" in fields and not str(fields["item_name"] or "").strip():
            raise InvalidBillingInputError("Item name cannot be empty")
        try:
            if "quantity" in fields:
                fields["quantity"] = to_money(fields["quantity"])
            if "unit_price" in fields:
                fields["unit_price"] = to_money(fields["unit_price"])
        except ValueError as e:
            raise InvalidBillingInputError(str(e))
        if "quantity" in fields and fields["quantity"] <= ZERO:
            raise InvalidBillingInputError("Quantity must be greater than 0", {"quantity": str(fields["quantity"])})
        if "unit_price" in fields and fields["unit_price"] < ZERO:
            raise InvalidBillingInputError("Unit price cannot be negative", {"unit_price": str(fields["unit_price"])})
        return fields

    def _get_item(self, item_id: int) -> InvoiceItem:
        stmt = select(InvoiceItem).where(InvoiceItem.id == item_id).execution_options(populate_existing=True)
        item = self.db.execute(stmt).scalar_one_or_none()
        if item is None:
            raise InvoiceItemNotFoundError("Invoice item", item_id)
        return item

    @retry_on_transient_failure()
    def _insert_item(self, item: InvoiceItem) -> InvoiceItem:
        try:
            self.db.add(item)
            self.db.commit()
            self.db.refresh(item)
        except DBAPIError:
            self.db.rollback()
            raise
        return item

    @retry_on_transient_failure()
    def _write_item(self, item_id: int, values: Dict[str, Any]) -> InvoiceItem:
        try:
            item = self._get_item(item_id)
            for name, value in values.items():
                setattr(item, name, value)
            self.db.commit()
        except DBAPIError:
            self.db.rollback()
            raise
        return item

    @retry_on_transient_failure()
    def _delete_item(self, item_id: int) -> None:
        try:
            item = self.db.get(InvoiceItem, item_id)
            if item is not None:
                self.db.delete(item)
            self.db.commit()
        except DBAPIError:
            self.db.rollback()
            raise
