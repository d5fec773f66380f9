"""
Pure invoice totals calculation.

All monetary arithmetic uses Decimal quantized to cents (ROUND_HALF_UP), never
binary floats, so repeated recalculation cannot drift.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, Mapping, Union

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, float, str, None]


def to_money(value: MoneyLike) -> Decimal:
    """
    Convert a numeric value to a Decimal rounded to cents.

    Floats go through str() first so 0.1 becomes Decimal("0.10"), not its
    binary expansion.

    Raises:
        ValueError: value is not numeric
    """
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary value: {value!r}") from e


def line_total(quantity: MoneyLike, unit_price: MoneyLike) -> Decimal:
    """total_price = quantity * unit_price."""
    return (to_money(quantity) * to_money(unit_price)).quantize(CENTS, rounding=ROUND_HALF_UP)


def discount_from_percentage(subtotal: MoneyLike, percentage: MoneyLike) -> Decimal:
    """Discount amount for a percentage (0-100) of the subtotal."""
    return (to_money(subtotal) * to_money(percentage) / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal

    def as_patch(self) -> dict:
        """Fields to write back onto the invoice row."""
        return {
            "subtotal": self.subtotal,
            "total_amount": self.total_amount,
            "paid_amount": self.paid_amount,
            "balance": self.balance,
        }


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def calculate_invoice_totals(
    items: Iterable[Any],
    payments: Iterable[Any],
    discount_amount: MoneyLike = ZERO,
    tax_amount: MoneyLike = ZERO,
) -> InvoiceTotals:
    """
    Recompute invoice totals from line items and payments.

    Items and payments may be ORM rows or dicts; items contribute
    quantity * unit_price, payments contribute amount.

    Returns:
        InvoiceTotals where total_amount = subtotal - discount_amount + tax_amount
        and balance = total_amount - paid_amount (negative means credit)
    """
    subtotal = sum(
        (line_total(_field(item, "quantity"), _field(item, "unit_price")) for item in items),
        ZERO,
    )
    paid_amount = sum((to_money(_field(p, "amount")) for p in payments), ZERO)
    discount = to_money(discount_amount)
    tax = to_money(tax_amount)
    total_amount = subtotal - discount + tax
    return InvoiceTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        total_amount=total_amount,
        paid_amount=paid_amount,
        balance=total_amount - paid_amount,
    )


def count_partial_payments(payments: Iterable[Any], total_amount: MoneyLike) -> int:
    """Number of payments individually smaller than the invoice total."""
    total = to_money(total_amount)
    return sum(1 for p in payments if to_money(_field(p, "amount")) < total)
