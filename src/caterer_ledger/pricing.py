"""Bill total calculation for new caterer sales.

Line amounts are ``quantity * rate`` plus GST, each truncated to two places
with :meth:`MoneyValue.floor`. Additional charges and discounts are either
fixed amounts or percentages of the items total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence

from . import log
from .constants import ChargeType
from .errors import InvalidAmount
from .money import MoneyValue, sum_money


_HUNDRED = Decimal("100")


def _require_finite(value: Decimal, label: str) -> None:
    if not Decimal(value).is_finite():
        raise InvalidAmount(f"{label} must be a finite number, got {value!r}")


@dataclass(frozen=True)
class LineItem:
    """One product line on a bill."""

    product_name: str
    quantity: Decimal
    rate: Decimal
    unit: str = "kg"
    gst_percentage: Decimal = Decimal("0")


@dataclass(frozen=True)
class Adjustment:
    """A named extra charge or discount."""

    name: str
    value: Decimal
    charge_type: ChargeType = ChargeType.FIXED


@dataclass(frozen=True)
class PricedLine:
    item: LineItem
    amount: MoneyValue
    gst_amount: MoneyValue

    @property
    def total(self) -> MoneyValue:
        return self.amount + self.gst_amount


@dataclass(frozen=True)
class BillTotals:
    lines: Sequence[PricedLine]
    items_total: MoneyValue
    other_charges_total: MoneyValue
    discount_total: MoneyValue
    grand_total: MoneyValue


def price_line(item: LineItem) -> PricedLine:
    """Price a single line.

    Raises:
        InvalidAmount: If quantity is not positive, or rate or GST is negative,
            or any of them is not a finite number.
    """

    _require_finite(item.quantity, f"Quantity for '{item.product_name}'")
    _require_finite(item.rate, f"Rate for '{item.product_name}'")
    _require_finite(item.gst_percentage, f"GST for '{item.product_name}'")
    if item.quantity <= 0:
        raise InvalidAmount(f"Quantity for '{item.product_name}' must be greater than zero")
    if item.rate < 0:
        raise InvalidAmount(f"Rate for '{item.product_name}' must be zero or positive")
    if item.gst_percentage < 0:
        raise InvalidAmount(f"GST for '{item.product_name}' must be zero or positive")

    amount = MoneyValue.floor(item.quantity * item.rate)
    gst_amount = MoneyValue.floor(amount.to_decimal() * item.gst_percentage / _HUNDRED)
    return PricedLine(item=item, amount=amount, gst_amount=gst_amount)


def _apply_adjustment(adjustment: Adjustment, base: MoneyValue) -> MoneyValue:
    _require_finite(adjustment.value, f"Adjustment '{adjustment.name}'")
    if adjustment.value < 0:
        raise InvalidAmount(f"Adjustment '{adjustment.name}' must be zero or positive")
    if adjustment.charge_type is ChargeType.PERCENTAGE:
        return MoneyValue.floor(base.to_decimal() * adjustment.value / _HUNDRED)
    return MoneyValue.parse(adjustment.value)


def compute_bill_totals(
    line_items: Sequence[LineItem],
    charges: Sequence[Adjustment] = (),
    discounts: Sequence[Adjustment] = (),
) -> BillTotals:
    """Compute the totals of a bill from its lines, charges and discounts.

    Args:
        line_items: Products sold; at least one is required.
        charges: Extra charges such as transport or packing.
        discounts: Reductions applied after charges.

    Returns:
        BillTotals: Per-line pricing and the bill level totals, where
            ``grand_total = items_total + other_charges_total - discount_total``.

    Raises:
        InvalidAmount: If there are no lines, any input is negative, or the
            discounts exceed the items and charges.
    """

    if not line_items:
        raise InvalidAmount("A bill needs at least one line item")

    lines: List[PricedLine] = [price_line(item) for item in line_items]
    items_total = sum_money(line.total for line in lines)
    other_charges_total = sum_money(_apply_adjustment(charge, items_total) for charge in charges)
    discount_total = sum_money(_apply_adjustment(discount, items_total) for discount in discounts)
    grand_total = items_total + other_charges_total - discount_total
    if grand_total.is_negative():
        raise InvalidAmount(
            f"Discounts ({discount_total}) exceed the bill amount ({items_total + other_charges_total})"
        )

    log.debug(
        "Priced bill: items=%s charges=%s discounts=%s grand_total=%s",
        items_total,
        other_charges_total,
        discount_total,
        grand_total,
    )
    return BillTotals(
        lines=lines,
        items_total=items_total,
        other_charges_total=other_charges_total,
        discount_total=discount_total,
        grand_total=grand_total,
    )


__all__ = [
    "LineItem",
    "Adjustment",
    "PricedLine",
    "BillTotals",
    "price_line",
    "compute_bill_totals",
]
