"""Unit tests for bill total calculation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from caterer_ledger.constants import ChargeType
from caterer_ledger.errors import InvalidAmount
from caterer_ledger.money import MoneyValue
from caterer_ledger.pricing import Adjustment, LineItem, compute_bill_totals, price_line


def test_price_line_floors_amount_and_gst():
    """1.333 kg at 10.00 with 5% GST is 13.33 + 0.66."""

    line = price_line(LineItem("Turmeric", Decimal("1.333"), Decimal("10.00"), gst_percentage=Decimal("5")))

    assert line.amount == MoneyValue.parse("13.33")
    assert line.gst_amount == MoneyValue.parse("0.66")
    assert line.total == MoneyValue.parse("13.99")


def test_compute_bill_totals_applies_charges_and_discounts():
    totals = compute_bill_totals(
        [
            LineItem("Rice", Decimal("10"), Decimal("80.00")),
            LineItem("Dal", Decimal("5"), Decimal("120.00")),
        ],
        charges=[Adjustment("Transport", Decimal("150"))],
        discounts=[Adjustment("Festive", Decimal("10"), ChargeType.PERCENTAGE)],
    )

    assert totals.items_total == MoneyValue.parse("1400.00")
    assert totals.other_charges_total == MoneyValue.parse("150.00")
    assert totals.discount_total == MoneyValue.parse("140.00")
    assert totals.grand_total == MoneyValue.parse("1410.00")
    assert len(totals.lines) == 2


def test_compute_bill_totals_requires_lines():
    with pytest.raises(InvalidAmount):
        compute_bill_totals([])


def test_compute_bill_totals_rejects_discount_above_bill():
    with pytest.raises(InvalidAmount):
        compute_bill_totals(
            [LineItem("Rice", Decimal("1"), Decimal("100"))],
            discounts=[Adjustment("Too much", Decimal("150"))],
        )


@pytest.mark.parametrize(
    "item",
    [
        LineItem("Rice", Decimal("0"), Decimal("10")),
        LineItem("Rice", Decimal("1"), Decimal("-1")),
        LineItem("Rice", Decimal("1"), Decimal("1"), gst_percentage=Decimal("-5")),
    ],
)
def test_price_line_rejects_invalid_inputs(item):
    with pytest.raises(InvalidAmount):
        price_line(item)


def test_fixed_adjustment_with_sub_cent_value_is_rejected():
    with pytest.raises(InvalidAmount):
        compute_bill_totals(
            [LineItem("Rice", Decimal("1"), Decimal("100"))],
            charges=[Adjustment("Packing", Decimal("0.005"))],
        )


@pytest.mark.parametrize(
    "item",
    [
        LineItem("Rice", Decimal("NaN"), Decimal("10")),
        LineItem("Rice", Decimal("1"), Decimal("Infinity")),
        LineItem("Rice", Decimal("1"), Decimal("10"), gst_percentage=Decimal("sNaN")),
    ],
)
def test_price_line_rejects_non_finite_numbers(item):
    with pytest.raises(InvalidAmount):
        price_line(item)


@pytest.mark.parametrize("value", [Decimal("NaN"), Decimal("-Infinity")])
def test_non_finite_adjustment_is_rejected(value):
    with pytest.raises(InvalidAmount):
        compute_bill_totals(
            [LineItem("Rice", Decimal("1"), Decimal("100"))],
            discounts=[Adjustment("Festive", value, ChargeType.PERCENTAGE)],
        )
