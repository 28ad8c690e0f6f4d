"""Unit tests for rebuilding caterer summaries from history."""

from __future__ import annotations

from datetime import date

from caterer_ledger.aggregation import (
    EMPTY_SUMMARY,
    CatererSummary,
    recompute_summary,
    summarize_sale,
)
from caterer_ledger.constants import PaymentStatus
from caterer_ledger.data_manager import CatererRow, PaymentRow, SaleRecord, SaleRow
from caterer_ledger.money import ZERO, MoneyValue


def _sale(sale_id: str, total: str, *, caterer_id: str = "C1", sell_date: date = date(2026, 1, 1), status=None) -> SaleRow:
    amount = MoneyValue.parse(total)
    return SaleRow(
        sale_id=sale_id,
        caterer_id=caterer_id,
        bill_number=f"#{sale_id[-4:]}",
        sell_date=sell_date,
        items_total=amount,
        other_charges_total=ZERO,
        discount_total=ZERO,
        grand_total=amount,
        payment_status=status,
        notes=None,
        created_at_iso="2026-01-01T00:00:00+00:00",
    )


def _payment(sale_id: str, amount: str, index: int = 0) -> PaymentRow:
    return PaymentRow(
        payment_id=f"P{sale_id}{index}",
        sale_id=sale_id,
        paid_at_iso="2026-01-02T00:00:00+00:00",
        payment_method="cash",
        amount_paid=MoneyValue.parse(amount),
        reference_number=None,
        notes=None,
        receipt_image=None,
    )


def test_recompute_summary_two_sales_one_partial_payment():
    """Billed 1000 + 500 with 400 paid leaves 1100 due."""

    history = [
        SaleRecord(_sale("S0001", "1000.00", sell_date=date(2026, 1, 1)), payments=(_payment("S0001", "400.00"),)),
        SaleRecord(_sale("S0002", "500.00", sell_date=date(2026, 1, 5))),
    ]

    summary = recompute_summary("C1", history)

    assert summary == CatererSummary(
        balance_due=MoneyValue.parse("1100.00"),
        total_orders=2,
        total_amount=MoneyValue.parse("1500.00"),
        last_order_date=date(2026, 1, 5),
    )


def test_recompute_summary_without_sales_is_empty():
    summary = recompute_summary("C1", [])
    assert summary == EMPTY_SUMMARY
    assert summary.balance_due.is_zero()
    assert summary.last_order_date is None


def test_recompute_summary_allows_credit_balance():
    """Overpayment shows up as a negative balance."""

    history = [SaleRecord(_sale("S0001", "1000.00"), payments=(_payment("S0001", "1200.00"),))]
    assert recompute_summary("C1", history).balance_due == MoneyValue.parse("-200.00")


def test_recompute_summary_ignores_other_caterers():
    history = [
        SaleRecord(_sale("S0001", "100.00")),
        SaleRecord(_sale("S0002", "900.00", caterer_id="C2")),
    ]
    summary = recompute_summary("C1", history)
    assert summary.total_orders == 1
    assert summary.total_amount == MoneyValue.parse("100.00")


def test_recompute_summary_is_idempotent():
    history = [
        SaleRecord(_sale("S0001", "250.25"), payments=(_payment("S0001", "0.25"), _payment("S0001", "50.00", 1))),
    ]
    assert recompute_summary("C1", history) == recompute_summary("C1", history)


def test_recompute_summary_sums_a_thousand_cent_payments_exactly():
    payments = tuple(_payment("S0001", "0.01", index) for index in range(1000))
    history = [SaleRecord(_sale("S0001", "10.00"), payments=payments)]

    summary = recompute_summary("C1", history)

    assert summary.balance_due == ZERO
    assert summarize_sale(history[0]).status is PaymentStatus.PAID


def test_summarize_sale_reports_pending_and_status():
    record = SaleRecord(_sale("S0001", "1000.00"), payments=(_payment("S0001", "400.00"),))

    bill = summarize_sale(record)

    assert bill.total_paid == MoneyValue.parse("400.00")
    assert bill.pending == MoneyValue.parse("600.00")
    assert bill.payment_count == 1
    assert bill.status is PaymentStatus.PARTIAL


def test_summarize_sale_respects_explicit_overdue():
    record = SaleRecord(_sale("S0001", "1000.00", status=PaymentStatus.OVERDUE), payments=(_payment("S0001", "400.00"),))
    assert summarize_sale(record).status is PaymentStatus.OVERDUE


def test_summary_from_caterer_copies_cached_columns():
    row = CatererRow(
        caterer_id="C1",
        caterer_name="Test",
        contact_person=None,
        phone_number=None,
        email=None,
        address=None,
        gst_number=None,
        balance_due=MoneyValue.parse("10.00"),
        total_orders=3,
        total_amount=MoneyValue.parse("30.00"),
        last_order_date=date(2026, 2, 2),
        is_active=True,
    )
    summary = CatererSummary.from_caterer(row)
    assert summary.balance_due == MoneyValue.parse("10.00")
    assert summary.total_orders == 3
    assert summary.last_order_date == date(2026, 2, 2)
