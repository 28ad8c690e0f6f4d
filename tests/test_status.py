"""Unit tests for bill status resolution."""

from __future__ import annotations

import pytest

from caterer_ledger.constants import PaymentStatus
from caterer_ledger.money import MoneyValue
from caterer_ledger.status import parse_stored_status, pending_amount, resolve_payment_status


def money(text: str) -> MoneyValue:
    return MoneyValue.parse(text)


@pytest.mark.parametrize(
    ("explicit", "grand_total", "paid", "expected"),
    [
        (None, "1000", "0", PaymentStatus.PENDING),
        (None, "1000", "400", PaymentStatus.PARTIAL),
        (None, "1000", "1000", PaymentStatus.PAID),
        (None, "1000", "1200", PaymentStatus.PAID),
        (None, "0", "0", PaymentStatus.PAID),
        (PaymentStatus.OVERDUE, "1000", "400", PaymentStatus.OVERDUE),
        (PaymentStatus.PAID, "1000", "0", PaymentStatus.PAID),
    ],
)
def test_resolve_payment_status(explicit, grand_total, paid, expected):
    """Explicit statuses win; otherwise the amounts decide."""

    assert resolve_payment_status(explicit, money(grand_total), money(paid)) is expected


def test_resolve_never_derives_overdue():
    derived = {
        resolve_payment_status(None, money(total), money(paid))
        for total, paid in [("10", "0"), ("10", "5"), ("10", "10")]
    }
    assert PaymentStatus.OVERDUE not in derived


def test_pending_amount_clamps_overpayment_to_zero():
    assert pending_amount(money("1000"), money("1200")).is_zero()
    assert pending_amount(money("1000"), money("400")) == money("600")


@pytest.mark.parametrize("raw", [None, "", "  ", "unknown", "UNKNOWN", "none", "null"])
def test_parse_stored_status_treats_blank_and_unknown_as_unset(raw):
    assert parse_stored_status(raw) is None


def test_parse_stored_status_reads_known_values():
    assert parse_stored_status(" Overdue ") is PaymentStatus.OVERDUE
    assert parse_stored_status(PaymentStatus.PAID) is PaymentStatus.PAID


def test_parse_stored_status_rejects_garbage():
    with pytest.raises(ValueError):
        parse_stored_status("settled-ish")
