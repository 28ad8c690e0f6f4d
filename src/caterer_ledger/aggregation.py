"""Balance aggregation over a caterer's full sale and payment history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Sequence

from . import log
from .constants import PaymentStatus
from .data_manager import CatererRow, SaleRecord
from .money import ZERO, MoneyValue, sum_money
from .status import pending_amount, resolve_payment_status


@dataclass(frozen=True)
class CatererSummary:
    """Derived account figures cached on the caterer row."""

    balance_due: MoneyValue
    total_orders: int
    total_amount: MoneyValue
    last_order_date: Optional[date]

    @classmethod
    def from_caterer(cls, caterer: CatererRow) -> "CatererSummary":
        return cls(
            balance_due=caterer.balance_due,
            total_orders=caterer.total_orders,
            total_amount=caterer.total_amount,
            last_order_date=caterer.last_order_date,
        )


EMPTY_SUMMARY = CatererSummary(
    balance_due=ZERO,
    total_orders=0,
    total_amount=ZERO,
    last_order_date=None,
)


@dataclass(frozen=True)
class SaleSummary:
    """Per-bill figures shown in listings and returned after a payment."""

    sale_id: str
    bill_number: str
    grand_total: MoneyValue
    total_paid: MoneyValue
    pending: MoneyValue
    payment_count: int
    status: PaymentStatus


def total_paid(record: SaleRecord) -> MoneyValue:
    return sum_money(payment.amount_paid for payment in record.payments)


def summarize_sale(record: SaleRecord) -> SaleSummary:
    """Compute the paid, pending and effective status figures of one bill."""

    paid = total_paid(record)
    sale = record.sale
    return SaleSummary(
        sale_id=sale.sale_id,
        bill_number=sale.bill_number,
        grand_total=sale.grand_total,
        total_paid=paid,
        pending=pending_amount(sale.grand_total, paid),
        payment_count=len(record.payments),
        status=resolve_payment_status(sale.payment_status, sale.grand_total, paid),
    )


def recompute_summary(caterer_id: str, sales: Iterable[SaleRecord]) -> CatererSummary:
    """Rebuild a caterer's summary from the complete history.

    The computation is a pure function of ``sales``: it never starts from the
    previously cached figures, so recomputing the same history always yields
    the same summary no matter how writers interleaved before it.

    ``balance_due`` is lifetime billed minus lifetime paid and goes negative
    when the caterer has paid more than billed (a credit).

    Args:
        caterer_id (str): Caterer the history belongs to; used for logging and
            to ignore stray sales of other caterers.
        sales (Iterable[SaleRecord]): Every sale of the caterer with payments.

    Returns:
        CatererSummary: Freshly computed figures.
    """

    history: Sequence[SaleRecord] = [record for record in sales if record.sale.caterer_id == caterer_id]
    if not history:
        log.debug("Caterer '%s' has no sales; summary is empty", caterer_id)
        return EMPTY_SUMMARY

    billed = sum_money(record.sale.grand_total for record in history)
    paid = sum_money(total_paid(record) for record in history)
    summary = CatererSummary(
        balance_due=billed - paid,
        total_orders=len(history),
        total_amount=billed,
        last_order_date=max(record.sale.sell_date for record in history),
    )
    log.debug(
        "Recomputed caterer '%s': orders=%d billed=%s paid=%s balance=%s",
        caterer_id,
        summary.total_orders,
        billed,
        paid,
        summary.balance_due,
    )
    return summary


__all__ = [
    "CatererSummary",
    "EMPTY_SUMMARY",
    "SaleSummary",
    "total_paid",
    "summarize_sale",
    "recompute_summary",
]
