"""Payment status resolution for caterer bills."""

from __future__ import annotations

from typing import Optional

from . import log
from .constants import UNSET_STATUS_MARKERS, PaymentStatus
from .money import ZERO, MoneyValue


def parse_stored_status(raw: object) -> Optional[PaymentStatus]:
    """Interpret a persisted status cell.

    Blank cells and the legacy ``unknown`` marker mean no explicit status was
    recorded and come back as ``None``. Anything else must name a
    :class:`PaymentStatus`.

    Raises:
        ValueError: If the cell holds text that is neither unset nor a status.
    """

    if raw is None:
        return None
    if isinstance(raw, PaymentStatus):
        return raw
    text = str(raw).strip().lower()
    if text in UNSET_STATUS_MARKERS:
        return None
    try:
        return PaymentStatus(text)
    except ValueError as exc:
        raise ValueError(f"Unrecognised payment status: {raw!r}") from exc


def pending_amount(grand_total: MoneyValue, total_paid: MoneyValue) -> MoneyValue:
    """Outstanding amount of a bill, clamped at zero for overpayments."""

    return MoneyValue.max_of(grand_total - total_paid, ZERO)


def resolve_payment_status(
    explicit_status: Optional[PaymentStatus],
    grand_total: MoneyValue,
    total_paid: MoneyValue,
) -> PaymentStatus:
    """Derive the effective status of a bill.

    A stored explicit status always wins. Without one the status follows from
    the amounts: nothing outstanding is ``paid``, something outstanding with
    money received is ``partial``, and nothing received is ``pending``.
    ``overdue`` is never derived here; it only arrives as an explicit status
    set by the due-date process.

    Args:
        explicit_status: Status persisted on the bill, or ``None`` when unset.
        grand_total: Billed amount.
        total_paid: Sum of all payments recorded against the bill.

    Returns:
        PaymentStatus: The status to show and act upon.
    """

    if explicit_status is not None:
        return explicit_status

    pending = pending_amount(grand_total, total_paid)
    if pending.is_zero():
        status = PaymentStatus.PAID
    elif total_paid.is_positive():
        status = PaymentStatus.PARTIAL
    else:
        status = PaymentStatus.PENDING
    log.debug(
        "Derived status %s (grand_total=%s, total_paid=%s, pending=%s)",
        status.value,
        grand_total,
        total_paid,
        pending,
    )
    return status


__all__ = ["parse_stored_status", "pending_amount", "resolve_payment_status"]
