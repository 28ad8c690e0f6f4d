"""Business logic layer for the caterer ledger.

This module reconciles caterer balances with their bills and payments. It
consumes the Data Access Layer (DAL) for all workbook I/O, applies the domain
rules, and keeps the derived caterer columns (``BalanceDue``, ``TotalOrders``,
``TotalAmount``, ``LastOrderDate``) in step with the transactional history.

Every mutation follows the same shape:

1. Validate the request before anything is written.
2. Take the caterer's lock so recomputes of the same caterer never interleave.
3. Apply the writes inside a unit of work that saves the workbook atomically
   on success and reloads it from disk on any failure.
"""

from __future__ import annotations

import re
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, receipts
from .aggregation import CatererSummary, SaleSummary, recompute_summary, summarize_sale
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    PAYMENT_METHOD_ALIASES,
    PaymentMethod,
    PaymentOption,
    PaymentStatus,
)
from .errors import (
    BillAlreadySettled,
    BusinessRuleViolation,
    CatererNotFound,
    ConcurrentUpdateConflict,
    InvalidAmount,
    PaymentExceedsBalance,
    ReferentialIntegrityError,
    SaleNotFound,
    StoreUnavailable,
)
from .money import ZERO, MoneyInput, MoneyValue
from .pricing import Adjustment, LineItem, compute_bill_totals


@dataclass
class RuntimeContext:
    """Configuration, the live workbook, and the locks guarding it.

    ``workbook`` is replaced in place when a failed unit of work rolls back, so
    callers must always go through the context rather than keep their own
    reference to the workbook.
    ``needs_reload`` is set when that rollback itself fails; the workbook then
    holds abandoned writes and is reloaded before anything touches it again.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store_lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _caterer_locks: Dict[str, threading.Lock] = field(default_factory=dict, repr=False, compare=False)
    _registry_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    needs_reload: bool = field(default=False, compare=False)

    def caterer_lock(self, caterer_id: str) -> threading.Lock:
        """Return the lock serializing recomputes of ``caterer_id``."""

        with self._registry_lock:
            lock = self._caterer_locks.get(caterer_id)
            if lock is None:
                lock = threading.Lock()
                self._caterer_locks[caterer_id] = lock
            return lock


@dataclass(frozen=True)
class NewCatererCommand:
    """User intent for registering a caterer."""

    caterer_id: str
    caterer_name: str
    contact_person: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    gst_number: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class SaleCommand:
    """User intent for billing a caterer."""

    caterer_id: str
    line_items: Sequence[LineItem]
    charges: Sequence[Adjustment] = ()
    discounts: Sequence[Adjustment] = ()
    bill_number: Optional[str] = None
    sell_date: Optional[date] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReceiptUpload:
    """Raw receipt image attached to a payment."""

    data: bytes
    content_type: str
    filename: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment against a bill."""

    sale_id: str
    amount: Union[MoneyInput, MoneyValue]
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    receipt: Optional[ReceiptUpload] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentReceipt:
    """Outcome of :func:`record_payment`."""

    caterer_id: str
    payment: data_manager.PaymentRow
    sale: SaleSummary
    caterer_summary: CatererSummary


@dataclass(frozen=True)
class SaleDetails:
    """A bill with its lines, payments and computed figures."""

    record: data_manager.SaleRecord
    summary: SaleSummary


@dataclass(frozen=True)
class SaleFilters:
    """Filters accepted by :func:`list_sales`; all bounds are inclusive."""

    search: Optional[str] = None
    status: Optional[PaymentStatus] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    min_amount: Optional[MoneyValue] = None
    max_amount: Optional[MoneyValue] = None
    page: int = 1
    limit: int = 20


@dataclass(frozen=True)
class SalesPage:
    entries: List[SaleDetails]
    total: int
    page: int
    limit: int


_TRUE_FLAGS = frozenset({"true", "yes", "1"})
_FALSE_FLAGS = frozenset({"false", "no", "0"})


# Caterer attributes that may be edited, mapped to their sheet columns. The
# derived summary columns are deliberately absent.
CATERER_PROFILE_FIELDS: Mapping[str, str] = {
    "caterer_name": "CatererName",
    "contact_person": "ContactPerson",
    "phone_number": "PhoneNumber",
    "email": "Email",
    "address": "Address",
    "gst_number": "GSTNumber",
    "is_active": "IsActive",
}


def parse_flag(raw: Any, label: str) -> bool:
    """Accept a real boolean or one of ``true``/``false``, ``yes``/``no``, ``1``/``0``."""
    if isinstance(raw, bool):
        return raw
    key = str(raw).strip().lower() if isinstance(raw, (str, int)) else None
    if key in _TRUE_FLAGS:
        return True
    if key in _FALSE_FLAGS:
        return False
    raise BusinessRuleViolation(f"{label} must be true or false, got {raw!r}")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when it is ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Settings, workbook and fresh locks.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Atomically write the in-memory workbook to the configured data file.

    Raises:
        StoreUnavailable: If the file cannot be written, or the context is
            marked for reload. The caller may retry.
    """
    if context.needs_reload:
        raise StoreUnavailable("Workbook holds abandoned changes and must be reloaded first")
    try:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    except OSError as exc:
        log.error("Could not persist workbook '%s': %s", context.settings.data_file, exc)
        raise StoreUnavailable(f"Could not write workbook: {exc}") from exc
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, keeping settings and locks.

    Raises:
        StoreUnavailable: If the file cannot be read. The context stays marked
            for reload so no later operation sees the discarded workbook.
    """
    with context.store_lock:
        try:
            context.workbook = data_manager.refresh_workbook(context.settings.data_file)
        except (OSError, StoreUnavailable) as exc:
            context.needs_reload = True
            log.error("Could not reload workbook '%s': %s", context.settings.data_file, exc)
            raise StoreUnavailable(f"Could not read workbook: {exc}") from exc
        context.needs_reload = False
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return context


@contextmanager
def _caterer_scope(context: RuntimeContext, caterer_id: str) -> Iterator[None]:
    """Hold the caterer's lock from history read to summary write."""

    lock = context.caterer_lock(caterer_id)
    if not lock.acquire(timeout=context.settings.lock_timeout_seconds):
        log.warning("Timed out waiting for caterer '%s' lock", caterer_id)
        raise ConcurrentUpdateConflict(
            f"Caterer '{caterer_id}' is being updated by another request; retry later"
        )
    try:
        yield
    finally:
        lock.release()


@contextmanager
def _unit_of_work(context: RuntimeContext) -> Iterator[Workbook]:
    """Apply writes and save them together, or not at all.

    On any exception, including cancellation, the workbook is reloaded from
    the last saved file before the exception propagates. If that reload fails
    too, the context is marked stale and the caller gets ``StoreUnavailable``.
    """

    with context.store_lock:
        if context.needs_reload:
            refresh_context(context)
        try:
            yield context.workbook
            persist_context(context)
        except BaseException as exc:
            log.warning("Rolling back unsaved workbook changes")
            try:
                refresh_context(context)
            except StoreUnavailable as reload_error:
                raise StoreUnavailable(f"Rollback failed, workbook marked for reload: {reload_error}") from exc
            raise


@contextmanager
def _read_scope(context: RuntimeContext) -> Iterator[Workbook]:
    """Yield the live workbook under the store lock, reloading it first if stale."""

    with context.store_lock:
        if context.needs_reload:
            refresh_context(context)
        yield context.workbook


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Build a sortable identifier such as ``P20261018093000123456A1B2``.

    The timestamp keeps identifiers in creation order; the random tail keeps
    them unique when two requests share a microsecond.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{secrets.token_hex(2).upper()}"


def require_positive_money(amount: MoneyValue) -> None:
    """Raise :class:`InvalidAmount` unless ``amount`` is greater than zero."""
    if not amount.is_positive():
        log.error("Amount validation failed: %s", amount)
        raise InvalidAmount("Amount must be greater than zero")


def require_nonnegative_money(amount: MoneyValue) -> None:
    if amount.is_negative():
        log.error("Amount validation failed: %s", amount)
        raise InvalidAmount("Amount must be zero or positive")


def normalize_payment_method(raw: Optional[str], default: PaymentMethod = PaymentMethod.CASH) -> PaymentMethod:
    """Map operator input such as ``"Bank"`` or ``"check"`` to a method.

    Blank or unrecognised input falls back to ``default``.
    """
    if isinstance(raw, PaymentMethod):
        return raw
    key = str(raw or "").strip().lower()
    method = PAYMENT_METHOD_ALIASES.get(key)
    if method is None:
        if key:
            log.warning("Unknown payment method '%s'; using '%s'", raw, default.value)
        return default
    return method


def normalize_bill_number(raw: str) -> str:
    """Normalize ``"12"``, ``"#12"`` or ``"BILL-0012"`` to ``"#0012"``.

    Raises:
        BusinessRuleViolation: If ``raw`` contains no digits.
    """
    digits = re.sub(r"\D", "", str(raw or ""))
    if not digits:
        raise BusinessRuleViolation(f"Bill number must contain digits: {raw!r}")
    return "#" + str(int(digits)).zfill(4)


def _next_bill_number_locked(workbook: Workbook) -> str:
    highest = 0
    for sale in data_manager.iter_sales(workbook):
        digits = re.sub(r"\D", "", sale.bill_number)
        if digits:
            highest = max(highest, int(digits))
    return normalize_bill_number(str(highest + 1))


def next_bill_number(context: RuntimeContext) -> str:
    """Return the bill number the next sale would receive by default."""
    with _read_scope(context) as workbook:
        return _next_bill_number_locked(workbook)


def derive_payment_amount(
    option: Union[PaymentOption, str],
    outstanding: MoneyValue,
    custom_amount: Optional[Union[MoneyInput, MoneyValue]] = None,
) -> MoneyValue:
    """Turn a payment option into an amount.

    ``full`` pays the outstanding amount, ``half`` pays half of it truncated to
    two places, and ``custom`` uses ``custom_amount`` as typed.

    Raises:
        InvalidAmount: For ``custom`` without an amount, or malformed input.
        ValueError: For an unknown option.
    """
    chosen = option if isinstance(option, PaymentOption) else PaymentOption(str(option).strip().lower())
    if chosen is PaymentOption.FULL:
        return outstanding
    if chosen is PaymentOption.HALF:
        return MoneyValue.floor(outstanding.to_decimal() / Decimal(2))
    if custom_amount is None:
        raise InvalidAmount("A custom payment needs an amount")
    return MoneyValue.parse(custom_amount)


def _require_unsettled(summary: SaleSummary) -> None:
    if summary.status is PaymentStatus.PAID or summary.pending.is_zero():
        log.error("Payment rejected: bill '%s' is already settled", summary.bill_number)
        raise BillAlreadySettled(f"Bill {summary.bill_number} is already fully paid")


def payable_amount(context: RuntimeContext, sale_id: str) -> MoneyValue:
    """Return the outstanding amount of a bill that can still take a payment.

    Raises:
        SaleNotFound: If the sale id is unknown.
        BillAlreadySettled: If nothing is left to pay.
    """
    summary = summarize_sale(get_sale(context, sale_id))
    _require_unsettled(summary)
    return summary.pending


# ---------------------------------------------------------------------------
# Caterers
# ---------------------------------------------------------------------------


def get_caterer(context: RuntimeContext, caterer_id: str) -> data_manager.CatererRow:
    """Resolve a caterer by id.

    Raises:
        CatererNotFound: If the workbook has no such caterer.
    """
    with _read_scope(context) as workbook:
        caterer = data_manager.find_caterer(workbook, caterer_id)
    if caterer is None:
        log.warning("Caterer lookup failed for id '%s'", caterer_id)
        raise CatererNotFound(f"Unknown caterer id: {caterer_id}")
    return caterer


def list_caterers(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.CatererRow]:
    with _read_scope(context) as workbook:
        caterers = list(data_manager.iter_caterers(workbook))
    if include_inactive:
        return caterers
    return [caterer for caterer in caterers if caterer.is_active]


def add_caterer(context: RuntimeContext, command: NewCatererCommand) -> data_manager.CatererRow:
    """Register a caterer with an empty account.

    Raises:
        BusinessRuleViolation: If the id is blank or taken, the name is blank,
            or the email or GST number already belongs to another caterer.
    """
    caterer_id = command.caterer_id.strip()
    if not caterer_id:
        raise BusinessRuleViolation("Caterer id is required")
    if not command.caterer_name.strip():
        raise BusinessRuleViolation("Caterer name is required")

    record = data_manager.CatererRow(
        caterer_id=caterer_id,
        caterer_name=command.caterer_name.strip(),
        contact_person=command.contact_person,
        phone_number=command.phone_number,
        email=command.email,
        address=command.address,
        gst_number=command.gst_number,
        balance_due=ZERO,
        total_orders=0,
        total_amount=ZERO,
        last_order_date=None,
        is_active=command.is_active,
    )

    with _unit_of_work(context) as workbook:
        for existing in data_manager.iter_caterers(workbook):
            if existing.caterer_id == caterer_id:
                raise BusinessRuleViolation(f"Caterer id already exists: {caterer_id}")
            if command.email and existing.email and existing.email.lower() == command.email.lower():
                raise BusinessRuleViolation(f"Email already registered: {command.email}")
            if command.gst_number and existing.gst_number == command.gst_number:
                raise BusinessRuleViolation(f"GST number already registered: {command.gst_number}")
        data_manager.append_caterer(workbook, record)

    log.info("Added caterer '%s' (%s)", record.caterer_id, record.caterer_name)
    return record


def update_caterer(context: RuntimeContext, caterer_id: str, changes: Mapping[str, Any]) -> data_manager.CatererRow:
    """Edit profile fields of a caterer.

    Raises:
        BusinessRuleViolation: If ``changes`` names a derived or unknown field.
        CatererNotFound: If the caterer does not exist.
    """
    unknown = sorted(set(changes) - set(CATERER_PROFILE_FIELDS))
    if unknown:
        raise BusinessRuleViolation(f"Fields cannot be edited: {', '.join(unknown)}")
    if "caterer_name" in changes and not str(changes["caterer_name"] or "").strip():
        raise BusinessRuleViolation("Caterer name is required")
    if "is_active" in changes:
        changes = {**changes, "is_active": parse_flag(changes["is_active"], "is_active")}

    get_caterer(context, caterer_id)
    with _caterer_scope(context, caterer_id):
        with _unit_of_work(context) as workbook:
            data_manager.update_caterer(
                workbook,
                caterer_id,
                field_values={CATERER_PROFILE_FIELDS[name]: value for name, value in changes.items()},
            )
    log.info("Updated caterer '%s' fields: %s", caterer_id, ", ".join(sorted(changes)))
    return get_caterer(context, caterer_id)


def delete_caterer(context: RuntimeContext, caterer_id: str) -> None:
    """Delete a caterer that has never been billed.

    Sales history is never cascaded away: a caterer with any sale is kept and
    the request fails.

    Raises:
        CatererNotFound: If the caterer does not exist.
        ReferentialIntegrityError: If any sale references the caterer.
    """
    get_caterer(context, caterer_id)
    with _caterer_scope(context, caterer_id):
        with _unit_of_work(context) as workbook:
            sale_count = sum(1 for sale in data_manager.iter_sales(workbook) if sale.caterer_id == caterer_id)
            if sale_count:
                log.error("Refusing to delete caterer '%s' with %d sales", caterer_id, sale_count)
                raise ReferentialIntegrityError(
                    f"Caterer '{caterer_id}' has {sale_count} sale(s) and cannot be deleted; deactivate it instead"
                )
            data_manager.delete_caterer_row(workbook, caterer_id)
    log.info("Deleted caterer '%s'", caterer_id)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _recompute_and_save(workbook: Workbook, caterer_id: str) -> CatererSummary:
    history = data_manager.load_sales_with_payments(workbook, caterer_id)
    summary = recompute_summary(caterer_id, history)
    data_manager.save_caterer_summary(workbook, caterer_id, summary)
    return summary


def recompute_caterer(context: RuntimeContext, caterer_id: str) -> CatererSummary:
    """Rebuild and persist a caterer's summary from the full history.

    Raises:
        CatererNotFound: If the caterer does not exist.
    """
    get_caterer(context, caterer_id)
    with _caterer_scope(context, caterer_id):
        with _unit_of_work(context) as workbook:
            summary = _recompute_and_save(workbook, caterer_id)
    log.info(
        "Recomputed caterer '%s': balance_due=%s total_orders=%d",
        caterer_id,
        summary.balance_due,
        summary.total_orders,
    )
    return summary


def get_caterer_summary(context: RuntimeContext, caterer_id: str, *, refresh: bool = False) -> CatererSummary:
    """Return the caterer's stored summary, or recompute it first.

    The stored figures are kept current by every mutation in this module, so
    callers normally trust them; ``refresh=True`` forces a full recompute for
    workbooks edited by hand.

    Raises:
        CatererNotFound: If the caterer does not exist.
    """
    if refresh:
        return recompute_caterer(context, caterer_id)
    return CatererSummary.from_caterer(get_caterer(context, caterer_id))


def create_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRecord:
    """Bill a caterer and refresh the caterer's summary.

    The bill is priced by :func:`caterer_ledger.pricing.compute_bill_totals`,
    stored with its line items and no payments, and left without an explicit
    status so it resolves to ``pending`` (or ``paid`` for a zero total).

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (SaleCommand): Structured billing intent.

    Returns:
        data_manager.SaleRecord: The stored sale and its items.

    Raises:
        CatererNotFound: If the caterer does not exist.
        BusinessRuleViolation: If the caterer is inactive or the bill number
            is already used.
        InvalidAmount: If pricing rejects the lines, charges or discounts.
    """
    totals = compute_bill_totals(command.line_items, command.charges, command.discounts)
    caterer = get_caterer(context, command.caterer_id)
    if not caterer.is_active:
        log.warning("Attempted sale for inactive caterer '%s'", command.caterer_id)
        raise BusinessRuleViolation(f"Caterer '{command.caterer_id}' is inactive")

    timestamp = _resolve_timestamp(command.timestamp)
    requested_bill = normalize_bill_number(command.bill_number) if command.bill_number else None
    sale_id = generate_record_id("S", when=timestamp)

    with _caterer_scope(context, command.caterer_id):
        with _unit_of_work(context) as workbook:
            if requested_bill is None:
                bill_number = _next_bill_number_locked(workbook)
            else:
                bill_number = requested_bill
                if any(sale.bill_number == bill_number for sale in data_manager.iter_sales(workbook)):
                    raise BusinessRuleViolation(f"Bill number already used: {bill_number}")

            sale = data_manager.SaleRow(
                sale_id=sale_id,
                caterer_id=command.caterer_id,
                bill_number=bill_number,
                sell_date=command.sell_date or timestamp.date(),
                items_total=totals.items_total,
                other_charges_total=totals.other_charges_total,
                discount_total=totals.discount_total,
                grand_total=totals.grand_total,
                payment_status=None,
                notes=command.notes,
                created_at_iso=timestamp.isoformat(),
            )
            items = tuple(
                data_manager.SaleItemRow(
                    sale_id=sale_id,
                    product_name=line.item.product_name,
                    quantity=line.item.quantity,
                    unit=line.item.unit,
                    rate=line.item.rate,
                    gst_percentage=line.item.gst_percentage,
                    amount=line.total,
                )
                for line in totals.lines
            )
            data_manager.append_sale(workbook, sale)
            for item in items:
                data_manager.append_sale_item(workbook, item)
            summary = _recompute_and_save(workbook, command.caterer_id)

    log.info(
        "Created sale '%s' (%s) for caterer '%s': grand_total=%s, balance_due=%s",
        sale.sale_id,
        sale.bill_number,
        sale.caterer_id,
        sale.grand_total,
        summary.balance_due,
    )
    return data_manager.SaleRecord(sale=sale, payments=(), items=items)


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRecord:
    """Load a sale with its payments and items.

    Raises:
        SaleNotFound: If the sale id is unknown.
    """
    with _read_scope(context) as workbook:
        record = data_manager.load_sale_record(workbook, sale_id)
    if record is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise SaleNotFound(f"Unknown sale id: {sale_id}")
    return record


def get_sale_details(context: RuntimeContext, sale_id: str) -> SaleDetails:
    record = get_sale(context, sale_id)
    return SaleDetails(record=record, summary=summarize_sale(record))


def get_bill_status(context: RuntimeContext, sale_id: str) -> PaymentStatus:
    """Return the effective status of a bill.

    Raises:
        SaleNotFound: If the sale id is unknown.
    """
    return summarize_sale(get_sale(context, sale_id)).status


def record_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentReceipt:
    """Record a payment against a bill and reconcile the caterer's balance.

    The amount is validated before anything is touched. Under the caterer's
    lock the bill is re-read, the payment and optional receipt are stored, the
    bill is marked ``paid`` once nothing is outstanding, and the caterer
    summary is recomputed from the full history, all in one unit of work.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (PaymentCommand): Structured payment intent.

    Returns:
        PaymentReceipt: The stored payment, the bill's new figures and the
            caterer's new summary.

    Raises:
        InvalidAmount: If the amount is malformed or not greater than zero.
        SaleNotFound: If the sale id is unknown.
        BillAlreadySettled: If the bill is already paid.
        PaymentExceedsBalance: If the amount exceeds what is outstanding and
            overpayments are disabled.
        UnsupportedMedia: If the receipt image is rejected.
        ConcurrentUpdateConflict: If the caterer stays locked past the timeout.
        StoreUnavailable: If the workbook cannot be saved.
    """
    amount = MoneyValue.parse(command.amount)
    require_positive_money(amount)
    method = normalize_payment_method(command.payment_method, context.settings.default_payment_method)
    sale = get_sale(context, command.sale_id).sale

    with _caterer_scope(context, sale.caterer_id):
        current = summarize_sale(get_sale(context, command.sale_id))
        _require_unsettled(current)
        if amount > current.pending and not context.settings.allow_overpayment:
            symbol = context.settings.currency_symbol
            log.error(
                "Payment rejected: %s exceeds outstanding %s on bill '%s'",
                amount,
                current.pending,
                sale.bill_number,
            )
            raise PaymentExceedsBalance(
                f"Payment amount ({amount.to_display_string(symbol)}) exceeds outstanding balance "
                f"of {current.pending.to_display_string(symbol)}"
            )

        receipt_ref: Optional[str] = None
        if command.receipt is not None:
            receipt_ref = receipts.store_receipt_image(
                context.settings.receipts_dir,
                command.receipt.data,
                command.receipt.content_type,
                filename=command.receipt.filename,
                max_bytes=context.settings.receipt_max_bytes,
            )

        timestamp = _resolve_timestamp(command.timestamp)
        payment = data_manager.PaymentRow(
            payment_id=generate_record_id("P", when=timestamp),
            sale_id=command.sale_id,
            paid_at_iso=timestamp.isoformat(),
            payment_method=method.value,
            amount_paid=amount,
            reference_number=command.reference_number,
            notes=command.notes,
            receipt_image=receipt_ref,
        )
        try:
            with _unit_of_work(context) as workbook:
                data_manager.append_payment(workbook, payment)
                record = data_manager.load_sale_record(workbook, command.sale_id)
                bill = summarize_sale(record)
                if bill.pending.is_zero():
                    data_manager.update_sale(
                        workbook,
                        command.sale_id,
                        field_values={"PaymentStatus": PaymentStatus.PAID.value},
                    )
                    bill = replace(bill, status=PaymentStatus.PAID)
                caterer_summary = _recompute_and_save(workbook, sale.caterer_id)
        except BaseException:
            if receipt_ref is not None:
                receipts.discard_receipt_image(context.settings.receipts_dir, receipt_ref)
            raise

    log.info(
        "Recorded payment '%s' of %s on bill '%s' (%s): status=%s pending=%s balance_due=%s",
        payment.payment_id,
        amount,
        sale.bill_number,
        method.value,
        bill.status.value,
        bill.pending,
        caterer_summary.balance_due,
    )
    return PaymentReceipt(
        caterer_id=sale.caterer_id,
        payment=payment,
        sale=bill,
        caterer_summary=caterer_summary,
    )


def mark_overdue(context: RuntimeContext, sale_id: str) -> PaymentStatus:
    """Set the explicit ``overdue`` status on an unpaid bill.

    This is the hook for the external due-date process; the ledger itself
    never decides that a bill is overdue. Marking an already overdue bill is a
    no-op.

    Raises:
        SaleNotFound: If the sale id is unknown.
        BillAlreadySettled: If the bill is paid.
    """
    sale = get_sale(context, sale_id).sale
    with _caterer_scope(context, sale.caterer_id):
        current = summarize_sale(get_sale(context, sale_id))
        if current.status is PaymentStatus.OVERDUE:
            return current.status
        if current.status is PaymentStatus.PAID:
            raise BillAlreadySettled(f"Bill {sale.bill_number} is paid and cannot become overdue")
        with _unit_of_work(context) as workbook:
            data_manager.update_sale(
                workbook,
                sale_id,
                field_values={"PaymentStatus": PaymentStatus.OVERDUE.value},
            )
    log.info("Marked bill '%s' overdue", sale.bill_number)
    return PaymentStatus.OVERDUE


def _matches(details: SaleDetails, filters: SaleFilters) -> bool:
    sale = details.record.sale
    if filters.search:
        needle = filters.search.lower()
        haystack = f"{sale.bill_number} {sale.notes or ''}".lower()
        if needle not in haystack:
            return False
    if filters.status is not None and details.summary.status is not filters.status:
        return False
    if filters.date_from is not None and sale.sell_date < filters.date_from:
        return False
    if filters.date_to is not None and sale.sell_date > filters.date_to:
        return False
    if filters.min_amount is not None and sale.grand_total < filters.min_amount:
        return False
    if filters.max_amount is not None and sale.grand_total > filters.max_amount:
        return False
    return True


def list_sales(context: RuntimeContext, caterer_id: str, filters: Optional[SaleFilters] = None) -> SalesPage:
    """Return one page of a caterer's bills, newest first.

    Raises:
        CatererNotFound: If the caterer does not exist.
        ValueError: If ``page`` or ``limit`` is below one.
    """
    filters = filters or SaleFilters()
    if filters.page < 1 or filters.limit < 1:
        raise ValueError("page and limit must be at least 1")

    get_caterer(context, caterer_id)
    with _read_scope(context) as workbook:
        history = data_manager.load_sales_with_payments(workbook, caterer_id)

    matching = [
        details
        for details in (SaleDetails(record=record, summary=summarize_sale(record)) for record in history)
        if _matches(details, filters)
    ]
    matching.sort(
        key=lambda details: (details.record.sale.sell_date, details.record.sale.created_at_iso),
        reverse=True,
    )
    start = (filters.page - 1) * filters.limit
    return SalesPage(
        entries=matching[start:start + filters.limit],
        total=len(matching),
        page=filters.page,
        limit=filters.limit,
    )
