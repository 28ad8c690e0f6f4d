"""Data access layer for the caterer ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules belong in :mod:`caterer_ledger.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and atomically persisting the Excel file.
3. Sheet operations: loading typed records and appending or updating rows in
   the ``Caterers``, ``Sales``, ``SaleItems`` and ``Payments`` sheets.
"""


from __future__ import annotations

import configparser
import os
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_CURRENCY_SYMBOL,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_RECEIPT_MAX_BYTES,
    PaymentMethod,
    PaymentStatus,
    SheetName,
)
from .errors import StoreUnavailable
from .money import ZERO, MoneyValue
from .status import parse_stored_status

if TYPE_CHECKING:
    from .aggregation import CatererSummary


CONFIG_FILE_NAME = "config.ini"
CATERERS_SHEET = SheetName.CATERERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    receipts_dir: Path
    receipt_max_bytes: int = DEFAULT_RECEIPT_MAX_BYTES
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    allow_overpayment: bool = False
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    default_payment_method: PaymentMethod = PaymentMethod.CASH


@dataclass(frozen=True)
class CatererRow:
    """In-memory view of a row from the ``Caterers`` sheet."""

    caterer_id: str
    caterer_name: str
    contact_person: Optional[str]
    phone_number: Optional[str]
    email: Optional[str]
    address: Optional[str]
    gst_number: Optional[str]
    balance_due: MoneyValue
    total_orders: int
    total_amount: MoneyValue
    last_order_date: Optional[date]
    is_active: bool


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    caterer_id: str
    bill_number: str
    sell_date: date
    items_total: MoneyValue
    other_charges_total: MoneyValue
    discount_total: MoneyValue
    grand_total: MoneyValue
    payment_status: Optional[PaymentStatus]
    notes: Optional[str]
    created_at_iso: str


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_id: str
    product_name: str
    quantity: Decimal
    unit: str
    rate: Decimal
    gst_percentage: Decimal
    amount: MoneyValue


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    sale_id: str
    paid_at_iso: str
    payment_method: str
    amount_paid: MoneyValue
    reference_number: Optional[str]
    notes: Optional[str]
    receipt_image: Optional[str]


@dataclass(frozen=True)
class SaleRecord:
    """A sale together with its line items and payments in sheet order."""

    sale: SaleRow
    payments: Tuple[PaymentRow, ...] = ()
    items: Tuple[SaleItemRow, ...] = ()


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the ledger behaves.

    An explicit path is returned as-is. Otherwise the search walks upward from
    the current working directory and returns the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The supplied or discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _anchor_path(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Receipts]``, ``[Billing]`` and
    ``[Defaults]`` are optional and fall back to the package defaults. Relative
    paths are anchored to ``base_path`` (normally the directory holding the
    config file) or the current working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` and receipt
            directory entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If an optional entry holds an unusable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    receipts_raw = parser.get("Receipts", "Directory", fallback="receipts")
    max_bytes = parser.getint("Receipts", "MaxBytes", fallback=DEFAULT_RECEIPT_MAX_BYTES)
    if max_bytes <= 0:
        raise ValueError(f"Receipts.MaxBytes must be positive, got {max_bytes}")

    lock_timeout = parser.getfloat("Billing", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if lock_timeout <= 0:
        raise ValueError(f"Billing.LockTimeoutSeconds must be positive, got {lock_timeout}")

    method_raw = parser.get("Defaults", "PaymentMethod", fallback=PaymentMethod.CASH.value)
    try:
        default_method = PaymentMethod(method_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown default payment method: {method_raw}") from exc

    return ConfigSettings(
        data_file=_anchor_path(data_file_raw, base_path),
        business_name=business_name,
        schema_version=schema_version,
        receipts_dir=_anchor_path(receipts_raw, base_path),
        receipt_max_bytes=max_bytes,
        currency_symbol=parser.get("Billing", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL),
        allow_overpayment=parser.getboolean("Billing", "AllowOverpayment", fallback=False),
        lock_timeout_seconds=lock_timeout,
        default_payment_method=default_method,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        StoreUnavailable: If the file exists but cannot be read.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        wb = openpyxl.load_workbook(data_file)
    except OSError as exc:
        log.error("Could not read workbook '%s': %s", data_file, exc)
        raise StoreUnavailable(f"Could not read workbook: {exc}") from exc
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is first written to a temporary sibling file and then moved
    over the destination with :func:`os.replace`, so readers only ever see the
    previous or the new complete file.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    temporary = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
    try:
        workbook.save(temporary)
        os.replace(temporary, dest)
        log.debug("Workbook written to '%s'", dest)
    finally:
        if temporary.exists():
            temporary.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_caterers(workbook: Workbook) -> Iterable[CatererRow]:
    """Yield typed caterer rows in sheet order."""

    for raw in _iter_sheet(workbook, CATERERS_SHEET):
        yield deserialize_caterer(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Yield typed sale rows in sheet order."""

    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Yield typed sale item rows in sheet order."""

    for raw in _iter_sheet(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    """Yield typed payment rows in sheet order."""

    for raw in _iter_sheet(workbook, PAYMENTS_SHEET):
        yield deserialize_payment(raw)


def find_caterer(workbook: Workbook, caterer_id: str) -> Optional[CatererRow]:
    for caterer in iter_caterers(workbook):
        if caterer.caterer_id == caterer_id:
            return caterer
    return None


def find_sale(workbook: Workbook, sale_id: str) -> Optional[SaleRow]:
    for sale in iter_sales(workbook):
        if sale.sale_id == sale_id:
            return sale
    return None


def load_sale_record(workbook: Workbook, sale_id: str) -> Optional[SaleRecord]:
    """Return one sale with its items and payments, or ``None`` if unknown."""

    sale = find_sale(workbook, sale_id)
    if sale is None:
        return None
    payments = tuple(payment for payment in iter_payments(workbook) if payment.sale_id == sale_id)
    items = tuple(item for item in iter_sale_items(workbook) if item.sale_id == sale_id)
    return SaleRecord(sale=sale, payments=payments, items=items)


def load_sales_with_payments(workbook: Workbook, caterer_id: str) -> List[SaleRecord]:
    """Load every sale of a caterer together with its payments and items.

    The result is the complete history the balance aggregator recomputes from.
    Payments and items are grouped by ``SaleID`` in a single pass over each
    sheet so the cost stays linear in the workbook size.

    Args:
        workbook (Workbook): Workbook holding the ledger sheets.
        caterer_id (str): Caterer whose history should be loaded.

    Returns:
        list[SaleRecord]: Sales in sheet order; empty when the caterer has none.
    """

    sales = [sale for sale in iter_sales(workbook) if sale.caterer_id == caterer_id]
    if not sales:
        return []

    sale_ids = {sale.sale_id for sale in sales}
    payments_by_sale: Dict[str, List[PaymentRow]] = defaultdict(list)
    for payment in iter_payments(workbook):
        if payment.sale_id in sale_ids:
            payments_by_sale[payment.sale_id].append(payment)
    items_by_sale: Dict[str, List[SaleItemRow]] = defaultdict(list)
    for item in iter_sale_items(workbook):
        if item.sale_id in sale_ids:
            items_by_sale[item.sale_id].append(item)

    return [
        SaleRecord(
            sale=sale,
            payments=tuple(payments_by_sale[sale.sale_id]),
            items=tuple(items_by_sale[sale.sale_id]),
        )
        for sale in sales
    ]


def save_caterer_summary(workbook: Workbook, caterer_id: str, summary: "CatererSummary") -> None:
    """Write the derived summary columns of one caterer row."""

    update_caterer(
        workbook,
        caterer_id,
        field_values={
            "BalanceDue": summary.balance_due.to_decimal(),
            "TotalOrders": summary.total_orders,
            "TotalAmount": summary.total_amount.to_decimal(),
            "LastOrderDate": summary.last_order_date.isoformat() if summary.last_order_date else None,
        },
    )


def append_caterer(workbook: Workbook, record: CatererRow) -> None:
    workbook[CATERERS_SHEET].append(serialize_caterer(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_item(workbook: Workbook, record: SaleItemRow) -> None:
    workbook[SALE_ITEMS_SHEET].append(serialize_sale_item(record))


def append_payment(workbook: Workbook, record: PaymentRow) -> None:
    """Append a payment row; amounts are written as ``Decimal`` values."""

    workbook[PAYMENTS_SHEET].append(serialize_payment(record))


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Only the named columns are written; the rest of the row is untouched.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_caterer(workbook: Workbook, caterer_id: str, *, field_values: Dict[str, Any]) -> None:
    update_row(workbook, CATERERS_SHEET, "CatererID", caterer_id, field_values=field_values)


def update_sale(workbook: Workbook, sale_id: str, *, field_values: Dict[str, Any]) -> None:
    update_row(workbook, SALES_SHEET, "SaleID", sale_id, field_values=field_values)


def delete_caterer_row(workbook: Workbook, caterer_id: str) -> None:
    """Physically remove a caterer row. Callers must check for sales first.

    Raises:
        KeyError: If the caterer row does not exist.
    """

    row_index = locate_row(workbook, CATERERS_SHEET, "CatererID", caterer_id)
    if row_index is None:
        raise KeyError(f"Caterer not found: {caterer_id}")
    workbook[CATERERS_SHEET].delete_rows(row_index)


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    header_cells = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _money_cell(record: MoneyValue) -> Decimal:
    return record.to_decimal()


def _read_money(raw: object) -> MoneyValue:
    # openpyxl hands numeric cells back as int or float; str() of a float that
    # was written from a two-place Decimal reproduces that Decimal exactly.
    if raw is None or raw == "":
        return ZERO
    if isinstance(raw, (Decimal, int)) and not isinstance(raw, bool):
        return MoneyValue.parse(raw)
    return MoneyValue.parse(str(raw))


def _read_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _read_date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _read_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_caterer(record: CatererRow) -> list[object]:
    """Order caterer fields as the ``Caterers`` sheet columns."""

    return [
        record.caterer_id,
        record.caterer_name,
        record.contact_person,
        record.phone_number,
        record.email,
        record.address,
        record.gst_number,
        _money_cell(record.balance_due),
        record.total_orders,
        _money_cell(record.total_amount),
        record.last_order_date.isoformat() if record.last_order_date else None,
        record.is_active,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Order sale fields as the ``Sales`` sheet columns."""

    return [
        record.sale_id,
        record.caterer_id,
        record.bill_number,
        record.sell_date.isoformat(),
        _money_cell(record.items_total),
        _money_cell(record.other_charges_total),
        _money_cell(record.discount_total),
        _money_cell(record.grand_total),
        record.payment_status.value if record.payment_status else None,
        record.notes,
        record.created_at_iso,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_id,
        record.product_name,
        record.quantity,
        record.unit,
        record.rate,
        record.gst_percentage,
        _money_cell(record.amount),
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    return [
        record.payment_id,
        record.sale_id,
        record.paid_at_iso,
        record.payment_method,
        _money_cell(record.amount_paid),
        record.reference_number,
        record.notes,
        record.receipt_image,
    ]


def deserialize_caterer(raw_row: Sequence[object]) -> CatererRow:
    """Convert a raw ``Caterers`` row into a typed record.

    Identifier cells are coerced to ``str`` because Excel happily turns ids
    such as ``1001`` into numbers. Derived columns default to zero when blank.
    """

    (
        caterer_id,
        caterer_name,
        contact_person,
        phone_number,
        email,
        address,
        gst_number,
        balance_due,
        total_orders,
        total_amount,
        last_order_date,
        is_active,
    ) = raw_row[:12]

    return CatererRow(
        caterer_id=str(caterer_id),
        caterer_name=str(caterer_name) if caterer_name is not None else "",
        contact_person=_read_text(contact_person),
        phone_number=_read_text(phone_number),
        email=_read_text(email),
        address=_read_text(address),
        gst_number=_read_text(gst_number),
        balance_due=_read_money(balance_due),
        total_orders=int(total_orders) if total_orders is not None else 0,
        total_amount=_read_money(total_amount),
        last_order_date=_read_date(last_order_date),
        is_active=bool(is_active),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a typed record.

    The stored status is interpreted once here; blank and ``unknown`` cells
    become ``None`` so downstream code only sees ``PaymentStatus | None``.
    """

    (
        sale_id,
        caterer_id,
        bill_number,
        sell_date,
        items_total,
        other_charges_total,
        discount_total,
        grand_total,
        payment_status,
        notes,
        created_at,
    ) = raw_row[:11]

    parsed_date = _read_date(sell_date)
    if parsed_date is None:
        raise ValueError(f"Sale '{sale_id}' has no SellDate")

    return SaleRow(
        sale_id=str(sale_id),
        caterer_id=str(caterer_id),
        bill_number=str(bill_number) if bill_number is not None else "",
        sell_date=parsed_date,
        items_total=_read_money(items_total),
        other_charges_total=_read_money(other_charges_total),
        discount_total=_read_money(discount_total),
        grand_total=_read_money(grand_total),
        payment_status=parse_stored_status(payment_status),
        notes=_read_text(notes),
        created_at_iso=str(created_at) if created_at is not None else "",
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    sale_id, product_name, quantity, unit, rate, gst_percentage, amount = raw_row[:7]
    return SaleItemRow(
        sale_id=str(sale_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=_read_decimal(quantity),
        unit=str(unit) if unit is not None else "",
        rate=_read_decimal(rate),
        gst_percentage=_read_decimal(gst_percentage),
        amount=_read_money(amount),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    (
        payment_id,
        sale_id,
        paid_at,
        payment_method,
        amount_paid,
        reference_number,
        notes,
        receipt_image,
    ) = raw_row[:8]

    return PaymentRow(
        payment_id=str(payment_id),
        sale_id=str(sale_id),
        paid_at_iso=str(paid_at) if paid_at is not None else "",
        payment_method=str(payment_method) if payment_method is not None else "",
        amount_paid=_read_money(amount_paid),
        reference_number=_read_text(reference_number),
        notes=_read_text(notes),
        receipt_image=_read_text(receipt_image),
    )
