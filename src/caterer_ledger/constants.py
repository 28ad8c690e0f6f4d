"""Enumerations and fixed values shared by the ledger layers.

The data access layer, the reconciliation logic and both front-ends (CLI and
HTTP API) read sheet names, statuses and payment methods from here so that the
workbook vocabulary is defined exactly once.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook and config.ini must declare.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Receipt uploads are capped at 5 MB unless config.ini says otherwise.
DEFAULT_RECEIPT_MAX_BYTES = 5 * 1024 * 1024

DEFAULT_CURRENCY_SYMBOL = "₹"
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0


class PaymentStatus(str, Enum):
    """Caterer-facing payment state of a bill."""

    PAID = "paid"
    PARTIAL = "partial"
    PENDING = "pending"
    OVERDUE = "overdue"


# Stored status values that mean "no explicit status recorded".
UNSET_STATUS_MARKERS = frozenset({"", "unknown", "none", "null"})


class PaymentMethod(str, Enum):
    """Supported settlement mechanisms for bill payments."""

    CASH = "cash"
    UPI = "upi"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    CREDIT = "credit"


# Aliases accepted from operators and legacy clients.
PAYMENT_METHOD_ALIASES = {
    "cash": PaymentMethod.CASH,
    "upi": PaymentMethod.UPI,
    "card": PaymentMethod.CARD,
    "bank": PaymentMethod.BANK_TRANSFER,
    "bank_transfer": PaymentMethod.BANK_TRANSFER,
    "cheque": PaymentMethod.CHEQUE,
    "check": PaymentMethod.CHEQUE,
    "credit": PaymentMethod.CREDIT,
}


class PaymentOption(str, Enum):
    """How the amount of a payment is chosen at collection time."""

    FULL = "full"
    HALF = "half"
    CUSTOM = "custom"


class ChargeType(str, Enum):
    """How an additional charge or discount is applied to a bill."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"


class SheetName(str, Enum):
    """Workbook sheet names managed by the DAL."""

    CATERERS = "Caterers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    PAYMENTS = "Payments"


ALLOWED_RECEIPT_CONTENT_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)
ALLOWED_RECEIPT_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_RECEIPT_MAX_BYTES",
    "DEFAULT_CURRENCY_SYMBOL",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "PaymentStatus",
    "UNSET_STATUS_MARKERS",
    "PaymentMethod",
    "PAYMENT_METHOD_ALIASES",
    "PaymentOption",
    "ChargeType",
    "SheetName",
    "ALLOWED_RECEIPT_CONTENT_TYPES",
    "ALLOWED_RECEIPT_EXTENSIONS",
]
