"""Fixed-point currency amounts.

Every amount in the ledger is a :class:`MoneyValue` holding an integer count of
minor units (paise, cents). Two parsing policies exist and are kept apart on
purpose:

* :meth:`MoneyValue.parse` is for amounts typed by a person or read from the
  workbook. Anything finer than two decimal places is rejected with
  :class:`~caterer_ledger.errors.InvalidAmount` instead of being silently
  rounded.
* :meth:`MoneyValue.floor` is for amounts the ledger derives itself
  (``quantity * rate``, GST, half payments). Those are truncated toward
  negative infinity at two places.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Iterable, Union

from .constants import DEFAULT_CURRENCY_SYMBOL
from .errors import InvalidAmount


MoneyInput = Union[str, int, Decimal]

_CENT = Decimal("0.01")
_MINOR_UNITS_PER_MAJOR = 100


def _to_decimal(value: object) -> Decimal:
    """Coerce caller input into a finite ``Decimal`` or raise ``InvalidAmount``."""

    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount(f"Amounts must be given as text or Decimal, not {type(value).__name__}: {value!r}")
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, int):
        candidate = Decimal(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidAmount("Amount is blank")
        try:
            candidate = Decimal(text)
        except InvalidOperation as exc:
            raise InvalidAmount(f"Amount is not a number: {value!r}") from exc
    else:
        raise InvalidAmount(f"Unsupported amount type: {type(value).__name__}")

    if not candidate.is_finite():
        raise InvalidAmount(f"Amount must be finite: {value!r}")
    return candidate


@dataclass(frozen=True, order=True)
class MoneyValue:
    """An exact amount at two decimal places, stored as integer minor units."""

    minor_units: int

    def __post_init__(self) -> None:
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmount(f"Minor units must be an integer: {self.minor_units!r}")

    @classmethod
    def from_minor_units(cls, minor_units: int) -> "MoneyValue":
        return cls(minor_units)

    @classmethod
    def parse(cls, value: Union[MoneyInput, "MoneyValue"]) -> "MoneyValue":
        """Build an amount from text, ``Decimal`` or ``int`` major units.

        Args:
            value: ``"420.50"``, ``Decimal("420.5")``, ``420`` or an existing
                :class:`MoneyValue` (returned unchanged).

        Returns:
            MoneyValue: The exact amount.

        Raises:
            InvalidAmount: If the input is a float, blank, not numeric, not
                finite, or carries more than two significant decimal places.
        """

        if isinstance(value, MoneyValue):
            return value
        amount = _to_decimal(value)
        scaled = amount * _MINOR_UNITS_PER_MAJOR
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(f"Amount has more than two decimal places: {value!r}")
        return cls(int(scaled))

    @classmethod
    def floor(cls, value: MoneyInput) -> "MoneyValue":
        """Truncate a derived amount to two places, toward negative infinity."""

        amount = _to_decimal(value)
        quantized = amount.quantize(_CENT, rounding=ROUND_FLOOR)
        return cls(int(quantized * _MINOR_UNITS_PER_MAJOR))

    def __add__(self, other: object) -> "MoneyValue":
        if not isinstance(other, MoneyValue):
            return NotImplemented
        return MoneyValue(self.minor_units + other.minor_units)

    def __sub__(self, other: object) -> "MoneyValue":
        if not isinstance(other, MoneyValue):
            return NotImplemented
        return MoneyValue(self.minor_units - other.minor_units)

    def __neg__(self) -> "MoneyValue":
        return MoneyValue(-self.minor_units)

    def add(self, other: "MoneyValue") -> "MoneyValue":
        return self + other

    def subtract(self, other: "MoneyValue") -> "MoneyValue":
        return self - other

    def compare(self, other: "MoneyValue") -> int:
        """Return ``-1``, ``0`` or ``1`` as ``self`` is less, equal or greater."""

        if self.minor_units < other.minor_units:
            return -1
        if self.minor_units > other.minor_units:
            return 1
        return 0

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def is_negative(self) -> bool:
        return self.minor_units < 0

    def is_positive(self) -> bool:
        return self.minor_units > 0

    @staticmethod
    def max_of(first: "MoneyValue", second: "MoneyValue") -> "MoneyValue":
        return first if first >= second else second

    def to_decimal(self) -> Decimal:
        """Return the amount as a ``Decimal`` with exponent ``-2``."""

        return Decimal(self.minor_units).scaleb(-2)

    def to_display_string(self, symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
        """Render the amount for people, e.g. ``₹1,250.00`` or ``-₹20.00``."""

        sign = "-" if self.is_negative() else ""
        magnitude = Decimal(abs(self.minor_units)).scaleb(-2)
        return f"{sign}{symbol}{magnitude:,.2f}"

    def __str__(self) -> str:
        return str(self.to_decimal())


ZERO = MoneyValue(0)


def sum_money(values: Iterable[MoneyValue]) -> MoneyValue:
    """Add up amounts exactly; an empty iterable sums to :data:`ZERO`."""

    total = 0
    for value in values:
        total += value.minor_units
    return MoneyValue(total)


__all__ = ["MoneyValue", "MoneyInput", "ZERO", "sum_money"]
