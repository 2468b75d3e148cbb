"""Decimal helpers shared by every calculation step."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .exceptions import InvalidInputError

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Comma only as a thousands separator: 1,234,567.89
_GROUPED = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")


def round_money(value: Decimal) -> Decimal:
    """Round half-up to whole cents (never banker's rounding)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value, field: str = "amount") -> Decimal:
    """Parse user input into Decimal, rejecting floats and garbage.

    Floats are refused outright: 0.1 + 0.2 style drift must never reach a
    tax figure. A comma is accepted only as a thousands separator
    ("1,234.56"); a decimal comma ("1,50") is ambiguous and refused, as are
    NaN and infinities.
    """
    if isinstance(value, float):
        raise InvalidInputError(f"{field} must be given as str or Decimal, not float")
    if isinstance(value, Decimal):
        d = value
    else:
        text = str(value).strip()
        if "," in text:
            if not _GROUPED.match(text):
                raise InvalidInputError(
                    f"Invalid number for {field}: {value!r} "
                    "(use '.' for decimals, ',' only between thousands)"
                )
            text = text.replace(",", "")
        try:
            d = Decimal(text)
        except InvalidOperation:
            raise InvalidInputError(f"Invalid number for {field}: {value!r}")
    if not d.is_finite():
        raise InvalidInputError(f"{field} must be a finite number, got {value!r}")
    return d


def format_rate(rate: Decimal) -> str:
    """0.12 → '12%', 0.085 → '8.5%'."""
    pct = (rate * 100).normalize()
    return f"{pct:f}%"
