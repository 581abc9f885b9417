"""Decimal helpers for monetary values.

All money math in the package goes through :class:`~decimal.Decimal`; floats
only appear at the JSON boundary.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def parse_decimal(value: object, *, default: Decimal = ZERO, strict: bool = False) -> Decimal:
    """Convert ``value`` to :class:`Decimal`.

    Accepts numbers and strings with either ``.`` or ``,`` as decimal
    separator (``"12,5"`` -> ``12.5``). Blank and ``None`` return ``default``.
    Unparsable and non-finite values return ``default`` too, unless ``strict``
    is set, in which case they raise :class:`ValueError`.
    """

    def _reject(raw: object) -> Decimal:
        if strict:
            raise ValueError(f"not a number: {raw!r}")
        return default

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else _reject(value)
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        parsed = Decimal(repr(value))
        return parsed if parsed.is_finite() else _reject(value)

    text = str(value).strip()
    if not text:
        return default
    if "," in text and "." in text:
        # "1.234,56" (German grouping) vs "1,234.56" (English grouping)
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")

    try:
        parsed = Decimal(text)
    except (InvalidOperation, ValueError):
        return _reject(value)
    return parsed if parsed.is_finite() else _reject(value)


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round to cents, half away from zero."""

    return parse_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | int | float | str) -> str:
    """Render ``value`` with exactly two fractional digits (``"-267.75"``)."""

    rounded = round_money(value)
    if rounded == ZERO:
        rounded = abs(rounded)
    return f"{rounded:.2f}"


def percent_factor(rate: Decimal) -> Decimal:
    """``19`` -> ``0.19``."""

    return rate / HUNDRED


__all__ = [
    "CENT",
    "HUNDRED",
    "ZERO",
    "format_amount",
    "parse_decimal",
    "percent_factor",
    "round_money",
]
