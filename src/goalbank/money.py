"""Utilities for working with monetary values in goalbank."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .exceptions import InvalidAmountError

CENT = Decimal("0.01")
RATIO_STEP = Decimal("0.0001")
RATIO_SCALE = 10_000

AmountLike = Union[Decimal, int, float, str]


def _as_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmountError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise InvalidAmountError(f"Not a valid amount: {value!r}") from exc
    else:
        raise InvalidAmountError(f"Unsupported amount type: {type(value)!r}")
    if not result.is_finite():
        raise InvalidAmountError(f"Not a valid amount: {value!r}")
    return result


def to_decimal(value: AmountLike) -> Decimal:
    """Parse a request or stored amount into dollars rounded half-up to the cent."""

    return _as_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_ratio(value: AmountLike) -> Decimal:
    """Convert ``value`` to a ratio with four decimal places."""

    return _as_decimal(value).quantize(RATIO_STEP, rounding=ROUND_HALF_UP)


def to_cents(value: AmountLike) -> int:
    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def to_basis_points(value: AmountLike) -> int:
    """Store a ratio as integer ten-thousandths."""

    return int(to_ratio(value) * RATIO_SCALE)


def from_basis_points(points: int) -> Decimal:
    return (Decimal(points) / RATIO_SCALE).quantize(RATIO_STEP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Reject negative amounts, and zero unless ``allow_zero`` is set."""

    if allow_zero:
        if amount < Decimal("0"):
            raise InvalidAmountError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise InvalidAmountError("Amount must be greater than zero.")
    return amount


def format_currency(amount: Decimal) -> str:
    """Render dollars for messages, e.g. ``$1,234.50``."""

    return f"${amount.quantize(CENT, rounding=ROUND_HALF_UP):,.2f}"


__all__ = [
    "AmountLike",
    "CENT",
    "format_currency",
    "from_basis_points",
    "from_cents",
    "require_positive",
    "to_basis_points",
    "to_cents",
    "to_decimal",
    "to_ratio",
]
