"""Matching rule engine for guardian-funded contributions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from .exceptions import ValidationError
from .models import MatchingType, MatchTerms
from .money import AmountLike, format_currency, require_positive, to_decimal, to_ratio

ONE_HUNDRED = Decimal("100")


def validate_ratio(matching_type: MatchingType, match_ratio: AmountLike) -> Decimal:
    """Return ``match_ratio`` as a ratio, rejecting values the type cannot use."""

    ratio = to_ratio(match_ratio)
    if ratio <= Decimal("0"):
        raise ValidationError("Match ratio must be greater than zero.")
    if matching_type is MatchingType.PERCENTAGE_MATCH and ratio > ONE_HUNDRED:
        raise ValidationError("Percentage match must be between 0 and 100.")
    return ratio


def validate_cap(max_match_amount: AmountLike | None) -> Optional[Decimal]:
    if max_match_amount is None:
        return None
    return require_positive(to_decimal(max_match_amount))


def compute_match(terms: MatchTerms, deposit_amount: Decimal, *, at: datetime) -> Decimal:
    """Return the guardian match owed for ``deposit_amount`` under ``terms``.

    Inactive or expired rules match nothing. When a lifetime cap is set the
    result is clamped to what is left of it, so the running total can never
    pass the cap.
    """

    if not terms.is_active or terms.is_expired(at):
        return Decimal("0.00")
    if deposit_amount <= Decimal("0"):
        return Decimal("0.00")

    if terms.type is MatchingType.RATIO_MATCH:
        amount = to_decimal(deposit_amount * terms.match_ratio)
    else:
        amount = to_decimal(deposit_amount * (terms.match_ratio / ONE_HUNDRED))

    remaining = terms.remaining_match_amount
    if remaining is not None:
        amount = min(amount, remaining)
    return amount if amount > Decimal("0") else Decimal("0.00")


def describe_rule(matching_type: MatchingType, match_ratio: Decimal) -> str:
    if matching_type is MatchingType.RATIO_MATCH:
        per_dollar = to_decimal(Decimal(1) / match_ratio)
        return f"{format_currency(Decimal(1))} for every {format_currency(per_dollar)} saved"
    return f"Matches {match_ratio.normalize():f}% of each deposit"


__all__ = ["compute_match", "describe_rule", "validate_cap", "validate_ratio"]
