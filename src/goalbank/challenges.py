"""Challenge tracker for time-boxed secondary targets."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from .models import ChallengeCompleted, ChallengeStatus, ChallengeTerms, NoEffect

_SECONDS_PER_DAY = 86_400


def evaluate_challenge(
    terms: Optional[ChallengeTerms],
    current_amount: Decimal,
    *,
    at: datetime,
) -> Union[NoEffect, ChallengeCompleted]:
    """Decide whether ``current_amount`` completes the challenge at ``at``.

    Only an active challenge whose end date has not passed can complete.
    """

    if terms is None or terms.status is not ChallengeStatus.ACTIVE:
        return NoEffect()
    if at > terms.end_date:
        return NoEffect()
    if current_amount < terms.target_amount:
        return NoEffect()
    return ChallengeCompleted(completed_at=at, bonus_amount=terms.bonus_amount)


def is_expired(terms: ChallengeTerms, at: datetime) -> bool:
    return terms.status is ChallengeStatus.ACTIVE and at > terms.end_date


def days_remaining(end_date: datetime, at: datetime) -> int:
    seconds = (end_date - at).total_seconds()
    return max(0, int(seconds // _SECONDS_PER_DAY))


def challenge_progress(current_amount: Decimal, target_amount: Decimal) -> float:
    if target_amount <= Decimal("0"):
        return 0.0
    return min(100.0, round(float(current_amount / target_amount * 100), 2))


__all__ = ["challenge_progress", "days_remaining", "evaluate_challenge", "is_expired"]
