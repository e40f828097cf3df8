"""Domain enums, value records and evaluation outcomes used by goalbank."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

MILESTONE_PERCENTAGES: tuple[int, ...] = (25, 50, 75, 100)


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (the storage convention)."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class GoalStatus(str, Enum):
    """Lifecycle of a savings goal."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    PURCHASED = "purchased"
    CANCELLED = "cancelled"


class GoalCategory(str, Enum):
    TOY = "toy"
    GAME = "game"
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    EXPERIENCE = "experience"
    SAVINGS = "savings"
    CHARITY = "charity"
    OTHER = "other"


class AutoTransferMode(str, Enum):
    """How much of each allowance is moved into a goal automatically."""

    NONE = "none"
    FIXED_AMOUNT = "fixed_amount"
    PERCENTAGE = "percentage"


class ContributionType(str, Enum):
    """Enumerates the kinds of ledger entries recorded against a goal."""

    DEPENDENT_DEPOSIT = "dependent_deposit"
    GUARDIAN_MATCH = "guardian_match"
    AUTO_TRANSFER = "auto_transfer"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"


class MatchingType(str, Enum):
    RATIO_MATCH = "ratio_match"
    PERCENTAGE_MATCH = "percentage_match"


class ChallengeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class MilestoneState:
    """Snapshot of one milestone used by the milestone tracker."""

    percent_complete: int
    target_amount: Decimal
    is_achieved: bool = False
    achieved_at: Optional[datetime] = None
    bonus_amount: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class MatchTerms:
    """Snapshot of a guardian matching rule."""

    type: MatchingType
    match_ratio: Decimal
    total_matched_amount: Decimal = Decimal("0.00")
    max_match_amount: Optional[Decimal] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None

    @property
    def remaining_match_amount(self) -> Optional[Decimal]:
        if self.max_match_amount is None:
            return None
        remainder = self.max_match_amount - self.total_matched_amount
        return remainder if remainder > Decimal("0") else Decimal("0.00")

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and at > self.expires_at


@dataclass(frozen=True, slots=True)
class ChallengeTerms:
    """Snapshot of a time-boxed challenge layered on a goal."""

    target_amount: Decimal
    end_date: datetime
    bonus_amount: Decimal
    status: ChallengeStatus = ChallengeStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class NoEffect:
    """Evaluation outcome when nothing changed."""


@dataclass(frozen=True, slots=True)
class MilestoneAchieved:
    percent_complete: int
    achieved_at: datetime
    bonus_amount: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class ChallengeCompleted:
    completed_at: datetime
    bonus_amount: Decimal


__all__ = [
    "AutoTransferMode",
    "ChallengeCompleted",
    "ChallengeStatus",
    "ChallengeTerms",
    "ContributionType",
    "GoalCategory",
    "GoalStatus",
    "MILESTONE_PERCENTAGES",
    "MatchTerms",
    "MatchingType",
    "MilestoneAchieved",
    "MilestoneState",
    "NoEffect",
    "utc_now",
]
