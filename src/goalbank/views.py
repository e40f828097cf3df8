"""Read projections returned by :mod:`goalbank.service`.

Projections are plain dataclasses detached from the database session. Each
offers ``as_dict`` producing JSON friendly primitives in the same shape the web
layer returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .challenges import challenge_progress, days_remaining
from .matching import describe_rule
from .models import (
    AutoTransferMode,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
)
from .money import from_cents
from .persistence import (
    Dependent,
    GoalAggregate,
    GoalChallenge,
    GoalMilestone,
    ParentMatchingRule,
    SavingsContribution,
    SavingsGoal,
)


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class DependentView:
    dependent_id: str
    name: str
    balance: Decimal
    created_at: datetime

    @classmethod
    def from_row(cls, row: Dependent) -> "DependentView":
        return cls(
            dependent_id=row.dependent_id,
            name=row.name,
            balance=from_cents(row.balance_cents),
            created_at=row.created_at,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dependent_id": self.dependent_id,
            "name": self.name,
            "balance": _money(self.balance),
            "created_at": _iso(self.created_at),
        }


@dataclass(slots=True)
class MilestoneView:
    id: int
    percent_complete: int
    target_amount: Decimal
    is_achieved: bool
    achieved_at: Optional[datetime]
    celebration_message: str
    bonus_amount: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: GoalMilestone) -> "MilestoneView":
        return cls(
            id=row.id or 0,
            percent_complete=row.percent_complete,
            target_amount=from_cents(row.target_cents),
            is_achieved=row.is_achieved,
            achieved_at=row.achieved_at,
            celebration_message=row.celebration_message,
            bonus_amount=from_cents(row.bonus_cents) if row.bonus_cents else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "percent_complete": self.percent_complete,
            "target_amount": _money(self.target_amount),
            "is_achieved": self.is_achieved,
            "achieved_at": _iso(self.achieved_at),
            "celebration_message": self.celebration_message,
            "bonus_amount": _money(self.bonus_amount),
        }


@dataclass(slots=True)
class MatchingRuleSummary:
    type: MatchingType
    match_ratio: Decimal
    total_matched_amount: Decimal
    is_active: bool
    description: str
    max_match_amount: Optional[Decimal] = None
    remaining_match_amount: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: ParentMatchingRule) -> "MatchingRuleSummary":
        terms = row.to_terms()
        return cls(
            type=terms.type,
            match_ratio=terms.match_ratio,
            total_matched_amount=terms.total_matched_amount,
            is_active=terms.is_active,
            description=describe_rule(terms.type, terms.match_ratio),
            max_match_amount=terms.max_match_amount,
            remaining_match_amount=terms.remaining_match_amount,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "match_ratio": float(self.match_ratio),
            "max_match_amount": _money(self.max_match_amount),
            "total_matched_amount": _money(self.total_matched_amount),
            "remaining_match_amount": _money(self.remaining_match_amount),
            "is_active": self.is_active,
            "description": self.description,
        }


@dataclass(slots=True)
class MatchingRuleView:
    id: int
    goal_id: int
    goal_name: str
    summary: MatchingRuleSummary
    expires_at: Optional[datetime]
    created_by: Optional[str]
    created_at: datetime

    @classmethod
    def from_row(cls, row: ParentMatchingRule, goal: SavingsGoal) -> "MatchingRuleView":
        return cls(
            id=row.id or 0,
            goal_id=goal.id or 0,
            goal_name=goal.name,
            summary=MatchingRuleSummary.from_row(row),
            expires_at=row.expires_at,
            created_by=row.created_by,
            created_at=row.created_at,
        )

    @property
    def total_matched_amount(self) -> Decimal:
        return self.summary.total_matched_amount

    @property
    def is_active(self) -> bool:
        return self.summary.is_active

    def as_dict(self) -> Dict[str, Any]:
        payload = {
            "id": self.id,
            "goal_id": self.goal_id,
            "goal_name": self.goal_name,
            "expires_at": _iso(self.expires_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }
        payload.update(self.summary.as_dict())
        return payload


@dataclass(slots=True)
class ChallengeSummary:
    id: int
    target_amount: Decimal
    bonus_amount: Decimal
    end_date: datetime
    days_remaining: int
    progress_percentage: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target_amount": _money(self.target_amount),
            "bonus_amount": _money(self.bonus_amount),
            "end_date": _iso(self.end_date),
            "days_remaining": self.days_remaining,
            "progress_percentage": self.progress_percentage,
        }


@dataclass(slots=True)
class ChallengeView:
    id: int
    goal_id: int
    goal_name: str
    target_amount: Decimal
    current_amount: Decimal
    progress_percentage: float
    bonus_amount: Decimal
    start_date: datetime
    end_date: datetime
    days_remaining: int
    status: ChallengeStatus
    description: Optional[str]
    created_by: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: GoalChallenge, goal: SavingsGoal, *, at: datetime) -> "ChallengeView":
        current = from_cents(goal.current_cents)
        target = from_cents(row.target_cents)
        status = ChallengeStatus(row.status)
        return cls(
            id=row.id or 0,
            goal_id=goal.id or 0,
            goal_name=goal.name,
            target_amount=target,
            current_amount=current,
            progress_percentage=challenge_progress(current, target),
            bonus_amount=from_cents(row.bonus_cents),
            start_date=row.start_date,
            end_date=row.end_date,
            days_remaining=days_remaining(row.end_date, at) if status is ChallengeStatus.ACTIVE else 0,
            status=status,
            description=row.description,
            created_by=row.created_by,
            created_at=row.created_at,
            completed_at=row.completed_at,
        )

    def summary(self) -> ChallengeSummary:
        return ChallengeSummary(
            id=self.id,
            target_amount=self.target_amount,
            bonus_amount=self.bonus_amount,
            end_date=self.end_date,
            days_remaining=self.days_remaining,
            progress_percentage=self.progress_percentage,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "goal_name": self.goal_name,
            "target_amount": _money(self.target_amount),
            "current_amount": _money(self.current_amount),
            "progress_percentage": self.progress_percentage,
            "bonus_amount": _money(self.bonus_amount),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "days_remaining": self.days_remaining,
            "status": self.status.value,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(slots=True)
class ContributionRecord:
    id: int
    goal_id: int
    dependent_id: str
    amount: Decimal
    type: ContributionType
    description: str
    goal_balance_after: Decimal
    created_by: Optional[str]
    created_at: datetime
    matches_contribution_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: SavingsContribution) -> "ContributionRecord":
        return cls(
            id=row.id or 0,
            goal_id=row.goal_id,
            dependent_id=row.dependent_id,
            amount=from_cents(row.amount_cents),
            type=ContributionType(row.type),
            description=row.description,
            goal_balance_after=from_cents(row.goal_balance_after_cents),
            created_by=row.created_by,
            created_at=row.created_at,
            matches_contribution_id=row.matches_contribution_id,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "dependent_id": self.dependent_id,
            "amount": _money(self.amount),
            "type": self.type.value,
            "description": self.description,
            "goal_balance_after": _money(self.goal_balance_after),
            "created_by": self.created_by,
            "matches_contribution_id": self.matches_contribution_id,
            "created_at": _iso(self.created_at),
        }


@dataclass(slots=True)
class GoalView:
    """Goal with its milestones, matching rule summary and active challenge."""

    id: int
    dependent_id: str
    name: str
    description: str
    category: GoalCategory
    target_amount: Decimal
    current_amount: Decimal
    progress_percentage: float
    status: GoalStatus
    priority: int
    auto_transfer_mode: AutoTransferMode
    auto_transfer_value: Decimal
    created_at: datetime
    updated_at: datetime
    target_date: Optional[date] = None
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    purchase_notes: Optional[str] = None
    milestones: List[MilestoneView] = field(default_factory=list)
    matching_rule: Optional[MatchingRuleSummary] = None
    active_challenge: Optional[ChallengeSummary] = None

    @classmethod
    def from_aggregate(cls, aggregate: GoalAggregate, *, at: datetime) -> "GoalView":
        goal = aggregate.goal
        current = from_cents(goal.current_cents)
        target = from_cents(goal.target_cents)
        challenge = None
        if aggregate.challenge is not None:
            challenge = ChallengeView.from_row(aggregate.challenge, goal, at=at).summary()
        return cls(
            id=goal.id or 0,
            dependent_id=goal.dependent_id,
            name=goal.name,
            description=goal.description,
            category=GoalCategory(goal.category),
            target_amount=target,
            current_amount=current,
            progress_percentage=challenge_progress(current, target),
            status=GoalStatus(goal.status),
            priority=goal.priority,
            auto_transfer_mode=AutoTransferMode(goal.auto_transfer_mode),
            auto_transfer_value=from_cents(goal.auto_transfer_value),
            created_at=goal.created_at,
            updated_at=goal.updated_at,
            target_date=goal.target_date,
            image_url=goal.image_url,
            product_url=goal.product_url,
            completed_at=goal.completed_at,
            purchased_at=goal.purchased_at,
            purchase_notes=goal.purchase_notes,
            milestones=[MilestoneView.from_row(row) for row in aggregate.milestones],
            matching_rule=MatchingRuleSummary.from_row(aggregate.rule) if aggregate.rule else None,
            active_challenge=challenge,
        )

    @property
    def remaining_amount(self) -> Decimal:
        remainder = self.target_amount - self.current_amount
        return remainder if remainder > Decimal("0") else Decimal("0.00")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dependent_id": self.dependent_id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "target_amount": _money(self.target_amount),
            "current_amount": _money(self.current_amount),
            "remaining_amount": _money(self.remaining_amount),
            "progress_percentage": self.progress_percentage,
            "status": self.status.value,
            "priority": self.priority,
            "auto_transfer_mode": self.auto_transfer_mode.value,
            "auto_transfer_value": _money(self.auto_transfer_value),
            "target_date": _iso(self.target_date),
            "image_url": self.image_url,
            "product_url": self.product_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "purchased_at": _iso(self.purchased_at),
            "purchase_notes": self.purchase_notes,
            "milestones": [milestone.as_dict() for milestone in self.milestones],
            "matching_rule": self.matching_rule.as_dict() if self.matching_rule else None,
            "active_challenge": self.active_challenge.as_dict() if self.active_challenge else None,
        }


@dataclass(slots=True)
class ProgressEvent:
    """Consolidated outcome of one contribution."""

    goal_id: int
    goal_name: str
    contribution: ContributionRecord
    new_amount: Decimal
    target_amount: Decimal
    progress_percentage: float
    is_completed: bool
    milestone_reached: Optional[MilestoneView] = None
    match_amount_added: Optional[Decimal] = None
    challenge_completed: bool = False
    challenge_bonus: Optional[Decimal] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "goal_name": self.goal_name,
            "contribution": self.contribution.as_dict(),
            "new_amount": _money(self.new_amount),
            "target_amount": _money(self.target_amount),
            "progress_percentage": self.progress_percentage,
            "milestone_reached": self.milestone_reached.as_dict() if self.milestone_reached else None,
            "is_completed": self.is_completed,
            "match_amount_added": _money(self.match_amount_added),
            "challenge_completed": self.challenge_completed,
            "challenge_bonus": _money(self.challenge_bonus),
        }


def records(rows: Sequence[SavingsContribution]) -> List[ContributionRecord]:
    return [ContributionRecord.from_row(row) for row in rows]


__all__ = [
    "ChallengeSummary",
    "ChallengeView",
    "ContributionRecord",
    "DependentView",
    "GoalView",
    "MatchingRuleSummary",
    "MatchingRuleView",
    "MilestoneView",
    "ProgressEvent",
    "records",
]
