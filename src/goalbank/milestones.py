"""Milestone tracker: the four fixed percentage checkpoints of a goal."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .exceptions import ValidationError
from .models import MILESTONE_PERCENTAGES, MilestoneAchieved, MilestoneState
from .money import CENT, AmountLike, require_positive, to_decimal

CELEBRATION_TEMPLATE = "You've reached {percent}% of your goal!"


def milestone_target(goal_target: Decimal, percent: int) -> Decimal:
    """Return the amount needed to reach ``percent`` of ``goal_target``."""

    if percent not in MILESTONE_PERCENTAGES:
        raise ValidationError("Milestones supported: 25, 50, 75 and 100 percent.")
    return (goal_target * percent / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def celebration_message(percent: int) -> str:
    return CELEBRATION_TEMPLATE.format(percent=percent)


def initial_milestones(
    goal_target: Decimal,
    bonuses: Optional[Mapping[int, AmountLike]] = None,
) -> Tuple[MilestoneState, ...]:
    """Build the unachieved milestones for a freshly created goal."""

    bonuses = dict(bonuses or {})
    unknown = set(bonuses) - set(MILESTONE_PERCENTAGES)
    if unknown:
        raise ValidationError(f"Unknown milestone percentages: {sorted(unknown)}")
    states = []
    for percent in MILESTONE_PERCENTAGES:
        bonus = bonuses.get(percent)
        states.append(
            MilestoneState(
                percent_complete=percent,
                target_amount=milestone_target(goal_target, percent),
                bonus_amount=normalize_bonus(bonus),
            )
        )
    return tuple(states)


def normalize_bonus(bonus: AmountLike | None) -> Optional[Decimal]:
    if bonus is None:
        return None
    value = require_positive(to_decimal(bonus), allow_zero=True)
    return value if value > Decimal("0") else None


def evaluate_milestones(
    current_amount: Decimal,
    milestones: Iterable[MilestoneState],
    *,
    at: datetime,
) -> List[MilestoneAchieved]:
    """Return the milestones newly crossed by ``current_amount`` in ascending order.

    Already achieved milestones are skipped, so calling this again after an
    award never yields the same milestone twice. Bonuses are counted towards
    the running amount as the walk proceeds, which lets a lower milestone's
    bonus carry the goal across a higher one in the same evaluation.
    """

    running = current_amount
    reached: List[MilestoneAchieved] = []
    for milestone in sorted(milestones, key=lambda item: item.percent_complete):
        if milestone.is_achieved:
            continue
        if running < milestone.target_amount:
            continue
        reached.append(
            MilestoneAchieved(
                percent_complete=milestone.percent_complete,
                achieved_at=at,
                bonus_amount=milestone.bonus_amount,
            )
        )
        if milestone.bonus_amount:
            running += milestone.bonus_amount
    return reached


def retarget_milestones(
    milestones: Sequence[MilestoneState], new_goal_target: Decimal
) -> Tuple[MilestoneState, ...]:
    """Recompute unachieved milestone targets for a changed goal target."""

    return tuple(
        milestone
        if milestone.is_achieved
        else replace(milestone, target_amount=milestone_target(new_goal_target, milestone.percent_complete))
        for milestone in milestones
    )


def most_advanced(reached: Iterable[MilestoneAchieved]) -> Optional[MilestoneAchieved]:
    """Pick the single milestone to celebrate when several were crossed at once."""

    best: Optional[MilestoneAchieved] = None
    for item in reached:
        if best is None or item.percent_complete > best.percent_complete:
            best = item
    return best


__all__ = [
    "CELEBRATION_TEMPLATE",
    "celebration_message",
    "evaluate_milestones",
    "initial_milestones",
    "milestone_target",
    "most_advanced",
    "normalize_bonus",
    "retarget_milestones",
]
