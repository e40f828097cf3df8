"""Achievement trigger collaborator.

Badge unlocking lives outside goalbank. The savings engine only announces what
happened, once the financial transaction has committed. Each trigger kind has
its own payload type, so a payload always carries exactly the fields its kind
promises and the kind can never disagree with the payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, List, Protocol, Tuple, Union

from .models import ContributionType, utc_now


class TriggerKind(str, Enum):
    GOAL_CREATED = "goal_created"
    SAVINGS_DEPOSIT = "savings_deposit"
    MILESTONE_REACHED = "milestone_reached"
    GOAL_COMPLETED = "goal_completed"
    CHALLENGE_COMPLETED = "challenge_completed"
    GOAL_PURCHASED = "goal_purchased"


@dataclass(frozen=True, slots=True)
class GoalCreated:
    kind: ClassVar[TriggerKind] = TriggerKind.GOAL_CREATED

    goal_id: int
    goal_name: str
    target_amount: Decimal


@dataclass(frozen=True, slots=True)
class SavingsDeposited:
    kind: ClassVar[TriggerKind] = TriggerKind.SAVINGS_DEPOSIT

    goal_id: int
    amount: Decimal
    goal_balance: Decimal
    contribution_type: ContributionType


@dataclass(frozen=True, slots=True)
class MilestoneReached:
    kind: ClassVar[TriggerKind] = TriggerKind.MILESTONE_REACHED

    goal_id: int
    percent_complete: int


@dataclass(frozen=True, slots=True)
class GoalCompleted:
    kind: ClassVar[TriggerKind] = TriggerKind.GOAL_COMPLETED

    goal_id: int
    goal_name: str
    total_saved: Decimal


@dataclass(frozen=True, slots=True)
class ChallengeBonusEarned:
    kind: ClassVar[TriggerKind] = TriggerKind.CHALLENGE_COMPLETED

    goal_id: int
    challenge_id: int
    bonus_amount: Decimal


@dataclass(frozen=True, slots=True)
class GoalPurchased:
    kind: ClassVar[TriggerKind] = TriggerKind.GOAL_PURCHASED

    goal_id: int
    goal_name: str


TriggerPayload = Union[
    GoalCreated,
    SavingsDeposited,
    MilestoneReached,
    GoalCompleted,
    ChallengeBonusEarned,
    GoalPurchased,
]


class AchievementTrigger(Protocol):
    def notify_trigger(self, dependent_id: str, trigger_kind: TriggerKind, payload: TriggerPayload) -> None: ...


def fire(trigger: AchievementTrigger, dependent_id: str, payload: TriggerPayload) -> None:
    trigger.notify_trigger(dependent_id, payload.kind, payload)


@dataclass(slots=True)
class FiredTrigger:
    dependent_id: str
    kind: TriggerKind
    payload: TriggerPayload
    fired_at: datetime = field(default_factory=utc_now)


class RecordingAchievementTrigger:
    """In-memory trigger sink used by default and in tests."""

    def __init__(self) -> None:
        self._fired: List[FiredTrigger] = []

    def notify_trigger(self, dependent_id: str, trigger_kind: TriggerKind, payload: TriggerPayload) -> None:
        if payload.kind is not trigger_kind:
            raise ValueError(f"Payload {type(payload).__name__} does not belong to trigger {trigger_kind.value}.")
        self._fired.append(FiredTrigger(dependent_id=dependent_id, kind=trigger_kind, payload=payload))

    def fired(self, *, kind: TriggerKind | None = None) -> Tuple[FiredTrigger, ...]:
        if kind is None:
            return tuple(self._fired)
        return tuple(item for item in self._fired if item.kind is kind)

    def clear(self) -> None:
        self._fired.clear()


__all__ = [
    "AchievementTrigger",
    "ChallengeBonusEarned",
    "FiredTrigger",
    "GoalCompleted",
    "GoalCreated",
    "GoalPurchased",
    "MilestoneReached",
    "RecordingAchievementTrigger",
    "SavingsDeposited",
    "TriggerKind",
    "TriggerPayload",
    "fire",
]
