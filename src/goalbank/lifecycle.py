"""Goal lifecycle state machine."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from .exceptions import InvalidStateError
from .models import GoalStatus


class GoalAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    PURCHASE = "purchase"
    CANCEL = "cancel"


_TRANSITIONS: Dict[Tuple[GoalStatus, GoalAction], GoalStatus] = {
    (GoalStatus.ACTIVE, GoalAction.PAUSE): GoalStatus.PAUSED,
    (GoalStatus.PAUSED, GoalAction.RESUME): GoalStatus.ACTIVE,
    (GoalStatus.ACTIVE, GoalAction.COMPLETE): GoalStatus.COMPLETED,
    (GoalStatus.COMPLETED, GoalAction.PURCHASE): GoalStatus.PURCHASED,
    (GoalStatus.ACTIVE, GoalAction.CANCEL): GoalStatus.CANCELLED,
    (GoalStatus.PAUSED, GoalAction.CANCEL): GoalStatus.CANCELLED,
}

TERMINAL_STATUSES = frozenset({GoalStatus.PURCHASED, GoalStatus.CANCELLED})
OPEN_STATUSES = frozenset({GoalStatus.ACTIVE, GoalStatus.PAUSED})


def transition(status: GoalStatus, action: GoalAction) -> GoalStatus:
    """Return the status reached by applying ``action`` to ``status``."""

    try:
        return _TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidStateError(f"Cannot {action.value} a goal that is {status.value}.") from None


def can_transition(status: GoalStatus, action: GoalAction) -> bool:
    return (status, action) in _TRANSITIONS


def is_terminal(status: GoalStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure_accepts_contributions(status: GoalStatus) -> None:
    if status is not GoalStatus.ACTIVE:
        raise InvalidStateError(f"Goal is {status.value}; only active goals accept contributions.")


def ensure_editable(status: GoalStatus) -> None:
    if is_terminal(status):
        raise InvalidStateError(f"Goal is {status.value} and can no longer be changed.")


def ensure_open(status: GoalStatus) -> None:
    if status not in OPEN_STATUSES:
        raise InvalidStateError(f"Goal is {status.value}; it must be active or paused.")


__all__ = [
    "GoalAction",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "can_transition",
    "ensure_accepts_contributions",
    "ensure_editable",
    "ensure_open",
    "is_terminal",
    "transition",
]
