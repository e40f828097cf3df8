"""Best-effort notifications about goal progress.

Delivery (push, email, in-app) happens elsewhere. goalbank only hands finished
:class:`Notification` records to a dispatcher once a transaction has committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence

from .models import utc_now


class NotificationChannel(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationType(str, Enum):
    GOAL_MILESTONE = "goal_milestone"
    GOAL_COMPLETED = "goal_completed"
    CHALLENGE_COMPLETED = "challenge_completed"
    CHALLENGE_FAILED = "challenge_failed"
    OTHER = "other"


@dataclass(slots=True)
class Notification:
    """A message for one dependent about one goal."""

    recipient: str
    type: NotificationType
    subject: str
    body: str
    goal_name: str
    channel: NotificationChannel = NotificationChannel.PUSH
    extra: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def as_dict(self) -> Dict[str, str]:
        data = dict(self.extra)
        data.update(
            recipient=self.recipient,
            type=self.type.value,
            channel=self.channel.value,
            goal=self.goal_name,
            subject=self.subject,
            body=self.body,
            created_at=self.created_at.isoformat(),
        )
        return data


class NotificationDispatcher(Protocol):
    """Anything that accepts notifications for best-effort delivery."""

    def queue(self, notification: Notification) -> None: ...


class NotificationCenter:
    """In-memory outbox; the default dispatcher and the one tests inspect."""

    def __init__(self) -> None:
        self._outbox: List[Notification] = []
        self._delivered: List[Notification] = []

    def queue(self, notification: Notification) -> None:
        self._outbox.append(notification)

    def pending(
        self,
        *,
        notification_type: NotificationType | None = None,
        recipient: str | None = None,
    ) -> Sequence[Notification]:
        return tuple(
            item
            for item in self._outbox
            if (notification_type is None or item.type is notification_type)
            and (recipient is None or item.recipient == recipient)
        )

    def pop_all(self) -> Sequence[Notification]:
        """Hand over everything queued and remember it as delivered."""

        batch, self._outbox = tuple(self._outbox), []
        self._delivered.extend(batch)
        return batch

    def mark_sent(self, notification: Notification) -> None:
        self._outbox = [item for item in self._outbox if item is not notification]
        self._delivered.append(notification)

    def history(self, *, recipient: Optional[str] = None) -> Sequence[Notification]:
        if recipient is None:
            return tuple(self._delivered)
        return tuple(item for item in self._delivered if item.recipient == recipient)


def milestone_notification(dependent_id: str, goal_name: str, percent: int, message: str) -> Notification:
    return Notification(
        recipient=dependent_id,
        type=NotificationType.GOAL_MILESTONE,
        subject=f"{goal_name}: {percent}% saved",
        body=message,
        goal_name=goal_name,
        extra={"percent": str(percent)},
    )


def goal_completed_notification(dependent_id: str, goal_name: str, amount: str) -> Notification:
    return Notification(
        recipient=dependent_id,
        type=NotificationType.GOAL_COMPLETED,
        subject=f"Goal reached: {goal_name}",
        body=f"You saved {amount} and reached your goal!",
        goal_name=goal_name,
    )


def challenge_notification(dependent_id: str, goal_name: str, *, completed: bool, bonus: str) -> Notification:
    if completed:
        return Notification(
            recipient=dependent_id,
            type=NotificationType.CHALLENGE_COMPLETED,
            subject=f"Challenge complete: {goal_name}",
            body=f"You beat the challenge and earned a {bonus} bonus!",
            goal_name=goal_name,
        )
    return Notification(
        recipient=dependent_id,
        type=NotificationType.CHALLENGE_FAILED,
        subject=f"Challenge ended: {goal_name}",
        body=f"The {bonus} bonus challenge ran out of time. Keep saving!",
        goal_name=goal_name,
        channel=NotificationChannel.IN_APP,
    )


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationType",
    "challenge_notification",
    "goal_completed_notification",
    "milestone_notification",
]
