from datetime import datetime, timedelta

import pytest

from goalbank.achievements import RecordingAchievementTrigger
from goalbank.notifications import NotificationCenter
from goalbank.ops import StructuredLogger
from goalbank.persistence import Database
from goalbank.service import SavingsGoalService


class Clock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 1, 9, 0, 0))


@pytest.fixture
def database():
    db = Database("sqlite://", retry_attempts=2)
    db.create_all()
    yield db
    db.drop_all()
    db.engine.dispose()


@pytest.fixture
def achievements() -> RecordingAchievementTrigger:
    return RecordingAchievementTrigger()


@pytest.fixture
def notifications() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="goalbank.tests")


@pytest.fixture
def service(database, achievements, notifications, logger, clock) -> SavingsGoalService:
    return SavingsGoalService(
        database,
        achievements=achievements,
        notifications=notifications,
        logger=logger,
        clock=clock,
    )
