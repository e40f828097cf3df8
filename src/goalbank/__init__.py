"""goalbank: savings goals with guardian matching, milestones and challenges."""

from .achievements import AchievementTrigger, RecordingAchievementTrigger, TriggerKind
from .exceptions import (
    AlreadyExistsError,
    ChallengeNotFoundError,
    DependentNotFoundError,
    GoalBankError,
    GoalNotFoundError,
    InsufficientFundsError,
    InsufficientGoalBalanceError,
    InvalidAmountError,
    InvalidStateError,
    LedgerIntegrityError,
    MatchingRuleNotFoundError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AutoTransferMode,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
)
from .notifications import Notification, NotificationCenter, NotificationChannel, NotificationType
from .ops import StructuredLogger
from .persistence import Database
from .service import SavingsGoalService
from .views import (
    ChallengeView,
    ContributionRecord,
    DependentView,
    GoalView,
    MatchingRuleView,
    MilestoneView,
    ProgressEvent,
)

__all__ = [
    "AchievementTrigger",
    "AlreadyExistsError",
    "AutoTransferMode",
    "ChallengeNotFoundError",
    "ChallengeStatus",
    "ChallengeView",
    "ContributionRecord",
    "ContributionType",
    "Database",
    "DependentNotFoundError",
    "DependentView",
    "GoalBankError",
    "GoalCategory",
    "GoalNotFoundError",
    "GoalStatus",
    "GoalView",
    "InsufficientFundsError",
    "InsufficientGoalBalanceError",
    "InvalidAmountError",
    "InvalidStateError",
    "LedgerIntegrityError",
    "MatchingRuleNotFoundError",
    "MatchingRuleView",
    "MatchingType",
    "MilestoneView",
    "NotFoundError",
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "ProgressEvent",
    "RecordingAchievementTrigger",
    "SavingsGoalService",
    "StructuredLogger",
    "TriggerKind",
    "ValidationError",
]
