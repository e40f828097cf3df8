"""Custom exception hierarchy for the goalbank package."""

from __future__ import annotations


class GoalBankError(Exception):
    """Base class for all goalbank specific errors."""

    code = "GOALBANK_ERROR"
    status_code = 500

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.__class__.__name__


class NotFoundError(GoalBankError):
    """Raised when a goal, dependent, rule or challenge lookup fails."""

    code = "NOT_FOUND"
    status_code = 404


class DependentNotFoundError(NotFoundError):
    """Raised when a dependent lookup fails."""


class GoalNotFoundError(NotFoundError):
    """Raised when a requested savings goal cannot be found."""


class MatchingRuleNotFoundError(NotFoundError):
    """Raised when a goal has no matching rule."""


class ChallengeNotFoundError(NotFoundError):
    """Raised when a goal has no active challenge."""


class InvalidStateError(GoalBankError):
    """Raised when an operation is not valid for the goal or challenge status."""

    code = "INVALID_STATE"
    status_code = 409


class InsufficientFundsError(GoalBankError):
    """Raised when a dependent's spendable balance cannot cover an amount."""

    code = "INSUFFICIENT_FUNDS"
    status_code = 422


class InsufficientGoalBalanceError(GoalBankError):
    """Raised when a withdrawal exceeds the amount saved in a goal."""

    code = "INSUFFICIENT_GOAL_BALANCE"
    status_code = 422


class AlreadyExistsError(GoalBankError):
    """Raised when creating a duplicate dependent, matching rule or active challenge."""

    code = "ALREADY_EXISTS"
    status_code = 409


class ValidationError(GoalBankError, ValueError):
    """Raised for malformed input such as a non-positive amount or bad ratio."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidAmountError(ValidationError):
    """Raised when an amount cannot be parsed or is out of range."""


class LedgerIntegrityError(GoalBankError):
    """Raised when code attempts to change a committed contribution."""

    code = "LEDGER_INTEGRITY"
