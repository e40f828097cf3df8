"""Ledger primitives: spendable balance moves and write-once contributions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import event, func
from sqlmodel import Session, select

from .exceptions import InsufficientFundsError, InsufficientGoalBalanceError, LedgerIntegrityError
from .models import ContributionType
from .money import format_currency, from_cents
from .persistence import Dependent, SavingsContribution, SavingsGoal


def debit_spendable(dependent: Dependent, amount_cents: int, *, at: datetime) -> None:
    """Remove ``amount_cents`` from the dependent's spendable balance."""

    if amount_cents > dependent.balance_cents:
        raise InsufficientFundsError(
            f"Insufficient balance: {format_currency(from_cents(dependent.balance_cents))} available, "
            f"{format_currency(from_cents(amount_cents))} needed."
        )
    dependent.balance_cents -= amount_cents
    dependent.updated_at = at


def credit_spendable(dependent: Dependent, amount_cents: int, *, at: datetime) -> None:
    dependent.balance_cents += amount_cents
    dependent.updated_at = at


def append_contribution(
    session: Session,
    goal: SavingsGoal,
    *,
    amount_cents: int,
    type: ContributionType,
    description: str,
    created_by: Optional[str],
    at: datetime,
    matches: Optional[SavingsContribution] = None,
) -> SavingsContribution:
    """Apply a signed amount to ``goal`` and record it in the ledger.

    The goal's running amount and the entry's balance snapshot move together,
    so the ledger always sums to the goal's current amount. The entry is
    flushed immediately to obtain its identifier for match back-references.
    """

    new_balance = goal.current_cents + amount_cents
    if new_balance < 0:
        raise InsufficientGoalBalanceError(
            f"Goal '{goal.name}' only holds {format_currency(from_cents(goal.current_cents))}."
        )
    goal.current_cents = new_balance
    goal.updated_at = at
    entry = SavingsContribution(
        goal_id=goal.id,
        dependent_id=goal.dependent_id,
        amount_cents=amount_cents,
        type=type.value,
        description=description,
        goal_balance_after_cents=new_balance,
        created_by=created_by,
        matches_contribution_id=matches.id if matches is not None else None,
        created_at=at,
    )
    session.add(entry)
    session.add(goal)
    session.flush()
    return entry


def reconstruct_balance(session: Session, goal_id: int) -> Decimal:
    """Sum the ledger for ``goal_id``; equals the goal's current amount."""

    total = session.exec(
        select(func.coalesce(func.sum(SavingsContribution.amount_cents), 0)).where(
            SavingsContribution.goal_id == goal_id
        )
    ).one()
    return from_cents(int(total))


@event.listens_for(SavingsContribution, "before_update")
def _refuse_update(mapper, connection, target: SavingsContribution) -> None:  # noqa: ARG001
    raise LedgerIntegrityError(f"Contribution {target.id} is write-once and cannot be changed.")


@event.listens_for(SavingsContribution, "before_delete")
def _refuse_delete(mapper, connection, target: SavingsContribution) -> None:  # noqa: ARG001
    raise LedgerIntegrityError(f"Contribution {target.id} is write-once and cannot be deleted.")


__all__ = [
    "append_contribution",
    "credit_spendable",
    "debit_spendable",
    "reconstruct_balance",
]
