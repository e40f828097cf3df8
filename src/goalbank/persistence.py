"""Persistence and SQLModel definitions for goalbank."""
from __future__ import annotations

import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, ContextManager, Dict, Iterator, List, Optional, TypeVar

from sqlalchemy import Column, DateTime, ForeignKey, Integer
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import DATABASE_URL, TRANSACTION_RETRY_ATTEMPTS
from .exceptions import DependentNotFoundError, GoalNotFoundError
from .models import (
    AutoTransferMode,
    ChallengeStatus,
    ChallengeTerms,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
    MatchTerms,
    MilestoneState,
    utc_now,
)
from .money import from_basis_points, from_cents

T = TypeVar("T")


def _goal_fk() -> Column:
    return Column(Integer, ForeignKey("savingsgoal.id", ondelete="CASCADE"), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Dependent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    dependent_id: str = Field(index=True, unique=True)
    name: str
    balance_cents: int = 0
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())


class SavingsGoal(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    dependent_id: str = Field(foreign_key="dependent.dependent_id", index=True)
    name: str
    description: str = ""
    target_cents: int
    current_cents: int = 0
    category: str = GoalCategory.OTHER.value
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    target_date: Optional[date] = None
    status: str = GoalStatus.ACTIVE.value
    priority: int = 1
    auto_transfer_mode: str = AutoTransferMode.NONE.value
    # cents for fixed_amount, hundredths of a percent for percentage
    auto_transfer_value: int = 0
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    purchased_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    purchase_notes: Optional[str] = None

    @property
    def goal_status(self) -> GoalStatus:
        return GoalStatus(self.status)


class GoalMilestone(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    goal_id: int = Field(sa_column=_goal_fk())
    percent_complete: int
    target_cents: int
    is_achieved: bool = False
    achieved_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    bonus_cents: Optional[int] = None
    celebration_message: str = ""

    def to_state(self) -> MilestoneState:
        return MilestoneState(
            percent_complete=self.percent_complete,
            target_amount=from_cents(self.target_cents),
            is_achieved=self.is_achieved,
            achieved_at=self.achieved_at,
            bonus_amount=from_cents(self.bonus_cents) if self.bonus_cents else None,
        )


class SavingsContribution(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    goal_id: int = Field(foreign_key="savingsgoal.id", index=True)
    dependent_id: str = Field(index=True)
    amount_cents: int
    type: str
    description: str = ""
    goal_balance_after_cents: int
    created_by: Optional[str] = None
    matches_contribution_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())

    @property
    def contribution_type(self) -> ContributionType:
        return ContributionType(self.type)


class ParentMatchingRule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    goal_id: int = Field(sa_column=_goal_fk())
    type: str
    match_ratio_bps: int
    max_match_cents: Optional[int] = None
    total_matched_cents: int = 0
    is_active: bool = True
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())

    def to_terms(self) -> MatchTerms:
        return MatchTerms(
            type=MatchingType(self.type),
            match_ratio=from_basis_points(self.match_ratio_bps),
            total_matched_amount=from_cents(self.total_matched_cents),
            max_match_amount=from_cents(self.max_match_cents) if self.max_match_cents is not None else None,
            is_active=self.is_active,
            expires_at=self.expires_at,
        )


class GoalChallenge(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    goal_id: int = Field(sa_column=_goal_fk())
    target_cents: int
    bonus_cents: int = 0
    start_date: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    end_date: datetime = Field(sa_type=DateTime())
    status: str = ChallengeStatus.ACTIVE.value
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime())

    def to_terms(self) -> ChallengeTerms:
        return ChallengeTerms(
            target_amount=from_cents(self.target_cents),
            end_date=self.end_date,
            bonus_amount=from_cents(self.bonus_cents),
            status=ChallengeStatus(self.status),
        )


# ---------------------------------------------------------------------------
# Aggregate loading
# ---------------------------------------------------------------------------
@dataclass
class GoalAggregate:
    """A goal with its dependent and owned records, loaded in one transaction."""

    goal: SavingsGoal
    dependent: Dependent
    milestones: List[GoalMilestone] = field(default_factory=list)
    rule: Optional[ParentMatchingRule] = None
    challenge: Optional[GoalChallenge] = None


def get_dependent_row(session: Session, dependent_id: str, *, for_update: bool = False) -> Dependent:
    statement = select(Dependent).where(Dependent.dependent_id == dependent_id)
    if for_update:
        statement = statement.with_for_update()
    dependent = session.exec(statement).first()
    if dependent is None:
        raise DependentNotFoundError(f"Dependent '{dependent_id}' does not exist.")
    return dependent


def get_goal_row(session: Session, goal_id: int, *, for_update: bool = False) -> SavingsGoal:
    statement = select(SavingsGoal).where(SavingsGoal.id == goal_id)
    if for_update:
        statement = statement.with_for_update()
    goal = session.exec(statement).first()
    if goal is None:
        raise GoalNotFoundError(f"Goal {goal_id} does not exist.")
    return goal


def active_challenge_row(session: Session, goal_id: int) -> Optional[GoalChallenge]:
    return session.exec(
        select(GoalChallenge)
        .where(GoalChallenge.goal_id == goal_id)
        .where(GoalChallenge.status == ChallengeStatus.ACTIVE.value)
    ).first()


def matching_rule_row(session: Session, goal_id: int) -> Optional[ParentMatchingRule]:
    return session.exec(select(ParentMatchingRule).where(ParentMatchingRule.goal_id == goal_id)).first()


def load_goal_aggregate(session: Session, goal_id: int, *, for_update: bool = True) -> GoalAggregate:
    goal = get_goal_row(session, goal_id, for_update=for_update)
    dependent = get_dependent_row(session, goal.dependent_id, for_update=for_update)
    milestones = list(
        session.exec(
            select(GoalMilestone)
            .where(GoalMilestone.goal_id == goal_id)
            .order_by(GoalMilestone.percent_complete)
        ).all()
    )
    return GoalAggregate(
        goal=goal,
        dependent=dependent,
        milestones=milestones,
        rule=matching_rule_row(session, goal_id),
        challenge=active_challenge_row(session, goal_id),
    )


# ---------------------------------------------------------------------------
# Engine, transactions and locking
# ---------------------------------------------------------------------------
class LockRegistry:
    """One re-entrant lock per key, alive only while some caller holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class Database:
    """Owns the engine and runs units of work as single transactions."""

    def __init__(
        self,
        url: str = DATABASE_URL,
        *,
        echo: bool = False,
        retry_attempts: int = TRANSACTION_RETRY_ATTEMPTS,
    ) -> None:
        engine_kwargs: Dict[str, object] = {"echo": echo}
        # An in-memory database lives on one shared connection, so every unit
        # of work (reads included) runs under a single engine-wide lock.
        self._engine_lock: Optional[threading.RLock] = None
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
                self._engine_lock = threading.RLock()
        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.retry_attempts = max(1, retry_attempts)
        self._locks = LockRegistry()

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        SQLModel.metadata.drop_all(self.engine)

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @property
    def locks(self) -> LockRegistry:
        return self._locks

    def lock(self, key: Optional[str]) -> ContextManager[object]:
        if self._engine_lock is not None:
            return self._engine_lock
        if key is None:
            return nullcontext()
        return self._locks.hold(key)

    def run_in_transaction(self, work: Callable[[Session], T], *, lock_key: Optional[str] = None) -> T:
        """Run ``work`` in one transaction, retrying transient store conflicts.

        Everything ``work`` does commits together or not at all. Only
        :class:`~sqlalchemy.exc.OperationalError` (lock timeouts, serialization
        failures) is retried; business errors propagate on the first attempt.
        """

        retrying = Retrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            reraise=True,
        )
        with self.lock(lock_key):
            for attempt in retrying:
                with attempt:
                    result = self._run_once(work)
        return result

    def _run_once(self, work: Callable[[Session], T]) -> T:
        with self.session() as session:
            with session.begin():
                return work(session)


__all__ = [
    "Database",
    "Dependent",
    "GoalAggregate",
    "GoalChallenge",
    "GoalMilestone",
    "LockRegistry",
    "ParentMatchingRule",
    "SavingsContribution",
    "SavingsGoal",
    "active_challenge_row",
    "get_dependent_row",
    "get_goal_row",
    "load_goal_aggregate",
    "matching_rule_row",
]
