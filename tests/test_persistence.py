from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import DateTime, func
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from goalbank.exceptions import DependentNotFoundError, InsufficientFundsError, InvalidStateError
from goalbank.persistence import (
    Database,
    Dependent,
    GoalChallenge,
    GoalMilestone,
    LockRegistry,
    ParentMatchingRule,
    SavingsContribution,
    SavingsGoal,
)
from goalbank.service import SavingsGoalService


def _locked_out() -> OperationalError:
    return OperationalError("UPDATE dependent", {}, Exception("database is locked"))


def _dependent_count(session) -> int:
    return session.exec(select(func.count()).select_from(Dependent)).one()


def test_transient_store_errors_are_retried_from_a_clean_transaction(database) -> None:
    seen = []

    def work(session) -> str:
        seen.append(_dependent_count(session))
        session.add(Dependent(dependent_id=f"kid-{len(seen)}", name="Kid"))
        session.flush()
        if len(seen) == 1:
            raise _locked_out()
        return "saved"

    assert database.run_in_transaction(work) == "saved"
    assert seen == [0, 0]
    with database.session() as session:
        assert _dependent_count(session) == 1


def test_retries_give_up_after_the_configured_attempts(database) -> None:
    attempts = []

    def work(session) -> None:
        attempts.append(1)
        raise _locked_out()

    with pytest.raises(OperationalError):
        database.run_in_transaction(work)
    assert len(attempts) == database.retry_attempts == 2


def test_business_errors_run_exactly_once(database) -> None:
    attempts = []

    def work(session) -> None:
        attempts.append(1)
        raise InvalidStateError("Goal is paused.")

    with pytest.raises(InvalidStateError):
        database.run_in_transaction(work, lock_key="ava")
    assert len(attempts) == 1


def test_in_memory_database_keeps_dependents_apart_under_threads(service) -> None:
    service.register_dependent("ava", "Ava", balance=100)
    service.register_dependent("ben", "Ben")
    ava_goal = service.create_goal("ava", "Bike", 500)
    ben_goal = service.create_goal("ben", "Kite", 500)

    def save(goal_id: int) -> int:
        saved = 0
        for _ in range(80):
            try:
                service.contribute(goal_id, 1)
            except InsufficientFundsError:
                continue
            saved += 1
        return saved

    with ThreadPoolExecutor(max_workers=2) as pool:
        ava_saved, ben_saved = pool.map(save, [ava_goal.id, ben_goal.id])

    assert (ava_saved, ben_saved) == (80, 0)
    assert service.get_goal(ava_goal.id).current_amount == Decimal("80.00")
    assert service.reconstruct_goal_balance(ava_goal.id) == Decimal("80.00")
    assert service.get_dependent("ava").balance == Decimal("20.00")
    assert service.reconstruct_goal_balance(ben_goal.id) == Decimal("0.00")
    assert service.get_dependent("ben").balance == Decimal("0.00")


def test_lock_registry_forgets_released_keys() -> None:
    registry = LockRegistry()

    with registry.hold("ava"):
        with registry.hold("ava"):
            assert len(registry) == 1
        with registry.hold("ben"):
            assert len(registry) == 2
        assert len(registry) == 1

    assert len(registry) == 0


def test_unknown_dependents_leave_no_locks_behind(tmp_path, clock) -> None:
    database = Database(f"sqlite:///{tmp_path / 'goals.db'}")
    database.create_all()
    service = SavingsGoalService(database, clock=clock)

    for index in range(25):
        with pytest.raises(DependentNotFoundError):
            service.credit_balance(f"ghost-{index}", 1)

    assert len(database.locks) == 0
    database.engine.dispose()


def test_timestamps_round_trip_as_naive_datetimes(service, database, clock) -> None:
    for model in (Dependent, SavingsGoal, GoalMilestone, SavingsContribution, ParentMatchingRule, GoalChallenge):
        stamps = [column for column in model.__table__.columns if column.name.endswith(("_at", "start_date", "end_date"))]
        assert stamps
        for column in stamps:
            assert type(column.type) is DateTime
            assert not column.type.timezone

    service.register_dependent("ava", "Ava", balance=10)
    with database.session() as session:
        row = session.exec(select(Dependent).where(Dependent.dependent_id == "ava")).one()
    assert row.created_at == clock.now
    assert row.created_at.tzinfo is None
