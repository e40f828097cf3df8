from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

import goalbank.service as service_module
from goalbank.achievements import TriggerKind
from goalbank.exceptions import (
    AlreadyExistsError,
    ChallengeNotFoundError,
    DependentNotFoundError,
    GoalNotFoundError,
    InsufficientFundsError,
    InsufficientGoalBalanceError,
    InvalidStateError,
    LedgerIntegrityError,
    MatchingRuleNotFoundError,
    NotFoundError,
    ValidationError,
)
from goalbank.models import AutoTransferMode, ChallengeStatus, ContributionType, GoalStatus, MatchingType
from goalbank.notifications import NotificationType
from goalbank.persistence import Database, SavingsContribution
from goalbank.service import SavingsGoalService


def _goal(service, *, target="100", balance="200", **kwargs):
    service.register_dependent("ava", "Ava", balance=balance)
    return service.create_goal("ava", "Bike", target, **kwargs)


def _balance(service) -> Decimal:
    return service.get_dependent("ava").balance


def test_register_and_lookup_dependents(service) -> None:
    ava = service.register_dependent("ava", "Ava", balance="12.50")
    assert ava.balance == Decimal("12.50")

    with pytest.raises(AlreadyExistsError):
        service.register_dependent("ava", "Ava again")
    with pytest.raises(DependentNotFoundError):
        service.get_dependent("ben")
    with pytest.raises(NotFoundError):
        service.get_dependent("ben")

    credited = service.credit_balance("ava", 7.5)
    assert credited.balance == Decimal("20.00")


def test_create_goal_builds_four_milestones(service, achievements) -> None:
    goal = _goal(service, milestone_bonuses={75: "3"})

    assert goal.status is GoalStatus.ACTIVE
    assert goal.current_amount == Decimal("0.00")
    assert [m.percent_complete for m in goal.milestones] == [25, 50, 75, 100]
    assert [m.target_amount for m in goal.milestones] == [
        Decimal("25.00"),
        Decimal("50.00"),
        Decimal("75.00"),
        Decimal("100.00"),
    ]
    assert goal.milestones[2].bonus_amount == Decimal("3.00")
    assert goal.milestones[0].celebration_message == "You've reached 25% of your goal!"
    assert len(achievements.fired(kind=TriggerKind.GOAL_CREATED)) == 1


def test_create_goal_validation(service) -> None:
    service.register_dependent("ava", "Ava")

    with pytest.raises(ValidationError):
        service.create_goal("ava", "  ", 10)
    with pytest.raises(ValidationError):
        service.create_goal("ava", "Bike", 0)
    with pytest.raises(ValidationError):
        service.create_goal("ava", "Bike", 10, priority=0)
    with pytest.raises(ValidationError):
        service.create_goal("ava", "Bike", 10, category="spaceship")
    with pytest.raises(ValidationError):
        service.create_goal("ava", "Bike", 10, auto_transfer_mode="percentage", auto_transfer_value=150)
    with pytest.raises(ValidationError):
        service.create_goal("ava", "Bike", 10, auto_transfer_mode="fixed_amount")
    with pytest.raises(DependentNotFoundError):
        service.create_goal("ben", "Bike", 10)


def test_deposits_cross_milestones_and_complete_goal(service, achievements, notifications, clock) -> None:
    goal = _goal(service)

    first = service.contribute(goal.id, 30, "Birthday money")
    assert first.new_amount == Decimal("30.00")
    assert first.milestone_reached.percent_complete == 25
    assert not first.is_completed
    assert first.progress_percentage == 30.0

    clock.advance(days=1)
    second = service.contribute(goal.id, 70)
    assert second.new_amount == Decimal("100.00")
    assert second.milestone_reached.percent_complete == 100
    assert second.is_completed

    view = service.get_goal(goal.id)
    assert view.status is GoalStatus.COMPLETED
    assert view.completed_at == clock.now
    assert all(m.is_achieved for m in view.milestones)
    assert _balance(service) == Decimal("100.00")

    assert len(achievements.fired(kind=TriggerKind.MILESTONE_REACHED)) == 4
    assert len(achievements.fired(kind=TriggerKind.SAVINGS_DEPOSIT)) == 2
    assert len(achievements.fired(kind=TriggerKind.GOAL_COMPLETED)) == 1
    assert len(notifications.pending(notification_type=NotificationType.GOAL_MILESTONE)) == 2
    assert len(notifications.pending(notification_type=NotificationType.GOAL_COMPLETED)) == 1


def test_matching_rule_stops_at_cap(service) -> None:
    goal = _goal(service, target="1000", balance="100")
    rule = service.create_matching_rule(
        goal.id, MatchingType.RATIO_MATCH, "0.5", max_match_amount=20, actor="mom"
    )
    assert rule.summary.description == "$1.00 for every $2.00 saved"

    first = service.contribute(goal.id, 36)
    assert first.match_amount_added == Decimal("18.00")

    second = service.contribute(goal.id, 10)
    assert second.match_amount_added == Decimal("2.00")
    assert second.new_amount == Decimal("66.00")

    third = service.contribute(goal.id, 4)
    assert third.match_amount_added is None

    rule = service.get_matching_rule(goal.id)
    assert rule.total_matched_amount == Decimal("20.00")
    assert rule.summary.remaining_match_amount == Decimal("0")

    matches = service.list_contributions(goal.id, type=ContributionType.GUARDIAN_MATCH)
    assert [entry.amount for entry in matches] == [Decimal("2.00"), Decimal("18.00")]
    assert matches[0].matches_contribution_id == second.contribution.id
    assert matches[0].created_by == "mom"
    assert _balance(service) == Decimal("50.00")


def test_challenge_completion_adds_bonus(service, achievements, notifications, clock) -> None:
    goal = _goal(service, target="200")
    challenge = service.create_challenge(goal.id, 50, clock.now + timedelta(days=7), 10, description="Spring sprint")
    assert challenge.days_remaining == 7
    assert challenge.status is ChallengeStatus.ACTIVE

    service.contribute(goal.id, 45)
    assert service.get_goal(goal.id).active_challenge.progress_percentage == 90.0

    event = service.contribute(goal.id, 10)
    assert event.challenge_completed
    assert event.challenge_bonus == Decimal("10.00")
    assert event.new_amount == Decimal("65.00")
    assert event.milestone_reached.percent_complete == 25

    with pytest.raises(ChallengeNotFoundError):
        service.get_active_challenge(goal.id)
    history = service.list_dependent_challenges("ava")
    assert history[0].status is ChallengeStatus.COMPLETED
    assert history[0].completed_at == clock.now

    bonuses = service.list_contributions(goal.id, type=ContributionType.BONUS)
    assert [entry.amount for entry in bonuses] == [Decimal("10.00")]
    assert _balance(service) == Decimal("145.00")
    assert len(achievements.fired(kind=TriggerKind.CHALLENGE_COMPLETED)) == 1
    assert len(notifications.pending(notification_type=NotificationType.CHALLENGE_COMPLETED)) == 1


def test_challenge_bonus_can_cross_a_milestone(service, clock) -> None:
    goal = _goal(service)
    service.create_challenge(goal.id, 20, clock.now + timedelta(days=1), 10)

    event = service.contribute(goal.id, 20)

    assert event.new_amount == Decimal("30.00")
    assert event.milestone_reached.percent_complete == 25


def test_cancel_refunds_and_blocks_contributions(service) -> None:
    goal = _goal(service, balance="100")
    service.contribute(goal.id, 42)
    assert _balance(service) == Decimal("58.00")

    cancelled = service.cancel_goal(goal.id, actor="dad")

    assert cancelled.status is GoalStatus.CANCELLED
    assert cancelled.current_amount == Decimal("0.00")
    assert _balance(service) == Decimal("100.00")
    refund = service.list_contributions(goal.id)[0]
    assert refund.type is ContributionType.WITHDRAWAL
    assert refund.amount == Decimal("-42.00")
    assert service.reconstruct_goal_balance(goal.id) == Decimal("0.00")

    with pytest.raises(InvalidStateError):
        service.contribute(goal.id, 1)
    with pytest.raises(InvalidStateError):
        service.withdraw(goal.id, 1)
    with pytest.raises(InvalidStateError):
        service.resume_goal(goal.id)


def test_balance_is_conserved_between_dependent_and_goal(service) -> None:
    goal = _goal(service, target="500", balance="100")

    def total() -> Decimal:
        return _balance(service) + service.get_goal(goal.id).current_amount

    service.contribute(goal.id, 30)
    assert total() == Decimal("100.00")
    service.withdraw(goal.id, 10, "Snack")
    assert total() == Decimal("100.00")
    service.contribute(goal.id, "5.55")
    assert total() == Decimal("100.00")
    service.cancel_goal(goal.id)
    assert _balance(service) == Decimal("100.00")


def test_milestone_bonus_is_awarded_once(service, clock) -> None:
    goal = _goal(service)
    service.set_milestone_bonus(goal.id, 25, 5)

    service.contribute(goal.id, 25)
    first_achieved = service.get_goal(goal.id).milestones[0].achieved_at
    assert service.get_goal(goal.id).current_amount == Decimal("30.00")

    clock.advance(hours=2)
    service.withdraw(goal.id, 10)
    service.contribute(goal.id, 10)

    view = service.get_goal(goal.id)
    assert view.milestones[0].achieved_at == first_achieved
    assert len(service.list_contributions(goal.id, type=ContributionType.BONUS)) == 1
    assert view.current_amount == Decimal("30.00")

    with pytest.raises(InvalidStateError):
        service.set_milestone_bonus(goal.id, 25, 1)
    with pytest.raises(ValidationError):
        service.set_milestone_bonus(goal.id, 30, 1)


def test_withdrawal_keeps_completion(service) -> None:
    goal = _goal(service, target="50")
    service.contribute(goal.id, 50)

    record = service.withdraw(goal.id, 20, "Changed my mind", actor="ava")

    assert record.amount == Decimal("-20.00")
    assert record.goal_balance_after == Decimal("30.00")
    view = service.get_goal(goal.id)
    assert view.status is GoalStatus.COMPLETED
    assert all(m.is_achieved for m in view.milestones)
    with pytest.raises(InvalidStateError):
        service.contribute(goal.id, 5)


def test_failed_operations_leave_no_trace(service) -> None:
    goal = _goal(service, balance="10")

    with pytest.raises(InsufficientFundsError):
        service.contribute(goal.id, 20)
    with pytest.raises(InsufficientGoalBalanceError):
        service.withdraw(goal.id, 1)
    with pytest.raises(ValidationError):
        service.contribute(goal.id, 0)
    with pytest.raises(ValidationError):
        service.contribute(goal.id, -5)
    with pytest.raises(GoalNotFoundError):
        service.contribute(999, 5)

    assert _balance(service) == Decimal("10.00")
    assert service.get_goal(goal.id).current_amount == Decimal("0.00")
    assert service.list_contributions(goal.id) == []


def test_pause_resume_settles_progress(service) -> None:
    goal = _goal(service)
    service.contribute(goal.id, 60)
    service.pause_goal(goal.id)

    with pytest.raises(InvalidStateError):
        service.contribute(goal.id, 1)

    paused = service.update_goal(goal.id, target_amount=50)
    assert paused.status is GoalStatus.PAUSED
    assert [m.target_amount for m in paused.milestones] == [
        Decimal("25.00"),
        Decimal("50.00"),
        Decimal("37.50"),
        Decimal("50.00"),
    ]

    resumed = service.resume_goal(goal.id)
    assert resumed.status is GoalStatus.COMPLETED
    assert all(m.is_achieved for m in resumed.milestones)


def test_update_goal_is_partial(service) -> None:
    goal = _goal(service, auto_transfer_mode=AutoTransferMode.FIXED_AMOUNT, auto_transfer_value=5)
    service.contribute(goal.id, 40)

    renamed = service.update_goal(goal.id, name="Red bike", priority=3)
    assert renamed.name == "Red bike"
    assert renamed.priority == 3
    assert renamed.target_amount == Decimal("100.00")
    assert renamed.auto_transfer_value == Decimal("5.00")

    switched = service.update_goal(goal.id, auto_transfer_mode="percentage", auto_transfer_value=25)
    assert switched.auto_transfer_mode is AutoTransferMode.PERCENTAGE
    assert switched.auto_transfer_value == Decimal("25.00")

    lowered = service.update_goal(goal.id, target_amount=40)
    assert lowered.status is GoalStatus.COMPLETED
    assert lowered.completed_at is not None


def test_purchase_requires_completion(service, achievements) -> None:
    goal = _goal(service, target="20")

    with pytest.raises(InvalidStateError):
        service.mark_purchased(goal.id)

    service.contribute(goal.id, 20)
    purchased = service.mark_purchased(goal.id, "Bought at the fair")

    assert purchased.status is GoalStatus.PURCHASED
    assert purchased.purchase_notes == "Bought at the fair"
    assert purchased.purchased_at is not None
    assert len(achievements.fired(kind=TriggerKind.GOAL_PURCHASED)) == 1
    with pytest.raises(InvalidStateError):
        service.cancel_goal(goal.id)
    with pytest.raises(InvalidStateError):
        service.update_goal(goal.id, name="Again")
    with pytest.raises(InvalidStateError):
        service.withdraw(goal.id, 1)


def test_list_goals_ordering_and_filters(service, clock) -> None:
    service.register_dependent("ava", "Ava", balance=100)
    later = service.create_goal("ava", "Later", 100, priority=2)
    clock.advance(minutes=1)
    first = service.create_goal("ava", "First", 100, priority=1)
    clock.advance(minutes=1)
    second = service.create_goal("ava", "Second", 10, priority=1)

    assert [goal.id for goal in service.list_goals("ava")] == [first.id, second.id, later.id]

    service.contribute(second.id, 10)
    assert [goal.id for goal in service.list_goals("ava")] == [first.id, later.id]
    assert len(service.list_goals("ava", include_completed=True)) == 3
    assert [goal.id for goal in service.list_goals("ava", status="completed")] == [second.id]


def test_contribution_history_filters(service, clock) -> None:
    goal = _goal(service)
    start = clock.now
    service.contribute(goal.id, 5)
    clock.advance(days=1)
    service.contribute(goal.id, 6)
    clock.advance(days=1)
    service.withdraw(goal.id, 2)

    history = service.list_contributions(goal.id)
    assert [entry.amount for entry in history] == [Decimal("-2.00"), Decimal("6.00"), Decimal("5.00")]

    deposits = service.list_contributions(goal.id, type="dependent_deposit")
    assert len(deposits) == 2

    window = service.list_contributions(goal.id, start=start + timedelta(hours=12), end=start + timedelta(hours=36))
    assert [entry.amount for entry in window] == [Decimal("6.00")]


def test_auto_transfers_follow_priority_until_balance_runs_out(service) -> None:
    service.register_dependent("ava", "Ava", balance=30)
    first = service.create_goal("ava", "First", 100, priority=1, auto_transfer_mode="fixed_amount", auto_transfer_value=20)
    second = service.create_goal("ava", "Second", 100, priority=2, auto_transfer_mode="percentage", auto_transfer_value=50)
    third = service.create_goal("ava", "Third", 100, priority=3, auto_transfer_mode="fixed_amount", auto_transfer_value=5)

    created = service.process_auto_transfers("ava", 30)

    assert [(entry.goal_id, entry.amount) for entry in created] == [
        (first.id, Decimal("20.00")),
        (second.id, Decimal("10.00")),
    ]
    assert all(entry.type is ContributionType.AUTO_TRANSFER for entry in created)
    assert all(entry.created_by is None for entry in created)
    assert service.get_goal(third.id).current_amount == Decimal("0.00")
    assert _balance(service) == Decimal("0.00")


def test_auto_transfers_clamp_to_target_and_skip_paused(service, achievements) -> None:
    service.register_dependent("ava", "Ava", balance=50)
    small = service.create_goal("ava", "Small", 10, auto_transfer_mode="fixed_amount", auto_transfer_value=25)
    paused = service.create_goal("ava", "Paused", 100, priority=2, auto_transfer_mode="fixed_amount", auto_transfer_value=5)
    manual = service.create_goal("ava", "Manual", 100, priority=3)
    service.pause_goal(paused.id)

    created = service.process_auto_transfers("ava", 50)

    assert [entry.goal_id for entry in created] == [small.id]
    assert created[0].amount == Decimal("10.00")
    assert service.get_goal(small.id).status is GoalStatus.COMPLETED
    assert service.get_goal(paused.id).current_amount == Decimal("0.00")
    assert service.get_goal(manual.id).current_amount == Decimal("0.00")
    assert _balance(service) == Decimal("40.00")
    assert len(achievements.fired(kind=TriggerKind.GOAL_COMPLETED)) == 1


def test_auto_transfer_failure_rolls_back_whole_batch(service, logger, monkeypatch) -> None:
    service.register_dependent("ava", "Ava", balance=30)
    first = service.create_goal("ava", "First", 100, auto_transfer_mode="fixed_amount", auto_transfer_value=10)
    service.create_goal("ava", "Second", 100, priority=2, auto_transfer_mode="fixed_amount", auto_transfer_value=10)

    real_append = service_module.append_contribution
    calls = []

    def flaky_append(*args, **kwargs):
        calls.append(kwargs["type"])
        if len(calls) == 2:
            raise RuntimeError("disk full")
        return real_append(*args, **kwargs)

    monkeypatch.setattr(service_module, "append_contribution", flaky_append)

    with pytest.raises(RuntimeError):
        service.process_auto_transfers("ava", 30)

    monkeypatch.undo()
    assert _balance(service) == Decimal("30.00")
    assert service.get_goal(first.id).current_amount == Decimal("0.00")
    assert service.list_contributions(first.id) == []
    failures = logger.tail(event="auto_transfer_failed")
    assert failures and failures[-1]["error"] == "disk full"


def test_matching_rule_management(service, clock) -> None:
    goal = _goal(service)
    service.create_matching_rule(goal.id, "percentage_match", 50)

    with pytest.raises(AlreadyExistsError):
        service.create_matching_rule(goal.id, "ratio_match", 1)

    paused_rule = service.update_matching_rule(goal.id, is_active=False)
    assert not paused_rule.is_active
    assert paused_rule.summary.match_ratio == Decimal("50.0000")
    assert service.contribute(goal.id, 10).match_amount_added is None

    service.update_matching_rule(goal.id, is_active=True, expires_at=clock.now + timedelta(days=1))
    assert service.contribute(goal.id, 10).match_amount_added == Decimal("5.00")
    clock.advance(days=2)
    assert service.contribute(goal.id, 10).match_amount_added is None

    assert service.get_goal(goal.id).matching_rule.description == "Matches 50% of each deposit"

    service.remove_matching_rule(goal.id)
    with pytest.raises(MatchingRuleNotFoundError):
        service.get_matching_rule(goal.id)
    with pytest.raises(ValidationError):
        service.create_matching_rule(goal.id, "percentage_match", 150)

    service.cancel_goal(goal.id)
    with pytest.raises(InvalidStateError):
        service.create_matching_rule(goal.id, "ratio_match", 1)


def test_challenge_management(service, clock) -> None:
    goal = _goal(service)

    with pytest.raises(ValidationError):
        service.create_challenge(goal.id, 50, clock.now - timedelta(minutes=1), 5)

    service.create_challenge(goal.id, 50, clock.now + timedelta(days=3), 5)
    with pytest.raises(AlreadyExistsError):
        service.create_challenge(goal.id, 60, clock.now + timedelta(days=3), 5)

    cancelled = service.cancel_challenge(goal.id)
    assert cancelled.status is ChallengeStatus.CANCELLED
    with pytest.raises(ChallengeNotFoundError):
        service.cancel_challenge(goal.id)

    replacement = service.create_challenge(goal.id, 60, clock.now + timedelta(days=3), 5)
    assert service.get_active_challenge(goal.id).id == replacement.id
    assert len(service.list_dependent_challenges("ava")) == 2


def test_expire_challenges_marks_overdue_as_failed(service, notifications, clock) -> None:
    goal = _goal(service)
    service.create_challenge(goal.id, 50, clock.now + timedelta(days=1), 10)
    service.contribute(goal.id, 20)

    clock.advance(days=2)
    assert service.expire_challenges() == 1
    assert service.expire_challenges() == 0

    assert service.list_dependent_challenges("ava")[0].status is ChallengeStatus.FAILED
    assert service.get_goal(goal.id).current_amount == Decimal("20.00")
    assert len(notifications.pending(notification_type=NotificationType.CHALLENGE_FAILED)) == 1

    event = service.contribute(goal.id, 40)
    assert not event.challenge_completed
    assert event.new_amount == Decimal("60.00")


def test_overdue_challenge_does_not_complete_before_sweep(service, clock) -> None:
    goal = _goal(service)
    service.create_challenge(goal.id, 10, clock.now + timedelta(hours=1), 10)
    clock.advance(hours=2)

    event = service.contribute(goal.id, 15)

    assert not event.challenge_completed
    assert event.new_amount == Decimal("15.00")


def test_failing_collaborators_do_not_undo_the_deposit(database, logger, clock) -> None:
    class ExplodingTrigger:
        def notify_trigger(self, dependent_id, trigger_kind, payload) -> None:
            raise RuntimeError("badge service down")

    class ExplodingInbox:
        def queue(self, notification) -> None:
            raise RuntimeError("push gateway down")

    service = SavingsGoalService(
        database,
        achievements=ExplodingTrigger(),
        notifications=ExplodingInbox(),
        logger=logger,
        clock=clock,
    )
    goal = _goal(service)

    event = service.contribute(goal.id, 30)

    assert event.new_amount == Decimal("30.00")
    assert service.get_goal(goal.id).current_amount == Decimal("30.00")
    assert _balance(service) == Decimal("170.00")
    failures = logger.tail(event="side_effect_failed")
    assert {entry["target"] for entry in failures} == {"achievement", "notification"}


def test_ledger_is_write_once_and_reconstructs_balance(service, database) -> None:
    goal = _goal(service, target="200")
    service.set_milestone_bonus(goal.id, 25, 5)
    service.create_matching_rule(goal.id, "ratio_match", 1)
    service.contribute(goal.id, 30)
    service.withdraw(goal.id, 4)

    assert service.reconstruct_goal_balance(goal.id) == service.get_goal(goal.id).current_amount
    assert service.get_goal(goal.id).current_amount == Decimal("61.00")

    with database.session() as session:
        entry = session.exec(select(SavingsContribution)).first()
        entry.amount_cents = 1
        session.add(entry)
        with pytest.raises(LedgerIntegrityError):
            session.commit()


def test_concurrent_deposits_to_one_goal_never_overdraw(tmp_path, clock) -> None:
    database = Database(f"sqlite:///{tmp_path / 'goals.db'}")
    database.create_all()
    service = SavingsGoalService(database, clock=clock)
    goal = _goal(service, target="100", balance="5")

    def attempt(_: int) -> bool:
        try:
            service.contribute(goal.id, 1)
        except InsufficientFundsError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(10)))

    assert outcomes.count(True) == 5
    assert _balance(service) == Decimal("0.00")
    assert service.get_goal(goal.id).current_amount == Decimal("5.00")
    assert service.reconstruct_goal_balance(goal.id) == Decimal("5.00")
    database.engine.dispose()


def test_completed_goals_take_no_new_challenges_or_rules(service, clock) -> None:
    goal = _goal(service, target="50")
    service.contribute(goal.id, 50)
    assert service.get_goal(goal.id).status is GoalStatus.COMPLETED

    with pytest.raises(InvalidStateError):
        service.create_challenge(goal.id, 60, clock.now + timedelta(days=3), 5)
    with pytest.raises(InvalidStateError):
        service.create_matching_rule(goal.id, "ratio_match", 1)
    assert service.list_dependent_challenges("ava") == []
