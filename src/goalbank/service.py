"""Savings goal service coordinating the ledger, trackers and collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Mapping, Optional, Tuple, Type, TypeVar

from sqlmodel import Session, desc, select

from .achievements import (
    AchievementTrigger,
    ChallengeBonusEarned,
    GoalCompleted,
    GoalCreated,
    GoalPurchased,
    MilestoneReached,
    RecordingAchievementTrigger,
    SavingsDeposited,
    TriggerPayload,
    fire,
)
from .challenges import challenge_progress, evaluate_challenge
from .exceptions import (
    AlreadyExistsError,
    ChallengeNotFoundError,
    InsufficientGoalBalanceError,
    InvalidStateError,
    MatchingRuleNotFoundError,
    ValidationError,
)
from .ledger import append_contribution, credit_spendable, debit_spendable, reconstruct_balance
from .lifecycle import GoalAction, ensure_accepts_contributions, ensure_editable, ensure_open, is_terminal, transition
from .matching import compute_match, validate_cap, validate_ratio
from .milestones import (
    celebration_message,
    evaluate_milestones,
    initial_milestones,
    most_advanced,
    normalize_bonus,
    retarget_milestones,
)
from .models import (
    MILESTONE_PERCENTAGES,
    AutoTransferMode,
    ChallengeCompleted,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
    MilestoneAchieved,
    utc_now,
)
from .money import (
    AmountLike,
    format_currency,
    from_cents,
    require_positive,
    to_basis_points,
    to_cents,
    to_decimal,
)
from .notifications import (
    Notification,
    NotificationCenter,
    NotificationDispatcher,
    challenge_notification,
    goal_completed_notification,
    milestone_notification,
)
from .ops import StructuredLogger
from .persistence import (
    Database,
    Dependent,
    GoalAggregate,
    GoalChallenge,
    GoalMilestone,
    ParentMatchingRule,
    SavingsContribution,
    SavingsGoal,
    active_challenge_row,
    get_dependent_row,
    get_goal_row,
    load_goal_aggregate,
    matching_rule_row,
)
from .views import (
    ChallengeView,
    ContributionRecord,
    DependentView,
    GoalView,
    MatchingRuleView,
    MilestoneView,
    ProgressEvent,
    records,
)

E = TypeVar("E", bound=Enum)
T = TypeVar("T")

ONE_HUNDRED = Decimal("100")
OPEN_GOAL_STATUSES = (GoalStatus.ACTIVE.value, GoalStatus.PAUSED.value)


def _coerce_enum(enum_cls: Type[E], value: E | str, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Unknown {label} '{value}'. Expected one of: {choices}.") from None


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _require_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Goal name is required.")
    return cleaned


def _require_priority(priority: int) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
        raise ValidationError("Priority must be a whole number of at least 1.")
    return priority


def _auto_transfer_value(mode: AutoTransferMode, value: AmountLike | None) -> int:
    """Return the stored auto-transfer parameter for ``mode``.

    Fixed amounts are stored in cents and percentages in hundredths of a
    percent, so both round-trip through :func:`~goalbank.money.from_cents`.
    """

    if mode is AutoTransferMode.NONE:
        return 0
    if value is None:
        raise ValidationError(f"Auto-transfer mode '{mode.value}' needs an amount.")
    amount = require_positive(to_decimal(value))
    if mode is AutoTransferMode.PERCENTAGE and amount > ONE_HUNDRED:
        raise ValidationError("Auto-transfer percentage must be between 0 and 100.")
    return to_cents(amount)


@dataclass(slots=True)
class _SideEffects:
    """Triggers and notifications collected inside a transaction, sent after commit."""

    triggers: List[Tuple[str, TriggerPayload]] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)

    def trigger(self, dependent_id: str, payload: TriggerPayload) -> None:
        self.triggers.append((dependent_id, payload))

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


@dataclass(slots=True)
class _Settlement:
    reached: List[MilestoneAchieved] = field(default_factory=list)
    challenge: Optional[GoalChallenge] = None
    completed: bool = False


class SavingsGoalService:
    """Run savings goal operations as single transactions against a :class:`Database`."""

    __slots__ = (
        "_database",
        "_achievements",
        "_notifications",
        "_logger",
        "_clock",
    )

    def __init__(
        self,
        database: Database,
        *,
        achievements: AchievementTrigger | None = None,
        notifications: NotificationDispatcher | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database = database
        self._achievements = achievements if achievements is not None else RecordingAchievementTrigger()
        self._notifications = notifications if notifications is not None else NotificationCenter()
        self._logger = logger or StructuredLogger()
        self._clock = clock

    @property
    def database(self) -> Database:
        return self._database

    @property
    def achievements(self) -> AchievementTrigger:
        return self._achievements

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifications

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def _now(self) -> datetime:
        return _naive_utc(self._clock())

    # ------------------------------------------------------------------
    # Dependents
    # ------------------------------------------------------------------
    def register_dependent(self, dependent_id: str, name: str, *, balance: AmountLike = 0) -> DependentView:
        key = (dependent_id or "").strip()
        if not key:
            raise ValidationError("Dependent identifier is required.")
        opening = to_cents(require_positive(to_decimal(balance), allow_zero=True))

        def work(session: Session) -> DependentView:
            existing = session.exec(select(Dependent).where(Dependent.dependent_id == key)).first()
            if existing is not None:
                raise AlreadyExistsError(f"Dependent '{key}' already exists.")
            now = self._now()
            row = Dependent(dependent_id=key, name=name.strip() or key, balance_cents=opening, created_at=now, updated_at=now)
            session.add(row)
            session.flush()
            return DependentView.from_row(row)

        view = self._database.run_in_transaction(work, lock_key=key)
        self._logger.log("dependent_registered", dependent=key, balance=float(view.balance))
        return view

    def get_dependent(self, dependent_id: str) -> DependentView:
        return self._read(lambda session: DependentView.from_row(get_dependent_row(session, dependent_id)))

    def credit_balance(self, dependent_id: str, amount: AmountLike, *, description: str = "Allowance") -> DependentView:
        """Add money to the dependent's spendable balance (allowance or manual credit)."""

        cents = to_cents(require_positive(to_decimal(amount)))

        def work(session: Session) -> DependentView:
            row = get_dependent_row(session, dependent_id, for_update=True)
            credit_spendable(row, cents, at=self._now())
            session.add(row)
            return DependentView.from_row(row)

        view = self._database.run_in_transaction(work, lock_key=dependent_id)
        self._logger.log(
            "balance_credited",
            dependent=dependent_id,
            amount=float(from_cents(cents)),
            description=description,
            balance=float(view.balance),
        )
        return view

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def create_goal(
        self,
        dependent_id: str,
        name: str,
        target_amount: AmountLike,
        *,
        description: str = "",
        category: GoalCategory | str = GoalCategory.OTHER,
        priority: int = 1,
        auto_transfer_mode: AutoTransferMode | str = AutoTransferMode.NONE,
        auto_transfer_value: AmountLike | None = None,
        target_date: date | None = None,
        image_url: str | None = None,
        product_url: str | None = None,
        milestone_bonuses: Mapping[int, AmountLike] | None = None,
    ) -> GoalView:
        """Create an active goal together with its four milestones."""

        goal_name = _require_name(name)
        target = require_positive(to_decimal(target_amount))
        goal_category = _coerce_enum(GoalCategory, category, "category")
        mode = _coerce_enum(AutoTransferMode, auto_transfer_mode, "auto-transfer mode")
        transfer_value = _auto_transfer_value(mode, auto_transfer_value)
        milestones = initial_milestones(target, milestone_bonuses)
        _require_priority(priority)

        def work(session: Session) -> Tuple[GoalView, _SideEffects]:
            effects = _SideEffects()
            now = self._now()
            get_dependent_row(session, dependent_id, for_update=True)
            goal = SavingsGoal(
                dependent_id=dependent_id,
                name=goal_name,
                description=description,
                target_cents=to_cents(target),
                category=goal_category.value,
                image_url=image_url,
                product_url=product_url,
                target_date=target_date,
                priority=priority,
                auto_transfer_mode=mode.value,
                auto_transfer_value=transfer_value,
                created_at=now,
                updated_at=now,
            )
            session.add(goal)
            session.flush()
            for state in milestones:
                session.add(
                    GoalMilestone(
                        goal_id=goal.id,
                        percent_complete=state.percent_complete,
                        target_cents=to_cents(state.target_amount),
                        bonus_cents=to_cents(state.bonus_amount) if state.bonus_amount else None,
                        celebration_message=celebration_message(state.percent_complete),
                    )
                )
            session.flush()
            effects.trigger(dependent_id, GoalCreated(goal_id=goal.id, goal_name=goal.name, target_amount=target))
            aggregate = load_goal_aggregate(session, goal.id, for_update=False)
            return GoalView.from_aggregate(aggregate, at=now), effects

        view, effects = self._database.run_in_transaction(work, lock_key=dependent_id)
        self._logger.log(
            "goal_created",
            dependent=dependent_id,
            goal_id=view.id,
            goal=view.name,
            target=float(view.target_amount),
        )
        self._dispatch(effects)
        return view

    def get_goal(self, goal_id: int) -> GoalView:
        def work(session: Session) -> GoalView:
            return GoalView.from_aggregate(load_goal_aggregate(session, goal_id, for_update=False), at=self._now())

        return self._read(work)

    def list_goals(
        self,
        dependent_id: str,
        *,
        status: GoalStatus | str | None = None,
        include_completed: bool = False,
    ) -> List[GoalView]:
        """Return a dependent's goals ordered by priority, then creation time.

        Without ``status`` only open (active or paused) goals are listed unless
        ``include_completed`` asks for finished ones too.
        """

        wanted = _coerce_enum(GoalStatus, status, "status") if status is not None else None

        def work(session: Session) -> List[GoalView]:
            get_dependent_row(session, dependent_id)
            statement = select(SavingsGoal).where(SavingsGoal.dependent_id == dependent_id)
            if wanted is not None:
                statement = statement.where(SavingsGoal.status == wanted.value)
            elif not include_completed:
                statement = statement.where(SavingsGoal.status.in_(OPEN_GOAL_STATUSES))
            statement = statement.order_by(SavingsGoal.priority, SavingsGoal.created_at, SavingsGoal.id)
            at = self._now()
            return [
                GoalView.from_aggregate(load_goal_aggregate(session, goal.id, for_update=False), at=at)
                for goal in session.exec(statement).all()
            ]

        return self._read(work)

    def update_goal(
        self,
        goal_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        target_amount: AmountLike | None = None,
        category: GoalCategory | str | None = None,
        priority: int | None = None,
        auto_transfer_mode: AutoTransferMode | str | None = None,
        auto_transfer_value: AmountLike | None = None,
        target_date: date | None = None,
        image_url: str | None = None,
        product_url: str | None = None,
    ) -> GoalView:
        """Apply a partial update; only the supplied fields change."""

        new_name = _require_name(name) if name is not None else None
        new_target = require_positive(to_decimal(target_amount)) if target_amount is not None else None
        new_category = _coerce_enum(GoalCategory, category, "category") if category is not None else None
        new_mode = (
            _coerce_enum(AutoTransferMode, auto_transfer_mode, "auto-transfer mode")
            if auto_transfer_mode is not None
            else None
        )
        if priority is not None:
            _require_priority(priority)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> Tuple[GoalView, _SideEffects]:
            effects = _SideEffects()
            now = self._now()
            aggregate = load_goal_aggregate(session, goal_id)
            goal = aggregate.goal
            ensure_editable(goal.goal_status)
            if new_name is not None:
                goal.name = new_name
            if description is not None:
                goal.description = description
            if new_category is not None:
                goal.category = new_category.value
            if priority is not None:
                goal.priority = priority
            if target_date is not None:
                goal.target_date = target_date
            if image_url is not None:
                goal.image_url = image_url
            if product_url is not None:
                goal.product_url = product_url
            if new_mode is not None or auto_transfer_value is not None:
                mode = new_mode or AutoTransferMode(goal.auto_transfer_mode)
                if auto_transfer_value is None and mode is AutoTransferMode(goal.auto_transfer_mode):
                    value: AmountLike | None = from_cents(goal.auto_transfer_value)
                else:
                    value = auto_transfer_value
                goal.auto_transfer_value = _auto_transfer_value(mode, value)
                goal.auto_transfer_mode = mode.value
            if new_target is not None:
                goal.target_cents = to_cents(new_target)
                self._retarget(session, aggregate, new_target)
            goal.updated_at = now
            session.add(goal)
            if new_target is not None:
                self._settle_progress(session, aggregate, at=now, effects=effects)
            return GoalView.from_aggregate(aggregate, at=now), effects

        view, effects = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log("goal_updated", goal_id=goal_id, dependent=owner, status=view.status.value)
        self._dispatch(effects)
        return view

    def set_milestone_bonus(self, goal_id: int, percent: int, bonus_amount: AmountLike | None) -> GoalView:
        """Attach (or clear, with ``None`` or zero) the bonus paid when a milestone is reached."""

        if percent not in MILESTONE_PERCENTAGES:
            raise ValidationError("Milestones supported: 25, 50, 75 and 100 percent.")
        bonus = normalize_bonus(bonus_amount)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> GoalView:
            now = self._now()
            aggregate = load_goal_aggregate(session, goal_id)
            ensure_editable(aggregate.goal.goal_status)
            row = next(item for item in aggregate.milestones if item.percent_complete == percent)
            if row.is_achieved:
                raise InvalidStateError(f"The {percent}% milestone was already reached.")
            row.bonus_cents = to_cents(bonus) if bonus is not None else None
            session.add(row)
            return GoalView.from_aggregate(aggregate, at=now)

        view = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log("milestone_bonus_set", goal_id=goal_id, percent=percent, bonus=float(bonus or 0))
        return view

    def pause_goal(self, goal_id: int) -> GoalView:
        return self._change_status(goal_id, GoalAction.PAUSE)

    def resume_goal(self, goal_id: int) -> GoalView:
        """Reactivate a paused goal, settling any progress already reached."""

        return self._change_status(goal_id, GoalAction.RESUME)

    def cancel_goal(self, goal_id: int, *, actor: str | None = None) -> GoalView:
        """Cancel an open goal and refund its saved amount to the spendable balance."""

        return self._change_status(goal_id, GoalAction.CANCEL, actor=actor)

    def mark_purchased(self, goal_id: int, notes: str | None = None) -> GoalView:
        return self._change_status(goal_id, GoalAction.PURCHASE, notes=notes)

    def _change_status(
        self,
        goal_id: int,
        action: GoalAction,
        *,
        actor: str | None = None,
        notes: str | None = None,
    ) -> GoalView:
        owner = self._owner_of(goal_id)

        def work(session: Session) -> Tuple[GoalView, _SideEffects, int]:
            effects = _SideEffects()
            now = self._now()
            aggregate = load_goal_aggregate(session, goal_id)
            goal = aggregate.goal
            target_status = transition(goal.goal_status, action)
            refunded = 0
            if action is GoalAction.CANCEL:
                refunded = goal.current_cents
                if refunded > 0:
                    credit_spendable(aggregate.dependent, refunded, at=now)
                    session.add(aggregate.dependent)
                    append_contribution(
                        session,
                        goal,
                        amount_cents=-refunded,
                        type=ContributionType.WITHDRAWAL,
                        description="Refund on goal cancellation",
                        created_by=actor,
                        at=now,
                    )
                if aggregate.challenge is not None:
                    aggregate.challenge.status = ChallengeStatus.CANCELLED.value
                    session.add(aggregate.challenge)
                    aggregate.challenge = None
            elif action is GoalAction.PURCHASE:
                goal.purchased_at = now
                goal.purchase_notes = notes
                effects.trigger(goal.dependent_id, GoalPurchased(goal_id=goal.id, goal_name=goal.name))
            goal.status = target_status.value
            goal.updated_at = now
            session.add(goal)
            if action is GoalAction.RESUME:
                self._settle_progress(session, aggregate, at=now, effects=effects)
            return GoalView.from_aggregate(aggregate, at=now), effects, refunded

        view, effects, refunded = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log(
            "goal_status_changed",
            goal_id=goal_id,
            dependent=owner,
            action=action.value,
            status=view.status.value,
            refunded=float(from_cents(refunded)),
        )
        self._dispatch(effects)
        return view

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def contribute(
        self,
        goal_id: int,
        amount: AmountLike,
        description: str = "",
        *,
        actor: str | None = None,
    ) -> ProgressEvent:
        """Move money from the spendable balance into an active goal.

        Matching, milestones, the active challenge and completion are all
        settled in the same transaction as the deposit.
        """

        value = require_positive(to_decimal(amount))
        cents = to_cents(value)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> Tuple[ProgressEvent, _SideEffects]:
            effects = _SideEffects()
            now = self._now()
            aggregate = load_goal_aggregate(session, goal_id)
            goal = aggregate.goal
            ensure_accepts_contributions(goal.goal_status)
            debit_spendable(aggregate.dependent, cents, at=now)
            session.add(aggregate.dependent)
            deposit = append_contribution(
                session,
                goal,
                amount_cents=cents,
                type=ContributionType.DEPENDENT_DEPOSIT,
                description=description or "Savings deposit",
                created_by=actor or goal.dependent_id,
                at=now,
            )
            match_amount = self._apply_match(session, aggregate, deposit, value, at=now)
            settlement = self._settle_progress(session, aggregate, at=now, effects=effects)
            effects.trigger(
                goal.dependent_id,
                SavingsDeposited(
                    goal_id=goal.id,
                    amount=value,
                    goal_balance=from_cents(goal.current_cents),
                    contribution_type=ContributionType.DEPENDENT_DEPOSIT,
                ),
            )
            return self._progress_event(aggregate, deposit, settlement, match_amount), effects

        event, effects = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log(
            "goal_contribution",
            goal_id=goal_id,
            dependent=owner,
            amount=float(value),
            match=float(event.match_amount_added or 0),
            saved=float(event.new_amount),
            completed=event.is_completed,
        )
        self._dispatch(effects)
        return event

    def withdraw(
        self,
        goal_id: int,
        amount: AmountLike,
        reason: str = "",
        *,
        actor: str | None = None,
    ) -> ContributionRecord:
        """Return money from a goal to the spendable balance.

        Achieved milestones, completed challenges and a completed status are
        left untouched.
        """

        value = require_positive(to_decimal(amount))
        cents = to_cents(value)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> ContributionRecord:
            now = self._now()
            aggregate = load_goal_aggregate(session, goal_id)
            goal = aggregate.goal
            if is_terminal(goal.goal_status):
                raise InvalidStateError(f"Goal is {goal.status}; nothing can be withdrawn.")
            if cents > goal.current_cents:
                raise InsufficientGoalBalanceError(
                    f"Cannot withdraw {format_currency(value)}; "
                    f"goal holds {format_currency(from_cents(goal.current_cents))}."
                )
            credit_spendable(aggregate.dependent, cents, at=now)
            session.add(aggregate.dependent)
            entry = append_contribution(
                session,
                goal,
                amount_cents=-cents,
                type=ContributionType.WITHDRAWAL,
                description=reason or "Withdrawal",
                created_by=actor,
                at=now,
            )
            return ContributionRecord.from_row(entry)

        record = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log(
            "goal_withdrawal",
            goal_id=goal_id,
            dependent=owner,
            amount=float(value),
            saved=float(record.goal_balance_after),
        )
        return record

    def list_contributions(
        self,
        goal_id: int,
        *,
        type: ContributionType | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[ContributionRecord]:
        """Return ledger entries for a goal, newest first."""

        kind = _coerce_enum(ContributionType, type, "contribution type") if type is not None else None

        def work(session: Session) -> List[ContributionRecord]:
            get_goal_row(session, goal_id)
            statement = select(SavingsContribution).where(SavingsContribution.goal_id == goal_id)
            if kind is not None:
                statement = statement.where(SavingsContribution.type == kind.value)
            if start is not None:
                statement = statement.where(SavingsContribution.created_at >= _naive_utc(start))
            if end is not None:
                statement = statement.where(SavingsContribution.created_at <= _naive_utc(end))
            statement = statement.order_by(desc(SavingsContribution.created_at), desc(SavingsContribution.id))
            return records(session.exec(statement).all())

        return self._read(work)

    def reconstruct_goal_balance(self, goal_id: int) -> Decimal:
        def work(session: Session) -> Decimal:
            get_goal_row(session, goal_id)
            return reconstruct_balance(session, goal_id)

        return self._read(work)

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------
    def process_auto_transfers(
        self, dependent_id: str, allowance_amount: AmountLike
    ) -> List[ContributionRecord]:
        """Move part of a disbursed allowance into goals with auto-transfer set.

        The allowance is expected to be in the spendable balance already.
        Goals are visited by ascending priority; each transfer is clamped to
        the remaining spendable balance and to what the goal still needs. The
        whole batch commits or fails together.
        """

        allowance = require_positive(to_decimal(allowance_amount))

        def work(session: Session) -> Tuple[List[ContributionRecord], _SideEffects]:
            effects = _SideEffects()
            now = self._now()
            dependent = get_dependent_row(session, dependent_id, for_update=True)
            goals = session.exec(
                select(SavingsGoal)
                .where(SavingsGoal.dependent_id == dependent_id)
                .where(SavingsGoal.status == GoalStatus.ACTIVE.value)
                .where(SavingsGoal.auto_transfer_mode != AutoTransferMode.NONE.value)
                .order_by(SavingsGoal.priority, SavingsGoal.created_at, SavingsGoal.id)
                .with_for_update()
            ).all()
            created: List[ContributionRecord] = []
            for goal in goals:
                if dependent.balance_cents <= 0:
                    break
                mode = AutoTransferMode(goal.auto_transfer_mode)
                if mode is AutoTransferMode.FIXED_AMOUNT:
                    candidate = goal.auto_transfer_value
                else:
                    candidate = to_cents(allowance * from_cents(goal.auto_transfer_value) / ONE_HUNDRED)
                needed = goal.target_cents - goal.current_cents
                cents = min(candidate, dependent.balance_cents, needed)
                if cents <= 0:
                    continue
                aggregate = load_goal_aggregate(session, goal.id)
                debit_spendable(dependent, cents, at=now)
                session.add(dependent)
                entry = append_contribution(
                    session,
                    goal,
                    amount_cents=cents,
                    type=ContributionType.AUTO_TRANSFER,
                    description=f"Auto-transfer from {format_currency(allowance)} allowance",
                    created_by=None,
                    at=now,
                )
                created.append(ContributionRecord.from_row(entry))
                self._settle_progress(session, aggregate, at=now, effects=effects)
                effects.trigger(
                    dependent_id,
                    SavingsDeposited(
                        goal_id=goal.id,
                        amount=from_cents(cents),
                        goal_balance=from_cents(goal.current_cents),
                        contribution_type=ContributionType.AUTO_TRANSFER,
                    ),
                )
            return created, effects

        try:
            created, effects = self._database.run_in_transaction(work, lock_key=dependent_id)
        except Exception as exc:
            self._logger.error(
                "auto_transfer_failed",
                dependent=dependent_id,
                allowance=float(allowance),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        for record in created:
            self._logger.log(
                "auto_transfer",
                dependent=dependent_id,
                goal_id=record.goal_id,
                amount=float(record.amount),
                saved=float(record.goal_balance_after),
            )
        self._dispatch(effects)
        return created

    def expire_challenges(self) -> int:
        """Mark every active challenge whose end date has passed as failed."""

        def work(session: Session) -> Tuple[List[Tuple[int, int, str]], _SideEffects]:
            effects = _SideEffects()
            now = self._now()
            rows = session.exec(
                select(GoalChallenge)
                .where(GoalChallenge.status == ChallengeStatus.ACTIVE.value)
                .where(GoalChallenge.end_date < now)
                .with_for_update()
            ).all()
            failed: List[Tuple[int, int, str]] = []
            for row in rows:
                row.status = ChallengeStatus.FAILED.value
                session.add(row)
                goal = get_goal_row(session, row.goal_id)
                failed.append((row.id, goal.id, goal.dependent_id))
                effects.notify(
                    challenge_notification(
                        goal.dependent_id,
                        goal.name,
                        completed=False,
                        bonus=format_currency(from_cents(row.bonus_cents)),
                    )
                )
            return failed, effects

        failed, effects = self._database.run_in_transaction(work)
        for challenge_id, goal_id, dependent_id in failed:
            self._logger.log("challenge_failed", challenge_id=challenge_id, goal_id=goal_id, dependent=dependent_id)
        self._dispatch(effects)
        return len(failed)

    # ------------------------------------------------------------------
    # Matching rules
    # ------------------------------------------------------------------
    def create_matching_rule(
        self,
        goal_id: int,
        matching_type: MatchingType | str,
        match_ratio: AmountLike,
        *,
        max_match_amount: AmountLike | None = None,
        expires_at: datetime | None = None,
        actor: str | None = None,
    ) -> MatchingRuleView:
        kind = _coerce_enum(MatchingType, matching_type, "matching type")
        ratio = validate_ratio(kind, match_ratio)
        cap = validate_cap(max_match_amount)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> MatchingRuleView:
            now = self._now()
            goal = get_goal_row(session, goal_id, for_update=True)
            ensure_open(goal.goal_status)
            if matching_rule_row(session, goal_id) is not None:
                raise AlreadyExistsError(f"Goal {goal_id} already has a matching rule.")
            rule = ParentMatchingRule(
                goal_id=goal_id,
                type=kind.value,
                match_ratio_bps=to_basis_points(ratio),
                max_match_cents=to_cents(cap) if cap is not None else None,
                expires_at=_naive_utc(expires_at) if expires_at is not None else None,
                created_by=actor,
                created_at=now,
            )
            session.add(rule)
            session.flush()
            return MatchingRuleView.from_row(rule, goal)

        view = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log(
            "matching_rule_created",
            goal_id=goal_id,
            type=kind.value,
            ratio=float(ratio),
            cap=float(cap) if cap is not None else None,
        )
        return view

    def get_matching_rule(self, goal_id: int) -> MatchingRuleView:
        def work(session: Session) -> MatchingRuleView:
            goal = get_goal_row(session, goal_id)
            return MatchingRuleView.from_row(self._require_rule(session, goal_id), goal)

        return self._read(work)

    def update_matching_rule(
        self,
        goal_id: int,
        *,
        match_ratio: AmountLike | None = None,
        max_match_amount: AmountLike | None = None,
        is_active: bool | None = None,
        expires_at: datetime | None = None,
    ) -> MatchingRuleView:
        """Change only the supplied fields of the goal's matching rule."""

        cap = validate_cap(max_match_amount)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> MatchingRuleView:
            goal = get_goal_row(session, goal_id, for_update=True)
            rule = self._require_rule(session, goal_id)
            if match_ratio is not None:
                rule.match_ratio_bps = to_basis_points(validate_ratio(MatchingType(rule.type), match_ratio))
            if cap is not None:
                rule.max_match_cents = to_cents(cap)
            if is_active is not None:
                rule.is_active = is_active
            if expires_at is not None:
                rule.expires_at = _naive_utc(expires_at)
            session.add(rule)
            return MatchingRuleView.from_row(rule, goal)

        view = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log("matching_rule_updated", goal_id=goal_id, active=view.is_active)
        return view

    def remove_matching_rule(self, goal_id: int) -> None:
        owner = self._owner_of(goal_id)

        def work(session: Session) -> None:
            get_goal_row(session, goal_id, for_update=True)
            session.delete(self._require_rule(session, goal_id))

        self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log("matching_rule_removed", goal_id=goal_id)

    @staticmethod
    def _require_rule(session: Session, goal_id: int) -> ParentMatchingRule:
        rule = matching_rule_row(session, goal_id)
        if rule is None:
            raise MatchingRuleNotFoundError(f"Goal {goal_id} has no matching rule.")
        return rule

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------
    def create_challenge(
        self,
        goal_id: int,
        target_amount: AmountLike,
        end_date: datetime,
        bonus_amount: AmountLike = 0,
        *,
        description: str | None = None,
        actor: str | None = None,
    ) -> ChallengeView:
        """Start a time-boxed challenge; a goal has at most one active challenge."""

        target = require_positive(to_decimal(target_amount))
        bonus = require_positive(to_decimal(bonus_amount), allow_zero=True)
        deadline = _naive_utc(end_date)
        owner = self._owner_of(goal_id)

        def work(session: Session) -> ChallengeView:
            now = self._now()
            if deadline <= now:
                raise ValidationError("Challenge end date must be in the future.")
            goal = get_goal_row(session, goal_id, for_update=True)
            ensure_open(goal.goal_status)
            if active_challenge_row(session, goal_id) is not None:
                raise AlreadyExistsError(f"Goal {goal_id} already has an active challenge.")
            challenge = GoalChallenge(
                goal_id=goal_id,
                target_cents=to_cents(target),
                bonus_cents=to_cents(bonus),
                start_date=now,
                end_date=deadline,
                description=description,
                created_by=actor,
                created_at=now,
            )
            session.add(challenge)
            session.flush()
            return ChallengeView.from_row(challenge, goal, at=now)

        view = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log(
            "challenge_created",
            goal_id=goal_id,
            challenge_id=view.id,
            target=float(target),
            bonus=float(bonus),
            end_date=deadline.isoformat(),
        )
        return view

    def get_active_challenge(self, goal_id: int) -> ChallengeView:
        def work(session: Session) -> ChallengeView:
            goal = get_goal_row(session, goal_id)
            return ChallengeView.from_row(self._require_challenge(session, goal_id), goal, at=self._now())

        return self._read(work)

    def cancel_challenge(self, goal_id: int) -> ChallengeView:
        owner = self._owner_of(goal_id)

        def work(session: Session) -> ChallengeView:
            goal = get_goal_row(session, goal_id, for_update=True)
            challenge = self._require_challenge(session, goal_id)
            challenge.status = ChallengeStatus.CANCELLED.value
            session.add(challenge)
            return ChallengeView.from_row(challenge, goal, at=self._now())

        view = self._database.run_in_transaction(work, lock_key=owner)
        self._logger.log("challenge_cancelled", goal_id=goal_id, challenge_id=view.id)
        return view

    def list_dependent_challenges(self, dependent_id: str) -> List[ChallengeView]:
        """Return every challenge on the dependent's goals, newest first."""

        def work(session: Session) -> List[ChallengeView]:
            get_dependent_row(session, dependent_id)
            rows = session.exec(
                select(GoalChallenge, SavingsGoal)
                .where(GoalChallenge.goal_id == SavingsGoal.id)
                .where(SavingsGoal.dependent_id == dependent_id)
                .order_by(desc(GoalChallenge.created_at), desc(GoalChallenge.id))
            ).all()
            at = self._now()
            return [ChallengeView.from_row(challenge, goal, at=at) for challenge, goal in rows]

        return self._read(work)

    @staticmethod
    def _require_challenge(session: Session, goal_id: int) -> GoalChallenge:
        challenge = active_challenge_row(session, goal_id)
        if challenge is None:
            raise ChallengeNotFoundError(f"Goal {goal_id} has no active challenge.")
        return challenge

    # ------------------------------------------------------------------
    # Progress settlement
    # ------------------------------------------------------------------
    def _apply_match(
        self,
        session: Session,
        aggregate: GoalAggregate,
        deposit: SavingsContribution,
        deposit_amount: Decimal,
        *,
        at: datetime,
    ) -> Optional[Decimal]:
        rule = aggregate.rule
        if rule is None:
            return None
        match_amount = compute_match(rule.to_terms(), deposit_amount, at=at)
        if match_amount <= Decimal("0"):
            return None
        match_cents = to_cents(match_amount)
        rule.total_matched_cents += match_cents
        session.add(rule)
        append_contribution(
            session,
            aggregate.goal,
            amount_cents=match_cents,
            type=ContributionType.GUARDIAN_MATCH,
            description=f"Guardian match on {format_currency(deposit_amount)} deposit",
            created_by=rule.created_by,
            at=at,
            matches=deposit,
        )
        return match_amount

    def _award_milestones(self, session: Session, aggregate: GoalAggregate, *, at: datetime) -> List[MilestoneAchieved]:
        goal = aggregate.goal
        rows = {row.percent_complete: row for row in aggregate.milestones}
        reached = evaluate_milestones(
            from_cents(goal.current_cents),
            [row.to_state() for row in aggregate.milestones],
            at=at,
        )
        for outcome in reached:
            row = rows[outcome.percent_complete]
            row.is_achieved = True
            row.achieved_at = outcome.achieved_at
            session.add(row)
            if outcome.bonus_amount:
                append_contribution(
                    session,
                    goal,
                    amount_cents=to_cents(outcome.bonus_amount),
                    type=ContributionType.BONUS,
                    description=f"Milestone bonus for reaching {outcome.percent_complete}%",
                    created_by=None,
                    at=at,
                )
        return reached

    def _settle_progress(
        self,
        session: Session,
        aggregate: GoalAggregate,
        *,
        at: datetime,
        effects: _SideEffects,
    ) -> _Settlement:
        """Award milestones, then the challenge, then completion for an active goal.

        A challenge bonus re-runs milestone evaluation so the bonus can cross a
        threshold within the same operation.
        """

        settlement = _Settlement()
        goal = aggregate.goal
        if goal.goal_status is not GoalStatus.ACTIVE:
            return settlement

        settlement.reached.extend(self._award_milestones(session, aggregate, at=at))

        challenge = aggregate.challenge
        if challenge is not None:
            outcome = evaluate_challenge(challenge.to_terms(), from_cents(goal.current_cents), at=at)
            if isinstance(outcome, ChallengeCompleted):
                challenge.status = ChallengeStatus.COMPLETED.value
                challenge.completed_at = outcome.completed_at
                session.add(challenge)
                if outcome.bonus_amount > Decimal("0"):
                    append_contribution(
                        session,
                        goal,
                        amount_cents=to_cents(outcome.bonus_amount),
                        type=ContributionType.BONUS,
                        description="Challenge bonus",
                        created_by=challenge.created_by,
                        at=at,
                    )
                    settlement.reached.extend(self._award_milestones(session, aggregate, at=at))
                settlement.challenge = challenge
                aggregate.challenge = None

        if goal.current_cents >= goal.target_cents:
            goal.status = transition(GoalStatus.ACTIVE, GoalAction.COMPLETE).value
            goal.completed_at = at
            session.add(goal)
            settlement.completed = True

        self._collect_progress_effects(aggregate, settlement, effects)
        return settlement

    @staticmethod
    def _collect_progress_effects(aggregate: GoalAggregate, settlement: _Settlement, effects: _SideEffects) -> None:
        goal = aggregate.goal
        owner = goal.dependent_id
        for outcome in settlement.reached:
            effects.trigger(owner, MilestoneReached(goal_id=goal.id, percent_complete=outcome.percent_complete))
        best = most_advanced(settlement.reached)
        if best is not None:
            effects.notify(
                milestone_notification(owner, goal.name, best.percent_complete, celebration_message(best.percent_complete))
            )
        if settlement.challenge is not None:
            bonus = from_cents(settlement.challenge.bonus_cents)
            effects.trigger(
                owner,
                ChallengeBonusEarned(goal_id=goal.id, challenge_id=settlement.challenge.id, bonus_amount=bonus),
            )
            effects.notify(challenge_notification(owner, goal.name, completed=True, bonus=format_currency(bonus)))
        if settlement.completed:
            saved = from_cents(goal.current_cents)
            effects.trigger(owner, GoalCompleted(goal_id=goal.id, goal_name=goal.name, total_saved=saved))
            effects.notify(goal_completed_notification(owner, goal.name, format_currency(saved)))

    @staticmethod
    def _progress_event(
        aggregate: GoalAggregate,
        deposit: SavingsContribution,
        settlement: _Settlement,
        match_amount: Optional[Decimal],
    ) -> ProgressEvent:
        goal = aggregate.goal
        current = from_cents(goal.current_cents)
        target = from_cents(goal.target_cents)
        milestone_view = None
        best = most_advanced(settlement.reached)
        if best is not None:
            row = next(item for item in aggregate.milestones if item.percent_complete == best.percent_complete)
            milestone_view = MilestoneView.from_row(row)
        return ProgressEvent(
            goal_id=goal.id,
            goal_name=goal.name,
            contribution=ContributionRecord.from_row(deposit),
            new_amount=current,
            target_amount=target,
            progress_percentage=challenge_progress(current, target),
            is_completed=goal.goal_status is GoalStatus.COMPLETED,
            milestone_reached=milestone_view,
            match_amount_added=match_amount,
            challenge_completed=settlement.challenge is not None,
            challenge_bonus=from_cents(settlement.challenge.bonus_cents) if settlement.challenge else None,
        )

    @staticmethod
    def _retarget(session: Session, aggregate: GoalAggregate, new_target: Decimal) -> None:
        updated = retarget_milestones([row.to_state() for row in aggregate.milestones], new_target)
        for row, state in zip(aggregate.milestones, updated):
            row.target_cents = to_cents(state.target_amount)
            session.add(row)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _owner_of(self, goal_id: int) -> str:
        return self._read(lambda session: get_goal_row(session, goal_id).dependent_id)

    def _read(self, work: Callable[[Session], T]) -> T:
        return self._database.run_in_transaction(work)

    def _dispatch(self, effects: _SideEffects) -> None:
        """Deliver collected triggers and notifications; failures are logged only."""

        for dependent_id, payload in effects.triggers:
            try:
                fire(self._achievements, dependent_id, payload)
            except Exception as exc:
                self._logger.error(
                    "side_effect_failed",
                    target="achievement",
                    dependent=dependent_id,
                    trigger=payload.kind.value,
                    error=str(exc),
                )
        for notification in effects.notifications:
            try:
                self._notifications.queue(notification)
            except Exception as exc:
                self._logger.error(
                    "side_effect_failed",
                    target="notification",
                    dependent=notification.recipient,
                    notification=notification.type.value,
                    error=str(exc),
                )


__all__ = ["SavingsGoalService"]
