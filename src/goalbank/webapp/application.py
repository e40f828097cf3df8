"""FastAPI JSON API over :class:`goalbank.service.SavingsGoalService`.

The application is built by :func:`create_app` so tests can hand in a service
bound to their own database. ``uvicorn goalbank.webapp:app`` serves the default
instance configured from the environment.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import CHALLENGE_SWEEP_SECONDS, DATABASE_URL, LOG_LEVEL, LOG_PATH
from ..exceptions import GoalBankError, ValidationError
from ..models import ContributionType, GoalStatus
from ..ops import StructuredLogger, configure_logging
from ..persistence import Database
from ..service import SavingsGoalService
from .schemas import (
    AllowanceRequest,
    ChallengeCreate,
    ContributeRequest,
    CreditRequest,
    DependentCreate,
    GoalCreate,
    GoalUpdate,
    MatchingRuleCreate,
    MatchingRuleUpdate,
    MilestoneBonusRequest,
    PurchaseRequest,
    WithdrawRequest,
)

JSON = Dict[str, Any]


def get_service(request: Request) -> SavingsGoalService:
    return request.app.state.service


def actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """The acting user; authorization happens before requests reach goalbank."""

    return x_actor_id


def _error_body(code: str, message: str) -> JSON:
    return {"error": {"code": code, "message": message}}


# ---------------------------------------------------------------------------
# Dependents
# ---------------------------------------------------------------------------
dependents = APIRouter(prefix="/dependents", tags=["dependents"])


@dependents.post("", status_code=201)
def register_dependent(payload: DependentCreate, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.register_dependent(payload.dependent_id, payload.name, balance=payload.balance).as_dict()


@dependents.get("/{dependent_id}")
def get_dependent(dependent_id: str, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.get_dependent(dependent_id).as_dict()


@dependents.post("/{dependent_id}/credit")
def credit_dependent(
    dependent_id: str, payload: CreditRequest, service: SavingsGoalService = Depends(get_service)
) -> JSON:
    return service.credit_balance(dependent_id, payload.amount, description=payload.description).as_dict()


@dependents.post("/{dependent_id}/auto-transfers")
def run_auto_transfers(
    dependent_id: str, payload: AllowanceRequest, service: SavingsGoalService = Depends(get_service)
) -> List[JSON]:
    return [record.as_dict() for record in service.process_auto_transfers(dependent_id, payload.allowance_amount)]


@dependents.get("/{dependent_id}/savings-goals")
def list_dependent_goals(
    dependent_id: str,
    status: Optional[GoalStatus] = None,
    include_completed: bool = False,
    service: SavingsGoalService = Depends(get_service),
) -> List[JSON]:
    goals = service.list_goals(dependent_id, status=status, include_completed=include_completed)
    return [goal.as_dict() for goal in goals]


@dependents.get("/{dependent_id}/challenges")
def list_dependent_challenges(dependent_id: str, service: SavingsGoalService = Depends(get_service)) -> List[JSON]:
    return [challenge.as_dict() for challenge in service.list_dependent_challenges(dependent_id)]


# ---------------------------------------------------------------------------
# Goals and ledger
# ---------------------------------------------------------------------------
goals = APIRouter(prefix="/savings-goals", tags=["savings-goals"])


@goals.post("", status_code=201)
def create_goal(payload: GoalCreate, service: SavingsGoalService = Depends(get_service)) -> JSON:
    view = service.create_goal(
        payload.dependent_id,
        payload.name,
        payload.target_amount,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        auto_transfer_mode=payload.auto_transfer_mode,
        auto_transfer_value=payload.auto_transfer_value,
        target_date=payload.target_date,
        image_url=payload.image_url,
        product_url=payload.product_url,
        milestone_bonuses=payload.milestone_bonuses or None,
    )
    return view.as_dict()


@goals.get("/{goal_id}")
def get_goal(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.get_goal(goal_id).as_dict()


@goals.put("/{goal_id}")
def update_goal(goal_id: int, payload: GoalUpdate, service: SavingsGoalService = Depends(get_service)) -> JSON:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    return service.update_goal(goal_id, **changes).as_dict()


@goals.delete("/{goal_id}")
def cancel_goal(
    goal_id: int,
    service: SavingsGoalService = Depends(get_service),
    actor: Optional[str] = Depends(actor_id),
) -> JSON:
    return service.cancel_goal(goal_id, actor=actor).as_dict()


@goals.post("/{goal_id}/pause")
def pause_goal(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.pause_goal(goal_id).as_dict()


@goals.post("/{goal_id}/resume")
def resume_goal(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.resume_goal(goal_id).as_dict()


@goals.post("/{goal_id}/purchase")
def purchase_goal(
    goal_id: int,
    payload: Optional[PurchaseRequest] = None,
    service: SavingsGoalService = Depends(get_service),
) -> JSON:
    notes = payload.notes if payload is not None else None
    return service.mark_purchased(goal_id, notes).as_dict()


@goals.post("/{goal_id}/contribute")
def contribute(
    goal_id: int,
    payload: ContributeRequest,
    service: SavingsGoalService = Depends(get_service),
    actor: Optional[str] = Depends(actor_id),
) -> JSON:
    return service.contribute(goal_id, payload.amount, payload.description, actor=actor).as_dict()


@goals.post("/{goal_id}/withdraw")
def withdraw(
    goal_id: int,
    payload: WithdrawRequest,
    service: SavingsGoalService = Depends(get_service),
    actor: Optional[str] = Depends(actor_id),
) -> JSON:
    return service.withdraw(goal_id, payload.amount, payload.reason, actor=actor).as_dict()


@goals.get("/{goal_id}/contributions")
def list_contributions(
    goal_id: int,
    type: Optional[ContributionType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: SavingsGoalService = Depends(get_service),
) -> List[JSON]:
    entries = service.list_contributions(goal_id, type=type, start=start, end=end)
    return [entry.as_dict() for entry in entries]


@goals.put("/{goal_id}/milestones/{percent}/bonus")
def set_milestone_bonus(
    goal_id: int,
    percent: int,
    payload: MilestoneBonusRequest,
    service: SavingsGoalService = Depends(get_service),
) -> JSON:
    return service.set_milestone_bonus(goal_id, percent, payload.bonus_amount).as_dict()


# ---------------------------------------------------------------------------
# Matching rules and challenges
# ---------------------------------------------------------------------------
@goals.post("/{goal_id}/matching", status_code=201)
def create_matching_rule(
    goal_id: int,
    payload: MatchingRuleCreate,
    service: SavingsGoalService = Depends(get_service),
    actor: Optional[str] = Depends(actor_id),
) -> JSON:
    view = service.create_matching_rule(
        goal_id,
        payload.type,
        payload.match_ratio,
        max_match_amount=payload.max_match_amount,
        expires_at=payload.expires_at,
        actor=actor,
    )
    return view.as_dict()


@goals.get("/{goal_id}/matching")
def get_matching_rule(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.get_matching_rule(goal_id).as_dict()


@goals.put("/{goal_id}/matching")
def update_matching_rule(
    goal_id: int, payload: MatchingRuleUpdate, service: SavingsGoalService = Depends(get_service)
) -> JSON:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    return service.update_matching_rule(goal_id, **changes).as_dict()


@goals.delete("/{goal_id}/matching", status_code=204)
def remove_matching_rule(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> Response:
    service.remove_matching_rule(goal_id)
    return Response(status_code=204)


@goals.post("/{goal_id}/challenge", status_code=201)
def create_challenge(
    goal_id: int,
    payload: ChallengeCreate,
    service: SavingsGoalService = Depends(get_service),
    actor: Optional[str] = Depends(actor_id),
) -> JSON:
    view = service.create_challenge(
        goal_id,
        payload.target_amount,
        payload.end_date,
        payload.bonus_amount,
        description=payload.description,
        actor=actor,
    )
    return view.as_dict()


@goals.get("/{goal_id}/challenge")
def get_challenge(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.get_active_challenge(goal_id).as_dict()


@goals.delete("/{goal_id}/challenge")
def cancel_challenge(goal_id: int, service: SavingsGoalService = Depends(get_service)) -> JSON:
    return service.cancel_challenge(goal_id).as_dict()


maintenance = APIRouter(prefix="/maintenance", tags=["maintenance"])


@maintenance.post("/expire-challenges")
def expire_challenges(service: SavingsGoalService = Depends(get_service)) -> JSON:
    return {"expired": service.expire_challenges()}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
async def challenge_sweep(service: SavingsGoalService, interval: float) -> None:
    """Fail overdue challenges every ``interval`` seconds until cancelled."""

    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(service.expire_challenges)
        except Exception as exc:
            service.logger.error("challenge_sweep_failed", error=str(exc), error_type=type(exc).__name__)


def default_service() -> SavingsGoalService:
    configure_logging(LOG_LEVEL)
    logger = StructuredLogger(path=Path(LOG_PATH) if LOG_PATH else None)
    return SavingsGoalService(Database(DATABASE_URL), logger=logger)


def create_app(
    service: SavingsGoalService | None = None,
    *,
    sweep_seconds: float = CHALLENGE_SWEEP_SECONDS,
) -> FastAPI:
    service = service or default_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service.database.create_all()
        task: asyncio.Task | None = None
        if sweep_seconds > 0:
            task = asyncio.create_task(challenge_sweep(service, sweep_seconds))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="Goal Bank", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(GoalBankError)
    async def goalbank_error(request: Request, exc: GoalBankError) -> JSONResponse:
        if exc.status_code >= 500:
            service.logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=ValidationError.status_code,
            content=_error_body(ValidationError.code, problems or "Invalid request."),
        )

    app.include_router(dependents)
    app.include_router(goals)
    app.include_router(maintenance)
    return app


__all__ = ["challenge_sweep", "create_app", "default_service", "get_service"]
