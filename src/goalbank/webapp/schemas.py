"""Request bodies accepted by the goalbank JSON API."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field

from ..models import AutoTransferMode, GoalCategory, MatchingType


class DependentCreate(BaseModel):
    dependent_id: str = Field(min_length=1)
    name: str
    balance: Decimal = Decimal("0")


class CreditRequest(BaseModel):
    amount: Decimal
    description: str = "Allowance"


class AllowanceRequest(BaseModel):
    allowance_amount: Decimal


class GoalCreate(BaseModel):
    dependent_id: str
    name: str
    target_amount: Decimal
    description: str = ""
    category: GoalCategory = GoalCategory.OTHER
    priority: int = 1
    auto_transfer_mode: AutoTransferMode = AutoTransferMode.NONE
    auto_transfer_value: Optional[Decimal] = None
    target_date: Optional[date] = None
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    milestone_bonuses: Dict[int, Decimal] = Field(default_factory=dict)


class GoalUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    target_amount: Optional[Decimal] = None
    category: Optional[GoalCategory] = None
    priority: Optional[int] = None
    auto_transfer_mode: Optional[AutoTransferMode] = None
    auto_transfer_value: Optional[Decimal] = None
    target_date: Optional[date] = None
    image_url: Optional[str] = None
    product_url: Optional[str] = None


class ContributeRequest(BaseModel):
    amount: Decimal
    description: str = ""


class WithdrawRequest(BaseModel):
    amount: Decimal
    reason: str = ""


class PurchaseRequest(BaseModel):
    notes: Optional[str] = None


class MilestoneBonusRequest(BaseModel):
    bonus_amount: Optional[Decimal] = None


class MatchingRuleCreate(BaseModel):
    type: MatchingType
    match_ratio: Decimal
    max_match_amount: Optional[Decimal] = None
    expires_at: Optional[datetime] = None


class MatchingRuleUpdate(BaseModel):
    match_ratio: Optional[Decimal] = None
    max_match_amount: Optional[Decimal] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class ChallengeCreate(BaseModel):
    target_amount: Decimal
    end_date: datetime
    bonus_amount: Decimal = Decimal("0")
    description: Optional[str] = None


__all__ = [
    "AllowanceRequest",
    "ChallengeCreate",
    "ContributeRequest",
    "CreditRequest",
    "DependentCreate",
    "GoalCreate",
    "GoalUpdate",
    "MatchingRuleCreate",
    "MatchingRuleUpdate",
    "MilestoneBonusRequest",
    "PurchaseRequest",
    "WithdrawRequest",
]
