from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import EntrySource, ExpenseType, GoalHorizon, GoalStatus, Recurrence, TransactionType

MONTH_PATTERN = r"^\d{4}-\d{2}$"


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # optional on the wire; the route decides between expense and income
    type: Optional[TransactionType] = None
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., ge=0)
    occurred_at: Optional[date] = None
    recurrence: Recurrence = Recurrence.one_time
    billing_day: Optional[int] = Field(default=None, ge=1, le=31)
    expense_type: Optional[ExpenseType] = None
    is_fixed_income: bool = False
    is_card_included: bool = False
    reflect_to_liquid_asset: Optional[bool] = None
    liquid_asset_id: Optional[str] = None
    is_investment_transfer: bool = False
    investment_target_category: Optional[str] = Field(default=None, max_length=40)
    investment_target_asset_id: Optional[str] = None
    goal_fund_id: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = None


class TransactionUpdate(BaseModel):
    """Partial update; only the fields sent are changed."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[int] = Field(default=None, ge=0)
    occurred_at: Optional[date] = None
    recurrence: Optional[Recurrence] = None
    billing_day: Optional[int] = Field(default=None, ge=1, le=31)
    expense_type: Optional[ExpenseType] = None
    is_fixed_income: Optional[bool] = None
    is_card_included: Optional[bool] = None
    reflect_to_liquid_asset: Optional[bool] = None
    liquid_asset_id: Optional[str] = None
    is_investment_transfer: Optional[bool] = None
    investment_target_category: Optional[str] = Field(default=None, max_length=40)
    investment_target_asset_id: Optional[str] = None
    goal_fund_id: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: TransactionType
    name: str
    category: Optional[str]
    note: Optional[str]
    amount: int
    occurred_at: date
    recurrence: Recurrence
    billing_day: Optional[int]
    expense_type: Optional[ExpenseType]
    is_fixed_income: bool
    is_card_included: bool
    is_recurring_template: bool
    entry_source: EntrySource
    source_template_id: Optional[str]
    settled_month: Optional[str]
    reflect_to_liquid_asset: bool
    reflected_amount: int
    reflected_asset_id: Optional[str]
    reflected_at: Optional[datetime]
    is_investment_transfer: bool
    investment_target_category: Optional[str]
    investment_target_asset_id: Optional[str]
    transferred_amount: int
    goal_fund_id: Optional[str]
    created_at: datetime
    updated_at: datetime


class SettlementIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)


class AssetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category: str = Field(..., min_length=1, max_length=40)
    current_value: int = Field(default=0, ge=0)
    note: Optional[str] = None


class AssetAdjustIn(BaseModel):
    delta: int


class AssetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    category: str
    current_value: int
    valuation_date: date
    note: Optional[str]
    created_at: datetime
    updated_at: datetime


class AssetHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    asset_id: str
    value: int
    monthly_delta: int
    window_month: Optional[str]
    is_window_record: bool
    is_monthly_snapshot: bool
    recorded_at: datetime
    note: Optional[str]


class GoalLog(BaseModel):
    month: str = Field(..., pattern=MONTH_PATTERN)
    amount: int
    note: Optional[str] = None


class GoalFundIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    horizon: GoalHorizon = GoalHorizon.mid
    vehicle: str = Field(default="savings", max_length=40)
    target_amount: int = Field(..., ge=0)
    current_amount: int = Field(default=0, ge=0)
    monthly_contribution: int = Field(default=0, ge=0)
    target_date: Optional[date] = None
    note: Optional[str] = None
    status: GoalStatus = GoalStatus.active


class GoalFundUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    horizon: Optional[GoalHorizon] = None
    vehicle: Optional[str] = Field(default=None, max_length=40)
    target_amount: Optional[int] = Field(default=None, ge=0)
    current_amount: Optional[int] = Field(default=None, ge=0)
    monthly_contribution: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[date] = None
    note: Optional[str] = None
    status: Optional[GoalStatus] = None


class GoalLogAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["add-log", "remove-log"]
    month: str = Field(..., pattern=MONTH_PATTERN)
    amount: Optional[int] = None
    note: Optional[str] = None


class GoalFundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    horizon: GoalHorizon
    vehicle: str
    target_amount: int
    current_amount: int
    monthly_contribution: int
    target_date: Optional[date]
    note: Optional[str]
    status: GoalStatus
    monthly_logs: list[GoalLog]
    created_at: datetime
    updated_at: datetime
