from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base, new_id


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Recurrence(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    one_time = "one_time"


REFLECTABLE_RECURRENCES = frozenset({Recurrence.yearly, Recurrence.one_time})


class ExpenseType(str, Enum):
    fixed = "fixed"
    subscription = "subscription"
    variable = "variable"


RECURRING_EXPENSE_TYPES = frozenset({ExpenseType.fixed, ExpenseType.subscription})


class EntrySource(str, Enum):
    manual = "manual"
    auto_settlement = "auto_settlement"


class GoalHorizon(str, Enum):
    short = "short"
    mid = "mid"
    long = "long"


class GoalStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


LIQUID_ASSET_CATEGORIES = ("deposit", "cash")
SNAPSHOT_ASSET_ID = "__snapshot__"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Asset(Base, TimestampMixin):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valuation_date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_assets_user_category_updated", "user_id", "category", "updated_at"),
        CheckConstraint("current_value >= 0", name="ck_assets_value_non_negative"),
    )


class Transaction(Base, TimestampMixin):
    """An expense or income entry, or a monthly template for one.

    ``reflected_amount`` and ``transferred_amount`` are the magnitudes this row
    last pushed into ``reflected_asset_id`` and ``investment_target_asset_id``.
    Undoing a row means pushing the inverse of what is recorded here.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    note: Mapped[Optional[str]] = mapped_column(Text)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    occurred_at: Mapped[date] = mapped_column(Date, nullable=False)
    recurrence: Mapped[Recurrence] = mapped_column(SAEnum(Recurrence), nullable=False)
    billing_day: Mapped[Optional[int]] = mapped_column(Integer)
    expense_type: Mapped[Optional[ExpenseType]] = mapped_column(SAEnum(ExpenseType))
    is_fixed_income: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_card_included: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_recurring_template: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    entry_source: Mapped[EntrySource] = mapped_column(
        SAEnum(EntrySource), default=EntrySource.manual, nullable=False
    )
    source_template_id: Mapped[Optional[str]] = mapped_column(String(64))
    settled_month: Mapped[Optional[str]] = mapped_column(String(7))

    reflect_to_liquid_asset: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    reflected_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reflected_asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    reflected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    is_investment_transfer: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    investment_target_category: Mapped[Optional[str]] = mapped_column(String(40))
    investment_target_asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    transferred_amount: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    goal_fund_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "source_template_id",
            "settled_month",
            name="uq_txn_template_settled_month",
        ),
        Index("ix_transactions_user_type_source", "user_id", "type", "entry_source"),
        Index("ix_transactions_user_settled_month", "user_id", "settled_month"),
        Index("ix_transactions_user_template", "user_id", "is_recurring_template"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "billing_day IS NULL OR (billing_day >= 1 AND billing_day <= 31)",
            name="ck_transactions_billing_day_range",
        ),
    )


class SettlementMarker(Base):
    __tablename__ = "settlement_markers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    settlement_type: Mapped[str] = mapped_column(String(60), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "settlement_type",
            "month_key",
            name="uq_settlement_user_type_month",
        ),
    )


class GoalFund(Base, TimestampMixin):
    __tablename__ = "goal_funds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    horizon: Mapped[GoalHorizon] = mapped_column(
        SAEnum(GoalHorizon), default=GoalHorizon.mid, nullable=False
    )
    vehicle: Mapped[str] = mapped_column(String(40), default="savings", nullable=False)
    target_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_contribution: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    note: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), default=GoalStatus.active, nullable=False
    )
    # [{"month": "yyyy-mm", "amount": int, "note": str | None}], sorted by month
    monthly_logs: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (Index("ix_goal_funds_user", "user_id"),)


class AssetHistory(Base):
    __tablename__ = "asset_history"

    id: Mapped[str] = mapped_column(String(160), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_delta: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_month: Mapped[Optional[str]] = mapped_column(String(7))
    is_window_record: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_monthly_snapshot: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_asset_history_user_window", "user_id", "is_window_record", "window_month"),
    )


def snapshot_record_id(user_id: str, window_month: str) -> str:
    return f"snapshot-{user_id}-{window_month}"
