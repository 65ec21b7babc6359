from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import (
    LIQUID_ASSET_CATEGORIES,
    REFLECTABLE_RECURRENCES,
    SNAPSHOT_ASSET_ID,
    Asset,
    AssetHistory,
    EntrySource,
    ExpenseType,
    GoalFund,
    Recurrence,
    Transaction,
    TransactionType,
    snapshot_record_id,
)
from periods import MonthPeriod, month_key, previous_month, resolve_month
from recurrence import (
    RecurringEngine,
    RollbackSummary,
    SettlementConflict,
    SettlementSummary,
    is_recurring_template,
    local_today,
    should_reflect_now,
)
from schemas import (
    AssetIn,
    GoalFundIn,
    GoalFundUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_LIQUID_ASSET_NAME = "Checking account"

INVESTMENT_CATEGORY_NAMES = {
    "stock": "Stocks",
    "stock_kr": "Domestic stocks",
    "stock_us": "US stocks",
    "investment": "Investments",
    "fund": "Funds",
    "etf": "ETFs",
    "crypto": "Crypto",
    "savings": "Savings",
    "pension": "Pension",
    "pension_personal": "Personal pension",
    "pension_retirement": "Retirement pension",
    "real_estate": "Real estate",
}


class InvalidFieldError(ValueError):
    pass


class NotFoundError(ValueError):
    pass


def get_current_user_id(settings: Optional[Settings] = None) -> str:
    return (settings or get_settings()).default_user_id


def investment_asset_name(category: str) -> str:
    return INVESTMENT_CATEGORY_NAMES.get(category, f"{category} (auto)")


def _parse_month(target_month: Optional[str], today: Optional[date] = None) -> MonthPeriod:
    try:
        return resolve_month(target_month, today=today)
    except ValueError as exc:
        raise InvalidFieldError(str(exc)) from exc


@dataclass(frozen=True)
class AssetResolution:
    asset: Asset
    created: bool


@dataclass(frozen=True)
class AppliedDelta:
    asset_id: str
    applied_delta: int


class AssetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.user_id = user_id or get_current_user_id(self.settings)

    def list_all(self, category: Optional[str] = None) -> list[Asset]:
        stmt = (
            select(Asset)
            .where(Asset.user_id == self.user_id)
            .order_by(Asset.category, Asset.name, Asset.id)
        )
        if category:
            stmt = stmt.where(Asset.category == category)
        return list(self.session.scalars(stmt).all())

    def get(self, asset_id: str) -> Asset:
        asset = self.session.get(Asset, asset_id)
        if not asset or asset.user_id != self.user_id:
            raise NotFoundError("Asset not found")
        return asset

    def create(self, data: AssetIn) -> Asset:
        asset = Asset(
            user_id=self.user_id,
            name=data.name.strip(),
            category=data.category.strip().lower(),
            current_value=data.current_value,
            valuation_date=local_today(self.settings),
            note=data.note,
        )
        self.session.add(asset)
        self.session.commit()
        self.session.refresh(asset)
        return asset

    def adjust(self, asset_id: str, delta: int) -> Asset:
        asset = self.get(asset_id)
        self.apply_delta(asset, delta)
        return asset

    def total_value(self) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Asset.current_value), 0)).where(
                Asset.user_id == self.user_id
            )
        ).scalar_one()
        return int(total or 0)

    def resolve_liquid_asset(
        self, preferred_asset_id: Optional[str] = None
    ) -> AssetResolution:
        preferred = self._preferred(preferred_asset_id)
        if preferred:
            return AssetResolution(preferred, False)

        existing = self.session.scalar(
            select(Asset)
            .where(
                Asset.user_id == self.user_id,
                Asset.category.in_(LIQUID_ASSET_CATEGORIES),
            )
            .order_by(Asset.updated_at.desc(), Asset.id.desc())
            .limit(1)
        )
        if existing:
            return AssetResolution(existing, False)

        asset = self._provision(
            category="deposit",
            name=DEFAULT_LIQUID_ASSET_NAME,
            note="Created automatically to track reflected expenses and incomes",
        )
        return AssetResolution(asset, True)

    def resolve_investment_target_asset(
        self, category: str, preferred_asset_id: Optional[str] = None
    ) -> AssetResolution:
        preferred = self._preferred(preferred_asset_id)
        if preferred:
            return AssetResolution(preferred, False)

        existing = self.session.scalar(
            select(Asset)
            .where(Asset.user_id == self.user_id, Asset.category == category)
            .order_by(Asset.updated_at.desc(), Asset.id.desc())
            .limit(1)
        )
        if existing:
            return AssetResolution(existing, False)

        asset = self._provision(
            category=category,
            name=investment_asset_name(category),
            note="Created automatically for investment transfers",
        )
        return AssetResolution(asset, True)

    def apply_delta(self, asset: Asset, delta: float) -> Optional[AppliedDelta]:
        """Move ``asset.current_value`` by ``delta``, never below zero.

        The returned delta is the one requested, not the clamped change, so
        callers can record exactly what to undo later.
        """
        if delta is None or not math.isfinite(delta) or delta == 0:
            return None
        asset.current_value = int(max(0, asset.current_value + delta))
        asset.valuation_date = local_today(self.settings)
        asset.updated_at = datetime.utcnow()
        self.session.commit()
        logger.debug(
            f"asset_delta: user={self.user_id} asset={asset.id} delta={delta} value={asset.current_value}"
        )
        return AppliedDelta(asset_id=asset.id, applied_delta=int(delta))

    def _preferred(self, asset_id: Optional[str]) -> Optional[Asset]:
        if not asset_id:
            return None
        asset = self.session.get(Asset, asset_id)
        if asset and asset.user_id == self.user_id:
            return asset
        return None

    def _provision(self, *, category: str, name: str, note: str) -> Asset:
        asset = Asset(
            user_id=self.user_id,
            name=name,
            category=category,
            current_value=0,
            valuation_date=local_today(self.settings),
            note=note,
        )
        self.session.add(asset)
        self.session.commit()
        logger.info(
            f"asset_provisioned: user={self.user_id} asset={asset.id} category={category}"
        )
        return asset


def apply_log_action(
    logs: list[dict],
    month: str,
    amount: int,
    action: str,
    note: Optional[str] = None,
) -> list[dict]:
    """Return a new log list with ``action`` applied for ``month``.

    ``add`` replaces or inserts the month's entry. ``remove`` subtracts
    ``amount`` from it and drops the entry once it reaches zero.
    """
    updated = [dict(entry) for entry in logs or []]
    index = next((i for i, entry in enumerate(updated) if entry["month"] == month), None)
    if action == "add":
        entry = {"month": month, "amount": int(amount), "note": note}
        if index is None:
            updated.append(entry)
            updated.sort(key=lambda item: item["month"])
        else:
            updated[index] = entry
    elif action == "remove":
        if index is None:
            return updated
        remaining = int(updated[index]["amount"]) - int(amount)
        if remaining <= 0:
            del updated[index]
        else:
            updated[index]["amount"] = remaining
    else:
        raise InvalidFieldError(f"Unknown goal log action: {action}")
    return updated


def logs_total(logs: list[dict]) -> int:
    return sum(int(entry["amount"]) for entry in logs or [])


class GoalFundService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.user_id = user_id or get_current_user_id(self.settings)

    def list_all(self) -> list[GoalFund]:
        stmt = (
            select(GoalFund)
            .where(GoalFund.user_id == self.user_id)
            .order_by(GoalFund.created_at.desc(), GoalFund.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, fund_id: str) -> GoalFund:
        fund = self.session.get(GoalFund, fund_id)
        if not fund or fund.user_id != self.user_id:
            raise NotFoundError("Goal fund not found")
        return fund

    def create(self, data: GoalFundIn) -> GoalFund:
        fund = GoalFund(
            user_id=self.user_id,
            name=data.name.strip(),
            horizon=data.horizon,
            vehicle=data.vehicle,
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            monthly_contribution=data.monthly_contribution,
            target_date=data.target_date,
            note=data.note,
            status=data.status,
            monthly_logs=[],
        )
        self.session.add(fund)
        self.session.commit()
        self.session.refresh(fund)
        return fund

    def update(self, fund_id: str, data: GoalFundUpdate) -> GoalFund:
        fund = self.get(fund_id)
        fields = data.model_dump(exclude_unset=True)
        if "current_amount" in fields and fund.monthly_logs:
            raise InvalidFieldError(
                "current_amount is derived from monthly logs once logs exist"
            )
        for field, value in fields.items():
            if value is None and field not in ("target_date", "note"):
                continue
            setattr(fund, field, value)
        self.session.commit()
        self.session.refresh(fund)
        return fund

    def delete(self, fund_id: str) -> None:
        fund = self.get(fund_id)
        self.session.delete(fund)
        self.session.commit()

    def remove_month(self, fund_id: str, month: str) -> GoalFund:
        fund = self.get(fund_id)
        entry = next((e for e in fund.monthly_logs or [] if e["month"] == month), None)
        if entry is None:
            raise NotFoundError(f"No goal log for {month}")
        return self.sync_log(fund_id, month, int(entry["amount"]), "remove")

    def sync_log(
        self,
        fund_id: str,
        month: str,
        amount: int,
        action: str,
        note: Optional[str] = None,
    ) -> GoalFund:
        fund = self.get(fund_id)
        logs = apply_log_action(fund.monthly_logs, month, amount, action, note)
        fund.monthly_logs = logs
        fund.current_amount = logs_total(logs)
        self.session.commit()
        logger.info(
            f"goal_fund_synced: user={self.user_id} fund={fund_id} month={month} "
            f"action={action} amount={amount} current={fund.current_amount}"
        )
        return fund


_NON_NULLABLE_FIELDS = frozenset(
    {
        "name",
        "amount",
        "occurred_at",
        "recurrence",
        "is_fixed_income",
        "is_card_included",
        "reflect_to_liquid_asset",
        "is_investment_transfer",
    }
)

_PATCHABLE_FIELDS = (
    "name",
    "category",
    "note",
    "amount",
    "occurred_at",
    "recurrence",
    "billing_day",
    "expense_type",
    "is_fixed_income",
    "is_card_included",
    "reflect_to_liquid_asset",
    "is_investment_transfer",
    "investment_target_category",
    "investment_target_asset_id",
    "goal_fund_id",
)


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.user_id = user_id or get_current_user_id(self.settings)
        self.assets = AssetService(session, self.user_id, self.settings)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        txn_type: Optional[TransactionType] = None,
        *,
        expense_type: Optional[ExpenseType] = None,
        entry_source: Optional[EntrySource] = None,
        month: Optional[str] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id)
        )
        if txn_type:
            stmt = stmt.where(Transaction.type == txn_type)
        if expense_type:
            stmt = stmt.where(Transaction.expense_type == expense_type)
        if entry_source:
            stmt = stmt.where(Transaction.entry_source == entry_source)
        if month:
            period = _parse_month(month)
            stmt = stmt.where(Transaction.occurred_at.between(period.start, period.end))
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn) -> Transaction:
        values = data.model_dump()
        txn_type = values.pop("type")
        if txn_type is None:
            raise InvalidFieldError("type is required")
        liquid_asset_id = values.pop("liquid_asset_id")
        if values["occurred_at"] is None:
            values["occurred_at"] = local_today(self.settings)
        if values["reflect_to_liquid_asset"] is None:
            values["reflect_to_liquid_asset"] = (
                txn_type == TransactionType.income
                and values["recurrence"] != Recurrence.monthly
            )
        if txn_type == TransactionType.expense and values["expense_type"] is None:
            values["expense_type"] = ExpenseType.variable
        self._validate(txn_type, values)

        txn = Transaction(
            user_id=self.user_id,
            type=txn_type,
            entry_source=EntrySource.manual,
            is_recurring_template=self._is_template(txn_type, EntrySource.manual, values),
            **values,
        )
        self.session.add(txn)
        self.session.commit()

        if should_reflect_now(
            txn.recurrence,
            txn.reflect_to_liquid_asset,
            txn.occurred_at,
            local_today(self.settings),
        ):
            self.reflect(txn, liquid_asset_id=liquid_asset_id)
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_dump(exclude_unset=True)
        liquid_asset_id = fields.pop("liquid_asset_id", None)
        fields = {
            k: v for k, v in fields.items() if v is not None or k not in _NON_NULLABLE_FIELDS
        }
        nxt = {name: fields.get(name, getattr(txn, name)) for name in _PATCHABLE_FIELDS}
        self._validate(txn.type, nxt)

        today = local_today(self.settings)
        reflect_now = should_reflect_now(
            nxt["recurrence"], nxt["reflect_to_liquid_asset"], nxt["occurred_at"], today
        )

        # liquid leg: undo what was pushed, then push the new amount
        next_reflected = nxt["amount"] if reflect_now else 0
        prev_reflected = txn.reflected_amount
        liquid_moved = (
            liquid_asset_id is not None and liquid_asset_id != txn.reflected_asset_id
        )
        if prev_reflected != next_reflected or (liquid_moved and prev_reflected):
            if prev_reflected:
                self._undo_liquid(txn)
            if next_reflected:
                self._push_liquid(
                    txn, next_reflected, liquid_asset_id or txn.reflected_asset_id
                )

        # investment leg, with the goal-fund log following it
        next_category = nxt["investment_target_category"]
        next_transfer = (
            nxt["amount"]
            if reflect_now and nxt["is_investment_transfer"] and next_category
            else 0
        )
        prev_transfer = txn.transferred_amount
        target_moved = next_category != txn.investment_target_category or (
            "investment_target_asset_id" in fields
            and fields["investment_target_asset_id"] != txn.investment_target_asset_id
        )
        goal_moved = nxt["goal_fund_id"] != txn.goal_fund_id or month_key(
            nxt["occurred_at"]
        ) != month_key(txn.occurred_at)
        pushed_target_id: Optional[str] = None
        if (
            prev_transfer != next_transfer
            or ((target_moved or goal_moved) and (prev_transfer or next_transfer))
        ):
            preferred_target = (
                nxt["investment_target_asset_id"]
                if next_category == txn.investment_target_category
                or "investment_target_asset_id" in fields
                else None
            )
            if prev_transfer:
                self._undo_transfer(txn)
            if next_transfer:
                pushed_target_id = self._push_transfer(
                    txn,
                    next_transfer,
                    next_category,
                    preferred_target,
                    goal_fund_id=nxt["goal_fund_id"],
                    occurred_at=nxt["occurred_at"],
                )

        for name, value in fields.items():
            setattr(txn, name, value)
        if pushed_target_id:
            txn.investment_target_asset_id = pushed_target_id
        if not txn.reflected_amount:
            txn.reflected_at = None
        txn.is_recurring_template = self._is_template(txn.type, txn.entry_source, nxt)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: str) -> None:
        self.remove(self.get(transaction_id))

    def remove(self, txn: Transaction) -> None:
        """Reverse whatever ``txn`` pushed into balances, then delete it."""
        if txn.reflected_amount:
            self._undo_liquid(txn)
        if txn.transferred_amount:
            self._undo_transfer(txn)
        txn_id = txn.id
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_removed: user={self.user_id} txn={txn_id}")

    def reflect(self, txn: Transaction, liquid_asset_id: Optional[str] = None) -> bool:
        """Push an unreflected record into the liquid asset and its transfer target."""
        if not txn.amount or txn.reflected_amount:
            return False
        applied = self._push_liquid(
            txn, txn.amount, liquid_asset_id or txn.reflected_asset_id
        )
        if (
            txn.type == TransactionType.expense
            and txn.is_investment_transfer
            and txn.investment_target_category
            and not txn.transferred_amount
        ):
            self._push_transfer(
                txn,
                txn.amount,
                txn.investment_target_category,
                txn.investment_target_asset_id,
                goal_fund_id=txn.goal_fund_id,
                occurred_at=txn.occurred_at,
            )
        return applied is not None

    def reflect_due(self, today: Optional[date] = None) -> int:
        today = today or local_today(self.settings)
        pending = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.reflect_to_liquid_asset.is_(True),
                Transaction.recurrence.in_(tuple(REFLECTABLE_RECURRENCES)),
                Transaction.occurred_at <= today,
                Transaction.reflected_amount == 0,
                Transaction.amount > 0,
            )
            .order_by(Transaction.occurred_at, Transaction.id)
        ).all()
        count = 0
        for txn in pending:
            if self.reflect(txn):
                count += 1
        return count

    def _sign(self, txn_type: TransactionType) -> int:
        return -1 if txn_type == TransactionType.expense else 1

    def _push_liquid(
        self, txn: Transaction, amount: int, preferred_asset_id: Optional[str]
    ) -> Optional[AppliedDelta]:
        asset = self.assets.resolve_liquid_asset(preferred_asset_id).asset
        applied = self.assets.apply_delta(asset, self._sign(txn.type) * amount)
        if applied:
            txn.reflected_amount = amount
            txn.reflected_asset_id = applied.asset_id
            txn.reflected_at = datetime.utcnow()
            self.session.commit()
        return applied

    def _undo_liquid(self, txn: Transaction) -> None:
        asset = self.assets.resolve_liquid_asset(txn.reflected_asset_id).asset
        self.assets.apply_delta(asset, -self._sign(txn.type) * txn.reflected_amount)
        txn.reflected_amount = 0
        txn.reflected_at = None
        self.session.commit()

    def _push_transfer(
        self,
        txn: Transaction,
        amount: int,
        category: str,
        preferred_asset_id: Optional[str],
        *,
        goal_fund_id: Optional[str],
        occurred_at: date,
    ) -> Optional[str]:
        target = self.assets.resolve_investment_target_asset(
            category, preferred_asset_id
        ).asset
        applied = self.assets.apply_delta(target, amount)
        if not applied:
            return None
        txn.transferred_amount = amount
        txn.investment_target_asset_id = applied.asset_id
        self.session.commit()
        if goal_fund_id:
            self._sync_goal_fund(goal_fund_id, month_key(occurred_at), amount, "add")
        return applied.asset_id

    def _undo_transfer(self, txn: Transaction) -> None:
        amount = txn.transferred_amount
        category = txn.investment_target_category or "investment"
        target = self.assets.resolve_investment_target_asset(
            category, txn.investment_target_asset_id
        ).asset
        self.assets.apply_delta(target, -amount)
        txn.transferred_amount = 0
        self.session.commit()
        if txn.goal_fund_id:
            self._sync_goal_fund(
                txn.goal_fund_id, month_key(txn.occurred_at), amount, "remove"
            )

    def _sync_goal_fund(self, fund_id: str, month: str, amount: int, action: str) -> None:
        # goal progress is a projection of the transaction; never fail the caller
        try:
            GoalFundService(self.session, self.user_id, self.settings).sync_log(
                fund_id, month, amount, action
            )
        except NotFoundError:
            logger.warning(
                f"goal_fund_sync_skipped: user={self.user_id} fund={fund_id} reason=not_found"
            )
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(
                f"goal_fund_sync_failed: user={self.user_id} fund={fund_id} month={month} action={action}"
            )

    def _is_template(
        self, txn_type: TransactionType, entry_source: EntrySource, values: dict
    ) -> bool:
        return is_recurring_template(
            txn_type,
            values["recurrence"],
            entry_source,
            expense_type=values.get("expense_type"),
            is_fixed_income=bool(values.get("is_fixed_income")),
            is_card_included=bool(values.get("is_card_included")),
        )

    def _validate(self, txn_type: TransactionType, values: dict) -> None:
        amount = values.get("amount")
        if amount is None or amount < 0:
            raise InvalidFieldError("Invalid amount")
        try:
            recurrence = Recurrence(values.get("recurrence"))
        except ValueError as exc:
            raise InvalidFieldError("Invalid recurrence") from exc
        billing_day = values.get("billing_day")
        if billing_day is not None and not 1 <= billing_day <= 31:
            raise InvalidFieldError("Invalid billing_day")

        if txn_type == TransactionType.income:
            if values.get("expense_type") is not None:
                raise InvalidFieldError("expense_type is only allowed for expenses")
            if values.get("is_card_included"):
                raise InvalidFieldError("is_card_included is only allowed for expenses")
            if values.get("is_investment_transfer"):
                raise InvalidFieldError(
                    "is_investment_transfer is only allowed for expenses"
                )
            if values.get("is_fixed_income") and recurrence != Recurrence.monthly:
                raise InvalidFieldError(
                    "is_fixed_income is only allowed for monthly recurrence"
                )
        elif values.get("is_fixed_income"):
            raise InvalidFieldError("is_fixed_income is only allowed for incomes")

        if values.get("is_investment_transfer") and not values.get(
            "investment_target_category"
        ):
            raise InvalidFieldError(
                "investment_target_category is required for investment transfers"
            )
        if (
            self._is_template(txn_type, EntrySource.manual, values)
            and billing_day is None
        ):
            raise InvalidFieldError("billing_day is required for recurring templates")


class SettlementService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.user_id = user_id or get_current_user_id(self.settings)
        self.engine = RecurringEngine(session, self.settings)

    def settle(
        self,
        target_month: Optional[str],
        txn_type: TransactionType,
        today: Optional[date] = None,
    ) -> SettlementSummary:
        today = today or local_today(self.settings)
        period = _parse_month(target_month, today=today)
        return self.engine.settle_month(self.user_id, txn_type, period, today=today)

    def rollback(
        self, target_month: Optional[str], txn_type: TransactionType
    ) -> RollbackSummary:
        period = _parse_month(target_month, today=local_today(self.settings))
        return self.engine.rollback_month(self.user_id, txn_type, period)

    def status(
        self, target_month: Optional[str], txn_type: TransactionType
    ) -> dict[str, object]:
        period = _parse_month(target_month, today=local_today(self.settings))
        return {
            "target_month": period.key,
            "settled": self.engine.has_settled(self.user_id, txn_type, period),
        }


def users_with_templates(session: Session) -> list[tuple[str, TransactionType]]:
    rows = session.execute(
        select(Transaction.user_id, Transaction.type)
        .where(
            Transaction.is_recurring_template.is_(True),
            Transaction.amount > 0,
        )
        .distinct()
        .order_by(Transaction.user_id, Transaction.type)
    ).all()
    return [(row[0], row[1]) for row in rows]


def settle_all_users(
    session: Session,
    target_month: Optional[str] = None,
    *,
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> dict[str, object]:
    """Settle every user's templates for one month; conflicts are expected and skipped."""
    settings = settings or get_settings()
    today = today or local_today(settings)
    period = _parse_month(target_month, today=today)
    users: set[str] = set()
    settled = conflicts = failed = 0
    total = 0
    for user_id, txn_type in users_with_templates(session):
        users.add(user_id)
        service = SettlementService(session, user_id, settings)
        try:
            summary = service.settle(period.key, txn_type, today=today)
        except SettlementConflict:
            conflicts += 1
            logger.info(
                f"settlement_skipped: user={user_id} type={txn_type.value} month={period.key} reason=already_settled"
            )
            continue
        except SQLAlchemyError:
            session.rollback()
            failed += 1
            logger.exception(
                f"settlement_failed: user={user_id} type={txn_type.value} month={period.key}"
            )
            continue
        settled += 1
        total += summary.total_settled_amount
    return {
        "target_month": period.key,
        "processed_users": len(users),
        "settled": settled,
        "conflicts": conflicts,
        "failed": failed,
        "total_settled_amount": total,
    }


def reflect_due_all(
    session: Session,
    *,
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> int:
    settings = settings or get_settings()
    today = today or local_today(settings)
    user_ids = session.scalars(
        select(Transaction.user_id)
        .where(
            Transaction.reflect_to_liquid_asset.is_(True),
            Transaction.recurrence.in_(tuple(REFLECTABLE_RECURRENCES)),
            Transaction.occurred_at <= today,
            Transaction.reflected_amount == 0,
            Transaction.amount > 0,
        )
        .distinct()
    ).all()
    count = 0
    for user_id in user_ids:
        try:
            count += TransactionService(session, user_id, settings).reflect_due(today)
        except SQLAlchemyError:
            session.rollback()
            logger.exception(f"due_reflection_failed: user={user_id}")
    return count


class SnapshotService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    @staticmethod
    def is_month_end(today: date) -> bool:
        return (today + timedelta(days=1)).month != today.month

    def run(self, today: Optional[date] = None, force: bool = False) -> int:
        today = today or local_today(self.settings)
        if not force and not self.is_month_end(today):
            logger.info(f"snapshot_skipped: date={today.isoformat()} reason=not_month_end")
            return 0

        period = resolve_month(month_key(today))
        totals = self.session.execute(
            select(Asset.user_id, func.coalesce(func.sum(Asset.current_value), 0))
            .group_by(Asset.user_id)
            .order_by(Asset.user_id)
        ).all()
        recorded_at = datetime.utcnow()
        written = 0
        for user_id, total in totals:
            total = int(total or 0)
            if total <= 0:
                continue
            try:
                self.write_window(user_id, total, period, recorded_at)
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception(
                    f"snapshot_failed: user={user_id} month={period.key}"
                )
                continue
            written += 1
        logger.info(f"snapshot_done: month={period.key} users={written}")
        return written

    def write_window(
        self,
        user_id: str,
        total: int,
        period: MonthPeriod,
        recorded_at: datetime,
    ) -> AssetHistory:
        prev = previous_month(period)
        prev_value = self.session.scalar(
            select(AssetHistory.value)
            .where(
                AssetHistory.user_id == user_id,
                AssetHistory.is_window_record.is_(True),
                AssetHistory.is_monthly_snapshot.is_(True),
                AssetHistory.window_month == prev.key,
            )
            .limit(1)
        )
        record = AssetHistory(
            id=snapshot_record_id(user_id, period.key),
            user_id=user_id,
            asset_id=SNAPSHOT_ASSET_ID,
            value=total,
            monthly_delta=total - int(prev_value or 0),
            window_month=period.key,
            is_window_record=True,
            is_monthly_snapshot=True,
            recorded_at=recorded_at,
            note=f"Month-end snapshot ({period.key})",
            created_at=recorded_at,
        )
        merged = self.session.merge(record)
        self.session.commit()
        return merged


class AssetHistoryService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.user_id = user_id or get_current_user_id(self.settings)

    def windows(self) -> list[AssetHistory]:
        stmt = (
            select(AssetHistory)
            .where(
                AssetHistory.user_id == self.user_id,
                AssetHistory.is_window_record.is_(True),
            )
            .order_by(AssetHistory.window_month)
        )
        return list(self.session.scalars(stmt).all())
