import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import (
    RECURRING_EXPENSE_TYPES,
    REFLECTABLE_RECURRENCES,
    EntrySource,
    ExpenseType,
    Recurrence,
    SettlementMarker,
    Transaction,
    TransactionType,
)
from periods import MonthPeriod

logger = logging.getLogger(__name__)


def local_today(settings: Optional[Settings] = None) -> date:
    settings = settings or get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def occurrence_date(period: MonthPeriod, billing_day: int) -> date:
    """Billing day inside ``period``; days past the month's end snap to its last day."""
    dim = days_in_month(period.year, period.month)
    day = min(max(1, int(billing_day)), dim)
    return date(period.year, period.month, day)


def valid_billing_day(value: Optional[int]) -> bool:
    return value is not None and 1 <= value <= 31


def should_reflect_now(
    recurrence: Recurrence,
    reflect_to_liquid_asset: bool,
    occurred_at: date,
    today: date,
) -> bool:
    # monthly entries only reach balances through settlement
    if not reflect_to_liquid_asset or recurrence not in REFLECTABLE_RECURRENCES:
        return False
    return occurred_at <= today


def is_recurring_template(
    txn_type: TransactionType,
    recurrence: Recurrence,
    entry_source: EntrySource,
    *,
    expense_type: Optional[ExpenseType] = None,
    is_fixed_income: bool = False,
    is_card_included: bool = False,
) -> bool:
    if entry_source != EntrySource.manual or recurrence != Recurrence.monthly:
        return False
    if txn_type == TransactionType.expense:
        return expense_type in RECURRING_EXPENSE_TYPES and not is_card_included
    return bool(is_fixed_income)


def settlement_type_for(txn_type: TransactionType) -> str:
    return f"monthly-recurring-{txn_type.value}"


@dataclass(frozen=True)
class SettlementSummary:
    target_month: str
    created_count: int = 0
    skipped_count: int = 0
    reflected_count: int = 0
    total_settled_amount: int = 0


@dataclass(frozen=True)
class RollbackSummary:
    target_month: str
    deleted_count: int = 0
    reversed_amount: int = 0


class SettlementConflict(ValueError):
    pass


class RecurringEngine:
    """Expands monthly templates into dated entries and reverses them again.

    Every write is committed on its own. The settlement marker is inserted
    first and its unique constraint is the only idempotency gate.
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def has_settled(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> bool:
        if self._marker_id(user_id, txn_type, period):
            return True
        return self._has_settled_entries(user_id, txn_type, period)

    def templates_for(
        self, user_id: str, txn_type: TransactionType
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == txn_type,
                Transaction.is_recurring_template.is_(True),
                Transaction.amount > 0,
            )
            .order_by(Transaction.billing_day, Transaction.created_at, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def settle_month(
        self,
        user_id: str,
        txn_type: TransactionType,
        period: MonthPeriod,
        today: Optional[date] = None,
    ) -> SettlementSummary:
        from services import TransactionService

        today = today or local_today(self.settings)
        if self._has_settled_entries(user_id, txn_type, period):
            raise SettlementConflict(
                f"{txn_type.value} settlement for {period.key} already exists"
            )
        self._claim_marker(user_id, txn_type, period)

        txns = TransactionService(self.session, user_id, settings=self.settings)
        created = skipped = reflected = total = 0
        for template in self.templates_for(user_id, txn_type):
            template_id = template.id
            if not valid_billing_day(template.billing_day):
                skipped += 1
                continue
            if template.is_investment_transfer and not template.investment_target_category:
                skipped += 1
                continue
            try:
                entry = self._materialize(template, period)
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception(
                    f"settlement_template_failed: user={user_id} template={template_id} month={period.key}"
                )
                skipped += 1
                continue
            created += 1
            total += entry.amount
            if entry.occurred_at > today:
                continue

            entry_id = entry.id
            try:
                if txns.reflect(entry):
                    reflected += 1
            except SQLAlchemyError:
                # the entry stays unreflected; the due sweep retries it
                self.session.rollback()
                logger.exception(
                    f"settlement_reflect_failed: user={user_id} entry={entry_id} month={period.key}"
                )

        logger.info(
            f"settlement_done: user={user_id} type={txn_type.value} month={period.key} "
            f"created={created} skipped={skipped} reflected={reflected} amount={total}"
        )
        return SettlementSummary(
            target_month=period.key,
            created_count=created,
            skipped_count=skipped,
            reflected_count=reflected,
            total_settled_amount=total,
        )

    def rollback_month(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> RollbackSummary:
        from services import NotFoundError, TransactionService

        entries = self.session.scalars(
            select(Transaction)
            .where(*self._settled_filter(user_id, txn_type, period))
            .order_by(Transaction.occurred_at, Transaction.id)
        ).all()
        if not entries:
            marker_id = self._marker_id(user_id, txn_type, period)
            if not marker_id:
                raise NotFoundError(
                    f"No {txn_type.value} settlement found for {period.key}"
                )
            # a settlement that had no templates leaves only its marker behind
            self.session.execute(
                delete(SettlementMarker).where(SettlementMarker.id == marker_id)
            )
            self.session.commit()
            return RollbackSummary(target_month=period.key)

        txns = TransactionService(self.session, user_id, settings=self.settings)
        deleted = 0
        reversed_amount = 0
        for entry in entries:
            reversed_amount += entry.reflected_amount
            txns.remove(entry)
            deleted += 1

        self.session.execute(
            delete(SettlementMarker).where(
                SettlementMarker.user_id == user_id,
                SettlementMarker.settlement_type == settlement_type_for(txn_type),
                SettlementMarker.month_key == period.key,
            )
        )
        self.session.commit()
        logger.info(
            f"settlement_rolled_back: user={user_id} type={txn_type.value} month={period.key} "
            f"deleted={deleted} reversed={reversed_amount}"
        )
        return RollbackSummary(
            target_month=period.key,
            deleted_count=deleted,
            reversed_amount=reversed_amount,
        )

    def _settled_filter(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> tuple:
        return (
            Transaction.user_id == user_id,
            Transaction.type == txn_type,
            Transaction.entry_source == EntrySource.auto_settlement,
            Transaction.settled_month == period.key,
        )

    def _has_settled_entries(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> bool:
        existing = self.session.execute(
            select(Transaction.id)
            .where(*self._settled_filter(user_id, txn_type, period))
            .limit(1)
        ).scalar_one_or_none()
        return existing is not None

    def _marker_id(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> Optional[str]:
        return self.session.execute(
            select(SettlementMarker.id)
            .where(
                SettlementMarker.user_id == user_id,
                SettlementMarker.settlement_type == settlement_type_for(txn_type),
                SettlementMarker.month_key == period.key,
            )
            .limit(1)
        ).scalar_one_or_none()

    def _claim_marker(
        self, user_id: str, txn_type: TransactionType, period: MonthPeriod
    ) -> None:
        marker = SettlementMarker(
            user_id=user_id,
            settlement_type=settlement_type_for(txn_type),
            month_key=period.key,
        )
        self.session.add(marker)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise SettlementConflict(
                f"{txn_type.value} settlement for {period.key} already exists"
            ) from exc

    def _materialize(self, template: Transaction, period: MonthPeriod) -> Transaction:
        entry = Transaction(
            user_id=template.user_id,
            type=template.type,
            name=template.name,
            category=template.category,
            note=template.note,
            amount=template.amount,
            occurred_at=occurrence_date(period, template.billing_day),
            recurrence=Recurrence.one_time,
            billing_day=template.billing_day,
            expense_type=template.expense_type,
            is_fixed_income=False,
            is_card_included=False,
            is_recurring_template=False,
            entry_source=EntrySource.auto_settlement,
            source_template_id=template.id,
            settled_month=period.key,
            reflect_to_liquid_asset=True,
            is_investment_transfer=template.is_investment_transfer,
            investment_target_category=template.investment_target_category,
            investment_target_asset_id=template.investment_target_asset_id,
            goal_fund_id=template.goal_fund_id,
        )
        self.session.add(entry)
        self.session.commit()
        return entry
