from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    EntrySource,
    ExpenseType,
    Recurrence,
    SettlementMarker,
    Transaction,
    TransactionType,
)
from recurrence import RecurringEngine
from schemas import AssetIn, GoalFundIn, TransactionIn
from services import (
    AssetService,
    GoalFundService,
    InvalidFieldError,
    NotFoundError,
    SettlementConflict,
    SettlementService,
    TransactionService,
    reflect_due_all,
    settle_all_users,
)

USER = "user-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@pytest.fixture(autouse=True)
def fixed_today(monkeypatch):
    monkeypatch.setattr("services.local_today", lambda settings=None: date(2024, 1, 15))


def _template(session, name="Rent", amount=500_000, billing_day=31, **extra):
    data = TransactionIn(
        type=TransactionType.expense,
        name=name,
        amount=amount,
        occurred_at=date(2024, 1, 1),
        recurrence=Recurrence.monthly,
        billing_day=billing_day,
        expense_type=ExpenseType.fixed,
        **extra,
    )
    return TransactionService(session, USER).create(data)


def _checking(session, value=1_000_000):
    return AssetService(session, USER).create(
        AssetIn(name="Checking", category="deposit", current_value=value)
    )


def test_settle_leap_february_and_rollback_restores_balance():
    session = make_session()
    checking = _checking(session)
    template = _template(session)
    assert template.is_recurring_template
    assert checking.current_value == 1_000_000

    settlement = SettlementService(session, USER)
    summary = settlement.settle("2024-02", TransactionType.expense, today=date(2024, 3, 1))

    assert summary.target_month == "2024-02"
    assert summary.created_count == 1
    assert summary.reflected_count == 1
    assert summary.skipped_count == 0
    assert summary.total_settled_amount == 500_000

    entry = session.scalars(
        select(Transaction).where(Transaction.entry_source == EntrySource.auto_settlement)
    ).one()
    assert entry.occurred_at == date(2024, 2, 29)
    assert entry.source_template_id == template.id
    assert entry.settled_month == "2024-02"
    assert entry.recurrence == Recurrence.one_time
    assert entry.reflected_amount == 500_000
    assert entry.reflected_asset_id == checking.id
    assert checking.current_value == 500_000

    rollback = settlement.rollback("2024-02", TransactionType.expense)
    assert rollback.deleted_count == 1
    assert rollback.reversed_amount == 500_000
    assert checking.current_value == 1_000_000
    assert session.get(Transaction, entry.id) is None
    assert session.scalars(select(SettlementMarker)).all() == []
    assert settlement.status("2024-02", TransactionType.expense) == {
        "target_month": "2024-02",
        "settled": False,
    }


def test_second_settlement_conflicts_without_touching_balances():
    session = make_session()
    checking = _checking(session)
    _template(session, amount=100_000, billing_day=5)

    settlement = SettlementService(session, USER)
    settlement.settle("2024-01", TransactionType.expense, today=date(2024, 1, 20))
    assert checking.current_value == 900_000

    with pytest.raises(SettlementConflict):
        settlement.settle("2024-01", TransactionType.expense, today=date(2024, 1, 20))

    assert checking.current_value == 900_000
    entries = session.scalars(
        select(Transaction).where(Transaction.settled_month == "2024-01")
    ).all()
    assert len(entries) == 1


def test_existing_marker_blocks_settlement():
    session = make_session()
    _checking(session)
    _template(session)
    session.add(
        SettlementMarker(
            user_id=USER,
            settlement_type="monthly-recurring-expense",
            month_key="2024-02",
        )
    )
    session.commit()

    settlement = SettlementService(session, USER)
    assert settlement.status("2024-02", TransactionType.expense)["settled"] is True
    with pytest.raises(SettlementConflict):
        settlement.settle("2024-02", TransactionType.expense, today=date(2024, 3, 1))


def test_expense_and_income_settlements_are_independent():
    session = make_session()
    checking = _checking(session, value=0)
    _template(session, amount=200_000, billing_day=10)
    TransactionService(session, USER).create(
        TransactionIn(
            type=TransactionType.income,
            name="Salary",
            amount=3_000_000,
            occurred_at=date(2024, 1, 1),
            recurrence=Recurrence.monthly,
            billing_day=25,
            is_fixed_income=True,
        )
    )

    settlement = SettlementService(session, USER)
    income = settlement.settle("2024-02", TransactionType.income, today=date(2024, 3, 1))
    expense = settlement.settle("2024-02", TransactionType.expense, today=date(2024, 3, 1))

    assert income.created_count == 1
    assert expense.created_count == 1
    assert checking.current_value == 2_800_000

    settlement.rollback("2024-02", TransactionType.income)
    assert settlement.status("2024-02", TransactionType.income)["settled"] is False
    assert settlement.status("2024-02", TransactionType.expense)["settled"] is True
    # undoing the salary would go below zero and is clamped
    assert checking.current_value == 0


def test_future_billing_days_wait_for_due_sweep():
    session = make_session()
    checking = _checking(session)
    _template(session, name="Early", amount=10_000, billing_day=3)
    _template(session, name="Late", amount=20_000, billing_day=25)

    summary = SettlementService(session, USER).settle(
        "2024-02", TransactionType.expense, today=date(2024, 2, 10)
    )
    assert summary.created_count == 2
    assert summary.reflected_count == 1
    assert summary.total_settled_amount == 30_000
    assert checking.current_value == 990_000

    assert reflect_due_all(session, today=date(2024, 2, 24)) == 0
    assert reflect_due_all(session, today=date(2024, 2, 25)) == 1
    assert checking.current_value == 970_000
    assert reflect_due_all(session, today=date(2024, 2, 26)) == 0


def test_invalid_templates_are_skipped():
    session = make_session()
    _checking(session)
    _template(session, amount=1_000, billing_day=1)
    session.add_all(
        [
            Transaction(
                user_id=USER,
                type=TransactionType.expense,
                name="No billing day",
                amount=5_000,
                occurred_at=date(2024, 1, 1),
                recurrence=Recurrence.monthly,
                expense_type=ExpenseType.fixed,
                is_recurring_template=True,
            ),
            Transaction(
                user_id=USER,
                type=TransactionType.expense,
                name="Transfer without target",
                amount=7_000,
                occurred_at=date(2024, 1, 1),
                recurrence=Recurrence.monthly,
                billing_day=10,
                expense_type=ExpenseType.fixed,
                is_recurring_template=True,
                is_investment_transfer=True,
            ),
        ]
    )
    session.commit()

    summary = SettlementService(session, USER).settle(
        "2024-02", TransactionType.expense, today=date(2024, 3, 1)
    )
    assert summary.created_count == 1
    assert summary.skipped_count == 2
    assert summary.total_settled_amount == 1_000


def test_settlement_without_templates_can_be_rolled_back():
    session = make_session()
    settlement = SettlementService(session, USER)
    summary = settlement.settle("2024-02", TransactionType.income, today=date(2024, 3, 1))
    assert summary.created_count == 0
    assert settlement.status("2024-02", TransactionType.income)["settled"] is True

    rollback = settlement.rollback("2024-02", TransactionType.income)
    assert rollback.deleted_count == 0
    assert settlement.status("2024-02", TransactionType.income)["settled"] is False


def test_rollback_of_unsettled_month_is_not_found():
    session = make_session()
    with pytest.raises(NotFoundError):
        SettlementService(session, USER).rollback("2024-02", TransactionType.expense)


def test_bad_month_key_is_a_field_error():
    session = make_session()
    with pytest.raises(InvalidFieldError):
        SettlementService(session, USER).settle("2024-13", TransactionType.expense)


def test_settled_investment_transfer_feeds_goal_fund_and_rolls_back():
    session = make_session()
    checking = _checking(session)
    fund = GoalFundService(session, USER).create(
        GoalFundIn(name="House", target_amount=50_000_000)
    )
    _template(
        session,
        name="Monthly ETF",
        amount=300_000,
        billing_day=20,
        is_investment_transfer=True,
        investment_target_category="etf",
        goal_fund_id=fund.id,
    )

    settlement = SettlementService(session, USER)
    settlement.settle("2024-02", TransactionType.expense, today=date(2024, 3, 1))

    etf = AssetService(session, USER).list_all("etf")[0]
    assert etf.current_value == 300_000
    assert checking.current_value == 700_000
    assert fund.current_amount == 300_000
    assert fund.monthly_logs == [{"month": "2024-02", "amount": 300_000, "note": None}]

    settlement.rollback("2024-02", TransactionType.expense)
    assert etf.current_value == 0
    assert checking.current_value == 1_000_000
    assert fund.current_amount == 0
    assert fund.monthly_logs == []


def test_settle_all_users_counts_conflicts():
    session = make_session()
    _template(session, amount=1_000, billing_day=1)
    TransactionService(session, "user-2").create(
        TransactionIn(
            type=TransactionType.expense,
            name="Phone",
            amount=55_000,
            occurred_at=date(2024, 1, 1),
            recurrence=Recurrence.monthly,
            billing_day=12,
            expense_type=ExpenseType.subscription,
        )
    )

    first = settle_all_users(session, "2024-02", today=date(2024, 2, 1))
    assert first["processed_users"] == 2
    assert first["settled"] == 2
    assert first["conflicts"] == 0
    assert first["total_settled_amount"] == 56_000

    second = settle_all_users(session, "2024-02", today=date(2024, 2, 1))
    assert second["settled"] == 0
    assert second["conflicts"] == 2


def _db_error(*args, **kwargs):
    raise OperationalError("UPDATE", {}, Exception("database is locked"))


def test_reflection_failure_counts_template_once_and_sweep_retries(monkeypatch):
    session = make_session()
    checking = _checking(session)
    _template(session, amount=100, billing_day=1)

    monkeypatch.setattr(AssetService, "apply_delta", _db_error)
    summary = SettlementService(session, USER).settle(
        "2024-01", TransactionType.expense, today=date(2024, 1, 15)
    )
    assert summary.created_count == 1
    assert summary.skipped_count == 0
    assert summary.reflected_count == 0
    assert summary.total_settled_amount == 100

    monkeypatch.undo()
    monkeypatch.setattr("services.local_today", lambda settings=None: date(2024, 1, 15))
    assert reflect_due_all(session, today=date(2024, 1, 15)) == 1
    assert checking.current_value == 999_900


def test_failed_template_does_not_abort_the_batch(monkeypatch):
    session = make_session()
    checking = _checking(session)
    _template(session, name="Broken", amount=1_000, billing_day=2)
    _template(session, name="Internet", amount=30_000, billing_day=5)

    materialize = RecurringEngine._materialize

    def flaky(self, template, period):
        if template.name == "Broken":
            _db_error()
        return materialize(self, template, period)

    monkeypatch.setattr(RecurringEngine, "_materialize", flaky)
    summary = SettlementService(session, USER).settle(
        "2024-02", TransactionType.expense, today=date(2024, 3, 1)
    )

    assert summary.created_count == 1
    assert summary.skipped_count == 1
    assert summary.reflected_count == 1
    assert summary.total_settled_amount == 30_000
    assert checking.current_value == 970_000
    names = [
        t.name
        for t in session.scalars(
            select(Transaction).where(Transaction.settled_month == "2024-02")
        ).all()
    ]
    assert names == ["Internet"]


def test_settle_all_users_counts_storage_failures(monkeypatch):
    session = make_session()
    _template(session, amount=1_000, billing_day=1)
    TransactionService(session, "user-2").create(
        TransactionIn(
            type=TransactionType.expense,
            name="Gym",
            amount=40_000,
            occurred_at=date(2024, 1, 1),
            recurrence=Recurrence.monthly,
            billing_day=3,
            expense_type=ExpenseType.subscription,
        )
    )

    claim = RecurringEngine._claim_marker

    def failing_claim(self, user_id, txn_type, period):
        if user_id == USER:
            _db_error()
        return claim(self, user_id, txn_type, period)

    monkeypatch.setattr(RecurringEngine, "_claim_marker", failing_claim)
    result = settle_all_users(session, "2024-02", today=date(2024, 2, 1))

    assert result["processed_users"] == 2
    assert result["failed"] == 1
    assert result["settled"] == 1
    assert result["conflicts"] == 0
    assert result["total_settled_amount"] == 40_000
    assert SettlementService(session, USER).status("2024-02", TransactionType.expense)[
        "settled"
    ] is False
