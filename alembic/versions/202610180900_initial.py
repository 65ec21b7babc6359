"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
RECURRENCE = sa.Enum("monthly", "yearly", "one_time", name="recurrence")
EXPENSE_TYPE = sa.Enum("fixed", "subscription", "variable", name="expensetype")
ENTRY_SOURCE = sa.Enum("manual", "auto_settlement", name="entrysource")
GOAL_HORIZON = sa.Enum("short", "mid", "long", name="goalhorizon")
GOAL_STATUS = sa.Enum("active", "paused", "completed", "cancelled", name="goalstatus")


def upgrade():
    op.create_table(
        "assets",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column("current_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valuation_date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("current_value >= 0", name="ck_assets_value_non_negative"),
    )
    op.create_index(
        "ix_assets_user_category_updated",
        "assets",
        ["user_id", "category", "updated_at"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("note", sa.Text()),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("occurred_at", sa.Date(), nullable=False),
        sa.Column("recurrence", RECURRENCE, nullable=False),
        sa.Column("billing_day", sa.Integer()),
        sa.Column("expense_type", EXPENSE_TYPE),
        sa.Column("is_fixed_income", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_card_included", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_recurring_template", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("entry_source", ENTRY_SOURCE, nullable=False, server_default="manual"),
        sa.Column("source_template_id", sa.String(length=64)),
        sa.Column("settled_month", sa.String(length=7)),
        sa.Column(
            "reflect_to_liquid_asset", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("reflected_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reflected_asset_id", sa.String(length=64)),
        sa.Column("reflected_at", sa.DateTime()),
        sa.Column(
            "is_investment_transfer", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("investment_target_category", sa.String(length=40)),
        sa.Column("investment_target_asset_id", sa.String(length=64)),
        sa.Column("transferred_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("goal_fund_id", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "source_template_id",
            "settled_month",
            name="uq_txn_template_settled_month",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "billing_day IS NULL OR (billing_day >= 1 AND billing_day <= 31)",
            name="ck_transactions_billing_day_range",
        ),
    )
    op.create_index(
        "ix_transactions_user_type_source",
        "transactions",
        ["user_id", "type", "entry_source"],
    )
    op.create_index(
        "ix_transactions_user_settled_month",
        "transactions",
        ["user_id", "settled_month"],
    )
    op.create_index(
        "ix_transactions_user_template",
        "transactions",
        ["user_id", "is_recurring_template"],
    )

    op.create_table(
        "settlement_markers",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("settlement_type", sa.String(length=60), nullable=False),
        sa.Column("month_key", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "settlement_type",
            "month_key",
            name="uq_settlement_user_type_month",
        ),
    )

    op.create_table(
        "goal_funds",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("horizon", GOAL_HORIZON, nullable=False, server_default="mid"),
        sa.Column("vehicle", sa.String(length=40), nullable=False, server_default="savings"),
        sa.Column("target_amount", sa.Integer(), nullable=False),
        sa.Column("current_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_contribution", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date()),
        sa.Column("note", sa.Text()),
        sa.Column("status", GOAL_STATUS, nullable=False, server_default="active"),
        sa.Column("monthly_logs", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_goal_funds_user", "goal_funds", ["user_id"])

    op.create_table(
        "asset_history",
        sa.Column("id", sa.String(length=160), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("asset_id", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("monthly_delta", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_month", sa.String(length=7)),
        sa.Column("is_window_record", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_monthly_snapshot", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_asset_history_user_window",
        "asset_history",
        ["user_id", "is_window_record", "window_month"],
    )


def downgrade():
    op.drop_index("ix_asset_history_user_window", table_name="asset_history")
    op.drop_table("asset_history")
    op.drop_index("ix_goal_funds_user", table_name="goal_funds")
    op.drop_table("goal_funds")
    op.drop_table("settlement_markers")
    op.drop_index("ix_transactions_user_template", table_name="transactions")
    op.drop_index("ix_transactions_user_settled_month", table_name="transactions")
    op.drop_index("ix_transactions_user_type_source", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_assets_user_category_updated", table_name="assets")
    op.drop_table("assets")
    for enum in (
        GOAL_STATUS,
        GOAL_HORIZON,
        ENTRY_SOURCE,
        EXPENSE_TYPE,
        RECURRENCE,
        TRANSACTION_TYPE,
    ):
        enum.drop(op.get_bind(), checkfirst=True)
