"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

CATEGORY_TYPES = ("variable", "fixed", "savings", "surplus", "excluded")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "linked_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("institution_id", sa.String(length=255)),
        sa.Column("institution_name", sa.String(length=255)),
        sa.Column("cursor", sa.Text()),
        *_timestamps(),
    )
    op.create_index("ix_linked_items_user_id", "linked_items", ["user_id"])

    op.create_table(
        "linked_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "item_id",
            sa.Integer(),
            sa.ForeignKey("linked_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("custom_name", sa.String(length=255)),
        sa.Column("official_name", sa.String(length=500)),
        sa.Column("type", sa.String(length=50)),
        sa.Column("subtype", sa.String(length=50)),
        sa.Column("mask", sa.String(length=10)),
        *_timestamps(),
        sa.UniqueConstraint(
            "item_id", "account_id", name="uq_linked_account_item_account"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "category_type",
            sa.Enum(*CATEGORY_TYPES, name="categorytype"),
            nullable=False,
        ),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accumulated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("color", sa.String(length=7)),
        sa.Column(
            "auto_move_surplus", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "surplus_target_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "auto_move_deficit", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "deficit_source_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("expected_merchant_name", sa.String(length=255)),
        sa.Column(
            "hide_from_transaction_lists",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.CheckConstraint("allocated_cents >= 0", name="ck_category_allocated_positive"),
    )
    op.create_index(
        "ix_budget_categories_budget_type",
        "budget_categories",
        ["budget_id", "category_type"],
    )
    op.create_index(
        "uq_budget_system_category",
        "budget_categories",
        ["budget_id", "category_type"],
        unique=True,
        sqlite_where=sa.text("category_type IN ('surplus', 'excluded')"),
        postgresql_where=sa.text("category_type IN ('surplus', 'excluded')"),
    )

    op.create_table(
        "budget_subcategories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("expected_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "item_id",
            sa.Integer(),
            sa.ForeignKey("linked_items.id", ondelete="SET NULL"),
        ),
        sa.Column("account_id", sa.String(length=255)),
        sa.Column("external_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("merchant_name", sa.String(length=255)),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("source_category", sa.Text()),
        sa.Column("source_category_id", sa.String(length=255)),
        sa.Column("is_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_merchant_date",
        "transactions",
        ["user_id", "merchant_name", "date"],
    )

    op.create_table(
        "transaction_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subcategory_id",
            sa.Integer(),
            sa.ForeignKey("budget_subcategories.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index(
        "ix_assignments_transaction", "transaction_categories", ["transaction_id"]
    )
    op.create_index("ix_assignments_category", "transaction_categories", ["category_id"])

    op.create_table(
        "fund_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "from_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "to_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "variable_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "movement_type",
            sa.Enum("surplus", "deficit", name="movementtype"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_fund_movement_amount_positive"),
    )
    op.create_index(
        "ix_fund_movements_variable_period",
        "fund_movements",
        ["variable_category_id", "year", "month"],
    )

    op.create_table(
        "savings_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("accumulated_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_savings_snapshot_period",
        ),
    )

    op.create_table(
        "monthly_category_summaries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("total_spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accumulated_cents", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_monthly_summary_period",
        ),
    )

    op.create_table(
        "notification_targets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("channel_id", sa.String(length=50), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transaction_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("channel_id", sa.String(length=50), nullable=False),
        sa.Column("message_ts", sa.String(length=50), nullable=False),
        sa.Column(
            "status",
            sa.Enum("sent", "resolved", name="notificationstatus"),
            nullable=False,
        ),
        sa.Column(
            "resolution",
            sa.Enum("correct", "recategorized", "split", name="notificationresolution"),
        ),
        sa.Column("resolved_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.String(length=255)),
        sa.Column("webhook_type", sa.String(length=100), nullable=False),
        sa.Column("webhook_code", sa.String(length=100)),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("webhook_events")
    op.drop_table("transaction_notifications")
    op.drop_table("notification_targets")
    op.drop_table("monthly_category_summaries")
    op.drop_table("savings_snapshots")
    op.drop_index("ix_fund_movements_variable_period", table_name="fund_movements")
    op.drop_table("fund_movements")
    op.drop_index("ix_assignments_category", table_name="transaction_categories")
    op.drop_index("ix_assignments_transaction", table_name="transaction_categories")
    op.drop_table("transaction_categories")
    op.drop_index("ix_transactions_user_merchant_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("budget_subcategories")
    op.drop_index("uq_budget_system_category", table_name="budget_categories")
    op.drop_index("ix_budget_categories_budget_type", table_name="budget_categories")
    op.drop_table("budget_categories")
    op.drop_table("budgets")
    op.drop_table("linked_accounts")
    op.drop_index("ix_linked_items_user_id", table_name="linked_items")
    op.drop_table("linked_items")
