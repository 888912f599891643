"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("icon", sa.String(length=32), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "both", name="categorytype"),
            nullable=False,
        ),
        sa.Column("budget_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        sa.CheckConstraint("budget_cents >= 0", name="ck_category_budget_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(
                "cash",
                "card",
                "bank_transfer",
                "digital_wallet",
                "other",
                name="paymentmethod",
            ),
        ),
        sa.Column("tags_json", sa.Text()),
        sa.Column("recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "recurring_frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="recurringfrequency"),
        ),
        sa.Column("notes", sa.String(length=500)),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category", "transactions", ["user_id", "category"]
    )
    op.create_index("ix_transactions_user_type", "transactions", ["user_id", "type"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("total_budget_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency",
            sa.Enum("USD", "EUR", "GBP", "JPY", "CAD", "AUD", name="currencycode"),
            nullable=False,
            server_default="USD",
        ),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_budget_user_month"),
        sa.CheckConstraint("total_budget_cents >= 0", name="ck_budget_total_positive"),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "month"])

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("budget_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("budget_cents >= 0", name="ck_budget_category_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_category_spent_positive"),
    )


def downgrade():
    op.drop_table("budget_categories")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_type", table_name="transactions")
    op.drop_index("ix_transactions_user_category", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
