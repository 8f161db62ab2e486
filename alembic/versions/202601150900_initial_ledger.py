"""ledger schema: categories, recurring plans, transactions

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("INCOME", "EXPENSE", name="transactiontype")
FREQUENCY = sa.Enum("weekly", "monthly", "yearly", name="frequency")


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "recurring_plans",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="INR"),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("category", sa.String(length=50)),
        sa.Column("next_due_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_plan_amount_positive"),
    )
    op.create_index(
        "ix_recurring_plans_active_due",
        "recurring_plans",
        ["is_active", "next_due_at"],
    )
    op.create_index(
        "ix_recurring_plans_user_active",
        "recurring_plans",
        ["user_id", "is_active"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="INR"),
        sa.Column("description", sa.Text()),
        sa.Column("merchant", sa.String(length=120)),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column(
            "recurring_plan_id",
            sa.String(length=36),
            sa.ForeignKey("recurring_plans.id"),
        ),
        sa.Column(
            "is_ai_generated", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("confidence_score", sa.Float()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_transactions_confidence_range",
        ),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_user_type_occurred",
        "transactions",
        ["user_id", "type", "occurred_at"],
    )
    op.create_index("ix_transactions_plan", "transactions", ["recurring_plan_id"])


def downgrade():
    op.drop_index("ix_transactions_plan", table_name="transactions")
    op.drop_index("ix_transactions_user_type_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_plans_user_active", table_name="recurring_plans")
    op.drop_index("ix_recurring_plans_active_due", table_name="recurring_plans")
    op.drop_table("recurring_plans")
    op.drop_table("categories")
