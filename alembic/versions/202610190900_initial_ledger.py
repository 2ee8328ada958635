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


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "timezone",
            sa.String(length=64),
            nullable=False,
            server_default="Europe/Berlin",
        ),
        *_timestamps(),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_accounts_budget", "accounts", ["budget_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_category_budget_name"),
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "from_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_accounts_differ"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id")),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "is_reconciled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("transfer_id", sa.Integer(), sa.ForeignKey("transfers.id")),
        *_timestamps(),
        sa.CheckConstraint(
            "transfer_id IS NULL OR category_id IS NULL",
            name="ck_transactions_transfer_uncategorized",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )
    op.create_index("ix_transactions_transfer", "transactions", ["transfer_id"])

    op.create_table(
        "account_monthly_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "account_id", "year", "month", name="uq_account_balance_account_month"
        ),
    )

    op.create_table(
        "category_monthly_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "assigned_amount", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_category_balance_budget_category_month",
        ),
    )
    op.create_index(
        "ix_category_balance_budget_month",
        "category_monthly_balances",
        ["budget_id", "year", "month"],
    )

    op.create_table(
        "budget_monthly_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "budget_id", "year", "month", name="uq_budget_balance_budget_month"
        ),
    )


def downgrade():
    op.drop_table("budget_monthly_balances")
    op.drop_index(
        "ix_category_balance_budget_month", table_name="category_monthly_balances"
    )
    op.drop_table("category_monthly_balances")
    op.drop_table("account_monthly_balances")
    op.drop_index("ix_transactions_transfer", table_name="transactions")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("transfers")
    op.drop_table("payees")
    op.drop_table("categories")
    op.drop_index("ix_accounts_budget", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("budgets")
