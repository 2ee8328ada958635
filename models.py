from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import get_settings
from database import Base


def _default_timezone() -> str:
    return get_settings().default_timezone


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default=_default_timezone
    )

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="budget"
    )
    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="budget"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="accounts")

    __table_args__ = (Index("ix_accounts_budget", "budget_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_category_budget_name"),
    )


class Payee(Base, TimestampMixin):
    __tablename__ = "payees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    to_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_accounts_differ"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    # instant, naive UTC
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    payee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payees.id"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transfer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transfers.id"))

    account: Mapped["Account"] = relationship("Account")
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_transfer", "transfer_id"),
        CheckConstraint(
            "transfer_id IS NULL OR category_id IS NULL",
            name="ck_transactions_transfer_uncategorized",
        ),
    )


class AccountMonthlyBalance(Base):
    __tablename__ = "account_monthly_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "year", "month", name="uq_account_balance_account_month"
        ),
    )


class CategoryMonthlyBalance(Base):
    __tablename__ = "category_monthly_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    # null is the unassigned bucket
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE")
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_category_balance_budget_category_month",
        ),
        Index("ix_category_balance_budget_month", "budget_id", "year", "month"),
    )


class BudgetMonthlyBalance(Base):
    __tablename__ = "budget_monthly_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "budget_id", "year", "month", name="uq_budget_balance_budget_month"
        ),
    )
