"""Monthly running balances for accounts, categories and budgets.

Every function takes the caller's session and never commits: the caller owns
the (serializable) transaction. Months are always walked in increasing order
because each month's balance is seeded by the one before it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from directory import LedgerDirectory
from models import (
    Account,
    AccountMonthlyBalance,
    BudgetMonthlyBalance,
    Category,
    CategoryMonthlyBalance,
    Transaction,
)
from months import MonthOfYear, months_between

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AffectedTransaction:
    account_id: int
    date: datetime
    category_id: Optional[int]


@dataclass(frozen=True)
class AffectedMonth:
    date: datetime
    categories: tuple[Optional[int], ...]


def _before(model, month: MonthOfYear):
    return or_(
        model.year < month.year,
        and_(model.year == month.year, model.month < month.month),
    )


def _after(model, month: MonthOfYear):
    return or_(
        model.year > month.year,
        and_(model.year == month.year, model.month > month.month),
    )


def _category_is(category_id: Optional[int]):
    if category_id is None:
        return CategoryMonthlyBalance.category_id.is_(None)
    return CategoryMonthlyBalance.category_id == category_id


def _transaction_category_is(category_id: Optional[int]):
    if category_id is None:
        return Transaction.category_id.is_(None)
    return Transaction.category_id == category_id


# --- Account ledger ---


def _account_month_sum(
    session: Session, account_id: int, month: MonthOfYear, zone: ZoneInfo
) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.account_id == account_id,
                Transaction.date >= month.start_instant(zone),
                Transaction.date < month.end_instant(zone),
            )
        ).scalar_one()
        or 0
    )


def _upsert_account_balance(
    session: Session, account_id: int, month: MonthOfYear, balance: int
) -> None:
    row = session.scalar(
        select(AccountMonthlyBalance).where(
            AccountMonthlyBalance.account_id == account_id,
            AccountMonthlyBalance.year == month.year,
            AccountMonthlyBalance.month == month.month,
        )
    )
    if not row:
        row = AccountMonthlyBalance(
            account_id=account_id, year=month.year, month=month.month
        )
        session.add(row)
    row.balance = balance


def update_account_balance(
    session: Session,
    budget_id: int,
    account_id: int,
    affected: Sequence[AffectedTransaction],
) -> None:
    if not affected:
        return

    zone = LedgerDirectory(session, budget_id).timezone()
    start = min(MonthOfYear.from_instant(a.date, zone) for a in affected)

    latest_date = session.scalar(
        select(func.max(Transaction.date)).where(Transaction.account_id == account_id)
    )
    if latest_date is None:
        session.execute(
            delete(AccountMonthlyBalance).where(
                AccountMonthlyBalance.account_id == account_id
            )
        )
        logger.debug(f"account_balance: account={account_id} cleared")
        return
    end = MonthOfYear.from_instant(latest_date, zone)

    running = 0
    prior = session.scalar(
        select(AccountMonthlyBalance)
        .where(
            AccountMonthlyBalance.account_id == account_id,
            _before(AccountMonthlyBalance, start),
        )
        .order_by(AccountMonthlyBalance.year.desc(), AccountMonthlyBalance.month.desc())
        .limit(1)
    )
    if prior:
        running = prior.balance
        # keep stored months contiguous
        start = min(start, MonthOfYear(prior.year, prior.month).next())

    walked = 0
    for month in months_between(start, end):
        running += _account_month_sum(session, account_id, month, zone)
        _upsert_account_balance(session, account_id, month, running)
        walked += 1
    session.flush()

    session.execute(
        delete(AccountMonthlyBalance).where(
            AccountMonthlyBalance.account_id == account_id,
            _after(AccountMonthlyBalance, end),
        )
    )
    logger.debug(
        f"account_balance: account={account_id} start={start} end={end} months={walked}"
    )


# --- Category envelopes ---


def _previous_category_balance(
    session: Session, budget_id: int, category_id: Optional[int], month: MonthOfYear
) -> int:
    balance = session.scalar(
        select(CategoryMonthlyBalance.balance)
        .where(
            CategoryMonthlyBalance.budget_id == budget_id,
            _category_is(category_id),
            _before(CategoryMonthlyBalance, month),
        )
        .order_by(
            CategoryMonthlyBalance.year.desc(), CategoryMonthlyBalance.month.desc()
        )
        .limit(1)
    )
    return int(balance or 0)


def _latest_category_month(
    session: Session, budget_id: int, category_id: Optional[int]
) -> Optional[MonthOfYear]:
    row = session.execute(
        select(CategoryMonthlyBalance.year, CategoryMonthlyBalance.month)
        .where(
            CategoryMonthlyBalance.budget_id == budget_id,
            _category_is(category_id),
        )
        .order_by(
            CategoryMonthlyBalance.year.desc(), CategoryMonthlyBalance.month.desc()
        )
        .limit(1)
    ).first()
    if not row:
        return None
    return MonthOfYear(row.year, row.month)


def _category_month_spent(
    session: Session,
    budget_id: int,
    category_id: Optional[int],
    month: MonthOfYear,
    zone: ZoneInfo,
) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0))
            .join(Account, Transaction.account_id == Account.id)
            .where(
                Account.budget_id == budget_id,
                _transaction_category_is(category_id),
                Transaction.date >= month.start_instant(zone),
                Transaction.date < month.end_instant(zone),
            )
        ).scalar_one()
        or 0
    )


def get_category_balance_row(
    session: Session, budget_id: int, category_id: Optional[int], month: MonthOfYear
) -> Optional[CategoryMonthlyBalance]:
    return session.scalar(
        select(CategoryMonthlyBalance).where(
            CategoryMonthlyBalance.budget_id == budget_id,
            _category_is(category_id),
            CategoryMonthlyBalance.year == month.year,
            CategoryMonthlyBalance.month == month.month,
        )
    )


def recalculate_category_balances(
    session: Session,
    budget_id: int,
    category_id: Optional[int],
    start: MonthOfYear,
    is_income: bool,
    zone: ZoneInfo,
    through: Optional[MonthOfYear] = None,
) -> None:
    """Re-walk one (budget, category) envelope from `start`.

    Income envelopes never carry a balance into the next month. The walk ends
    at the latest stored month or the latest affected month (`through`),
    whichever is later.
    Rows are never deleted here since assignments may exist in future months.
    """
    rollover = (
        0
        if is_income
        else _previous_category_balance(session, budget_id, category_id, start)
    )

    end = start
    latest = _latest_category_month(session, budget_id, category_id)
    if latest and latest > end:
        end = latest
    if through and through > end:
        end = through

    for month in months_between(start, end):
        spent = _category_month_spent(session, budget_id, category_id, month, zone)
        row = get_category_balance_row(session, budget_id, category_id, month)
        assigned = row.assigned_amount if row else 0
        balance = rollover + spent + assigned
        if not row:
            row = CategoryMonthlyBalance(
                budget_id=budget_id,
                category_id=category_id,
                year=month.year,
                month=month.month,
                assigned_amount=0,
            )
            session.add(row)
        row.balance = balance
        rollover = 0 if is_income else balance

    session.flush()
    logger.debug(
        f"category_balance: budget={budget_id} category={category_id} "
        f"start={start} end={end} income={is_income}"
    )


def update_monthly_balances(
    session: Session, budget_id: int, affected: Iterable[AffectedMonth]
) -> None:
    directory = LedgerDirectory(session, budget_id)
    zone = directory.timezone()

    earliest: dict[Optional[int], MonthOfYear] = {}
    latest: dict[Optional[int], MonthOfYear] = {}
    for entry in affected:
        month = MonthOfYear.from_instant(entry.date, zone)
        for category_id in entry.categories:
            current = earliest.get(category_id)
            if current is None or month < current:
                earliest[category_id] = month
            current = latest.get(category_id)
            if current is None or month > current:
                latest[category_id] = month

    if not earliest:
        return

    for category_id, start in earliest.items():
        recalculate_category_balances(
            session,
            budget_id,
            category_id,
            start,
            directory.is_income(category_id),
            zone,
            through=latest[category_id],
        )

    update_budget_monthly_balances(session, budget_id, min(earliest.values()))


# --- Budget totals ---


def update_budget_monthly_balances(
    session: Session, budget_id: int, start: MonthOfYear
) -> None:
    previous = int(
        session.scalar(
            select(BudgetMonthlyBalance.balance)
            .where(
                BudgetMonthlyBalance.budget_id == budget_id,
                _before(BudgetMonthlyBalance, start),
            )
            .order_by(
                BudgetMonthlyBalance.year.desc(), BudgetMonthlyBalance.month.desc()
            )
            .limit(1)
        )
        or 0
    )

    end = start
    latest = session.execute(
        select(CategoryMonthlyBalance.year, CategoryMonthlyBalance.month)
        .where(CategoryMonthlyBalance.budget_id == budget_id)
        .order_by(
            CategoryMonthlyBalance.year.desc(), CategoryMonthlyBalance.month.desc()
        )
        .limit(1)
    ).first()
    if latest and MonthOfYear(latest.year, latest.month) > end:
        end = MonthOfYear(latest.year, latest.month)

    for month in months_between(start, end):
        rows = session.execute(
            select(
                CategoryMonthlyBalance.assigned_amount,
                CategoryMonthlyBalance.balance,
                Category.is_income,
            )
            .join(Category, CategoryMonthlyBalance.category_id == Category.id)
            .where(
                CategoryMonthlyBalance.budget_id == budget_id,
                CategoryMonthlyBalance.year == month.year,
                CategoryMonthlyBalance.month == month.month,
            )
        ).all()
        total_income = sum(r.balance for r in rows if r.is_income)
        total_assigned = sum(r.assigned_amount for r in rows if not r.is_income)
        balance = previous + total_income - total_assigned

        row = session.scalar(
            select(BudgetMonthlyBalance).where(
                BudgetMonthlyBalance.budget_id == budget_id,
                BudgetMonthlyBalance.year == month.year,
                BudgetMonthlyBalance.month == month.month,
            )
        )
        if not row:
            row = BudgetMonthlyBalance(
                budget_id=budget_id, year=month.year, month=month.month
            )
            session.add(row)
        row.balance = balance
        previous = balance

    session.flush()
    logger.debug(f"budget_balance: budget={budget_id} start={start} end={end}")


# --- Full rebuild ---


def rebuild_budget_balances(session: Session, budget_id: int) -> None:
    directory = LedgerDirectory(session, budget_id)
    zone = directory.timezone()

    account_ids = session.scalars(
        select(Account.id).where(Account.budget_id == budget_id)
    ).all()
    if account_ids:
        session.execute(
            delete(AccountMonthlyBalance).where(
                AccountMonthlyBalance.account_id.in_(account_ids)
            )
        )
    session.execute(
        delete(BudgetMonthlyBalance).where(BudgetMonthlyBalance.budget_id == budget_id)
    )
    session.flush()

    for account_id in account_ids:
        first = session.scalar(
            select(func.min(Transaction.date)).where(
                Transaction.account_id == account_id
            )
        )
        if first is not None:
            update_account_balance(
                session,
                budget_id,
                account_id,
                [AffectedTransaction(account_id, first, None)],
            )

    spans = {
        row.category_id: (row.first_date, row.last_date)
        for row in session.execute(
            select(
                Transaction.category_id,
                func.min(Transaction.date).label("first_date"),
                func.max(Transaction.date).label("last_date"),
            )
            .join(Account, Transaction.account_id == Account.id)
            .where(Account.budget_id == budget_id)
            .group_by(Transaction.category_id)
        ).all()
    }
    stored: dict[Optional[int], MonthOfYear] = {}
    for row in session.execute(
        select(
            CategoryMonthlyBalance.category_id,
            CategoryMonthlyBalance.year,
            CategoryMonthlyBalance.month,
        )
        .where(CategoryMonthlyBalance.budget_id == budget_id)
        .order_by(CategoryMonthlyBalance.year, CategoryMonthlyBalance.month)
    ).all():
        stored.setdefault(row.category_id, MonthOfYear(row.year, row.month))

    starts: list[MonthOfYear] = []
    for category_id in set(spans) | set(stored):
        candidates: list[MonthOfYear] = []
        through: Optional[MonthOfYear] = None
        if category_id in spans:
            first, last = spans[category_id]
            candidates.append(MonthOfYear.from_instant(first, zone))
            through = MonthOfYear.from_instant(last, zone)
        if category_id in stored:
            candidates.append(stored[category_id])
        start = min(candidates)
        starts.append(start)
        recalculate_category_balances(
            session,
            budget_id,
            category_id,
            start,
            directory.is_income(category_id),
            zone,
            through=through,
        )

    if starts:
        update_budget_monthly_balances(session, budget_id, min(starts))
    logger.info(
        f"rebuild_balances: budget={budget_id} accounts={len(account_ids)} "
        f"categories={len(starts)}"
    )
