from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence, TypeVar, Union

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from balances import (
    AffectedMonth,
    AffectedTransaction,
    get_category_balance_row,
    rebuild_budget_balances,
    recalculate_category_balances,
    update_account_balance,
    update_budget_monthly_balances,
    update_monthly_balances,
)
from config import get_settings
from directory import LedgerDirectory
from errors import (
    ConcurrencyConflict,
    LedgerInvariantError,
    LedgerNotFoundError,
    LedgerValidationError,
)
from models import (
    Account,
    AccountMonthlyBalance,
    Budget,
    BudgetMonthlyBalance,
    Category,
    CategoryMonthlyBalance,
    Transaction,
    Transfer,
)
from months import MonthOfYear, months_between, to_utc_naive
from schemas import (
    CategoryMonthOut,
    MonthlyBudgetOut,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AGGREGATE_FIELDS = frozenset({"date", "amount", "category_id"})
SERIALIZATION_FAILURE_CODES = frozenset({"40001", "40P01"})


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in SERIALIZATION_FAILURE_CODES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(orig)


@contextmanager
def ledger_transaction(session: Session) -> Iterator[None]:
    """Run a mutation to commit or full rollback."""
    try:
        yield
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        if is_serialization_failure(exc):
            logger.warning(f"ledger_conflict: {exc.orig}")
            raise ConcurrencyConflict(
                "The edit was not applied because of a concurrent change, please retry"
            ) from exc
        raise
    except Exception:
        session.rollback()
        raise


def retry_on_conflict(operation: Callable[[], T], attempts: Optional[int] = None) -> T:
    attempts = attempts or get_settings().conflict_retries
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConcurrencyConflict:
            if attempt == attempts:
                raise
            logger.warning(f"ledger_retry: attempt={attempt} of {attempts}")
    raise AssertionError("unreachable")


# --- Transfer manager ---


@dataclass(frozen=True)
class Plain:
    pass


@dataclass(frozen=True)
class TransferLeg:
    transfer_id: int
    paired_account_id: int


LegState = Union[Plain, TransferLeg]


@dataclass
class TransferResult:
    affected: list[AffectedTransaction] = field(default_factory=list)
    removed_ids: set[int] = field(default_factory=set)


def _location(txn: Transaction) -> AffectedTransaction:
    return AffectedTransaction(txn.account_id, txn.date, txn.category_id)


class TransferService:
    """Keeps the two legs of a transfer in sync.

    The source leg is always flushed before any method here is called; every
    method reports the old and new locations of the legs it touched so the
    caller can re-aggregate them.
    """

    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id
        self.directory = LedgerDirectory(session, budget_id)

    def _transfer(self, transfer_id: int) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if not transfer:
            raise LedgerNotFoundError("Transfer not found")
        return transfer

    def leg_state(self, txn: Transaction) -> LegState:
        if txn.transfer_id is None:
            return Plain()
        transfer = self._transfer(txn.transfer_id)
        if txn.account_id == transfer.from_account_id:
            paired = transfer.to_account_id
        else:
            paired = transfer.from_account_id
        return TransferLeg(transfer_id=transfer.id, paired_account_id=paired)

    def _other_leg(self, txn: Transaction) -> Transaction:
        other = self.session.scalar(
            select(Transaction).where(
                Transaction.transfer_id == txn.transfer_id,
                Transaction.id != txn.id,
            )
        )
        if not other:
            raise LedgerInvariantError(
                f"Transfer {txn.transfer_id} is missing its paired transaction"
            )
        return other

    def create_transfer(
        self, txn: Transaction, destination_account_id: int
    ) -> TransferResult:
        self.directory.validate_transfer_accounts(txn.account_id, destination_account_id)

        result = TransferResult(affected=[_location(txn)])
        transfer = Transfer(
            from_account_id=txn.account_id, to_account_id=destination_account_id
        )
        self.session.add(transfer)
        self.session.flush()

        txn.transfer_id = transfer.id
        txn.category_id = None
        mirror = Transaction(
            account_id=destination_account_id,
            date=txn.date,
            amount=-txn.amount,
            category_id=None,
            payee_id=txn.payee_id,
            notes=txn.notes,
            is_reconciled=False,
            transfer_id=transfer.id,
        )
        self.session.add(mirror)
        self.session.flush()

        result.affected.extend([_location(txn), _location(mirror)])
        logger.info(
            f"transfer_created: transfer={transfer.id} from={txn.account_id} "
            f"to={destination_account_id}"
        )
        return result

    def update_transfer(
        self, txn: Transaction, destination_account_id: Optional[int]
    ) -> TransferResult:
        """Mirror an edit of one leg onto the other.

        A `None` destination turns the transfer back into a plain transaction;
        a destination different from the current pair moves the other leg.
        """
        state = self.leg_state(txn)
        if not isinstance(state, TransferLeg):
            return TransferResult(affected=[_location(txn)])

        other = self._other_leg(txn)
        result = TransferResult(affected=[_location(other)])

        if destination_account_id is None:
            return self._remove_transfer(txn, other, result)

        if destination_account_id != state.paired_account_id:
            self.directory.validate_transfer_accounts(
                txn.account_id, destination_account_id
            )
            transfer = self._transfer(state.transfer_id)
            if txn.account_id == transfer.from_account_id:
                transfer.to_account_id = destination_account_id
            else:
                transfer.from_account_id = destination_account_id
            other.account_id = destination_account_id
            logger.info(
                f"transfer_moved: transfer={transfer.id} "
                f"from_account={state.paired_account_id} to_account={destination_account_id}"
            )

        other.date = txn.date
        other.amount = -txn.amount
        other.notes = txn.notes
        other.payee_id = txn.payee_id
        other.category_id = None
        txn.category_id = None
        self.session.flush()

        result.affected.extend([_location(txn), _location(other)])
        return result

    def _remove_transfer(
        self, txn: Transaction, other: Transaction, result: TransferResult
    ) -> TransferResult:
        transfer = self._transfer(txn.transfer_id)
        self.session.delete(other)
        txn.transfer_id = None
        self.session.flush()
        self.session.delete(transfer)
        self.session.flush()

        result.removed_ids.add(other.id)
        result.affected.append(_location(txn))
        logger.info(f"transfer_removed: transfer={transfer.id} kept={txn.id}")
        return result

    def delete_transfer(self, txn: Transaction) -> TransferResult:
        state = self.leg_state(txn)
        if not isinstance(state, TransferLeg):
            return TransferResult()

        other = self._other_leg(txn)
        transfer = self._transfer(state.transfer_id)
        result = TransferResult(affected=[_location(txn), _location(other)])

        self.session.delete(txn)
        self.session.delete(other)
        self.session.flush()
        self.session.delete(transfer)
        self.session.flush()

        result.removed_ids.update({txn.id, other.id})
        logger.info(f"transfer_deleted: transfer={state.transfer_id}")
        return result


# --- Transaction mutations ---


class TransactionService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id
        self.directory = LedgerDirectory(session, budget_id)
        self.transfers = TransferService(session, budget_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .join(Account, Transaction.account_id == Account.id)
            .where(
                Transaction.id == transaction_id,
                Account.budget_id == self.budget_id,
            )
        )
        if not txn:
            raise LedgerNotFoundError("Transaction not found")
        return txn

    def list_for_account(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .join(Account, Transaction.account_id == Account.id)
            .where(
                Transaction.account_id == account_id,
                Account.budget_id == self.budget_id,
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def _aggregate(self, affected: Sequence[AffectedTransaction]) -> None:
        by_account: dict[int, list[AffectedTransaction]] = {}
        for item in affected:
            by_account.setdefault(item.account_id, []).append(item)

        for account_id, items in by_account.items():
            update_account_balance(self.session, self.budget_id, account_id, items)

        update_monthly_balances(
            self.session,
            self.budget_id,
            [AffectedMonth(item.date, (item.category_id,)) for item in affected],
        )

    def insert(self, data: TransactionIn) -> Transaction:
        with ledger_transaction(self.session):
            self.directory.require_account(data.account_id)
            if data.category_id is not None:
                self.directory.require_category(data.category_id)
            destination = data.destination_account_id
            if destination is not None:
                self.directory.validate_transfer_accounts(data.account_id, destination)

            txn = Transaction(
                account_id=data.account_id,
                date=to_utc_naive(data.date),
                amount=data.amount,
                category_id=data.category_id,
                payee_id=data.payee_id,
                notes=data.notes,
                is_reconciled=data.is_reconciled,
            )
            self.session.add(txn)
            self.session.flush()

            affected = [_location(txn)]
            if destination is not None:
                affected.extend(self.transfers.create_transfer(txn, destination).affected)

            if txn.amount != 0:
                self._aggregate(affected)

        self.session.refresh(txn)
        logger.info(
            f"transaction_inserted: budget={self.budget_id} id={txn.id} "
            f"account={txn.account_id} affected={len(affected)}"
        )
        return txn

    def patch(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        with ledger_transaction(self.session):
            txn = self.get(transaction_id)
            fields = data.model_dump(exclude_unset=True)
            destination_set = "destination_account_id" in fields
            destination = fields.pop("destination_account_id", None)

            state = self.transfers.leg_state(txn)
            if isinstance(state, TransferLeg):
                if not destination_set:
                    destination = state.paired_account_id
                transfer_changed = destination != state.paired_account_id
            else:
                transfer_changed = destination is not None
            if transfer_changed and destination is not None:
                self.directory.validate_transfer_accounts(txn.account_id, destination)
            if fields.get("category_id") is not None:
                self.directory.require_category(fields["category_id"])
                if isinstance(state, TransferLeg) and destination is not None:
                    # transfer legs stay uncategorized
                    fields["category_id"] = None

            if "date" in fields:
                fields["date"] = to_utc_naive(fields["date"])
            changed = {
                name for name, value in fields.items() if getattr(txn, name) != value
            }

            old_location = _location(txn)
            for name, value in fields.items():
                setattr(txn, name, value)

            affected = [old_location, _location(txn)]
            if isinstance(state, TransferLeg):
                affected.extend(
                    self.transfers.update_transfer(txn, destination).affected
                )
            elif destination is not None:
                affected.extend(
                    self.transfers.create_transfer(txn, destination).affected
                )
            self.session.flush()

            if transfer_changed or changed & AGGREGATE_FIELDS:
                self._aggregate(affected)

        self.session.refresh(txn)
        logger.info(
            f"transaction_patched: budget={self.budget_id} id={txn.id} "
            f"fields={sorted(changed)} transfer_changed={transfer_changed}"
        )
        return txn

    def delete(self, transaction_ids: Sequence[int]) -> int:
        with ledger_transaction(self.session):
            txns = [self.get(txn_id) for txn_id in dict.fromkeys(transaction_ids)]

            affected: list[AffectedTransaction] = []
            removed: set[int] = set()
            for txn in txns:
                if txn.id in removed:
                    continue
                state = self.transfers.leg_state(txn)
                if isinstance(state, TransferLeg):
                    result = self.transfers.delete_transfer(txn)
                    affected.extend(result.affected)
                    removed.update(result.removed_ids)
                else:
                    affected.append(_location(txn))
                    removed.add(txn.id)
                    self.session.delete(txn)
            self.session.flush()

            self._aggregate(affected)

        logger.info(f"transactions_deleted: budget={self.budget_id} count={len(removed)}")
        return len(removed)


# --- Assignments and reads ---


class AssignmentService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id
        self.directory = LedgerDirectory(session, budget_id)

    def assign(
        self, category_id: int, month: MonthOfYear, amount: int
    ) -> CategoryMonthlyBalance:
        with ledger_transaction(self.session):
            category = self.directory.require_category(category_id)
            zone = self.directory.timezone()

            row = get_category_balance_row(self.session, self.budget_id, category_id, month)
            if not row:
                row = CategoryMonthlyBalance(
                    budget_id=self.budget_id,
                    category_id=category_id,
                    year=month.year,
                    month=month.month,
                    balance=0,
                )
                self.session.add(row)
            row.assigned_amount = amount
            self.session.flush()

            recalculate_category_balances(
                self.session, self.budget_id, category_id, month, category.is_income, zone
            )
            update_budget_monthly_balances(self.session, self.budget_id, month)

        logger.info(
            f"category_assigned: budget={self.budget_id} category={category_id} "
            f"month={month} amount={amount}"
        )
        return row


def _at_or_before(model, month: MonthOfYear):
    return or_(
        model.year < month.year,
        and_(model.year == month.year, model.month <= month.month),
    )


class MonthlyBudgetService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def monthly_budget(self, month: MonthOfYear) -> MonthlyBudgetOut:
        if not month.is_valid():
            raise LedgerValidationError("Invalid month of year")

        rows = self.session.scalars(
            select(CategoryMonthlyBalance)
            .where(
                CategoryMonthlyBalance.budget_id == self.budget_id,
                _at_or_before(CategoryMonthlyBalance, month),
            )
            .order_by(
                CategoryMonthlyBalance.year.desc(), CategoryMonthlyBalance.month.desc()
            )
        ).all()
        latest: dict[Optional[int], CategoryMonthlyBalance] = {}
        for row in rows:
            latest.setdefault(row.category_id, row)

        categories = self.session.scalars(
            select(Category)
            .where(Category.budget_id == self.budget_id)
            .order_by(Category.name)
        ).all()

        out: list[CategoryMonthOut] = []
        for category in categories:
            row = latest.get(category.id)
            assigned = 0
            balance = 0
            if row and (row.year, row.month) == (month.year, month.month):
                assigned = row.assigned_amount
                balance = row.balance
            elif row and not category.is_income:
                balance = row.balance
            out.append(
                CategoryMonthOut(
                    category_id=category.id,
                    name=category.name,
                    is_income=category.is_income,
                    assigned_amount=assigned,
                    balance=balance,
                )
            )

        unassigned = latest.get(None)
        available = self.session.scalar(
            select(BudgetMonthlyBalance.balance)
            .where(
                BudgetMonthlyBalance.budget_id == self.budget_id,
                _at_or_before(BudgetMonthlyBalance, month),
            )
            .order_by(BudgetMonthlyBalance.year.desc(), BudgetMonthlyBalance.month.desc())
            .limit(1)
        )
        return MonthlyBudgetOut(
            year=month.year,
            month=month.month,
            available=int(available or 0),
            unassigned_balance=unassigned.balance if unassigned else 0,
            categories=out,
        )

    def account_balance(self, account_id: int, month: MonthOfYear) -> int:
        account = self.session.get(Account, account_id)
        if not account or account.budget_id != self.budget_id:
            raise LedgerNotFoundError("Account not found")
        balance = self.session.scalar(
            select(AccountMonthlyBalance.balance)
            .where(
                AccountMonthlyBalance.account_id == account_id,
                _at_or_before(AccountMonthlyBalance, month),
            )
            .order_by(
                AccountMonthlyBalance.year.desc(), AccountMonthlyBalance.month.desc()
            )
            .limit(1)
        )
        return int(balance or 0)


# --- Audit ---


@dataclass(frozen=True)
class BalanceDrift:
    kind: str
    key: Optional[int]
    month: MonthOfYear
    stored: Optional[int]
    expected: Optional[int]


class LedgerAuditService:
    """Recomputes every balance in memory and compares it with stored rows."""

    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id
        self.directory = LedgerDirectory(session, budget_id)

    def _monthly_sums(self, zone) -> tuple[dict, dict]:
        by_account: dict[int, dict[MonthOfYear, int]] = {}
        by_category: dict[Optional[int], dict[MonthOfYear, int]] = {}
        rows = self.session.execute(
            select(Transaction.account_id, Transaction.category_id, Transaction.date, Transaction.amount)
            .join(Account, Transaction.account_id == Account.id)
            .where(Account.budget_id == self.budget_id)
        ).all()
        for row in rows:
            month = MonthOfYear.from_instant(row.date, zone)
            sums = by_account.setdefault(row.account_id, {})
            sums[month] = sums.get(month, 0) + row.amount
            sums = by_category.setdefault(row.category_id, {})
            sums[month] = sums.get(month, 0) + row.amount
        return by_account, by_category

    def _account_drift(self, by_account) -> list[BalanceDrift]:
        drift: list[BalanceDrift] = []
        stored_rows = self.session.execute(
            select(AccountMonthlyBalance)
            .join(Account, AccountMonthlyBalance.account_id == Account.id)
            .where(Account.budget_id == self.budget_id)
        ).scalars().all()
        for row in stored_rows:
            month = MonthOfYear(row.year, row.month)
            sums = by_account.get(row.account_id, {})
            expected: Optional[int] = None
            if sums and month <= max(sums):
                expected = sum(amount for m, amount in sums.items() if m <= month)
            if expected != row.balance:
                drift.append(
                    BalanceDrift("account", row.account_id, month, row.balance, expected)
                )

        stored_months = {
            (row.account_id, MonthOfYear(row.year, row.month)) for row in stored_rows
        }
        for account_id, sums in by_account.items():
            running = 0
            for month in months_between(min(sums), max(sums)):
                running += sums.get(month, 0)
                if (account_id, month) not in stored_months:
                    drift.append(BalanceDrift("account", account_id, month, None, running))
        return drift

    def _expected_categories(
        self, by_category, stored: dict
    ) -> dict[tuple[Optional[int], MonthOfYear], int]:
        expected: dict[tuple[Optional[int], MonthOfYear], int] = {}
        for category_id in set(by_category) | {key for key, _ in stored}:
            sums = by_category.get(category_id, {})
            months = set(sums) | {m for key, m in stored if key == category_id}
            is_income = self.directory.is_income(category_id)
            rollover = 0
            for month in months_between(min(months), max(months)):
                row = stored.get((category_id, month))
                balance = rollover + sums.get(month, 0) + (row.assigned_amount if row else 0)
                expected[(category_id, month)] = balance
                rollover = 0 if is_income else balance
        return expected

    def find_drift(self) -> list[BalanceDrift]:
        zone = self.directory.timezone()
        by_account, by_category = self._monthly_sums(zone)
        drift = self._account_drift(by_account)

        stored = {
            (row.category_id, MonthOfYear(row.year, row.month)): row
            for row in self.session.scalars(
                select(CategoryMonthlyBalance).where(
                    CategoryMonthlyBalance.budget_id == self.budget_id
                )
            ).all()
        }
        expected = self._expected_categories(by_category, stored)
        for (category_id, month), row in stored.items():
            if expected[(category_id, month)] != row.balance:
                drift.append(
                    BalanceDrift(
                        "category",
                        category_id,
                        month,
                        row.balance,
                        expected[(category_id, month)],
                    )
                )
        # months without activity may legitimately have no row
        for (category_id, month), balance in expected.items():
            if (category_id, month) in stored:
                continue
            if month in by_category.get(category_id, {}):
                drift.append(BalanceDrift("category", category_id, month, None, balance))

        income_ids = set(
            self.session.scalars(
                select(Category.id).where(
                    Category.budget_id == self.budget_id, Category.is_income.is_(True)
                )
            ).all()
        )
        budget_rows = {
            MonthOfYear(row.year, row.month): row
            for row in self.session.scalars(
                select(BudgetMonthlyBalance).where(
                    BudgetMonthlyBalance.budget_id == self.budget_id
                )
            ).all()
        }
        category_months = {m for _, m in stored}
        months = set(budget_rows) | category_months
        if months:
            previous = 0
            for month in months_between(min(months), max(months)):
                income = 0
                assigned = 0
                for (category_id, m), row in stored.items():
                    if m != month or category_id is None:
                        continue
                    if category_id in income_ids:
                        income += expected[(category_id, m)]
                    else:
                        assigned += row.assigned_amount
                balance = previous + income - assigned
                row = budget_rows.get(month)
                if row and row.balance != balance:
                    drift.append(
                        BalanceDrift("budget", self.budget_id, month, row.balance, balance)
                    )
                elif not row and month in category_months:
                    drift.append(
                        BalanceDrift("budget", self.budget_id, month, None, balance)
                    )
                previous = balance

        for item in drift:
            logger.warning(
                f"ledger_drift: budget={self.budget_id} kind={item.kind} key={item.key} "
                f"month={item.month} stored={item.stored} expected={item.expected}"
            )
        return drift

    def repair(self) -> list[BalanceDrift]:
        with ledger_transaction(self.session):
            drift = self.find_drift()
            if drift:
                rebuild_budget_balances(self.session, self.budget_id)
        return drift


def all_budget_ids(session: Session) -> list[int]:
    return list(session.scalars(select(Budget.id).order_by(Budget.id)).all())
