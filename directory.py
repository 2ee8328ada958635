from __future__ import annotations

from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import LedgerInvariantError, LedgerNotFoundError, LedgerValidationError
from models import Account, Budget, Category
from months import resolve_zone


class LedgerDirectory:
    """Read-only lookups against budgets, accounts and categories."""

    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def timezone(self) -> ZoneInfo:
        budget = self.session.get(Budget, self.budget_id)
        if not budget:
            raise LedgerInvariantError(f"Budget {self.budget_id} has no time zone")
        return resolve_zone(budget.timezone)

    def is_income(self, category_id: Optional[int]) -> bool:
        if category_id is None:
            return False
        is_income = self.session.scalar(
            select(Category.is_income).where(
                Category.budget_id == self.budget_id, Category.id == category_id
            )
        )
        return bool(is_income)

    def require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.budget_id != self.budget_id:
            raise LedgerValidationError("Category not found")
        return category

    def require_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.budget_id != self.budget_id:
            raise LedgerNotFoundError("Account not found")
        if account.deleted_at is not None:
            raise LedgerValidationError("Account is deleted")
        return account

    def validate_transfer_accounts(self, account_id: int, other_account_id: int) -> None:
        if account_id == other_account_id:
            raise LedgerValidationError(
                "Source and destination accounts must be different"
            )
        found = self.session.scalars(
            select(Account.id).where(
                Account.id.in_([account_id, other_account_id]),
                Account.budget_id == self.budget_id,
                Account.deleted_at.is_(None),
            )
        ).all()
        if len(found) != 2:
            raise LedgerValidationError(
                "Both accounts must belong to the same budget and not be deleted"
            )
