from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionIn(BaseModel):
    account_id: int
    date: datetime
    amount: int
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_reconciled: bool = False
    destination_account_id: Optional[int] = None


class TransactionPatch(BaseModel):
    """Partial update; only fields that were explicitly set are applied.

    `destination_account_id` left unset keeps a transfer as it is, an explicit
    null turns a transfer leg back into a plain transaction.
    """

    date: Optional[datetime] = None
    amount: Optional[int] = None
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_reconciled: Optional[bool] = None
    destination_account_id: Optional[int] = None

    @field_validator("date", "amount", "is_reconciled")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    date: datetime
    amount: int
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    notes: Optional[str] = None
    is_reconciled: bool
    transfer_id: Optional[int] = None


class DeleteTransactionsIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class AssignmentIn(BaseModel):
    amount: int


class CategoryMonthOut(BaseModel):
    category_id: int
    name: str
    is_income: bool
    assigned_amount: int
    balance: int


class MonthlyBudgetOut(BaseModel):
    year: int
    month: int
    available: int
    unassigned_balance: int
    categories: list[CategoryMonthOut]


class AccountBalanceOut(BaseModel):
    account_id: int
    year: int
    month: int
    balance: int


class BalanceDriftOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    key: Optional[int] = None
    year: int
    month: int
    stored: Optional[int] = None
    expected: Optional[int] = None
