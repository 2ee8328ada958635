import logging
from typing import Callable, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import ConcurrencyConflict, LedgerNotFoundError, LedgerValidationError
from models import Budget
from months import MonthOfYear
from scheduler import SchedulerManager
from schemas import (
    AccountBalanceOut,
    AssignmentIn,
    BalanceDriftOut,
    DeleteTransactionsIn,
    MonthlyBudgetOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    AssignmentService,
    LedgerAuditService,
    MonthlyBudgetService,
    TransactionService,
    retry_on_conflict,
)

T = TypeVar("T")

app = FastAPI(title="Envelope Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _run(operation: Callable[[], T]) -> T:
    try:
        return retry_on_conflict(operation, get_settings().conflict_retries)
    except LedgerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConcurrencyConflict as exc:
        logging.warning(f"Giving up after repeated conflicts: {exc}")
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _month(year: int, month: int) -> MonthOfYear:
    try:
        return MonthOfYear(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/budgets/{budget_id}/transactions", response_model=TransactionOut)
def create_transaction(
    budget_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    service = TransactionService(db, budget_id)
    return _run(lambda: service.insert(payload))


@app.patch(
    "/budgets/{budget_id}/transactions/{transaction_id}",
    response_model=TransactionOut,
)
def patch_transaction(
    budget_id: int,
    transaction_id: int,
    payload: TransactionPatch,
    db: Session = Depends(get_db),
):
    service = TransactionService(db, budget_id)
    return _run(lambda: service.patch(transaction_id, payload))


@app.delete("/budgets/{budget_id}/transactions")
def delete_transactions(
    budget_id: int, payload: DeleteTransactionsIn, db: Session = Depends(get_db)
):
    service = TransactionService(db, budget_id)
    deleted = _run(lambda: service.delete(payload.ids))
    return {"deleted": deleted}


@app.put("/budgets/{budget_id}/categories/{category_id}/assignments/{year}/{month}")
def assign_category(
    budget_id: int,
    category_id: int,
    year: int,
    month: int,
    payload: AssignmentIn,
    db: Session = Depends(get_db),
):
    month_of_year = _month(year, month)
    service = AssignmentService(db, budget_id)
    row = _run(lambda: service.assign(category_id, month_of_year, payload.amount))
    return {
        "category_id": row.category_id,
        "year": row.year,
        "month": row.month,
        "assigned_amount": row.assigned_amount,
        "balance": row.balance,
    }


@app.get("/budgets/{budget_id}/monthly-budget", response_model=MonthlyBudgetOut)
def monthly_budget(
    budget_id: int,
    year: int = Query(...),
    month: int = Query(...),
    db: Session = Depends(get_db),
):
    service = MonthlyBudgetService(db, budget_id)
    return _run(lambda: service.monthly_budget(_month(year, month)))


@app.get(
    "/budgets/{budget_id}/accounts/{account_id}/balance",
    response_model=AccountBalanceOut,
)
def account_balance(
    budget_id: int,
    account_id: int,
    year: int = Query(...),
    month: int = Query(...),
    db: Session = Depends(get_db),
):
    month_of_year = _month(year, month)
    service = MonthlyBudgetService(db, budget_id)
    balance = _run(lambda: service.account_balance(account_id, month_of_year))
    return AccountBalanceOut(
        account_id=account_id, year=year, month=month, balance=balance
    )


def _require_budget(db: Session, budget_id: int) -> None:
    if not db.get(Budget, budget_id):
        raise HTTPException(status_code=404, detail="Budget not found")


def _drift_out(drift) -> list[BalanceDriftOut]:
    return [
        BalanceDriftOut(
            kind=item.kind,
            key=item.key,
            year=item.month.year,
            month=item.month.month,
            stored=item.stored,
            expected=item.expected,
        )
        for item in drift
    ]


@app.get("/budgets/{budget_id}/audit", response_model=list[BalanceDriftOut])
def audit_budget(budget_id: int, db: Session = Depends(get_db)):
    _require_budget(db, budget_id)
    return _drift_out(LedgerAuditService(db, budget_id).find_drift())


@app.post("/budgets/{budget_id}/audit/repair", response_model=list[BalanceDriftOut])
def repair_budget(budget_id: int, db: Session = Depends(get_db)):
    _require_budget(db, budget_id)
    service = LedgerAuditService(db, budget_id)
    return _drift_out(_run(service.repair))
