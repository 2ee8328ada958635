from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, create_ledger_engine
from models import Account, AccountMonthlyBalance, Budget
from schemas import TransactionIn, TransactionPatch
from services import TransactionService


def make_session():
    engine = create_ledger_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, tz: str = "UTC"):
    budget = Budget(name="Household", timezone=tz)
    session.add(budget)
    session.flush()
    account = Account(budget_id=budget.id, name="Checking")
    session.add(account)
    session.commit()
    return budget, account


def account_rows(session, account_id: int) -> dict[tuple[int, int], int]:
    rows = session.scalars(
        select(AccountMonthlyBalance).where(
            AccountMonthlyBalance.account_id == account_id
        )
    ).all()
    return {(r.year, r.month): r.balance for r in rows}


def test_single_transaction_creates_only_its_month() -> None:
    session = make_session()
    budget, account = seed(session)

    TransactionService(session, budget.id).insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 12), amount=-500)
    )

    assert account_rows(session, account.id) == {(2024, 3): -500}


def test_backdated_insert_recomputes_later_months() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 12), amount=-500)
    )
    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 2, 3), amount=1_000)
    )

    assert account_rows(session, account.id) == {(2024, 2): 1_000, (2024, 3): 500}


def test_walk_fills_months_without_transactions() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 5, 1), amount=40)
    )
    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 1, 20), amount=100)
    )

    rows = account_rows(session, account.id)
    assert rows == {
        (2024, 1): 100,
        (2024, 2): 100,
        (2024, 3): 100,
        (2024, 4): 100,
        (2024, 5): 140,
    }


def test_deleting_latest_transaction_prunes_future_rows() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 1, 5), amount=100)
    )
    latest = txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 5), amount=50)
    )
    assert account_rows(session, account.id) == {
        (2024, 1): 100,
        (2024, 2): 100,
        (2024, 3): 150,
    }

    txns.delete([latest.id])

    assert account_rows(session, account.id) == {(2024, 1): 100}


def test_deleting_last_transaction_removes_every_row() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    only = txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 5), amount=75)
    )
    txns.delete([only.id])

    assert account_rows(session, account.id) == {}


def test_moving_date_earlier_rewalks_and_prunes() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    txn = txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 5), amount=-500)
    )
    txns.patch(txn.id, TransactionPatch(date=datetime(2024, 1, 10)))

    assert account_rows(session, account.id) == {(2024, 1): -500}


def test_insert_after_gap_carries_latest_stored_balance() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 1, 5), amount=100)
    )
    march = txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 5), amount=10)
    )
    txns.delete([march.id])
    txns.insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 5, 5), amount=1)
    )

    rows = account_rows(session, account.id)
    assert rows[(2024, 5)] == 101
    assert rows[(2024, 4)] == 100
    assert sorted(rows) == [(2024, m) for m in range(1, 6)]


def test_recurrence_holds_between_consecutive_months() -> None:
    session = make_session()
    budget, account = seed(session)
    txns = TransactionService(session, budget.id)

    amounts = {
        datetime(2024, 1, 3): 250,
        datetime(2024, 1, 28): -40,
        datetime(2024, 3, 9): -75,
        datetime(2024, 4, 30): 1_200,
        datetime(2024, 2, 14): -60,
    }
    for when, amount in amounts.items():
        txns.insert(TransactionIn(account_id=account.id, date=when, amount=amount))

    rows = account_rows(session, account.id)
    previous = 0
    for month in range(1, 5):
        month_total = sum(a for d, a in amounts.items() if d.month == month)
        assert rows[(2024, month)] == previous + month_total
        previous = rows[(2024, month)]


def test_months_are_bucketed_in_the_budget_time_zone() -> None:
    session = make_session()
    budget, account = seed(session, tz="Europe/Berlin")

    TransactionService(session, budget.id).insert(
        TransactionIn(
            account_id=account.id,
            date=datetime(2024, 1, 31, 23, 30, tzinfo=timezone.utc),
            amount=20,
        )
    )

    assert account_rows(session, account.id) == {(2024, 2): 20}


def test_zero_amount_insert_skips_aggregation() -> None:
    session = make_session()
    budget, account = seed(session)

    TransactionService(session, budget.id).insert(
        TransactionIn(account_id=account.id, date=datetime(2024, 3, 5), amount=0)
    )

    assert account_rows(session, account.id) == {}
