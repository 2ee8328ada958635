from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, create_ledger_engine
from main import app, get_db
from models import Account, Budget, Category


def make_client():
    engine = create_ledger_engine("sqlite+pysqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    session = SessionLocal()
    budget = Budget(name="Household", timezone="UTC")
    session.add(budget)
    session.flush()
    checking = Account(budget_id=budget.id, name="Checking")
    savings = Account(budget_id=budget.id, name="Savings")
    groceries = Category(budget_id=budget.id, name="Groceries")
    session.add_all([checking, savings, groceries])
    session.commit()
    ids = {
        "budget": budget.id,
        "checking": checking.id,
        "savings": savings.id,
        "groceries": groceries.id,
    }
    session.close()
    return TestClient(app), ids


def test_created_transaction_updates_account_balance() -> None:
    client, ids = make_client()
    budget = ids["budget"]

    resp = client.post(
        f"/budgets/{budget}/transactions",
        json={
            "account_id": ids["checking"],
            "date": "2024-03-12T10:00:00Z",
            "amount": -500,
        },
    )
    assert resp.status_code == 200
    assert resp.json()["amount"] == -500

    resp = client.get(
        f"/budgets/{budget}/accounts/{ids['checking']}/balance",
        params={"year": 2024, "month": 4},
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "account_id": ids["checking"],
        "year": 2024,
        "month": 4,
        "balance": -500,
    }


def test_transfer_to_same_account_is_a_bad_request() -> None:
    client, ids = make_client()

    resp = client.post(
        f"/budgets/{ids['budget']}/transactions",
        json={
            "account_id": ids["checking"],
            "date": "2024-03-12T10:00:00Z",
            "amount": -500,
            "destination_account_id": ids["checking"],
        },
    )

    assert resp.status_code == 400
    assert "different" in resp.json()["detail"]


def test_patch_unknown_transaction_is_not_found() -> None:
    client, ids = make_client()

    resp = client.patch(
        f"/budgets/{ids['budget']}/transactions/4242", json={"amount": 10}
    )

    assert resp.status_code == 404


def test_patch_rejects_explicit_null_amount() -> None:
    client, ids = make_client()

    resp = client.patch(
        f"/budgets/{ids['budget']}/transactions/1", json={"amount": None}
    )

    assert resp.status_code == 422


def test_assignment_and_monthly_budget_read() -> None:
    client, ids = make_client()
    budget = ids["budget"]

    resp = client.put(
        f"/budgets/{budget}/categories/{ids['groceries']}/assignments/2024/1",
        json={"amount": 250},
    )
    assert resp.status_code == 200
    assert resp.json()["balance"] == 250

    client.post(
        f"/budgets/{budget}/transactions",
        json={
            "account_id": ids["checking"],
            "date": "2024-01-20T12:00:00Z",
            "amount": -100,
            "category_id": ids["groceries"],
        },
    )

    resp = client.get(
        f"/budgets/{budget}/monthly-budget", params={"year": 2024, "month": 2}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["available"] == -250
    assert body["categories"] == [
        {
            "category_id": ids["groceries"],
            "name": "Groceries",
            "is_income": False,
            "assigned_amount": 0,
            "balance": 150,
        }
    ]


def test_invalid_month_in_path_is_a_bad_request() -> None:
    client, ids = make_client()

    resp = client.put(
        f"/budgets/{ids['budget']}/categories/{ids['groceries']}/assignments/2024/13",
        json={"amount": 1},
    )

    assert resp.status_code == 400


def test_delete_reports_count() -> None:
    client, ids = make_client()
    budget = ids["budget"]

    created = client.post(
        f"/budgets/{budget}/transactions",
        json={
            "account_id": ids["checking"],
            "date": "2024-05-01T08:00:00Z",
            "amount": -40,
            "destination_account_id": ids["savings"],
        },
    ).json()

    resp = client.request(
        "DELETE", f"/budgets/{budget}/transactions", json={"ids": [created["id"]]}
    )

    assert resp.status_code == 200
    assert resp.json() == {"deleted": 2}


def test_audit_and_repair_are_explicit_operator_calls() -> None:
    client, ids = make_client()
    budget = ids["budget"]
    client.post(
        f"/budgets/{budget}/transactions",
        json={
            "account_id": ids["checking"],
            "date": "2024-02-01T09:00:00Z",
            "amount": 75,
        },
    )

    resp = client.get(f"/budgets/{budget}/audit")
    assert resp.status_code == 200
    assert resp.json() == []

    resp = client.post(f"/budgets/{budget}/audit/repair")
    assert resp.status_code == 200
    assert resp.json() == []

    assert client.get("/budgets/9999/audit").status_code == 404
