import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from config import Settings
from database import Base

HEADERS = {"X-User-Id": "api-user"}


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _rent(client, amount=500_000):
    resp = client.post(
        "/api/expenses",
        json={
            "name": "Rent",
            "amount": amount,
            "recurrence": "monthly",
            "billing_day": 31,
            "expense_type": "fixed",
        },
        headers=HEADERS,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def test_ping(client):
    resp = client.get("/api/ping")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "ok"
    assert resp.json()["error"] is None


def test_settle_status_and_rollback_round_trip(client):
    asset = client.post(
        "/api/assets",
        json={"name": "Main", "category": "deposit", "current_value": 2_000_000},
        headers=HEADERS,
    ).json()["data"]
    template = _rent(client)
    assert template["type"] == "expense"
    assert template["is_recurring_template"] is True

    resp = client.post(
        "/api/expenses/settle-month", json={"target_month": "2024-02"}, headers=HEADERS
    )
    assert resp.status_code == 200
    summary = resp.json()["data"]
    assert summary["created_count"] == 1
    assert summary["reflected_count"] == 1
    assert summary["total_settled_amount"] == 500_000

    balance = client.get(f"/api/assets/{asset['id']}", headers=HEADERS).json()["data"]
    assert balance["current_value"] == 1_500_000

    status = client.get(
        "/api/expenses/settlement-status", params={"month": "2024-02"}, headers=HEADERS
    ).json()["data"]
    assert status == {"target_month": "2024-02", "settled": True}

    settled = client.get(
        "/api/expenses",
        params={"month": "2024-02", "entry_source": "auto_settlement"},
        headers=HEADERS,
    ).json()["data"]
    assert [row["occurred_at"] for row in settled] == ["2024-02-29"]

    conflict = client.post(
        "/api/expenses/settle-month", json={"target_month": "2024-02"}, headers=HEADERS
    )
    assert conflict.status_code == 409
    assert conflict.json()["data"] is None
    assert conflict.json()["error"]["code"] == "SETTLEMENT_CONFLICT"

    rollback = client.post(
        "/api/expenses/rollback-month", json={"target_month": "2024-02"}, headers=HEADERS
    )
    assert rollback.status_code == 200
    assert rollback.json()["data"]["deleted_count"] == 1
    balance = client.get(f"/api/assets/{asset['id']}", headers=HEADERS).json()["data"]
    assert balance["current_value"] == 2_000_000

    again = client.post(
        "/api/expenses/rollback-month", json={"target_month": "2024-02"}, headers=HEADERS
    )
    assert again.status_code == 404
    assert again.json()["error"]["code"] == "NOT_FOUND"


def test_validation_errors_use_envelope(client):
    resp = client.post(
        "/api/expenses/settle-month", json={"target_month": "2024-13"}, headers=HEADERS
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    resp = client.post("/api/incomes", json={"name": "", "amount": -1}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
    assert resp.json()["error"]["details"]

    resp = client.post(
        "/api/incomes",
        json={"type": "expense", "name": "Mixed", "amount": 10},
        headers=HEADERS,
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/expenses",
        json={"name": "Rent", "amount": 1, "recurrence": "monthly", "expense_type": "fixed"},
        headers=HEADERS,
    )
    assert resp.status_code == 400
    assert "billing_day" in resp.json()["error"]["message"]


def test_transaction_crud_is_scoped_by_user_and_ledger(client):
    created = client.post(
        "/api/incomes",
        json={"name": "Gift", "amount": 30_000, "occurred_at": "2024-01-01"},
        headers=HEADERS,
    ).json()["data"]
    assert created["reflected_amount"] == 30_000

    assert client.get(f"/api/incomes/{created['id']}", headers=HEADERS).status_code == 200
    assert client.get(f"/api/expenses/{created['id']}", headers=HEADERS).status_code == 404
    other = client.get(f"/api/incomes/{created['id']}", headers={"X-User-Id": "intruder"})
    assert other.status_code == 404

    updated = client.put(
        f"/api/incomes/{created['id']}", json={"amount": 40_000}, headers=HEADERS
    ).json()["data"]
    assert updated["reflected_amount"] == 40_000

    assets = client.get("/api/assets", headers=HEADERS).json()["data"]
    assert [a["current_value"] for a in assets] == [40_000]

    deleted = client.delete(f"/api/incomes/{created['id']}", headers=HEADERS)
    assert deleted.json()["data"] == {"id": created["id"], "deleted": True}
    assets = client.get("/api/assets", headers=HEADERS).json()["data"]
    assert [a["current_value"] for a in assets] == [0]


def test_goal_fund_logs_endpoint(client):
    fund = client.post(
        "/api/goal-funds", json={"name": "Trip", "target_amount": 1_000_000}, headers=HEADERS
    ).json()["data"]

    resp = client.post(
        f"/api/goal-funds/{fund['id']}/logs",
        json={"action": "add-log", "month": "2024-03", "amount": 100_000, "note": "March"},
        headers=HEADERS,
    )
    assert resp.json()["data"]["current_amount"] == 100_000
    assert resp.json()["data"]["monthly_logs"] == [
        {"month": "2024-03", "amount": 100_000, "note": "March"}
    ]

    resp = client.post(
        f"/api/goal-funds/{fund['id']}/logs",
        json={"action": "add-log", "month": "2024-03"},
        headers=HEADERS,
    )
    assert resp.status_code == 400

    resp = client.post(
        f"/api/goal-funds/{fund['id']}/logs",
        json={"action": "remove-log", "month": "2024-03"},
        headers=HEADERS,
    )
    assert resp.json()["data"]["current_amount"] == 0
    assert resp.json()["data"]["monthly_logs"] == []


def test_missing_user_header_is_rejected_without_dev_auth(client, monkeypatch):
    settings = Settings(
        database_url="sqlite://",
        timezone="Asia/Seoul",
        default_user_id="demo-user",
        allow_dev_header_auth=False,
        settlement_day=1,
        settlement_hour=0,
        sweep_hour=6,
        snapshot_hour=12,
    )
    monkeypatch.setattr(main, "get_settings", lambda: settings)

    resp = client.get("/api/expenses")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"
    assert client.get("/api/expenses", headers=HEADERS).status_code == 200


def test_settlement_job_endpoint_settles_every_user(client):
    _rent(client, amount=100)
    client.post(
        "/api/incomes",
        json={
            "name": "Salary",
            "amount": 1_000,
            "recurrence": "monthly",
            "billing_day": 25,
            "is_fixed_income": True,
        },
        headers={"X-User-Id": "second"},
    )

    resp = client.post(
        "/api/jobs/monthly-settlement",
        params={"force": "true"},
        json={"target_month": "2024-02"},
    )
    data = resp.json()["data"]
    today = client.get("/api/ping").json()["data"]["today"]
    # a requested month is ignored; the job settles the current month only
    assert data["target_month"] == today[:7]
    assert data["processed_users"] == 2
    assert data["settled"] == 2
    assert data["total_settled_amount"] == 1_100

    status = client.get(
        "/api/incomes/settlement-status",
        headers={"X-User-Id": "second"},
    ).json()["data"]
    assert status == {"target_month": data["target_month"], "settled": True}
    assert client.get(
        "/api/incomes/settlement-status",
        params={"month": "2024-02"},
        headers={"X-User-Id": "second"},
    ).json()["data"]["settled"] is False


def test_snapshot_job_endpoint_can_be_forced(client):
    client.post(
        "/api/assets",
        json={"name": "Main", "category": "deposit", "current_value": 5_000},
        headers=HEADERS,
    )
    resp = client.post("/api/jobs/monthly-snapshot", params={"force": "true"})
    assert resp.json()["data"]["processed_users"] == 1

    history = client.get("/api/asset-history", headers=HEADERS).json()["data"]
    assert len(history) == 1
    assert history[0]["value"] == 5_000
    assert history[0]["is_monthly_snapshot"] is True


def test_lifespan_starts_and_stops_scheduler(monkeypatch):
    calls = []

    class RecordingScheduler:
        def start(self):
            calls.append("start")

        def stop(self):
            calls.append("stop")

    monkeypatch.setattr(main, "scheduler_manager", RecordingScheduler())
    with TestClient(main.app) as client:
        assert calls == ["start"]
        assert client.get("/api/ping").status_code == 200
    assert calls == ["start", "stop"]
