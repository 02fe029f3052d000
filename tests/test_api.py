from datetime import datetime

from fastapi.testclient import TestClient

from audit import MemoryAuditSink
from config import Settings
from core import Core
from database import Store
from main import create_app
from models import Account, Batch, Customer


def make_client():
    settings = Settings(
        database_url="sqlite+pysqlite:///:memory:",
        timezone="UTC",
        retry_base_delay_secs=0,
        reconcile_concurrency=1,
        scheduler_enabled=False,
    )
    store = Store.from_settings(settings)
    store.create_all()
    core = Core.build(
        store, settings, clock=lambda: datetime(2026, 3, 3, 12, 0), audit=MemoryAuditSink()
    )
    with store.session_scope() as session:
        batch = Batch(name="B1")
        customer = Customer(name="C1")
        session.add_all([batch, customer])
        session.flush()
        account = Account(external_id="A1", name="Alpha", batch_id=batch.id)
        session.add(account)
        session.flush()
        ids = {"batch": batch.id, "customer": customer.id, "account": account.id}
    core.reconciliation.reconcile_all()
    client = TestClient(create_app(core, start_scheduler=False))
    return client, ids


def test_record_spend_and_read_back() -> None:
    client, ids = make_client()

    resp = client.post(
        "/api/spending",
        json={
            "account_id": ids["account"],
            "spending_date": "2026-03-01",
            "amount_cents": 1250,
            "currency": "usd",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["currency"] == "USD"

    client.post(
        "/api/spending",
        json={"account_id": ids["account"], "spending_date": "2026-03-01", "amount_cents": 900},
    )
    records = client.get(f"/api/accounts/{ids['account']}/spending").json()
    assert [r["amount_cents"] for r in records] == [900]
    total = client.get(f"/api/accounts/{ids['account']}/total").json()
    assert total == {"account_id": ids["account"], "total_cents": 900}


def test_error_mapping() -> None:
    client, ids = make_client()

    negative = client.post(
        "/api/spending",
        json={"account_id": ids["account"], "spending_date": "2026-03-01", "amount_cents": -5},
    )
    assert negative.status_code == 400

    missing = client.post(
        "/api/spending",
        json={"account_id": 999, "spending_date": "2026-03-01", "amount_cents": 5},
    )
    assert missing.status_code == 404

    malformed = client.post("/api/spending", json={"account_id": ids["account"]})
    assert malformed.status_code == 422

    bad_period = client.get(f"/api/summary/account/{ids['account']}?period=fortnight")
    assert bad_period.status_code == 400

    unknown_target = client.post(
        f"/api/accounts/{ids['account']}/relink",
        json={"axis": "customer", "entity_id": 999},
    )
    assert unknown_target.status_code == 404


def test_relink_snapshots_and_summary() -> None:
    client, ids = make_client()
    client.post(
        "/api/spending",
        json={"account_id": ids["account"], "spending_date": "2026-03-01", "amount_cents": 300},
    )

    resp = client.post(
        f"/api/accounts/{ids['account']}/relink",
        json={"axis": "customer", "entity_id": ids["customer"]},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["changed"] is True
    assert body["current_id"] == ids["customer"]

    snapshots = client.get(f"/api/accounts/{ids['account']}/snapshots").json()
    assert snapshots["total"] == 1
    assert snapshots["items"][0]["snapshot_type"] == "MC_CHANGE"

    summary = client.get(f"/api/summary/customer/{ids['customer']}?period=all").json()
    assert summary["total_cents"] == 300
    assert summary["account_count"] == 1

    attributed = client.get(
        f"/api/attribution/customer/{ids['customer']}",
        params={"as_of": "2026-03-03T12:30:00"},
    ).json()
    assert attributed["total_cents"] == 300
    assert attributed["account_ids"] == [ids["account"]]

    unlinked = client.get("/api/accounts/unlinked", params={"axis": "customer"}).json()
    assert unlinked == []


def test_bulk_operations_and_reconcile() -> None:
    client, ids = make_client()

    relinked = client.post(
        "/api/accounts/bulk-relink",
        json={"account_ids": [ids["account"]], "axis": "customer", "entity_id": ids["customer"]},
    ).json()
    assert relinked["changed"] == 1

    status = client.post(
        "/api/accounts/bulk-status",
        json={"account_ids": [ids["account"]], "status": "INACTIVE"},
    ).json()
    assert status["changed"] == 1

    report = client.post("/api/reconcile", json={"dry_run": True}).json()
    assert report["dry_run"] is True
    assert report["drifted"] == 0
    assert report["checked"] == 3

    single = client.post(f"/api/reconcile/batch/{ids['batch']}")
    assert single.status_code == 200
    assert client.post("/api/reconcile/batch/999").status_code == 404


def test_global_chart() -> None:
    client, ids = make_client()
    client.post(
        "/api/spending",
        json={"account_id": ids["account"], "spending_date": "2026-03-02", "amount_cents": 40},
    )

    chart = client.get("/api/charts/global", params={"days": 3}).json()

    assert chart["total_cents"] == 40
    assert [p["amount_cents"] for p in chart["points"]] == [0, 40, 0]
