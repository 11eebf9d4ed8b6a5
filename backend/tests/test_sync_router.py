import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from backend.app.deps import get_current_user, require_role
from backend.app.main import app
from backend.app.routers import sync as sync_router
from backend.app.sync.ack import SyncLogBuffer
from backend.tests.fake_store import FakeDatabase


CASHIER_ORG1 = {"user_id": "u1", "username": "cashier", "role": "CASHIER", "organization_id": "org1"}


def _db():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_terminal("t1", "org1", 1)
    return db


def _sale(sale_id="s1"):
    return {
        "id": sale_id,
        "items": [{"product_id": "prod1", "quantity": 1, "price_at_sale": 5, "name": "Tea"}],
        "total_amount": 5,
        "payment_method": "CASH",
        "timestamp": "2024-05-01T10:00:00Z",
    }


def test_push_returns_success_ack():
    db = _db()
    log = SyncLogBuffer(10)
    out = sync_router.push(
        body={"id": "p1", "terminal_id": "t1", "sales": [_sale()]},
        user=CASHIER_ORG1,
        log=log,
        uow_factory=db.factory(),
    )
    assert out["packet_id"] == "p1"
    assert out["status"] == "SUCCESS"
    assert "errors" not in out
    assert "processed_at" in out
    assert "s1" in db.sales


def test_malformed_packet_is_rejected_before_touching_storage():
    db = _db()
    log = SyncLogBuffer(10)
    out = sync_router.push(
        body={"id": "p1", "terminal_id": "t1", "sales": [{"id": "s1", "items": []}]},
        user=CASHIER_ORG1,
        log=log,
        uow_factory=db.factory(),
    )
    assert out["packet_id"] == "p1"
    assert out["status"] == "FAILED"
    assert all(e["entity"] == "Packet" for e in out["errors"])
    assert any("sales.0.items" in e["error"] for e in out["errors"])
    assert db.commits == 0
    assert "rejected" in log.tail()[0]


def test_non_object_body_is_rejected():
    db = _db()
    out = sync_router.push(body=["nope"], user=CASHIER_ORG1, log=SyncLogBuffer(5), uow_factory=db.factory())
    assert out["status"] == "FAILED"
    assert out["packet_id"] == ""


def test_oversized_packet_is_rejected(monkeypatch):
    monkeypatch.setattr(sync_router.settings, "sync_max_entities", 1)
    db = _db()
    out = sync_router.push(
        body={"id": "p1", "terminal_id": "t1", "sales": [_sale("s1"), _sale("s2")]},
        user=CASHIER_ORG1,
        log=SyncLogBuffer(5),
        uow_factory=db.factory(),
    )
    assert out["status"] == "FAILED"
    assert "max 1" in out["errors"][0]["error"]
    assert db.sales == {}


def test_logs_endpoint_returns_bounded_tail(monkeypatch):
    monkeypatch.setattr(sync_router.settings, "sync_log_tail", 2)
    log = SyncLogBuffer(10)
    for i in range(4):
        log.append(f"line {i}")
    out = sync_router.logs(_user=CASHIER_ORG1, log=log)
    assert len(out) == 2
    assert out[0].endswith("line 3")


def test_logs_require_manager_role():
    dep = require_role("ADMIN", "MANAGER")
    with pytest.raises(HTTPException) as ei:
        dep(user=CASHIER_ORG1)
    assert ei.value.status_code == 403
    assert dep(user={"role": "SUPER_ADMIN"})["role"] == "SUPER_ADMIN"


def test_http_push_and_logs_roundtrip():
    db = _db()
    log = SyncLogBuffer(10)
    app.dependency_overrides[get_current_user] = lambda: {**CASHIER_ORG1, "role": "MANAGER"}
    app.dependency_overrides[sync_router.get_uow_factory] = lambda: db.factory()
    app.dependency_overrides[sync_router.get_sync_log] = lambda: log
    try:
        client = TestClient(app)
        res = client.post("/sync/push", json={"id": "p1", "terminal_id": "t1", "sales": [_sale()]})
        assert res.status_code == 200
        assert res.json()["status"] == "SUCCESS"
        assert res.headers.get("X-Request-Id")

        res = client.get("/sync/logs")
        assert res.status_code == 200
        assert "SUCCESS" in res.json()[0]
    finally:
        app.dependency_overrides.clear()


def test_http_push_requires_bearer_token():
    client = TestClient(app)
    res = client.post("/sync/push", json={"id": "p1", "terminal_id": "t1"})
    assert res.status_code == 401
    assert res.json()["detail"] == "missing token"


def test_meta_reports_sync_limits():
    client = TestClient(app)
    res = client.get("/meta")
    assert res.status_code == 200
    body = res.json()
    assert body["service"] == "pos-sync"
    assert body["sync"]["max_entities_per_packet"] >= 1


def test_liveness_does_not_touch_the_database():
    client = TestClient(app)
    res = client.get("/health/live")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
