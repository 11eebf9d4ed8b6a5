import pytest
from fastapi import HTTPException

from backend.app.routers import terminals as terminals_router
from backend.tests.fake_store import FakeDatabase


ADMIN_ORG1 = {"user_id": "u1", "username": "boss", "role": "ADMIN", "organization_id": "org1"}


def _db():
    db = FakeDatabase()
    db.add_organization("org1")
    return db


def test_register_commits_new_terminal():
    db = _db()
    out = terminals_router.register(
        terminals_router.RegisterTerminalIn(organization_id="org1", device_id="dev-1"),
        user=ADMIN_ORG1,
        uow_factory=db.factory(),
    )
    assert out["terminal_number"] == 1
    assert out["name"] == "Terminal #1"
    assert db.terminals[out["terminal_id"]]["device_id"] == "dev-1"
    assert db.commits == 1


def test_register_failure_rolls_back():
    db = _db()
    with pytest.raises(HTTPException) as ei:
        terminals_router.register(
            terminals_router.RegisterTerminalIn(organization_id="org1"),
            user={"user_id": "u0", "username": "root", "role": "SUPER_ADMIN", "organization_id": None},
            uow_factory=db.factory(),
        )
    assert ei.value.status_code == 403
    assert db.commits == 0
    assert db.terminals == {}


def test_list_defaults_to_callers_organization():
    db = _db()
    db.add_terminal("t2", "org1", 2)
    db.add_terminal("t1", "org1", 1)
    rows = terminals_router.list_for_organization(organization_id=None, user=ADMIN_ORG1, uow_factory=db.factory())
    assert [r["counter"] for r in rows] == [1, 2]
