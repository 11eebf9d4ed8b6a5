import pytest
from fastapi import HTTPException

from backend.app.sync.terminals import (
    ORGANIZATION_MISMATCH,
    TERMINAL_NOT_RECOGNIZED,
    TerminalRejected,
    list_terminals,
    register_terminal,
    resolve_terminal,
)
from backend.tests.fake_store import FakeDatabase, FakeUnitOfWork


CASHIER_ORG1 = {"user_id": "u1", "username": "cashier", "role": "CASHIER", "organization_id": "org1"}
SUPER = {"user_id": "u0", "username": "root", "role": "SUPER_ADMIN", "organization_id": None}


def _uow(db):
    uow = FakeUnitOfWork(db)
    uow.begin()
    return uow


def test_known_terminal_is_resolved_and_touched():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_terminal("t1", "org1", 1)
    uow = _uow(db)
    terminal = resolve_terminal(uow, "t1", CASHIER_ORG1)
    assert terminal["id"] == "t1"
    assert uow.t["terminals"]["t1"]["last_seen_at"] is not None


def test_unknown_terminal_is_recovered_with_client_id_and_next_counter():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_terminal("a", "org1", 1)
    db.add_terminal("b", "org1", 2)
    uow = _uow(db)
    terminal = resolve_terminal(uow, "lost-terminal", CASHIER_ORG1, organization_id="org1")
    assert terminal["id"] == "lost-terminal"
    assert terminal["counter"] == 3
    assert terminal["name"] == "Terminal #3"
    assert terminal["recovered_at"] is not None


def test_recovery_keeps_supplied_terminal_name():
    db = FakeDatabase()
    db.add_organization("org1")
    uow = _uow(db)
    terminal = resolve_terminal(uow, "t9", None, organization_id="org1", terminal_name="Front Counter")
    assert terminal["counter"] == 1
    assert terminal["name"] == "Front Counter"


@pytest.mark.parametrize("org_id", [None, "", "missing-org"])
def test_recovery_fails_without_a_known_organization(org_id):
    db = FakeDatabase()
    db.add_organization("org1")
    uow = _uow(db)
    with pytest.raises(TerminalRejected) as ei:
        resolve_terminal(uow, "t1", CASHIER_ORG1, organization_id=org_id)
    assert ei.value.entity == "Packet"
    assert ei.value.message == TERMINAL_NOT_RECOGNIZED
    assert uow.t["terminals"] == {}


def test_caller_from_another_organization_is_rejected_before_touching():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_organization("org2")
    db.add_terminal("t2", "org2", 1)
    uow = _uow(db)
    with pytest.raises(TerminalRejected) as ei:
        resolve_terminal(uow, "t2", CASHIER_ORG1)
    assert ei.value.entity == "Security"
    assert ei.value.message == ORGANIZATION_MISMATCH
    assert uow.t["terminals"]["t2"]["last_seen_at"] is None


def test_super_admin_may_sync_any_terminal():
    db = FakeDatabase()
    db.add_organization("org2")
    db.add_terminal("t2", "org2", 1)
    assert resolve_terminal(_uow(db), "t2", SUPER)["organization_id"] == "org2"


def test_register_assigns_sequential_counters():
    db = FakeDatabase()
    db.add_organization("org1")
    uow = _uow(db)
    first = register_terminal(uow, CASHIER_ORG1, "org1")
    second = register_terminal(uow, CASHIER_ORG1)
    assert first["terminal_number"] == 1
    assert first["name"] == "Terminal #1"
    assert second["terminal_number"] == 2
    assert second["terminal_id"] != first["terminal_id"]


def test_register_with_known_device_returns_existing_terminal():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_terminal("t1", "org1", 1, device_id="dev-abc")
    out = register_terminal(_uow(db), CASHIER_ORG1, "org1", device_id="dev-abc")
    assert out == {"terminal_id": "t1", "terminal_number": 1, "name": "Terminal #1"}


def test_register_rejections():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_organization("org2")
    with pytest.raises(HTTPException) as ei:
        register_terminal(_uow(db), SUPER, "org1")
    assert ei.value.status_code == 403

    with pytest.raises(HTTPException) as ei:
        register_terminal(_uow(db), CASHIER_ORG1, "org2")
    assert ei.value.status_code == 403

    orphan = {"user_id": "u5", "username": "x", "role": "ADMIN", "organization_id": "gone"}
    with pytest.raises(HTTPException) as ei:
        register_terminal(_uow(db), orphan)
    assert ei.value.status_code == 404


def test_list_terminals_is_scoped_to_the_callers_organization():
    db = FakeDatabase()
    db.add_organization("org1")
    db.add_organization("org2")
    db.add_terminal("t3", "org1", 2)
    db.add_terminal("t1", "org1", 1)
    db.add_terminal("x1", "org2", 1)

    rows = list_terminals(_uow(db), CASHIER_ORG1)
    assert [r["id"] for r in rows] == ["t1", "t3"]

    with pytest.raises(HTTPException) as ei:
        list_terminals(_uow(db), CASHIER_ORG1, "org2")
    assert ei.value.status_code == 403

    with pytest.raises(HTTPException) as ei:
        list_terminals(_uow(db), SUPER)
    assert ei.value.status_code == 400
    assert [r["id"] for r in list_terminals(_uow(db), SUPER, "org2")] == ["x1"]
