from __future__ import annotations

import uuid
from typing import Optional

from fastapi import HTTPException

from ..deps import is_super_admin
from .ack import json_log
from .store import UnitOfWork


TERMINAL_NOT_RECOGNIZED = "Terminal not recognized"
ORGANIZATION_MISMATCH = "Organization Mismatch: User does not belong to this Terminal."


class TerminalRejected(Exception):
    """Packet-level rejection: nothing in the packet may be applied."""

    def __init__(self, entity: str, message: str):
        super().__init__(message)
        self.entity = entity
        self.message = message


def default_terminal_name(counter: int) -> str:
    return f"Terminal #{counter}"


def _next_counter(uow: UnitOfWork, organization_id: str) -> int:
    # Terminals are never deleted, so count + 1 stays unique per organization.
    # Callers hold the organization row lock while assigning.
    return uow.count_terminals(organization_id) + 1


def _recover_terminal(uow: UnitOfWork, terminal_id: str, organization_id: Optional[str], terminal_name: Optional[str]) -> dict:
    org_id = (organization_id or "").strip()
    if not org_id:
        json_log("error", "sync.terminal.recovery_failed", terminal_id=terminal_id, reason="missing organization_id")
        raise TerminalRejected("Packet", TERMINAL_NOT_RECOGNIZED)

    org = uow.get_organization(org_id, lock=True)
    if not org:
        json_log("error", "sync.terminal.recovery_failed", terminal_id=terminal_id, organization_id=org_id, reason="organization not found")
        raise TerminalRejected("Packet", TERMINAL_NOT_RECOGNIZED)

    counter = _next_counter(uow, org_id)
    name = (terminal_name or "").strip() or default_terminal_name(counter)
    # Keep the client's id: the terminal's local identity must survive recovery.
    terminal = uow.insert_terminal(terminal_id, org_id, counter, name, recovered=True)
    json_log("warning", "sync.terminal.recovered", terminal_id=terminal_id, organization_id=org_id, counter=counter, name=name)
    return terminal


def resolve_terminal(
    uow: UnitOfWork,
    terminal_id: str,
    caller: Optional[dict] = None,
    *,
    organization_id: Optional[str] = None,
    terminal_name: Optional[str] = None,
) -> dict:
    """
    Map a packet's terminal id to its terminal row, recreating the row when the
    server lost it and the packet carries a known organization id.

    Raises TerminalRejected when the terminal cannot be resolved or when the
    caller's organization does not own it. Runs inside the packet's unit of
    work, so a later rejection also discards the recovery.
    """
    terminal = uow.get_terminal(terminal_id)
    if terminal is None:
        terminal = _recover_terminal(uow, terminal_id, organization_id, terminal_name)

    caller_org = (caller or {}).get("organization_id")
    if caller_org and str(caller_org) != str(terminal["organization_id"]):
        json_log(
            "error",
            "sync.security.org_mismatch",
            username=(caller or {}).get("username"),
            caller_organization_id=str(caller_org),
            terminal_id=terminal_id,
            terminal_organization_id=str(terminal["organization_id"]),
        )
        raise TerminalRejected("Security", ORGANIZATION_MISMATCH)

    uow.touch_terminal(terminal_id)
    return terminal


def register_terminal(
    uow: UnitOfWork,
    caller: dict,
    organization_id: Optional[str] = None,
    device_id: Optional[str] = None,
) -> dict:
    if is_super_admin(caller):
        raise HTTPException(status_code=403, detail="super admin cannot register terminals")

    caller_org = caller.get("organization_id")
    org_id = (organization_id or caller_org or "").strip()
    if not org_id:
        raise HTTPException(status_code=400, detail="organization_id is required")
    if caller_org and org_id != str(caller_org):
        raise HTTPException(status_code=403, detail="organization mismatch")

    org = uow.get_organization(org_id, lock=True)
    if not org:
        raise HTTPException(status_code=404, detail="organization not found")

    device_id = (device_id or "").strip() or None
    if device_id:
        existing = uow.find_terminal_by_device(org_id, device_id)
        if existing:
            return _registration(existing)

    counter = _next_counter(uow, org_id)
    terminal = uow.insert_terminal(str(uuid.uuid4()), org_id, counter, default_terminal_name(counter), device_id=device_id)
    return _registration(terminal)


def _registration(terminal: dict) -> dict:
    return {
        "terminal_id": str(terminal["id"]),
        "terminal_number": int(terminal["counter"]),
        "name": terminal["name"],
    }


def list_terminals(uow: UnitOfWork, caller: dict, organization_id: Optional[str] = None) -> list[dict]:
    org_id = (organization_id or "").strip()
    if is_super_admin(caller):
        if not org_id:
            raise HTTPException(status_code=400, detail="organization_id is required")
    else:
        caller_org = str(caller.get("organization_id") or "")
        if not caller_org:
            raise HTTPException(status_code=403, detail="forbidden")
        org_id = org_id or caller_org
        if org_id != caller_org:
            raise HTTPException(status_code=403, detail="organization mismatch")
    return uow.list_terminals(org_id)
