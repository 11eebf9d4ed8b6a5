from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError

from ..config import settings
from ..deps import get_current_user, require_role
from ..sync.ack import SyncLogBuffer
from ..sync.pg_store import PgUnitOfWork
from ..sync.service import parse_packet, process_packet, reject_body

router = APIRouter(prefix="/sync", tags=["sync"])

# Process-lifetime diagnostic log served by GET /sync/logs.
SYNC_LOG = SyncLogBuffer(settings.sync_log_capacity)


def get_sync_log() -> SyncLogBuffer:
    return SYNC_LOG


def get_uow_factory():
    return PgUnitOfWork


@router.post("/push")
def push(
    body: Any = Body(...),
    user=Depends(get_current_user),
    log: SyncLogBuffer = Depends(get_sync_log),
    uow_factory=Depends(get_uow_factory),
):
    # Always answer with an acknowledgement so terminals can decide what to retry.
    try:
        packet = parse_packet(body)
    except (ValidationError, ValueError) as ex:
        return reject_body(body, ex, log).to_wire()
    return process_packet(packet, user, uow_factory, log).to_wire()


@router.get("/logs")
def logs(
    _user=Depends(require_role("ADMIN", "MANAGER")),
    log: SyncLogBuffer = Depends(get_sync_log),
):
    return log.tail(settings.sync_log_tail)
