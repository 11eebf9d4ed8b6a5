from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_current_user
from ..sync.terminals import list_terminals, register_terminal
from .sync import get_uow_factory

router = APIRouter(prefix="/terminals", tags=["terminals"])


class RegisterTerminalIn(BaseModel):
    organization_id: Optional[str] = None
    device_id: Optional[str] = None


@router.post("/register")
def register(data: RegisterTerminalIn, user=Depends(get_current_user), uow_factory=Depends(get_uow_factory)):
    with uow_factory() as uow:
        out = register_terminal(uow, user, data.organization_id, data.device_id)
        uow.commit()
    return out


@router.get("")
def list_for_organization(
    organization_id: Optional[str] = None,
    user=Depends(get_current_user),
    uow_factory=Depends(get_uow_factory),
):
    with uow_factory() as uow:
        rows = list_terminals(uow, user, organization_id)
        uow.commit()
    return rows
