from fastapi import Header, HTTPException, Depends
from .db import get_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SUPER_ADMIN = "SUPER_ADMIN"


def _extract_bearer_token(authorization: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(authorization: Optional[str] = Header(None)):
    token = _extract_bearer_token(authorization)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.username, u.role, u.organization_id, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": str(row["session_id"]),
                "user_id": str(row["user_id"]),
                "username": row["username"],
                "role": row["role"],
                "organization_id": (str(row["organization_id"]) if row["organization_id"] else None),
            }


def get_current_user(session=Depends(get_session)):
    """
    Caller context consumed by the sync core: {user_id, username, role, organization_id}.
    A SUPER_ADMIN carries no organization and may act across organizations.
    """
    return {
        "user_id": session["user_id"],
        "username": session["username"],
        "role": session["role"],
        "organization_id": session["organization_id"],
    }


def is_super_admin(user: dict) -> bool:
    return (user or {}).get("role") == SUPER_ADMIN


def require_role(*roles: str):
    allowed = {r.upper() for r in roles}

    def _dep(user=Depends(get_current_user)):
        if is_super_admin(user):
            return user
        if str(user.get("role") or "").upper() not in allowed:
            raise HTTPException(status_code=403, detail="permission denied")
        return user
    return _dep
