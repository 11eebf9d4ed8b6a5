from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
import uuid
from ..config import settings
from ..db import get_admin_conn, get_conn
from ..deps import get_session, get_current_user
from ..security import hash_password, issue_session, needs_rehash, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    username: str
    password: str


@router.post("/login")
def login(data: LoginIn):
    username = (data.username or "").strip()
    if not username:
        raise HTTPException(status_code=401, detail="invalid credentials")
    # Admin connection: the super admin has no organization.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, username, hashed_password, role, organization_id, is_active
                FROM users
                WHERE username = %s
                """,
                (username,),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="invalid credentials")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    """
                    UPDATE users
                    SET hashed_password = %s
                    WHERE id = %s
                    """,
                    (hash_password(data.password), user["id"]),
                )

            session = issue_session(settings.session_days)
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (str(uuid.uuid4()), user["id"], session.token_hash, session.expires_at),
            )
            cur.execute("UPDATE users SET last_login_at = now() WHERE id = %s", (user["id"],))

            return {
                "token": session.token,
                "expires_at": session.expires_at.isoformat(),
                "user": {
                    "user_id": str(user["id"]),
                    "username": user["username"],
                    "role": user["role"],
                    "organization_id": (str(user["organization_id"]) if user["organization_id"] else None),
                },
            }


@router.get("/me")
def me(user=Depends(get_current_user)):
    return user


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE id = %s
                """,
                (session["session_id"],),
            )
    return {"ok": True}


@router.post("/logout-all")
def logout_all(session=Depends(get_session)):
    """
    Revoke all sessions for the current user (useful after password resets or when a terminal is lost).
    """
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE user_id = %s
                """,
                (session["user_id"],),
            )
    return {"ok": True}
