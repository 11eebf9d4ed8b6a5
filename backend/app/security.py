import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class IssuedSession(NamedTuple):
    token: str
    token_hash: str
    expires_at: datetime


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def is_legacy_hash(hashed: Optional[str]) -> bool:
    """Accounts migrated from the old terminal app carry unsalted sha256 hex digests."""
    if not hashed:
        return False
    return not hashed.startswith("$2")


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    if is_legacy_hash(hashed):
        legacy = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(legacy, hashed)
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    if is_legacy_hash(hashed):
        return True
    return _pwd_context.needs_update(hashed)


def hash_session_token(token: str) -> str:
    # The prefix keeps a stored hash from ever being replayed as a bearer token.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_session(days: int, now: Optional[datetime] = None) -> IssuedSession:
    """New bearer token for a terminal or console login; only token_hash is persisted."""
    token = secrets.token_urlsafe(32)
    started = now or datetime.now(timezone.utc)
    return IssuedSession(token, hash_session_token(token), started + timedelta(days=max(1, int(days))))
