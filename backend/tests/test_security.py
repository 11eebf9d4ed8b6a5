import hashlib
from datetime import datetime, timedelta, timezone

from backend.app.security import (
    hash_password,
    hash_session_token,
    issue_session,
    is_legacy_hash,
    needs_rehash,
    verify_password,
)


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10
    assert h != hash_session_token("abd")


def test_password_hash_roundtrip():
    h = hash_password("s3cret")
    assert verify_password("s3cret", h) is True
    assert verify_password("wrong", h) is False
    assert needs_rehash(h) is False


def test_legacy_sha256_hash_verifies_and_needs_rehash():
    legacy = hashlib.sha256(b"s3cret").hexdigest()
    assert is_legacy_hash(legacy) is True
    assert verify_password("s3cret", legacy) is True
    assert verify_password("nope", legacy) is False
    assert needs_rehash(legacy) is True


def test_missing_hash_never_verifies():
    assert verify_password("anything", None) is False
    assert verify_password("anything", "") is False


def test_issue_session_persists_only_the_hash():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    session = issue_session(7, now=now)
    assert session.token_hash == hash_session_token(session.token)
    assert session.token not in session.token_hash
    assert session.expires_at == now + timedelta(days=7)
    assert issue_session(7).token != session.token
