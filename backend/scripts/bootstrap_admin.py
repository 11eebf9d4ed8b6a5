#!/usr/bin/env python3
import os
import secrets
import sys
import uuid

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    username = os.getenv("BOOTSTRAP_ADMIN_USERNAME", "admin").strip().lower()
    if not username:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_USERNAME is empty", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    # With an organization the user is that organization's ADMIN; without one it is the SUPER_ADMIN.
    org_id = (os.getenv("BOOTSTRAP_ORGANIZATION_ID") or "").strip()
    org_name = (os.getenv("BOOTSTRAP_ORGANIZATION_NAME") or "").strip() or org_id
    role = "ADMIN" if org_id else "SUPER_ADMIN"

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if org_id:
                    cur.execute(
                        """
                        INSERT INTO organizations (id, name)
                        VALUES (%s, %s)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        (org_id, org_name),
                    )

                cur.execute("SELECT id FROM users WHERE username = %s", (username,))
                if cur.fetchone():
                    # Idempotent: don't create duplicate users.
                    return 0

                cur.execute(
                    """
                    INSERT INTO users (id, username, hashed_password, role, organization_id, is_active)
                    VALUES (%s, %s, %s, %s, %s, true)
                    """,
                    (str(uuid.uuid4()), username, hash_password(password), role, org_id or None),
                )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"username: {username}")
    print(f"role: {role}")
    if org_id:
        print(f"organization_id: {org_id}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
