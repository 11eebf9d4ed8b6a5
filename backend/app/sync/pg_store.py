from __future__ import annotations

import json
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

from psycopg import errors as pg_errors

from ..db import checkout_conn
from .store import UnitOfWork


_TERMINAL_COLS = "id, organization_id, counter, name, device_id, last_seen_at, recovered_at, created_at"


class PgUnitOfWork(UnitOfWork):
    """
    One Postgres transaction per packet.

    The connection is checked out of the pool on `begin()` and returned after
    `commit()` / `rollback()`. Savepoints use psycopg's nested
    `conn.transaction()` blocks.
    """

    retryable_errors = (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)

    def __init__(self, connection_factory=checkout_conn):
        self._connection_factory = connection_factory
        self._ctx = None
        self.conn = None
        self.cur = None

    def begin(self) -> None:
        self._ctx = self._connection_factory()
        self.conn = self._ctx.__enter__()
        self.cur = self.conn.cursor()

    def _release(self) -> None:
        ctx = self._ctx
        self._ctx = None
        if self.cur is not None:
            self.cur.close()
        self.cur = None
        self.conn = None
        if ctx is not None:
            ctx.__exit__(None, None, None)

    def commit(self) -> None:
        try:
            self.conn.commit()
        finally:
            self._release()

    def rollback(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.rollback()
        finally:
            self._release()

    @contextmanager
    def savepoint(self):
        with self.conn.transaction():
            yield

    def _one(self, sql: str, params: tuple) -> Optional[dict]:
        self.cur.execute(sql, params)
        row = self.cur.fetchone()
        return dict(row) if row else None

    # -- organizations / terminals -------------------------------------------

    def get_organization(self, organization_id: str, *, lock: bool = False) -> Optional[dict]:
        sql = "SELECT id, name, is_active FROM organizations WHERE id = %s"
        if lock:
            # Serializes counter assignment for terminals of this organization.
            sql += " FOR UPDATE"
        return self._one(sql, (organization_id,))

    def get_terminal(self, terminal_id: str) -> Optional[dict]:
        return self._one(f"SELECT {_TERMINAL_COLS} FROM terminals WHERE id = %s", (terminal_id,))

    def find_terminal_by_device(self, organization_id: str, device_id: str) -> Optional[dict]:
        return self._one(
            f"""
            SELECT {_TERMINAL_COLS}
            FROM terminals
            WHERE organization_id = %s AND device_id = %s
            ORDER BY counter
            LIMIT 1
            """,
            (organization_id, device_id),
        )

    def count_terminals(self, organization_id: str) -> int:
        row = self._one("SELECT COUNT(*) AS n FROM terminals WHERE organization_id = %s", (organization_id,))
        return int((row or {}).get("n") or 0)

    def insert_terminal(self, terminal_id, organization_id, counter, name, device_id=None, recovered=False) -> dict:
        return self._one(
            f"""
            INSERT INTO terminals (id, organization_id, counter, name, device_id, last_seen_at, recovered_at)
            VALUES (%s, %s, %s, %s, %s, now(), CASE WHEN %s THEN now() ELSE NULL END)
            RETURNING {_TERMINAL_COLS}
            """,
            (terminal_id, organization_id, counter, name, device_id, bool(recovered)),
        )

    def touch_terminal(self, terminal_id: str) -> None:
        self.cur.execute("UPDATE terminals SET last_seen_at = now() WHERE id = %s", (terminal_id,))

    def list_terminals(self, organization_id: str) -> list[dict]:
        self.cur.execute(
            f"SELECT {_TERMINAL_COLS} FROM terminals WHERE organization_id = %s ORDER BY counter",
            (organization_id,),
        )
        return [dict(r) for r in self.cur.fetchall()]

    # -- products ------------------------------------------------------------

    def get_product(self, product_id: str) -> Optional[dict]:
        return self._one(
            """
            SELECT id, organization_id, name, price, category, type, stock_level
            FROM products
            WHERE id = %s
            """,
            (product_id,),
        )

    def ensure_product_stub(self, product_id, organization_id, name, price, category, product_type) -> bool:
        row = self._one(
            """
            INSERT INTO products (id, organization_id, name, price, category, type, stock_level)
            VALUES (%s, %s, %s, %s, %s, %s, 0)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            (product_id, organization_id, name, price, category, product_type),
        )
        return row is not None

    def increment_stock_level(self, product_id: str, delta: int) -> None:
        self.cur.execute(
            "UPDATE products SET stock_level = stock_level + %s, updated_at = now() WHERE id = %s",
            (int(delta), product_id),
        )

    # -- customers -----------------------------------------------------------

    def upsert_customer(self, organization_id: str, customer: dict) -> bool:
        # The WHERE on the conflict branch keeps another organization's row untouched.
        row = self._one(
            """
            INSERT INTO customers
              (id, organization_id, name, type, phone, email, notes, total_spent,
               last_visit, birthdate, tin_number)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name,
                type = EXCLUDED.type,
                phone = EXCLUDED.phone,
                email = EXCLUDED.email,
                notes = EXCLUDED.notes,
                total_spent = EXCLUDED.total_spent,
                last_visit = EXCLUDED.last_visit,
                birthdate = EXCLUDED.birthdate,
                tin_number = EXCLUDED.tin_number,
                updated_at = now()
            WHERE customers.organization_id = EXCLUDED.organization_id
            RETURNING id
            """,
            (
                customer["id"],
                organization_id,
                customer["name"],
                customer.get("type") or "REGULAR",
                customer.get("phone"),
                customer.get("email"),
                customer.get("notes"),
                customer.get("total_spent") or Decimal("0"),
                customer.get("last_visit"),
                customer.get("birthdate"),
                customer.get("tin_number"),
            ),
        )
        return row is not None

    # -- sales ---------------------------------------------------------------

    def sale_exists(self, sale_id: str) -> bool:
        return self._one("SELECT 1 AS ok FROM sales WHERE id = %s", (sale_id,)) is not None

    def insert_sale(self, organization_id: str, terminal_id: str, sale: dict, items: list[dict]) -> bool:
        discount_info = sale.get("discount_info")
        row = self._one(
            """
            INSERT INTO sales
              (id, organization_id, terminal_id, invoice_number, order_number,
               subtotal_amount, tax_amount, tax_name, tax_rate_snapshot, is_tax_inclusive,
               service_charge_amount, discount_name, discount_amount, discount_info,
               total_amount, payment_method, status, timestamp,
               customer_id, customer_name, notes)
            VALUES
              (%s, %s, %s, %s, %s,
               %s, %s, %s, %s, %s,
               %s, %s, %s, %s::jsonb,
               %s, %s, %s, %s,
               %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            (
                sale["id"],
                organization_id,
                terminal_id,
                sale.get("invoice_number"),
                sale.get("order_number"),
                sale.get("subtotal_amount") or Decimal("0"),
                sale.get("tax_amount") or Decimal("0"),
                sale.get("tax_name"),
                sale.get("tax_rate_snapshot"),
                bool(sale.get("is_tax_inclusive", True)),
                sale.get("service_charge_amount") or Decimal("0"),
                sale.get("discount_name"),
                sale.get("discount_amount"),
                json.dumps(discount_info, default=str) if discount_info is not None else None,
                sale["total_amount"],
                sale["payment_method"],
                sale.get("status") or "COMPLETED",
                sale["timestamp"],
                sale.get("customer_id"),
                sale.get("customer_name"),
                sale.get("notes"),
            ),
        )
        if row is None:
            return False
        for line_no, it in enumerate(items, start=1):
            self.cur.execute(
                """
                INSERT INTO sale_items (sale_id, line_no, product_id, quantity, price_at_sale, name)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (sale["id"], line_no, it["product_id"], it["quantity"], it["price_at_sale"], it["name"]),
            )
        return True

    # -- shifts / cash ---------------------------------------------------------

    def get_shift(self, shift_id: str) -> Optional[dict]:
        return self._one(
            "SELECT id, organization_id, terminal_id, status FROM work_shifts WHERE id = %s",
            (shift_id,),
        )

    def upsert_shift(self, organization_id: str, terminal_id: str, shift: dict) -> bool:
        row = self._one(
            """
            INSERT INTO work_shifts
              (id, organization_id, terminal_id, status, start_time, end_time,
               opening_float, expected_cash, actual_cash, variance, notes, closed_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET status = EXCLUDED.status,
                start_time = EXCLUDED.start_time,
                end_time = EXCLUDED.end_time,
                opening_float = EXCLUDED.opening_float,
                expected_cash = EXCLUDED.expected_cash,
                actual_cash = EXCLUDED.actual_cash,
                variance = EXCLUDED.variance,
                notes = EXCLUDED.notes,
                closed_by = EXCLUDED.closed_by,
                updated_at = now()
            WHERE work_shifts.organization_id = EXCLUDED.organization_id
            RETURNING id
            """,
            (
                shift["id"],
                organization_id,
                terminal_id,
                shift.get("status") or "OPEN",
                shift["start_time"],
                shift.get("end_time"),
                shift["opening_float"],
                shift.get("expected_cash") or Decimal("0"),
                shift.get("actual_cash"),
                shift.get("variance"),
                shift.get("notes"),
                shift.get("closed_by"),
            ),
        )
        return row is not None

    def insert_cash_transaction(self, organization_id: str, txn: dict) -> bool:
        row = self._one(
            """
            INSERT INTO cash_transactions
              (id, organization_id, shift_id, type, amount, reason, timestamp, performed_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            (
                txn["id"],
                organization_id,
                txn["shift_id"],
                txn["type"],
                txn["amount"],
                txn["reason"],
                txn["timestamp"],
                txn.get("performed_by"),
            ),
        )
        return row is not None

    # -- stock ---------------------------------------------------------------

    def stock_movement_exists(self, movement_id: str) -> bool:
        return self._one("SELECT 1 AS ok FROM stock_movements WHERE id = %s", (movement_id,)) is not None

    def insert_stock_movement(self, organization_id: str, terminal_id: str, movement: dict) -> bool:
        row = self._one(
            """
            INSERT INTO stock_movements
              (id, organization_id, terminal_id, product_id, type, quantity_change,
               reason, timestamp, reference_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            (
                movement["id"],
                organization_id,
                terminal_id,
                movement["product_id"],
                movement["type"],
                int(movement["quantity_change"]),
                movement.get("reason"),
                movement["timestamp"],
                movement.get("reference_id"),
            ),
        )
        return row is not None
