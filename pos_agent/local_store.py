"""
Local transactional store (SQLite) for one POS terminal.

Every local write happens here and never waits on the network. Rows that the
server must learn about carry `synced`; any mutation resets it to 0 and only a
server acknowledgement (see transport.apply_ack) sets it back to 1.
"""
import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sqlite_schema.sql')

# Packet array name -> local table.
SYNC_TABLES = {
    'customers': 'customers',
    'sales': 'sales',
    'shifts': 'work_shifts',
    'cash_transactions': 'cash_transactions',
    'stock_movements': 'stock_movements',
}

CASH_TX_SIGNS = {'PAY_IN': 1, 'PAY_OUT': -1, 'DROP': -1}

# SET clause for any local change to a syncable row: pending again, new version,
# earlier rejections no longer apply.
_DIRTY = "synced = 0, version = version + 1, sync_attempts = 0, last_error = NULL"

# Columns added after the first release; older local files get them on init_db.
_SYNC_COLUMNS = {
    "version": "INTEGER NOT NULL DEFAULT 0",
    "sync_attempts": "INTEGER NOT NULL DEFAULT 0",
    "last_error": "TEXT",
}


class LocalStoreError(ValueError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _money(v) -> float:
    return round(float(v or 0), 2)


class LocalStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        if not os.path.exists(SCHEMA_PATH):
            raise RuntimeError(f"Missing schema file: {SCHEMA_PATH}")
        with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
            schema = f.read()
        with self.connect() as conn:
            conn.executescript(schema)
            for table in SYNC_TABLES.values():
                cols = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
                for col, ddl in _SYNC_COLUMNS.items():
                    if col not in cols:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}")

    # -- settings ------------------------------------------------------------

    def get_setting(self, key: str, default=None):
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            if not row or row['value'] is None:
                return default
            return json.loads(row['value'])

    def set_setting(self, key: str, value):
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  value=excluded.value,
                  updated_at=excluded.updated_at
                """,
                (key, json.dumps(value), _now()),
            )

    # -- catalog / customers -------------------------------------------------

    def upsert_product(self, product: dict):
        ingredients = product.get('ingredients') or []
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO products (id, name, price, category, type, stock_level, is_composite, ingredients_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  price=excluded.price,
                  category=excluded.category,
                  type=excluded.type,
                  stock_level=excluded.stock_level,
                  is_composite=excluded.is_composite,
                  ingredients_json=excluded.ingredients_json,
                  updated_at=excluded.updated_at
                """,
                (
                    product['id'],
                    product['name'],
                    _money(product.get('price')),
                    product.get('category') or 'Uncategorized',
                    (product.get('type') or 'RETAIL').upper(),
                    int(product.get('stock_level') or 0),
                    1 if ingredients else 0,
                    json.dumps(ingredients) if ingredients else None,
                    _now(),
                ),
            )

    def get_product(self, product_id: str) -> Optional[dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
            return dict(row) if row else None

    def upsert_customer(self, customer: dict) -> str:
        customer_id = customer.get('id') or str(uuid.uuid4())
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, name, type, phone, email, notes, total_spent, last_visit, birthdate, tin_number, synced, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  type=excluded.type,
                  phone=excluded.phone,
                  email=excluded.email,
                  notes=excluded.notes,
                  birthdate=excluded.birthdate,
                  tin_number=excluded.tin_number,
                  synced=0,
                  version=version + 1,
                  sync_attempts=0,
                  last_error=NULL,
                  updated_at=excluded.updated_at
                """,
                (
                    customer_id,
                    customer['name'],
                    (customer.get('type') or 'REGULAR').upper(),
                    customer.get('phone'),
                    customer.get('email'),
                    customer.get('notes'),
                    _money(customer.get('total_spent')),
                    customer.get('last_visit'),
                    customer.get('birthdate'),
                    customer.get('tin_number'),
                    _now(),
                ),
            )
        return customer_id

    # -- sales ---------------------------------------------------------------

    def _next_invoice_number(self, conn) -> str:
        row = conn.execute("SELECT MAX(CAST(invoice_number AS INTEGER)) AS n FROM sales").fetchone()
        return str(int(row['n'] or 0) + 1).zfill(6)

    def record_sale(
        self,
        lines: list,
        payment_method: str,
        customer_id: Optional[str] = None,
        discount_amount: float = 0,
        discount_name: Optional[str] = None,
        tax_rate: float = 0,
        tax_name: Optional[str] = None,
        tax_inclusive: bool = True,
        service_charge_rate: float = 0,
        notes: Optional[str] = None,
    ) -> dict:
        """
        Complete a sale locally in one SQLite transaction: header + items,
        SALE stock movements for retail products (composites expand into their
        ingredients), customer stats and the open shift's running cash.

        `lines` is a list of {"product_id", "quantity", "price"?}.
        """
        if not lines:
            raise LocalStoreError("sale has no items")
        payment_method = (payment_method or '').strip().upper()
        if payment_method not in {'CASH', 'CARD', 'ONLINE'}:
            raise LocalStoreError(f"unsupported payment method: {payment_method}")

        sale_id = str(uuid.uuid4())
        ts = _now()
        with self.connect() as conn:
            items = []
            movements = []
            gross = 0.0
            for ln in lines:
                qty = int(ln.get('quantity') or 0)
                if qty <= 0:
                    raise LocalStoreError("quantity must be positive")
                prod = conn.execute("SELECT * FROM products WHERE id = ?", (ln['product_id'],)).fetchone()
                if not prod:
                    raise LocalStoreError(f"unknown product: {ln['product_id']}")
                price = _money(ln['price'] if ln.get('price') is not None else prod['price'])
                gross += price * qty
                items.append({
                    'product_id': prod['id'],
                    'quantity': qty,
                    'price_at_sale': price,
                    'name': prod['name'],
                    'type': prod['type'],
                    'category': prod['category'],
                })
                if prod['type'] != 'RETAIL':
                    continue
                ingredients = json.loads(prod['ingredients_json']) if prod['is_composite'] and prod['ingredients_json'] else []
                if ingredients:
                    for ing in ingredients:
                        movements.append({
                            'product_id': ing['product_id'],
                            'quantity_change': -int(ing['quantity']) * qty,
                            'reason': f"Sold via Composite: {prod['name']} (Qty: {qty})",
                        })
                else:
                    movements.append({'product_id': prod['id'], 'quantity_change': -qty, 'reason': 'Sale'})

            rate = float(tax_rate or 0)
            if tax_inclusive and rate:
                subtotal = gross / (1 + rate)
            else:
                subtotal = gross
            tax = (gross - subtotal) if tax_inclusive else subtotal * rate
            service = subtotal * float(service_charge_rate or 0)
            discount = _money(discount_amount)
            total = _money(subtotal + tax + service - discount)
            if total < 0:
                raise LocalStoreError("discount exceeds sale total")

            customer_name = None
            if customer_id:
                cust = conn.execute("SELECT name FROM customers WHERE id = ?", (customer_id,)).fetchone()
                if not cust:
                    raise LocalStoreError(f"unknown customer: {customer_id}")
                customer_name = cust['name']

            invoice_number = self._next_invoice_number(conn)
            conn.execute(
                """
                INSERT INTO sales (id, invoice_number, order_number, subtotal_amount, tax_amount, tax_name, tax_rate_snapshot,
                                   is_tax_inclusive, service_charge_amount, discount_name, discount_amount,
                                   total_amount, payment_method, status, timestamp, customer_id, customer_name, notes, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'COMPLETED', ?, ?, ?, ?, 0)
                """,
                (
                    sale_id,
                    invoice_number,
                    f"ORD-{invoice_number}",
                    _money(subtotal),
                    _money(tax),
                    tax_name,
                    rate if rate else None,
                    1 if tax_inclusive else 0,
                    _money(service),
                    discount_name,
                    discount if discount > 0 else None,
                    total,
                    payment_method,
                    ts,
                    customer_id,
                    customer_name or 'Walk-in Customer',
                    notes,
                ),
            )
            for line_no, it in enumerate(items, start=1):
                conn.execute(
                    """
                    INSERT INTO sale_items (sale_id, line_no, product_id, quantity, price_at_sale, name, type, category)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (sale_id, line_no, it['product_id'], it['quantity'], it['price_at_sale'], it['name'], it['type'], it['category']),
                )
            movement_ids = []
            for mv in movements:
                movement_ids.append(self._insert_movement(conn, mv['product_id'], 'SALE', mv['quantity_change'], mv['reason'], sale_id, ts))

            if customer_id:
                conn.execute(
                    f"""
                    UPDATE customers
                    SET total_spent = total_spent + ?, last_visit = ?, updated_at = ?, {_DIRTY}
                    WHERE id = ?
                    """,
                    (total, ts, ts, customer_id),
                )

            if payment_method == 'CASH':
                conn.execute(
                    f"UPDATE work_shifts SET expected_cash = expected_cash + ?, {_DIRTY} WHERE status = 'OPEN'",
                    (total,),
                )

        return {
            'id': sale_id,
            'invoice_number': invoice_number,
            'total_amount': total,
            'items': items,
            'stock_movement_ids': movement_ids,
        }

    # -- stock ---------------------------------------------------------------

    def _insert_movement(self, conn, product_id, movement_type, quantity_change, reason, reference_id, ts) -> str:
        movement_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO stock_movements (id, product_id, type, quantity_change, reason, timestamp, reference_id, synced)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (movement_id, product_id, movement_type, int(quantity_change), reason, ts, reference_id),
        )
        conn.execute(
            "UPDATE products SET stock_level = stock_level + ?, updated_at = ? WHERE id = ?",
            (int(quantity_change), ts, product_id),
        )
        return movement_id

    def record_stock_movement(self, product_id: str, movement_type: str, quantity_change: int, reason: Optional[str] = None, reference_id: Optional[str] = None) -> str:
        movement_type = (movement_type or '').strip().upper()
        if movement_type not in {'PURCHASE', 'SALE', 'ADJUSTMENT', 'RETURN'}:
            raise LocalStoreError(f"unsupported movement type: {movement_type}")
        if int(quantity_change) == 0:
            raise LocalStoreError("quantity_change must be non-zero")
        with self.connect() as conn:
            if not conn.execute("SELECT 1 FROM products WHERE id = ?", (product_id,)).fetchone():
                raise LocalStoreError(f"unknown product: {product_id}")
            return self._insert_movement(conn, product_id, movement_type, quantity_change, reason, reference_id, _now())

    # -- shifts / cash ---------------------------------------------------------

    def get_open_shift(self) -> Optional[dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM work_shifts WHERE status = 'OPEN' ORDER BY start_time DESC LIMIT 1").fetchone()
            return dict(row) if row else None

    def open_shift(self, opening_float: float, notes: Optional[str] = None) -> dict:
        opening = _money(opening_float)
        if opening < 0:
            raise LocalStoreError("opening float must be >= 0")
        with self.connect() as conn:
            if conn.execute("SELECT 1 FROM work_shifts WHERE status = 'OPEN'").fetchone():
                raise LocalStoreError("a shift is already open")
            shift_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO work_shifts (id, status, start_time, opening_float, expected_cash, notes, synced)
                VALUES (?, 'OPEN', ?, ?, ?, ?, 0)
                """,
                (shift_id, _now(), opening, opening, notes),
            )
            row = conn.execute("SELECT * FROM work_shifts WHERE id = ?", (shift_id,)).fetchone()
            return dict(row)

    def add_cash_transaction(self, txn_type: str, amount: float, reason: str, performed_by: Optional[str] = None) -> dict:
        txn_type = (txn_type or '').strip().upper()
        if txn_type not in CASH_TX_SIGNS:
            raise LocalStoreError(f"unsupported cash transaction type: {txn_type}")
        amount = _money(amount)
        if amount <= 0:
            raise LocalStoreError("amount must be > 0")
        if not (reason or '').strip():
            raise LocalStoreError("reason is required")
        with self.connect() as conn:
            shift = conn.execute("SELECT id FROM work_shifts WHERE status = 'OPEN'").fetchone()
            if not shift:
                raise LocalStoreError("no open shift")
            txn_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO cash_transactions (id, shift_id, type, amount, reason, timestamp, performed_by, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (txn_id, shift['id'], txn_type, amount, reason.strip(), _now(), performed_by),
            )
            conn.execute(
                f"UPDATE work_shifts SET expected_cash = expected_cash + ?, {_DIRTY} WHERE id = ?",
                (CASH_TX_SIGNS[txn_type] * amount, shift['id']),
            )
            return {'id': txn_id, 'shift_id': shift['id'], 'type': txn_type, 'amount': amount}

    def _ledger_expected_cash(self, conn, shift) -> float:
        cash_sales = conn.execute(
            """
            SELECT COALESCE(SUM(total_amount), 0) AS total
            FROM sales
            WHERE payment_method = 'CASH' AND status = 'COMPLETED' AND timestamp >= ?
            """,
            (shift['start_time'],),
        ).fetchone()['total']
        movements = 0.0
        for r in conn.execute("SELECT type, amount FROM cash_transactions WHERE shift_id = ?", (shift['id'],)).fetchall():
            movements += CASH_TX_SIGNS.get(r['type'], 0) * float(r['amount'])
        return _money(float(shift['opening_float']) + float(cash_sales) + movements)

    def close_shift(self, actual_cash: float, notes: Optional[str] = None, closed_by: Optional[str] = None) -> dict:
        """Expected cash is recomputed from the ledger, not taken from the running total."""
        actual = _money(actual_cash)
        with self.connect() as conn:
            shift = conn.execute("SELECT * FROM work_shifts WHERE status = 'OPEN' ORDER BY start_time DESC LIMIT 1").fetchone()
            if not shift:
                raise LocalStoreError("no open shift")
            expected = self._ledger_expected_cash(conn, shift)
            conn.execute(
                f"""
                UPDATE work_shifts
                SET status = 'CLOSED', end_time = ?, expected_cash = ?, actual_cash = ?, variance = ?,
                    notes = COALESCE(?, notes), closed_by = ?, {_DIRTY}
                WHERE id = ?
                """,
                (_now(), expected, actual, _money(actual - expected), notes, closed_by, shift['id']),
            )
            row = conn.execute("SELECT * FROM work_shifts WHERE id = ?", (shift['id'],)).fetchone()
            return dict(row)

    # -- sync bookkeeping ------------------------------------------------------

    def list_unsynced(self, key: str, limit: int, ids=None, exclude=None) -> list[dict]:
        """
        Pending rows of one packet array, oldest first, with rows the server
        already rejected queued behind fresh ones. `ids` restricts to a subset,
        `exclude` skips rows (e.g. rejected earlier in the same flush).
        """
        table = SYNC_TABLES[key]
        order = {'sales': 'timestamp', 'work_shifts': 'start_time', 'cash_transactions': 'timestamp', 'stock_movements': 'timestamp'}.get(table, 'updated_at')
        sql = f"SELECT * FROM {table} WHERE synced = 0"
        params: list = []
        if ids is not None:
            ids = list(ids)
            if not ids:
                return []
            sql += " AND id IN (%s)" % ",".join(["?"] * len(ids))
            params.extend(ids)
        exclude = list(exclude or [])
        if exclude:
            sql += " AND id NOT IN (%s)" % ",".join(["?"] * len(exclude))
            params.extend(exclude)
        sql += f" ORDER BY sync_attempts, {order} LIMIT ?"
        params.append(max(0, int(limit)))
        with self.connect() as conn:
            rows = [dict(r) for r in conn.execute(sql, tuple(params)).fetchall()]
            if table == 'sales':
                for row in rows:
                    row['items'] = [
                        dict(i)
                        for i in conn.execute("SELECT * FROM sale_items WHERE sale_id = ? ORDER BY line_no", (row['id'],)).fetchall()
                    ]
            return rows

    def mark_synced(self, key: str, acked) -> int:
        """
        Flip acknowledged rows to synced. `acked` maps id -> the version that
        was sent; a row changed since then keeps synced = 0 so its newer state
        goes out with the next packet. A plain list of ids skips that check.
        """
        if not acked:
            return 0
        table = SYNC_TABLES[key]
        with self.connect() as conn:
            if isinstance(acked, dict):
                marked = 0
                for row_id, version in acked.items():
                    cur = conn.execute(
                        f"UPDATE {table} SET synced = 1 WHERE id = ? AND version = ? AND synced = 0",
                        (row_id, int(version or 0)),
                    )
                    marked += cur.rowcount
                return marked
            ids = list(acked)
            cur = conn.execute(
                f"UPDATE {table} SET synced = 1 WHERE id IN (%s)" % ",".join(["?"] * len(ids)),
                tuple(ids),
            )
            return cur.rowcount

    def record_sync_errors(self, key: str, errors: dict) -> int:
        """Remember server rejections ({id: error}); the rows stay pending."""
        if not errors:
            return 0
        table = SYNC_TABLES[key]
        with self.connect() as conn:
            n = 0
            for row_id, error in errors.items():
                cur = conn.execute(
                    f"UPDATE {table} SET sync_attempts = sync_attempts + 1, last_error = ? WHERE id = ? AND synced = 0",
                    (error, row_id),
                )
                n += cur.rowcount
            return n

    def pending_counts(self) -> dict:
        out = {}
        with self.connect() as conn:
            for key, table in SYNC_TABLES.items():
                row = conn.execute(f"SELECT COUNT(1) AS n FROM {table} WHERE synced = 0").fetchone()
                out[key] = int(row['n'] or 0)
        return out
