import pytest

from pos_agent.local_store import LocalStore, LocalStoreError


@pytest.fixture
def store(tmp_path):
    s = LocalStore(str(tmp_path / "pos.sqlite"))
    s.init_db()
    s.upsert_product({"id": "cola", "name": "Cola", "price": 50, "stock_level": 10})
    s.upsert_product({"id": "bun", "name": "Bun", "price": 10, "stock_level": 20})
    s.upsert_product({"id": "burger", "name": "Burger Combo", "price": 100, "ingredients": [{"product_id": "bun", "quantity": 2}]})
    s.upsert_product({"id": "delivery", "name": "Delivery", "price": 30, "type": "SERVICE"})
    return s


def _movements(store):
    with store.connect() as conn:
        return [dict(r) for r in conn.execute("SELECT * FROM stock_movements ORDER BY reason, product_id").fetchall()]


def test_init_db_is_idempotent(store):
    store.init_db()
    assert store.pending_counts() == {
        "customers": 0,
        "sales": 0,
        "shifts": 0,
        "cash_transactions": 0,
        "stock_movements": 0,
    }


def test_settings_roundtrip(store):
    assert store.get_setting("last_sync", "never") == "never"
    store.set_setting("last_sync", {"at": "2024-05-01"})
    assert store.get_setting("last_sync") == {"at": "2024-05-01"}


def test_record_sale_assigns_sequential_invoice_numbers(store):
    first = store.record_sale([{"product_id": "cola", "quantity": 1}], "cash")
    second = store.record_sale([{"product_id": "cola", "quantity": 1}], "CARD")
    assert first["invoice_number"] == "000001"
    assert second["invoice_number"] == "000002"
    assert first["id"] != second["id"]


def test_record_sale_writes_retail_movements_and_decrements_stock(store):
    sale = store.record_sale([{"product_id": "cola", "quantity": 2}, {"product_id": "delivery", "quantity": 1}], "CASH")
    assert sale["total_amount"] == 130.0
    movements = _movements(store)
    assert len(movements) == 1
    assert movements[0]["product_id"] == "cola"
    assert movements[0]["quantity_change"] == -2
    assert movements[0]["type"] == "SALE"
    assert movements[0]["reason"] == "Sale"
    assert movements[0]["reference_id"] == sale["id"]
    assert store.get_product("cola")["stock_level"] == 8


def test_composite_sale_expands_into_ingredients(store):
    store.record_sale([{"product_id": "burger", "quantity": 3}], "CARD")
    movements = _movements(store)
    assert [(m["product_id"], m["quantity_change"]) for m in movements] == [("bun", -6)]
    assert movements[0]["reason"] == "Sold via Composite: Burger Combo (Qty: 3)"
    assert store.get_product("bun")["stock_level"] == 14


def test_inclusive_tax_splits_the_gross_amount(store):
    sale = store.record_sale([{"product_id": "cola", "quantity": 2}], "CASH", tax_rate=0.25)
    rows = store.list_unsynced("sales", 10)
    assert sale["total_amount"] == 100.0
    assert rows[0]["subtotal_amount"] == 80.0
    assert rows[0]["tax_amount"] == 20.0


def test_exclusive_tax_and_discount(store):
    sale = store.record_sale([{"product_id": "cola", "quantity": 2}], "CASH", tax_rate=0.1, tax_inclusive=False, discount_amount=5)
    assert sale["total_amount"] == 105.0


def test_sale_updates_customer_stats(store):
    cid = store.upsert_customer({"id": "c1", "name": "Ann"})
    store.mark_synced("customers", [cid])
    store.record_sale([{"product_id": "cola", "quantity": 1}], "CARD", customer_id=cid)
    rows = store.list_unsynced("customers", 10)
    assert len(rows) == 1
    assert rows[0]["total_spent"] == 50.0
    assert rows[0]["last_visit"] is not None


def test_failed_sale_leaves_nothing_behind(store):
    with pytest.raises(LocalStoreError):
        store.record_sale([{"product_id": "cola", "quantity": 1}, {"product_id": "missing", "quantity": 1}], "CASH")
    assert store.pending_counts()["sales"] == 0
    assert store.pending_counts()["stock_movements"] == 0
    assert store.get_product("cola")["stock_level"] == 10


def test_record_sale_rejects_unknown_payment_method(store):
    with pytest.raises(LocalStoreError):
        store.record_sale([{"product_id": "cola", "quantity": 1}], "BARTER")


def test_only_one_open_shift(store):
    store.open_shift(100)
    with pytest.raises(LocalStoreError):
        store.open_shift(50)


def test_cash_transaction_requires_open_shift(store):
    with pytest.raises(LocalStoreError):
        store.add_cash_transaction("PAY_IN", 10, "change")


def test_cash_transaction_rejects_non_positive_amount(store):
    store.open_shift(100)
    with pytest.raises(LocalStoreError):
        store.add_cash_transaction("PAY_OUT", 0, "supplies")


def test_running_expected_cash_tracks_cash_activity(store):
    shift = store.open_shift(100)
    store.record_sale([{"product_id": "cola", "quantity": 1}], "CASH")
    store.record_sale([{"product_id": "cola", "quantity": 1}], "CARD")
    store.add_cash_transaction("PAY_OUT", 20, "supplies")
    row = store.get_open_shift()
    assert row["id"] == shift["id"]
    assert row["expected_cash"] == 130.0


def test_close_shift_recomputes_expected_cash_and_variance(store):
    store.open_shift(100)
    store.record_sale([{"product_id": "cola", "quantity": 1}], "CASH")
    store.record_sale([{"product_id": "cola", "quantity": 1}], "CARD")
    store.add_cash_transaction("PAY_IN", 20, "float top-up")
    store.add_cash_transaction("PAY_OUT", 5, "supplies")
    store.add_cash_transaction("DROP", 10, "safe drop")
    closed = store.close_shift(150, closed_by="cashier")
    assert closed["status"] == "CLOSED"
    assert closed["end_time"]
    assert closed["expected_cash"] == 155.0
    assert closed["actual_cash"] == 150.0
    assert closed["variance"] == -5.0
    assert store.get_open_shift() is None


def test_close_shift_without_open_shift(store):
    with pytest.raises(LocalStoreError):
        store.close_shift(0)


def test_record_stock_movement_adjusts_level(store):
    store.record_stock_movement("cola", "purchase", 5, reason="delivery")
    assert store.get_product("cola")["stock_level"] == 15
    with pytest.raises(LocalStoreError):
        store.record_stock_movement("cola", "ADJUSTMENT", 0)
    with pytest.raises(LocalStoreError):
        store.record_stock_movement("ghost", "ADJUSTMENT", 1)


def test_mutation_resets_synced_flag(store):
    store.open_shift(100)
    shift = store.get_open_shift()
    store.mark_synced("shifts", [shift["id"]])
    assert store.pending_counts()["shifts"] == 0
    store.add_cash_transaction("PAY_IN", 5, "coins")
    assert store.pending_counts()["shifts"] == 1


def test_list_unsynced_respects_ids_and_limit(store):
    a = store.record_sale([{"product_id": "cola", "quantity": 1}], "CASH")
    b = store.record_sale([{"product_id": "cola", "quantity": 1}], "CASH")
    assert [r["id"] for r in store.list_unsynced("sales", 10, ids=[b["id"]])] == [b["id"]]
    assert store.list_unsynced("sales", 10, ids=[]) == []
    assert len(store.list_unsynced("sales", 1)) == 1
    rows = store.list_unsynced("sales", 10)
    assert {r["id"] for r in rows} == {a["id"], b["id"]}
    assert rows[0]["items"][0]["product_id"] == "cola"


def test_mark_synced_counts_rows(store):
    sale = store.record_sale([{"product_id": "cola", "quantity": 1}], "CASH")
    assert store.mark_synced("sales", [sale["id"], "unknown"]) == 1
    assert store.mark_synced("sales", []) == 0
    assert store.pending_counts()["sales"] == 0


def test_mark_synced_skips_rows_changed_since_they_were_sent(store):
    shift = store.open_shift(100)
    sent_version = store.list_unsynced("shifts", 10)[0]["version"]
    store.add_cash_transaction("PAY_IN", 5, "coins")

    assert store.mark_synced("shifts", {shift["id"]: sent_version}) == 0
    row = store.list_unsynced("shifts", 10)[0]
    assert row["version"] == sent_version + 1
    assert store.mark_synced("shifts", {row["id"]: row["version"]}) == 1
    assert store.pending_counts()["shifts"] == 0


def test_rejected_rows_queue_behind_fresh_ones(store):
    old = store.record_stock_movement("cola", "ADJUSTMENT", 1)
    new = store.record_stock_movement("cola", "ADJUSTMENT", 2)

    assert store.record_sync_errors("stock_movements", {old: "product cola not found"}) == 1
    rows = store.list_unsynced("stock_movements", 10)
    assert [r["id"] for r in rows] == [new, old]
    assert rows[1]["sync_attempts"] == 1
    assert rows[1]["last_error"] == "product cola not found"
    assert [r["id"] for r in store.list_unsynced("stock_movements", 10, exclude={old})] == [new]


def test_local_change_clears_recorded_rejection(store):
    store.upsert_customer({"id": "c1", "name": "Ann"})
    store.record_sync_errors("customers", {"c1": "boom"})
    store.upsert_customer({"id": "c1", "name": "Ann B."})
    row = store.list_unsynced("customers", 10)[0]
    assert row["sync_attempts"] == 0
    assert row["last_error"] is None


def test_init_db_adds_sync_columns_to_an_older_file(tmp_path):
    path = str(tmp_path / "old.sqlite")
    old = LocalStore(path)
    with old.connect() as conn:
        conn.execute(
            """
            CREATE TABLE stock_movements (
              id TEXT PRIMARY KEY, product_id TEXT NOT NULL, type TEXT NOT NULL,
              quantity_change INTEGER NOT NULL, reason TEXT, reference_id TEXT,
              timestamp TEXT NOT NULL, synced INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.execute("INSERT INTO stock_movements (id, product_id, type, quantity_change, timestamp) VALUES ('m1', 'cola', 'ADJUSTMENT', 1, '2024-05-01T10:00:00Z')")

    old.init_db()

    row = old.list_unsynced("stock_movements", 10)[0]
    assert row["id"] == "m1"
    assert row["version"] == 0
    assert row["sync_attempts"] == 0
    assert old.mark_synced("stock_movements", {"m1": 0}) == 1
