import pytest

from state_store import RecordStore, StoreError


def test_insert_select_and_filters(store, add_txn):
    add_txn(id="t1", transaction_date="2024-06-13")
    add_txn(id="t2", transaction_date="2024-06-15")
    add_txn(id="t3", transaction_date="2024-06-15", receipt_url="https://img/1.jpg")

    rows = (
        store.table("transactions")
        .select("id, transaction_date")
        .eq("user_id", "user-123")
        .is_null("receipt_url")
        .gte("transaction_date", "2024-06-14")
        .lte("transaction_date", "2024-06-16")
        .execute()
    )
    assert [r["id"] for r in rows] == ["t2"]


def test_update_returns_rowcount(store, add_txn):
    add_txn(id="t1")
    assert store.table("transactions").update({"category_id": "c1"}).eq("id", "t1").execute() == 1
    assert store.table("transactions").update({"category_id": "c1"}).eq("id", "nope").execute() == 0


def test_delete(store, add_txn):
    add_txn(id="t1")
    add_txn(id="t2")
    assert store.table("transactions").delete().eq("id", "t1").execute() == 1
    assert [r["id"] for r in store.table("transactions").select("id").execute()] == ["t2"]


def test_insert_generates_text_ids(store):
    ids = store.table("receipts").insert([{"user_id": "u", "line_items": [{"desc": "x"}]}])
    assert len(ids[0]) == 32
    row = store.table("receipts").select("*").eq("id", ids[0]).maybe_single()
    assert row["line_items"] == [{"desc": "x"}]


def test_upsert_null_safe(store):
    row = {"user_id": None, "vendor_pattern": "tesco", "category": "Groceries"}
    store.upsert("vendor_cache", row, on_conflict=["vendor_pattern", "user_id"])
    store.upsert("vendor_cache", dict(row, category="Supplies"), on_conflict=["vendor_pattern", "user_id"])
    rows = store.table("vendor_cache").select("*").execute()
    assert len(rows) == 1
    assert rows[0]["category"] == "Supplies"


def test_sqlite_errors_raise_store_error(store):
    with pytest.raises(StoreError):
        store.table("no_such_table").select("*").execute()


def test_invalid_identifier_rejected(store):
    with pytest.raises(StoreError):
        store.table("transactions").select("id; DROP TABLE x").execute()


def test_audit_log(store):
    store.write_audit("INFO", "system", "link", ["t1", "r1"], 1.0, "linked")
    rows = store.read_audit("link")
    assert rows[0]["target_ids"] == ["t1", "r1"]
    assert rows[0]["result"] == "linked"


def test_db_path_follows_env(tmp_path, monkeypatch):
    monkeypatch.setenv("LEDGER_STATE_DB", str(tmp_path / "a.db"))
    s = RecordStore()
    s.init_db()
    assert (tmp_path / "a.db").exists()


def test_upsert_counter_inserts_then_increments(store):
    row = {"user_id": "u1", "vendor_pattern": "maxol", "corrected_category": "Motor", "transaction_count": 1}
    store.upsert_counter("user_corrections", row, ["user_id", "vendor_pattern"], "transaction_count")
    store.upsert_counter(
        "user_corrections",
        dict(row, corrected_category="Fuel"),
        ["user_id", "vendor_pattern"],
        "transaction_count",
    )

    rows = store.table("user_corrections").select("*").execute()
    assert len(rows) == 1
    assert rows[0]["transaction_count"] == 2
    assert rows[0]["corrected_category"] == "Fuel"
