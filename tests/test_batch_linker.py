import threading
from unittest.mock import MagicMock

import pytest

import batch_linker
from batch_linker import (
    DEPENDENT_VIEWS,
    LinkConflictError,
    LinkError,
    bulk_link,
    claim_and_link,
    link_receipt_to_transaction,
    map_vat_type_to_rate,
    reconcile_links,
    recategorize_trip_expenses,
    run_batch,
)
from state_store import StoreError

IMAGE_URL = "https://storage.example.com/receipts/r1.jpg"


class FailingStore:
    """Wraps a real store; every query against fail_table raises StoreError."""

    def __init__(self, inner, fail_table):
        self.inner = inner
        self.fail_table = fail_table

    def table(self, name):
        if name == self.fail_table:
            raise StoreError("database is locked")
        return self.inner.table(name)

    def write_audit(self, *args, **kwargs):
        return self.inner.write_audit(*args, **kwargs)


@pytest.fixture
def add_receipt(store):
    def _add(**overrides):
        row = {"user_id": "user-123", "image_url": IMAGE_URL, "total_amount": 42.5}
        row.update(overrides)
        return store.table("receipts").insert(row)[0]

    return _add


def _txn(store, txn_id):
    return store.table("transactions").select("*").eq("id", txn_id).maybe_single()


def _receipt(store, receipt_id):
    return store.table("receipts").select("*").eq("id", receipt_id).maybe_single()


# --- link_receipt_to_transaction ---

def test_link_sets_both_sides(store, add_txn, add_receipt):
    tx = add_txn()
    rc = add_receipt()
    link_receipt_to_transaction(store, rc, tx, IMAGE_URL, 7.95, 23)

    assert _receipt(store, rc)["transaction_id"] == tx
    row = _txn(store, tx)
    assert row["receipt_url"] == IMAGE_URL
    assert row["vat_amount"] == 7.95
    assert row["vat_rate"] == 23
    assert store.read_audit("link")[0]["target_ids"] == [tx, rc]


def test_link_keeps_existing_vat_when_receipt_has_none(store, add_txn, add_receipt):
    tx = add_txn(vat_amount=3.0, vat_rate=13.5)
    rc = add_receipt()
    link_receipt_to_transaction(store, rc, tx, IMAGE_URL)

    row = _txn(store, tx)
    assert row["vat_amount"] == 3.0
    assert row["vat_rate"] == 13.5


def test_link_receipt_write_failure(store, add_txn, add_receipt):
    tx = add_txn()
    rc = add_receipt()
    with pytest.raises(LinkError, match="^Failed to link receipt: database is locked"):
        link_receipt_to_transaction(FailingStore(store, "receipts"), rc, tx, IMAGE_URL)

    assert _txn(store, tx)["receipt_url"] is None
    assert store.read_audit("link_failed")[0]["error"] == "database is locked"


def test_link_transaction_failure_leaves_receipt_linked(store, add_txn, add_receipt):
    tx = add_txn()
    rc = add_receipt()
    with pytest.raises(LinkError, match="^Failed to update transaction: "):
        link_receipt_to_transaction(FailingStore(store, "transactions"), rc, tx, IMAGE_URL)

    # not rolled back
    assert _receipt(store, rc)["transaction_id"] == tx
    assert _txn(store, tx)["receipt_url"] is None

    assert reconcile_links(store, "user-123") == 1
    assert _txn(store, tx)["receipt_url"] == IMAGE_URL
    assert reconcile_links(store, "user-123") == 0


# --- claim_and_link ---

def test_claim_links_unlinked_transaction(store, add_txn, add_receipt):
    tx = add_txn()
    rc = add_receipt()
    claim_and_link(store, rc, tx, IMAGE_URL, 7.95, 23)

    assert _txn(store, tx)["receipt_url"] == IMAGE_URL
    assert _receipt(store, rc)["transaction_id"] == tx


def test_second_claim_on_same_transaction_conflicts(store, add_txn, add_receipt):
    tx = add_txn()
    first = add_receipt()
    second = add_receipt(image_url="https://storage.example.com/receipts/r2.jpg")
    claim_and_link(store, first, tx, IMAGE_URL)

    with pytest.raises(LinkConflictError):
        claim_and_link(store, second, tx, "https://storage.example.com/receipts/r2.jpg")

    assert _txn(store, tx)["receipt_url"] == IMAGE_URL
    assert _receipt(store, second)["transaction_id"] is None
    assert len(store.read_audit("claim_conflict")) == 1


def test_claim_released_when_receipt_write_fails(store, add_txn, add_receipt):
    tx = add_txn()
    rc = add_receipt()
    with pytest.raises(LinkError, match="^Failed to link receipt: "):
        claim_and_link(FailingStore(store, "receipts"), rc, tx, IMAGE_URL)

    assert _txn(store, tx)["receipt_url"] is None


def test_claim_store_error_on_transaction():
    store = MagicMock()
    store.table.side_effect = StoreError("disk I/O error")
    with pytest.raises(LinkError, match="Failed to update transaction: disk I/O error"):
        claim_and_link(store, "r1", "t1", IMAGE_URL)


# --- run_batch ---

def test_run_batch_counts_one_failure_without_stopping():
    seen = []

    def worker(n):
        seen.append(n)
        if n == 13:
            raise RuntimeError("simulated failure")
        return True

    progress = []
    result = run_batch(list(range(25)), worker, batch_size=10, delay=0, on_progress=progress.append)

    assert (result.total, result.updated, result.failed) == (25, 24, 1)
    assert sorted(seen) == list(range(25))
    assert progress == [40, 80, 100]


def test_run_batch_chunk_items_run_concurrently():
    # every worker in a chunk must be running before any can finish
    barrier = threading.Barrier(10, timeout=5)

    def worker(n):
        barrier.wait()
        return True

    result = run_batch(list(range(20)), worker, batch_size=10, delay=0)
    assert (result.total, result.updated, result.failed) == (20, 20, 0)


def test_run_batch_sleeps_between_chunks_only(monkeypatch):
    sleeps = []
    monkeypatch.setattr(batch_linker.time, "sleep", sleeps.append)

    result = run_batch(list(range(25)), lambda n: True, batch_size=10, delay=0.05)

    assert result.updated == 25
    assert sleeps == [0.05, 0.05]


def test_run_batch_falsy_return_is_failure():
    result = run_batch([1, 2, 3], lambda n: n != 2, delay=0)
    assert (result.total, result.updated, result.failed) == (3, 2, 1)


def test_run_batch_empty():
    result = run_batch([], lambda n: True, delay=0)
    assert (result.total, result.updated, result.failed) == (0, 0, 0)


def test_bulk_link_skips_bad_link(store, add_txn, add_receipt):
    links = []
    for _ in range(3):
        links.append({"receipt_id": add_receipt(), "transaction_id": add_txn(), "image_url": IMAGE_URL})
    links.append({"receipt_id": "r-missing", "transaction_id": "t-missing"})  # no image_url

    result = bulk_link(store, links, delay=0)
    assert (result.total, result.updated, result.failed) == (4, 3, 1)


# --- trip recategorisation ---

@pytest.mark.parametrize(
    "vat_type,rate",
    [
        ("Standard 23%", 23),
        ("Reduced 13.5%", 13.5),
        ("Second Reduced 9%", 9),
        ("Livestock 4.8%", 23),
        ("Zero", 0),
        ("Exempt", 0),
        (None, 23),
    ],
)
def test_map_vat_type_to_rate(vat_type, rate):
    assert map_vat_type_to_rate(vat_type) == rate


def test_recategorize_trip_expenses(store, add_txn):
    travel = store.table("categories").insert({"name": "Travel & Subsistence", "type": "expense"})[0]
    store.table("categories").insert({"name": "Materials", "type": "expense"})
    hotel = add_txn(description="HOTEL KILKENNY")
    taxi = add_txn(description="LOCAL TAXI")
    trips = [
        {
            "location": "Kilkenny",
            "start_date": "2024-06-10",
            "end_date": "2024-06-11",
            "transactions": [
                {"id": hotel, "expense_type": "accommodation"},
                {"id": taxi, "expense_type": "transport"},
                {"id": "does-not-exist", "expense_type": "subsistence"},
            ],
        }
    ]
    invalidate = MagicMock()

    result = recategorize_trip_expenses(store, trips, invalidate=invalidate, delay=0)

    assert (result.total, result.updated, result.failed) == (3, 2, 1)
    invalidate.assert_called_once_with(DEPENDENT_VIEWS)

    row = _txn(store, hotel)
    assert row["category_id"] == travel
    assert row["vat_rate"] == 13.5
    assert row["notes"] == (
        "Business trip to Kilkenny (2024-06-10 to 2024-06-11). accommodation. "
        "Hotel VAT not deductible (Section 60(2)(a)(i))."
    )
    assert row["is_reconciled"] == 0

    # no Motor/travel category, falls back to Subsistence
    row = _txn(store, taxi)
    assert row["category_id"] == travel
    assert row["vat_rate"] == 0


def test_recategorize_without_categories_does_nothing(store, add_txn):
    tx = add_txn()
    invalidate = MagicMock()
    result = recategorize_trip_expenses(
        store, [{"location": "Cork", "transactions": [{"id": tx}]}], invalidate=invalidate
    )
    assert result.total == 0
    invalidate.assert_not_called()
