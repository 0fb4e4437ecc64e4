import pytest

from ledger_models import ReviewStatus
from review_queue import (
    confirm_business_expense,
    dismiss_business_review,
    flag_for_business_review,
    list_pending_review,
    migrate_legacy_tags,
    strip_legacy_tags,
)


@pytest.mark.parametrize(
    "notes,clean,status",
    [
        ("Hardware run [PENDING_BUSINESS_REVIEW]", "Hardware run", ReviewStatus.PENDING_BUSINESS_REVIEW),
        ("[MOVED_FROM_PERSONAL] van parts", "van parts", ReviewStatus.MOVED_FROM_PERSONAL),
        (
            "Tools [PENDING_BUSINESS_REVIEW] [MOVED_FROM_PERSONAL]",
            "Tools",
            ReviewStatus.MOVED_FROM_PERSONAL,
        ),
        ("plain note", "plain note", ReviewStatus.NONE),
        (None, "", ReviewStatus.NONE),
    ],
)
def test_strip_legacy_tags(notes, clean, status):
    assert strip_legacy_tags(notes) == (clean, status)


def test_review_flow(store, add_txn):
    a = add_txn(transaction_date="2024-06-10")
    b = add_txn(transaction_date="2024-06-12")
    add_txn()

    assert flag_for_business_review(store, [a, b]) == 2
    assert flag_for_business_review(store, []) == 0
    pending = list_pending_review(store, "user-123")
    assert [t.id for t in pending] == [b, a]
    assert pending[0].review_status == ReviewStatus.PENDING_BUSINESS_REVIEW.value
    assert pending[0].description == "POS SCREWFIX IRELAND"

    assert confirm_business_expense(store, a) is True
    assert confirm_business_expense(store, a) is False  # already moved
    assert dismiss_business_review(store, b) is True

    assert list_pending_review(store, "user-123") == []
    row = store.table("transactions").select("review_status").eq("id", a).maybe_single()
    assert row["review_status"] == "moved_from_personal"


def test_migrate_legacy_tags(store, add_txn):
    tagged = add_txn(notes="Drill bits [PENDING_BUSINESS_REVIEW]")
    add_txn(notes="nothing to see")

    assert migrate_legacy_tags(store, "user-123") == 1
    row = store.table("transactions").select("*").eq("id", tagged).maybe_single()
    assert row["notes"] == "Drill bits"
    assert row["review_status"] == "pending_business_review"
    assert migrate_legacy_tags(store, "user-123") == 0
