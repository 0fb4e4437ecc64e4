import re
from typing import List, Sequence, Tuple

from ledger_models import ReviewStatus, Transaction
from state_store import RecordStore


# bracketed tags older imports wrote into transaction notes
LEGACY_TAGS = {
    "PENDING_BUSINESS_REVIEW": ReviewStatus.PENDING_BUSINESS_REVIEW,
    "MOVED_FROM_PERSONAL": ReviewStatus.MOVED_FROM_PERSONAL,
}
_TAG_RE = re.compile(r"\s*\[(" + "|".join(LEGACY_TAGS) + r")\]")


def strip_legacy_tags(notes: str) -> Tuple[str, ReviewStatus]:
    """Remove legacy tags from notes and return (clean_notes, status).

    The last tag in the text wins, matching the order it was appended.
    """
    notes = notes or ""
    found = _TAG_RE.findall(notes)
    status = LEGACY_TAGS[found[-1]] if found else ReviewStatus.NONE
    return _TAG_RE.sub("", notes).strip(), status


def flag_for_business_review(store: RecordStore, transaction_ids: Sequence[str]) -> int:
    if not transaction_ids:
        return 0
    return (
        store.table("transactions")
        .update({"review_status": ReviewStatus.PENDING_BUSINESS_REVIEW})
        .in_("id", list(transaction_ids))
        .execute()
    )


def confirm_business_expense(store: RecordStore, transaction_id: str) -> bool:
    """Move a personal transaction into the business ledger."""
    count = (
        store.table("transactions")
        .update({"review_status": ReviewStatus.MOVED_FROM_PERSONAL})
        .eq("id", transaction_id)
        .eq("review_status", ReviewStatus.PENDING_BUSINESS_REVIEW)
        .execute()
    )
    return count > 0


def dismiss_business_review(store: RecordStore, transaction_id: str) -> bool:
    count = (
        store.table("transactions")
        .update({"review_status": ReviewStatus.NONE})
        .eq("id", transaction_id)
        .eq("review_status", ReviewStatus.PENDING_BUSINESS_REVIEW)
        .execute()
    )
    return count > 0


def list_pending_review(store: RecordStore, user_id: str) -> List[Transaction]:
    rows = (
        store.table("transactions")
        .select("*")
        .eq("user_id", user_id)
        .eq("review_status", ReviewStatus.PENDING_BUSINESS_REVIEW)
        .order("transaction_date", desc=True)
        .execute()
    )
    return [Transaction.from_row(row) for row in rows]


def migrate_legacy_tags(store: RecordStore, user_id: str) -> int:
    """Move legacy note tags into review_status. Returns rows migrated."""
    rows = store.table("transactions").select("*").eq("user_id", user_id).execute()
    migrated = 0
    for txn in map(Transaction.from_row, rows):
        if not _TAG_RE.search(txn.notes):
            continue
        clean, status = strip_legacy_tags(txn.notes)
        store.table("transactions").update({"notes": clean, "review_status": status}).eq("id", txn.id).execute()
        migrated += 1
    if migrated:
        print(f"🏷️ Migrated {migrated} legacy note tag(s) to review_status")
    return migrated
