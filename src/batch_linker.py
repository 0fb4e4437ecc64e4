import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from config_loader import load_matching_config
from ledger_models import BatchResult
from state_store import RecordStore, StoreError


# cached views that depend on transaction/receipt rows
DEPENDENT_VIEWS = ["transactions", "unmatched-transactions", "vat-summary", "invoices"]


class LinkError(Exception):
    """A receipt/transaction link write failed."""


class LinkConflictError(LinkError):
    """The transaction was already linked to another receipt."""


def _audit(store: RecordStore, action: str, target_ids: list, result: str, error: Optional[str] = None):
    try:
        store.write_audit("ERROR" if error else "INFO", "system", action, target_ids, None, result, error)
    except StoreError as e:
        print(f"  ⚠️ Audit write failed: {e}")


def _transaction_patch(image_url: str, vat_amount: Optional[float], vat_rate: Optional[float]) -> Dict:
    patch = {"receipt_url": image_url}
    # only upgrade VAT data when the receipt carries it
    if vat_amount is not None:
        patch["vat_amount"] = vat_amount
    if vat_rate is not None:
        patch["vat_rate"] = vat_rate
    return patch


def link_receipt_to_transaction(
    store: RecordStore,
    receipt_id: str,
    transaction_id: str,
    image_url: str,
    vat_amount: Optional[float] = None,
    vat_rate: Optional[float] = None,
) -> None:
    """Link a receipt and a transaction (manual assignment or accepted match).

    Two writes, not atomic: the receipt is linked first and is not rolled back
    if the transaction update fails. reconcile_links() repairs that state.
    """
    try:
        store.table("receipts").update({"transaction_id": transaction_id}).eq("id", receipt_id).execute()
    except StoreError as e:
        _audit(store, "link_failed", [transaction_id, receipt_id], "receipt", str(e))
        raise LinkError(f"Failed to link receipt: {e}") from e

    try:
        store.table("transactions").update(_transaction_patch(image_url, vat_amount, vat_rate)).eq(
            "id", transaction_id
        ).execute()
    except StoreError as e:
        _audit(store, "link_failed", [transaction_id, receipt_id], "transaction", str(e))
        raise LinkError(f"Failed to update transaction: {e}") from e

    _audit(store, "link", [transaction_id, receipt_id], "linked")
    print(f"  🔗 Linked receipt {receipt_id} -> transaction {transaction_id}")


def claim_and_link(
    store: RecordStore,
    receipt_id: str,
    transaction_id: str,
    image_url: str,
    vat_amount: Optional[float] = None,
    vat_rate: Optional[float] = None,
) -> None:
    """Link only if the transaction is still unlinked.

    The transaction is claimed with a conditional update first, so two
    receipts racing for the same transaction cannot both win.
    """
    try:
        claimed = (
            store.table("transactions")
            .update(_transaction_patch(image_url, vat_amount, vat_rate))
            .eq("id", transaction_id)
            .is_null("receipt_url")
            .execute()
        )
    except StoreError as e:
        _audit(store, "link_failed", [transaction_id, receipt_id], "transaction", str(e))
        raise LinkError(f"Failed to update transaction: {e}") from e

    if not claimed:
        _audit(store, "claim_conflict", [transaction_id, receipt_id], "skipped")
        raise LinkConflictError(f"Transaction {transaction_id} is already linked to a receipt")

    try:
        store.table("receipts").update({"transaction_id": transaction_id}).eq("id", receipt_id).execute()
    except StoreError as e:
        # release the claim so the transaction shows up as unlinked again
        try:
            store.table("transactions").update({"receipt_url": None}).eq("id", transaction_id).eq(
                "receipt_url", image_url
            ).execute()
        except StoreError as release_error:
            print(f"  ⚠️ Could not release claim on {transaction_id}: {release_error}")
        _audit(store, "link_failed", [transaction_id, receipt_id], "receipt", str(e))
        raise LinkError(f"Failed to link receipt: {e}") from e

    _audit(store, "link", [transaction_id, receipt_id], "linked")
    print(f"  🔗 Claimed transaction {transaction_id} for receipt {receipt_id}")


def reconcile_links(store: RecordStore, user_id: Optional[str] = None) -> int:
    """Repair receipts that point at a transaction whose receipt_url is missing."""
    q = store.table("receipts").select("id, transaction_id, image_url").not_null("transaction_id")
    if user_id:
        q = q.eq("user_id", user_id)
    receipts = q.execute()
    if not receipts:
        return 0

    by_tx = {r["transaction_id"]: r for r in receipts}
    broken = (
        store.table("transactions").select("id").in_("id", list(by_tx.keys())).is_null("receipt_url").execute()
    )

    repaired = 0
    for row in broken:
        receipt = by_tx[row["id"]]
        if not receipt.get("image_url"):
            continue
        count = (
            store.table("transactions")
            .update({"receipt_url": receipt["image_url"]})
            .eq("id", row["id"])
            .is_null("receipt_url")
            .execute()
        )
        if count:
            repaired += 1
            _audit(store, "reconcile_repair", [row["id"], receipt["id"]], "repaired")
    if repaired:
        print(f"🔧 Repaired {repaired} half-linked receipt(s)")
    return repaired


def run_batch(
    items: List,
    worker: Callable[[object], bool],
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> BatchResult:
    """Run worker over items in fixed-size chunks.

    Items in a chunk run concurrently and every outcome is collected; an
    exception or a falsy return counts as failed and never stops the run.
    """
    cfg = load_matching_config()["batch"]
    batch_size = batch_size or cfg.get("size", 10)
    delay = cfg.get("delay_seconds", 0.05) if delay is None else delay

    items = list(items)
    result = BatchResult(total=len(items))

    for i in range(0, len(items), batch_size):
        batch = items[i:i + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = [executor.submit(worker, item) for item in batch]
            for future in futures:
                try:
                    ok = future.result()
                except Exception as e:
                    print(f"  ⚠️ Batch item failed: {e}")
                    ok = False
                if ok:
                    result.updated += 1
                else:
                    result.failed += 1

        if on_progress:
            on_progress(round((i + len(batch)) / len(items) * 100))

        if i + batch_size < len(items) and delay > 0:
            time.sleep(delay)

    return result


def bulk_link(store: RecordStore, links: Iterable[Dict], **batch_kwargs) -> BatchResult:
    """Apply many manual receipt links; one failing link does not stop the rest."""

    def _link(link: Dict) -> bool:
        link_receipt_to_transaction(
            store,
            link["receipt_id"],
            link["transaction_id"],
            link["image_url"],
            link.get("vat_amount"),
            link.get("vat_rate"),
        )
        return True

    return run_batch(list(links), _link, **batch_kwargs)


# --- trip recategorisation ---

TRIP_EXPENSE_RULES = {
    "accommodation": {"category": "Travel & Subsistence", "vat_type": "Reduced 13.5%"},
    "subsistence": {"category": "Travel & Subsistence", "vat_type": "Standard 23%"},
    "transport": {"category": "Motor/travel", "vat_type": "Zero"},
    "other": {"category": "Travel & Subsistence", "vat_type": "Standard 23%"},
}
FALLBACK_TRIP_CATEGORIES = ["Motor/travel", "Subsistence"]


def map_vat_type_to_rate(vat_type: Optional[str]) -> float:
    vt = (vat_type or "").lower()
    if "23" in vt:
        return 23
    if "13.5" in vt or "13,5" in vt:
        return 13.5
    if "9" in vt:
        return 9
    if "zero" in vt or "exempt" in vt or "n/a" in vt:
        return 0
    return 23


def find_matching_category(name: str, categories: List[Dict], category_type: str = "expense") -> Optional[Dict]:
    target = (name or "").strip().lower()
    if not target:
        return None
    typed = [c for c in categories if (c.get("type") or "expense") == category_type]
    for c in typed:
        if (c.get("name") or "").strip().lower() == target:
            return c
    for c in typed:
        cname = (c.get("name") or "").strip().lower()
        if cname and (target in cname or cname in target):
            return c
    return None


def _trip_note(trip: Dict, expense_type: str) -> str:
    start, end = trip.get("start_date"), trip.get("end_date")
    if start == end:
        note = f"Business trip to {trip.get('location')} on {start}."
    else:
        note = f"Business trip to {trip.get('location')} ({start} to {end})."
    note += f" {expense_type}."
    if expense_type == "accommodation":
        note += " Hotel VAT not deductible (Section 60(2)(a)(i))."
    return note


def recategorize_trip_expenses(
    store: RecordStore,
    trips: List[Dict],
    invalidate: Optional[Callable[[List[str]], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
    **batch_kwargs,
) -> BatchResult:
    """Recategorise confirmed business-trip transactions as travel expenses.

    trips: [{"location", "start_date", "end_date", "transactions": [{"id", "expense_type"}]}]
    """
    try:
        categories = store.table("categories").select("*").order("name").execute()
    except StoreError as e:
        print(f"❌ Failed to load categories: {e}")
        return BatchResult()
    if not categories:
        print("⚠️ No categories found")
        return BatchResult()

    items = [(trip, txn) for trip in trips for txn in trip.get("transactions", [])]

    def _update(item) -> bool:
        trip, txn = item
        expense_type = txn.get("expense_type") or "other"
        rule = TRIP_EXPENSE_RULES.get(expense_type, TRIP_EXPENSE_RULES["other"])
        category = find_matching_category(rule["category"], categories)
        for fallback in FALLBACK_TRIP_CATEGORIES:
            if category is not None:
                break
            category = find_matching_category(fallback, categories)
        count = (
            store.table("transactions")
            .update(
                {
                    "category_id": category["id"] if category else None,
                    "vat_rate": map_vat_type_to_rate(rule["vat_type"]),
                    "notes": _trip_note(trip, expense_type),
                    "is_reconciled": False,
                }
            )
            .eq("id", txn["id"])
            .execute()
        )
        return count > 0

    result = run_batch(items, _update, on_progress=on_progress, **batch_kwargs)

    if invalidate:
        invalidate(list(DEPENDENT_VIEWS))
    if result.updated:
        print(f"✅ Updated {result.updated} transaction(s) as business travel ({result.failed} failed)")
    return result
