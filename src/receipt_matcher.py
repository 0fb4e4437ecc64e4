from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

from config_loader import load_matching_config
from ledger_models import MatchCandidate, MatchResult
from state_store import RecordStore, StoreError


AUTO_MATCH_THRESHOLD = 0.95


def _parse_date(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    # compare offset-aware times in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def score_candidate(
    candidate: MatchCandidate,
    receipt_amount: float,
    receipt_vendor: Optional[str],
    receipt_date: Union[str, date, None],
    cfg: Optional[Dict] = None,
) -> Tuple[float, str]:
    """Score one (receipt, transaction) pair.

    amount exact to the cent: 0.50
    vendor found in description (whole name, else first word >= 3 chars): 0.30
    date same day: 0.20, +/-1 day: 0.15
    """
    cfg = cfg or load_matching_config()
    weights = cfg["weights"]
    tol = cfg["tolerances"]
    score = 0.0
    reasons: List[str] = []

    # amount
    receipt_abs = abs(float(receipt_amount or 0))
    if abs(abs(float(candidate.amount or 0)) - receipt_abs) < tol["amount"]:
        score += weights["amount"]
        reasons.append(f"Amount exact match: {receipt_abs:.2f}")

    # vendor
    if receipt_vendor and candidate.description:
        desc_lower = candidate.description.lower()
        vendor_lower = receipt_vendor.lower().strip()
        if vendor_lower and vendor_lower in desc_lower:
            score += weights["vendor"]
            reasons.append(f'Vendor full match: "{receipt_vendor}"')
        else:
            words = vendor_lower.split()
            first_word = words[0] if words else ""
            if len(first_word) >= 3 and first_word in desc_lower:
                score += weights["vendor"]
                reasons.append(f'Vendor partial match: "{first_word}"')

    # date
    r_date = _parse_date(receipt_date)
    t_date = _parse_date(candidate.transaction_date)
    if r_date and t_date:
        diff_days = abs((r_date - t_date).total_seconds()) / 86400
        if diff_days < tol["same_day"]:
            score += weights["date_same_day"]
            reasons.append("Date: same day")
        elif diff_days <= tol["adjacent_days"]:
            score += weights["date_adjacent"]
            reasons.append("Date: within +/-1 day")

    explanation = "; ".join(reasons) if reasons else "No matching criteria met"
    return round(score * 100) / 100, explanation


def fetch_candidates(
    store: RecordStore, user_id: str, receipt_date: Union[str, date, None], window_days: int = 2
) -> List[MatchCandidate]:
    """Unlinked transactions for the user, narrowed to +/-window_days around the receipt date."""
    query = (
        store.table("transactions")
        .select("id, amount, description, transaction_date, receipt_url")
        .eq("user_id", user_id)
        .is_null("receipt_url")
    )
    d = _parse_date(receipt_date)
    if d:
        query = query.gte("transaction_date", (d - timedelta(days=window_days)).date().isoformat()).lte(
            "transaction_date", (d + timedelta(days=window_days)).date().isoformat()
        )
    return [MatchCandidate.from_row(row) for row in query.execute()]


def match_receipt_to_transaction(
    store: RecordStore,
    user_id: str,
    receipt_id: str,
    receipt_amount: float,
    receipt_vendor: Optional[str],
    receipt_date: Union[str, date, None],
    cfg: Optional[Dict] = None,
) -> MatchResult:
    """Best unlinked transaction for a receipt. Never raises on store errors."""
    cfg = cfg or load_matching_config()
    threshold = cfg.get("thresholds", {}).get("auto", AUTO_MATCH_THRESHOLD)

    try:
        candidates = fetch_candidates(store, user_id, receipt_date, cfg.get("query_window_days", 2))
    except StoreError as e:
        print(f"  ❌ Error querying transactions for matching: {e}")
        return MatchResult(receipt_id, None, 0, f"Query error: {e}", False)

    if not candidates:
        return MatchResult(receipt_id, None, 0, "No candidate transactions found", False)

    # strict ">" keeps the first-seen candidate on ties
    best_score = 0.0
    best: Optional[MatchCandidate] = None
    best_explanation = ""
    for c in candidates:
        score, explanation = score_candidate(c, receipt_amount, receipt_vendor, receipt_date, cfg)
        if score > best_score:
            best_score, best, best_explanation = score, c, explanation

    auto_matched = best is not None and best_score >= threshold
    print(
        f"  [match] receipt {receipt_id}: {len(candidates)} candidates, "
        f"best={best.id if best else None} score={best_score:.2f}"
    )
    return MatchResult(
        receipt_id=receipt_id,
        transaction_id=best.id if best else None,
        score=best_score,
        explanation=best_explanation,
        auto_matched=auto_matched,
    )


def decide_action(result: MatchResult) -> str:
    if result.auto_matched and result.transaction_id:
        return "AUTO"
    return "MANUAL"
