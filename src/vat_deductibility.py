"""
VAT deductibility
Applies the Irish VAT Section 59/60 input credit rules (policy table in
config/vat_policy.yml) to decide whether VAT on an expense is recoverable.
"""

import re
from typing import Dict, Iterable, Optional, Tuple, Union

from config_loader import load_vat_policy
from ledger_models import VATDeductibilityResult


VAT_RATES = {
    "standard_23": 0.23,
    "reduced_13_5": 0.135,
    "second_reduced_9": 0.09,
    "livestock_4_8": 0.048,
    "zero_rated": 0,
    "exempt": 0,
}
NON_RECLAIMABLE_RATE_KEYS = {"exempt", "zero_rated"}
REVERSE_CHARGE_KEYS = {"reverse_charge", "reverse charge"}

_FINES_DESC = re.compile(r"\bfines?\b|\bpenalt(y|ies)\b")


def _any_in(keywords: Iterable[str], text: str) -> bool:
    return any(k in text for k in keywords)


def is_vat_deductible(
    description: str,
    category_name: Optional[str] = None,
    account_name: Optional[str] = None,
    policy: Optional[Dict] = None,
) -> VATDeductibilityResult:
    """Decide whether VAT on an expense can be reclaimed.

    Keyword rules (description, category and account combined) fire first,
    then category-only rules; anything left is a deductible business expense.
    """
    policy = policy or load_vat_policy()
    disallowed = policy["disallowed"]
    desc_lower = (description or "").lower()
    cat_lower = (category_name or "").lower()
    acc_lower = (account_name or "").lower()
    combined = f"{desc_lower} {cat_lower} {acc_lower}"

    for key in ("food_drink_accommodation", "entertainment", "passenger_vehicles"):
        rule = disallowed[key]
        if _any_in(rule["keywords"], combined):
            return VATDeductibilityResult(False, rule["reason"], rule["section"])

    has_petrol = _any_in(disallowed["petrol"]["keywords"], combined)
    has_diesel = _any_in(policy["diesel_keywords"], combined)
    if has_petrol and not has_diesel:
        rule = disallowed["petrol"]
        return VATDeductibilityResult(False, rule["reason"], rule["section"])
    if has_diesel:
        return VATDeductibilityResult(True, "Diesel fuel - VAT IS recoverable")

    if _any_in(policy["fuel_stations"], combined):
        if "diesel" in combined or ("fuel" in combined and "petrol" not in combined):
            return VATDeductibilityResult(True, "Fuel purchase - categorized as deductible")
        return VATDeductibilityResult(
            False, "Mixed retailer - cannot claim VAT without receipt proving diesel", "Section 60"
        )

    rule = disallowed["non_business"]
    if _any_in(rule["keywords"], combined):
        return VATDeductibilityResult(False, rule["reason"], rule["section"])

    if "bank" in combined and ("fee" in combined or "charge" in combined):
        return VATDeductibilityResult(False, "Bank charges - VAT exempt supply, VAT not recoverable")

    if "insurance" in combined and "motor tax" not in combined:
        return VATDeductibilityResult(False, "Insurance - VAT exempt supply, VAT not recoverable")

    # category-based
    if "meals" in cat_lower or cat_lower == "entertainment":
        return VATDeductibilityResult(
            False, "Meals & Entertainment - not an allowable tax deduction", "Section 60(2)(a)(i)/(iii)"
        )

    if "fine" in cat_lower or "penalt" in cat_lower or _FINES_DESC.search(desc_lower):
        return VATDeductibilityResult(False, "Fines & penalties are not allowable tax deductions")

    if "drawing" in cat_lower or "director's draw" in cat_lower:
        return VATDeductibilityResult(
            False, "Director's Drawings - capital withdrawal, not a business expense"
        )

    return VATDeductibilityResult(True, "Business expense - VAT recoverable")


def calculate_vat_from_gross(gross_amount: float, vat_rate: Union[str, float, int]) -> Tuple[float, float]:
    """(net_amount, vat_amount) from a VAT-inclusive amount.

    vat_rate is a rate key ("standard_23") or a percentage (23, 13.5, ...).
    Unknown keys fall back to the standard rate.
    """
    if isinstance(vat_rate, (int, float)):
        rate = vat_rate / 100
    else:
        rate = VAT_RATES.get(vat_rate, 0.23)

    if rate == 0:
        return gross_amount, 0.0

    vat_amount = round(gross_amount * rate / (1 + rate), 2)
    net_amount = round(gross_amount - vat_amount, 2)
    return net_amount, vat_amount


def _rate_value(vat_rate) -> Union[str, float, None]:
    if vat_rate is None or vat_rate == "":
        return None
    if isinstance(vat_rate, (int, float)):
        return vat_rate
    try:
        return float(vat_rate)
    except ValueError:
        return str(vat_rate)


def vat_on_purchases(
    transactions: Iterable[Dict],
    category_names: Optional[Dict[str, str]] = None,
    account_names: Optional[Dict[str, str]] = None,
) -> Dict:
    """Sum reclaimable VAT over expense transactions.

    Reverse-charge purchases contribute nothing; a missing VAT amount is
    derived from the gross amount unless the rate is exempt or zero-rated.
    """
    category_names = category_names or {}
    account_names = account_names or {}
    policy = load_vat_policy()
    total = 0.0
    count = 0
    details = []

    for txn in transactions:
        if (txn.get("type") or "expense") != "expense":
            continue
        rate = _rate_value(txn.get("vat_rate"))
        is_reverse_charge = isinstance(rate, str) and rate.lower() in REVERSE_CHARGE_KEYS
        vat_amount = 0.0 if is_reverse_charge else (txn.get("vat_amount") or 0)
        if (
            not vat_amount
            and not is_reverse_charge
            and rate not in (None, 0)
            and rate not in NON_RECLAIMABLE_RATE_KEYS
        ):
            _, vat_amount = calculate_vat_from_gross(abs(txn.get("amount") or 0), rate)

        result = is_vat_deductible(
            txn.get("description") or "",
            category_names.get(txn.get("category_id")),
            account_names.get(txn.get("account_id")),
            policy=policy,
        )
        if result.is_deductible and vat_amount > 0:
            total += vat_amount
            count += 1
            details.append(
                {
                    "id": txn.get("id"),
                    "description": txn.get("description") or "Expense",
                    "date": txn.get("transaction_date") or "",
                    "amount": abs(txn.get("amount") or 0),
                    "vat_amount": vat_amount,
                }
            )

    details.sort(key=lambda d: d["date"], reverse=True)
    return {"vat_on_purchases": round(total, 2), "purchases_count": count, "details": details}
