import copy
import os

import yaml
from dotenv import load_dotenv

load_dotenv()


DEFAULTS = {
    "thresholds": {"auto": 0.95},
    "weights": {"amount": 0.5, "vendor": 0.3, "date_same_day": 0.2, "date_adjacent": 0.15},
    "tolerances": {"amount": 0.005, "same_day": 0.5, "adjacent_days": 1.5},
    "query_window_days": 2,
    "batch": {"size": 10, "delay_seconds": 0.05},
    "corrections": {"promotion_threshold": 3, "min_actionable_count": 2},
    "vendor_cache": {"fuzzy_min": 0.92},
}

VAT_POLICY_DEFAULTS = {
    "disallowed": {
        "food_drink_accommodation": {
            "section": "Section 60(2)(a)(i)",
            "reason": "Food, drink or accommodation - VAT NOT recoverable",
            "keywords": [
                "restaurant", "cafe", "coffee", "pub", "hotel", "accommodation",
                "food", "meal", "lunch", "dinner", "breakfast", "catering", "takeaway",
                "mcdonalds", "burger king", "kfc", "subway", "supermacs", "starbucks",
                "costa", "deliveroo", "just eat", "uber eats", "airbnb", "b&b",
            ],
        },
        "entertainment": {
            "section": "Section 60(2)(a)(iii)",
            "reason": "Entertainment expense - VAT NOT recoverable",
            "keywords": [
                "entertainment", "cinema", "theatre", "concert", "event tickets",
                "netflix", "disney", "spotify", "amazon prime", "playstation", "xbox",
                "smyths", "toys", "games", "amusement",
            ],
        },
        "passenger_vehicles": {
            "section": "Section 60(2)(a)(iv)",
            "reason": "Passenger vehicle purchase/hire - VAT NOT recoverable",
            "keywords": [
                "car purchase", "car lease", "car hire", "car rental",
                "motor finance", "pcp", "hp car",
            ],
        },
        "petrol": {
            "section": "Section 60(2)(a)(v)",
            "reason": "Petrol - VAT NOT recoverable (diesel IS deductible)",
            "keywords": ["petrol", "unleaded", "gasoline"],
        },
        "non_business": {
            "section": "Section 59",
            "reason": "Non-business expense - VAT NOT recoverable",
            "keywords": ["personal", "private", "non-business"],
        },
    },
    "diesel_keywords": ["diesel", "derv", "adblue"],
    "fuel_stations": ["maxol", "circle k", "applegreen", "texaco", "esso", "shell", "topaz", "spar", "centra"],
}


def _config_dir() -> str:
    return os.getenv(
        "LEDGER_CONFIG_DIR",
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config"),
    )


def _load_yaml(filename: str, defaults: dict) -> dict:
    path = os.path.join(_config_dir(), filename)
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return copy.deepcopy(defaults)

    # shallow merge defaults
    merged = copy.deepcopy(defaults)
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def load_matching_config() -> dict:
    return _load_yaml("matching.yml", DEFAULTS)


def load_vat_policy() -> dict:
    return _load_yaml("vat_policy.yml", VAT_POLICY_DEFAULTS)
