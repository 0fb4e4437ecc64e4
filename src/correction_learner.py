#!/usr/bin/env python
"""
User-correction learning
Manual category corrections are counted per vendor pattern; once the same
correction has been made PROMOTION_THRESHOLD times it is promoted into the
vendor cache, which auto-categorisation consults before the AI service.
"""

import threading
from datetime import datetime
from typing import Dict, Optional

from rapidfuzz.distance import JaroWinkler

from config_loader import load_matching_config
from ledger_models import UserCorrection, VendorCacheEntry
from state_store import RecordStore, StoreError
from vendor_patterns import extract_vendor_pattern


CORRECTION_CONFIDENCE_2 = 80
CORRECTION_CONFIDENCE_3 = 90
PROMOTION_THRESHOLD = 3


def get_correction_confidence(correction) -> int:
    """transaction_count 1 -> 0 (noise), 2 -> 80, >=3 -> 90."""
    count = correction.transaction_count or 0
    if count >= PROMOTION_THRESHOLD:
        return CORRECTION_CONFIDENCE_3
    if count >= 2:
        return CORRECTION_CONFIDENCE_2
    return 0


def vat_rate_to_vat_type(vat_rate: Optional[float]) -> str:
    if vat_rate is None:
        return "N/A"
    if vat_rate == 13.5:
        return "Reduced 13.5%"
    if vat_rate == 9:
        return "Second Reduced 9%"
    if vat_rate == 0:
        return "Zero"
    return "Standard 23%"


class VendorCache:
    """Trusted vendor -> category cache, loaded once per user.

    initialize() is idempotent and safe to call from several threads; only the
    first caller hits the store.
    """

    def __init__(self, store: RecordStore, user_id: str, fuzzy_min: Optional[float] = None):
        self.store = store
        self.user_id = user_id
        if fuzzy_min is None:
            fuzzy_min = load_matching_config()["vendor_cache"]["fuzzy_min"]
        self.fuzzy_min = fuzzy_min
        self.entries: Dict[str, VendorCacheEntry] = {}
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> "VendorCache":
        if self._initialized:
            return self
        with self._lock:
            if self._initialized:
                return self
            entries: Dict[str, VendorCacheEntry] = {}
            try:
                # global first, then the user's own rows override them
                for row in self.store.table("vendor_cache").select("*").is_null("user_id").execute():
                    entries[row["vendor_pattern"]] = VendorCacheEntry.from_row(row)
                for row in self.store.table("vendor_cache").select("*").eq("user_id", self.user_id).execute():
                    entries[row["vendor_pattern"]] = VendorCacheEntry.from_row(row)
            except StoreError as e:
                print(f"⚠️ Vendor cache load error: {e}")
            self.entries = entries
            self._initialized = True
            print(f"✅ Vendor cache loaded: {len(entries)} entries for user {self.user_id}")
        return self

    def lookup(self, description: str) -> Optional[VendorCacheEntry]:
        self.initialize()
        pattern = extract_vendor_pattern(description)
        if not pattern:
            return None
        with self._lock:
            snapshot = list(self.entries.items())
            exact = self.entries.get(pattern)
        if exact is not None:
            return exact

        best, best_sim = None, 0.0
        for key, entry in snapshot:
            sim = JaroWinkler.normalized_similarity(pattern, key)
            if sim > best_sim:
                best, best_sim = entry, sim
        if best is not None and best_sim >= self.fuzzy_min:
            return best
        return None

    def save_entry(self, entry: VendorCacheEntry) -> bool:
        self.initialize()
        row = {
            "user_id": self.user_id,
            "vendor_pattern": entry.vendor_pattern,
            "normalized_name": entry.normalized_name,
            "category": entry.category,
            "vat_type": entry.vat_type,
            "vat_deductible": entry.vat_deductible,
            "business_purpose": entry.business_purpose,
            "confidence": entry.confidence,
            "source": entry.source,
            "hit_count": 1,
            "last_seen": datetime.now().isoformat(),
        }
        try:
            self.store.upsert("vendor_cache", row, on_conflict=["vendor_pattern", "user_id"])
        except StoreError as e:
            print(f"❌ Vendor cache save error: {e}")
            return False
        entry.user_id = self.user_id
        entry.hit_count = 1
        entry.last_seen = row["last_seen"]
        with self._lock:
            self.entries[entry.vendor_pattern] = entry
        return True

    def record_hit(self, vendor_pattern: str):
        """Bump hit_count/last_seen. Best effort; failures are only reported."""
        entry = self.entries.get(vendor_pattern)
        if entry is None:
            return
        entry.hit_count += 1
        entry.last_seen = datetime.now().isoformat()
        try:
            q = self.store.table("vendor_cache").update(
                {"hit_count": entry.hit_count, "last_seen": entry.last_seen}
            ).eq("vendor_pattern", vendor_pattern)
            if entry.user_id is None:
                q.is_null("user_id").execute()
            else:
                q.eq("user_id", entry.user_id).execute()
        except StoreError as e:
            print(f"⚠️ Vendor cache hit not recorded: {e}")


class CorrectionLearner:
    """Records manual category corrections and promotes repeated ones."""

    def __init__(self, store: RecordStore, vendor_cache: Optional[VendorCache] = None):
        self.store = store
        self.vendor_cache = vendor_cache
        cfg = load_matching_config()["corrections"]
        self.promotion_threshold = cfg.get("promotion_threshold", PROMOTION_THRESHOLD)
        self.min_actionable_count = cfg.get("min_actionable_count", 2)

    def record_correction(
        self,
        user_id: str,
        description: str,
        original_category: Optional[str],
        corrected_category: str,
        corrected_category_id: str,
        corrected_vat_rate: Optional[float],
    ) -> Optional[UserCorrection]:
        vendor_pattern = extract_vendor_pattern(description)
        if not vendor_pattern:
            return None

        try:
            self.store.upsert_counter(
                "user_corrections",
                {
                    "user_id": user_id,
                    "vendor_pattern": vendor_pattern,
                    "original_category": original_category,
                    "corrected_category": corrected_category,
                    "corrected_category_id": corrected_category_id,
                    "corrected_vat_rate": corrected_vat_rate,
                    "transaction_count": 1,
                },
                on_conflict=["user_id", "vendor_pattern"],
                counter="transaction_count",
            )
            row = (
                self.store.table("user_corrections")
                .select("*")
                .eq("user_id", user_id)
                .eq("vendor_pattern", vendor_pattern)
                .maybe_single()
            )
            if row is None:
                return None
            correction = UserCorrection.from_row(row)

            if correction.transaction_count >= self.promotion_threshold and not correction.promoted_to_cache:
                # claim the flag first so only one writer promotes
                claimed = (
                    self.store.table("user_corrections")
                    .update({"promoted_to_cache": True})
                    .eq("id", correction.id)
                    .eq("promoted_to_cache", False)
                    .execute()
                )
                if claimed:
                    if self.promote_to_vendor_cache(user_id, correction):
                        correction.promoted_to_cache = True
                        print(
                            f"🧠 Promoted '{vendor_pattern}' to vendor cache "
                            f"({correction.transaction_count} corrections)"
                        )
                    else:
                        self.store.table("user_corrections").update({"promoted_to_cache": False}).eq(
                            "id", correction.id
                        ).execute()
            return correction
        except StoreError as e:
            print(f"❌ Failed to record correction for '{vendor_pattern}': {e}")
            return None

    def load_user_corrections(self, user_id: str) -> Dict[str, UserCorrection]:
        """Corrections keyed by vendor pattern, only those seen at least twice."""
        try:
            rows = (
                self.store.table("user_corrections")
                .select("*")
                .eq("user_id", user_id)
                .gte("transaction_count", self.min_actionable_count)
                .execute()
            )
        except StoreError as e:
            print(f"⚠️ Correction load error: {e}")
            return {}
        corrections = {row["vendor_pattern"]: UserCorrection.from_row(row) for row in rows}
        print(f"📚 Loaded {len(corrections)} corrections for user {user_id}")
        return corrections

    def promote_to_vendor_cache(self, user_id: str, correction: UserCorrection) -> bool:
        cache = self.vendor_cache
        if cache is None or cache.user_id != user_id:
            cache = VendorCache(self.store, user_id)
        vat_rate = correction.corrected_vat_rate
        entry = VendorCacheEntry(
            vendor_pattern=correction.vendor_pattern,
            normalized_name=correction.vendor_pattern,
            category=correction.corrected_category,
            vat_type=vat_rate_to_vat_type(vat_rate),
            vat_deductible=vat_rate is not None and vat_rate > 0,
            business_purpose=f"User-corrected category ({self.promotion_threshold}+ corrections).",
            confidence=CORRECTION_CONFIDENCE_3,
            source="user",
        )
        return cache.save_entry(entry)


def categorize_with_corrections(
    description: str,
    corrections: Dict[str, UserCorrection],
    vendor_cache: Optional[VendorCache] = None,
) -> Optional[Dict]:
    """Category from learned data, or None to fall back to the AI service."""
    pattern = extract_vendor_pattern(description)
    if not pattern:
        return None

    correction = corrections.get(pattern)
    if correction is not None:
        confidence = get_correction_confidence(correction)
        if confidence > 0:
            return {
                "category": correction.corrected_category,
                "category_id": correction.corrected_category_id,
                "vat_rate": correction.corrected_vat_rate,
                "confidence": confidence,
                "source": "user_correction",
            }

    if vendor_cache is not None:
        entry = vendor_cache.lookup(description)
        if entry is not None:
            vendor_cache.record_hit(entry.vendor_pattern)
            return {
                "category": entry.category,
                "category_id": None,
                "vat_type": entry.vat_type,
                "vat_deductible": entry.vat_deductible,
                "confidence": entry.confidence,
                "source": f"vendor_cache:{entry.source}",
            }
    return None
