#!/usr/bin/env python
"""
Receipt pipeline
upload -> OCR -> match against unlinked transactions -> auto-link or queue
for manual review
"""

from typing import Dict, List, Optional

from batch_linker import LinkConflictError, LinkError, claim_and_link
from config_loader import load_matching_config
from ledger_models import MatchResult, Receipt, ReceiptData, ReviewStatus
from ocr_client import ReceiptOCRClient
from receipt_matcher import decide_action, match_receipt_to_transaction
from state_store import RecordStore, StoreError


class ReceiptPipeline:
    def __init__(self, store: RecordStore, ocr_client: Optional[ReceiptOCRClient] = None, cfg: Optional[Dict] = None):
        self.store = store
        self.ocr_client = ocr_client or ReceiptOCRClient()
        self.cfg = cfg or load_matching_config()

    def process_upload(
        self,
        user_id: str,
        image_base64: str,
        image_url: str,
        mime_type: Optional[str] = None,
        categories: Optional[List[str]] = None,
    ) -> MatchResult:
        print(f"\n📸 Processing receipt upload for user {user_id}")
        ocr = self.ocr_client.process_receipt(image_base64, categories, mime_type)
        data: ReceiptData = ocr["data"]

        receipt_id = self.store.table("receipts").insert(
            {
                "user_id": user_id,
                "image_url": image_url,
                "supplier_name": data.supplier_name,
                "date": data.date,
                "total_amount": data.total_amount,
                "vat_amount": data.vat_amount,
                "vat_rate": data.vat_rate,
                "line_items": data.line_items,
                "confidence": data.confidence,
            }
        )[0]

        if not ocr["success"] or data.total_amount is None:
            print(f"  ⚠️ OCR incomplete for receipt {receipt_id}: {ocr.get('notes')}")
            self._queue_manual(receipt_id, None)
            return MatchResult(receipt_id, None, 0, f"OCR incomplete: {ocr.get('notes') or 'no amount'}", False)

        return self.match_and_link(user_id, receipt_id, data, image_url)

    def match_and_link(self, user_id: str, receipt_id: str, data: ReceiptData, image_url: str) -> MatchResult:
        result = match_receipt_to_transaction(
            self.store,
            user_id,
            receipt_id,
            data.total_amount or 0,
            data.supplier_name,
            data.date,
            self.cfg,
        )
        print(f"  [match] score={result.score:.2f} reasons={result.explanation or '-'}")

        if decide_action(result) == "AUTO":
            try:
                claim_and_link(
                    self.store, receipt_id, result.transaction_id, image_url, data.vat_amount, data.vat_rate
                )
                self.store.table("receipts").update({"review_status": ReviewStatus.NONE}).eq(
                    "id", receipt_id
                ).execute()
                print(f"  ✅ Auto-matched receipt {receipt_id} -> {result.transaction_id}")
                return result
            except LinkConflictError as e:
                result.auto_matched = False
                result.explanation = f"{result.explanation}; {e}"
            except LinkError as e:
                print(f"  ❌ Auto-link failed: {e}")
                result.auto_matched = False

        self._queue_manual(receipt_id, result)
        return result

    def _queue_manual(self, receipt_id: str, result: Optional[MatchResult]):
        try:
            self.store.table("receipts").update({"review_status": ReviewStatus.PENDING_RECEIPT_MATCH}).eq(
                "id", receipt_id
            ).execute()
            self.store.write_audit(
                "INFO",
                "system",
                "queue_manual",
                [result.transaction_id if result else None, receipt_id],
                result.score if result else 0,
                "pending",
            )
        except StoreError as e:
            print(f"  ⚠️ Could not queue receipt {receipt_id} for review: {e}")
        print(f"  📋 Receipt {receipt_id} queued for manual review")

    def retry_pending(self, user_id: str) -> List[MatchResult]:
        """Re-run matching for receipts waiting on manual review (new transactions may have arrived)."""
        rows = (
            self.store.table("receipts")
            .select("*")
            .eq("user_id", user_id)
            .eq("review_status", ReviewStatus.PENDING_RECEIPT_MATCH)
            .is_null("transaction_id")
            .execute()
        )
        results = []
        for receipt in map(Receipt.from_row, rows):
            if receipt.total_amount is None:
                continue
            results.append(self.match_and_link(user_id, receipt.id, receipt.to_receipt_data(), receipt.image_url))
        return results
