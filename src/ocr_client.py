import os
from typing import Dict, List, Optional

import requests

from ledger_models import ReceiptData


class OCRServiceError(Exception):
    """The receipt OCR service could not be reached or rejected the request."""


class ReceiptOCRClient:
    """Client for the external receipt OCR / AI extraction service."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: int = 60):
        self.base_url = (base_url or os.getenv("OCR_SERVICE_URL", "")).rstrip("/")
        self.api_key = api_key or os.getenv("OCR_SERVICE_KEY")
        self.timeout = timeout
        self.headers = {"content-type": "application/json"}
        if self.api_key:
            self.headers["Authorization"] = f"Bearer {self.api_key}"

    def process_receipt(
        self,
        image_base64: str,
        categories: Optional[List[str]] = None,
        mime_type: Optional[str] = None,
    ) -> Dict:
        """Extract receipt fields from an image.

        Returns {"success", "data": ReceiptData, "raw_text", "notes"}.
        """
        if not self.base_url:
            raise OCRServiceError("OCR_SERVICE_URL is not configured")

        payload = {"imageBase64": image_base64, "mimeType": mime_type or "image/jpeg"}
        if categories:
            payload["categories"] = categories

        try:
            response = requests.post(
                f"{self.base_url}/process-receipt", headers=self.headers, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            print(f"❌ OCR service error: {e}")
            raise OCRServiceError(str(e)) from e
        except ValueError as e:
            raise OCRServiceError(f"Invalid OCR response: {e}") from e

        return {
            "success": bool(body.get("success")),
            "data": ReceiptData.from_dict(body.get("data") or {}),
            "raw_text": body.get("raw_text") or "",
            "notes": body.get("notes") or "",
        }
