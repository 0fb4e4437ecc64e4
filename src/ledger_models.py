from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ReviewStatus(str, Enum):
    NONE = "none"
    PENDING_BUSINESS_REVIEW = "pending_business_review"
    MOVED_FROM_PERSONAL = "moved_from_personal"
    PENDING_RECEIPT_MATCH = "pending_receipt_match"


@dataclass
class Transaction:
    id: str
    user_id: str
    amount: float  # negative = outflow
    description: str
    transaction_date: str  # YYYY-MM-DD
    receipt_url: Optional[str] = None  # None = unlinked
    category_id: Optional[str] = None
    vat_amount: Optional[float] = None
    vat_rate: Optional[float] = None
    notes: str = ""
    review_status: str = ReviewStatus.NONE.value

    @classmethod
    def from_row(cls, row: Dict) -> "Transaction":
        return cls(
            id=str(row.get("id")),
            user_id=row.get("user_id"),
            amount=row.get("amount") or 0,
            description=row.get("description") or "",
            transaction_date=row.get("transaction_date") or "",
            receipt_url=row.get("receipt_url"),
            category_id=row.get("category_id"),
            vat_amount=row.get("vat_amount"),
            vat_rate=row.get("vat_rate"),
            notes=row.get("notes") or "",
            review_status=row.get("review_status") or ReviewStatus.NONE.value,
        )


@dataclass
class Receipt:
    id: str
    user_id: str
    image_url: str
    supplier_name: Optional[str] = None
    date: Optional[str] = None
    total_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    vat_rate: Optional[float] = None
    line_items: list = field(default_factory=list)
    confidence: Optional[float] = None  # 0-1, from OCR
    transaction_id: Optional[str] = None
    review_status: str = ReviewStatus.NONE.value

    @classmethod
    def from_row(cls, row: Dict) -> "Receipt":
        return cls(
            id=str(row.get("id")),
            user_id=row.get("user_id"),
            image_url=row.get("image_url") or "",
            supplier_name=row.get("supplier_name"),
            date=row.get("date"),
            total_amount=row.get("total_amount"),
            vat_amount=row.get("vat_amount"),
            vat_rate=row.get("vat_rate"),
            line_items=list(row.get("line_items") or []),
            confidence=row.get("confidence"),
            transaction_id=row.get("transaction_id"),
            review_status=row.get("review_status") or ReviewStatus.NONE.value,
        )

    def to_receipt_data(self) -> "ReceiptData":
        return ReceiptData(
            supplier_name=self.supplier_name,
            date=self.date,
            total_amount=self.total_amount,
            vat_amount=self.vat_amount,
            vat_rate=self.vat_rate,
            line_items=list(self.line_items),
            confidence=self.confidence or 0.0,
        )


@dataclass
class MatchCandidate:
    id: str
    amount: float
    description: str
    transaction_date: str
    receipt_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> "MatchCandidate":
        return cls(
            id=str(row.get("id")),
            amount=row.get("amount") or 0,
            description=row.get("description") or "",
            transaction_date=row.get("transaction_date") or "",
            receipt_url=row.get("receipt_url"),
        )


@dataclass
class MatchResult:
    receipt_id: str
    transaction_id: Optional[str]
    score: float  # 0.0-1.0, 2 decimals
    explanation: str
    auto_matched: bool


@dataclass
class UserCorrection:
    id: Optional[int]
    user_id: str
    vendor_pattern: str
    original_category: Optional[str]
    corrected_category: str
    corrected_category_id: str
    corrected_vat_rate: Optional[float] = None
    transaction_count: int = 1
    promoted_to_cache: bool = False

    @classmethod
    def from_row(cls, row: Dict) -> "UserCorrection":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            vendor_pattern=row.get("vendor_pattern"),
            original_category=row.get("original_category"),
            corrected_category=row.get("corrected_category"),
            corrected_category_id=row.get("corrected_category_id"),
            corrected_vat_rate=row.get("corrected_vat_rate"),
            transaction_count=row.get("transaction_count") or 1,
            promoted_to_cache=bool(row.get("promoted_to_cache")),
        )


@dataclass
class VendorCacheEntry:
    vendor_pattern: str
    normalized_name: str
    category: str
    vat_type: str
    vat_deductible: bool
    business_purpose: Optional[str] = None
    confidence: int = 0
    source: str = "rule"  # rule|ai|user|cross_user
    user_id: Optional[str] = None
    hit_count: int = 0
    last_seen: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> "VendorCacheEntry":
        return cls(
            vendor_pattern=row.get("vendor_pattern"),
            normalized_name=row.get("normalized_name") or row.get("vendor_pattern"),
            category=row.get("category"),
            vat_type=row.get("vat_type") or "N/A",
            vat_deductible=bool(row.get("vat_deductible")),
            business_purpose=row.get("business_purpose"),
            confidence=row.get("confidence") or 0,
            source=row.get("source") or "rule",
            user_id=row.get("user_id"),
            hit_count=row.get("hit_count") or 0,
            last_seen=row.get("last_seen"),
        )


@dataclass
class VATDeductibilityResult:
    is_deductible: bool
    reason: str
    section: Optional[str] = None


@dataclass
class BatchResult:
    total: int = 0
    updated: int = 0
    failed: int = 0


@dataclass
class ReceiptData:
    supplier_name: Optional[str] = None
    date: Optional[str] = None
    invoice_number: Optional[str] = None
    total_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    vat_rate: Optional[float] = None
    net_amount: Optional[float] = None
    line_items: List[Dict] = field(default_factory=list)
    suggested_category: Optional[str] = None
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict) -> "ReceiptData":
        data = data or {}
        return cls(
            supplier_name=data.get("supplier_name"),
            date=data.get("date"),
            invoice_number=data.get("invoice_number"),
            total_amount=data.get("total_amount"),
            vat_amount=data.get("vat_amount"),
            vat_rate=data.get("vat_rate"),
            net_amount=data.get("net_amount"),
            line_items=list(data.get("line_items") or []),
            suggested_category=data.get("suggested_category"),
            confidence=float(data.get("confidence") or 0.0),
        )
