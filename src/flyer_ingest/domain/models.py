from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    DISCOVERED = "DISCOVERED"
    RENDERING = "RENDERING"
    EXTRACTING = "EXTRACTING"
    AGGREGATING = "AGGREGATING"
    MATCHING = "MATCHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class PageStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class CandidateListing:
    name: str
    price: Decimal
    page_index: int
    unit: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    confidence: float = 0.5
    raw_text: Optional[str] = None
    original_price: Optional[Decimal] = None
    discount_pct: Optional[int] = None
    category: Optional[str] = None
    brand: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "price": str(self.price),
            "page_index": self.page_index,
            "unit": self.unit,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_to": self.valid_to.isoformat() if self.valid_to else None,
            "confidence": self.confidence,
            "raw_text": self.raw_text,
            "original_price": str(self.original_price) if self.original_price is not None else None,
            "discount_pct": self.discount_pct,
            "category": self.category,
            "brand": self.brand,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateListing":
        def _d(value: Any) -> Optional[date]:
            return date.fromisoformat(value) if value else None

        original = data.get("original_price")
        return cls(
            name=data["name"],
            price=Decimal(data["price"]),
            page_index=int(data["page_index"]),
            unit=data.get("unit"),
            valid_from=_d(data.get("valid_from")),
            valid_to=_d(data.get("valid_to")),
            confidence=float(data.get("confidence", 0.5)),
            raw_text=data.get("raw_text"),
            original_price=Decimal(original) if original is not None else None,
            discount_pct=data.get("discount_pct"),
            category=data.get("category"),
            brand=data.get("brand"),
        )


@dataclass
class TokenUsage:
    """Model tokens and estimated cost (USD) for one or more completion calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: "TokenUsage") -> "TokenUsage":
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.cost += other.cost
        self.calls += other.calls
        return self


@dataclass
class PageResult:
    page_index: int
    status: PageStatus = PageStatus.PENDING
    image_ref: Optional[str] = None
    listings: List[CandidateListing] = field(default_factory=list)
    raw_response: Optional[str] = None
    attempts: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ExtractionJob:
    job_id: str
    store_code: str
    flyer_identity: str
    source_ref: str
    state: JobState = JobState.DISCOVERED
    attempt_count: int = 1
    max_attempts: int = 3
    next_eligible_at: Optional[datetime] = None
    fingerprint: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_summary: Optional[str] = None
    failure_reason: Optional[str] = None
    skipped: bool = False
    pages: List[PageResult] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def page(self, index: int) -> Optional[PageResult]:
        for p in self.pages:
            if p.page_index == index:
                return p
        return None

    def usage(self) -> TokenUsage:
        total = TokenUsage()
        for p in self.pages:
            total.add(p.usage)
        return total


@dataclass
class ProductMaster:
    master_id: int
    name: str
    normalized_name: str
    tags: List[str] = field(default_factory=list)
    product_count: int = 0
    brand: Optional[str] = None


@dataclass
class Product:
    master_id: int
    store_code: str
    job_id: str
    page_index: int
    listing_index: int
    name: str
    price: Decimal
    unit: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    low_confidence: bool = False
    match_score: Optional[float] = None
    product_id: Optional[int] = None


@dataclass(frozen=True)
class PriceHistoryEntry:
    master_id: int
    store_code: str
    observed_on: date
    price: Decimal


@dataclass(frozen=True)
class FlyerRef:
    store_code: str
    identity: str
    url: str
    title: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None


@dataclass(frozen=True)
class StoreLocale:
    """Per-store hints for the extraction prompt and name normalization."""

    code: str
    name: str
    locale: str = "lt-LT"
    currency: str = "EUR"
    categories: Tuple[str, ...] = ()
    boilerplate: Tuple[str, ...] = ()
    prompt_hint: str = ""
