"""Collaborator contracts consumed by the pipeline core."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence, Tuple

from ..domain.models import ExtractionJob, PriceHistoryEntry, Product, ProductMaster


class BlobStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, ref: str) -> bytes: ...

    def exists(self, ref: str) -> bool: ...


class EmbeddingSignal(Protocol):
    """Optional semantic similarity source for the matching engine."""

    def nearest(self, text: str, limit: int) -> List[Tuple[int, float]]:
        """Return (master_id, similarity in [0, 1]) pairs, best first."""
        ...

    def similarity(self, text: str, master_id: int) -> Optional[float]: ...


class CatalogStore(Protocol):
    # flyers / stores
    def ensure_store(self, code: str, name: Optional[str] = None) -> None: ...

    def record_flyer(self, store_code: str, identity: str, url: str, *, title: Optional[str] = None) -> None: ...

    # jobs
    def create_job_if_absent(self, job: ExtractionJob) -> Tuple[ExtractionJob, bool]: ...

    def get_job(self, job_id: str) -> Optional[ExtractionJob]: ...

    def save_job(self, job: ExtractionJob) -> None: ...

    def last_fingerprint(self, store_code: str, flyer_identity: str) -> Optional[str]: ...

    def record_fingerprint(self, store_code: str, flyer_identity: str, fingerprint: str, job_id: str) -> None: ...

    # masters
    def get_master(self, master_id: int) -> Optional[ProductMaster]: ...

    def get_master_by_normalized_name(self, normalized_name: str) -> Optional[ProductMaster]: ...

    def find_master_candidates(self, normalized_name: str, *, limit: int, cutoff: float) -> List[ProductMaster]: ...

    def insert_master_if_absent(
        self, name: str, normalized_name: str, tags: Sequence[str] = (), brand: Optional[str] = None
    ) -> Tuple[ProductMaster, bool]: ...

    # products / prices
    def insert_product_if_absent(self, product: Product) -> Tuple[int, bool]: ...

    def latest_price(self, master_id: int, store_code: str) -> Optional[PriceHistoryEntry]: ...

    def insert_price_if_absent(self, master_id: int, store_code: str, observed_on: date, price: Decimal) -> bool: ...


class JobQueue(Protocol):
    def enqueue(self, job_id: str, store_code: str, *, visible_at: Optional[datetime] = None) -> None: ...

    def lease(
        self,
        worker_id: str,
        *,
        exclude_stores: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional["Lease"]: ...

    def extend(self, lease: "Lease", *, now: Optional[datetime] = None) -> bool: ...

    def ack(self, lease: "Lease") -> bool: ...

    def release(self, lease: "Lease", *, visible_at: Optional[datetime] = None) -> bool: ...

    def fail(self, lease: "Lease", reason: str) -> bool: ...


class Lease(Protocol):
    job_id: str
    store_code: str
    token: str
    expires_at: datetime
