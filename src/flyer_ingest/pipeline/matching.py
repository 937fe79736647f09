"""Resolve extracted listings against catalog product masters and track prices."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Optional, Union

from ..config import MatchingConfig
from ..domain.models import CandidateListing, Product, ProductMaster, StoreLocale
from ..domain.normalize import LT_BOILERPLATE, normalize_product_name, trigram_similarity
from ..logging import get_logger
from .interfaces import CatalogStore, EmbeddingSignal

LOG = get_logger("pipeline-matching")


@dataclass(frozen=True)
class MatchedExisting:
    master_id: int
    score: float
    low_confidence: bool = False


@dataclass(frozen=True)
class CreatedNew:
    master_id: int


@dataclass(frozen=True)
class Rejected:
    reason: str


Resolution = Union[MatchedExisting, CreatedNew, Rejected]


@dataclass(frozen=True)
class ScoredMaster:
    master: ProductMaster
    lexical: float
    semantic: Optional[float]
    score: float
    attribute: Optional[float] = None


@dataclass
class MatchOutcome:
    resolution: Resolution
    product_id: Optional[int] = None
    product_created: bool = False
    price_written: bool = False


class MatchingEngine:
    def __init__(
        self,
        catalog: CatalogStore,
        config: MatchingConfig,
        *,
        embeddings: Optional[EmbeddingSignal] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self.embeddings = embeddings
        self._today = today

    def normalize(self, name: str, store: StoreLocale) -> str:
        return normalize_product_name(name, boilerplate=LT_BOILERPLATE | set(store.boilerplate))

    def score(self, lexical: float, semantic: Optional[float], attribute: Optional[float] = None) -> float:
        """Weighted maximum of the lexical and (optional) semantic signals.

        A brand/category agreement, when both sides carry one, adds a small
        bonus on top; the result never exceeds 1.
        """
        best = self.config.lexical_weight * lexical
        if semantic is not None:
            best = max(best, self.config.semantic_weight * semantic)
        if attribute is not None:
            best = min(1.0, best + self.config.attribute_weight * attribute)
        return best

    @staticmethod
    def attribute_similarity(listing: CandidateListing, master: ProductMaster) -> Optional[float]:
        """Brand equality (weight 0.5) and category membership (weight 0.3), scaled to 0..1.

        None when neither attribute can be compared.
        """
        earned = 0.0
        possible = 0.0
        if listing.brand and master.brand:
            possible += 0.5
            if listing.brand.strip().casefold() == master.brand.strip().casefold():
                earned += 0.5
        if listing.category and master.tags:
            possible += 0.3
            if listing.category in master.tags:
                earned += 0.3
        if not possible:
            return None
        return earned / possible

    def rank(self, listing: CandidateListing, normalized: str) -> List[ScoredMaster]:
        """Score every candidate master, best first.

        Ties go to the master with more products, then to the lowest id.
        """
        candidates: Dict[int, ProductMaster] = {
            m.master_id: m
            for m in self.catalog.find_master_candidates(
                normalized, limit=self.config.shortlist_limit, cutoff=self.config.shortlist_cutoff
            )
        }
        semantic: Dict[int, float] = {}
        if self.embeddings is not None:
            for master_id, sim in self.embeddings.nearest(listing.name, self.config.semantic_neighbours):
                semantic[master_id] = sim
                if master_id not in candidates:
                    master = self.catalog.get_master(master_id)
                    if master is not None:
                        candidates[master_id] = master
            for master_id in candidates:
                if master_id not in semantic:
                    sim = self.embeddings.similarity(listing.name, master_id)
                    if sim is not None:
                        semantic[master_id] = sim

        scored = []
        for master in candidates.values():
            lexical = trigram_similarity(normalized, master.normalized_name)
            sem = semantic.get(master.master_id)
            attr = self.attribute_similarity(listing, master)
            scored.append(ScoredMaster(master, lexical, sem, self.score(lexical, sem, attr), attr))
        scored.sort(key=lambda s: (-round(s.score, 9), -s.master.product_count, s.master.master_id))
        return scored

    def resolve(self, listing: CandidateListing, store: StoreLocale) -> Resolution:
        normalized = self.normalize(listing.name, store)
        if not normalized:
            return Rejected("name is empty after normalization")
        if listing.price is None or listing.price <= 0:
            return Rejected(f"invalid price {listing.price}")

        ranked = self.rank(listing, normalized)
        best = ranked[0] if ranked else None
        if best is not None and best.score >= self.config.accept_threshold:
            return MatchedExisting(best.master.master_id, best.score)
        if best is not None and best.score >= self.config.review_threshold:
            LOG.info(
                f"Low-confidence match '{listing.name}' -> '{best.master.name}' "
                f"(score={best.score:.3f}, lexical={best.lexical:.3f}, semantic={best.semantic})"
            )
            return MatchedExisting(best.master.master_id, best.score, low_confidence=True)

        tags = [listing.category] if listing.category else []
        master, created = self.catalog.insert_master_if_absent(listing.name, normalized, tags, brand=listing.brand)
        if not created:
            # another worker created the same normalized name first
            LOG.debug(f"Master '{normalized}' already existed; reusing id={master.master_id}")
            return MatchedExisting(master.master_id, 1.0)
        LOG.info(f"Created product master id={master.master_id} '{normalized}'")
        return CreatedNew(master.master_id)

    def apply(self, listing: CandidateListing, store: StoreLocale, *, job_id: str, listing_index: int) -> MatchOutcome:
        """Resolve listing, then record its price point and the store-specific Product row.

        Both writes are idempotent, so replaying a job after a lost lease
        leaves the catalog unchanged.
        """
        resolution = self.resolve(listing, store)
        if isinstance(resolution, Rejected):
            LOG.info(f"Rejected listing '{listing.name}' on page {listing.page_index}: {resolution.reason}")
            return MatchOutcome(resolution)

        master_id = resolution.master_id
        outcome = MatchOutcome(resolution)
        outcome.price_written = self.record_price(master_id, store.code, listing)

        product = Product(
            master_id=master_id,
            store_code=store.code,
            job_id=job_id,
            page_index=listing.page_index,
            listing_index=listing_index,
            name=listing.name,
            price=listing.price,
            unit=listing.unit,
            valid_from=listing.valid_from,
            valid_to=listing.valid_to,
            low_confidence=isinstance(resolution, MatchedExisting) and resolution.low_confidence,
            match_score=resolution.score if isinstance(resolution, MatchedExisting) else None,
        )
        outcome.product_id, outcome.product_created = self.catalog.insert_product_if_absent(product)
        return outcome

    def record_price(self, master_id: int, store_code: str, listing: CandidateListing) -> bool:
        latest = self.catalog.latest_price(master_id, store_code)
        if latest is not None and latest.price == listing.price:
            return False
        observed_on = self._today()
        written = self.catalog.insert_price_if_absent(master_id, store_code, observed_on, listing.price)
        if written:
            previous = latest.price if latest is not None else None
            LOG.info(f"Price for master={master_id} at {store_code}: {previous} -> {listing.price} on {observed_on}")
        else:
            LOG.debug(f"Price point for master={master_id} at {store_code} on {observed_on} already recorded")
        return written
