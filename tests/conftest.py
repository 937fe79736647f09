from __future__ import annotations

import sys
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
sys.path.insert(0, str(SRC_ROOT))

from flyer_ingest.catalog.db import CatalogDatabase  # noqa: E402
from flyer_ingest.domain.models import CandidateListing, StoreLocale  # noqa: E402
from flyer_ingest.pipeline.extraction import ExtractionOutcome  # noqa: E402


T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
TODAY = date(2026, 10, 19)


def make_pdf(sizes: List[Tuple[float, float]]) -> bytes:
    """Build a real PDF with one page per (width, height) in points."""
    doc = fitz.open()
    for i, (width, height) in enumerate(sizes):
        page = doc.new_page(width=width, height=height)
        page.insert_text((36, 72), f"Flyer page {i}", fontsize=18)
    data = doc.tobytes()
    doc.close()
    return data


def listing(name: str, price: str, page_index: int = 0, **extra) -> CandidateListing:
    return CandidateListing(name=name, price=Decimal(price), page_index=page_index, **extra)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedExtractor:
    """Stands in for ExtractionClient: per page, a queue of listing lists, outcomes or exceptions.

    The last entry for a page repeats once the queue is down to one item.
    """

    def __init__(self, script: Dict[int, list]) -> None:
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: Dict[int, int] = {}
        self._lock = threading.Lock()

    def extract(self, image, context, *, page_index: int, mime_type: str = "image/png") -> ExtractionOutcome:
        with self._lock:
            self.calls[page_index] = self.calls.get(page_index, 0) + 1
            steps = self.script[page_index]
            step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ExtractionOutcome):
            return step
        return ExtractionOutcome(listings=list(step), raw_response='{"products": []}')


class FakeEmbeddings:
    """Fixed semantic similarities keyed by (text, master_id)."""

    def __init__(self, sims: Optional[Dict[Tuple[str, int], float]] = None) -> None:
        self.sims = dict(sims or {})

    def nearest(self, text: str, limit: int) -> List[Tuple[int, float]]:
        hits = [(mid, sim) for (t, mid), sim in self.sims.items() if t == text]
        hits.sort(key=lambda h: -h[1])
        return hits[:limit]

    def similarity(self, text: str, master_id: int) -> Optional[float]:
        return self.sims.get((text, master_id))


@pytest.fixture
def catalog(tmp_path: Path) -> CatalogDatabase:
    return CatalogDatabase(db_path=str(tmp_path / "catalog.sqlite3"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def locale_for() -> Callable[[str], StoreLocale]:
    return lambda code: StoreLocale(code=code, name=code.upper())
