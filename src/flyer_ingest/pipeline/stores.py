"""Store adapters: find current flyers on a store's website and download them."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urljoin, urlsplit

import requests
from bs4 import BeautifulSoup

from ..config import SchedulerConfig
from ..domain.models import FlyerRef, StoreLocale
from ..errors import PipelineError, SourceQuotaError, TransientIOError
from ..logging import get_logger
from .extraction import DEFAULT_CATEGORIES

LOG = get_logger("pipeline-stores")

_RANGE_RE = re.compile(r"(\d{4})[\s.-](\d{1,2})[\s.-](\d{1,2})\s*[-–]\s*(\d{4})[\s.-](\d{1,2})[\s.-](\d{1,2})")
_ISO_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_URL_DATE_RE = re.compile(r"/(\d{4})/(\d{2})/(\d{2})/")
_PDF_URL_RE = re.compile(r"""https?://[^\s"'<>]+?\.pdf(?:\?[^\s"'<>]*)?""", re.IGNORECASE)


class StoreAdapter(Protocol):
    code: str

    def discover(self) -> List[FlyerRef]: ...

    def download(self, ref: FlyerRef) -> bytes: ...

    def localize(self) -> StoreLocale: ...


def _safe_date(y: str, m: str, d: str) -> Optional[date]:
    try:
        return date(int(y), int(m), int(d))
    except ValueError:
        return None


def validity_from_text(text: str) -> Tuple[Optional[date], Optional[date]]:
    """Parse a printed validity window such as 'Pasiūlymai galioja 2025 11 03 - 2025 11 09'."""
    if not text:
        return None, None
    m = _RANGE_RE.search(text)
    if m:
        start = _safe_date(*m.group(1, 2, 3))
        end = _safe_date(*m.group(4, 5, 6))
        if start and end and start <= end:
            return start, end
    m = _ISO_DATE_RE.search(text)
    if m:
        end = _safe_date(*m.group(1, 2, 3))
        if end:
            # single end date: assume a one-week flyer
            return end - timedelta(days=6), end
    return None, None


def validity_from_url(url: str) -> Tuple[Optional[date], Optional[date]]:
    """Upload paths like /2025/11/05/ mean the Monday..Sunday week around that day."""
    m = _URL_DATE_RE.search(url or "")
    if not m:
        return None, None
    uploaded = _safe_date(*m.group(1, 2, 3))
    if uploaded is None:
        return None, None
    monday = uploaded - timedelta(days=uploaded.weekday())
    return monday, monday + timedelta(days=6)


def _is_pdf_link(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(".pdf")


@dataclass(frozen=True)
class ListingPageSpec:
    """Where a store publishes its flyers and how to pick the PDF links out of the page."""

    code: str
    name: str
    base_url: str
    listing_path: str
    link_selectors: Tuple[str, ...]
    title_selectors: Tuple[str, ...] = ()
    date_selectors: Tuple[str, ...] = ()
    default_title: Optional[str] = None
    locale: Optional[StoreLocale] = None

    @property
    def listing_url(self) -> str:
        return urljoin(self.base_url, self.listing_path)


class ListingPageAdapter:
    """Adapter for stores that link flyer PDFs from an HTML listing page."""

    def __init__(
        self,
        spec: ListingPageSpec,
        *,
        session: Optional[requests.Session] = None,
        user_agent: str = SchedulerConfig.user_agent,
        timeout_seconds: float = SchedulerConfig.download_timeout_seconds,
        max_pdf_bytes: int = 50 * 1024 * 1024,
    ) -> None:
        self.spec = spec
        self.code = spec.code
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.max_pdf_bytes = max_pdf_bytes

    def localize(self) -> StoreLocale:
        return self.spec.locale or StoreLocale(code=self.code, name=self.spec.name, categories=DEFAULT_CATEGORIES)

    def _get(self, url: str, *, accept: str) -> requests.Response:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "lt,en;q=0.5",
            "Referer": self.spec.base_url,
        }
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout_seconds)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientIOError(f"{self.code}: GET {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise PipelineError(f"{self.code}: GET {url} failed: {exc}") from exc

        status = resp.status_code
        if status == 429:
            retry_after = None
            header = resp.headers.get("Retry-After")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            raise SourceQuotaError(f"{self.code}: HTTP 429 for {url}", source=self.code, retry_after=retry_after)
        if status >= 500 or status == 408:
            raise TransientIOError(f"{self.code}: HTTP {status} for {url}")
        if status >= 400:
            raise PipelineError(f"{self.code}: HTTP {status} for {url}")
        return resp

    def discover(self) -> List[FlyerRef]:
        url = self.spec.listing_url
        resp = self._get(url, accept="text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8")
        flyers = self.parse_listing(resp.text)
        LOG.info(f"{self.code}: found {len(flyers)} flyer(s) at {url}")
        return flyers

    def _first_text(self, soup: Any, selectors: Tuple[str, ...]) -> str:
        for selector in selectors:
            el = soup.select_one(selector)
            if el is not None:
                text = el.get_text(" ", strip=True)
                if text:
                    return text
        return ""

    def parse_listing(self, html: str) -> List[FlyerRef]:
        soup = BeautifulSoup(html, "html.parser")
        page_title = self._first_text(soup, self.spec.title_selectors)
        page_from, page_to = validity_from_text(self._first_text(soup, self.spec.date_selectors))

        seen: Dict[str, FlyerRef] = {}
        for selector in self.spec.link_selectors:
            for link in soup.select(selector):
                href = (link.get("href") or "").strip()
                if not href:
                    continue
                absolute = urljoin(self.spec.base_url, href)
                if not _is_pdf_link(absolute) or absolute in seen:
                    continue
                title = link.get_text(" ", strip=True) or link.get("title") or page_title or self.spec.default_title
                valid_from, valid_to = page_from, page_to
                if valid_from is None:
                    valid_from, valid_to = validity_from_url(absolute)
                seen[absolute] = FlyerRef(
                    store_code=self.code,
                    identity=absolute,
                    url=absolute,
                    title=title,
                    valid_from=valid_from,
                    valid_to=valid_to,
                )

        if not seen:
            # some listing pages only embed the PDF url in inline scripts
            for match in _PDF_URL_RE.finditer(html):
                absolute = match.group(0)
                if absolute not in seen:
                    valid_from, valid_to = validity_from_url(absolute)
                    seen[absolute] = FlyerRef(
                        store_code=self.code,
                        identity=absolute,
                        url=absolute,
                        title=page_title or self.spec.default_title,
                        valid_from=valid_from,
                        valid_to=valid_to,
                    )
            if seen:
                LOG.debug(f"{self.code}: no selector matched; fell back to {len(seen)} raw PDF url(s)")
        return list(seen.values())

    def download(self, ref: FlyerRef) -> bytes:
        resp = self._get(ref.url, accept="application/pdf,*/*;q=0.8")
        data = resp.content
        if len(data) > self.max_pdf_bytes:
            raise PipelineError(f"{self.code}: {ref.url} is {len(data)} bytes (limit {self.max_pdf_bytes})")
        LOG.info(f"{self.code}: downloaded {ref.url} ({len(data)} bytes)")
        return data


@dataclass
class StoreRegistry:
    """Adapters keyed by store code."""

    adapters: Dict[str, StoreAdapter] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def register(self, adapter: StoreAdapter) -> StoreAdapter:
        with self._lock:
            self.adapters[adapter.code] = adapter
        return adapter

    def get(self, code: str) -> StoreAdapter:
        try:
            return self.adapters[code]
        except KeyError:
            raise KeyError(f"no store adapter registered for '{code}'") from None

    def codes(self) -> List[str]:
        return sorted(self.adapters)

    def locale(self, code: str) -> StoreLocale:
        adapter = self.adapters.get(code)
        if adapter is None:
            return StoreLocale(code=code, name=code.upper(), categories=DEFAULT_CATEGORIES)
        return adapter.localize()


STORE_SPECS: Tuple[ListingPageSpec, ...] = (
    ListingPageSpec(
        code="iki",
        name="IKI",
        base_url="https://iki.lt",
        listing_path="/leidiniai/",
        link_selectors=(".publication .mt-4 a", "a[href$='.pdf']"),
        title_selectors=(".title-wrapper .text-center",),
        date_selectors=(".publication .date-block",),
        default_title="IKI savaitės leidinys",
        locale=StoreLocale(
            code="iki",
            name="IKI",
            categories=DEFAULT_CATEGORIES,
            boilerplate=("meilė iki", "iki express"),
            prompt_hint=(
                "IKI (LT grocery). Common visual tags: SUPER KAINA, TIK, MEILĖ IKI (loyalty hearts), "
                "IKI EXPRESS, red percentage badges."
            ),
        ),
    ),
    ListingPageSpec(
        code="maxima",
        name="MAXIMA",
        base_url="https://www.maxima.lt",
        listing_path="/leidiniai",
        link_selectors=(
            ".leaflet a",
            ".catalog-item a",
            ".promo-leaflet a",
            ".offer-card a",
            "a[href$='.pdf']",
        ),
        title_selectors=(".leaflet .title", ".catalog-item h3", "h1"),
        date_selectors=(".leaflet .date", ".catalog-item .date", ".validity"),
        default_title="MAXIMA leidinys",
        locale=StoreLocale(
            code="maxima",
            name="MAXIMA",
            categories=DEFAULT_CATEGORIES,
            boilerplate=("su aciu kortele", "ačiū kortele"),
            prompt_hint="MAXIMA (LT grocery).",
        ),
    ),
    ListingPageSpec(
        code="rimi",
        name="RIMI",
        base_url="https://www.rimi.lt",
        listing_path="/akcijos",
        link_selectors=(
            ".campaign-card a",
            ".leaflet-card a",
            ".offer-banner a",
            ".promotion-item a",
            "a[href$='.pdf']",
        ),
        title_selectors=(".campaign-card .title", ".leaflet-card h3", "h1"),
        date_selectors=(".campaign-card .date", ".leaflet-card .date"),
        default_title="RIMI leidinys",
        locale=StoreLocale(
            code="rimi",
            name="RIMI",
            categories=DEFAULT_CATEGORIES,
            boilerplate=("mano rimi",),
            prompt_hint="RIMI (LT grocery).",
        ),
    ),
)


def default_registry(
    config: Optional[SchedulerConfig] = None,
    *,
    session: Optional[requests.Session] = None,
    max_pdf_bytes: int = 50 * 1024 * 1024,
) -> StoreRegistry:
    cfg = config or SchedulerConfig()
    http = session or requests.Session()
    registry = StoreRegistry()
    for spec in STORE_SPECS:
        registry.register(
            ListingPageAdapter(
                spec,
                session=http,
                user_agent=cfg.user_agent,
                timeout_seconds=cfg.download_timeout_seconds,
                max_pdf_bytes=max_pdf_bytes,
            )
        )
    return registry
