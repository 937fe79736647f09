from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..domain.models import CandidateListing
from ..domain.normalize import parse_date, parse_price
from ..errors import ListingValidationError
from ..logging import get_logger


LOG = get_logger("pipeline-parser")


@dataclass
class ParsedPage:
    listings: List[CandidateListing] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    currency: Optional[str] = None


def _norm_s(s: Any) -> Optional[str]:
    return " ".join(s.split()) if isinstance(s, str) and s.strip() else None


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _confidence(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.5
    try:
        c = float(value)
    except (TypeError, ValueError):
        return 0.5
    if c != c:  # NaN
        return 0.5
    return min(1.0, max(0.0, c))


def _discount(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        pct = int(round(abs(float(str(value).replace("%", "").replace(",", ".").strip()))))
    except ValueError:
        return None
    return pct if 1 <= pct <= 99 else None


def parse_listings_payload(
    payload: Any,
    *,
    page_index: int,
    currency: str = "EUR",
    max_listings: int = 200,
    max_price: Decimal = Decimal("1000"),
) -> ParsedPage:
    """Validate untrusted model output and turn it into CandidateListings.

    Accepted shapes:
    - {"products": [{"name", "price", "unit", "valid_from", "valid_to", ...}]}
    - {"promotions": [{"name_lt", "price_eur", "original_price_eur", ...}], "page_meta": {...}}

    Structural problems raise ListingValidationError. Individual items that
    fail validation are dropped and reported in `dropped`.
    """
    if not isinstance(payload, dict):
        raise ListingValidationError("payload must be a JSON object")

    items = payload.get("products")
    if items is None:
        items = payload.get("promotions")
    if items is None:
        raise ListingValidationError("payload has neither 'products' nor 'promotions'")
    if not isinstance(items, list):
        raise ListingValidationError("'products' must be a list")
    if len(items) > max_listings:
        raise ListingValidationError(f"{len(items)} listings exceeds ceiling of {max_listings}")

    meta = payload.get("page_meta")
    if not isinstance(meta, dict):
        meta = {}
    page_currency = (_norm_s(meta.get("currency")) or _norm_s(payload.get("currency")) or currency).upper()
    if page_currency != currency.upper():
        LOG.warning(f"Page {page_index}: model reported currency {page_currency}, expected {currency}")
    default_from = parse_date(meta.get("valid_from"))
    default_to = parse_date(meta.get("valid_to"))

    result = ParsedPage(currency=page_currency)
    for idx, it in enumerate(items):
        if not isinstance(it, dict):
            result.dropped.append(f"items[{idx}] is not an object")
            continue
        name = _norm_s(_first(it, "name", "name_lt", "product_name"))
        if not name:
            result.dropped.append(f"items[{idx}].name missing")
            continue
        price = parse_price(_first(it, "price", "price_eur"))
        if price is None or price <= 0:
            result.dropped.append(f"items[{idx}].price missing or not positive")
            continue
        if price > max_price:
            result.dropped.append(f"items[{idx}].price {price} above ceiling {max_price}")
            continue

        original = parse_price(_first(it, "original_price", "original_price_eur"))
        if original is not None and (original <= 0 or original > max_price):
            original = None

        valid_from = parse_date(it.get("valid_from")) or default_from
        valid_to = parse_date(it.get("valid_to")) or default_to
        if valid_from and valid_to and valid_from > valid_to:
            LOG.debug(f"Page {page_index} item {idx}: reversed validity window dropped")
            valid_from = valid_to = None

        unit = _norm_s(_first(it, "unit_size", "unit", "quantity"))
        result.listings.append(
            CandidateListing(
                name=name,
                price=price,
                page_index=page_index,
                unit=unit,
                valid_from=valid_from,
                valid_to=valid_to,
                confidence=_confidence(it.get("confidence")),
                raw_text=_norm_s(_first(it, "raw_text", "discount_text")),
                original_price=original,
                discount_pct=_discount(it.get("discount_pct")),
                category=_norm_s(_first(it, "category", "category_guess_lt")),
                brand=_norm_s(it.get("brand")),
            )
        )

    if result.dropped:
        LOG.info(f"Page {page_index}: kept {len(result.listings)} listing(s), dropped {len(result.dropped)}")
    return result
