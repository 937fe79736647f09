import re
import unicodedata
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, FrozenSet, Iterable, Optional, Set


def normalize_date_iso(value: Any) -> Optional[str]:
    """Normalize common flyer date strings to ISO YYYY-MM-DD.

    Supports:
    - YYYY-MM-DD passthrough, YYYY.MM.DD and YYYY/MM/DD
    - DD.MM.YYYY, D.M.YYYY, DD/MM/YYYY
    - Two-digit years map to 19xx for >=70 else 20xx
    Returns None for anything that is not a real calendar date.
    """
    if not value:
        return None
    v = str(value).strip()
    if not v:
        return None
    m = re.fullmatch(r"(\d{4})[-\./](\d{1,2})[-\./](\d{1,2})", v)
    if m:
        y, mth, d = m.groups()
    else:
        m = re.fullmatch(r"(\d{1,2})[\./](\d{1,2})[\./](\d{2,4})", v)
        if not m:
            return None
        d, mth, y = m.groups()
        if len(y) == 2:
            y = ("20" + y) if int(y) < 70 else ("19" + y)
    try:
        return date(int(y), int(mth), int(d)).isoformat()
    except ValueError:
        return None


_CENT = Decimal("0.01")


def parse_date(value: Any) -> Optional[date]:
    iso = normalize_date_iso(value)
    return date.fromisoformat(iso) if iso else None


def normalize_amount(val: Any) -> Optional[str]:
    """Normalize price strings to dot-decimal with two decimals.

    Handles inputs like '1,29 €', '1.29', '1.290,00', '1,290.00'. JSON numbers are
    already dot-decimal, so they skip the separator guessing and are rounded half-up.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float, Decimal)):
        num = _quantize_number(val)
        return f"{num:.2f}" if num is not None else None
    s = re.sub(r"[^0-9,.\-]", "", str(val).strip())
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        if re.search(r",\d{1,2}$", s):
            s2 = s.replace(".", "").replace(",", ".")
        elif re.search(r"\.\d{1,2}$", s):
            s2 = s.replace(",", "")
        else:
            s2 = s.replace(".", "").replace(",", ".")
    elif has_comma:
        if re.search(r",\d{1,2}$", s):
            s2 = s.replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif has_dot:
        if re.search(r"\.\d{1,2}$", s):
            s2 = s
        else:
            s2 = s.replace(".", "")
    else:
        s2 = s

    m = re.search(r"-?\d+(?:\.\d{1,2})?", s2)
    if not m:
        return None
    try:
        num = Decimal(m.group(0))
    except InvalidOperation:
        return None
    return f"{num:.2f}"


def _quantize_number(val: Any) -> Optional[Decimal]:
    try:
        num = Decimal(str(val))
        if not num.is_finite():
            return None
        return num.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def parse_price(val: Any) -> Optional[Decimal]:
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float, Decimal)):
        return _quantize_number(val)
    amount = normalize_amount(val)
    return Decimal(amount) if amount is not None else None


# Lithuanian function words that carry no product identity.
LT_STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "ir", "arba", "bet", "kad", "kaip", "su", "be", "po", "per", "nuo", "iki",
        "uz", "i", "is", "ant", "prie", "tarp", "del", "pagal", "apie", "bei",
        "taip", "pat", "jau", "dar", "tik", "net", "vis", "kiek",
    }
)

# Promotional words printed next to prices in LT flyers.
LT_BOILERPLATE: FrozenSet[str] = frozenset(
    {"akcija", "nuolaida", "kaina", "tik", "naujiena", "super", "pasiulymas", "su kortele", "aciu kortele"}
)

_UNIT_ALIASES = {
    "gr": "g",
    "g": "g",
    "kg": "kg",
    "l": "l",
    "ltr": "l",
    "ml": "ml",
    "cl": "cl",
    "vnt": "vnt",
    "vienetai": "vnt",
    "pak": "pak",
}
_UNIT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(kg|gr|g|ltr|l|ml|cl|vnt|vienetai|pak)\b\.?")


def strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def normalize_product_name(
    text: Any,
    *,
    boilerplate: Iterable[str] = (),
    stop_words: FrozenSet[str] = LT_STOP_WORDS,
) -> str:
    """Fold a raw listing name into the catalog's comparison key.

    Lowercases, strips diacritics, removes store boilerplate and stop words,
    glues quantities to their unit ("1 L" -> "1l", "500 gr" -> "500g") and
    collapses whitespace. Returns "" when nothing meaningful is left.
    """
    if not isinstance(text, str):
        return ""
    folded = strip_diacritics(text).lower()
    folded = re.sub(r"(\d),(\d)", r"\1.\2", folded)
    phrases = [strip_diacritics(p).lower().strip() for p in boilerplate]
    for phrase in sorted((p for p in phrases if p), key=len, reverse=True):
        folded = re.sub(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])", " ", folded)
    folded = _UNIT_RE.sub(lambda m: f"{m.group(1)}{_UNIT_ALIASES[m.group(2)]}", folded)
    folded = re.sub(r"[^a-z0-9.%]+", " ", folded)
    tokens = []
    for token in folded.split():
        token = token.strip(".")
        if not token or token in stop_words:
            continue
        tokens.append(token)
    return " ".join(tokens)


def trigrams(text: str) -> Set[str]:
    padded = f"  {text.lower()}  "
    return {padded[i : i + 3] for i in range(len(padded) - 2)}


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard overlap of padded character trigrams, in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    left = trigrams(a)
    right = trigrams(b)
    union = len(left | right)
    if union == 0:
        return 0.0
    return len(left & right) / union
