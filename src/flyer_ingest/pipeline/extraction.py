"""Vision-model client that turns one flyer page image into candidate listings."""

from __future__ import annotations

import base64
import json
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..config import ExtractionConfig
from ..domain.models import CandidateListing, StoreLocale, TokenUsage
from ..errors import ExtractionError, ExtractionErrorKind, ListingValidationError
from ..logging import get_logger
from .parser import parse_listings_payload
from .ratelimit import SlidingWindowLimiter

LOG = get_logger("pipeline-extraction")


DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "mėsa ir žuvis",
    "pieno produktai",
    "duona ir konditerija",
    "vaisiai ir daržovės",
    "gėrimai",
    "šaldyti produktai",
    "konservai",
    "kruopos ir makaronai",
    "saldumynai",
    "higienos prekės",
    "namų ūkio prekės",
    "alkoholiniai gėrimai",
)


@dataclass(frozen=True)
class ExtractionContext:
    store_code: str
    locale: str = "lt-LT"
    currency: str = "EUR"
    categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    hint: str = ""

    @classmethod
    def from_locale(cls, locale: StoreLocale) -> "ExtractionContext":
        return cls(
            store_code=locale.code,
            locale=locale.locale,
            currency=locale.currency,
            categories=locale.categories or DEFAULT_CATEGORIES,
            hint=locale.prompt_hint,
        )


@dataclass
class ExtractionOutcome:
    listings: List[CandidateListing] = field(default_factory=list)
    raw_response: Optional[str] = None
    strict_retry_used: bool = False
    dropped: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)


def _b64_data_url(image: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []

    # 1) fenced code blocks first (```json ... ```)
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    # 2) the full object slice
    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def _schema_hint() -> str:
    return json.dumps(
        {
            "page_meta": {"currency": "EUR", "valid_from": "YYYY-MM-DD|null", "valid_to": "YYYY-MM-DD|null"},
            "products": [
                {
                    "name": "exact product text as printed",
                    "price": "X,XX",
                    "original_price": "X,XX|null",
                    "discount_pct": "integer|null",
                    "unit": "e.g. '1 l', '500 g', 'vnt.'|null",
                    "brand": "string|null",
                    "category": "one of the allowed categories|null",
                    "valid_from": "YYYY-MM-DD|null",
                    "valid_to": "YYYY-MM-DD|null",
                    "raw_text": "text printed near the price",
                    "confidence": 0.0,
                }
            ],
        },
        ensure_ascii=False,
        indent=2,
    )


def build_prompt(context: ExtractionContext, *, strict: bool = False) -> str:
    categories = ", ".join(context.categories)
    lines = [
        "## Task",
        "You read one page of a retail store's promotional flyer and list every product offer on it.",
        f"Store: {context.store_code}. Locale: {context.locale}. Prices are in {context.currency}.",
        "Copy product names exactly as printed, in the original language. Do not translate.",
        "Use the promotional (current) price as `price`; the crossed-out price goes to `original_price`.",
        f"Allowed categories: {categories}.",
        "Skip decorative text, store slogans and loyalty-program banners without a concrete price.",
        "Return ONLY a single JSON object with a `products` list (and optional `page_meta`).",
    ]
    if context.hint:
        lines.append(f"Store notes: {context.hint}")
    if strict:
        lines += [
            "",
            "Your previous answer could not be parsed. Respond with JSON that matches this shape exactly,",
            "with no markdown fences and no prose before or after it:",
            _schema_hint(),
        ]
    return "\n".join(lines)


def _retry_after_seconds(exc: APIStatusError) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ExtractionClient:
    """OpenAI-compatible chat-completions client for flyer page images.

    Retries are not done here except for the single stricter-prompt retry on
    unparseable output; transient and quota errors are raised to the caller
    as typed ExtractionError values.

    Every call reports the tokens it used. The outcome (or the raised error)
    carries the usage of that page, and usage_totals() keeps the running sum
    for the client's lifetime.
    """

    def __init__(
        self,
        config: ExtractionConfig,
        *,
        client: Any = None,
        limiter: Optional[SlidingWindowLimiter] = None,
    ) -> None:
        self.config = config
        self._http_client: Optional[httpx.Client] = None
        if client is None:
            self._http_client = httpx.Client(
                timeout=httpx.Timeout(config.timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=30),
            )
            client = OpenAI(
                api_key=config.api_key or "missing-key",
                base_url=config.base_url,
                http_client=self._http_client,
                max_retries=0,
            )
        self._client = client
        self._limiter = limiter
        self._totals = TokenUsage()
        self._totals_lock = threading.Lock()

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def usage_totals(self) -> TokenUsage:
        with self._totals_lock:
            return TokenUsage().add(self._totals)

    def extract(
        self,
        image: bytes,
        context: ExtractionContext,
        *,
        page_index: int,
        mime_type: str = "image/png",
    ) -> ExtractionOutcome:
        data_url = _b64_data_url(image, mime_type)
        usage = TokenUsage()
        try:
            try:
                outcome = self._attempt(data_url, context, page_index, usage, strict=False)
            except ExtractionError as exc:
                if exc.kind is not ExtractionErrorKind.INVALID_RESPONSE:
                    raise
                LOG.warning(f"Page {page_index}: invalid model output ({exc}); retrying once with strict prompt")
                outcome = self._attempt(data_url, context, page_index, usage, strict=True)
                outcome.strict_retry_used = True
        except ExtractionError as exc:
            exc.usage = usage
            raise
        outcome.usage = usage
        return outcome

    def _attempt(
        self,
        data_url: str,
        context: ExtractionContext,
        page_index: int,
        usage: TokenUsage,
        *,
        strict: bool,
    ) -> ExtractionOutcome:
        text = self._complete(data_url, build_prompt(context, strict=strict), page_index, usage)
        if len(text) > self.config.max_response_chars:
            raise ExtractionError(
                ExtractionErrorKind.INVALID_RESPONSE,
                f"response of {len(text)} chars exceeds ceiling {self.config.max_response_chars}",
            )
        try:
            payload = json.loads(text)
        except ValueError:
            LOG.debug(f"JSON parse failed for page {page_index}; attempting fallback (first 300 chars: {text[:300]!r})")
            payload = _scavenge_json_block(text)
        if payload is None:
            raise ExtractionError(ExtractionErrorKind.INVALID_RESPONSE, "response is not JSON", raw_response=text)
        try:
            parsed = parse_listings_payload(
                payload,
                page_index=page_index,
                currency=context.currency,
                max_listings=self.config.max_listings,
                max_price=self.config.max_price,
            )
        except ListingValidationError as exc:
            raise ExtractionError(ExtractionErrorKind.INVALID_RESPONSE, str(exc), raw_response=text) from exc
        return ExtractionOutcome(listings=parsed.listings, raw_response=text, dropped=len(parsed.dropped))

    def _record_usage(self, completion: Any, usage: TokenUsage) -> TokenUsage:
        raw = getattr(completion, "usage", None)
        prompt_tokens = int(getattr(raw, "prompt_tokens", None) or 0)
        completion_tokens = int(getattr(raw, "completion_tokens", None) or 0)
        call = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=(
                prompt_tokens * self.config.prompt_cost_per_1k
                + completion_tokens * self.config.completion_cost_per_1k
            )
            / 1000.0,
            calls=1,
        )
        usage.add(call)
        with self._totals_lock:
            self._totals.add(call)
        return call

    def _complete(self, data_url: str, prompt: str, page_index: int, usage: TokenUsage) -> str:
        if self._limiter is not None:
            if not self._limiter.acquire(self.config.model_name, timeout=self.config.timeout_seconds):
                raise ExtractionError(
                    ExtractionErrorKind.TRANSIENT,
                    f"timed out waiting for a request slot for {self.config.model_name}",
                )
        messages: List[Dict[str, Any]] = [
            {
                "role": "system",
                "content": "You are a strict JSON generator. Output ONLY a single JSON object. No prose, no markdown fences.",
            },
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ]
        t0 = time.perf_counter()
        try:
            completion = self._client.chat.completions.create(
                model=self.config.model_name,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                response_format={"type": "json_object"},
                timeout=self.config.timeout_seconds,
            )
        except (APIConnectionError, APITimeoutError) as exc:
            LOG.warning(f"Network/timeout calling model for page {page_index}: {exc}")
            raise ExtractionError(ExtractionErrorKind.TRANSIENT, f"network error: {exc}") from exc
        except APIStatusError as exc:
            status = getattr(exc, "status_code", None) or 0
            body = getattr(getattr(exc, "response", None), "text", None)
            LOG.warning(f"Model API returned {status} for page {page_index}. Body preview: {(body or '')[:300]!r}")
            if status == 429:
                raise ExtractionError(
                    ExtractionErrorKind.QUOTA_EXCEEDED,
                    f"provider rate limit (HTTP {status})",
                    retry_after=_retry_after_seconds(exc),
                ) from exc
            if status >= 500 or status in (408, 409):
                raise ExtractionError(ExtractionErrorKind.TRANSIENT, f"provider error HTTP {status}") from exc
            # auth and request errors; the same request would be rejected again
            raise ExtractionError(
                ExtractionErrorKind.REQUEST_REJECTED, f"provider rejected the request (HTTP {status})"
            ) from exc

        call = self._record_usage(completion, usage)
        choices = getattr(completion, "choices", None) or []
        choice = choices[0] if choices else None
        message = getattr(choice, "message", None)
        text = getattr(message, "content", None)
        LOG.info(
            f"Page {page_index}: completion in {time.perf_counter() - t0:.2f}s "
            f"id={getattr(completion, 'id', None)} tokens={call.total_tokens} cost=${call.cost:.4f}"
        )
        if getattr(choice, "finish_reason", None) == "length":
            raise ExtractionError(ExtractionErrorKind.INVALID_RESPONSE, "response truncated (finish_reason=length)", raw_response=text)
        if not isinstance(text, str) or not text.strip():
            raise ExtractionError(ExtractionErrorKind.INVALID_RESPONSE, "empty response")
        return text
