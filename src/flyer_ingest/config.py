from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Mapping, Optional, TypeVar

from dotenv import dotenv_values

from .errors import ConfigError
from .logging import get_logger

log = get_logger("config")

T = TypeVar("T")


@dataclass(frozen=True)
class RenderConfig:
    dpi: int = 200
    image_format: str = "png"
    jpeg_quality: int = 85
    max_page_dimension: int = 6000
    max_pdf_bytes: int = 50 * 1024 * 1024


@dataclass(frozen=True)
class ExtractionConfig:
    """Settings for the OpenAI-compatible vision endpoint."""

    api_key: str = ""
    base_url: Optional[str] = "https://openrouter.ai/api/v1"
    model_name: str = "google/gemini-2.5-flash"
    temperature: float = 0.0
    max_tokens: int = 8000
    timeout_seconds: float = 90.0
    max_response_chars: int = 200_000
    max_listings: int = 200
    max_price: Decimal = Decimal("1000")
    requests_per_minute: int = 60
    # USD per 1K tokens, from the provider price list; 0 disables cost estimates
    prompt_cost_per_1k: float = 0.0
    completion_cost_per_1k: float = 0.0


@dataclass(frozen=True)
class MatchingConfig:
    accept_threshold: float = 0.85
    review_threshold: float = 0.65
    lexical_weight: float = 1.0
    semantic_weight: float = 1.0
    # bonus for equal brand / shared category, added to the lexical-semantic maximum
    attribute_weight: float = 0.1
    shortlist_limit: int = 25
    # rapidfuzz token_set_ratio scale (0..100)
    shortlist_cutoff: float = 40.0
    semantic_neighbours: int = 10


@dataclass(frozen=True)
class JobConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 1800.0
    page_parallelism: int = 4
    page_max_attempts: int = 3
    page_retry_base_delay: float = 1.0
    quota_cooldown_seconds: float = 300.0
    # lease renewal cadence while pages are in flight
    heartbeat_interval_seconds: float = 30.0


@dataclass(frozen=True)
class SchedulerConfig:
    worker_count: int = 4
    per_store_concurrency: int = 1
    per_store_rate: int = 10
    per_store_window_seconds: float = 60.0
    lease_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 5.0
    user_agent: str = "Mozilla/5.0 (compatible; FlyerIngestBot/1.0)"
    download_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class PipelineConfig:
    render: RenderConfig = field(default_factory=RenderConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    jobs: JobConfig = field(default_factory=JobConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def validate(self) -> "PipelineConfig":
        m = self.matching
        if not (0.0 <= m.review_threshold <= m.accept_threshold <= 1.0):
            raise ConfigError(
                f"thresholds must satisfy 0 <= review ({m.review_threshold}) <= accept ({m.accept_threshold}) <= 1"
            )
        if m.lexical_weight < 0 or m.semantic_weight < 0 or m.attribute_weight < 0:
            raise ConfigError("matching weights must be non-negative")
        if self.extraction.timeout_seconds >= self.scheduler.lease_timeout_seconds:
            raise ConfigError(
                "extraction timeout must be shorter than the job lease timeout "
                f"({self.extraction.timeout_seconds}s >= {self.scheduler.lease_timeout_seconds}s)"
            )
        if self.scheduler.download_timeout_seconds >= self.scheduler.lease_timeout_seconds:
            raise ConfigError("download timeout must be shorter than the job lease timeout")
        if not (0 < self.jobs.heartbeat_interval_seconds < self.scheduler.lease_timeout_seconds):
            raise ConfigError(
                "heartbeat interval must be positive and shorter than the job lease timeout "
                f"({self.jobs.heartbeat_interval_seconds}s vs {self.scheduler.lease_timeout_seconds}s)"
            )
        if self.extraction.prompt_cost_per_1k < 0 or self.extraction.completion_cost_per_1k < 0:
            raise ConfigError("token prices must be non-negative")
        for name, value in (
            ("worker_count", self.scheduler.worker_count),
            ("per_store_concurrency", self.scheduler.per_store_concurrency),
            ("per_store_rate", self.scheduler.per_store_rate),
            ("page_parallelism", self.jobs.page_parallelism),
            ("max_attempts", self.jobs.max_attempts),
            ("page_max_attempts", self.jobs.page_max_attempts),
        ):
            if value < 1:
                raise ConfigError(f"{name} must be >= 1 (got {value})")
        if self.render.image_format not in {"png", "jpeg"}:
            raise ConfigError(f"unsupported image format: {self.render.image_format}")
        return self


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir."""
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(value) from exc


class _Settings:
    """Environment first, then .env, then the dataclass default."""

    def __init__(self, environ: Mapping[str, str], dotenv: Mapping[str, str]) -> None:
        self._environ = environ
        self._dotenv = dotenv

    def raw(self, *keys: str) -> Optional[str]:
        for source in (self._environ, self._dotenv):
            for key in keys:
                value = source.get(key)
                if value is not None and str(value).strip():
                    return str(value).strip()
        return None

    def get(self, key: str, default: T, cast: Callable[[str], T]) -> T:
        value = self.raw(key)
        if value is None:
            return default
        try:
            return cast(value)
        except ValueError as exc:
            raise ConfigError(f"{key}={value!r} is not a valid value") from exc


def load_pipeline_config(
    dotenv_dir: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """Build a validated PipelineConfig from the environment and an optional .env file."""
    env = os.environ if environ is None else environ
    s = _Settings(env, _read_dotenv(dotenv_dir or os.getcwd()))

    api_key = s.raw("OPENROUTER_API_KEY", "OPEN_ROUTER_API_KEY", "OPENAI_API_KEY") or ""
    if not api_key:
        log.warning("No extraction API key found in env or .env")

    d_render = RenderConfig()
    d_ext = ExtractionConfig()
    d_match = MatchingConfig()
    d_jobs = JobConfig()
    d_sched = SchedulerConfig()

    config = PipelineConfig(
        render=RenderConfig(
            dpi=s.get("RENDER_DPI", d_render.dpi, int),
            image_format=s.get("RENDER_IMAGE_FORMAT", d_render.image_format, str.lower),
            jpeg_quality=s.get("RENDER_JPEG_QUALITY", d_render.jpeg_quality, int),
            max_page_dimension=s.get("RENDER_MAX_PAGE_DIMENSION", d_render.max_page_dimension, int),
            max_pdf_bytes=s.get("RENDER_MAX_PDF_BYTES", d_render.max_pdf_bytes, int),
        ),
        extraction=ExtractionConfig(
            api_key=api_key,
            base_url=s.get("EXTRACTION_BASE_URL", d_ext.base_url, str),
            model_name=s.get("EXTRACTION_MODEL", d_ext.model_name, str),
            temperature=s.get("EXTRACTION_TEMPERATURE", d_ext.temperature, float),
            max_tokens=s.get("EXTRACTION_MAX_TOKENS", d_ext.max_tokens, int),
            timeout_seconds=s.get("EXTRACTION_TIMEOUT_SECONDS", d_ext.timeout_seconds, float),
            max_response_chars=s.get("EXTRACTION_MAX_RESPONSE_CHARS", d_ext.max_response_chars, int),
            max_listings=s.get("EXTRACTION_MAX_LISTINGS", d_ext.max_listings, int),
            max_price=s.get("EXTRACTION_MAX_PRICE", d_ext.max_price, _decimal),
            requests_per_minute=s.get("EXTRACTION_REQUESTS_PER_MINUTE", d_ext.requests_per_minute, int),
            prompt_cost_per_1k=s.get("EXTRACTION_PROMPT_COST_PER_1K", d_ext.prompt_cost_per_1k, float),
            completion_cost_per_1k=s.get("EXTRACTION_COMPLETION_COST_PER_1K", d_ext.completion_cost_per_1k, float),
        ),
        matching=MatchingConfig(
            accept_threshold=s.get("MATCH_ACCEPT_THRESHOLD", d_match.accept_threshold, float),
            review_threshold=s.get("MATCH_REVIEW_THRESHOLD", d_match.review_threshold, float),
            lexical_weight=s.get("MATCH_LEXICAL_WEIGHT", d_match.lexical_weight, float),
            semantic_weight=s.get("MATCH_SEMANTIC_WEIGHT", d_match.semantic_weight, float),
            attribute_weight=s.get("MATCH_ATTRIBUTE_WEIGHT", d_match.attribute_weight, float),
            shortlist_limit=s.get("MATCH_SHORTLIST_LIMIT", d_match.shortlist_limit, int),
            shortlist_cutoff=s.get("MATCH_SHORTLIST_CUTOFF", d_match.shortlist_cutoff, float),
            semantic_neighbours=s.get("MATCH_SEMANTIC_NEIGHBOURS", d_match.semantic_neighbours, int),
        ),
        jobs=JobConfig(
            max_attempts=s.get("JOB_MAX_ATTEMPTS", d_jobs.max_attempts, int),
            base_delay_seconds=s.get("JOB_BASE_DELAY_SECONDS", d_jobs.base_delay_seconds, float),
            max_delay_seconds=s.get("JOB_MAX_DELAY_SECONDS", d_jobs.max_delay_seconds, float),
            page_parallelism=s.get("PAGE_PARALLELISM", d_jobs.page_parallelism, int),
            page_max_attempts=s.get("PAGE_MAX_ATTEMPTS", d_jobs.page_max_attempts, int),
            page_retry_base_delay=s.get("PAGE_RETRY_BASE_DELAY", d_jobs.page_retry_base_delay, float),
            quota_cooldown_seconds=s.get("QUOTA_COOLDOWN_SECONDS", d_jobs.quota_cooldown_seconds, float),
            heartbeat_interval_seconds=s.get(
                "HEARTBEAT_INTERVAL_SECONDS", d_jobs.heartbeat_interval_seconds, float
            ),
        ),
        scheduler=SchedulerConfig(
            worker_count=s.get("WORKER_COUNT", d_sched.worker_count, int),
            per_store_concurrency=s.get("PER_STORE_CONCURRENCY", d_sched.per_store_concurrency, int),
            per_store_rate=s.get("PER_STORE_RATE", d_sched.per_store_rate, int),
            per_store_window_seconds=s.get("PER_STORE_WINDOW_SECONDS", d_sched.per_store_window_seconds, float),
            lease_timeout_seconds=s.get("LEASE_TIMEOUT_SECONDS", d_sched.lease_timeout_seconds, float),
            poll_interval_seconds=s.get("POLL_INTERVAL_SECONDS", d_sched.poll_interval_seconds, float),
            user_agent=s.get("SCRAPER_USER_AGENT", d_sched.user_agent, str),
            download_timeout_seconds=s.get("DOWNLOAD_TIMEOUT_SECONDS", d_sched.download_timeout_seconds, float),
        ),
    )
    return config.validate()
