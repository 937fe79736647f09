"""Extraction job lifecycle: render, fan out page extraction, aggregate, match.

Retry state lives on the job row (attempt_count, next_eligible_at) so a job
can be picked up again by any worker after a restart or a lost lease.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from ..config import PipelineConfig
from ..domain.models import (
    CandidateListing,
    ExtractionJob,
    JobState,
    PageResult,
    PageStatus,
    StoreLocale,
    TokenUsage,
    utcnow,
)
from ..errors import (
    CatalogConflict,
    ExtractionError,
    ExtractionErrorKind,
    PipelineError,
    RenderError,
    SourceQuotaError,
    TerminalJobFailure,
    TransientIOError,
    summarize_error,
)
from ..logging import get_logger
from .extraction import ExtractionClient, ExtractionContext
from .interfaces import BlobStore, CatalogStore
from .matching import CreatedNew, MatchingEngine, Rejected
from .render import PdfRenderer, RenderedPage

LOG = get_logger("pipeline-jobs")


class Disposition(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY = "RETRY"
    QUOTA = "QUOTA"
    # lease lost mid-run; another worker owns the job now
    ABANDONED = "ABANDONED"


@dataclass
class JobOutcome:
    job: ExtractionJob
    disposition: Disposition
    retry_at: Optional[datetime] = None
    cooldown_store: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    matched: int = 0
    created: int = 0
    rejected: int = 0


class InvalidTransition(PipelineError):
    pass


class LeaseLost(PipelineError):
    pass


class _AllPagesTransient(TransientIOError):
    pass


_LIVE = (
    JobState.DISCOVERED,
    JobState.RENDERING,
    JobState.EXTRACTING,
    JobState.AGGREGATING,
    JobState.MATCHING,
    JobState.RETRYING,
)

_ALLOWED: Dict[JobState, Tuple[JobState, ...]] = {
    JobState.DISCOVERED: (JobState.RENDERING,),
    # RENDERING -> COMPLETED is the unchanged-fingerprint no-op
    JobState.RENDERING: (JobState.EXTRACTING, JobState.COMPLETED, JobState.DISCOVERED),
    JobState.EXTRACTING: (JobState.AGGREGATING, JobState.DISCOVERED),
    JobState.AGGREGATING: (JobState.MATCHING, JobState.DISCOVERED),
    JobState.MATCHING: (JobState.COMPLETED, JobState.DISCOVERED),
    JobState.RETRYING: (JobState.DISCOVERED,),
    JobState.COMPLETED: (),
    JobState.FAILED: (),
}


def new_job(store_code: str, flyer_identity: str, source_ref: str, *, max_attempts: int = 3) -> ExtractionJob:
    return ExtractionJob(
        job_id=uuid.uuid4().hex,
        store_code=store_code,
        flyer_identity=flyer_identity,
        source_ref=source_ref,
        max_attempts=max_attempts,
    )


def fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def backoff_delay(failed_attempt: int, base_seconds: float, max_seconds: float) -> float:
    """base * 2^(failed_attempt - 1), capped."""
    return min(base_seconds * (2 ** max(0, failed_attempt - 1)), max_seconds)


@dataclass
class _PageWork:
    status: PageStatus
    listings: List[CandidateListing] = field(default_factory=list)
    raw_response: Optional[str] = None
    attempts: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    quota: Optional[ExtractionError] = None
    usage: TokenUsage = field(default_factory=TokenUsage)


class JobRunner:
    """Drives one ExtractionJob from pickup to a terminal or holding state."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        catalog: CatalogStore,
        blobs: BlobStore,
        renderer: PdfRenderer,
        extractor: ExtractionClient,
        matcher: MatchingEngine,
        locale_for: Callable[[str], StoreLocale],
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.blobs = blobs
        self.renderer = renderer
        self.extractor = extractor
        self.matcher = matcher
        self.locale_for = locale_for
        self.clock = clock
        self.sleep = sleep

    # ---------------- public API ----------------
    def run(self, job_id: str, *, heartbeat: Optional[Callable[[], bool]] = None) -> JobOutcome:
        job = self.catalog.get_job(job_id)
        if job is None:
            raise KeyError(f"unknown job {job_id}")
        if job.is_terminal:
            LOG.info(f"Job {job_id} already {job.state.value}; nothing to do")
            return self._terminal_outcome(job)
        if job.state is JobState.RETRYING and job.next_eligible_at and job.next_eligible_at > self.clock():
            LOG.info(f"Job {job_id} not eligible until {job.next_eligible_at.isoformat()}")
            return JobOutcome(job, Disposition.RETRY, retry_at=job.next_eligible_at)

        ctx = _RunContext(self, job, heartbeat)
        try:
            return self._drive(ctx)
        except (LeaseLost, CatalogConflict) as exc:
            return self._lost(ctx, exc)
        except SourceQuotaError as exc:
            settle = partial(self._hold_for_quota, ctx, exc)
        except TransientIOError as exc:
            settle = partial(self._retry_or_fail, ctx, exc)
        except TerminalJobFailure as exc:
            settle = partial(self._fail, ctx, exc.reason, summarize_error(exc))
        except Exception as exc:
            LOG.exception(f"Unexpected error while processing job {job_id}")
            settle = partial(self._fail, ctx, "InternalError", summarize_error(exc))
        try:
            return settle()
        except (LeaseLost, CatalogConflict) as exc:
            return self._lost(ctx, exc)

    def _lost(self, ctx: "_RunContext", exc: PipelineError) -> JobOutcome:
        job = ctx.job
        if isinstance(exc, LeaseLost):
            LOG.warning(f"Lease lost for job {job.job_id}; abandoning this run")
            return JobOutcome(job, Disposition.ABANDONED)
        LOG.info(f"Job {job.job_id} was finished by another worker ({exc})")
        current = self.catalog.get_job(job.job_id) or job
        if current.is_terminal:
            return self._terminal_outcome(current)
        return JobOutcome(current, Disposition.ABANDONED)

    # ---------------- lifecycle ----------------
    def _drive(self, ctx: "_RunContext") -> JobOutcome:
        job = ctx.job
        if job.state is JobState.RETRYING:
            ctx.transition(JobState.DISCOVERED)
        elif job.state is not JobState.DISCOVERED:
            LOG.warning(f"Job {job.job_id} found in {job.state.value}; resuming from pickup")
            ctx.transition(JobState.DISCOVERED)

        ctx.transition(JobState.RENDERING, started=True)
        pdf = self._load_source(job)
        job.fingerprint = fingerprint(pdf)
        previous = self.catalog.last_fingerprint(job.store_code, job.flyer_identity)
        if previous == job.fingerprint:
            LOG.info(f"Job {job.job_id}: flyer {job.flyer_identity} unchanged ({job.fingerprint[:8]}); skipping")
            job.skipped = True
            ctx.transition(JobState.COMPLETED, finished=True)
            return JobOutcome(job, Disposition.COMPLETED)

        try:
            pages = self.renderer.render(pdf)
        except RenderError as exc:
            raise TerminalJobFailure("DocumentCorrupt", str(exc)) from exc

        ctx.transition(JobState.EXTRACTING)
        locale = self.locale_for(job.store_code)
        quota = self._extract_pages(ctx, pages, ExtractionContext.from_locale(locale))
        ctx.save()
        if quota is not None:
            raise SourceQuotaError(str(quota), source=job.store_code, retry_after=quota.retry_after)

        succeeded = [p for p in job.pages if p.status is PageStatus.SUCCEEDED]
        if not succeeded:
            failed = [p for p in job.pages if p.status is PageStatus.FAILED]
            if failed and all(p.error_kind == ExtractionErrorKind.TRANSIENT.value for p in failed):
                raise _AllPagesTransient(f"all {len(failed)} page(s) failed with transient errors")
            raise TerminalJobFailure("AllPagesFailed", f"none of {len(job.pages)} page(s) produced listings")

        ctx.transition(JobState.AGGREGATING)
        ordered: List[Tuple[CandidateListing, int]] = []
        for page in sorted(succeeded, key=lambda p: p.page_index):
            for position, listing in enumerate(page.listings):
                ordered.append((listing, position))
        LOG.info(
            f"Job {job.job_id}: {len(ordered)} listing(s) from {len(succeeded)}/{len(job.pages)} page(s)"
        )

        ctx.transition(JobState.MATCHING)
        outcome = JobOutcome(job, Disposition.COMPLETED)
        for n, (listing, position) in enumerate(ordered, start=1):
            try:
                result = self.matcher.apply(listing, locale, job_id=job.job_id, listing_index=position)
            except sqlite3.OperationalError as exc:
                LOG.warning(f"Job {job.job_id}: catalog error while matching: {exc}")
                raise TransientIOError("catalog unavailable during matching") from exc
            if isinstance(result.resolution, Rejected):
                outcome.rejected += 1
            elif isinstance(result.resolution, CreatedNew):
                outcome.created += 1
            else:
                outcome.matched += 1
            if n % 25 == 0:
                ctx.beat()

        self.catalog.record_fingerprint(job.store_code, job.flyer_identity, job.fingerprint, job.job_id)
        job.error_summary = None
        ctx.transition(JobState.COMPLETED, finished=True)
        usage = job.usage()
        LOG.info(
            f"Job {job.job_id} completed: matched={outcome.matched} created={outcome.created} "
            f"rejected={outcome.rejected} tokens={usage.total_tokens} calls={usage.calls} cost=${usage.cost:.4f}"
        )
        return outcome

    def _load_source(self, job: ExtractionJob) -> bytes:
        try:
            return self.blobs.get(job.source_ref)
        except KeyError as exc:
            raise TerminalJobFailure("SourceMissing", f"source blob {job.source_ref} not found") from exc
        except OSError as exc:
            LOG.warning(f"Job {job.job_id}: reading {job.source_ref} failed: {exc}")
            raise TransientIOError(f"flyer PDF {job.source_ref} could not be read") from exc

    # ---------------- page fan-out ----------------
    def _extract_pages(self, ctx: "_RunContext", pages, context: ExtractionContext) -> Optional[ExtractionError]:
        """Extract every page not already succeeded, with bounded parallelism.

        Results land in job.pages keyed by page index; completion order does
        not matter. Returns the first quota error seen, if any, after which
        no further pages are submitted.
        The lease is renewed every heartbeat interval while pages are in
        flight, even when no page finishes in that time.
        """
        job = ctx.job
        parallelism = max(1, self.config.jobs.page_parallelism)
        interval = self.config.jobs.heartbeat_interval_seconds
        quota: Optional[ExtractionError] = None
        in_flight: Dict[Future, int] = {}

        def _collect(done) -> None:
            nonlocal quota
            for fut in done:
                index = in_flight.pop(fut)
                work: _PageWork = fut.result()
                self._store_page(job, index, work)
                if work.quota is not None and quota is None:
                    quota = work.quota

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix=f"page-{job.job_id[:8]}") as pool:
            for rendered in pages:
                existing = job.page(rendered.index)
                if existing is not None and existing.status is PageStatus.SUCCEEDED:
                    LOG.debug(f"Job {job.job_id}: page {rendered.index} already succeeded; keeping result")
                    continue
                if rendered.error is not None:
                    self._store_page(
                        job,
                        rendered.index,
                        _PageWork(PageStatus.FAILED, error_kind="render", error_message=str(rendered.error)),
                    )
                    continue
                if quota is not None:
                    self._store_page(job, rendered.index, _PageWork(PageStatus.PENDING))
                    continue
                image_ref = self.blobs.put(
                    f"jobs/{job.job_id}/pages/{rendered.index:04d}.{self.renderer.config.image_format}",
                    rendered.image,
                )
                page = self._page_slot(job, rendered.index)
                page.image_ref = image_ref
                while len(in_flight) >= parallelism:
                    done, _ = wait(list(in_flight), timeout=interval, return_when=FIRST_COMPLETED)
                    _collect(done)
                    ctx.beat()
                in_flight[pool.submit(self._extract_page, rendered, context)] = rendered.index
            while in_flight:
                done, _ = wait(list(in_flight), timeout=interval, return_when=FIRST_COMPLETED)
                _collect(done)
                ctx.beat()
        job.pages.sort(key=lambda p: p.page_index)
        return quota

    def _extract_page(self, rendered: RenderedPage, context: ExtractionContext) -> _PageWork:
        max_attempts = max(1, self.config.jobs.page_max_attempts)
        attempt = 0
        usage = TokenUsage()
        while True:
            attempt += 1
            try:
                result = self.extractor.extract(
                    rendered.image, context, page_index=rendered.index, mime_type=rendered.mime_type
                )
            except ExtractionError as exc:
                if exc.usage is not None:
                    usage.add(exc.usage)
                if exc.kind is ExtractionErrorKind.QUOTA_EXCEEDED:
                    return _PageWork(
                        PageStatus.PENDING,
                        attempts=attempt,
                        error_kind=exc.kind.value,
                        error_message=str(exc),
                        quota=exc,
                        usage=usage,
                    )
                if exc.kind is ExtractionErrorKind.TRANSIENT and attempt < max_attempts:
                    delay = backoff_delay(attempt, self.config.jobs.page_retry_base_delay, self.config.jobs.max_delay_seconds)
                    LOG.warning(
                        f"Page {rendered.index} attempt {attempt}/{max_attempts} failed ({exc}); retrying in {delay:.1f}s"
                    )
                    self.sleep(delay)
                    continue
                LOG.warning(f"Page {rendered.index} failed after {attempt} attempt(s): {exc}")
                return _PageWork(
                    PageStatus.FAILED,
                    raw_response=exc.raw_response,
                    attempts=attempt,
                    error_kind=exc.kind.value,
                    error_message=str(exc),
                    usage=usage,
                )
            return _PageWork(
                PageStatus.SUCCEEDED,
                listings=result.listings,
                raw_response=result.raw_response,
                attempts=attempt,
                usage=usage.add(result.usage),
            )

    @staticmethod
    def _page_slot(job: ExtractionJob, index: int) -> PageResult:
        page = job.page(index)
        if page is None:
            page = PageResult(page_index=index)
            job.pages.append(page)
        return page

    def _store_page(self, job: ExtractionJob, index: int, work: _PageWork) -> None:
        page = self._page_slot(job, index)
        page.status = work.status
        page.listings = list(work.listings)
        page.raw_response = work.raw_response
        page.attempts += work.attempts
        page.error_kind = work.error_kind
        page.error_message = work.error_message
        page.usage.add(work.usage)

    # ---------------- retry / failure ----------------
    def _retry_or_fail(self, ctx: "_RunContext", exc: TransientIOError) -> JobOutcome:
        job = ctx.job
        if job.attempt_count >= job.max_attempts:
            reason = "AllPagesFailed" if isinstance(exc, _AllPagesTransient) else "AttemptsExhausted"
            return self._fail(ctx, reason, summarize_error(exc))
        failed_attempt = job.attempt_count
        job.attempt_count += 1
        delay = backoff_delay(failed_attempt, self.config.jobs.base_delay_seconds, self.config.jobs.max_delay_seconds)
        job.next_eligible_at = self.clock() + timedelta(seconds=delay)
        job.error_summary = summarize_error(exc)
        ctx.transition(JobState.RETRYING)
        LOG.warning(
            f"Job {job.job_id} attempt {failed_attempt}/{job.max_attempts} failed: {job.error_summary}; "
            f"retrying after {delay:.0f}s"
        )
        return JobOutcome(job, Disposition.RETRY, retry_at=job.next_eligible_at)

    def _hold_for_quota(self, ctx: "_RunContext", exc: SourceQuotaError) -> JobOutcome:
        job = ctx.job
        cooldown = max(self.config.jobs.quota_cooldown_seconds, exc.retry_after or 0.0)
        until = self.clock() + timedelta(seconds=cooldown)
        job.next_eligible_at = until
        job.error_summary = summarize_error(exc)
        ctx.transition(JobState.RETRYING)
        LOG.warning(f"Job {job.job_id}: source {job.store_code} over quota; cooling down until {until.isoformat()}")
        return JobOutcome(
            job, Disposition.QUOTA, retry_at=until, cooldown_store=job.store_code, cooldown_until=until
        )

    def _fail(self, ctx: "_RunContext", reason: str, summary: str) -> JobOutcome:
        job = ctx.job
        job.failure_reason = reason
        job.error_summary = summary
        ctx.transition(JobState.FAILED, finished=True)
        LOG.error(f"Job {job.job_id} failed ({reason}): {summary}")
        return JobOutcome(job, Disposition.FAILED)

    @staticmethod
    def _terminal_outcome(job: ExtractionJob) -> JobOutcome:
        disposition = Disposition.COMPLETED if job.state is JobState.COMPLETED else Disposition.FAILED
        return JobOutcome(job, disposition)


class _RunContext:
    """Per-run helpers: validated transitions, persistence and lease heartbeats."""

    def __init__(self, runner: JobRunner, job: ExtractionJob, heartbeat: Optional[Callable[[], bool]]) -> None:
        self.runner = runner
        self.job = job
        self.heartbeat = heartbeat

    def beat(self) -> None:
        if self.heartbeat is not None and not self.heartbeat():
            raise LeaseLost(self.job.job_id)

    def transition(self, state: JobState, *, started: bool = False, finished: bool = False) -> None:
        job = self.job
        if state is not JobState.FAILED and state is not JobState.RETRYING:
            if state not in _ALLOWED[job.state]:
                raise InvalidTransition(f"{job.state.value} -> {state.value}")
        elif job.state not in _LIVE:
            raise InvalidTransition(f"{job.state.value} -> {state.value}")
        now = self.runner.clock()
        LOG.debug(f"Job {job.job_id}: {job.state.value} -> {state.value}")
        job.state = state
        job.updated_at = now
        if started:
            job.started_at = job.started_at or now
        if finished:
            job.finished_at = now
        self.save()

    def save(self) -> None:
        self.beat()
        self.runner.catalog.save_job(self.job)
