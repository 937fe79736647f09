"""Worker pool: lease jobs, cap per-store work, and settle each lease from the job outcome."""

from __future__ import annotations

import os
import threading
import uuid
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from ..catalog.db import CatalogDatabase
from ..config import PipelineConfig, load_pipeline_config
from ..domain.models import utcnow
from ..errors import PipelineError, SourceQuotaError, TransientIOError, summarize_error
from ..logging import get_logger
from .blobstore import LocalBlobStore
from .extraction import ExtractionClient
from .interfaces import BlobStore, CatalogStore, JobQueue, Lease
from .jobs import Disposition, JobOutcome, JobRunner, backoff_delay, fingerprint, new_job
from .matching import MatchingEngine
from .queue import SqliteJobQueue
from .ratelimit import SlidingWindowLimiter
from .render import PdfRenderer
from .stores import StoreRegistry, default_registry

LOG = get_logger("pipeline-scheduler")

# failure reasons that mean the job used up its retry budget
EXHAUSTED_REASONS = frozenset({"AttemptsExhausted", "AllPagesFailed"})


class Scheduler:
    """Fixed-size worker pool over a lease queue.

    Each worker runs one job end to end. Per-store concurrency and request
    rate are capped here, independently of the pool size, and a store that
    reports a quota error is skipped until its cool-down ends.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        queue: JobQueue,
        runner: JobRunner,
        catalog: Optional[CatalogStore] = None,
        blobs: Optional[BlobStore] = None,
        registry: Optional[StoreRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.runner = runner
        self.catalog = catalog
        self.blobs = blobs
        self.registry = registry
        self.clock = clock
        self.worker_id = worker_id or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        sched = config.scheduler
        self.limiter = limiter or SlidingWindowLimiter(sched.per_store_rate, sched.per_store_window_seconds)
        self._pool = ThreadPoolExecutor(max_workers=sched.worker_count, thread_name_prefix="flyer-worker")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, int] = defaultdict(int)
        self._active: Set[Future] = set()
        self._suspended: Dict[str, datetime] = {}

    # ---------------- store state ----------------
    def suspend(self, store_code: str, until: datetime) -> None:
        with self._lock:
            current = self._suspended.get(store_code)
            if current is None or until > current:
                self._suspended[store_code] = until
        LOG.warning(f"Store {store_code} suspended until {until.isoformat()}")

    def suspended_until(self, store_code: str, *, now: Optional[datetime] = None) -> Optional[datetime]:
        now = now or self.clock()
        with self._lock:
            until = self._suspended.get(store_code)
            if until is not None and until <= now:
                del self._suspended[store_code]
                LOG.info(f"Store {store_code} cool-down over")
                return None
            return until

    def in_flight(self, store_code: str) -> int:
        with self._lock:
            return self._in_flight.get(store_code, 0)

    def _excluded_stores(self, now: datetime) -> List[str]:
        with self._lock:
            known = set(self._in_flight) | set(self._suspended)
            busy = {
                code for code, n in self._in_flight.items() if n >= self.config.scheduler.per_store_concurrency
            }
        excluded = set(busy)
        for code in known:
            if self.suspended_until(code, now=now) is not None or self.limiter.remaining(code) == 0:
                excluded.add(code)
        return sorted(excluded)

    # ---------------- discovery ----------------
    def discover(self, store_code: str) -> List[str]:
        """Download the store's current flyers and enqueue a job for each changed one.

        Returns the ids of newly created jobs.
        """
        if self.registry is None or self.catalog is None or self.blobs is None:
            raise RuntimeError("discover() needs a store registry, catalog and blob store")
        now = self.clock()
        if self.suspended_until(store_code, now=now) is not None:
            LOG.info(f"Skipping discovery for suspended store {store_code}")
            return []

        adapter = self.registry.get(store_code)
        self.catalog.ensure_store(store_code, adapter.localize().name)
        try:
            refs = adapter.discover()
        except SourceQuotaError as exc:
            self._cool_down(store_code, exc)
            return []

        created: List[str] = []
        timeout = self.config.scheduler.download_timeout_seconds
        for ref in refs:
            self.catalog.record_flyer(store_code, ref.identity, ref.url, title=ref.title)
            if not self.limiter.acquire(store_code, timeout=timeout):
                LOG.warning(f"{store_code}: request budget exhausted; deferring remaining downloads")
                break
            try:
                data = adapter.download(ref)
            except SourceQuotaError as exc:
                self._cool_down(store_code, exc)
                break
            except TransientIOError as exc:
                LOG.warning(f"{store_code}: download of {ref.url} failed, will retry next discovery: {exc}")
                continue
            except PipelineError as exc:
                LOG.error(f"{store_code}: skipping flyer {ref.url}: {summarize_error(exc)}")
                continue

            digest = fingerprint(data)
            if self.catalog.last_fingerprint(store_code, ref.identity) == digest:
                LOG.info(f"{store_code}: flyer {ref.identity} unchanged ({digest[:8]}); not enqueued")
                continue
            source_ref = self.blobs.put(f"flyers/{store_code}/{digest}.pdf", data)
            job, is_new = self.catalog.create_job_if_absent(
                new_job(store_code, ref.identity, source_ref, max_attempts=self.config.jobs.max_attempts)
            )
            if not is_new:
                LOG.info(f"{store_code}: job {job.job_id} for {ref.identity} is still live ({job.state.value})")
                continue
            self.queue.enqueue(job.job_id, store_code)
            created.append(job.job_id)
        LOG.info(f"{store_code}: {len(created)} new job(s) from {len(refs)} flyer(s)")
        return created

    def _cool_down(self, store_code: str, exc: SourceQuotaError) -> None:
        seconds = max(self.config.jobs.quota_cooldown_seconds, exc.retry_after or 0.0)
        self.suspend(store_code, self.clock() + timedelta(seconds=seconds))

    # ---------------- dispatch ----------------
    def run_once(self) -> int:
        """Lease as many jobs as there are free workers. Returns how many were started."""
        started = 0
        while True:
            with self._lock:
                self._active = {f for f in self._active if not f.done()}
                free = self.config.scheduler.worker_count - len(self._active)
            if free <= 0:
                break
            now = self.clock()
            lease = self.queue.lease(self.worker_id, exclude_stores=self._excluded_stores(now), now=now)
            if lease is None:
                break
            if not self.limiter.try_acquire(lease.store_code):
                # the window filled between the exclusion check and the lease
                delay = max(1.0, self.limiter.wait_time(lease.store_code))
                self.queue.release(lease, visible_at=now + timedelta(seconds=delay))
                continue
            with self._lock:
                self._in_flight[lease.store_code] += 1
                future = self._pool.submit(self._work, lease)
                self._active.add(future)
            started += 1
            LOG.debug(f"Dispatched job {lease.job_id} ({lease.store_code})")
        return started

    def _work(self, lease: Lease) -> Optional[JobOutcome]:
        try:
            try:
                outcome = self.runner.run(lease.job_id, heartbeat=lambda: self.queue.extend(lease))
            except KeyError:
                self.queue.fail(lease, f"UnknownJob: job {lease.job_id} is not in the catalog")
                return None
            except Exception as exc:
                delay = backoff_delay(1, self.config.jobs.base_delay_seconds, self.config.jobs.max_delay_seconds)
                LOG.exception(f"Worker crashed on job {lease.job_id}; releasing lease for {delay:.0f}s")
                self.queue.release(lease, visible_at=self.clock() + timedelta(seconds=delay))
                return None
            self._settle(lease, outcome)
            return outcome
        finally:
            with self._lock:
                self._in_flight[lease.store_code] -= 1
                if self._in_flight[lease.store_code] <= 0:
                    del self._in_flight[lease.store_code]

    def _settle(self, lease: Lease, outcome: JobOutcome) -> None:
        job = outcome.job
        disposition = outcome.disposition
        if disposition is Disposition.COMPLETED:
            self.queue.ack(lease)
        elif disposition is Disposition.FAILED:
            if job.failure_reason in EXHAUSTED_REASONS and job.attempt_count >= job.max_attempts:
                self.queue.fail(lease, f"{job.failure_reason}: {job.error_summary or ''}".strip())
            else:
                self.queue.ack(lease)
        elif disposition is Disposition.RETRY:
            self.queue.release(lease, visible_at=outcome.retry_at)
        elif disposition is Disposition.QUOTA:
            until = outcome.cooldown_until or self.clock() + timedelta(
                seconds=self.config.jobs.quota_cooldown_seconds
            )
            self.suspend(outcome.cooldown_store or lease.store_code, until)
            self.queue.release(lease, visible_at=until)
        else:
            # the lease expired under us; whoever holds it now settles the job
            LOG.warning(f"Job {lease.job_id} abandoned by {self.worker_id}")

    # ---------------- lifecycle ----------------
    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched job has finished. False on timeout."""
        with self._lock:
            pending = list(self._active)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def run_forever(self, stop_event: threading.Event, poll_interval: Optional[float] = None) -> None:
        interval = self.config.scheduler.poll_interval_seconds if poll_interval is None else poll_interval
        LOG.info(f"Scheduler {self.worker_id} started with {self.config.scheduler.worker_count} worker(s)")
        while not stop_event.is_set():
            if self.run_once() == 0:
                stop_event.wait(interval)
        LOG.info(f"Scheduler {self.worker_id} stopping")

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._pool.shutdown(wait=wait_for_jobs)


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    root_dir: Optional[str] = None,
    *,
    registry: Optional[StoreRegistry] = None,
    embeddings=None,
) -> Scheduler:
    """Wire the SQLite catalog and queue, local blob store and real clients into a Scheduler.

    Without an explicit config, settings come from the environment and the nearest .env.
    """
    cfg = (config or load_pipeline_config(root_dir)).validate()
    catalog = CatalogDatabase(root_dir)
    blobs = LocalBlobStore(root_dir)
    queue = SqliteJobQueue(catalog.db_path, lease_timeout_seconds=cfg.scheduler.lease_timeout_seconds)
    stores = registry or default_registry(cfg.scheduler, max_pdf_bytes=cfg.render.max_pdf_bytes)
    extractor = ExtractionClient(
        cfg.extraction,
        limiter=SlidingWindowLimiter(cfg.extraction.requests_per_minute, 60.0),
    )
    runner = JobRunner(
        cfg,
        catalog=catalog,
        blobs=blobs,
        renderer=PdfRenderer(cfg.render),
        extractor=extractor,
        matcher=MatchingEngine(catalog, cfg.matching, embeddings=embeddings),
        locale_for=stores.locale,
    )
    return Scheduler(cfg, queue=queue, runner=runner, catalog=catalog, blobs=blobs, registry=stores)
