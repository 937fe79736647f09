import threading
from datetime import timedelta
from pathlib import Path
from typing import Dict, List

import pytest

from conftest import T0, FakeClock, make_pdf
from flyer_ingest.config import PipelineConfig, SchedulerConfig
from flyer_ingest.domain.models import ExtractionJob, FlyerRef, JobState, StoreLocale
from flyer_ingest.errors import PipelineError, SourceQuotaError, TransientIOError
from flyer_ingest.pipeline.blobstore import MemoryBlobStore
from flyer_ingest.pipeline.jobs import Disposition, JobOutcome, fingerprint
from flyer_ingest.pipeline.queue import SqliteJobQueue
from flyer_ingest.pipeline.scheduler import Scheduler
from flyer_ingest.pipeline.stores import StoreRegistry


class FakeRunner:
    """Returns scripted outcomes per job id; optionally blocks until released."""

    def __init__(self, outcomes: Dict[str, JobOutcome], gate: threading.Event = None) -> None:
        self.outcomes = outcomes
        self.gate = gate
        self.started: List[str] = []
        self._lock = threading.Lock()

    def run(self, job_id, *, heartbeat=None):
        with self._lock:
            self.started.append(job_id)
        if self.gate is not None:
            assert self.gate.wait(timeout=10)
        assert heartbeat() is True
        return self.outcomes[job_id]


def job(job_id, store, **fields):
    return ExtractionJob(job_id=job_id, store_code=store, flyer_identity=f"{store}/{job_id}", source_ref="x", **fields)


def done(job_id, store):
    return JobOutcome(job(job_id, store, state=JobState.COMPLETED), Disposition.COMPLETED)


@pytest.fixture
def queue(tmp_path: Path):
    return SqliteJobQueue(str(tmp_path / "queue.sqlite3"), lease_timeout_seconds=600)


@pytest.fixture
def sched_clock():
    return FakeClock(T0 + timedelta(seconds=10))


def make_scheduler(queue, runner, clock, **sched):
    config = PipelineConfig(scheduler=SchedulerConfig(**sched))
    return Scheduler(config, queue=queue, runner=runner, clock=clock, worker_id="test-worker")


def test_per_store_concurrency_is_capped(queue, sched_clock):
    for job_id, store in [("iki-1", "iki"), ("iki-2", "iki"), ("rimi-1", "rimi"), ("iki-3", "iki")]:
        queue.enqueue(job_id, store, visible_at=T0)
    gate = threading.Event()
    runner = FakeRunner(
        {j: done(j, s) for j, s in [("iki-1", "iki"), ("iki-2", "iki"), ("rimi-1", "rimi"), ("iki-3", "iki")]},
        gate=gate,
    )
    scheduler = make_scheduler(queue, runner, sched_clock, worker_count=3, per_store_concurrency=1)
    try:
        assert scheduler.run_once() == 2
        assert scheduler.in_flight("iki") == 1
        assert scheduler.in_flight("rimi") == 1
        assert queue.counts() == {"LEASED": 2, "READY": 2}
    finally:
        gate.set()
        assert scheduler.wait_idle(timeout=10)
    assert queue.status_of("iki-1") == "DONE"
    assert queue.status_of("rimi-1") == "DONE"

    for _ in range(2):
        runner.gate = threading.Event()
        assert scheduler.run_once() == 1
        runner.gate.set()
        assert scheduler.wait_idle(timeout=10)
    scheduler.shutdown()
    assert queue.counts() == {"DONE": 4}


def test_quota_suspends_only_that_store(queue, sched_clock):
    until = sched_clock() + timedelta(seconds=300)
    queue.enqueue("iki-1", "iki", visible_at=T0)
    runner = FakeRunner(
        {
            "iki-1": JobOutcome(
                job("iki-1", "iki", state=JobState.RETRYING),
                Disposition.QUOTA,
                retry_at=until,
                cooldown_store="iki",
                cooldown_until=until,
            ),
            "rimi-1": done("rimi-1", "rimi"),
        }
    )
    scheduler = make_scheduler(queue, runner, sched_clock)
    assert scheduler.run_once() == 1
    assert scheduler.wait_idle(timeout=10)

    assert scheduler.suspended_until("iki") == until
    assert queue.status_of("iki-1") == "READY"
    assert queue.visible_at("iki-1") == until

    queue.enqueue("iki-2", "iki", visible_at=T0)
    queue.enqueue("rimi-1", "rimi", visible_at=T0)
    assert scheduler.run_once() == 1
    assert scheduler.wait_idle(timeout=10)
    assert runner.started == ["iki-1", "rimi-1"]
    assert queue.status_of("iki-2") == "READY"

    sched_clock.advance(301)
    assert scheduler.suspended_until("iki") is None
    scheduler.shutdown()


def test_retry_releases_to_retry_time(queue, sched_clock):
    retry_at = sched_clock() + timedelta(seconds=60)
    queue.enqueue("iki-1", "iki", visible_at=T0)
    runner = FakeRunner({"iki-1": JobOutcome(job("iki-1", "iki"), Disposition.RETRY, retry_at=retry_at)})
    scheduler = make_scheduler(queue, runner, sched_clock)

    scheduler.run_once()
    assert scheduler.wait_idle(timeout=10)

    assert queue.status_of("iki-1") == "READY"
    assert queue.visible_at("iki-1") == retry_at
    assert scheduler.run_once() == 0
    scheduler.shutdown()


def test_exhausted_job_is_dead_lettered(queue, sched_clock):
    queue.enqueue("iki-1", "iki", visible_at=T0)
    queue.enqueue("iki-2", "iki", visible_at=T0)
    exhausted = job(
        "iki-1",
        "iki",
        state=JobState.FAILED,
        attempt_count=3,
        max_attempts=3,
        failure_reason="AttemptsExhausted",
        error_summary="Temporary I/O problem: catalog locked",
    )
    corrupt = job("iki-2", "iki", state=JobState.FAILED, failure_reason="DocumentCorrupt")
    runner = FakeRunner(
        {
            "iki-1": JobOutcome(exhausted, Disposition.FAILED),
            "iki-2": JobOutcome(corrupt, Disposition.FAILED),
        }
    )
    scheduler = make_scheduler(queue, runner, sched_clock, per_store_concurrency=2)

    assert scheduler.run_once() == 2
    assert scheduler.wait_idle(timeout=10)

    assert queue.status_of("iki-1") == "DEAD"
    assert queue.status_of("iki-2") == "DONE"
    (dead,) = queue.dead_letters()
    assert dead["last_error"].startswith("AttemptsExhausted")
    scheduler.shutdown()


def test_unknown_job_is_dead_lettered(queue, sched_clock):
    queue.enqueue("ghost", "iki", visible_at=T0)
    scheduler = make_scheduler(queue, FakeRunner({}), sched_clock)

    scheduler.run_once()
    assert scheduler.wait_idle(timeout=10)

    assert queue.status_of("ghost") == "DEAD"
    scheduler.shutdown()


class FakeAdapter:
    code = "iki"

    def __init__(self, flyers, payloads):
        self.flyers = flyers
        self.payloads = payloads
        self.downloads = []

    def discover(self):
        if isinstance(self.flyers, BaseException):
            raise self.flyers
        return list(self.flyers)

    def download(self, ref):
        self.downloads.append(ref.url)
        payload = self.payloads[ref.url]
        if isinstance(payload, BaseException):
            raise payload
        return payload

    def localize(self):
        return StoreLocale(code="iki", name="IKI")


def discovery_scheduler(queue, catalog, clock, adapter):
    registry = StoreRegistry()
    registry.register(adapter)
    return Scheduler(
        PipelineConfig(),
        queue=queue,
        runner=FakeRunner({}),
        catalog=catalog,
        blobs=MemoryBlobStore(),
        registry=registry,
        clock=clock,
    )


def test_discover_enqueues_new_flyers_once(queue, catalog, sched_clock):
    good = FlyerRef("iki", "https://iki.lt/a.pdf", "https://iki.lt/a.pdf", title="Savaitės leidinys")
    flaky = FlyerRef("iki", "https://iki.lt/b.pdf", "https://iki.lt/b.pdf")
    adapter = FakeAdapter([good, flaky], {good.url: make_pdf([(595, 842)]), flaky.url: TransientIOError("reset")})
    scheduler = discovery_scheduler(queue, catalog, sched_clock, adapter)

    created = scheduler.discover("iki")

    assert len(created) == 1
    stored = catalog.get_job(created[0])
    assert stored.flyer_identity == good.identity
    assert scheduler.blobs.exists(stored.source_ref)
    assert queue.status_of(created[0]) == "READY"

    # the live job still owns the flyer slot
    assert scheduler.discover("iki") == []
    scheduler.shutdown()


def test_discover_skips_unchanged_flyer(queue, catalog, sched_clock):
    pdf = make_pdf([(595, 842)])
    ref = FlyerRef("iki", "https://iki.lt/a.pdf", "https://iki.lt/a.pdf")
    catalog.record_fingerprint("iki", ref.identity, fingerprint(pdf), "old-job")
    scheduler = discovery_scheduler(queue, catalog, sched_clock, FakeAdapter([ref], {ref.url: pdf}))

    assert scheduler.discover("iki") == []
    assert queue.counts() == {}
    scheduler.shutdown()


def test_discover_quota_suspends_store(queue, catalog, sched_clock):
    adapter = FakeAdapter(SourceQuotaError("HTTP 429", source="iki", retry_after=600), {})
    scheduler = discovery_scheduler(queue, catalog, sched_clock, adapter)

    assert scheduler.discover("iki") == []
    assert scheduler.suspended_until("iki") == sched_clock() + timedelta(seconds=600)
    # suspended stores are not even asked
    assert scheduler.discover("iki") == []
    scheduler.shutdown()


def test_rejected_download_does_not_stop_discovery(queue, catalog, sched_clock):
    missing = FlyerRef("iki", "https://iki.lt/gone.pdf", "https://iki.lt/gone.pdf")
    first = FlyerRef("iki", "https://iki.lt/a.pdf", "https://iki.lt/a.pdf")
    second = FlyerRef("iki", "https://iki.lt/b.pdf", "https://iki.lt/b.pdf")
    adapter = FakeAdapter(
        [missing, first, second],
        {
            missing.url: PipelineError("iki: HTTP 404 for https://iki.lt/gone.pdf"),
            first.url: make_pdf([(595, 842)]),
            second.url: make_pdf([(842, 595)]),
        },
    )
    scheduler = discovery_scheduler(queue, catalog, sched_clock, adapter)

    created = scheduler.discover("iki")

    assert adapter.downloads == [missing.url, first.url, second.url]
    assert sorted(catalog.get_job(j).flyer_identity for j in created) == [first.identity, second.identity]
    assert queue.counts() == {"READY": 2}
    scheduler.shutdown()
