from datetime import timedelta
from pathlib import Path

import pytest

from conftest import T0
from flyer_ingest.pipeline.queue import SqliteJobQueue


@pytest.fixture
def queue(tmp_path: Path) -> SqliteJobQueue:
    return SqliteJobQueue(str(tmp_path / "queue.sqlite3"), lease_timeout_seconds=600)


def test_lease_ack_cycle(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)

    lease = queue.lease("worker-a", now=T0)
    assert lease.job_id == "job-1"
    assert lease.deliveries == 1
    assert queue.lease("worker-b", now=T0) is None

    assert queue.ack(lease) is True
    assert queue.status_of("job-1") == "DONE"
    assert queue.lease("worker-b", now=T0 + timedelta(hours=1)) is None


def test_enqueue_is_idempotent(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)
    queue.enqueue("job-1", "iki", visible_at=T0)
    assert queue.counts() == {"READY": 1}


def test_oldest_visible_job_first_and_excluded_stores_skipped(queue):
    queue.enqueue("job-iki", "iki", visible_at=T0)
    queue.enqueue("job-rimi", "rimi", visible_at=T0 + timedelta(seconds=1))
    queue.enqueue("job-later", "maxima", visible_at=T0 + timedelta(hours=1))

    lease = queue.lease("w", exclude_stores=["iki"], now=T0 + timedelta(seconds=5))
    assert lease.job_id == "job-rimi"
    assert queue.lease("w", exclude_stores=["iki"], now=T0 + timedelta(seconds=5)) is None
    assert queue.lease("w", now=T0 + timedelta(seconds=5)).job_id == "job-iki"


def test_expired_lease_is_released_to_another_worker(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)
    first = queue.lease("worker-a", now=T0)

    assert queue.lease("worker-b", now=T0 + timedelta(seconds=599)) is None
    second = queue.lease("worker-b", now=T0 + timedelta(seconds=601))

    assert second.job_id == "job-1"
    assert second.deliveries == 2
    # the stale holder can no longer settle or extend the job
    assert queue.ack(first) is False
    assert queue.extend(first) is False
    assert queue.ack(second) is True


def test_extend_pushes_expiry(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)
    lease = queue.lease("worker-a", now=T0)
    assert queue.extend(lease, now=T0 + timedelta(seconds=500)) is True
    assert queue.lease("worker-b", now=T0 + timedelta(seconds=700)) is None


def test_release_delays_visibility(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)
    lease = queue.lease("w", now=T0)
    retry_at = T0 + timedelta(seconds=30)

    assert queue.release(lease, visible_at=retry_at) is True
    assert queue.status_of("job-1") == "READY"
    assert queue.visible_at("job-1") == retry_at
    assert queue.lease("w", now=T0 + timedelta(seconds=29)) is None
    assert queue.lease("w", now=retry_at).job_id == "job-1"


def test_fail_dead_letters(queue):
    queue.enqueue("job-1", "iki", visible_at=T0)
    lease = queue.lease("w", now=T0)

    assert queue.fail(lease, "AttemptsExhausted: provider kept timing out") is True

    assert queue.status_of("job-1") == "DEAD"
    (dead,) = queue.dead_letters()
    assert dead["job_id"] == "job-1"
    assert dead["last_error"].startswith("AttemptsExhausted")
    assert queue.lease("w", now=T0 + timedelta(days=1)) is None
