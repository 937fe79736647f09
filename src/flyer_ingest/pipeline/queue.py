"""Durable lease queue in SQLite (visibility timeout, per-store partitioning)."""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Sequence

from ..catalog.db import connect_sqlite
from ..domain.models import utcnow
from ..logging import get_logger

LOG = get_logger("pipeline-queue")


QUEUE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS job_queue (
  job_id            TEXT PRIMARY KEY,
  store_code        TEXT NOT NULL,
  status            TEXT NOT NULL CHECK(status IN ('READY','LEASED','DONE','DEAD')),
  visible_at        REAL NOT NULL,      -- epoch seconds; eligible once <= now
  lease_token       TEXT,
  leased_by         TEXT,
  lease_expires_at  REAL,
  deliveries        INTEGER NOT NULL DEFAULT 0,
  last_error        TEXT,
  enqueued_at       TEXT DEFAULT (datetime('now')),
  updated_at        TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_job_queue_ready ON job_queue(status, visible_at);
CREATE INDEX IF NOT EXISTS idx_job_queue_store ON job_queue(store_code, status);
"""


@dataclass(frozen=True)
class QueueLease:
    job_id: str
    store_code: str
    token: str
    worker_id: str
    expires_at: datetime
    deliveries: int


def _ts(value: Optional[datetime]) -> float:
    return (value or utcnow()).timestamp()


class SqliteJobQueue:
    """At-least-once queue: an unacknowledged lease becomes re-leasable after it expires."""

    def __init__(self, db_path: str, *, lease_timeout_seconds: float = 600.0) -> None:
        self.db_path = db_path
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        with self._connect() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.OperationalError:
                pass
            conn.executescript(QUEUE_SCHEMA_SQL)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with connect_sqlite(self.db_path) as conn:
            yield conn

    def enqueue(self, job_id: str, store_code: str, *, visible_at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_queue (job_id, store_code, status, visible_at)
                VALUES (?, ?, 'READY', ?)
                ON CONFLICT(job_id) DO NOTHING;
                """,
                (job_id, store_code, _ts(visible_at)),
            )
            conn.commit()
        LOG.debug(f"Enqueued job {job_id} for store {store_code}")

    def lease(
        self,
        worker_id: str,
        *,
        exclude_stores: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[QueueLease]:
        """Claim the oldest eligible job whose store is not excluded, or return None."""
        now_dt = now or utcnow()
        now_ts = now_dt.timestamp()
        sql = """
            SELECT job_id, store_code, deliveries, status FROM job_queue
            WHERE ((status = 'READY' AND visible_at <= ?)
                   OR (status = 'LEASED' AND lease_expires_at <= ?))
        """
        params: List[object] = [now_ts, now_ts]
        if exclude_stores:
            sql += f" AND store_code NOT IN ({', '.join('?' for _ in exclude_stores)})"
            params += list(exclude_stores)
        sql += " ORDER BY visible_at, rowid LIMIT 1;"

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            row = conn.execute(sql, params).fetchone()
            if row is None:
                conn.rollback()
                return None
            if row["status"] == "LEASED":
                LOG.warning(f"Lease on job {row['job_id']} expired; re-leasing to {worker_id}")
            token = uuid.uuid4().hex
            expires = now_dt + self.lease_timeout
            conn.execute(
                """
                UPDATE job_queue SET
                    status = 'LEASED', lease_token = ?, leased_by = ?, lease_expires_at = ?,
                    deliveries = deliveries + 1, updated_at = datetime('now')
                WHERE job_id = ?;
                """,
                (token, worker_id, expires.timestamp(), row["job_id"]),
            )
            conn.commit()
        return QueueLease(
            job_id=row["job_id"],
            store_code=row["store_code"],
            token=token,
            worker_id=worker_id,
            expires_at=expires,
            deliveries=int(row["deliveries"]) + 1,
        )

    def _update_leased(self, lease: QueueLease, assignments: str, params: Sequence[object]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE job_queue SET {assignments}, updated_at = datetime('now')
                WHERE job_id = ? AND lease_token = ? AND status = 'LEASED';
                """,
                (*params, lease.job_id, lease.token),
            )
            conn.commit()
            ok = cur.rowcount == 1
        if not ok:
            LOG.warning(f"Lease {lease.token[:8]} on job {lease.job_id} is no longer held")
        return ok

    def extend(self, lease: QueueLease, *, now: Optional[datetime] = None) -> bool:
        expires = (now or utcnow()) + self.lease_timeout
        return self._update_leased(lease, "lease_expires_at = ?", (expires.timestamp(),))

    def ack(self, lease: QueueLease) -> bool:
        return self._update_leased(lease, "status = 'DONE', lease_token = NULL, lease_expires_at = NULL", ())

    def release(self, lease: QueueLease, *, visible_at: Optional[datetime] = None) -> bool:
        return self._update_leased(
            lease,
            "status = 'READY', lease_token = NULL, lease_expires_at = NULL, visible_at = ?",
            (_ts(visible_at),),
        )

    def fail(self, lease: QueueLease, reason: str) -> bool:
        LOG.error(f"Dead-lettering job {lease.job_id}: {reason}")
        return self._update_leased(
            lease,
            "status = 'DEAD', lease_token = NULL, lease_expires_at = NULL, last_error = ?",
            (reason,),
        )

    # --------------- inspection ---------------
    def status_of(self, job_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT status FROM job_queue WHERE job_id = ?;", (job_id,)).fetchone()
            return row["status"] if row else None

    def visible_at(self, job_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute("SELECT visible_at FROM job_queue WHERE job_id = ?;", (job_id,)).fetchone()
        return datetime.fromtimestamp(row["visible_at"], tz=timezone.utc) if row else None

    def dead_letters(self) -> List[Dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT job_id, store_code, deliveries, last_error FROM job_queue WHERE status = 'DEAD' ORDER BY updated_at;"
            ).fetchall()
            return [dict(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM job_queue GROUP BY status;").fetchall()
            return {r["status"]: int(r["n"]) for r in rows}
