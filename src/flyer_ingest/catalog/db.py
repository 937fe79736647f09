from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz, process

from ..domain.models import (
    CandidateListing,
    ExtractionJob,
    JobState,
    PageResult,
    PageStatus,
    PriceHistoryEntry,
    Product,
    ProductMaster,
    TERMINAL_STATES,
    TokenUsage,
)
from ..errors import CatalogConflict
from ..logging import get_logger
from ..paths import state_dir


LOG = get_logger("catalog-db")

DEFAULT_DB_FOLDER = "catalog"
DEFAULT_DB_FILENAME = "catalog.sqlite3"

JOB_STATE_ENUM_SQL = ", ".join(f"'{s.value}'" for s in JobState)
TERMINAL_ENUM_SQL = ", ".join(f"'{s.value}'" for s in TERMINAL_STATES)


SCHEMA_SQL = f"""
PRAGMA foreign_keys = ON;

-- 1) Sources
CREATE TABLE IF NOT EXISTS stores (
  code        TEXT PRIMARY KEY,
  name        TEXT,
  created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS flyers (
  flyer_id          INTEGER PRIMARY KEY,
  store_code        TEXT NOT NULL REFERENCES stores(code) ON UPDATE CASCADE,
  identity          TEXT NOT NULL,
  url               TEXT,
  title             TEXT,
  first_seen_at     TEXT DEFAULT (datetime('now')),
  last_seen_at      TEXT DEFAULT (datetime('now')),
  last_fingerprint  TEXT,              -- sha256 of the last successfully processed PDF
  last_job_id       TEXT,
  processed_at      TEXT,
  UNIQUE(store_code, identity)
);

-- 2) Catalog
CREATE TABLE IF NOT EXISTS product_masters (
  master_id        INTEGER PRIMARY KEY,
  name             TEXT NOT NULL,
  normalized_name  TEXT NOT NULL UNIQUE,
  tags             TEXT NOT NULL DEFAULT '[]',   -- JSON list
  brand            TEXT,
  created_at       TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS products (
  product_id      INTEGER PRIMARY KEY,
  master_id       INTEGER NOT NULL REFERENCES product_masters(master_id) ON DELETE RESTRICT,
  store_code      TEXT NOT NULL,
  job_id          TEXT NOT NULL,
  page_index      INTEGER NOT NULL CHECK(page_index >= 0),
  listing_index   INTEGER NOT NULL CHECK(listing_index >= 0),
  name            TEXT NOT NULL,
  price           INTEGER NOT NULL CHECK(price > 0),   -- cents
  unit            TEXT,
  valid_from      TEXT,
  valid_to        TEXT,
  low_confidence  INTEGER NOT NULL DEFAULT 0,
  match_score     REAL,
  created_at      TEXT DEFAULT (datetime('now')),
  UNIQUE(job_id, page_index, listing_index)
);

CREATE TABLE IF NOT EXISTS price_history (
  entry_id     INTEGER PRIMARY KEY,
  master_id    INTEGER NOT NULL REFERENCES product_masters(master_id) ON DELETE CASCADE,
  store_code   TEXT NOT NULL,
  observed_on  TEXT NOT NULL,          -- "YYYY-MM-DD"
  price        INTEGER NOT NULL CHECK(price > 0),   -- cents
  created_at   TEXT DEFAULT (datetime('now')),
  UNIQUE(master_id, store_code, observed_on)
);

-- 3) Extraction jobs
CREATE TABLE IF NOT EXISTS extraction_jobs (
  job_id            TEXT PRIMARY KEY,
  store_code        TEXT NOT NULL,
  flyer_identity    TEXT NOT NULL,
  source_ref        TEXT NOT NULL,
  state             TEXT NOT NULL CHECK(state IN ({JOB_STATE_ENUM_SQL})),
  attempt_count     INTEGER NOT NULL DEFAULT 1,
  max_attempts      INTEGER NOT NULL DEFAULT 3,
  next_eligible_at  TEXT,
  fingerprint       TEXT,
  created_at        TEXT NOT NULL,
  updated_at        TEXT NOT NULL,
  started_at        TEXT,
  finished_at       TEXT,
  error_summary     TEXT,
  failure_reason    TEXT,
  skipped           INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS page_results (
  job_id         TEXT NOT NULL REFERENCES extraction_jobs(job_id) ON DELETE CASCADE,
  page_index     INTEGER NOT NULL,
  status         TEXT NOT NULL CHECK(status IN ('PENDING','SUCCEEDED','FAILED')),
  image_ref      TEXT,
  listings       TEXT NOT NULL DEFAULT '[]',   -- JSON list of candidate listings
  raw_response   TEXT,
  attempts       INTEGER NOT NULL DEFAULT 0,
  error_kind     TEXT,
  error_message  TEXT,
  prompt_tokens      INTEGER NOT NULL DEFAULT 0,
  completion_tokens  INTEGER NOT NULL DEFAULT 0,
  cost_usd           REAL NOT NULL DEFAULT 0,
  model_calls        INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (job_id, page_index)
);

-- At most one live job per flyer slot
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_active_flyer
  ON extraction_jobs(store_code, flyer_identity)
  WHERE state NOT IN ({TERMINAL_ENUM_SQL});

CREATE INDEX IF NOT EXISTS idx_products_master      ON products(master_id);
CREATE INDEX IF NOT EXISTS idx_price_history_lookup ON price_history(master_id, store_code, observed_on);
CREATE INDEX IF NOT EXISTS idx_jobs_state           ON extraction_jobs(state);
"""


_CENT = Decimal("0.01")


def to_cents(value: Decimal) -> int:
    return int((value.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(value: int) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(_CENT)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _d(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


_PAGE_USAGE_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("prompt_tokens", "INTEGER NOT NULL DEFAULT 0"),
    ("completion_tokens", "INTEGER NOT NULL DEFAULT 0"),
    ("cost_usd", "REAL NOT NULL DEFAULT 0"),
    ("model_calls", "INTEGER NOT NULL DEFAULT 0"),
)
_MASTER_EXTRA_COLUMNS: Tuple[Tuple[str, str], ...] = (("brand", "TEXT"),)


@contextmanager
def connect_sqlite(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    try:
        yield conn
    finally:
        conn.close()


def default_db_path(root_dir: Optional[str] = None) -> str:
    return os.path.join(state_dir(DEFAULT_DB_FOLDER, root_dir), DEFAULT_DB_FILENAME)


class CatalogDatabase:
    """SQLite-backed catalog and job store.

    - Places DB under `<repo-root>/var/catalog/catalog.sqlite3` unless `db_path` is given.
    - Ensures schema on first use.
    - Every write that may be replayed (jobs, products, prices, masters) is
      insert-if-absent, so at-least-once execution never duplicates rows.
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or default_db_path(root_dir)
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)
        LOG.info(f"Catalog DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        with connect_sqlite(self.db_path) as conn:
            yield conn

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.OperationalError:
                pass
            cur.executescript(SCHEMA_SQL)
            conn.commit()
            self._migrate_add_columns(conn, "page_results", _PAGE_USAGE_COLUMNS)
            self._migrate_add_columns(conn, "product_masters", _MASTER_EXTRA_COLUMNS)
            LOG.debug("Catalog DB schema ensured.")

    def _migrate_add_columns(
        self, conn: sqlite3.Connection, table: str, columns: Sequence[Tuple[str, str]]
    ) -> None:
        """Add columns that databases created by older releases lack."""
        cur = conn.cursor()
        cur.execute(f"PRAGMA table_info({table});")
        present = {row[1] for row in cur.fetchall()}
        missing = [(name, decl) for name, decl in columns if name not in present]
        if not missing:
            return
        try:
            for name, decl in missing:
                cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl};")
            conn.commit()
        except sqlite3.Error:
            LOG.exception(f"Failed to migrate {table} table; rolling back changes")
            conn.rollback()
            raise
        LOG.info(f"Migrated {table}: added {', '.join(name for name, _ in missing)}")

    # --------------- Stores / flyers ---------------
    def ensure_store(self, code: str, name: Optional[str] = None) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO stores (code, name) VALUES (?, ?)
                ON CONFLICT(code) DO UPDATE SET name = COALESCE(excluded.name, stores.name);
                """,
                (code, name),
            )
            conn.commit()

    def record_flyer(self, store_code: str, identity: str, url: str, *, title: Optional[str] = None) -> None:
        self.ensure_store(store_code)
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO flyers (store_code, identity, url, title) VALUES (?, ?, ?, ?)
                ON CONFLICT(store_code, identity) DO UPDATE SET
                    url = excluded.url,
                    title = COALESCE(excluded.title, flyers.title),
                    last_seen_at = datetime('now');
                """,
                (store_code, identity, url, title),
            )
            conn.commit()

    def last_fingerprint(self, store_code: str, flyer_identity: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT last_fingerprint FROM flyers WHERE store_code = ? AND identity = ?;",
                (store_code, flyer_identity),
            ).fetchone()
            return row["last_fingerprint"] if row else None

    def record_fingerprint(self, store_code: str, flyer_identity: str, fingerprint: str, job_id: str) -> None:
        self.ensure_store(store_code)
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO flyers (store_code, identity, url, last_fingerprint, last_job_id, processed_at)
                VALUES (?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(store_code, identity) DO UPDATE SET
                    last_fingerprint = excluded.last_fingerprint,
                    last_job_id = excluded.last_job_id,
                    processed_at = excluded.processed_at;
                """,
                (store_code, flyer_identity, flyer_identity, fingerprint, job_id),
            )
            conn.commit()
        LOG.info(f"Recorded fingerprint {fingerprint[:8]} for {store_code}/{flyer_identity}")

    # --------------- Jobs ---------------
    def create_job_if_absent(self, job: ExtractionJob) -> Tuple[ExtractionJob, bool]:
        """Insert job unless a live job already owns its flyer slot.

        Returns (job, True) when inserted, (existing_live_job, False) otherwise.
        """
        with self.connect() as conn:
            existing = self._live_job_row(conn, job.store_code, job.flyer_identity)
            if existing is not None:
                return self._job_from_row(conn, existing), False
            try:
                conn.execute("BEGIN IMMEDIATE;")
                self._insert_job(conn, job)
                self._write_pages(conn, job)
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                existing = self._live_job_row(conn, job.store_code, job.flyer_identity)
                if existing is None:
                    raise CatalogConflict(f"job {job.job_id} conflicts with an existing row")
                LOG.info(f"Live job already exists for {job.store_code}/{job.flyer_identity}")
                return self._job_from_row(conn, existing), False
        return job, True

    def get_job(self, job_id: str) -> Optional[ExtractionJob]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM extraction_jobs WHERE job_id = ?;", (job_id,)).fetchone()
            return self._job_from_row(conn, row) if row else None

    def save_job(self, job: ExtractionJob) -> None:
        """Persist job and its page results. Terminal rows are never overwritten."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            cur = conn.execute(
                f"""
                UPDATE extraction_jobs SET
                    state = ?, attempt_count = ?, max_attempts = ?, next_eligible_at = ?,
                    fingerprint = ?, updated_at = ?, started_at = ?, finished_at = ?,
                    error_summary = ?, failure_reason = ?, skipped = ?
                WHERE job_id = ? AND state NOT IN ({TERMINAL_ENUM_SQL});
                """,
                (
                    job.state.value,
                    job.attempt_count,
                    job.max_attempts,
                    _iso(job.next_eligible_at),
                    job.fingerprint,
                    _iso(job.updated_at),
                    _iso(job.started_at),
                    _iso(job.finished_at),
                    job.error_summary,
                    job.failure_reason,
                    int(job.skipped),
                    job.job_id,
                ),
            )
            if cur.rowcount == 0:
                conn.rollback()
                row = conn.execute("SELECT state FROM extraction_jobs WHERE job_id = ?;", (job.job_id,)).fetchone()
                if row is None:
                    raise KeyError(f"unknown job {job.job_id}")
                raise CatalogConflict(f"job {job.job_id} is already terminal ({row['state']})")
            self._write_pages(conn, job)
            conn.commit()

    def list_jobs(self, *, states: Sequence[JobState] = (), store_code: Optional[str] = None) -> List[ExtractionJob]:
        sql = "SELECT * FROM extraction_jobs WHERE 1 = 1"
        params: List[Any] = []
        if states:
            sql += f" AND state IN ({', '.join('?' for _ in states)})"
            params += [s.value for s in states]
        if store_code:
            sql += " AND store_code = ?"
            params.append(store_code)
        sql += " ORDER BY created_at, job_id;"
        with self.connect() as conn:
            return [self._job_from_row(conn, row) for row in conn.execute(sql, params).fetchall()]

    def _live_job_row(self, conn: sqlite3.Connection, store_code: str, flyer_identity: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"""
            SELECT * FROM extraction_jobs
            WHERE store_code = ? AND flyer_identity = ? AND state NOT IN ({TERMINAL_ENUM_SQL})
            LIMIT 1;
            """,
            (store_code, flyer_identity),
        ).fetchone()

    def _insert_job(self, conn: sqlite3.Connection, job: ExtractionJob) -> None:
        conn.execute(
            """
            INSERT INTO extraction_jobs (
                job_id, store_code, flyer_identity, source_ref, state, attempt_count, max_attempts,
                next_eligible_at, fingerprint, created_at, updated_at, started_at, finished_at,
                error_summary, failure_reason, skipped
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                job.job_id,
                job.store_code,
                job.flyer_identity,
                job.source_ref,
                job.state.value,
                job.attempt_count,
                job.max_attempts,
                _iso(job.next_eligible_at),
                job.fingerprint,
                _iso(job.created_at),
                _iso(job.updated_at),
                _iso(job.started_at),
                _iso(job.finished_at),
                job.error_summary,
                job.failure_reason,
                int(job.skipped),
            ),
        )

    def _write_pages(self, conn: sqlite3.Connection, job: ExtractionJob) -> None:
        for page in job.pages:
            conn.execute(
                """
                INSERT INTO page_results (
                    job_id, page_index, status, image_ref, listings, raw_response,
                    attempts, error_kind, error_message,
                    prompt_tokens, completion_tokens, cost_usd, model_calls
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, page_index) DO UPDATE SET
                    status = excluded.status,
                    image_ref = excluded.image_ref,
                    listings = excluded.listings,
                    raw_response = excluded.raw_response,
                    attempts = excluded.attempts,
                    error_kind = excluded.error_kind,
                    error_message = excluded.error_message,
                    prompt_tokens = excluded.prompt_tokens,
                    completion_tokens = excluded.completion_tokens,
                    cost_usd = excluded.cost_usd,
                    model_calls = excluded.model_calls;
                """,
                (
                    job.job_id,
                    page.page_index,
                    page.status.value,
                    page.image_ref,
                    json.dumps([listing.to_dict() for listing in page.listings], ensure_ascii=False),
                    page.raw_response,
                    page.attempts,
                    page.error_kind,
                    page.error_message,
                    page.usage.prompt_tokens,
                    page.usage.completion_tokens,
                    page.usage.cost,
                    page.usage.calls,
                ),
            )
        if job.pages:
            # pages can only disappear when a retried attempt re-renders a shorter document
            keep = ", ".join(str(int(p.page_index)) for p in job.pages)
            conn.execute(
                f"DELETE FROM page_results WHERE job_id = ? AND page_index NOT IN ({keep});",
                (job.job_id,),
            )

    def _job_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ExtractionJob:
        pages = [
            PageResult(
                page_index=p["page_index"],
                status=PageStatus(p["status"]),
                image_ref=p["image_ref"],
                listings=[CandidateListing.from_dict(item) for item in json.loads(p["listings"] or "[]")],
                raw_response=p["raw_response"],
                attempts=p["attempts"],
                error_kind=p["error_kind"],
                error_message=p["error_message"],
                usage=TokenUsage(
                    prompt_tokens=p["prompt_tokens"],
                    completion_tokens=p["completion_tokens"],
                    cost=p["cost_usd"],
                    calls=p["model_calls"],
                ),
            )
            for p in conn.execute(
                "SELECT * FROM page_results WHERE job_id = ? ORDER BY page_index;", (row["job_id"],)
            ).fetchall()
        ]
        return ExtractionJob(
            job_id=row["job_id"],
            store_code=row["store_code"],
            flyer_identity=row["flyer_identity"],
            source_ref=row["source_ref"],
            state=JobState(row["state"]),
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            next_eligible_at=_dt(row["next_eligible_at"]),
            fingerprint=row["fingerprint"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            error_summary=row["error_summary"],
            failure_reason=row["failure_reason"],
            skipped=bool(row["skipped"]),
            pages=pages,
        )

    # --------------- Product masters ---------------
    _MASTER_SELECT = """
        SELECT m.master_id, m.name, m.normalized_name, m.tags, m.brand,
               (SELECT COUNT(*) FROM products p WHERE p.master_id = m.master_id) AS product_count
        FROM product_masters m
    """

    @staticmethod
    def _master_from_row(row: sqlite3.Row) -> ProductMaster:
        return ProductMaster(
            master_id=row["master_id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            tags=list(json.loads(row["tags"] or "[]")),
            product_count=int(row["product_count"] or 0),
            brand=row["brand"],
        )

    def get_master(self, master_id: int) -> Optional[ProductMaster]:
        with self.connect() as conn:
            row = conn.execute(self._MASTER_SELECT + " WHERE m.master_id = ?;", (master_id,)).fetchone()
            return self._master_from_row(row) if row else None

    def get_master_by_normalized_name(self, normalized_name: str) -> Optional[ProductMaster]:
        with self.connect() as conn:
            row = conn.execute(self._MASTER_SELECT + " WHERE m.normalized_name = ?;", (normalized_name,)).fetchone()
            return self._master_from_row(row) if row else None

    def list_masters(self) -> List[ProductMaster]:
        with self.connect() as conn:
            rows = conn.execute(self._MASTER_SELECT + " ORDER BY m.master_id;").fetchall()
            return [self._master_from_row(r) for r in rows]

    def find_master_candidates(self, normalized_name: str, *, limit: int = 25, cutoff: float = 40.0) -> List[ProductMaster]:
        """Lexical shortlist of masters for a normalized name (rapidfuzz token-set ratio)."""
        if not normalized_name:
            return []
        with self.connect() as conn:
            choices: Dict[int, str] = {
                row["master_id"]: row["normalized_name"]
                for row in conn.execute("SELECT master_id, normalized_name FROM product_masters;")
            }
            if not choices:
                return []
            hits = process.extract(
                normalized_name,
                choices,
                scorer=fuzz.token_set_ratio,
                limit=limit,
                score_cutoff=cutoff,
            )
            ids = [key for _, _, key in hits]
            if not ids:
                return []
            placeholders = ", ".join("?" for _ in ids)
            rows = conn.execute(self._MASTER_SELECT + f" WHERE m.master_id IN ({placeholders});", ids).fetchall()
        by_id = {row["master_id"]: self._master_from_row(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def insert_master_if_absent(
        self, name: str, normalized_name: str, tags: Sequence[str] = (), brand: Optional[str] = None
    ) -> Tuple[ProductMaster, bool]:
        with self.connect() as conn:
            row = conn.execute(
                """
                INSERT INTO product_masters (name, normalized_name, tags, brand) VALUES (?, ?, ?, ?)
                ON CONFLICT(normalized_name) DO NOTHING
                RETURNING master_id;
                """,
                (name, normalized_name, json.dumps(list(tags), ensure_ascii=False), brand),
            ).fetchone()
            conn.commit()
        created = row is not None
        master = self.get_master_by_normalized_name(normalized_name)
        if master is None:
            raise CatalogConflict(f"master '{normalized_name}' vanished after insert")
        return master, created

    # --------------- Products / prices ---------------
    def insert_product_if_absent(self, product: Product) -> Tuple[int, bool]:
        with self.connect() as conn:
            row = conn.execute(
                """
                INSERT INTO products (
                    master_id, store_code, job_id, page_index, listing_index, name, price,
                    unit, valid_from, valid_to, low_confidence, match_score
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, page_index, listing_index) DO NOTHING
                RETURNING product_id;
                """,
                (
                    product.master_id,
                    product.store_code,
                    product.job_id,
                    product.page_index,
                    product.listing_index,
                    product.name,
                    to_cents(product.price),
                    product.unit,
                    product.valid_from.isoformat() if product.valid_from else None,
                    product.valid_to.isoformat() if product.valid_to else None,
                    int(product.low_confidence),
                    product.match_score,
                ),
            ).fetchone()
            conn.commit()
            if row is not None:
                return int(row[0]), True
            existing = conn.execute(
                "SELECT product_id FROM products WHERE job_id = ? AND page_index = ? AND listing_index = ?;",
                (product.job_id, product.page_index, product.listing_index),
            ).fetchone()
            return int(existing[0]), False

    def list_products(self, *, job_id: Optional[str] = None, master_id: Optional[int] = None) -> List[Product]:
        sql = "SELECT * FROM products WHERE 1 = 1"
        params: List[Any] = []
        if job_id is not None:
            sql += " AND job_id = ?"
            params.append(job_id)
        if master_id is not None:
            sql += " AND master_id = ?"
            params.append(master_id)
        sql += " ORDER BY job_id, page_index, listing_index;"
        with self.connect() as conn:
            return [
                Product(
                    product_id=r["product_id"],
                    master_id=r["master_id"],
                    store_code=r["store_code"],
                    job_id=r["job_id"],
                    page_index=r["page_index"],
                    listing_index=r["listing_index"],
                    name=r["name"],
                    price=from_cents(r["price"]),
                    unit=r["unit"],
                    valid_from=_d(r["valid_from"]),
                    valid_to=_d(r["valid_to"]),
                    low_confidence=bool(r["low_confidence"]),
                    match_score=r["match_score"],
                )
                for r in conn.execute(sql, params).fetchall()
            ]

    def latest_price(self, master_id: int, store_code: str) -> Optional[PriceHistoryEntry]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT master_id, store_code, observed_on, price FROM price_history
                WHERE master_id = ? AND store_code = ?
                ORDER BY observed_on DESC, entry_id DESC
                LIMIT 1;
                """,
                (master_id, store_code),
            ).fetchone()
        if row is None:
            return None
        return PriceHistoryEntry(row["master_id"], row["store_code"], _d(row["observed_on"]), from_cents(row["price"]))

    def price_history(self, master_id: int, store_code: Optional[str] = None) -> List[PriceHistoryEntry]:
        sql = "SELECT master_id, store_code, observed_on, price FROM price_history WHERE master_id = ?"
        params: List[Any] = [master_id]
        if store_code is not None:
            sql += " AND store_code = ?"
            params.append(store_code)
        sql += " ORDER BY observed_on, entry_id;"
        with self.connect() as conn:
            return [
                PriceHistoryEntry(r["master_id"], r["store_code"], _d(r["observed_on"]), from_cents(r["price"]))
                for r in conn.execute(sql, params).fetchall()
            ]

    def insert_price_if_absent(self, master_id: int, store_code: str, observed_on: date, price: Decimal) -> bool:
        """Append a price point. Returns False when (master, store, date) already has one."""
        with self.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO price_history (master_id, store_code, observed_on, price)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(master_id, store_code, observed_on) DO NOTHING;
                """,
                (master_id, store_code, observed_on.isoformat(), to_cents(price)),
            )
            conn.commit()
            return cur.rowcount == 1
