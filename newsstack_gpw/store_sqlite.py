"""SQLite-backed state store: news items, aliases, run log, job health.

Uses WAL mode + NORMAL synchronous for maximum write throughput while
retaining crash safety.  Every write uses upsert-with-conflict-target
semantics so that re-running a job is always safe.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .common_types import NewsRecord, NormalizedItem

SCHEMA = """
CREATE TABLE IF NOT EXISTS news_items (
  id                INTEGER PRIMARY KEY AUTOINCREMENT,
  content_id        TEXT NOT NULL UNIQUE,
  url               TEXT NOT NULL,
  title             TEXT NOT NULL,
  summary           TEXT,
  body_text         TEXT,
  attachments       TEXT NOT NULL DEFAULT '[]',
  source            TEXT NOT NULL,
  published_at      TEXT,
  fetched_at        TEXT NOT NULL,
  tickers           TEXT NOT NULL DEFAULT '[]',
  ticker_confidence TEXT NOT NULL DEFAULT '{}',
  ticker_method     TEXT,
  ticker_evidence   TEXT NOT NULL DEFAULT '[]',
  sector            TEXT,
  sentiment         REAL,
  impact_score      INTEGER,
  category          TEXT,
  ai_summary        TEXT,
  key_facts         TEXT NOT NULL DEFAULT '[]',
  topics            TEXT NOT NULL DEFAULT '[]',
  is_breaking       INTEGER NOT NULL DEFAULT 0,
  impact_assessment TEXT,
  relevance_score   REAL,
  classified        INTEGER NOT NULL DEFAULT 0,
  classified_at     TEXT,
  claim_token       TEXT,
  claimed_at        REAL,
  event_group_id    TEXT
);
CREATE INDEX IF NOT EXISTS idx_news_backlog ON news_items(classified, published_at);
CREATE INDEX IF NOT EXISTS idx_news_published ON news_items(published_at);
CREATE INDEX IF NOT EXISTS idx_news_group ON news_items(event_group_id);

CREATE TABLE IF NOT EXISTS ticker_aliases (
  alias      TEXT PRIMARY KEY,
  ticker     TEXT NOT NULL,
  alias_type TEXT NOT NULL DEFAULT 'brand'
);
CREATE INDEX IF NOT EXISTS idx_aliases_ticker ON ticker_aliases(ticker);

CREATE TABLE IF NOT EXISTS companies (
  ticker       TEXT PRIMARY KEY,
  name         TEXT NOT NULL,
  last_price   REAL,
  last_news_at TEXT
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  job_name    TEXT NOT NULL,
  started_at  TEXT NOT NULL,
  finished_at TEXT,
  status      TEXT NOT NULL DEFAULT 'running',
  items_in    INTEGER NOT NULL DEFAULT 0,
  items_out   INTEGER NOT NULL DEFAULT 0,
  error_count INTEGER NOT NULL DEFAULT 0,
  details     TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_runs_job_started ON pipeline_runs(job_name, started_at);

CREATE TABLE IF NOT EXISTS job_health (
  job_name             TEXT PRIMARY KEY,
  last_success_at      TEXT,
  consecutive_failures INTEGER NOT NULL DEFAULT 0,
  last_error           TEXT,
  last_error_at        TEXT,
  items_processed      INTEGER NOT NULL DEFAULT 0
);
"""

# Columns the classifier is allowed to write.
_CLASSIFICATION_COLUMNS = frozenset({
    "tickers", "ticker_confidence", "ticker_method", "ticker_evidence",
    "sector", "sentiment", "impact_score", "category", "ai_summary",
    "key_facts", "topics", "is_breaking", "impact_assessment",
    "relevance_score",
})


def to_iso(dt: datetime | None) -> str | None:
    """Serialise to a UTC ISO-8601 string that sorts lexicographically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def _dump(v: Any) -> Any:
    if isinstance(v, (list, dict)):
        return json.dumps(v, ensure_ascii=False)
    if isinstance(v, bool):
        return int(v)
    return v


class SqliteStore:
    """News + reference + run-log store backed by SQLite."""

    def __init__(self, path: str) -> None:
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.executescript(SCHEMA)

    # ── News items: dedup gate ──────────────────────────────────

    def insert_news_item(self, content_id: str, item: NormalizedItem, fetched_at: datetime) -> bool:
        """Insert-if-absent keyed on *content_id*.

        Return True if newly inserted; False if the row already existed.
        An existing row is never touched.
        """
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO news_items(content_id, url, title, summary, body_text, attachments, "
                "source, published_at, fetched_at, tickers, ticker_confidence, ticker_method, "
                "category, impact_score) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(content_id) DO NOTHING",
                (
                    content_id,
                    item.url,
                    item.title,
                    item.summary,
                    item.body_text,
                    _dump(item.attachments),
                    item.source,
                    to_iso(item.published_at),
                    to_iso(fetched_at),
                    _dump(item.tickers),
                    _dump(item.ticker_confidence),
                    "espi_url" if item.tickers else None,
                    item.category,
                    item.impact_score,
                ),
            )
            return cur.rowcount == 1

    def get_news_item(self, item_id: int) -> Optional[NewsRecord]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM news_items WHERE id=?", (item_id,)).fetchone()
        return NewsRecord.from_row(row) if row else None

    def get_by_content_id(self, content_id: str) -> Optional[NewsRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM news_items WHERE content_id=?", (content_id,)
            ).fetchone()
        return NewsRecord.from_row(row) if row else None

    def count_news_items(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM news_items").fetchone()[0])

    def count_unclassified(self) -> int:
        with self._lock:
            return int(self.conn.execute(
                "SELECT COUNT(*) FROM news_items WHERE classified=0"
            ).fetchone()[0])

    # ── News items: classification ──────────────────────────────

    def claim_unclassified(self, limit: int, token: str, now_ts: float, ttl_s: float) -> list[NewsRecord]:
        """Atomically claim up to *limit* unclassified rows for *token*.

        A claim older than *ttl_s* is considered abandoned and may be
        re-claimed.  Runs inside a single IMMEDIATE transaction so two
        overlapping invocations never claim the same row.
        """
        stale_before = now_ts - ttl_s
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                ids = [
                    r[0] for r in self.conn.execute(
                        "SELECT id FROM news_items "
                        "WHERE classified=0 AND (claim_token IS NULL OR claimed_at < ?) "
                        "ORDER BY published_at DESC, id DESC LIMIT ?",
                        (stale_before, limit),
                    ).fetchall()
                ]
                for item_id in ids:
                    self.conn.execute(
                        "UPDATE news_items SET claim_token=?, claimed_at=? "
                        "WHERE id=? AND classified=0 AND (claim_token IS NULL OR claimed_at < ?)",
                        (token, now_ts, item_id, stale_before),
                    )
                rows = self.conn.execute(
                    "SELECT * FROM news_items WHERE claim_token=? AND classified=0 "
                    "ORDER BY published_at DESC, id DESC",
                    (token,),
                ).fetchall()
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
        return [NewsRecord.from_row(r) for r in rows]

    def release_claim(self, item_id: int, token: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE news_items SET claim_token=NULL, claimed_at=NULL "
                "WHERE id=? AND claim_token=? AND classified=0",
                (item_id, token),
            )

    def save_classification(self, item_id: int, token: str, fields: dict[str, Any], classified_at: datetime) -> bool:
        """Write classification fields and flip ``classified`` to true.

        Only succeeds while the row is still unclassified and claimed by
        *token*; returns False otherwise (already classified elsewhere).
        """
        unknown = set(fields) - _CLASSIFICATION_COLUMNS
        if unknown:
            raise ValueError(f"not a classification column: {sorted(unknown)}")
        cols = sorted(fields)
        assignments = ", ".join(f"{c}=?" for c in cols)
        params = [_dump(fields[c]) for c in cols]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE news_items SET {assignments}, classified=1, classified_at=?, "
                "claim_token=NULL, claimed_at=NULL "
                "WHERE id=? AND classified=0 AND claim_token=?",
                (*params, to_iso(classified_at), item_id, token),
            )
            return cur.rowcount == 1

    # ── News items: event grouping ──────────────────────────────

    def find_group_candidates(self, exclude_id: int, start: datetime, end: datetime) -> list[NewsRecord]:
        """Classified rows whose reference time falls in ``[start, end]``."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM news_items "
                "WHERE id != ? AND classified=1 AND tickers != '[]' "
                "AND COALESCE(published_at, fetched_at) BETWEEN ? AND ? "
                "ORDER BY COALESCE(published_at, fetched_at) ASC, id ASC",
                (exclude_id, to_iso(start), to_iso(end)),
            ).fetchall()
        return [NewsRecord.from_row(r) for r in rows]

    def set_event_group(self, item_id: int, group_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE news_items SET event_group_id=? WHERE id=?", (group_id, item_id)
            )

    # ── Reference data ──────────────────────────────────────────

    def upsert_alias(self, alias: str, ticker: str, alias_type: str = "brand") -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO ticker_aliases(alias, ticker, alias_type) VALUES(?,?,?) "
                "ON CONFLICT(alias) DO UPDATE SET ticker=excluded.ticker, alias_type=excluded.alias_type",
                (alias.strip().lower(), ticker.strip().upper(), alias_type),
            )

    def load_aliases(self, limit: int) -> list[tuple[str, str]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT alias, ticker FROM ticker_aliases ORDER BY alias LIMIT ?", (limit,)
            ).fetchall()
        return [(r["alias"], r["ticker"]) for r in rows]

    def upsert_company(self, ticker: str, name: str, last_price: float | None = None) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO companies(ticker, name, last_price) VALUES(?,?,?) "
                "ON CONFLICT(ticker) DO UPDATE SET name=excluded.name, "
                "last_price=COALESCE(excluded.last_price, companies.last_price)",
                (ticker.strip().upper(), name, last_price),
            )

    def load_companies(self) -> list[tuple[str, str]]:
        with self._lock:
            rows = self.conn.execute("SELECT ticker, name FROM companies ORDER BY ticker").fetchall()
        return [(r["ticker"], r["name"]) for r in rows]

    def latest_prices(self, tickers: Iterable[str]) -> dict[str, float]:
        """Read-only price context (maintained by the external price job)."""
        wanted = list(dict.fromkeys(tickers))
        if not wanted:
            return {}
        marks = ",".join("?" for _ in wanted)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT ticker, last_price FROM companies WHERE ticker IN ({marks}) "
                "AND last_price IS NOT NULL",
                wanted,
            ).fetchall()
        return {r["ticker"]: float(r["last_price"]) for r in rows}

    def touch_company_news(self, ticker: str, news_at: datetime) -> None:
        """Advance ``companies.last_news_at`` (never moves it backwards)."""
        at = to_iso(news_at)
        with self._lock:
            self.conn.execute(
                "UPDATE companies SET last_news_at=? "
                "WHERE ticker=? AND (last_news_at IS NULL OR last_news_at < ?)",
                (at, ticker, at),
            )

    # ── Pipeline runs ───────────────────────────────────────────

    def start_run(self, job_name: str, started_at: datetime) -> int:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO pipeline_runs(job_name, started_at, status) VALUES(?,?,'running')",
                (job_name, to_iso(started_at)),
            )
            return int(cur.lastrowid)

    def finish_run(
        self,
        run_id: int,
        finished_at: datetime,
        status: str,
        items_in: int,
        items_out: int,
        error_count: int,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE pipeline_runs SET finished_at=?, status=?, items_in=?, items_out=?, "
                "error_count=?, details=? WHERE id=?",
                (
                    to_iso(finished_at), status, items_in, items_out, error_count,
                    json.dumps(details, ensure_ascii=False, default=str), run_id,
                ),
            )

    def get_run(self, run_id: int) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM pipeline_runs WHERE id=?", (run_id,)).fetchone()
        return self._run_dict(row) if row else None

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM pipeline_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._run_dict(r) for r in rows]

    @staticmethod
    def _run_dict(row: sqlite3.Row) -> dict[str, Any]:
        d = dict(row)
        try:
            d["details"] = json.loads(d.get("details") or "{}")
        except json.JSONDecodeError:
            d["details"] = {}
        return d

    # ── Job health ──────────────────────────────────────────────

    def record_job_success(self, job_name: str, at: datetime, items_processed: int) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO job_health(job_name, last_success_at, consecutive_failures, items_processed) "
                "VALUES(?,?,0,?) "
                "ON CONFLICT(job_name) DO UPDATE SET last_success_at=excluded.last_success_at, "
                "consecutive_failures=0, items_processed=excluded.items_processed",
                (job_name, to_iso(at), items_processed),
            )

    def record_job_failure(self, job_name: str, error: str, at: datetime) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO job_health(job_name, consecutive_failures, last_error, last_error_at) "
                "VALUES(?,1,?,?) "
                "ON CONFLICT(job_name) DO UPDATE SET "
                "consecutive_failures=job_health.consecutive_failures + 1, "
                "last_error=excluded.last_error, last_error_at=excluded.last_error_at",
                (job_name, error[:1000], to_iso(at)),
            )

    def get_job_health(self, job_name: str) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM job_health WHERE job_name=?", (job_name,)).fetchone()
        return dict(row) if row else None

    def all_job_health(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM job_health ORDER BY job_name").fetchall()
        return [dict(r) for r in rows]

    def close(self) -> None:
        self.conn.close()
