"""Job entry points shared by the HTTP trigger surface and the CLI.

Each job opens a run tracker, runs its stage, and returns a JSON-ready
envelope::

    {"ok": true, "status": ..., "processed": n, "failed": n, ..., "ts": iso}
    {"ok": false, "error": "...", "ts": iso}

No exception escapes a job.  Only an unavailable store or missing
reference data are fatal to an invocation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .ai_classifier import Provider, build_providers
from .config import Config
from .dedup import ingest_items
from .ingest_espi import EspiFetcher
from .ingest_feeds import FeedFetcher, sanitize_exc
from .pipeline import process_unclassified
from .reference import load_reference_data
from .sources import ESPI_SOURCES, NEWS_SOURCES, FeedSource
from .store_sqlite import SqliteStore
from .tracker import STATUS_FAILED, RunTracker

logger = logging.getLogger(__name__)

JOB_FETCH_NEWS = "fetch-news"
JOB_FETCH_ESPI = "fetch-espi"
JOB_PROCESS_NEWS = "process-news"
JOBS = (JOB_FETCH_NEWS, JOB_FETCH_ESPI, JOB_PROCESS_NEWS)

MODE_TRIGGER = "trigger"
MODE_BATCH = "batch"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def error_envelope(error: str) -> dict[str, Any]:
    return {"ok": False, "error": error, "ts": now_iso()}


def _open_store(cfg: Config, store: Optional[SqliteStore]) -> tuple[Optional[SqliteStore], Optional[str]]:
    if store is not None:
        return store, None
    try:
        return SqliteStore(cfg.sqlite_path), None
    except Exception as exc:
        logger.error("store unavailable at %s: %s", cfg.sqlite_path, exc)
        return None, f"store unavailable: {exc}"


def _run_fetch(
    job_name: str,
    store: SqliteStore,
    fetch: Callable[[], Any],
) -> dict[str, Any]:
    tracker = RunTracker(store, job_name).start()
    try:
        batch = fetch()
        result = ingest_items(store, batch.items)
    except Exception as exc:
        msg = sanitize_exc(exc)
        logger.error("%s failed: %s", job_name, msg)
        tracker.fail(msg)
        return error_envelope(msg)

    items_out = result.inserted + result.skipped
    errors = batch.failed_urls + result.failed
    sources = {name: s.to_dict() for name, s in batch.stats.items()}
    status = tracker.finish(
        items_in=len(batch.items),
        items_out=items_out,
        error_count=errors,
        details={"inserted": result.inserted, "skipped": result.skipped, "sources": sources},
    )
    logger.info("%s: %d inserted, %d skipped, %d errors → %s", job_name, result.inserted, result.skipped, errors, status)
    envelope: dict[str, Any] = {
        "ok": status != STATUS_FAILED,
        "status": status,
        "processed": items_out,
        "failed": errors,
        "inserted": result.inserted,
        "skipped": result.skipped,
        "sources": sources,
        "ts": now_iso(),
    }
    if status == STATUS_FAILED:
        envelope["error"] = "no items; failed sources: " + ", ".join(batch.failed_sources)
    return envelope


def fetch_news_job(
    cfg: Optional[Config] = None,
    store: Optional[SqliteStore] = None,
    fetcher: Optional[FeedFetcher] = None,
    sources: Sequence[FeedSource] = NEWS_SOURCES,
) -> dict[str, Any]:
    """Fetch every news source and dedup-insert the items."""
    cfg = cfg or Config()
    db, err = _open_store(cfg, store)
    if db is None:
        return error_envelope(err or "store unavailable")
    own_fetcher = fetcher is None
    fetcher = fetcher or FeedFetcher(cfg.fetch_timeout_s, cfg.host_min_delay_s, cfg.fetch_concurrency)
    try:
        return _run_fetch(JOB_FETCH_NEWS, db, lambda: fetcher.fetch_sources(sources))
    finally:
        if own_fetcher:
            fetcher.close()
        if store is None:
            db.close()


def fetch_espi_job(
    cfg: Optional[Config] = None,
    store: Optional[SqliteStore] = None,
    fetcher: Optional[FeedFetcher] = None,
    sources: Sequence[FeedSource] = ESPI_SOURCES,
) -> dict[str, Any]:
    """Fetch regulatory filings (first working source wins) and dedup-insert."""
    cfg = cfg or Config()
    db, err = _open_store(cfg, store)
    if db is None:
        return error_envelope(err or "store unavailable")
    own_fetcher = fetcher is None
    fetcher = fetcher or FeedFetcher(cfg.espi_timeout_s, cfg.host_min_delay_s, 1)
    try:
        try:
            ref = load_reference_data(db, cfg.alias_limit)
        except Exception as exc:
            RunTracker(db, JOB_FETCH_ESPI).start().fail(str(exc))
            return error_envelope(str(exc))
        espi = EspiFetcher(fetcher, sources)
        return _run_fetch(JOB_FETCH_ESPI, db, lambda: espi.fetch(ref))
    finally:
        if own_fetcher:
            fetcher.close()
        if store is None:
            db.close()


def process_news_job(
    cfg: Optional[Config] = None,
    store: Optional[SqliteStore] = None,
    providers: Optional[Sequence[Provider]] = None,
    mode: str = MODE_BATCH,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """Classify a batch of unclassified items.

    ``mode="trigger"`` uses the small on-demand batch size, ``"batch"``
    the periodic one; an explicit *limit* overrides both.
    """
    cfg = cfg or Config()
    if mode not in (MODE_TRIGGER, MODE_BATCH):
        return error_envelope(f"unknown mode {mode!r}")
    db, err = _open_store(cfg, store)
    if db is None:
        return error_envelope(err or "store unavailable")
    try:
        tracker = RunTracker(db, JOB_PROCESS_NEWS).start()
        try:
            ref = load_reference_data(db, cfg.alias_limit)
        except Exception as exc:
            tracker.fail(str(exc))
            return error_envelope(str(exc))

        own_providers = providers is None
        if providers is None:
            providers = build_providers(cfg)
        if not providers:
            logger.warning("no AI provider configured, heuristic-only classification")
        batch_size = limit or (cfg.trigger_batch_size if mode == MODE_TRIGGER else cfg.process_batch_size)

        try:
            stats = process_unclassified(db, cfg, ref, providers, batch_size)
        except Exception as exc:
            msg = sanitize_exc(exc)
            logger.error("%s failed: %s", JOB_PROCESS_NEWS, msg)
            tracker.fail(msg)
            return error_envelope(msg)
        finally:
            if own_providers:
                for p in providers:
                    p.close()

        details: dict[str, Any] = {"mode": mode, **stats.to_dict()}
        status = tracker.finish(stats.attempted, stats.processed, stats.failed, details)
        envelope: dict[str, Any] = {
            "ok": status != STATUS_FAILED,
            "status": status,
            "processed": stats.processed,
            "failed": stats.failed,
            "skipped": stats.skipped,
            "ai_failures": stats.ai_failures,
            "paywall": stats.paywall,
            "grouped": stats.grouped,
            "remaining": _backlog(db),
            "ts": now_iso(),
        }
        if status == STATUS_FAILED:
            envelope["error"] = f"all {stats.failed} items failed"
        return envelope
    finally:
        if store is None:
            db.close()


def _backlog(store: SqliteStore) -> Optional[int]:
    try:
        return store.count_unclassified()
    except Exception as exc:
        logger.warning("could not count backlog: %s", exc)
        return None


def pipeline_status(store: SqliteStore, runs: int = 20) -> dict[str, Any]:
    """Recent runs, per-job health and the classification backlog."""
    return {
        "ok": True,
        "runs": store.recent_runs(runs),
        "health": store.all_job_health(),
        "backlog": store.count_unclassified(),
        "ts": now_iso(),
    }


def run_job(name: str, cfg: Optional[Config] = None, **kwargs: Any) -> dict[str, Any]:
    """Dispatch by job name."""
    if name == JOB_FETCH_NEWS:
        return fetch_news_job(cfg, **kwargs)
    if name == JOB_FETCH_ESPI:
        return fetch_espi_job(cfg, **kwargs)
    if name == JOB_PROCESS_NEWS:
        return process_news_job(cfg, **kwargs)
    return error_envelope(f"unknown job {name!r}")
