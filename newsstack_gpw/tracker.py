"""Pipeline run tracker & job health monitor.

Strictly observational bookkeeping: every store call is guarded, so a
broken run log never fails the job it is tracking.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


def derive_status(processed: int, failed: int) -> str:
    """Run status from item counts.

    ======== ====== =========
    processed failed status
    ======== ====== =========
    0         0      success (no-op)
    > 0       0      success
    > 0       > 0    partial
    0         > 0    failed
    ======== ====== =========
    """
    if processed > 0:
        return STATUS_PARTIAL if failed > 0 else STATUS_SUCCESS
    return STATUS_FAILED if failed > 0 else STATUS_SUCCESS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunTracker:
    """One ``pipeline_runs`` row + the job's ``job_health`` row."""

    def __init__(
        self,
        store: Optional[SqliteStore],
        job_name: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.job_name = job_name
        self._clock = clock
        self.run_id: Optional[int] = None
        self.status: str = STATUS_RUNNING
        self.started_at: Optional[datetime] = None

    def start(self) -> "RunTracker":
        self.started_at = self._clock()
        if self.store is None:
            return self
        try:
            self.run_id = self.store.start_run(self.job_name, self.started_at)
        except Exception as exc:
            logger.warning("%s: could not record run start: %s", self.job_name, exc)
        return self

    def finish(
        self,
        items_in: int,
        items_out: int,
        error_count: int,
        details: Optional[dict[str, Any]] = None,
    ) -> str:
        """Finalize the run; status follows :func:`derive_status`."""
        self.status = derive_status(items_out, error_count)
        now = self._clock()
        payload = dict(details or {})
        if self.started_at is not None:
            payload.setdefault("duration_ms", int((now - self.started_at).total_seconds() * 1000))
        self._write_run(now, items_in, items_out, error_count, payload)
        if self.status == STATUS_FAILED:
            self._write_failure(payload.get("error") or f"{error_count} errors, 0 items", now)
        else:
            self._write_success(now, items_out)
        return self.status

    def fail(self, error: str, items_in: int = 0, details: Optional[dict[str, Any]] = None) -> str:
        """Finalize as failed (fatal error before any item was processed)."""
        self.status = STATUS_FAILED
        now = self._clock()
        payload = dict(details or {})
        payload["error"] = error
        self._write_run(now, items_in, 0, max(1, items_in), payload)
        self._write_failure(error, now)
        return self.status

    # ── Guarded writes ──────────────────────────────────────────

    def _write_run(self, now: datetime, items_in: int, items_out: int, error_count: int, details: dict[str, Any]) -> None:
        if self.store is None or self.run_id is None:
            return
        try:
            self.store.finish_run(self.run_id, now, self.status, items_in, items_out, error_count, details)
        except Exception as exc:
            logger.warning("%s: could not finalize run %s: %s", self.job_name, self.run_id, exc)

    def _write_success(self, now: datetime, items_out: int) -> None:
        if self.store is None:
            return
        try:
            self.store.record_job_success(self.job_name, now, items_out)
        except Exception as exc:
            logger.warning("%s: could not update job health: %s", self.job_name, exc)

    def _write_failure(self, error: str, now: datetime) -> None:
        if self.store is None:
            return
        try:
            self.store.record_job_failure(self.job_name, str(error), now)
        except Exception as exc:
            logger.warning("%s: could not update job health: %s", self.job_name, exc)
