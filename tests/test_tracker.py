"""Tests for the run tracker and job health bookkeeping."""
from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from newsstack_gpw.tracker import RunTracker, derive_status

from helpers import T0


class TestDeriveStatus(unittest.TestCase):
    def test_truth_table(self):
        self.assertEqual(derive_status(0, 0), "success")
        self.assertEqual(derive_status(12, 0), "success")
        self.assertEqual(derive_status(12, 3), "partial")
        self.assertEqual(derive_status(0, 3), "failed")


def _clock(*times):
    it = iter(times)
    return lambda: next(it)


class TestRunTracker:
    def test_success_run_recorded(self, store):
        tracker = RunTracker(store, "fetch-news", clock=_clock(T0, T0 + timedelta(seconds=2)))
        status = tracker.start().finish(10, 8, 0, {"sources": 3})
        assert status == "success"
        run = store.get_run(tracker.run_id)
        assert run["status"] == "success"
        assert (run["items_in"], run["items_out"], run["error_count"]) == (10, 8, 0)
        assert run["details"] == {"sources": 3, "duration_ms": 2000}
        health = store.get_job_health("fetch-news")
        assert health["consecutive_failures"] == 0
        assert health["items_processed"] == 8
        assert health["last_success_at"]

    def test_partial_counts_as_success_for_health(self, store):
        tracker = RunTracker(store, "process-news").start()
        assert tracker.finish(5, 4, 1) == "partial"
        assert store.get_job_health("process-news")["consecutive_failures"] == 0

    def test_failures_accumulate_and_reset(self, store):
        for _ in range(3):
            RunTracker(store, "fetch-espi").start().finish(2, 0, 2)
        health = store.get_job_health("fetch-espi")
        assert health["consecutive_failures"] == 3
        assert health["last_error"]

        RunTracker(store, "fetch-espi").start().finish(2, 2, 0)
        assert store.get_job_health("fetch-espi")["consecutive_failures"] == 0

    def test_fatal_failure(self, store):
        tracker = RunTracker(store, "process-news").start()
        assert tracker.fail("ticker_aliases is empty") == "failed"
        run = store.get_run(tracker.run_id)
        assert run["status"] == "failed"
        assert run["error_count"] == 1
        assert run["details"]["error"] == "ticker_aliases is empty"
        health = store.get_job_health("process-news")
        assert health["last_error"] == "ticker_aliases is empty"
        assert health["consecutive_failures"] == 1

    def test_recent_runs_newest_first(self, store):
        RunTracker(store, "a", clock=lambda: T0).start().finish(0, 0, 0)
        RunTracker(store, "b", clock=lambda: T0 + timedelta(minutes=5)).start().finish(0, 0, 0)
        assert [r["job_name"] for r in store.recent_runs(10)] == ["b", "a"]


class TestTrackerNeverRaises:
    def test_broken_store(self):
        store = MagicMock()
        store.start_run.side_effect = RuntimeError("disk full")
        store.record_job_success.side_effect = RuntimeError("disk full")
        store.record_job_failure.side_effect = RuntimeError("disk full")
        tracker = RunTracker(store, "fetch-news").start()
        assert tracker.run_id is None
        assert tracker.finish(1, 1, 0) == "success"
        assert tracker.fail("boom") == "failed"
        store.finish_run.assert_not_called()

    def test_finish_run_error(self):
        store = MagicMock()
        store.start_run.return_value = 1
        store.finish_run.side_effect = RuntimeError("locked")
        assert RunTracker(store, "x").start().finish(0, 0, 1) == "failed"
        store.record_job_failure.assert_called_once()

    @pytest.mark.parametrize("processed,failed", [(0, 0), (3, 1)])
    def test_no_store(self, processed, failed):
        tracker = RunTracker(None, "x").start()
        assert tracker.finish(processed + failed, processed, failed) in ("success", "partial")
