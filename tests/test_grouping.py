"""Tests for event grouping: shared ticker within a ±window."""
from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock

from newsstack_gpw.common_types import NewsRecord
from newsstack_gpw.grouping import assign_event_group, assign_event_group_safe

from helpers import T0, add_item, mark_classified, minutes


def _classified(store, url, tickers, offset_min=0):
    rec = add_item(store, url, title=url, published_at=T0 + minutes(offset_min))
    return mark_classified(store, rec, tickers)


class TestAssignEventGroup:
    def test_items_ninety_minutes_apart_share_group(self, store):
        a = _classified(store, "https://x.pl/a", ["PKN"])
        ga = assign_event_group(store, a, ["PKN"])
        b = _classified(store, "https://x.pl/b", ["PKN"], 90)
        gb = assign_event_group(store, b, ["PKN"])
        assert ga == gb
        assert store.get_news_item(b.id).event_group_id == ga

    def test_item_outside_window_gets_new_group(self, store):
        a = _classified(store, "https://x.pl/a", ["PKN"])
        ga = assign_event_group(store, a, ["PKN"])
        c = _classified(store, "https://x.pl/c", ["PKN"], 180)
        gc = assign_event_group(store, c, ["PKN"])
        assert gc and gc != ga

    def test_no_shared_ticker_gets_new_group(self, store):
        a = _classified(store, "https://x.pl/a", ["PKN"])
        ga = assign_event_group(store, a, ["PKN"])
        b = _classified(store, "https://x.pl/b", ["KGH"], 10)
        assert assign_event_group(store, b, ["KGH"]) != ga

    def test_transitive_chain(self, store):
        a = _classified(store, "https://x.pl/a", ["PKN"])
        g = assign_event_group(store, a, ["PKN"])
        b = _classified(store, "https://x.pl/b", ["PKN", "KGH"], 90)
        assert assign_event_group(store, b, ["PKN", "KGH"]) == g
        # C is 170 min after A but only 80 min after B.
        c = _classified(store, "https://x.pl/c", ["KGH"], 170)
        assert assign_event_group(store, c, ["KGH"]) == g

    def test_earliest_grouped_candidate_wins(self, store):
        early = _classified(store, "https://x.pl/early", ["PKN"], -60)
        late = _classified(store, "https://x.pl/late", ["PKN"], 30)
        store.set_event_group(early.id, "g-early")
        store.set_event_group(late.id, "g-late")
        cur = _classified(store, "https://x.pl/cur", ["PKN"])
        assert assign_event_group(store, cur, ["PKN"]) == "g-early"

    def test_ungrouped_candidate_does_not_block(self, store):
        _classified(store, "https://x.pl/plain", ["PKN"], -30)
        grouped = _classified(store, "https://x.pl/grouped", ["PKN"], -10)
        store.set_event_group(grouped.id, "g1")
        cur = _classified(store, "https://x.pl/cur", ["PKN"])
        assert assign_event_group(store, cur, ["PKN"]) == "g1"

    def test_unclassified_rows_ignored(self, store):
        pending = add_item(store, "https://x.pl/espi", published_at=T0 + minutes(5), tickers=["PKN"])
        store.set_event_group(pending.id, "g-pending")
        cur = _classified(store, "https://x.pl/cur", ["PKN"])
        gid = assign_event_group(store, cur, ["PKN"])
        assert gid and gid != "g-pending"

    def test_no_tickers_is_ungrouped(self, store):
        rec = _classified(store, "https://x.pl/macro", [])
        assert assign_event_group(store, rec, []) is None
        assert store.get_news_item(rec.id).event_group_id is None

    def test_no_timestamp_is_ungrouped(self):
        store = MagicMock()
        rec = NewsRecord(id=1, content_id="c", url="u", title="t", summary=None, source="pap", published_at=None)
        assert assign_event_group(store, rec, ["PKN"]) is None
        store.set_event_group.assert_not_called()


class TestSafeWrapper:
    def test_store_error_swallowed(self):
        store = MagicMock()
        store.find_group_candidates.side_effect = sqlite3.OperationalError("database is locked")
        rec = NewsRecord(id=7, content_id="c", url="u", title="t", summary=None, source="pap", published_at=T0)
        assert assign_event_group_safe(store, rec, ["PKN"]) is None
        store.set_event_group.assert_not_called()
