"""Event grouping: cluster items sharing a ticker within a time window.

For a freshly classified item, look at other classified items whose
reference time (``published_at``, else ``fetched_at``) lies within
``±window`` and that share at least one ticker.  If any of them already
carries a group id, adopt the one of the earliest such item; otherwise
mint a new id.  Only the current item is written.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Optional

from .common_types import NewsRecord
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 2.0


def new_group_id() -> str:
    return uuid.uuid4().hex


def assign_event_group(
    store: SqliteStore,
    record: NewsRecord,
    tickers: list[str],
    window_hours: float = DEFAULT_WINDOW_HOURS,
) -> Optional[str]:
    """Assign and persist an event group id for *record*.

    Returns the id written, or ``None`` when the item has no tickers or
    no usable timestamp.
    """
    ref = record.reference_time
    if not tickers or ref is None:
        return None
    window = timedelta(hours=window_hours)
    wanted = set(tickers)

    group_id = None
    matched = 0
    for cand in store.find_group_candidates(record.id, ref - window, ref + window):
        if not wanted.intersection(cand.tickers):
            continue
        matched += 1
        # Candidates arrive oldest first.
        if cand.event_group_id:
            group_id = cand.event_group_id
            break

    if group_id is None:
        group_id = new_group_id()
    store.set_event_group(record.id, group_id)
    logger.debug("item %d → group %s (%d related)", record.id, group_id, matched)
    return group_id


def assign_event_group_safe(
    store: SqliteStore,
    record: NewsRecord,
    tickers: list[str],
    window_hours: float = DEFAULT_WINDOW_HOURS,
) -> Optional[str]:
    """Best-effort wrapper: grouping errors are logged, never raised."""
    try:
        return assign_event_group(store, record, tickers, window_hours)
    except Exception as exc:
        logger.warning("event grouping failed for item %s: %s", record.id, exc)
        return None
