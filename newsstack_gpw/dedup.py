"""Deduplication gate: content-addressed insert-if-absent.

``content_id`` is the first 32 hex chars of SHA-256 over the canonical
URL, enough to make collisions irrelevant at news volumes.  Running the
gate twice over the same input is a no-op the second time.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .common_types import DedupResult, NormalizedItem
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

_TRACKING_PREFIXES = ("utm_",)


def canonical_url(url: str) -> str:
    """Lower-case scheme/host, drop fragment and ``utm_*`` parameters."""
    parts = urlsplit(url.strip())
    query = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith(_TRACKING_PREFIXES)
    ]
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path,
        urlencode(query, doseq=True),
        "",
    ))


def has_tracking_params(url: str) -> bool:
    return any(
        k.lower().startswith(_TRACKING_PREFIXES)
        for k, _ in parse_qsl(urlsplit(url).query, keep_blank_values=True)
    )


def content_id(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def item_content_id(item: NormalizedItem) -> str:
    return content_id(item.dedup_key or canonical_url(item.url))


def ingest_items(
    store: SqliteStore,
    items: Iterable[NormalizedItem],
    now: datetime | None = None,
) -> DedupResult:
    """Insert items not already present; count inserted/skipped/failed.

    A store error on one item is counted as ``failed`` and does not
    abort the rest of the batch.  Existing rows are never overwritten.
    """
    fetched_at = now or datetime.now(timezone.utc)
    result = DedupResult()
    for it in items:
        if not it.is_valid:
            continue
        cid = item_content_id(it)
        try:
            if store.insert_news_item(cid, it, fetched_at):
                result.inserted += 1
            else:
                result.skipped += 1
        except Exception as exc:
            logger.warning("insert failed for %s: %s", it.url, exc)
            result.failed += 1
    return result
