"""Test helpers: seed data and shortcuts for inserting/classifying rows."""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone

from newsstack_gpw.common_types import NewsRecord, NormalizedItem
from newsstack_gpw.dedup import item_content_id
from newsstack_gpw.store_sqlite import SqliteStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

ALIASES = [
    ("mbank", "MBK"),
    ("orlen", "PKN"),
    ("pkn orlen", "PKN"),
    ("kghm", "KGH"),
    ("kghm polska miedź", "KGH"),
    ("cd projekt", "CDR"),
    ("allegro", "ALE"),
]
COMPANIES = [
    ("MBK", "mBank SA", 512.0),
    ("PKN", "PKN ORLEN SA", 62.1),
    ("KGH", "KGHM Polska Miedź SA", 150.4),
    ("CDR", "CD PROJEKT SA", 120.0),
    ("ALE", "Allegro.eu SA", None),
]


def seed_reference(store: SqliteStore) -> SqliteStore:
    for alias, ticker in ALIASES:
        store.upsert_alias(alias, ticker)
    for ticker, name, price in COMPANIES:
        store.upsert_company(ticker, name, price)
    return store


def add_item(
    store: SqliteStore,
    url: str,
    title: str = "Wiadomość",
    published_at: datetime | None = T0,
    source: str = "pap",
    summary: str | None = None,
    **extra,
) -> NewsRecord:
    item = NormalizedItem(url=url, title=title, summary=summary, published_at=published_at, source=source, **extra)
    store.insert_news_item(item_content_id(item), item, fetched_at=published_at or T0)
    return store.get_by_content_id(item_content_id(item))


def mark_classified(store: SqliteStore, record: NewsRecord, tickers: list[str], token: str = "test-token") -> NewsRecord:
    store.claim_unclassified(1000, token, time.time(), 600)
    saved = store.save_classification(
        record.id, token,
        {"tickers": tickers, "ticker_confidence": {t: 0.9 for t in tickers}},
        datetime.now(timezone.utc),
    )
    assert saved
    return store.get_news_item(record.id)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


class FakeProvider:
    """In-process AI provider returning a canned payload (or raising)."""

    def __init__(self, payload=None, exc: Exception | None = None, raw: str | None = None, name: str = "fake"):
        self.name = name
        self.payload = payload
        self.exc = exc
        self.raw = raw
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def complete(self, system: str, user: str) -> str:
        with self._lock:
            self.prompts.append(user)
        if self.exc is not None:
            raise self.exc
        if self.raw is not None:
            return self.raw
        return json.dumps(self.payload or {})

    def close(self) -> None:
        pass
