"""Unified internal schema shared across fetchers, store and classifier.

Every fetcher (RSS/Atom feeds, the HTML scraper, the ESPI filings feed)
normalises its raw payload into a ``NormalizedItem`` before it reaches
the dedup gate.  Rows read back from ``news_items`` become ``NewsRecord``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from dateutil import parser as dtparser


@dataclass
class NormalizedItem:
    """Provider-agnostic news record, prior to storage."""

    url: str
    title: str
    summary: str | None
    published_at: datetime | None
    source: str = ""  # "pap" | "bankier" | "espi" | …

    # Only the regulatory fetcher fills these in.
    tickers: list[str] = field(default_factory=list)
    ticker_confidence: dict[str, float] = field(default_factory=dict)
    body_text: str | None = None
    attachments: list[dict[str, str]] = field(default_factory=list)
    category: str | None = None
    impact_score: int | None = None
    dedup_key: str | None = None  # overrides the canonical URL for hashing

    @property
    def is_valid(self) -> bool:
        """Minimal sanity check before the dedup gate accepts the item."""
        return bool(self.url and self.title)


@dataclass(frozen=True)
class KeyFact:
    type: str
    description: str
    impact: str = "neutral"  # positive | negative | neutral
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "description": self.description, "impact": self.impact}
        if self.detail:
            d["detail"] = self.detail
        return d


@dataclass
class AIAnalysis:
    """Validated, clamped judgement returned by the AI classifier."""

    tickers: list[str] = field(default_factory=list)
    ticker_confidence: dict[str, float] = field(default_factory=dict)
    relevance_score: float = 0.5
    sector: str | None = None
    sentiment: float = 0.0
    impact_score: int = 5
    category: str = "other"
    ai_summary: str = ""
    key_facts: list[KeyFact] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    is_breaking: bool = False
    impact_assessment: str = "neutral"


@dataclass
class SourceStat:
    fetched: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"fetched": self.fetched}
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class FetchBatch:
    """Output of one fetch pass: parsed items + per-source tally."""

    items: list[NormalizedItem] = field(default_factory=list)
    stats: dict[str, SourceStat] = field(default_factory=dict)
    failed_urls: int = 0

    @property
    def failed_sources(self) -> list[str]:
        return sorted(name for name, s in self.stats.items() if s.error)


@dataclass
class DedupResult:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return dtparser.isoparse(str(value))
    except (ValueError, TypeError):
        return None


def _json_col(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


@dataclass
class NewsRecord:
    """One ``news_items`` row."""

    id: int
    content_id: str
    url: str
    title: str
    summary: str | None
    source: str
    published_at: datetime | None
    fetched_at: datetime | None = None
    body_text: str | None = None
    category: str | None = None
    impact_score: int | None = None
    tickers: list[str] = field(default_factory=list)
    ticker_confidence: dict[str, float] = field(default_factory=dict)
    ticker_method: str | None = None
    sentiment: float | None = None
    relevance_score: float | None = None
    is_breaking: bool = False
    classified: bool = False
    event_group_id: str | None = None

    @property
    def reference_time(self) -> datetime | None:
        """Timestamp used for event grouping windows."""
        return self.published_at or self.fetched_at

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "NewsRecord":
        return cls(
            id=int(row["id"]),
            content_id=row["content_id"],
            url=row["url"],
            title=row["title"],
            summary=row["summary"],
            source=row["source"],
            published_at=_as_datetime(row["published_at"]),
            fetched_at=_as_datetime(row["fetched_at"]),
            body_text=row["body_text"],
            category=row["category"],
            impact_score=row["impact_score"],
            tickers=list(_json_col(row["tickers"], [])),
            ticker_confidence=dict(_json_col(row["ticker_confidence"], {})),
            ticker_method=row["ticker_method"],
            sentiment=row["sentiment"],
            relevance_score=row["relevance_score"],
            is_breaking=bool(row["is_breaking"]),
            classified=bool(row["classified"]),
            event_group_id=row["event_group_id"],
        )


@dataclass
class Resolution:
    """Final entity resolution for one item."""

    tickers: list[str] = field(default_factory=list)
    ticker_confidence: dict[str, float] = field(default_factory=dict)
    ticker_method: str = "deterministic"  # deterministic | ai | espi_url | paywall
    relevance_score: float = 0.5
