"""Classification stage: claim → heuristic → AI → resolve → persist → group.

Workers on a bounded pool only *compute* (heuristic match, AI call,
resolution).  Persistence, event grouping and the company touch run
sequentially in the calling thread, oldest item first, so grouping of
an item always sees every earlier item of the same batch.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .ai_classifier import ClassificationOutcome, ClassificationRequest, Provider, classify_with_fallback
from .common_types import NewsRecord, Resolution
from .config import Config
from .grouping import assign_event_group_safe
from .heuristic import AliasMatcher, HeuristicMatch
from .reference import ReferenceData
from .resolver import is_paywalled, resolve_tickers
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ProcessStats:
    attempted: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0  # classified concurrently by another invocation
    ai_failures: int = 0
    paywall: int = 0
    grouped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ItemResult:
    record: NewsRecord
    match: HeuristicMatch
    outcome: Optional[ClassificationOutcome]
    paywalled: bool
    resolution: Resolution


def classify_record(
    record: NewsRecord,
    ref: ReferenceData,
    matcher: AliasMatcher,
    providers: Sequence[Provider],
    cfg: Config,
    store: Optional[SqliteStore] = None,
) -> ItemResult:
    """Heuristic first, then the AI chain (unless paywalled), then resolve."""
    text = record.body_text or record.summary or ""
    match = matcher.match(record.title, text)
    paywalled = is_paywalled(record.source, text, cfg.paywall_sources, cfg.paywall_min_chars)

    outcome = None
    if not paywalled:
        candidates = list(dict.fromkeys(list(record.tickers) + list(match.confidence)))
        prices: dict[str, float] = {}
        if store is not None and candidates:
            try:
                prices = store.latest_prices(candidates)
            except Exception as exc:
                logger.debug("price context unavailable: %s", exc)
        request = ClassificationRequest(
            title=record.title,
            body=text,
            source=record.source,
            candidates=candidates,
            known_tickers=sorted(ref.valid_tickers),
            prices=prices,
        )
        outcome = classify_with_fallback(providers, request, cfg.ai_body_chars)

    resolution = resolve_tickers(
        match.confidence,
        outcome.analysis if outcome else None,
        source=record.source,
        category=record.category,
        impact_score=record.impact_score,
        preset_tickers=record.tickers,
        valid_tickers=ref.valid_tickers,
        paywalled=paywalled,
        threshold=cfg.display_threshold,
        max_tickers=cfg.max_tickers,
        add_threshold=cfg.authoritative_add_threshold,
    )
    return ItemResult(record, match, outcome, paywalled, resolution)


def classification_fields(result: ItemResult) -> dict[str, Any]:
    """Columns to write for one classified item."""
    rec, res = result.record, result.resolution
    fields: dict[str, Any] = {
        "tickers": res.tickers,
        "ticker_confidence": res.ticker_confidence,
        "ticker_method": res.ticker_method,
        "ticker_evidence": {
            "heuristic": result.match.evidence,
            "ai": result.outcome.to_dict() if result.outcome else None,
        },
        "relevance_score": res.relevance_score,
        "category": rec.category or "other",
    }
    analysis = result.outcome.analysis if result.outcome else None
    if analysis is not None:
        fields.update({
            "sector": analysis.sector,
            "sentiment": analysis.sentiment,
            "impact_score": rec.impact_score or analysis.impact_score,
            "category": rec.category or analysis.category,
            "ai_summary": analysis.ai_summary,
            "key_facts": [f.to_dict() for f in analysis.key_facts],
            "topics": analysis.topics,
            "is_breaking": analysis.is_breaking,
            "impact_assessment": analysis.impact_assessment,
        })
    return fields


def _order_key(rec: NewsRecord) -> tuple[datetime, int]:
    return (rec.reference_time or _EPOCH, rec.id)


def process_unclassified(
    store: SqliteStore,
    cfg: Config,
    ref: ReferenceData,
    providers: Sequence[Provider],
    limit: Optional[int] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ProcessStats:
    """Classify up to *limit* unclassified items; never raises per item."""
    stats = ProcessStats()
    token = uuid.uuid4().hex
    records = store.claim_unclassified(
        limit or cfg.process_batch_size, token, time.time(), cfg.claim_ttl_s,
    )
    stats.attempted = len(records)
    if not records:
        return stats
    records.sort(key=_order_key)
    logger.info("%d items claimed for classification", len(records))

    matcher = AliasMatcher(ref.aliases, ref.valid_tickers, ref.companies)
    chunk_size = max(1, cfg.classify_concurrency)
    with ThreadPoolExecutor(max_workers=chunk_size) as pool:
        for start in range(0, len(records), chunk_size):
            if start:
                sleep(cfg.chunk_pause_s)
            part = records[start:start + chunk_size]
            futures = [
                pool.submit(classify_record, rec, ref, matcher, providers, cfg, store)
                for rec in part
            ]
            for rec, fut in zip(part, futures):
                try:
                    result = fut.result()
                except Exception as exc:
                    logger.warning("classification of item %d failed: %s", rec.id, exc)
                    stats.failed += 1
                    _release(store, rec.id, token)
                    continue
                _persist(store, cfg, token, result, stats)

    logger.info(
        "classified %d/%d (failed %d, ai_failures %d, paywall %d, grouped %d)",
        stats.processed, stats.attempted, stats.failed, stats.ai_failures, stats.paywall, stats.grouped,
    )
    return stats


def _release(store: SqliteStore, item_id: int, token: str) -> None:
    try:
        store.release_claim(item_id, token)
    except Exception as exc:
        logger.warning("could not release claim on item %d: %s", item_id, exc)


def _persist(store: SqliteStore, cfg: Config, token: str, result: ItemResult, stats: ProcessStats) -> None:
    rec, res = result.record, result.resolution
    try:
        saved = store.save_classification(rec.id, token, classification_fields(result), datetime.now(timezone.utc))
    except Exception as exc:
        logger.warning("saving item %d failed: %s", rec.id, exc)
        stats.failed += 1
        _release(store, rec.id, token)
        return
    if not saved:
        logger.info("item %d was classified elsewhere, skipped", rec.id)
        stats.skipped += 1
        return

    stats.processed += 1
    if result.paywalled:
        stats.paywall += 1
    elif result.outcome is None or not result.outcome.ok:
        stats.ai_failures += 1

    if res.tickers:
        if assign_event_group_safe(store, rec, res.tickers, cfg.group_window_hours):
            stats.grouped += 1
        ref_time = rec.reference_time
        if ref_time is not None:
            for ticker in res.tickers:
                try:
                    store.touch_company_news(ticker, ref_time)
                except Exception as exc:
                    logger.warning("could not update last_news_at for %s: %s", ticker, exc)
