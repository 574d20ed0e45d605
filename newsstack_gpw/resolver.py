"""Confidence merger & ticker resolver.

Merge rule, per candidate ticker::

    confidence = max(heuristic, ai)

where the AI score only counts when the AI listed the ticker itself or
scored it at or above the display threshold.  AI tickers outside the
valid set are dropped.  Regulatory filings with a pre-identified ticker
list keep those tickers at 1.0; the AI may only add tickers it scores at
``authoritative_add_threshold`` or higher.

The final list is every ticker at or above the threshold, sorted by
descending confidence (insertion order breaks ties: preset, heuristic,
AI), truncated to ``max_tickers``.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from .common_types import AIAnalysis, Resolution
from .sources import REGULATORY_SOURCE

logger = logging.getLogger(__name__)

DISPLAY_THRESHOLD = 0.7
MAX_TICKERS = 5
AUTHORITATIVE_ADD_THRESHOLD = 0.85

# Confidence assumed for a ticker the AI listed without scoring it.
AI_LISTED_DEFAULT = 0.8

# Relevance in degraded modes.
RELEVANCE_AI_FAILED_WITH_TICKERS = 0.4
RELEVANCE_AI_FAILED_NO_TICKERS = 0.1
RELEVANCE_PAYWALL = 0.3
RELEVANCE_NO_TICKERS = 0.2

# Parser default; an AI relevance equal to it counts as "not supplied".
DEFAULT_RELEVANCE = 0.5

METHOD_DETERMINISTIC = "deterministic"
METHOD_AI = "ai"
METHOD_ESPI = "espi_url"
METHOD_PAYWALL = "paywall"


def _ai_scores(
    analysis: AIAnalysis,
    valid_tickers: Optional[frozenset[str]],
) -> dict[str, tuple[float, bool]]:
    """ticker → (confidence, listed) for every valid ticker the AI mentioned."""
    out: dict[str, tuple[float, bool]] = {}
    listed = set(analysis.tickers)
    for t in list(analysis.tickers) + list(analysis.ticker_confidence):
        if t in out:
            continue
        if valid_tickers and t not in valid_tickers:
            logger.debug("AI ticker %s not in valid set, dropped", t)
            continue
        conf = analysis.ticker_confidence.get(t, AI_LISTED_DEFAULT)
        out[t] = (conf, t in listed)
    return out


def merge_confidence(
    heuristic: Mapping[str, float],
    analysis: Optional[AIAnalysis],
    *,
    preset: Optional[Mapping[str, float]] = None,
    valid_tickers: Optional[Iterable[str]] = None,
    threshold: float = DISPLAY_THRESHOLD,
) -> dict[str, float]:
    """Per-ticker max of preset, heuristic and qualifying AI confidence."""
    valid = frozenset(valid_tickers) if valid_tickers else None
    merged: dict[str, float] = {}

    def _take(t: str, c: float) -> None:
        merged[t] = max(merged.get(t, 0.0), c)

    for t, c in (preset or {}).items():
        _take(t, c)
    for t, c in heuristic.items():
        _take(t, c)
    if analysis is not None:
        for t, (c, listed) in _ai_scores(analysis, valid).items():
            if listed or c >= threshold:
                _take(t, c)
    return {t: round(max(0.0, min(1.0, c)), 3) for t, c in merged.items()}


def authoritative_confidence(
    preset_tickers: Iterable[str],
    analysis: Optional[AIAnalysis],
    *,
    valid_tickers: Optional[Iterable[str]] = None,
    add_threshold: float = AUTHORITATIVE_ADD_THRESHOLD,
) -> dict[str, float]:
    """Regulatory override: preset tickers at 1.0 plus high-confidence AI additions."""
    merged = {t: 1.0 for t in preset_tickers}
    if analysis is not None:
        valid = frozenset(valid_tickers) if valid_tickers else None
        for t, (c, _listed) in _ai_scores(analysis, valid).items():
            if t not in merged and c >= add_threshold:
                merged[t] = round(c, 3)
    return merged


def select_tickers(
    confidence: Mapping[str, float],
    threshold: float = DISPLAY_THRESHOLD,
    max_tickers: int = MAX_TICKERS,
) -> list[str]:
    """Entries at or above *threshold*, highest first, stable on ties."""
    kept = [(t, c) for t, c in confidence.items() if c >= threshold]
    kept.sort(key=lambda tc: -tc[1])
    return [t for t, _ in kept[:max_tickers]]


def fallback_relevance(category: Optional[str], source: str, is_breaking: bool, tickers: list[str], impact_score: Optional[int]) -> float:
    """Rule-based relevance when the model did not supply one."""
    if source == REGULATORY_SOURCE or category == "regulatory":
        return 1.0
    if is_breaking:
        return 0.9
    if tickers and (impact_score or 0) >= 7:
        return 0.8
    if tickers:
        return 0.6
    return RELEVANCE_NO_TICKERS


def is_paywalled(source: str, visible_text: str | None, paywall_sources: Iterable[str], min_chars: int) -> bool:
    return source in set(paywall_sources) and len((visible_text or "").strip()) < min_chars


def resolve_tickers(
    heuristic: Mapping[str, float],
    analysis: Optional[AIAnalysis],
    *,
    source: str = "",
    category: Optional[str] = None,
    impact_score: Optional[int] = None,
    preset_tickers: Iterable[str] = (),
    valid_tickers: Optional[Iterable[str]] = None,
    paywalled: bool = False,
    threshold: float = DISPLAY_THRESHOLD,
    max_tickers: int = MAX_TICKERS,
    add_threshold: float = AUTHORITATIVE_ADD_THRESHOLD,
) -> Resolution:
    """Combine all signals into the final ``Resolution`` for one item.

    *analysis* is ``None`` when the AI was skipped (paywall) or every
    provider failed; resolution then relies on the heuristic alone.
    """
    preset = list(dict.fromkeys(preset_tickers))
    valid = frozenset(valid_tickers) if valid_tickers else None
    regulatory = source == REGULATORY_SOURCE or category == "regulatory"

    if regulatory and preset:
        conf = authoritative_confidence(preset, analysis, valid_tickers=valid, add_threshold=add_threshold)
        method = METHOD_ESPI
    else:
        conf = merge_confidence(
            heuristic, analysis,
            preset={t: 1.0 for t in preset}, valid_tickers=valid, threshold=threshold,
        )
        if paywalled:
            method = METHOD_PAYWALL
        elif analysis is not None:
            method = METHOD_AI
        else:
            method = METHOD_DETERMINISTIC

    tickers = select_tickers(conf, threshold, max_tickers)

    if regulatory:
        relevance = 1.0
    elif paywalled:
        relevance = RELEVANCE_PAYWALL
    elif analysis is None:
        relevance = RELEVANCE_AI_FAILED_WITH_TICKERS if tickers else RELEVANCE_AI_FAILED_NO_TICKERS
    elif analysis.relevance_score != DEFAULT_RELEVANCE:
        relevance = analysis.relevance_score
    else:
        relevance = fallback_relevance(
            category or analysis.category, source, analysis.is_breaking, tickers,
            analysis.impact_score if impact_score is None else impact_score,
        )
    return Resolution(tickers=tickers, ticker_confidence=conf, ticker_method=method, relevance_score=relevance)
