"""Deterministic (network-free) ticker matcher.

Alias layer
    Aliases of at least 4 characters are tried longest-first (ties
    broken alphabetically) against the lower-cased ``title + body`` with
    a word-boundary match.  Base confidence by alias length:

        >= 8 chars  0.8
        6-7 chars   0.7
        4-5 chars   0.6

    plus 0.1 when the alias also occurs in the title (capped at 0.95).
    Matching stops after 3 distinct tickers.

Pattern layer
    Explicit ticker notation for known tickers: ``$PKN``, ``(CDR)``,
    ``GPW:PKN`` (0.95) and context phrases such as ``spółka PKN`` or
    ``akcje KGH`` (0.90).

Company-name layer
    Normalised company names (legal-form suffix dropped, at least 5
    characters) with the same word-boundary match: 0.70, plus 0.05 for
    a title hit.

Layers are merged per ticker by maximum confidence, and the merged
result keeps at most 3 tickers (highest confidence first, earlier
matches win ties).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

MIN_ALIAS_LEN = 4
MAX_ALIAS_TICKERS = 3
TITLE_BOOST = 0.1
CONFIDENCE_CAP = 0.95

PATTERN_CONFIDENCE = 0.95
CONTEXT_CONFIDENCE = 0.90

COMPANY_NAME_CONFIDENCE = 0.70
COMPANY_TITLE_BOOST = 0.05
MIN_COMPANY_NAME_LEN = 5

CONTEXT_WORDS = ("ticker", "spółka", "spólka", "akcje", "akcja", "kurs", "walory", "akcjonariusz")

_DOLLAR_RE = re.compile(r"\$([A-Za-z]{2,10})\b")
_PAREN_RE = re.compile(r"\(([A-Z]{2,10})\)")
_GPW_RE = re.compile(r"\bgpw:([A-Za-z]{2,10})\b", re.IGNORECASE)
_CONTEXT_RE = re.compile(
    r"\b(" + "|".join(CONTEXT_WORDS) + r")\s+([A-Z]{2,10})\b",
    re.IGNORECASE,
)

_COMPANY_SUFFIX_RES = [re.compile(p, re.IGNORECASE) for p in (
    r"\s+s\.a\.?\s*$",
    r"\s+s\.?a\s*$",
    r"\s+se\s*$",
    r"\s+sp\.\s*z\s*o\.o\.?\s*$",
    r"\s+s\.k\.a\.?\s*$",
    r"\s+s\.c\.?\s*$",
    r"\s+nv\s*$",
    r"\s+plc\s*$",
    r"\s+ltd\.?\s*$",
    r"\s+inc\.?\s*$",
)]


def normalize_company_name(name: str) -> str:
    """Lower-case, drop the legal-form suffix, collapse punctuation."""
    s = name.lower()
    for rx in _COMPANY_SUFFIX_RES:
        s = rx.sub("", s)
    s = re.sub(r"[.,\-()]", " ", s)
    return " ".join(s.split())


def alias_base_confidence(alias: str) -> float:
    n = len(alias)
    if n >= 8:
        return 0.8
    if n >= 6:
        return 0.7
    return 0.6


def _boundary_pattern(alias: str) -> re.Pattern[str]:
    # \w is Unicode-aware, so Polish diacritics count as word characters.
    return re.compile(r"(?<!\w)" + re.escape(alias) + r"(?!\w)")


@dataclass
class HeuristicMatch:
    confidence: dict[str, float] = field(default_factory=dict)
    evidence: list[dict[str, Any]] = field(default_factory=list)

    def _merge(self, ticker: str, conf: float, ev: dict[str, Any]) -> None:
        conf = round(min(conf, CONFIDENCE_CAP), 4)
        prev = self.confidence.get(ticker)
        if prev is None or conf > prev:
            self.confidence[ticker] = conf
            self.evidence = [e for e in self.evidence if e["ticker"] != ticker]
            self.evidence.append(ev)


class AliasMatcher:
    """Alias, company-name and pattern matcher built once per invocation."""

    def __init__(
        self,
        aliases: Mapping[str, str],
        valid_tickers: Iterable[str] | None = None,
        companies: Iterable[tuple[str, str]] = (),
    ) -> None:
        self.valid_tickers = frozenset(valid_tickers or ())
        entries = []
        for alias, ticker in aliases.items():
            al = alias.strip().lower()
            if len(al) < MIN_ALIAS_LEN:
                continue
            if self.valid_tickers and ticker not in self.valid_tickers:
                continue
            entries.append((al, ticker))
        entries.sort(key=lambda e: (-len(e[0]), e[0]))
        self._entries = [(al, tk, _boundary_pattern(al)) for al, tk in entries]

        names = []
        for ticker, name in companies:
            tk = (ticker or "").strip().upper()
            norm = normalize_company_name(name or "")
            if len(norm) < MIN_COMPANY_NAME_LEN:
                continue
            if self.valid_tickers and tk not in self.valid_tickers:
                continue
            names.append((norm, tk))
        names.sort(key=lambda e: (-len(e[0]), e[0]))
        self._companies = [(nm, tk, _boundary_pattern(nm)) for nm, tk in names]

    def match_aliases(self, title: str, body: str | None) -> HeuristicMatch:
        result = HeuristicMatch()
        title_l = (title or "").lower()
        text = f"{title_l} {(body or '').lower()}"
        for alias, ticker, rx in self._entries:
            if not rx.search(text):
                continue
            in_title = bool(rx.search(title_l))
            conf = alias_base_confidence(alias) + (TITLE_BOOST if in_title else 0.0)
            result._merge(ticker, conf, {
                "method": "alias", "matched": alias, "ticker": ticker, "in_title": in_title,
            })
            if len(result.confidence) >= MAX_ALIAS_TICKERS:
                break
        return result

    def match_company_names(self, title: str, body: str | None) -> HeuristicMatch:
        result = HeuristicMatch()
        title_l = (title or "").lower()
        text = f"{title_l} {(body or '').lower()}"
        for name, ticker, rx in self._companies:
            if not rx.search(text):
                continue
            in_title = bool(rx.search(title_l))
            conf = COMPANY_NAME_CONFIDENCE + (COMPANY_TITLE_BOOST if in_title else 0.0)
            result._merge(ticker, conf, {
                "method": "company_name", "matched": name, "ticker": ticker, "in_title": in_title,
            })
        return result

    def match_patterns(self, title: str, body: str | None) -> HeuristicMatch:
        result = HeuristicMatch()
        if not self.valid_tickers:
            return result
        for text, in_title in ((title or "", True), (body or "", False)):
            hits: list[tuple[str, float, str]] = []
            hits += [(m.group(1), PATTERN_CONFIDENCE, m.group(0)) for m in _DOLLAR_RE.finditer(text)]
            hits += [(m.group(1), PATTERN_CONFIDENCE, m.group(0)) for m in _PAREN_RE.finditer(text)]
            hits += [(m.group(1), PATTERN_CONFIDENCE, m.group(0)) for m in _GPW_RE.finditer(text)]
            for m in _CONTEXT_RE.finditer(text):
                # The ticker itself must be written upper-case.
                if m.group(2).isupper():
                    hits.append((m.group(2), CONTEXT_CONFIDENCE, m.group(0)))
            for raw, conf, matched in hits:
                tk = raw.upper()
                if tk not in self.valid_tickers:
                    continue
                result._merge(tk, conf, {
                    "method": "pattern", "matched": matched, "ticker": tk, "in_title": in_title,
                })
        return result

    def match(self, title: str, body: str | None) -> HeuristicMatch:
        """Run every layer; highest confidence per ticker wins, top 3 kept."""
        merged = self.match_aliases(title, body)
        for layer in (self.match_company_names(title, body), self.match_patterns(title, body)):
            for ev in layer.evidence:
                merged._merge(ev["ticker"], layer.confidence[ev["ticker"]], ev)
        if len(merged.confidence) > MAX_ALIAS_TICKERS:
            ranked = sorted(merged.confidence.items(), key=lambda tc: -tc[1])
            keep = {t for t, _ in ranked[:MAX_ALIAS_TICKERS]}
            merged.confidence = {t: c for t, c in merged.confidence.items() if t in keep}
            merged.evidence = [e for e in merged.evidence if e["ticker"] in keep]
        return merged


def match_tickers(
    title: str,
    body: str | None,
    aliases: Mapping[str, str],
    valid_tickers: Iterable[str] | None = None,
    companies: Iterable[tuple[str, str]] = (),
) -> dict[str, float]:
    """Convenience wrapper: ticker → confidence for one article."""
    return AliasMatcher(aliases, valid_tickers, companies).match(title, body).confidence
