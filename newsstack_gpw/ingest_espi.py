"""Regulatory filings (ESPI) ingestion.

Sources are tried in order (Bankier ESPI RSS, then the GPW RSS); the
first one that yields items wins.  If every source fails the batch is
empty: no placeholder rows are ever stored.

Each filing's emitter is resolved to a ticker, which then travels with
the item as a pre-identified authoritative list (``{T: 1.0}``).

Emitter extraction, most specific first:

1. Bankier URL slug, e.g. ``/wiadomosc/mBank-S-A-Wyniki-finansowe-9089820.html``
   → ``"mbank"``: drop the trailing numeric id, cut at the first filing
   keyword, strip legal-form suffixes.
2. Title prefix before the first dash/colon, e.g. ``"PKN ORLEN S.A.: …"``.

Emitter → ticker: exact alias lookup, then a fuzzy prefix/substring
match against normalised company names (score ≥ 0.6).
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

import feedparser
from bs4 import BeautifulSoup

from .common_types import FetchBatch, NormalizedItem, SourceStat
from .dedup import canonical_url, has_tracking_params
from .heuristic import normalize_company_name
from .ingest_feeds import FeedFetcher, sanitize_exc
from .normalize import MAX_TITLE_CHARS, FeedParseError, clean_text, detect_format, to_datetime
from .reference import ReferenceData
from .sources import ESPI_SOURCES, REGULATORY_SOURCE, FeedSource

logger = logging.getLogger(__name__)

ESPI_CATEGORY = "regulatory"
ESPI_IMPACT = 8
MAX_BODY_CHARS = 3000
MIN_BODY_CHARS = 50
FUZZY_MIN_SCORE = 0.6

ESPI_KEYWORDS = frozenset({
    "wyniki", "raport", "zawiadomienie", "podpisanie", "podpisnie", "rejestracja",
    "skonsolidowany", "unaudited", "informacja", "zmiana", "korekta", "nabycie",
    "ustanowienie", "powolanie", "odwolanie", "uchwala", "wykaz", "lista",
    "ogloszenie", "stanowisko", "tresc", "aktualizacja", "sprawozdanie", "zawarcie",
    "zbycie", "emisja", "skup", "rezygnacja", "komunikat", "uzupelnienie", "dane",
    "zwolanie", "decyzja", "publikacja",
})
LEGAL_PAIRS = frozenset({"S-A", "S.A"})
LEGAL_SINGLES = frozenset({"SA", "AB", "SE", "NV", "PLC", "LTD"})

_SLUG_RE = re.compile(r"/wiadomosc/(.+?)\.html")
_TITLE_EMITTER_RE = re.compile(r"^([^–\-:]+?)\s*[–\-:]")
_TITLE_PREFIX_RE = re.compile(r"^[^–\-]+[–\-]\s*")
_ATTACHMENT_RE = re.compile(r"\.(pdf|xlsx?|docx?|zip)(?:$|[?#])", re.IGNORECASE)


# ── Emitter extraction ──────────────────────────────────────────

def emitter_from_url(url: str) -> Optional[str]:
    m = _SLUG_RE.search(url or "")
    if not m:
        return None
    parts = m.group(1).split("-")
    while parts and parts[-1].isdigit():
        parts.pop()

    cut = next((i for i, p in enumerate(parts) if p.lower() in ESPI_KEYWORDS), -1)
    if cut <= 0:
        return None
    ep = parts[:cut]

    changed = True
    while changed and ep:
        changed = False
        if len(ep) >= 2 and f"{ep[-2]}-{ep[-1]}".upper() in LEGAL_PAIRS:
            ep = ep[:-2]
            changed = True
        elif ep[-1].upper() in LEGAL_SINGLES:
            ep = ep[:-1]
            changed = True

    return " ".join(ep).strip().lower() or None


def emitter_from_title(title: str) -> Optional[str]:
    m = _TITLE_EMITTER_RE.match(title or "")
    if m and len(m.group(1).strip()) >= 2:
        return m.group(1).strip()
    return None


def strip_emitter_prefix(title: str) -> str:
    """Drop the ``"EMITTER S.A.: "`` / ``"EMITTER – "`` prefix from a title."""
    if ":" in title:
        rest = title.split(":", 1)[1].strip()
    else:
        rest = _TITLE_PREFIX_RE.sub("", title, count=1).strip()
    return rest or title


class EmitterResolver:
    """Emitter name → ticker against one invocation's reference data."""

    def __init__(self, ref: ReferenceData) -> None:
        self.aliases = ref.aliases
        self.index: list[tuple[str, str]] = []
        for ticker, name in ref.companies:
            norm = normalize_company_name(name)
            if len(norm) >= 2:
                self.index.append((ticker, norm))

    def resolve(self, emitter: Optional[str]) -> Optional[str]:
        if not emitter or len(emitter) < 2:
            return None
        exact = self.aliases.get(emitter.strip().lower())
        if exact:
            return exact

        target = normalize_company_name(emitter)
        if len(target) < 2:
            return None
        best, best_score = None, 0.0
        for ticker, comp in self.index:
            if comp == target:
                return ticker
            prefix = len(target) / len(comp) if comp.startswith(target) else 0.0
            sub = (len(target) / len(comp) if target in comp else 0.0) + (
                len(comp) / len(target) if comp in target else 0.0
            )
            score = max(prefix, sub)
            if score > best_score and score >= FUZZY_MIN_SCORE:
                best, best_score = ticker, score
        return best


# ── Description body ────────────────────────────────────────────

def extract_body_and_attachments(desc_html: Optional[str]) -> tuple[Optional[str], list[dict[str, str]]]:
    """Plain-text body (≤ 3000 chars, kept only if > 50) + document links."""
    if not desc_html:
        return None, []
    soup = BeautifulSoup(desc_html, "html.parser")

    attachments: list[dict[str, str]] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        m = _ATTACHMENT_RE.search(href)
        if not m or href in seen:
            continue
        seen.add(href)
        name = a.get_text(strip=True) or href.rstrip("/").rsplit("/", 1)[-1] or "Załącznik"
        attachments.append({"name": name, "url": href, "type": m.group(1).lower()})

    lines = (" ".join(line.split()) for line in soup.get_text("\n").splitlines())
    body = "\n".join(line for line in lines if line)[:MAX_BODY_CHARS]
    return (body if len(body) > MIN_BODY_CHARS else None), attachments


# ── Feed parsing ────────────────────────────────────────────────

def parse_espi_feed(doc: str, resolver: EmitterResolver) -> List[NormalizedItem]:
    """Parse one filings feed into authoritative ``NormalizedItem``s."""
    fmt = detect_format(doc)
    parsed = feedparser.parse(doc)
    entries = parsed.get("entries") or []
    if parsed.get("bozo") and not entries:
        raise FeedParseError(f"malformed {fmt} filings feed: {parsed.get('bozo_exception')}")

    out: List[NormalizedItem] = []
    matched = 0
    for entry in entries:
        raw_title = clean_text(entry.get("title"), MAX_TITLE_CHARS)
        link = str(entry.get("link") or "").strip()
        if not raw_title or not link:
            continue

        emitter = emitter_from_url(link) or emitter_from_title(raw_title)
        ticker = resolver.resolve(emitter)
        if ticker:
            matched += 1
        elif emitter:
            logger.debug("emitter not matched: %r (%s)", emitter, raw_title[:50])

        title = strip_emitter_prefix(raw_title)
        body, attachments = extract_body_and_attachments(entry.get("summary") or entry.get("description"))
        item = NormalizedItem(
            url=link,
            title=title,
            summary=body[:500] if body else None,
            published_at=to_datetime(str(entry.get("published") or entry.get("updated") or "")),
            source=REGULATORY_SOURCE,
            tickers=[ticker] if ticker else [],
            ticker_confidence={ticker: 1.0} if ticker else {},
            body_text=body,
            attachments=attachments,
            category=ESPI_CATEGORY,
            impact_score=ESPI_IMPACT,
        )
        # Some feeds reuse one tracking URL for every filing.
        if has_tracking_params(link):
            item.dedup_key = f"{canonical_url(link)}##{title}"
        out.append(item)

    logger.info("%d filings parsed, %d emitters matched", len(out), matched)
    return out


class EspiFetcher:
    """Ordered fallback over the filings sources."""

    def __init__(self, fetcher: FeedFetcher, sources: Sequence[FeedSource] = ESPI_SOURCES) -> None:
        self.fetcher = fetcher
        self.sources = tuple(sources)

    def fetch(self, ref: ReferenceData) -> FetchBatch:
        resolver = EmitterResolver(ref)
        batch = FetchBatch()
        for src in self.sources:
            stat = batch.stats.setdefault(src.name, SourceStat())
            items = self._fetch_source(src, resolver, stat, batch)
            if items:
                batch.items = items
                stat.fetched = len(items)
                logger.info("filings from %s: %d", src.name, len(items))
                return batch
        logger.warning("all filings sources failed or were empty: %s", ", ".join(s.name for s in self.sources))
        return batch

    def _fetch_source(
        self,
        src: FeedSource,
        resolver: EmitterResolver,
        stat: SourceStat,
        batch: FetchBatch,
    ) -> list[NormalizedItem]:
        items: list[NormalizedItem] = []
        errors: list[str] = []
        for url in src.urls:
            try:
                items.extend(parse_espi_feed(self.fetcher.fetch_text(url), resolver))
            except Exception as exc:
                msg = sanitize_exc(exc)
                logger.warning("filings source %s (%s) failed: %s", src.name, url, msg)
                errors.append(msg)
                batch.failed_urls += 1
        if errors:
            stat.error = "; ".join(errors)
        return items
