"""Normalisation: raw feed documents → NormalizedItem.

Two wire formats are accepted and told apart by structural sniffing:

item-based (RSS 2.0 / RDF):
    <rss><channel><item><title/><link/><description/><pubDate/></item>…
    ``<link>`` is a text node; ``<guid>`` is the fallback URL.

entry-based (Atom, e.g. YouTube channel feeds):
    <feed><entry><title/><link rel="alternate" href=…/><published/>
    <media:group><media:description/></media:group></entry>…

Parsing of the sniffed document is delegated to feedparser; the
functions here are **schema-tolerant** and try several field names so
that minor feed changes don't silently drop data.
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, List

import feedparser
from dateutil import parser as dtparser

from .common_types import NormalizedItem

logger = logging.getLogger(__name__)

FORMAT_RSS = "rss"
FORMAT_ATOM = "atom"

MAX_TITLE_CHARS = 500
MAX_SUMMARY_CHARS = 2000


class FeedParseError(ValueError):
    """The document is not a recognisable item- or entry-based feed."""


# ── Shared helpers ──────────────────────────────────────────────

# Minimum length for a date string to be considered valid.
# Shortest valid format: "YYYYMMDD" = 8 chars.  Shorter strings like
# "5" or "12" are ambiguously parsed by dateutil (e.g. "5" → Feb 5).
_MIN_DATE_LEN = 8

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|p)\b[^>]*>", re.IGNORECASE)
_ROOT_TAG_RE = re.compile(r"<\s*([A-Za-z][\w:.-]*)")
_PROLOG_RE = re.compile(r"<\?.*?\?>|<!--.*?-->|<!DOCTYPE[^>]*>", re.DOTALL | re.IGNORECASE)


def to_datetime(s: str | None) -> datetime | None:
    """Parse a date/time string to an aware UTC datetime.

    Returns ``None`` for empty, too-short, or unparseable strings so a
    malformed date never fails the item.  Naive datetimes (no timezone
    info) are assumed UTC.
    """
    if not s:
        return None
    s_stripped = s.strip()
    if len(s_stripped) < _MIN_DATE_LEN:
        logger.warning("Date string too short (%d chars): %r, treating as missing.", len(s_stripped), s_stripped)
        return None
    try:
        dt = dtparser.parse(s_stripped)
    except (ValueError, OverflowError, TypeError):
        logger.warning("Unparseable date %r, treating as missing.", s_stripped[:80])
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clean_text(s: str | None, limit: int | None = None) -> str:
    """Strip HTML tags/entities and collapse whitespace."""
    if not s:
        return ""
    text = _BLOCK_TAG_RE.sub(" ", s)
    text = _HTML_TAG_RE.sub(" ", text)
    text = html.unescape(text)
    text = " ".join(text.split())
    if limit is not None:
        text = text[:limit]
    return text


def detect_format(doc: str) -> str:
    """Sniff whether *doc* is an item-based or an entry-based feed.

    Looks at the root element first and falls back to the presence of
    ``<item>`` / ``<entry>`` elements.  Raises :class:`FeedParseError`
    when neither shape is found.
    """
    body = _PROLOG_RE.sub("", doc or "").lstrip()
    m = _ROOT_TAG_RE.match(body)
    if m:
        root = m.group(1).lower()
        if root in ("rss", "rdf:rdf"):
            return FORMAT_RSS
        if root == "feed":
            return FORMAT_ATOM
    if re.search(r"<item[\s>]", body):
        return FORMAT_RSS
    if re.search(r"<entry[\s>]", body):
        return FORMAT_ATOM
    raise FeedParseError("document is neither item-based nor entry-based")


def _entry_url(entry: Any) -> str:
    url = entry.get("link") or ""
    if not url:
        guid = entry.get("id") or ""
        if isinstance(guid, str) and guid.startswith(("http://", "https://")):
            url = guid
    return str(url).strip()


def _entry_summary(entry: Any, fmt: str) -> str:
    if fmt == FORMAT_ATOM:
        raw = entry.get("media_description") or entry.get("summary") or ""
    else:
        raw = entry.get("summary") or entry.get("description") or ""
    return clean_text(raw, MAX_SUMMARY_CHARS)


def _entry_published(entry: Any, fmt: str) -> str:
    if fmt == FORMAT_ATOM:
        return str(entry.get("published") or entry.get("updated") or "")
    return str(entry.get("published") or entry.get("pubdate") or entry.get("updated") or "")


# ── Feed documents ──────────────────────────────────────────────

def parse_feed(doc: str, source: str = "") -> List[NormalizedItem]:
    """Parse an RSS/Atom document into zero or more ``NormalizedItem``.

    Items without a URL or title are dropped.  Raises
    :class:`FeedParseError` if the document is not a feed at all.
    """
    fmt = detect_format(doc)
    parsed = feedparser.parse(doc)
    entries = parsed.get("entries") or []
    if parsed.get("bozo") and not entries:
        exc = parsed.get("bozo_exception")
        raise FeedParseError(f"malformed {fmt} document: {exc}")

    out: List[NormalizedItem] = []
    for entry in entries:
        url = _entry_url(entry)
        title = clean_text(entry.get("title"), MAX_TITLE_CHARS)
        if not url or not title:
            continue
        summary = _entry_summary(entry, fmt)
        out.append(NormalizedItem(
            url=url,
            title=title,
            summary=summary or None,
            published_at=to_datetime(_entry_published(entry, fmt)),
            source=source,
        ))
    return out
