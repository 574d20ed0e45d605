"""HTML listing scraper for sites without a usable feed.

Targets Drupal-style article listings: each ``<article>`` carries a
heading link, an optional ``<time datetime=…>`` and a lead paragraph.
When no ``<article>`` blocks are present, falls back to plain links
under ``/artykuly/``.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .common_types import NormalizedItem
from .normalize import MAX_SUMMARY_CHARS, MAX_TITLE_CHARS, clean_text, to_datetime

logger = logging.getLogger(__name__)

_MIN_TITLE_CHARS = 5
_MIN_LEAD_CHARS = 30
_FALLBACK_MIN_TITLE = 15
_FALLBACK_LIMIT = 30


def _lead(article) -> Optional[str]:
    for p in article.find_all("p"):
        text = clean_text(p.get_text(" "))
        if len(text) >= _MIN_LEAD_CHARS:
            return text[:1000]
    return None


def _title_link(article):
    for heading in article.find_all(["h2", "h3"]):
        a = heading.find("a", href=True)
        if a is not None:
            return a
    for a in article.find_all("a", href=True):
        if len(a.get_text(strip=True)) >= 10:
            return a
    return None


def parse_article_listing(doc: str, base_url: str, source: str = "") -> List[NormalizedItem]:
    """Extract article stubs from a listing page, de-duplicated by URL."""
    soup = BeautifulSoup(doc or "", "html.parser")
    items: List[NormalizedItem] = []

    for article in soup.find_all("article"):
        a = _title_link(article)
        if a is None:
            continue
        title = clean_text(a.get_text(" "), MAX_TITLE_CHARS)
        if len(title) < _MIN_TITLE_CHARS:
            continue
        time_tag = article.find(attrs={"datetime": True})
        lead = _lead(article)
        items.append(NormalizedItem(
            url=urljoin(base_url, a["href"]),
            title=title,
            summary=lead[:MAX_SUMMARY_CHARS] if lead else None,
            published_at=to_datetime(time_tag["datetime"]) if time_tag is not None else None,
            source=source,
        ))

    if not items:
        for a in soup.select('a[href^="/artykuly/"]'):
            title = clean_text(a.get_text(" "), MAX_TITLE_CHARS)
            if len(title) < _FALLBACK_MIN_TITLE:
                continue
            items.append(NormalizedItem(
                url=urljoin(base_url, a["href"]),
                title=title,
                summary=None,
                published_at=None,
                source=source,
            ))
            if len(items) >= _FALLBACK_LIMIT:
                break
        if items:
            logger.debug("%s: no <article> blocks, used link fallback (%d)", source, len(items))

    seen: set[str] = set()
    unique: List[NormalizedItem] = []
    for it in items:
        if it.url in seen:
            continue
        seen.add(it.url)
        unique.append(it)
    return unique
