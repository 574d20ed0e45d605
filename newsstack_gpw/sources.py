"""Registry of upstream news sources.

A source may expose several URLs, possibly on different hosts;
politeness throttling is keyed by host, not by source.
"""

from __future__ import annotations

from dataclasses import dataclass

KIND_FEED = "feed"  # RSS or Atom, sniffed at parse time
KIND_HTML = "html"  # scraped by the HTML collaborator


@dataclass(frozen=True)
class FeedSource:
    name: str
    urls: tuple[str, ...]
    kind: str = KIND_FEED


NEWS_SOURCES: tuple[FeedSource, ...] = (
    FeedSource("pap", (
        "https://biznes.pap.pl/pl/rss/latest.xml",
        "https://biznes.pap.pl/pl/rss/companies.xml",
    )),
    FeedSource("stooq", ("https://stooq.pl/n/?f=rss",)),
    FeedSource("bankier", (
        "https://www.bankier.pl/rss/wiadomosci.xml",
        "https://www.bankier.pl/rss/gielda.xml",
    )),
    FeedSource("wp", ("https://finanse.wp.pl/rss.xml",)),
    FeedSource("youtube", (
        "https://www.youtube.com/feeds/videos.xml?channel_id=UCiAnMnBVsZkZP7EoMnZyKqw",
        "https://www.youtube.com/feeds/videos.xml?channel_id=UCyLJaQbSiLuMWRF0HJJwX8w",
    )),
    FeedSource("strefa", ("https://strefainwestorow.pl/artykuly",), kind=KIND_HTML),
)

# Regulatory filings, in fallback order: the first source that yields
# items wins.
ESPI_SOURCES: tuple[FeedSource, ...] = (
    FeedSource("bankier", ("https://www.bankier.pl/rss/espi.xml",)),
    FeedSource("gpw", ("https://www.gpw.pl/komunikaty?type=rss",)),
)

# Highest-trust source tag: official regulatory filings.
REGULATORY_SOURCE = "espi"
