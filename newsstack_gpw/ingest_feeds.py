"""Synchronous feed ingestion adapter.

Fetches every URL of every configured source on a bounded thread pool,
sniffs the wire format, and returns ``FetchBatch`` via the shared
normalisation layer.

A failure of one URL (non-2xx, timeout, malformed markup) is caught and
recorded against its source; it never aborts the rest of the batch.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List
from urllib.parse import urlparse

import httpx

from .common_types import FetchBatch, NormalizedItem, SourceStat
from .normalize import parse_feed
from .scrape_html import parse_article_listing
from .sources import KIND_HTML, FeedSource

logger = logging.getLogger(__name__)

BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"

# Regex to strip API keys/tokens from URLs before logging.
_TOKEN_RE = re.compile(r"(apikey|api_key|token|key)=[^&\s]+", re.IGNORECASE)


def sanitize_exc(exc: Exception) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", str(exc)) or type(exc).__name__


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


class HostThrottle:
    """Per-hostname minimum inter-request delay (thread-safe).

    Each caller reserves the next free slot for its host under the lock
    and then sleeps outside it, so requests to different hosts never
    wait on each other.
    """

    def __init__(
        self,
        min_delay_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_delay_s = max(0.0, min_delay_s)
        self._clock = clock
        self._sleep = sleep
        self._next_slot: dict[str, float] = {}
        self._lock = threading.Lock()

    def wait(self, host: str) -> float:
        """Block until *host* may be contacted again; return the wait."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, 0.0))
            self._next_slot[host] = slot + self.min_delay_s
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class FeedFetcher:
    """Synchronous adapter for XML feeds and the scraped HTML listing."""

    def __init__(
        self,
        timeout_s: float = 15.0,
        min_host_delay_s: float = 0.5,
        concurrency: int = 4,
        client: httpx.Client | None = None,
        throttle: HostThrottle | None = None,
    ) -> None:
        self.client = client or httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": BROWSER_UA, "Accept": FEED_ACCEPT},
        )
        self.throttle = throttle or HostThrottle(min_host_delay_s)
        self.concurrency = max(1, concurrency)

    # ── Single URL ──────────────────────────────────────────────

    def fetch_text(self, url: str) -> str:
        """GET *url* after honouring the host throttle; raise on non-2xx."""
        self.throttle.wait(host_of(url))
        r = self.client.get(url)
        r.raise_for_status()
        return r.text

    def fetch_url(self, source: FeedSource, url: str) -> List[NormalizedItem]:
        doc = self.fetch_text(url)
        if source.kind == KIND_HTML:
            return parse_article_listing(doc, base_url=url, source=source.name)
        return parse_feed(doc, source=source.name)

    # ── Batch ───────────────────────────────────────────────────

    def fetch_sources(self, sources: Iterable[FeedSource]) -> FetchBatch:
        """Fetch all URLs of *sources*; isolate failures per URL."""
        batch = FetchBatch()
        jobs: list[tuple[FeedSource, str]] = []
        for src in sources:
            batch.stats.setdefault(src.name, SourceStat())
            jobs.extend((src, url) for url in src.urls)
        if not jobs:
            return batch

        errors: dict[str, list[str]] = {}
        workers = max(1, min(self.concurrency, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {executor.submit(self.fetch_url, src, url): (src, url) for src, url in jobs}
            for future in as_completed(future_map):
                src, url = future_map[future]
                try:
                    items = future.result()
                except Exception as exc:
                    msg = sanitize_exc(exc)
                    logger.warning("%s (%s) failed: %s", src.name, url, msg)
                    errors.setdefault(src.name, []).append(msg)
                    batch.failed_urls += 1
                    continue
                logger.info("%s (%s): %d items", src.name, url, len(items))
                batch.items.extend(items)
                batch.stats[src.name].fetched += len(items)

        for name, msgs in errors.items():
            batch.stats[name].error = "; ".join(msgs)
        return batch

    def close(self) -> None:
        self.client.close()
