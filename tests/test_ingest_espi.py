"""Tests for regulatory filings ingestion: emitter extraction, parsing, source fallback."""
from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from newsstack_gpw.dedup import item_content_id
from newsstack_gpw.ingest_espi import (
    EmitterResolver,
    EspiFetcher,
    emitter_from_title,
    emitter_from_url,
    extract_body_and_attachments,
    normalize_company_name,
    parse_espi_feed,
    strip_emitter_prefix,
)
from newsstack_gpw.ingest_feeds import FeedFetcher, HostThrottle
from newsstack_gpw.reference import ReferenceData
from newsstack_gpw.sources import FeedSource

from helpers import ALIASES, COMPANIES

REF = ReferenceData.from_pairs(ALIASES, [(t, n) for t, n, _ in COMPANIES])

ESPI_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>ESPI</title>
    <item>
      <title>MBANK S.A.: Wyniki finansowe za IV kwartał 2025</title>
      <link>https://www.bankier.pl/wiadomosc/mBank-S-A-Wyniki-finansowe-RR-2025-9089820.html</link>
      <description>&lt;p&gt;Zarząd mBank S.A. przekazuje do publicznej wiadomości skonsolidowany raport kwartalny.&lt;/p&gt;&lt;a href="https://www.bankier.pl/static/espi/raport.pdf"&gt;Raport Q4&lt;/a&gt;</description>
      <pubDate>Mon, 05 Jan 2026 18:30:00 +0100</pubDate>
    </item>
    <item>
      <title>Geotrans SA - Zawiadomienie o transakcjach</title>
      <link>https://www.gpw.pl/komunikat?id=1&amp;utm_source=rss</link>
      <description>Krótko</description>
    </item>
    <item>
      <title>Geotrans SA - Zmiana terminu publikacji raportu</title>
      <link>https://www.gpw.pl/komunikat?id=1&amp;utm_source=rss</link>
    </item>
  </channel>
</rss>
"""

EMPTY_RSS = '<?xml version="1.0"?><rss version="2.0"><channel><title>ESPI</title></channel></rss>'


class TestEmitterFromUrl:
    @pytest.mark.parametrize("url,expected", [
        ("https://www.bankier.pl/wiadomosc/mBank-S-A-Wyniki-finansowe-RR-2025-9089820.html", "mbank"),
        ("https://www.bankier.pl/wiadomosc/GRUPA-FORTE-S-A-Raport-okresowy-9090001.html", "grupa forte"),
        ("https://www.bankier.pl/wiadomosc/Geotrans-SA-Raport-kwartalny-9090002.html", "geotrans"),
        ("https://www.bankier.pl/wiadomosc/AMREST-Wyniki-finansowe-9090003.html", "amrest"),
    ])
    def test_known_slugs(self, url, expected):
        assert emitter_from_url(url) == expected

    def test_no_keyword(self):
        assert emitter_from_url("https://www.bankier.pl/wiadomosc/Nowa-inwestycja-9090004.html") is None

    def test_keyword_first(self):
        assert emitter_from_url("https://www.bankier.pl/wiadomosc/Raport-biezacy-9090005.html") is None

    def test_not_a_bankier_url(self):
        assert emitter_from_url("https://www.gpw.pl/komunikat?id=1") is None


class TestTitleHandling:
    def test_emitter_before_colon(self):
        assert emitter_from_title("PKN ORLEN S.A.: Zawarcie umowy") == "PKN ORLEN S.A."

    def test_emitter_before_dash(self):
        assert emitter_from_title("KGHM – Raport bieżący") == "KGHM"

    def test_no_separator(self):
        assert emitter_from_title("Raport bieżący nr 12") is None

    def test_strip_prefix(self):
        assert strip_emitter_prefix("PKN ORLEN S.A.: Zawarcie umowy") == "Zawarcie umowy"
        assert strip_emitter_prefix("Geotrans SA - Zawiadomienie") == "Zawiadomienie"
        assert strip_emitter_prefix("Bez prefiksu") == "Bez prefiksu"

    def test_normalize_company_name(self):
        assert normalize_company_name("PKN ORLEN S.A.") == "pkn orlen"
        assert normalize_company_name("Allegro.eu SA") == "allegro eu"


class TestEmitterResolver:
    def test_alias_lookup(self):
        assert EmitterResolver(REF).resolve("mbank") == "MBK"

    def test_exact_company_name(self):
        assert EmitterResolver(REF).resolve("PKN ORLEN S.A.") == "PKN"

    def test_fuzzy_prefix(self):
        assert EmitterResolver(REF).resolve("kghm polska") == "KGH"

    def test_unknown(self):
        assert EmitterResolver(REF).resolve("geotrans") is None
        assert EmitterResolver(REF).resolve(None) is None
        assert EmitterResolver(REF).resolve("x") is None


class TestBodyAndAttachments:
    def test_body_and_pdf_link(self):
        body, attachments = extract_body_and_attachments(
            "<p>Zarząd spółki informuje o zawarciu umowy znaczącej o wartości 120 mln zł.</p>"
            '<a href="https://espi.example/zal/umowa.pdf">Umowa</a>'
            '<a href="https://espi.example/zal/umowa.pdf">Umowa (kopia)</a>'
            '<a href="https://espi.example/o-nas">O nas</a>'
        )
        assert body.startswith("Zarząd spółki informuje")
        assert attachments == [{"name": "Umowa", "url": "https://espi.example/zal/umowa.pdf", "type": "pdf"}]

    def test_short_body_dropped(self):
        assert extract_body_and_attachments("<p>Krótko</p>") == (None, [])

    def test_empty(self):
        assert extract_body_and_attachments(None) == (None, [])

    def test_body_capped(self):
        body, _ = extract_body_and_attachments("<p>" + "a" * 5000 + "</p>")
        assert len(body) == 3000


class TestParseEspiFeed:
    def test_items_are_authoritative(self):
        items = parse_espi_feed(ESPI_RSS, EmitterResolver(REF))
        assert len(items) == 3
        first = items[0]
        assert first.title == "Wyniki finansowe za IV kwartał 2025"
        assert first.source == "espi"
        assert first.category == "regulatory"
        assert first.impact_score == 8
        assert first.tickers == ["MBK"]
        assert first.ticker_confidence == {"MBK": 1.0}
        assert first.published_at == datetime(2026, 1, 5, 17, 30, tzinfo=timezone.utc)
        assert first.body_text.startswith("Zarząd mBank S.A.")
        assert first.attachments[0]["type"] == "pdf"
        assert first.dedup_key is None

    def test_unmatched_emitter_kept_without_tickers(self):
        second = parse_espi_feed(ESPI_RSS, EmitterResolver(REF))[1]
        assert second.title == "Zawiadomienie o transakcjach"
        assert second.tickers == []
        assert second.body_text is None

    def test_shared_tracking_url_keyed_by_title(self):
        _, a, b = parse_espi_feed(ESPI_RSS, EmitterResolver(REF))
        assert a.dedup_key == "https://www.gpw.pl/komunikat?id=1##Zawiadomienie o transakcjach"
        assert item_content_id(a) != item_content_id(b)


def _espi_fetcher(handler) -> FeedFetcher:
    return FeedFetcher(client=httpx.Client(transport=httpx.MockTransport(handler)), throttle=HostThrottle(0.0))


SOURCES = (
    FeedSource("primary", ("https://primary.example/espi.xml",)),
    FeedSource("backup", ("https://backup.example/rss",)),
)


class TestEspiFetcher:
    def test_falls_back_on_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "primary.example":
                return httpx.Response(503, text="maintenance")
            return httpx.Response(200, text=ESPI_RSS)

        batch = EspiFetcher(_espi_fetcher(handler), SOURCES).fetch(REF)
        assert len(batch.items) == 3
        assert "503" in batch.stats["primary"].error
        assert batch.stats["backup"].fetched == 3
        assert batch.failed_urls == 1

    def test_falls_back_on_empty_feed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "primary.example":
                return httpx.Response(200, text=EMPTY_RSS)
            return httpx.Response(200, text=ESPI_RSS)

        batch = EspiFetcher(_espi_fetcher(handler), SOURCES).fetch(REF)
        assert batch.stats["primary"].error is None
        assert batch.stats["backup"].fetched == 3
        assert batch.failed_urls == 0

    def test_first_success_stops_chain(self):
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(200, text=ESPI_RSS)

        EspiFetcher(_espi_fetcher(handler), SOURCES).fetch(REF)
        assert hosts == ["primary.example"]

    def test_all_sources_fail_yields_empty_batch(self):
        batch = EspiFetcher(_espi_fetcher(lambda r: httpx.Response(500)), SOURCES).fetch(REF)
        assert batch.items == []
        assert batch.failed_urls == 2
        assert batch.failed_sources == ["backup", "primary"]
