"""Tests for job envelopes, the HTTP trigger surface and the CLI."""
from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from newsstack_gpw import jobs
from newsstack_gpw.config import Config
from newsstack_gpw.ingest_feeds import FeedFetcher, HostThrottle
from newsstack_gpw.run import main
from newsstack_gpw.server import create_app
from newsstack_gpw.sources import FeedSource

from helpers import T0, FakeProvider, add_item, minutes

NEWS_RSS = """<?xml version="1.0"?><rss version="2.0"><channel>
<item><title>Orlen podnosi ceny</title><link>https://ok.example/1</link></item>
<item><title>KGHM zwiększa wydobycie</title><link>https://ok.example/2</link></item>
</channel></rss>"""

EMPTY_RSS = """<?xml version="1.0"?><rss version="2.0"><channel><title>Pusto</title></channel></rss>"""

ESPI_RSS = """<?xml version="1.0"?><rss version="2.0"><channel>
<item><title>MBANK S.A.: Wyniki finansowe</title>
<link>https://www.bankier.pl/wiadomosc/mBank-S-A-Wyniki-finansowe-9089820.html</link></item>
</channel></rss>"""


@pytest.fixture
def cfg():
    return Config(
        openai_api_key="",
        anthropic_api_key="",
        chunk_pause_s=0.0,
        trigger_batch_size=5,
        process_batch_size=20,
    )


def _fetcher(handler) -> FeedFetcher:
    return FeedFetcher(client=httpx.Client(transport=httpx.MockTransport(handler)), throttle=HostThrottle(0.0))


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "ok.example":
        return httpx.Response(200, text=NEWS_RSS)
    return httpx.Response(503, text="down")


GOOD = FeedSource("good", ("https://ok.example/rss",))
DOWN = FeedSource("down", ("https://down.example/rss",))
DOWN2 = FeedSource("down2", ("https://down2.example/rss",))
EMPTY = FeedSource("empty", ("https://empty.example/rss",))


class TestFetchNewsJob:
    def test_partial_then_idempotent(self, store, cfg):
        first = jobs.fetch_news_job(cfg, store=store, fetcher=_fetcher(_handler), sources=[GOOD, DOWN])
        assert first["ok"] is True
        assert first["status"] == "partial"
        assert (first["inserted"], first["skipped"], first["failed"]) == (2, 0, 1)
        assert "503" in first["sources"]["down"]["error"]

        second = jobs.fetch_news_job(cfg, store=store, fetcher=_fetcher(_handler), sources=[GOOD, DOWN])
        assert (second["inserted"], second["skipped"]) == (0, 2)
        assert store.count_news_items() == 2

    def test_all_sources_failing(self, store, cfg):
        env = jobs.fetch_news_job(cfg, store=store, fetcher=_fetcher(_handler), sources=[DOWN, DOWN2])
        assert env["ok"] is False
        assert env["status"] == "failed"
        assert env["error"] == "no items; failed sources: down, down2"
        health = store.get_job_health("fetch-news")
        assert health["consecutive_failures"] == 1

    def test_empty_source_not_reported_as_failed(self, store, cfg):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "empty.example":
                return httpx.Response(200, text=EMPTY_RSS)
            return httpx.Response(503, text="down")

        env = jobs.fetch_news_job(cfg, store=store, fetcher=_fetcher(handler), sources=[EMPTY, DOWN])
        assert env["status"] == "failed"
        assert env["error"] == "no items; failed sources: down"
        assert "error" not in env["sources"]["empty"]

    def test_run_recorded(self, store, cfg):
        jobs.fetch_news_job(cfg, store=store, fetcher=_fetcher(_handler), sources=[GOOD])
        run = store.recent_runs(1)[0]
        assert run["job_name"] == "fetch-news"
        assert run["status"] == "success"
        assert run["details"]["inserted"] == 2

    def test_unavailable_store(self, tmp_path):
        cfg = Config(sqlite_path=str(tmp_path / "missing" / "dir" / "state.db"))
        env = jobs.fetch_news_job(cfg, fetcher=_fetcher(_handler), sources=[GOOD])
        assert env["ok"] is False
        assert "store unavailable" in env["error"]


class TestFetchEspiJob:
    def test_inserts_authoritative_filings(self, seeded_store, cfg):
        src = FeedSource("gpw", ("https://gpw.example/rss",))
        fetcher = _fetcher(lambda r: httpx.Response(200, text=ESPI_RSS))
        env = jobs.fetch_espi_job(cfg, store=seeded_store, fetcher=fetcher, sources=[src])
        assert env["ok"] is True
        assert env["inserted"] == 1
        (row,) = seeded_store.claim_unclassified(10, "t", 0.0, 600)
        assert row.source == "espi"
        assert row.tickers == ["MBK"]
        assert row.title == "Wyniki finansowe"

    def test_missing_aliases_is_fatal(self, store, cfg):
        env = jobs.fetch_espi_job(cfg, store=store, fetcher=_fetcher(_handler), sources=[GOOD])
        assert env["ok"] is False
        assert env["error"] == "ticker_aliases is empty"
        assert store.get_job_health("fetch-espi")["consecutive_failures"] == 1


class TestProcessNewsJob:
    def test_trigger_mode_batch_size(self, seeded_store, cfg):
        for i in range(7):
            add_item(seeded_store, f"https://x.pl/{i}", published_at=T0 + minutes(i))
        env = jobs.process_news_job(cfg, store=seeded_store, providers=[FakeProvider({})], mode="trigger")
        assert env["ok"] is True
        assert env["status"] == "success"
        assert env["processed"] == 5
        assert env["remaining"] == 2

    def test_explicit_limit(self, seeded_store, cfg):
        for i in range(3):
            add_item(seeded_store, f"https://x.pl/{i}", published_at=T0 + minutes(i))
        env = jobs.process_news_job(cfg, store=seeded_store, providers=[], limit=1)
        assert env["processed"] == 1
        assert env["ai_failures"] == 1
        assert env["remaining"] == 2

    def test_empty_backlog_is_success(self, seeded_store, cfg):
        env = jobs.process_news_job(cfg, store=seeded_store, providers=[])
        assert env["ok"] is True
        assert env["processed"] == 0
        assert env["remaining"] == 0

    def test_missing_aliases_is_fatal(self, store, cfg):
        add_item(store, "https://x.pl/1")
        env = jobs.process_news_job(cfg, store=store, providers=[])
        assert env == {"ok": False, "error": "ticker_aliases is empty", "ts": env["ts"]}
        assert store.count_unclassified() == 1

    def test_unknown_mode(self, cfg):
        env = jobs.process_news_job(cfg, mode="sometimes")
        assert env["ok"] is False
        assert "unknown mode" in env["error"]

    def test_run_job_dispatch(self, cfg):
        assert jobs.run_job("nope", cfg)["ok"] is False


class TestServer:
    @pytest.fixture
    def client(self, seeded_store, cfg):
        return TestClient(create_app(cfg, store_factory=lambda: seeded_store))

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_process_news(self, client, seeded_store):
        add_item(seeded_store, "https://x.pl/1", title="Orlen podnosi ceny")
        r = client.post("/jobs/process-news", json={"mode": "trigger", "limit": 2})
        assert r.status_code == 200
        body = r.json()
        assert body["processed"] == 1
        assert body["remaining"] == 0

    def test_process_news_without_body(self, client):
        assert client.post("/jobs/process-news").status_code == 200

    @pytest.mark.parametrize("payload", [{"mode": "sometimes"}, {"limit": 0}, {"limit": 501}])
    def test_process_news_validation(self, client, payload):
        assert client.post("/jobs/process-news", json=payload).status_code == 422

    def test_pipeline_status(self, client, seeded_store):
        add_item(seeded_store, "https://x.pl/1")
        client.post("/jobs/process-news", json={"limit": 1})
        body = client.get("/pipeline-status").json()
        assert body["ok"] is True
        assert body["backlog"] == 0
        assert body["runs"][0]["job_name"] == "process-news"
        assert [h["job_name"] for h in body["health"]] == ["process-news"]

    def test_failed_job_is_500(self, client):
        with patch("newsstack_gpw.jobs.fetch_news_job", return_value=jobs.error_envelope("no items; failed sources: down")):
            r = client.post("/jobs/fetch-news")
        assert r.status_code == 500
        assert r.json()["error"] == "no items; failed sources: down"


class TestCli:
    def test_prints_envelope(self, capsys):
        with patch("newsstack_gpw.run.run_job", return_value={"ok": True, "processed": 3}) as run_job:
            assert main(["process-news", "--mode", "trigger", "--limit", "5"]) == 0
        name, _cfg = run_job.call_args.args
        assert name == "process-news"
        assert run_job.call_args.kwargs == {"mode": "trigger", "limit": 5}
        assert json.loads(capsys.readouterr().out) == {"ok": True, "processed": 3}

    def test_failure_exit_code(self):
        with patch("newsstack_gpw.run.run_job", return_value={"ok": False, "error": "x"}) as run_job:
            assert main(["fetch-espi"]) == 1
        assert run_job.call_args.kwargs == {}

    def test_unknown_job_rejected(self):
        with pytest.raises(SystemExit):
            main(["fetch-everything"])
