"""newsstack_gpw – batch news ingestion and entity resolution for GPW equities.

Periodic jobs pull RSS/Atom feeds, one scraped listing and the ESPI
regulatory filings feed, dedup them into SQLite, then resolve which
tickers each article is about (alias heuristic + AI classifier with a
provider fallback chain) and cluster related articles into events.
Every invocation is recorded in ``pipeline_runs`` / ``job_health``.
"""
