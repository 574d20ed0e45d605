"""HTTP trigger surface for the periodic jobs.

An external scheduler POSTs to ``/jobs/<name>``; every response is the
job's JSON envelope.  Run with::

    uvicorn newsstack_gpw.server:app
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import jobs
from .config import Config
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)


class ProcessRequest(BaseModel):
    mode: Literal["trigger", "batch"] = "batch"
    limit: Optional[int] = Field(default=None, ge=1, le=500)


def _respond(envelope: dict[str, Any]) -> JSONResponse:
    return JSONResponse(envelope, status_code=200 if envelope.get("ok") else 500)


def create_app(
    cfg: Optional[Config] = None,
    store_factory: Optional[Callable[[], SqliteStore]] = None,
) -> FastAPI:
    """Build the app; *store_factory* lets tests inject a shared store."""
    app = FastAPI(title="newsstack-gpw", version="1.0.0")

    def _cfg() -> Config:
        return cfg or Config()

    def _store() -> Optional[SqliteStore]:
        return store_factory() if store_factory else None

    @app.post("/jobs/fetch-news")
    def fetch_news() -> JSONResponse:
        return _respond(jobs.fetch_news_job(_cfg(), store=_store()))

    @app.post("/jobs/fetch-espi")
    def fetch_espi() -> JSONResponse:
        return _respond(jobs.fetch_espi_job(_cfg(), store=_store()))

    @app.post("/jobs/process-news")
    def process_news(body: Optional[ProcessRequest] = None) -> JSONResponse:
        req = body or ProcessRequest()
        return _respond(jobs.process_news_job(_cfg(), store=_store(), mode=req.mode, limit=req.limit))

    @app.get("/pipeline-status")
    def pipeline_status() -> JSONResponse:
        c = _cfg()
        store = _store()
        owned = store is None
        try:
            store = store or SqliteStore(c.sqlite_path)
            return JSONResponse(jobs.pipeline_status(store))
        except Exception as exc:
            logger.warning("pipeline status unavailable: %s", exc)
            return _respond(jobs.error_envelope(str(exc)))
        finally:
            if owned and store is not None:
                store.close()

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "ts": jobs.now_iso()}

    return app


app = create_app()
