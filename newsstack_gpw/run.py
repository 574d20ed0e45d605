"""Entry point: ``python -m newsstack_gpw.run <job>``

Runs one job invocation and prints its JSON envelope to stdout; meant
to be called by an external scheduler (cron, systemd timer).

    python -m newsstack_gpw.run fetch-news
    python -m newsstack_gpw.run fetch-espi
    python -m newsstack_gpw.run process-news --mode trigger --limit 5
    python -m newsstack_gpw.run serve --port 8000
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

from .config import Config
from .jobs import JOB_PROCESS_NEWS, JOBS, MODE_BATCH, MODE_TRIGGER, run_job


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="newsstack_gpw", description="GPW news ingestion + classification jobs")
    p.add_argument("job", choices=[*JOBS, "serve"])
    p.add_argument("--mode", choices=[MODE_TRIGGER, MODE_BATCH], default=MODE_BATCH,
                   help="process-news batch size preset")
    p.add_argument("--limit", type=int, default=None, help="process-news: max items to classify")
    p.add_argument("--host", default="127.0.0.1", help="serve: bind address")
    p.add_argument("--port", type=int, default=8000, help="serve: port")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.job == "serve":
        import uvicorn

        uvicorn.run("newsstack_gpw.server:app", host=args.host, port=args.port)
        return 0

    cfg = Config()
    kwargs = {"mode": args.mode, "limit": args.limit} if args.job == JOB_PROCESS_NEWS else {}
    envelope = run_job(args.job, cfg, **kwargs)
    print(json.dumps(envelope, ensure_ascii=False, indent=2, default=str))
    return 0 if envelope.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
