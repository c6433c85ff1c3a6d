"""Run pipeline stage workers without the HTTP app.

Examples::

    python worker.py                              # all stages
    python worker.py --stages outgoing-message --concurrency 4
    python worker.py --init-schema                # create tables, then run
"""

import argparse
import logging
import signal
import sys
from dataclasses import replace
from threading import Event

from dotenv import load_dotenv
from sqlalchemy import create_engine

from pagebot.app_logging import init_logging
from pagebot.config import get_settings
from pagebot.models import ensure_schema
from pagebot.pipeline.startup import recover_in_flight, start_pipeline
from pagebot.pipeline.workers import WorkerPool
from pagebot.queue.jobs import Stage

logger = logging.getLogger("pagebot.worker")


def _echo(message: str) -> None:
    sys.stdout.write(f"{message}\n")


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run Messenger reply pipeline workers")
    parser.add_argument(
        "--stages",
        nargs="+",
        choices=[s.value for s in Stage],
        default=[s.value for s in Stage],
        help="Stages to consume (default: all)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Worker threads per stage (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create database tables and the match_documents function",
    )
    args = parser.parse_args(argv)

    init_logging()
    settings = get_settings()
    if args.concurrency is not None:
        settings = replace(settings, worker_concurrency=args.concurrency)

    if args.init_schema:
        if not settings.database_url:
            parser.error("--init-schema requires DATABASE_URL")
        url = settings.database_url
        if url.startswith("postgresql://"):
            url = "postgresql+psycopg://" + url[len("postgresql://"):]
        ensure_schema(create_engine(url))
        _echo("Schema ready")

    stages = [Stage(value) for value in args.stages]
    handles = start_pipeline(settings, stages=stages, start_workers=False)
    recover_in_flight(handles.queue, stages)

    stop = Event()

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, stopping workers", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    handles.workers = WorkerPool(
        handles.pipeline,
        handles.queue,
        stages=stages,
        concurrency=settings.worker_concurrency,
    )
    handles.workers.start()
    _echo(f"Workers running for: {', '.join(s.value for s in stages)}")
    stop.wait()
    handles.stop()
    _echo("Workers stopped")


if __name__ == "__main__":
    main()
