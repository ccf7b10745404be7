"""
Command Line Entry Point

Usage:
    booking-cdc serve [--dev] [--gunicorn] [--port 8000]
    booking-cdc init-db
    booking-cdc load exports/changes.csv [more files or directories...]
    booking-cdc consume
    booking-cdc run-once [--days 30]
    booking-cdc generate --bookings 1000 --output data/generated
"""

import argparse
import asyncio
import json
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from booking_cdc.config import get_settings
from booking_cdc.config.logging import configure_logging

logger = structlog.get_logger(__name__)


# =============================================================================
# SERVER
# =============================================================================

def run_dev_server(port: int) -> None:
    """Run development server with auto-reload."""
    import uvicorn

    uvicorn.run(
        "booking_cdc.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["booking_cdc"],
        log_level="debug",
    )


def run_prod_server(port: int) -> None:
    """Run production server with Uvicorn directly."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "booking_cdc.main:app",
        host=settings.api_host,
        port=port,
        workers=settings.api_workers,
        log_level=settings.monitoring.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


def run_gunicorn() -> int:
    """Run with Gunicorn (recommended for production)."""
    return subprocess.run(["gunicorn", "booking_cdc.main:app", "-c", "gunicorn.conf.py"]).returncode


# =============================================================================
# PIPELINE COMMANDS
# =============================================================================

async def _with_database(coro_factory):
    from booking_cdc.database.connection import close_database, init_database

    settings = get_settings()
    await init_database(create_schema=not settings.is_production)
    try:
        return await coro_factory()
    finally:
        await close_database()


async def init_db() -> None:
    from booking_cdc.database.connection import close_database, init_database

    await init_database(create_schema=True)
    await close_database()


async def load_files(paths: List[str]) -> int:
    from booking_cdc.ingestion.batch_loader import BatchFileConfig, BatchLoader, LoadStatus

    async def run():
        loader = BatchLoader()
        results = []
        for raw in paths:
            path = Path(raw)
            if path.is_dir():
                results.extend(await loader.load_directory(path))
            else:
                results.append(await loader.load(BatchFileConfig(file_path=path)))
        for result in results:
            print(result.model_dump_json())
        return 1 if any(r.status == LoadStatus.FAILED for r in results) else 0

    return await _with_database(run)


async def consume() -> None:
    from booking_cdc.ingestion.stream_consumer import StreamConsumer

    async def run():
        await StreamConsumer().start()

    await _with_database(run)


async def run_once(days: Optional[int]) -> None:
    from booking_cdc.analytics.aggregation import AggregationWindow
    from booking_cdc.scheduling.pipeline import CDCPipeline
    from booking_cdc.schemas import utcnow

    async def run():
        window = None
        if days:
            window = AggregationWindow.trailing_days(days, utcnow())
        result = await CDCPipeline().run_once(window)
        print(json.dumps(result.to_dict(), default=str))

    await _with_database(run)


def generate(bookings: int, output: str, seed: int) -> None:
    from booking_cdc.data.generators import BookingChangeGenerator

    generator = BookingChangeGenerator(seed=seed)
    rows = generator.generate(n_bookings=bookings)
    paths = generator.save(rows, output)
    logger.info("Generated change extract", rows=len(rows), **{k: str(v) for k, v in paths.items()})


# =============================================================================
# ARGUMENTS
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="booking-cdc", description="Movie Booking CDC Analytics")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--dev", action="store_true", help="Run in development mode with auto-reload")
    serve.add_argument("--gunicorn", action="store_true", help="Run with Gunicorn (production)")
    serve.add_argument("--port", type=int, default=None, help="Port to run on (default: API_PORT)")

    sub.add_parser("init-db", help="Create database tables")

    load = sub.add_parser("load", help="Load change extract files into the buffer")
    load.add_argument("paths", nargs="+", help="CSV, JSONL or Parquet files, or directories")

    sub.add_parser("consume", help="Consume the Kafka change topic")

    once = sub.add_parser("run-once", help="Derive pending events and refresh the snapshot")
    once.add_argument("--days", type=int, default=None, help="Trailing window in days")

    gen = sub.add_parser("generate", help="Write a synthetic change extract")
    gen.add_argument("--bookings", type=int, default=1000)
    gen.add_argument("--output", default="data/generated")
    gen.add_argument("--seed", type=int, default=42)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        port = args.port or get_settings().api_port
        if args.dev:
            run_dev_server(port)
        elif args.gunicorn:
            return run_gunicorn()
        else:
            run_prod_server(port)
    elif args.command == "init-db":
        asyncio.run(init_db())
    elif args.command == "load":
        return asyncio.run(load_files(args.paths))
    elif args.command == "consume":
        asyncio.run(consume())
    elif args.command == "run-once":
        asyncio.run(run_once(args.days))
    elif args.command == "generate":
        generate(args.bookings, args.output, args.seed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
