"""
Main entrypoint.

Usage:
    python -m hackportal                                   # API + sync scheduler
    python -m hackportal sync [TABLE ...]                  # one manual cycle per table
    python -m hackportal purge-stale TABLE --older-than-hours 24
"""
import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import List, Optional

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _run_api() -> None:
    import uvicorn

    from hackportal.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "hackportal.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


async def _run_sync(tables: List[str]) -> int:
    """Run one manual cycle per table and print a summary. Returns the exit code."""
    from hackportal.config import get_settings
    from hackportal.db.engine import get_engine
    from hackportal.sync import runs
    from hackportal.sync.scheduler import SyncScheduler, build_context

    settings = get_settings()
    context = build_context(get_engine(), settings)
    sync = SyncScheduler(context, tables=tables or None)
    try:
        results = await sync.run_all(trigger="manual")
    finally:
        await sync.shutdown()
        await context.source.aclose()

    failed = False
    print(f"{'table':<12} {'status':<16} {'fetched':>8} {'synced':>7} {'changed':>8} {'errors':>7} {'ms':>7}")
    for run in results:
        print(
            f"{run.table_name:<12} {run.status:<16} {run.records_fetched:>8} "
            f"{run.records_written:>7} {run.records_changed:>8} {run.errors_count:>7} "
            f"{run.duration_ms:>7}"
        )
        if run.error_details:
            print(f"  {run.error_details}")
        failed = failed or run.status == runs.FAILURE
    return 1 if failed else 0


def _run_purge(table: str, older_than_hours: float) -> int:
    from hackportal.db.engine import get_engine
    from hackportal.models.types import utc_now
    from hackportal.sync.writer import LocalStoreWriter

    cutoff = utc_now() - timedelta(hours=older_than_hours)
    deleted = LocalStoreWriter(get_engine()).purge_stale(table, seen_before=cutoff)
    print(f"Deleted {deleted} stale {table} row(s) not seen since {cutoff.isoformat()}")
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hackportal", description="Airtable mirror service")
    sub = parser.add_subparsers(dest="command")

    sync = sub.add_parser("sync", help="Run one manual sync cycle per table")
    sync.add_argument("tables", nargs="*", help="Tables to sync (default: all configured)")

    purge = sub.add_parser("purge-stale", help="Delete rows absent from recent fetches")
    purge.add_argument("table")
    purge.add_argument("--older-than-hours", type=float, required=True)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from hackportal.airtable.mappings import known_tables
    from hackportal.config import get_settings

    args = _parser().parse_args(argv)
    _configure_logging(get_settings().log_level)

    if args.command == "sync":
        unknown = [t for t in args.tables if t not in known_tables()]
        if unknown:
            logger.error("Unknown table(s): %s", ", ".join(unknown))
            return 2
        return asyncio.run(_run_sync(args.tables))
    if args.command == "purge-stale":
        if args.table not in known_tables():
            logger.error("Unknown table: %s", args.table)
            return 2
        return _run_purge(args.table, args.older_than_hours)

    _run_api()
    return 0


if __name__ == "__main__":
    sys.exit(main())
