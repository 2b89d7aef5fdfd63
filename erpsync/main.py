"""Main entry point with CLI."""
import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from erpsync.config import config, Config
from erpsync.errors import ErpSyncError, SyncAlreadyRunning
from erpsync.fetch.client import ErpClient
from erpsync.logging_conf import setup_logging
from erpsync.jobs.runner import build_store, replay_spool, run_sync
from erpsync.parse.models import SyncKind, SyncProgress
from erpsync.store.state import SyncStateDB

import logging

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="ERP invoice sync")

    # Sync kind
    kind = parser.add_mutually_exclusive_group()
    kind.add_argument(
        "--full",
        action="store_true",
        help="Full sync: fetch every page and detect cancelled invoices",
    )
    kind.add_argument(
        "--incremental",
        action="store_true",
        help="Incremental sync: stop after a run of unchanged pages",
    )
    kind.add_argument(
        "--auto",
        action="store_true",
        help=f"Full if none in the last {config.FULL_SYNC_INTERVAL_HOURS:g}h, else incremental (default)",
    )

    parser.add_argument(
        "--base-url",
        default=None,
        help="ERP report endpoint (default: ERP_BASE_URL)",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Stop after N pages",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run: no Supabase writes, results kept in memory",
    )

    # One-off actions
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Fetch the first page once and report the record count",
    )
    parser.add_argument(
        "--replay-spool",
        action="store_true",
        help="Retry invoice writes that failed in earlier runs",
    )

    return parser.parse_args(argv)


def _print_progress(progress: SyncProgress) -> None:
    total = progress.total_pages if progress.total_pages is not None else "?"
    logger.debug(f"Page {progress.current_page}/{total}: {progress.invoices_processed} invoices")


async def _resolve_kind(args: argparse.Namespace) -> SyncKind:
    if args.full:
        return SyncKind.FULL
    if args.incremental:
        return SyncKind.INCREMENTAL
    state_db = SyncStateDB()
    await state_db.initialize()
    if await state_db.should_do_full_sync(config.FULL_SYNC_INTERVAL_HOURS):
        return SyncKind.FULL
    return SyncKind.INCREMENTAL


async def _test_connection(base_url: str) -> bool:
    async with ErpClient(api_key=config.ERP_API_KEY, proxy_url=config.ERP_PROXY_URL) as client:
        ok, message = await client.test_connection(base_url)
    if ok:
        logger.info(message)
    else:
        logger.error(message)

    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE:
        store = build_store()
        ok = await store.test_connection() and ok
    return ok


async def _sync(args: argparse.Namespace, base_url: str) -> None:
    kind = await _resolve_kind(args)
    logger.info("=" * 60)
    logger.info("ERP Sync Starting")
    logger.info(f"Kind: {kind.value}")
    logger.info(f"Base URL: {base_url}")
    logger.info(f"Page size: {config.PAGE_SIZE}")
    logger.info(f"Max pages: {args.max_pages or 'all'}")
    logger.info(f"Dry-run: {args.dry_run}")
    logger.info("=" * 60)
    summary = await run_sync(
        base_url,
        config.ERP_API_KEY,
        kind,
        on_progress=_print_progress,
        max_pages=args.max_pages,
        dry_run=args.dry_run,
    )
    if summary.errors_count:
        logger.warning(f"{summary.errors_count} invoices could not be written; run --replay-spool later")


def main(argv=None) -> None:
    """Main entry point."""
    # Setup logging
    setup_logging()

    # Parse args
    args = parse_args(argv)

    if args.replay_spool:
        try:
            Config.validate()
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)
        remaining = asyncio.run(replay_spool(build_store()))
        sys.exit(1 if remaining else 0)

    base_url = args.base_url or config.ERP_BASE_URL
    if not base_url:
        logger.error("Must specify --base-url or set ERP_BASE_URL")
        sys.exit(1)

    if args.test_connection:
        sys.exit(0 if asyncio.run(_test_connection(base_url)) else 1)

    # Validate config (skip Supabase validation in dry-run)
    try:
        Config.validate(require_supabase=not args.dry_run)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        asyncio.run(_sync(args, base_url))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except SyncAlreadyRunning as e:
        logger.error(str(e))
        sys.exit(2)
    except ErpSyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
