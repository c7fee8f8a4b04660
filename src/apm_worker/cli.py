import argparse
import logging
import sys

from apm_worker.config import settings
from apm_worker.errors import SchemaInitError
from apm_worker.factory import (
    build_dest_engine,
    build_source_engine,
    build_transfer_worker,
    worker_options_from_settings,
)
from apm_worker.storage.dialects import dialect_for_backend
from apm_worker.storage.maintenance import purge_daily_files, purge_requests
from apm_worker.storage.schema import ensure_schema, ensure_source_table, source_table

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run_worker(args) -> int:
    options = worker_options_from_settings(
        settings,
        batch_size=args.batch_size,
        timeout=args.timeout,
        max_messages=args.max_messages,
        daemon=True if args.daemon else None,
    )
    worker = build_transfer_worker(settings, options=options)
    logger.info(
        f"Starting transfer worker ({settings.APM_SOURCE_TYPE} -> {settings.APM_DEST_TYPE}, "
        f"batch={options.batch_size}, timeout={options.timeout}, "
        f"max={options.max_messages}, daemon={options.daemon})"
    )
    try:
        stats = worker.run()
    except KeyboardInterrupt:
        worker.stop()
        logger.info("Transfer worker interrupted")
        return 0
    except SchemaInitError as e:
        logger.error(f"Transfer worker stopped: {e}")
        return 1
    logger.info(f"Transfer worker finished: {stats.as_dict()}")
    return 0


def run_init_db(args) -> int:
    try:
        dest_engine = build_dest_engine(settings)
        if dest_engine is not None:
            ensure_schema(dest_engine)
        source_engine = build_source_engine(settings)
        if source_engine is not None:
            ensure_source_table(source_engine, source_table(settings.APM_SOURCE_TABLE))
    except SchemaInitError as e:
        logger.error(f"Schema initialization failed: {e}")
        return 1
    logger.info("APM schema initialized")
    return 0


def run_purge(args) -> int:
    try:
        dialect = dialect_for_backend(settings.APM_DEST_TYPE)
        if dialect.is_sql:
            stats = purge_requests(
                build_dest_engine(settings), dialect, days=args.days, vacuum=not args.no_vacuum
            )
        else:
            stats = purge_daily_files(settings.APM_DEST_FILE_PATH, days=args.days)
    except Exception as e:
        logger.error(f"Purge failed: {e}", exc_info=True)
        return 1
    logger.info(f"Purge finished: {stats}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="APM metrics pipeline CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    worker_parser = subparsers.add_parser(
        "worker", help="Move metrics from the source store to the destination store"
    )
    worker_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Records per batch (default: {settings.APM_BATCH_SIZE})",
    )
    worker_parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Stop after this many seconds, 0 for no limit (default: APM_TIMEOUT)",
    )
    worker_parser.add_argument(
        "--max-messages",
        type=int,
        default=None,
        help="Stop after this many records, 0 for no limit (default: APM_MAX_MESSAGES)",
    )
    worker_parser.add_argument(
        "--daemon",
        action="store_true",
        help="Keep polling for new records instead of stopping when drained",
    )

    subparsers.add_parser("init-db", help="Create the source and destination tables")

    purge_parser = subparsers.add_parser("purge", help="Delete metrics older than N days")
    purge_parser.add_argument(
        "--days",
        type=int,
        default=settings.APM_PURGE_DAYS,
        help=f"Days of data to keep (default: {settings.APM_PURGE_DAYS})",
    )
    purge_parser.add_argument(
        "--no-vacuum", action="store_true", help="Skip VACUUM on SQLite after purging"
    )
    return parser


def main(argv=None):
    """Run the APM worker CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "worker":
        sys.exit(run_worker(args))
    elif args.command == "init-db":
        sys.exit(run_init_db(args))
    elif args.command == "purge":
        sys.exit(run_purge(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
