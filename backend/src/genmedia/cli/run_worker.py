"""CLI command for running the dispatch worker pool as a separate process.

Use this when the API runs with RUN_WORKER_IN_APP=false, so that intake and
dispatch scale independently. Any number of worker processes may share one
database: jobs are claimed with FOR UPDATE SKIP LOCKED.

Usage:
    python -m genmedia.cli.run_worker [OPTIONS]

Examples:
    # Run with WORKER_CONCURRENCY consumers
    python -m genmedia.cli.run_worker

    # Override concurrency
    python -m genmedia.cli.run_worker --concurrency 8

    # Print queue depth and exit
    python -m genmedia.cli.run_worker --stats

    # Verbose logging
    python -m genmedia.cli.run_worker -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genmedia.core import timezone  # noqa: F401
from genmedia.core.config import Settings, configure_logging
from genmedia.core.database import setup_db_session
from genmedia.services.job_queue import JobQueue
from genmedia.workers.dispatch_worker import run_dispatch_worker

logger = structlog.get_logger()


def parse_args(argv=None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Run the generation dispatch worker pool",
        epilog="Claims queued generation jobs and submits them to kie.ai",
    )

    parser.add_argument(
        "--concurrency",
        type=int,
        help="Number of concurrent consumers (default: WORKER_CONCURRENCY)",
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print job counts per status and exit",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv=None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]

    if args.verbose:
        settings.log_level = "DEBUG"
    if args.concurrency is not None:
        if args.concurrency < 1:
            print("Error: --concurrency must be at least 1", file=sys.stderr)
            return 1
        settings.worker_concurrency = args.concurrency

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    queue = JobQueue.from_settings(session_factory, settings)

    if args.stats:
        counts = await queue.counts()
        print("\n" + "=" * 40)
        print(f"Queue '{queue.queue_name}'")
        print("=" * 40)
        for status_name, count in counts.items():
            print(f"{status_name:>10}: {count}")
        print("=" * 40 + "\n")
        return 0

    logger.info(
        "cli.started",
        concurrency=settings.worker_concurrency,
        db_url=settings.database_url.split("@")[-1],
    )

    try:
        await run_dispatch_worker(session_factory, settings, queue=queue)
    except asyncio.CancelledError:
        logger.info("cli.cancelled")
        return 0
    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nWorker stopped by user", file=sys.stderr)
        sys.exit(130)  # Standard exit code for SIGINT


if __name__ == "__main__":
    main()
