"""
Scheduler module for Listing Alerts.

Uses APScheduler to run the pipeline on a schedule:
- Every SYNC_INTERVAL_MINUTES: incremental feed sync
- Every SEARCH_INTERVAL_MINUTES: run due saved searches
- Daily at FULL_SYNC_HOUR: full feed sync and presence check

Can also be run manually via command line.
"""

import logging
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import SyncConfig, get_sync_config
from .pipeline import MatchingPipeline, get_pipeline

logger = logging.getLogger(__name__)


def create_scheduler(
    pipeline: MatchingPipeline,
    config: Optional[SyncConfig] = None,
) -> BlockingScheduler:
    """
    Create and configure the APScheduler.

    Jobs:
    1. incremental_sync: Pull feed changes since each resource's cursor
    2. saved_searches: Run saved searches whose interval has elapsed
    3. full_sync: Daily full pull, withdrawing listings gone from the feed

    Returns:
        Configured BlockingScheduler
    """
    config = config or get_sync_config()
    scheduler = BlockingScheduler()

    # Job 1: Incremental sync
    scheduler.add_job(
        pipeline.run_cycle,
        trigger=IntervalTrigger(minutes=config.sync_interval_minutes),
        id="incremental_sync",
        name="Sync feed changes",
        replace_existing=True,
        max_instances=1,
    )

    # Job 2: Saved searches
    scheduler.add_job(
        pipeline.run_saved_searches,
        trigger=IntervalTrigger(minutes=config.search_interval_minutes),
        id="saved_searches",
        name="Run due saved searches",
        replace_existing=True,
        max_instances=1,
    )

    # Job 3: Full sync once a day
    scheduler.add_job(
        pipeline.run_cycle,
        kwargs={"full": True},
        trigger=CronTrigger(hour=config.full_sync_hour, minute=0),
        id="full_sync",
        name="Full feed sync and presence check",
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduler configured with 3 jobs")
    return scheduler


def start_scheduler(pipeline: Optional[MatchingPipeline] = None) -> None:
    """Start the scheduler (blocking)."""
    pipeline = pipeline if pipeline is not None else get_pipeline()
    scheduler = create_scheduler(pipeline)

    logger.info("Starting Listing Alerts scheduler...")
    logger.info("Press Ctrl+C to stop")

    # Catch up immediately rather than waiting a full interval
    logger.info("Running initial sync...")
    pipeline.run_cycle()

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    finally:
        pipeline.shutdown()


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for the scheduler."""
    import argparse

    parser = argparse.ArgumentParser(description="Listing Alerts Scheduler")
    parser.add_argument(
        "--mode",
        choices=["schedule", "once", "full", "searches"],
        default="schedule",
        help="Mode to run: schedule (continuous), once (incremental sync), full (full sync), searches (run due saved searches)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.mode == "schedule":
        start_scheduler()
        return

    pipeline = get_pipeline()
    try:
        if args.mode == "once":
            logger.info("Running single incremental sync...")
            result = pipeline.run_cycle()
        elif args.mode == "full":
            logger.info("Running full sync...")
            result = pipeline.run_cycle(full=True)
        else:
            logger.info("Running due saved searches...")
            result = pipeline.run_saved_searches()
        print(f"Run complete: {result}")
    finally:
        pipeline.shutdown()


if __name__ == "__main__":
    main()
