"""
Service entry point: runs dispatch cycles on a schedule.
"""

import argparse
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from dotenv import load_dotenv

load_dotenv()

from eventwatch.app import CycleSummary, build_cycle
from eventwatch.config import AppConfig, load_config
from eventwatch.database.connection import Database, StoreUnavailable

logger = logging.getLogger(__name__)


def run_once(config: AppConfig, dry_run: bool = False) -> CycleSummary:
    """Run a single cycle on a fresh connection."""
    try:
        db = Database(config.database.path)
        db.initialize()
    except StoreUnavailable as e:
        logger.error(f"Cannot open database: {e}")
        return CycleSummary(aborted=True, error=str(e))

    cycle = build_cycle(config, db, dry_run=dry_run)
    try:
        return cycle.run_cycle()
    finally:
        db.close()


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="eventwatch notification service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending notifications"
    )

    args = parser.parse_args()

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.dry_run:
        logger.info("Dry run mode - no notifications will be sent")

    if args.once:
        summary = run_once(config, dry_run=args.dry_run)
        print(summary.as_dict())
        return

    scheduler = BlockingScheduler(timezone=config.schedule.timezone)
    scheduler.add_job(
        run_once,
        "interval",
        minutes=config.schedule.cycle_interval_minutes,
        args=[config],
        kwargs={"dry_run": args.dry_run},
        id="dispatch_cycle",
        max_instances=1,
        coalesce=True,
        # First cycle right away, then on the interval
        next_run_time=datetime.now(timezone.utc),
    )

    logger.info(
        f"Scheduler started, running every {config.schedule.cycle_interval_minutes} minutes"
    )
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down, waiting for the running cycle")
        if scheduler.running:
            scheduler.shutdown(wait=True)


if __name__ == "__main__":
    main()
