"""
Rollup Runner - Main Entry Point

Runs the weekly or monthly rollup once, or keeps both on their calendar
schedule.

Usage:
    python -m engine.runtime.main weekly
    python -m engine.runtime.main monthly
    python -m engine.runtime.main schedule
"""

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from dataflow.markets.enumerator import FullSymbolEnumerator, SpotSymbolEnumerator
from dataflow.persistence.store import PostgresCandleStore
from engine.config.loader import ConfigLoader, ServiceConfig
from engine.rollup.jobs import MonthlyRollupJob, RollupJob, WeeklyRollupJob
from engine.scheduler.executor import (
    RollupScheduler,
    ScheduledJob,
    next_monthly_run,
    next_weekly_run,
)

logger = logging.getLogger(__name__)


def build_jobs(config: ServiceConfig, store: PostgresCandleStore) -> Dict[str, RollupJob]:
    """
    Weekly rollup covers spot, perpetual, option and future instruments.
    Monthly covers spot only unless ``rollup.monthly_include_derivatives``.
    """
    rollup = config.rollup
    full = FullSymbolEnumerator(store.pool, page_size=rollup.page_size)
    monthly_enumerator = full if rollup.monthly_include_derivatives else SpotSymbolEnumerator(
        store.pool, page_size=rollup.page_size
    )

    common = dict(
        modes=rollup.modes,
        batch_write_size=rollup.batch_write_size,
        page_size=config.store.page_size,
    )
    return {
        "weekly": WeeklyRollupJob(store, full, **common),
        "monthly": MonthlyRollupJob(store, monthly_enumerator, **common),
    }


def build_scheduler(config: ServiceConfig, jobs: Dict[str, RollupJob]) -> RollupScheduler:
    weekly_offset = config.scheduler.weekly_offset_minutes
    monthly_offset = config.scheduler.monthly_offset_minutes
    return RollupScheduler([
        ScheduledJob(jobs["weekly"], lambda now: next_weekly_run(now, weekly_offset)),
        ScheduledJob(jobs["monthly"], lambda now: next_monthly_run(now, monthly_offset)),
    ])


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Weekly/monthly kline rollups")
    parser.add_argument("command", choices=["weekly", "monthly", "schedule"])
    parser.add_argument("--config", default=os.getenv("CONFIG_PATH"), help="YAML config path")
    return parser.parse_args(argv)


async def main(argv: Optional[list] = None):
    """Main entry point"""
    args = parse_args(argv)
    config = ConfigLoader(Path(args.config) if args.config else None).load()

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    store = PostgresCandleStore(
        config.store.database_url,
        min_pool_size=config.store.min_pool_size,
        max_pool_size=config.store.max_pool_size,
        command_timeout=config.store.command_timeout,
    )

    try:
        await store.connect()
        await store.ensure_schema()
        jobs = build_jobs(config, store)

        if args.command == "schedule":
            logger.info("Rollup scheduler running. Press Ctrl+C to stop.")
            await build_scheduler(config, jobs).run_forever()
        else:
            report = await jobs[args.command].run()
            if report.failed or report.failed_modes:
                logger.warning(
                    f"{jobs[args.command].name} finished with failures: "
                    f"symbols={report.failed} modes={[m.value for m in report.failed_modes]}"
                )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
