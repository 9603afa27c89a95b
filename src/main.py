"""
interaction-trimmer — command-line entry point.

Keeps the anonymous interactions log bounded by running the retention trim
hooks from a persistent job queue.

Modes:
- Install / uninstall the daily trim trigger
- Manual trigger: start a trim cycle now and print the result
- Status: print run state and trigger health
- Run due: dispatch every due job once and exit (for system cron)
- Scheduler: async poll loop dispatching jobs until interrupted

Usage:
    python -m src.main --config config/production.yaml --install
    python -m src.main --config config/production.yaml --trigger
    python -m src.main --config config/production.yaml --run-due
    python -m src.main --config config/production.yaml --scheduler
    python -m src.main --config config/production.yaml --set-hour 4
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import NamedTuple

from dotenv import load_dotenv
from loguru import logger

from src.config import AppConfig, load_config
from src.scheduler.job_queue import JobQueue
from src.scheduler.scheduler import Scheduler
from src.storage.sqlite_store import InteractionStore
from src.storage.state_store import TrimStateStore
from src.trim.service import CRON_HOUR_SETTING, TrimService


class Runtime(NamedTuple):
    """Open stores plus the service wired on top of them."""

    records: InteractionStore
    state: TrimStateStore
    queue: JobQueue
    service: TrimService

    def close(self) -> None:
        self.queue.close()
        self.state.close()
        self.records.close()


def build_runtime(config: AppConfig) -> Runtime:
    """Open the SQLite stores and compose the trim service."""
    db_path = config.storage.db_path
    records = InteractionStore(db_path)
    state = TrimStateStore(db_path)
    queue = JobQueue(db_path, claim_ttl_seconds=config.scheduler.claim_ttl_seconds)
    service = TrimService(
        config=config.trim,
        records=records,
        run_state=state,
        leases=state,
        runner=queue,
        settings=records,
    )
    return Runtime(records, state, queue, service)


def build_scheduler(config: AppConfig, runtime: Runtime) -> Scheduler:
    scheduler = Scheduler(config.scheduler, runtime.queue)
    for name, handler in runtime.service.handlers().items():
        scheduler.register(name, handler)
    return scheduler


async def _run_scheduler(config: AppConfig, runtime: Runtime) -> None:
    """Run the async dispatcher until SIGINT/SIGTERM."""
    scheduler = build_scheduler(config, runtime)
    await scheduler.recover_stale_claims()
    runtime.service.schedule_daily()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))
        except NotImplementedError:
            # Windows does not support add_signal_handler for SIGTERM;
            # SIGINT is handled via KeyboardInterrupt fallback below.
            pass

    try:
        await scheduler.start()
    except KeyboardInterrupt:
        logger.info("interaction-trimmer: KeyboardInterrupt received")
    finally:
        await scheduler.stop()
        logger.info("interaction-trimmer: scheduler stopped cleanly")


async def _run_due(config: AppConfig, runtime: Runtime) -> int:
    scheduler = build_scheduler(config, runtime)
    await scheduler.recover_stale_claims()
    return await scheduler.run_pending()


def setup_logging(config: AppConfig) -> None:
    """Configure loguru logging from config."""
    log_dir = Path(config.logging.file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        level=config.logging.level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level:8}</level> | {message}",
    )
    logger.add(
        config.logging.file,
        level=config.logging.level,
        rotation=config.logging.rotation,
        retention=config.logging.retention,
        encoding="utf-8",
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="interaction-trimmer — bounded interaction log")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config YAML (default: $TRIM_CONFIG or config/default.yaml)",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--install", action="store_true", help="Schedule the daily trim trigger")
    mode.add_argument("--uninstall", action="store_true", help="Remove all trim triggers")
    mode.add_argument("--trigger", action="store_true", help="Start a trim cycle now")
    mode.add_argument("--status", action="store_true", help="Print trim status as JSON")
    mode.add_argument("--run-due", action="store_true", help="Dispatch due jobs once and exit")
    mode.add_argument("--scheduler", action="store_true", help="Run the async job dispatcher")
    mode.add_argument(
        "--set-hour",
        type=int,
        metavar="HOUR",
        help="Change the daily trigger hour (0-23) and reschedule",
    )
    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    config_path = args.config or os.getenv("TRIM_CONFIG", "config/default.yaml")
    config = load_config(config_path)
    setup_logging(config)
    logger.info("interaction-trimmer starting (config={})", config_path)

    runtime = build_runtime(config)
    try:
        if args.install:
            next_run = runtime.service.schedule_daily()
            print(json.dumps({"scheduled": next_run.isoformat() if next_run else None}))
        elif args.uninstall:
            runtime.service.unschedule()
        elif args.trigger:
            outcome = runtime.service.manual_trigger()
            print(json.dumps(outcome.to_payload(), indent=2))
            if not outcome.success:
                sys.exit(1)
        elif args.status:
            print(json.dumps(runtime.service.status(), indent=2, default=str))
        elif args.run_due:
            dispatched = asyncio.run(_run_due(config, runtime))
            logger.info("interaction-trimmer: dispatched {} due jobs", dispatched)
        elif args.set_hour is not None:
            previous = runtime.records.set_setting(CRON_HOUR_SETTING, args.set_hour)
            old_settings = {} if previous is None else {CRON_HOUR_SETTING: previous}
            runtime.service.reschedule_on_settings_change(
                old_settings, {CRON_HOUR_SETTING: args.set_hour}
            )
        elif args.scheduler:
            asyncio.run(_run_scheduler(config, runtime))
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
