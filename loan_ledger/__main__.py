"""
Command line entry point

    python -m loan_ledger sweep [--date YYYY-MM-DD]   one-shot status sweep
    python -m loan_ledger scheduler                   sweep at start-up, then daily
"""

import argparse
import json
import logging
import sys
import time
from datetime import date
from typing import List, Optional

import schedule

from .config import LedgerConfig, get_config
from .loans import LoanManager
from .logging_config import setup_logging, log_action
from .sweeper import SweepReport


logger = logging.getLogger("loan_ledger.scheduler")


def run_sweep_job(manager: LoanManager, today: Optional[date] = None) -> Optional[SweepReport]:
    """Run one sweep; errors are logged so the scheduler keeps running"""
    try:
        return manager.run_sweep(today)
    except Exception:
        logger.exception("Status sweep failed", extra={'action': 'sweep'})
        return None


def build_scheduler(manager: LoanManager, config: LedgerConfig) -> schedule.Scheduler:
    """Scheduler with the daily sweep registered at the configured time"""
    scheduler = schedule.Scheduler()
    scheduler.every().day.at(config.sweep_time, config.calendar_timezone).do(run_sweep_job, manager)
    return scheduler


def run_scheduler(manager: LoanManager, config: LedgerConfig, poll_seconds: int = 30) -> None:
    scheduler = build_scheduler(manager, config)
    log_action(logger, "info", "Sweep scheduler started", action="scheduler",
               extra={'sweep_time': config.sweep_time})

    if config.run_sweep_on_startup:
        run_sweep_job(manager)

    while True:
        scheduler.run_pending()
        time.sleep(poll_seconds)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loan_ledger",
        description="Loan repayment ledger batch jobs"
    )
    parser.add_argument(
        "--database-url",
        help="Override LOAN_LEDGER_DATABASE_URL"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser("sweep", help="Run the status sweep once")
    sweep.add_argument(
        "--date",
        type=_parse_date,
        help="Calendar day to sweep for (default: today in the ledger calendar)"
    )

    subparsers.add_parser("scheduler", help="Sweep at start-up and then daily at the configured time")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.database_url:
        config = config.model_copy(update={'database_url': args.database_url})

    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    manager = LoanManager.from_config(config)

    try:
        if args.command == "sweep":
            report = run_sweep_job(manager, args.date)
            if report is None:
                return 1
            print(json.dumps(report.as_dict(), indent=2))
            return 0 if not report.failed_loans else 1

        try:
            run_scheduler(manager, config)
        except KeyboardInterrupt:
            logger.info("Sweep scheduler stopped")
        return 0
    finally:
        manager.storage.close()


if __name__ == "__main__":
    sys.exit(main())
