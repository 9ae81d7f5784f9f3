#!/usr/bin/env python3
"""
Scheduled synchronization script for the record sync service.

Each cycle:
- Logs in to the remote source and fetches every contracts page concurrently
- Fetches the states reference collection
- Reports contracts not seen earlier in this process
- Upserts both collections into the database

New contracts are sent to Telegram as a JSON document; failed cycles are sent
as a text message. The set of seen identifiers lives in memory, so the script
keeps running and repeats the cycle every sync.interval_seconds unless --once
is given.

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--once] [--interval SECONDS]
"""

import argparse
import signal
import sys
from datetime import datetime
from threading import Event

import structlog

from recordsync.errors import NotifierError
from recordsync.notify.telegram_notifier import Notifier
from recordsync.providers import build_sync_cycle, get_notifier
from recordsync.sync.change_tracker import SeenSet
from recordsync.sync.models import CycleReport
from recordsync.sync.sync_cycle import SyncCycle
from recordsync.utils.config_loader import ConfigLoader, ConfigurationError
from recordsync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def perform_cycle(
    cycle: SyncCycle,
    notifier: Notifier | None,
    cancel_event: Event | None = None,
) -> CycleReport | None:
    """
    Run one cycle and hand its result to the notifier.

    Args:
        cycle: Assembled sync cycle
        notifier: Optional notifier
        cancel_event: Optional shutdown signal

    Returns:
        The report of a successful cycle, None if the cycle failed
    """
    try:
        report = cycle.run_cycle(cancel_event=cancel_event)
    except Exception as e:
        failed = cycle.last_report
        duration = failed.duration_seconds if failed else 0.0
        send_notification(
            notifier,
            text=(
                "Data update failed.\n"
                f"Duration: {duration:.1f}s\n"
                f"Error: {e}"
            ),
        )
        return None

    if report.new_records:
        send_notification(
            notifier,
            document=report.new_records,
            name=f"new_contracts_{report.start_time:%Y%m%d_%H%M%S}.json",
        )
    else:
        log.info("no_new_records", cycle_id=report.cycle_id)

    return report


def send_notification(
    notifier: Notifier | None,
    text: str | None = None,
    document: list | None = None,
    name: str = "document.json",
) -> None:
    """
    Deliver a text or JSON document notification, if a notifier is configured.

    Delivery failures are logged and never fail the cycle.
    """
    if notifier is None:
        return

    try:
        if document is not None:
            notifier.send_json_document(document, name=name)
        if text is not None:
            notifier.notify(text)
    except NotifierError as e:
        log.error("notification_failed", error=str(e))


def print_summary(report: CycleReport | None) -> None:
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    if report is not None:
        print("Status: ✓ SUCCESS")
        print(f"Cycle: {report.cycle_id}")
        for name, count in report.fetched_counts.items():
            print(f"{name.title()} fetched: {count}")
        print(f"New records: {report.new_count}")
        print(f"Duration: {report.duration_seconds:.2f} seconds")
    else:
        print("Status: ✗ FAILED")

    print("=" * 60)


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Scheduled record synchronization")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    parser.add_argument(
        "--interval",
        type=int,
        help="Seconds between cycles (overrides sync.interval_seconds)",
        default=None,
    )

    args = parser.parse_args()

    try:
        config = ConfigLoader().load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(
        log_level=config.logging.log_level,
        json_logs=config.logging.json_logs,
        log_file=config.logging.log_file,
    )

    stop = Event()

    def request_stop(signum, _frame):
        log.info("shutdown_requested", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    seen_set = SeenSet()
    cycle = build_sync_cycle(config, seen_set)
    notifier = get_notifier(config.notifier, cancel_event=stop)
    interval = args.interval or config.sync.interval_seconds

    log.info("initial_cycle_started", started_at=datetime.now().isoformat())
    report = perform_cycle(cycle, notifier, cancel_event=stop)

    if args.once:
        print_summary(report)
        sys.exit(0 if report is not None else 1)

    while not stop.wait(interval):
        perform_cycle(cycle, notifier, cancel_event=stop)

    log.info("scheduler_stopped", seen_identifiers=len(seen_set))


if __name__ == "__main__":
    main()
