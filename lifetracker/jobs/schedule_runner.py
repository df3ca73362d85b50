from __future__ import annotations

import argparse
import logging
import time
from collections.abc import Callable
from datetime import datetime

from lifetracker.config import load_config
from lifetracker.engine import LifeTracker
from lifetracker.errors import StorageError
from lifetracker.notifier import Notifier, build_notifier

logger = logging.getLogger(__name__)


def run_tick(tracker: LifeTracker, notifier: Notifier | None = None, now: datetime | None = None) -> dict:
    """One due-check: fire, deliver, then flush and auto-backup."""
    due = tracker.check_due_reminders(now)
    notifier = notifier or build_notifier(tracker.get_preferences())
    delivered = sum(1 for reminder in due if notifier.deliver(reminder))

    flushed = True
    backup = None
    try:
        backup = tracker.flush_all()
    except StorageError as exc:
        # Retried on the next tick.
        logger.warning("Flush failed: %s", exc)
        flushed = False
    return {
        "fired": [reminder["id"] for reminder in due],
        "delivered": delivered,
        "flushed": flushed,
        "backup": str(backup) if backup else None,
    }


def run_loop(
    tracker: LifeTracker,
    interval_s: int,
    max_ticks: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> int:
    ticks = 0
    last = monotonic()
    while max_ticks is None or ticks < max_ticks:
        started = monotonic()
        if ticks and started - last > 2 * interval_s:
            logger.info("Timer late by %.0fs (suspended?); checking reminders now", started - last - interval_s)
        last = started
        try:
            run_tick(tracker)
        except StorageError as exc:
            logger.warning("Due-check failed, retrying next tick: %s", exc)
        ticks += 1
        if max_ticks is None or ticks < max_ticks:
            sleep(interval_s)
    return ticks


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Check due reminders and flush the Life Tracker store.")
    parser.add_argument("--loop", action="store_true", help="Keep running, one check per interval")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between checks (default from config)")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    tracker = LifeTracker(config)
    if args.loop:
        run_loop(tracker, args.interval or config.check_interval_s)
    else:
        result = run_tick(tracker)
        logger.info("Tick done: %d fired, %d delivered", len(result["fired"]), result["delivered"])


if __name__ == "__main__":
    main()
