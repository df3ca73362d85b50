from __future__ import annotations

from collections.abc import Iterator
from datetime import date, timedelta

from lifetracker.errors import ValidationError

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
PERIODS = (DAILY, WEEKLY, MONTHLY)


def _check(period: str) -> None:
    if period not in PERIODS:
        raise ValidationError(f"Unknown period {period!r}; expected one of {', '.join(PERIODS)}")


def period_key(period: str, day: date) -> str:
    """Calendar key of the period containing ``day``.

    Weekly keys follow ISO-8601: weeks start on Monday and belong to the ISO
    year, so 2027-01-01 (a Friday) is ``2026-W53``.
    """
    _check(period)
    if period == DAILY:
        return day.isoformat()
    if period == WEEKLY:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return f"{day.year:04d}-{day.month:02d}"


def period_start(period: str, key: str) -> date:
    _check(period)
    try:
        if period == DAILY:
            return date.fromisoformat(key)
        if period == WEEKLY:
            year, week = key.split("-W")
            return date.fromisocalendar(int(year), int(week), 1)
        year, month = key.split("-")
        return date(int(year), int(month), 1)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed {period} period key {key!r}") from exc


def next_period_key(period: str, key: str) -> str:
    start = period_start(period, key)
    if period == DAILY:
        return period_key(period, start + timedelta(days=1))
    if period == WEEKLY:
        return period_key(period, start + timedelta(days=7))
    if start.month == 12:
        return period_key(period, date(start.year + 1, 1, 1))
    return period_key(period, date(start.year, start.month + 1, 1))


def previous_period_key(period: str, key: str) -> str:
    start = period_start(period, key)
    # The day before a period starts always lies in the previous period.
    return period_key(period, start - timedelta(days=1))


def iter_period_keys(period: str, start_key: str, stop_key: str) -> Iterator[str]:
    """Yield keys from ``start_key`` up to, not including, ``stop_key``."""
    stop = period_start(period, stop_key)
    key = start_key
    while period_start(period, key) < stop:
        yield key
        key = next_period_key(period, key)
