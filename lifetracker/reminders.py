from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from typing import Any

from lifetracker.config import EngineConfig
from lifetracker.db import Store, utc_now_iso
from lifetracker.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: Any) -> str:
    match = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationError(f"Time must look like HH:MM, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def parse_repeat_days(days: Any) -> list[str]:
    if days is None:
        return []
    if isinstance(days, str):
        days = [part for part in days.split(",") if part.strip()]
    lookup = {name.lower(): name for name in WEEKDAYS}
    picked = set()
    for day in days:
        name = lookup.get(str(day).strip()[:3].lower())
        if name is None:
            raise ValidationError(f"Unknown weekday {day!r}")
        picked.add(name)
    return [name for name in WEEKDAYS if name in picked]


def _parse_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid date {value!r}") from exc


class ReminderScheduler:
    """Due-checks for time-of-day reminders.

    ``check_due`` is the only writer of ``last_fired_key``; a reminder is marked
    fired in the store before it is handed back, so it fires at most once per
    day however often, or however late, the check runs.
    """

    def __init__(self, store: Store, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def _load(self, reminder_id: str) -> dict:
        reminder = self.store.get("reminders", reminder_id)
        if reminder is None:
            raise NotFoundError("reminder", reminder_id)
        return reminder

    def _next_start(self, time_of_day: str, now: datetime) -> str:
        today = now.date()
        if now.strftime("%H:%M") >= time_of_day:
            today += timedelta(days=1)
        return today.isoformat()

    def is_due(self, reminder: dict, now: datetime) -> bool:
        today = now.date()
        if not reminder.get("active") or reminder.get("last_fired_key") == today.isoformat():
            return False
        start = _parse_date(reminder.get("start_date"))
        if start and today < start:
            return False
        reached = now.strftime("%H:%M") >= reminder["time_of_day"]
        repeat_days = reminder.get("repeat_days") or []
        if repeat_days:
            return WEEKDAYS[today.weekday()] in repeat_days and reached
        # A one-time reminder whose day passed while the device slept is overdue.
        if start and today > start:
            return True
        return reached

    def check_due(self, now: datetime | None = None) -> Iterator[dict]:
        now = now or self.config.now()
        today_key = now.date().isoformat()
        for reminder_id in list(self.store.read("reminders")):
            reminder = self.store.get("reminders", reminder_id)
            if reminder is None or not self.is_due(reminder, now):
                continue
            reminder["last_fired_key"] = today_key
            if not reminder.get("repeat_days"):
                reminder["active"] = False
            reminder["updated_at"] = utc_now_iso()
            self.store.write("reminders", reminder_id, reminder)
            logger.info("Reminder %s due: %s", reminder_id, reminder["title"])
            yield reminder

    def create(self, title: str, time_of_day: str, repeat_days: Any = None, start_date: Any = None) -> dict:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Reminder title must not be empty")
        time_of_day = parse_time_of_day(time_of_day)
        start = _parse_date(start_date)
        reminder = {
            "id": uuid.uuid4().hex,
            "title": title.strip()[:200],
            "time_of_day": time_of_day,
            "repeat_days": parse_repeat_days(repeat_days),
            "active": True,
            "last_fired_key": None,
            "start_date": start.isoformat() if start else self._next_start(time_of_day, self.config.now()),
            "created_at": utc_now_iso(),
            "updated_at": utc_now_iso(),
        }
        self.store.write("reminders", reminder["id"], reminder)
        return reminder

    def get(self, reminder_id: str) -> dict:
        return self._load(reminder_id)

    def list_reminders(self) -> list[dict]:
        return sorted(self.store.read("reminders").values(), key=lambda r: (r["time_of_day"], r["title"]))

    def update(self, reminder_id: str, **changes: Any) -> dict:
        reminder = self._load(reminder_id)
        for key, value in changes.items():
            if key == "title":
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError("Reminder title must not be empty")
                reminder["title"] = value.strip()[:200]
            elif key == "time_of_day":
                reminder["time_of_day"] = parse_time_of_day(value)
            elif key == "repeat_days":
                reminder["repeat_days"] = parse_repeat_days(value)
            elif key == "start_date":
                start = _parse_date(value)
                reminder["start_date"] = start.isoformat() if start else None
            else:
                raise ValidationError(f"Field {key!r} cannot be changed on a reminder")
        reminder["updated_at"] = utc_now_iso()
        self.store.write("reminders", reminder_id, reminder)
        return reminder

    def toggle(self, reminder_id: str) -> dict:
        reminder = self._load(reminder_id)
        reminder["active"] = not reminder.get("active")
        if reminder["active"] and not reminder.get("repeat_days"):
            # Re-arm a one-time reminder for its next occurrence.
            reminder["start_date"] = self._next_start(reminder["time_of_day"], self.config.now())
        reminder["updated_at"] = utc_now_iso()
        self.store.write("reminders", reminder_id, reminder)
        return reminder

    def delete(self, reminder_id: str) -> None:
        if not self.store.delete("reminders", reminder_id):
            raise NotFoundError("reminder", reminder_id)

    def upcoming_today(self, now: datetime | None = None) -> list[dict]:
        now = now or self.config.now()
        today = now.date()
        weekday = WEEKDAYS[today.weekday()]
        minutes_now = now.hour * 60 + now.minute
        upcoming = []
        for reminder in self.list_reminders():
            if not reminder.get("active"):
                continue
            repeat_days = reminder.get("repeat_days") or []
            if repeat_days and weekday not in repeat_days:
                continue
            start = _parse_date(reminder.get("start_date"))
            if not repeat_days and start and start != today:
                continue
            hour, minute = (int(part) for part in reminder["time_of_day"].split(":"))
            remaining = hour * 60 + minute - minutes_now
            upcoming.append(
                {
                    **reminder,
                    "fired_today": reminder.get("last_fired_key") == today.isoformat(),
                    "minutes_until": remaining if remaining >= 0 else None,
                }
            )
        return upcoming
