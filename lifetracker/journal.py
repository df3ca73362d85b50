from __future__ import annotations

import logging
from datetime import date

from lifetracker.config import EngineConfig, hour_to_time_slot, load_preferences
from lifetracker.db import Store, utc_now_iso
from lifetracker.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 2000


def new_day_log(day: str) -> dict:
    return {
        "date": day,
        "energy": None,
        "energy_entries": [],
        "quests_total": 0,
        "quests_completed": 0,
        "notes": "",
        "reflection": None,
        "reflection_at": None,
    }


def _clean_text(text: str | None, limit: int = MAX_NOTES_LENGTH) -> str:
    if text is None:
        return ""
    if not isinstance(text, str):
        raise ValidationError("Notes must be text")
    return "".join(ch for ch in text if ch.isprintable() or ch in "\n\t").strip()[:limit]


class Journal:
    """Mood check-ins and reflections, one ``logs`` record per calendar day."""

    def __init__(self, store: Store, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def _day(self, day: date | None) -> date:
        return day or self.config.now().date()

    def get_day_log(self, day: date | None = None) -> dict | None:
        return self.store.get("logs", self._day(day).isoformat())

    def log_mood_entry(self, energy: str, notes: str | None = None, hour: int | None = None, day: date | None = None) -> dict:
        prefs = load_preferences(self.store)
        if energy not in prefs["energy_categories"]:
            raise ValidationError(f"Unknown energy category {energy!r}")
        now = self.config.now()
        hour = now.hour if hour is None else hour
        if isinstance(hour, bool) or not isinstance(hour, int):
            raise ValidationError("Hour must be an integer")
        key = self._day(day).isoformat()

        log = self.store.get("logs", key) or new_day_log(key)
        log["energy"] = energy
        log.setdefault("energy_entries", []).append(
            {"hour": hour, "time_slot": hour_to_time_slot(hour, prefs["time_slots"]), "energy": energy}
        )
        if notes is not None:
            log["notes"] = _clean_text(notes)
        self.store.write("logs", key, log)
        logger.debug("Mood entry for %s: %s", key, energy)
        return log

    def save_reflection(self, text: str, day: date | None = None) -> dict:
        reflection = _clean_text(text)
        if not reflection:
            raise ValidationError("Reflection must not be empty")
        key = self._day(day).isoformat()
        log = self.store.get("logs", key) or new_day_log(key)
        log["reflection"] = reflection
        log["reflection_at"] = utc_now_iso()
        self.store.write("logs", key, log)
        return log

    def logs_for_range(self, start: date, end: date) -> list[dict]:
        if start > end:
            raise ValidationError("Range start is after its end")
        logs = self.store.read("logs")
        lo, hi = start.isoformat(), end.isoformat()
        return [logs[key] for key in sorted(logs) if lo <= key <= hi]

    def past_reflections(self, limit: int = 5) -> list[dict]:
        logs = self.store.read("logs")
        found = [{"date": key, "text": log["reflection"]} for key, log in logs.items() if log.get("reflection")]
        found.sort(key=lambda item: item["date"], reverse=True)
        return found[:limit]
