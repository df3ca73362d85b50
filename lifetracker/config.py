from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from lifetracker.errors import ValidationError

if TYPE_CHECKING:
    from lifetracker.db import Store

DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DEFAULT_PREFERENCES: dict[str, Any] = {
    "energy_categories": ["Energetic", "Average", "Down"],
    "time_slots": ["Morning", "Afternoon", "Evening", "Night"],
    "quest_categories": ["Health", "Work", "Personal", "Learning"],
    "backup_retention_days": None,
    "persistent_notes": "",
    "discord_webhook_url": "",
    "ntfy_topic_url": "",
}

_LIST_PREFERENCES = ("energy_categories", "time_slots", "quest_categories")
_TEXT_PREFERENCES = ("persistent_notes", "discord_webhook_url", "ntfy_topic_url")


@dataclass
class EngineConfig:
    """Process-wide settings, built once at start-up and handed to every component."""

    db_path: Path = DATA_DIR / "lifetracker.sqlite3"
    backup_dir: Path = DATA_DIR / "backups"
    check_interval_s: int = 60
    migration_threshold: int = 3
    default_backup_retention_days: int = 7
    clock: Callable[[], datetime] = field(default=datetime.now, repr=False)

    def now(self) -> datetime:
        return self.clock()


def load_config(**overrides: Any) -> EngineConfig:
    env = os.environ
    values: dict[str, Any] = {}
    if env.get("LIFETRACKER_DB_PATH"):
        values["db_path"] = Path(env["LIFETRACKER_DB_PATH"])
    if env.get("LIFETRACKER_BACKUP_DIR"):
        values["backup_dir"] = Path(env["LIFETRACKER_BACKUP_DIR"])
    elif "db_path" in values:
        values["backup_dir"] = values["db_path"].parent / "backups"
    if env.get("LIFETRACKER_BACKUP_RETENTION_DAYS"):
        values["default_backup_retention_days"] = int(env["LIFETRACKER_BACKUP_RETENTION_DAYS"])
    if env.get("LIFETRACKER_CHECK_INTERVAL"):
        values["check_interval_s"] = int(env["LIFETRACKER_CHECK_INTERVAL"])
    values.update(overrides)
    return EngineConfig(**values)


def load_preferences(store: Store) -> dict[str, Any]:
    stored = store.read("settings")
    prefs = {key: stored.get(key, default) for key, default in DEFAULT_PREFERENCES.items()}
    return prefs


def _clean_names(key: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{key} must be a non-empty list")
    names = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"{key} entries must be non-empty text")
        name = item.strip()
        if name in names:
            raise ValidationError(f"Duplicate entry {name!r} in {key}")
        names.append(name)
    return names


def clean_setting(key: str, value: Any) -> Any:
    if key in _LIST_PREFERENCES:
        return _clean_names(key, value)
    if key in _TEXT_PREFERENCES:
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be text")
        return (value or "").strip()
    if key == "backup_retention_days":
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            raise ValidationError("backup_retention_days must be a positive integer")
        return value
    raise ValidationError(f"Unknown setting {key!r}")


def update_preferences(store: Store, **changes: Any) -> dict[str, Any]:
    cleaned = {key: clean_setting(key, value) for key, value in changes.items()}
    store.write_many([("settings", key, value) for key, value in cleaned.items()])
    return load_preferences(store)


def hour_to_time_slot(hour: int, time_slots: list[str]) -> str:
    if not 0 <= hour <= 23:
        raise ValidationError(f"Hour out of range: {hour}")
    if len(time_slots) == 4:
        if 5 <= hour < 12:
            return time_slots[0]
        if 12 <= hour < 17:
            return time_slots[1]
        if 17 <= hour < 21:
            return time_slots[2]
        return time_slots[3]
    if len(time_slots) == 3:
        if 5 <= hour < 12:
            return time_slots[0]
        if 12 <= hour < 18:
            return time_slots[1]
        return time_slots[2]
    hours_per_slot = 24 / len(time_slots)
    return time_slots[min(int(hour // hours_per_slot), len(time_slots) - 1)]
