from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any

from lifetracker.config import EngineConfig, load_config, load_preferences, update_preferences
from lifetracker.db import Store
from lifetracker.insights import InsightAggregator
from lifetracker.journal import Journal
from lifetracker.quests import QuestEngine
from lifetracker.reminders import ReminderScheduler

logger = logging.getLogger(__name__)


class LifeTracker:
    """The call surface a host application drives.

    All components share one store; nothing here keeps records between calls.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or load_config()
        self.store = Store(self.config.db_path, self.config.backup_dir, clock=self.config.now)
        self.store.init_db()
        self.quests = QuestEngine(self.store, self.config)
        self.journal = Journal(self.store, self.config)
        self.reminders = ReminderScheduler(self.store, self.config)
        self.insights = InsightAggregator(self.quests, self.store, self.config)

    # Quests

    def create_quest(self, title: str, **fields: Any) -> dict:
        return self.quests.create(title, **fields)

    def complete_quest(self, quest_id: str) -> dict:
        return self.quests.complete(quest_id)

    def advance_quest(self, quest_id: str, delta: int) -> dict:
        return self.quests.advance(quest_id, delta)

    def skip_quest(self, quest_id: str) -> dict:
        return self.quests.skip(quest_id)

    def undo_quest(self, quest_id: str) -> dict:
        return self.quests.undo(quest_id)

    def update_quest(self, quest_id: str, **changes: Any) -> dict:
        return self.quests.update(quest_id, **changes)

    def delete_quest(self, quest_id: str) -> None:
        self.quests.delete(quest_id)

    def get_quest(self, quest_id: str) -> dict:
        return self.quests.get(quest_id)

    def list_quests(self, filters: dict[str, Any] | None = None) -> list[dict]:
        return self.quests.list_quests(filters)

    def quests_for_energy(self, level: str) -> list[dict]:
        """Open quests that suit a day at energy ``level``."""
        return self.quests.list_quests({"energy_level": level})

    # Reminders

    def check_due_reminders(self, now: datetime | None = None) -> list[dict]:
        return list(self.reminders.check_due(now))

    def create_reminder(self, title: str, time_of_day: str, repeat_days: Any = None, start_date: Any = None) -> dict:
        return self.reminders.create(title, time_of_day, repeat_days, start_date)

    def toggle_reminder(self, reminder_id: str) -> dict:
        return self.reminders.toggle(reminder_id)

    def update_reminder(self, reminder_id: str, **changes: Any) -> dict:
        return self.reminders.update(reminder_id, **changes)

    def delete_reminder(self, reminder_id: str) -> None:
        self.reminders.delete(reminder_id)

    def list_reminders(self) -> list[dict]:
        return self.reminders.list_reminders()

    # Journal and insights

    def log_mood_entry(self, energy: str, notes: str | None = None, hour: int | None = None) -> dict:
        return self.journal.log_mood_entry(energy, notes=notes, hour=hour)

    def save_reflection(self, text: str) -> dict:
        return self.journal.save_reflection(text)

    def get_insights(self, start: date | None = None, end: date | None = None) -> dict:
        return self.insights.get_insights(start, end)

    # Settings

    def get_preferences(self) -> dict:
        return load_preferences(self.store)

    def update_preferences(self, **changes: Any) -> dict:
        return update_preferences(self.store, **changes)

    # Backup and lifecycle

    def export_backup(self) -> str:
        return self.store.export_json()

    def import_backup(self, blob: str | bytes | dict) -> dict[str, int]:
        return self.store.import_json(blob)

    def export_backup_to_file(self, filename: str | None = None) -> Path:
        return self.store.export_backup_to_file(filename)

    def list_backups(self) -> list[dict]:
        return self.store.list_backups()

    def import_backup_from_file(self, path: str | Path) -> dict[str, int]:
        return self.store.import_backup_from_file(path)

    def flush_all(self) -> Path | None:
        """Checkpoint the store and take today's auto-backup if it is missing."""
        self.store.flush()
        retention = load_preferences(self.store).get("backup_retention_days") or self.config.default_backup_retention_days
        return self.store.auto_backup(retention)

    def on_suspend(self) -> Path | None:
        logger.info("Suspending: flushing store")
        return self.flush_all()

    def on_resume(self, now: datetime | None = None) -> list[dict]:
        due = self.check_due_reminders(now)
        logger.info("Resumed: %d reminder(s) due", len(due))
        return due
