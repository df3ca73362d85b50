from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import date
from typing import Any

from lifetracker.config import EngineConfig, load_preferences
from lifetracker.db import Store, utc_now_iso
from lifetracker.errors import InvalidStateError, NotFoundError, ValidationError
from lifetracker.journal import new_day_log
from lifetracker.periods import DAILY, PERIODS, iter_period_keys, period_key, period_start, previous_period_key

logger = logging.getLogger(__name__)

BINARY = "binary"
PROGRESSIVE = "progressive"
KINDS = (BINARY, PROGRESSIVE)

PENDING = "pending"
COMPLETED = "completed"
SKIPPED = "skipped"
MISSED = "missed"
STATES = (PENDING, COMPLETED, SKIPPED)

MAX_TITLE_LENGTH = 200
ANY_ENERGY = "Any"
FILTER_KEYS = ("period", "time_slot", "energy_tag", "energy_level", "category", "state", "needs_migration")


def _clean_title(title: Any) -> str:
    if not isinstance(title, str):
        raise ValidationError("Title must be text")
    cleaned = "".join(ch for ch in title if ch.isprintable()).strip()[:MAX_TITLE_LENGTH]
    if not cleaned:
        raise ValidationError("Title must not be empty")
    return cleaned


def _clean_tag(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Tags must be text")
    return value.strip() or None


def _clean_energy(value: Any) -> str | list[str] | None:
    if isinstance(value, list):
        tags = []
        for item in value:
            tag = _clean_tag(item)
            if tag and tag not in tags:
                tags.append(tag)
        return tags or None
    return _clean_tag(value)


def energy_matches(energy_tag: str | list[str] | None, level: str, highest: str) -> bool:
    """Whether a quest suits a day at ``level``; the highest level takes on anything."""
    if energy_tag is None or energy_tag == ANY_ENERGY or level == highest:
        return True
    if isinstance(energy_tag, list):
        return level in energy_tag
    return energy_tag == level


def _check_target(target: Any) -> int:
    if isinstance(target, bool) or not isinstance(target, int) or target <= 0:
        raise ValidationError("Progressive quests need an integer target greater than zero")
    return target


def compute_streak(period: str, history: list[dict]) -> int:
    """Completed periods in the unbroken run ending at the newest history entry.

    Skipped periods keep the run alive without adding to it; a missed period
    or a hole in the period sequence ends it.
    """
    streak = 0
    expected = None
    for entry in reversed(history):
        if expected is not None and entry["period_key"] != expected:
            break
        if entry["outcome"] == MISSED:
            break
        if entry["outcome"] == COMPLETED:
            streak += 1
        expected = previous_period_key(period, entry["period_key"])
    return streak


def trailing_missed(history: list[dict]) -> int:
    count = 0
    for entry in reversed(history):
        if entry["outcome"] != MISSED:
            break
        count += 1
    return count


class QuestEngine:
    def __init__(self, store: Store, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def _today(self) -> date:
        return self.config.now().date()

    def _load(self, quest_id: str) -> dict:
        quest = self.store.get("quests", quest_id)
        if quest is None:
            raise NotFoundError("quest", quest_id)
        return quest

    def needs_migration(self, quest: dict) -> bool:
        return quest.get("defer_count", 0) >= self.config.migration_threshold

    def _view(self, quest: dict) -> dict:
        return {**quest, "needs_migration": self.needs_migration(quest)}

    def _recompute(self, quest: dict) -> None:
        quest["streak"] = compute_streak(quest["period"], quest["history"])
        quest["longest_streak"] = max(quest.get("longest_streak", 0), quest["streak"])

    def roll_over(self, quest: dict, today: date) -> bool:
        """Catch ``quest`` up to the period containing ``today``. Returns True if it moved."""
        period = quest["period"]
        current_key = period_key(period, today)
        last_key = quest.get("last_evaluated_period_key") or current_key
        if last_key == current_key:
            return False
        if period_start(period, last_key) > period_start(period, current_key):
            # Wall clock went backwards; keep the record where it is.
            logger.warning("Clock is behind quest %s (%s > %s)", quest["id"], last_key, current_key)
            return False

        recorded = {entry["period_key"] for entry in quest["history"]}
        closed = 0
        for key in iter_period_keys(period, last_key, current_key):
            if key not in recorded:
                quest["history"].append({"period_key": key, "outcome": MISSED, "on": today.isoformat()})
            closed += 1

        quest["state"] = PENDING
        if quest["kind"] == PROGRESSIVE:
            quest["current"] = 0
        quest["undo"] = None
        quest["defer_count"] = trailing_missed(quest["history"])
        self._recompute(quest)
        quest["last_evaluated_period_key"] = current_key
        logger.debug("Quest %s rolled over %d period(s) to %s", quest["id"], closed, current_key)
        return True

    def _fetch(self, quest_id: str) -> tuple[dict, date]:
        quest = self._load(quest_id)
        today = self._today()
        self.roll_over(quest, today)
        return quest, today

    def _day_log(self, today: date, quests: Iterable[dict]) -> dict:
        key = today.isoformat()
        log = self.store.get("logs", key) or new_day_log(key)
        total = completed = 0
        for quest in quests:
            total += 1
            if any(entry["outcome"] == COMPLETED and entry.get("on") == key for entry in quest["history"]):
                completed += 1
        log["quests_total"] = total
        log["quests_completed"] = completed
        return log

    def _save(self, quest: dict, today: date) -> None:
        quest["updated_at"] = utc_now_iso()
        quests = self.store.read("quests")
        quests[quest["id"]] = quest
        log = self._day_log(today, quests.values())
        self.store.write_many([("quests", quest["id"], quest), ("logs", today.isoformat(), log)])

    def _open_entry(self, quest: dict) -> dict | None:
        history = quest["history"]
        if history and history[-1]["period_key"] == quest["last_evaluated_period_key"]:
            return history[-1]
        return None

    def _mark(self, quest: dict, outcome: str, today: date, prior_current: int | None = None) -> None:
        entry = self._open_entry(quest)
        quest["undo"] = {
            "period_key": quest["last_evaluated_period_key"],
            "state": quest["state"],
            "current": quest.get("current") if prior_current is None else prior_current,
            "entry": dict(entry) if entry else None,
            "last_completed_period_key": quest.get("last_completed_period_key"),
        }
        if entry:
            quest["history"].pop()
        quest["history"].append({"period_key": quest["last_evaluated_period_key"], "outcome": outcome, "on": today.isoformat()})
        quest["state"] = outcome
        if outcome == COMPLETED:
            quest["last_completed_period_key"] = quest["last_evaluated_period_key"]
        self._recompute(quest)

    def _retract(self, quest: dict) -> None:
        if self._open_entry(quest):
            quest["history"].pop()
        quest["state"] = PENDING
        quest["undo"] = None
        quest["last_completed_period_key"] = next(
            (entry["period_key"] for entry in reversed(quest["history"]) if entry["outcome"] == COMPLETED),
            None,
        )
        self._recompute(quest)

    # Public operations

    def create(
        self,
        title: str,
        period: str = DAILY,
        kind: str = BINARY,
        target: int | None = None,
        unit: str | None = None,
        time_slot: str | None = None,
        energy_tag: str | list[str] | None = None,
        category: str | None = None,
    ) -> dict:
        title = _clean_title(title)
        if period not in PERIODS:
            raise ValidationError(f"Unknown period {period!r}")
        if kind not in KINDS:
            raise ValidationError(f"Unknown quest kind {kind!r}")
        if kind == BINARY and target is not None:
            raise ValidationError("Only progressive quests take a target")

        slots = load_preferences(self.store)["time_slots"]
        if time_slot is None:
            time_slot = slots[0]
        elif time_slot not in slots:
            raise ValidationError(f"Unknown time slot {time_slot!r}")

        today = self._today()
        quest = {
            "id": uuid.uuid4().hex,
            "title": title,
            "period": period,
            "time_slot": time_slot,
            "energy_tag": _clean_energy(energy_tag),
            "category": _clean_tag(category),
            "kind": kind,
            "state": PENDING,
            "streak": 0,
            "longest_streak": 0,
            "last_completed_period_key": None,
            "defer_count": 0,
            "history": [],
            "last_evaluated_period_key": period_key(period, today),
            "undo": None,
            "created_at": utc_now_iso(),
        }
        if kind == PROGRESSIVE:
            quest.update(target=_check_target(target), current=0, unit=_clean_tag(unit) or "")
        self._save(quest, today)
        logger.info("Created %s quest %s (%s)", period, quest["id"], title)
        return self._view(quest)

    def get(self, quest_id: str) -> dict:
        quest = self._load(quest_id)
        if self.roll_over(quest, self._today()):
            quest["updated_at"] = utc_now_iso()
            self.store.write("quests", quest_id, quest)
        return self._view(quest)

    def list_quests(self, filters: dict[str, Any] | None = None) -> list[dict]:
        filters = {key: value for key, value in (filters or {}).items() if value is not None}
        unknown = set(filters) - set(FILTER_KEYS)
        if unknown:
            raise ValidationError(f"Unknown quest filter(s): {', '.join(sorted(unknown))}")
        level = filters.pop("energy_level", None)
        if level is not None:
            categories = load_preferences(self.store)["energy_categories"]
            if level not in categories:
                raise ValidationError(f"Unknown energy level {level!r}")

        today = self._today()
        moved = []
        views = []
        for quest in self.store.read("quests").values():
            if self.roll_over(quest, today):
                quest["updated_at"] = utc_now_iso()
                moved.append(("quests", quest["id"], quest))
            view = self._view(quest)
            if level is not None and (
                view["state"] == COMPLETED or not energy_matches(view.get("energy_tag"), level, categories[0])
            ):
                continue
            if all(view.get(key) == value for key, value in filters.items()):
                views.append(view)
        self.store.write_many(moved)
        return views

    def complete(self, quest_id: str) -> dict:
        quest, today = self._fetch(quest_id)
        if quest["kind"] == PROGRESSIVE and quest["current"] < quest["target"]:
            raise InvalidStateError("Progressive quests are completed by advancing them to their target")
        if quest["state"] != COMPLETED:
            self._mark(quest, COMPLETED, today)
        self._save(quest, today)
        return self._view(quest)

    def advance(self, quest_id: str, delta: int) -> dict:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Progress delta must be an integer")
        quest, today = self._fetch(quest_id)
        if quest["kind"] != PROGRESSIVE:
            raise InvalidStateError("Only progressive quests can be advanced")

        prior = quest["current"]
        quest["current"] = max(0, min(quest["target"], prior + delta))
        if quest["current"] >= quest["target"] and quest["state"] != COMPLETED:
            self._mark(quest, COMPLETED, today, prior_current=prior)
        elif quest["current"] < quest["target"] and quest["state"] == COMPLETED:
            self._retract(quest)
        self._save(quest, today)
        return self._view(quest)

    def skip(self, quest_id: str) -> dict:
        quest, today = self._fetch(quest_id)
        if quest["state"] == COMPLETED:
            raise InvalidStateError("Quest is already completed for this period; undo it first")
        if quest["state"] != SKIPPED:
            self._mark(quest, SKIPPED, today)
        self._save(quest, today)
        return self._view(quest)

    def undo(self, quest_id: str) -> dict:
        quest = self._load(quest_id)
        snapshot = quest.get("undo")
        today = self._today()
        self.roll_over(quest, today)
        if snapshot and snapshot["period_key"] != quest["last_evaluated_period_key"]:
            raise InvalidStateError(f"Period {snapshot['period_key']} has already closed")
        if not snapshot:
            raise InvalidStateError("Nothing to undo in the current period")

        if self._open_entry(quest):
            quest["history"].pop()
        if snapshot["entry"]:
            quest["history"].append(snapshot["entry"])
        quest["state"] = snapshot["state"]
        if quest["kind"] == PROGRESSIVE:
            quest["current"] = snapshot["current"]
        quest["last_completed_period_key"] = snapshot["last_completed_period_key"]
        quest["undo"] = None
        self._recompute(quest)
        self._save(quest, today)
        return self._view(quest)

    def update(self, quest_id: str, **changes: Any) -> dict:
        quest, today = self._fetch(quest_id)
        for key, value in changes.items():
            if key == "title":
                quest["title"] = _clean_title(value)
            elif key == "time_slot":
                if value not in load_preferences(self.store)["time_slots"]:
                    raise ValidationError(f"Unknown time slot {value!r}")
                quest["time_slot"] = value
            elif key == "energy_tag":
                quest["energy_tag"] = _clean_energy(value)
            elif key == "category":
                quest["category"] = _clean_tag(value)
            elif key == "unit" and quest["kind"] == PROGRESSIVE:
                quest["unit"] = _clean_tag(value) or ""
            elif key == "target" and quest["kind"] == PROGRESSIVE:
                prior = quest["current"]
                quest["target"] = _check_target(value)
                quest["current"] = min(prior, quest["target"])
                if quest["current"] >= quest["target"] and quest["state"] != COMPLETED:
                    self._mark(quest, COMPLETED, today, prior_current=prior)
                elif quest["current"] < quest["target"] and quest["state"] == COMPLETED:
                    self._retract(quest)
            else:
                raise ValidationError(f"Field {key!r} cannot be changed on this quest")
        self._save(quest, today)
        return self._view(quest)

    def delete(self, quest_id: str) -> None:
        self._load(quest_id)
        today = self._today()
        quests = self.store.read("quests")
        quests.pop(quest_id, None)
        self.store.write_many(
            [("logs", today.isoformat(), self._day_log(today, quests.values()))],
            deletes=[("quests", quest_id)],
        )
        logger.info("Deleted quest %s", quest_id)
