from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from lifetracker.config import EngineConfig
from lifetracker.engine import LifeTracker
from lifetracker.errors import InvalidStateError, NotFoundError, ValidationError


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class TrackerTestCase(unittest.TestCase):
    start = datetime(2026, 10, 19, 9, 0)  # a Monday

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.clock = FakeClock(self.start)
        self.config = EngineConfig(db_path=root / "test.sqlite3", backup_dir=root / "backups", clock=self.clock)
        self.tracker = LifeTracker(self.config)

    def tearDown(self) -> None:
        self._tmp.cleanup()


class CompletionAndStreakTests(TrackerTestCase):
    def test_complete_is_idempotent_within_period(self) -> None:
        quest = self.tracker.create_quest("Stretch")
        self.tracker.complete_quest(quest["id"])
        again = self.tracker.complete_quest(quest["id"])

        self.assertEqual(again["state"], "completed")
        self.assertEqual(again["streak"], 1)
        self.assertEqual(len(again["history"]), 1)

    def test_missed_day_breaks_streak_but_not_longest(self) -> None:
        quest = self.tracker.create_quest("Walk")
        self.tracker.complete_quest(quest["id"])
        self.clock.advance(days=1)
        done = self.tracker.complete_quest(quest["id"])
        self.assertEqual((done["streak"], done["longest_streak"]), (2, 2))

        self.clock.advance(days=2)
        later = self.tracker.get_quest(quest["id"])
        self.assertEqual(later["state"], "pending")
        self.assertEqual(later["streak"], 0)
        self.assertEqual(later["longest_streak"], 2)
        self.assertEqual(later["history"][-1]["outcome"], "missed")
        self.assertEqual(later["defer_count"], 1)

    def test_missed_period_restarts_streak(self) -> None:
        quest = self.tracker.create_quest("Walk")
        for _ in range(3):
            self.tracker.complete_quest(quest["id"])
            self.clock.advance(days=1)
        self.clock.advance(days=1)
        done = self.tracker.complete_quest(quest["id"])

        self.assertEqual([e["outcome"] for e in done["history"]], ["completed"] * 3 + ["missed", "completed"])
        self.assertEqual(done["streak"], 1)
        self.assertEqual(done["longest_streak"], 3)

    def test_skip_preserves_streak(self) -> None:
        quest = self.tracker.create_quest("Meditate")
        self.tracker.complete_quest(quest["id"])
        self.clock.advance(days=1)
        skipped = self.tracker.skip_quest(quest["id"])
        self.assertEqual(skipped["state"], "skipped")
        self.assertEqual(skipped["streak"], 1)

        self.clock.advance(days=1)
        done = self.tracker.complete_quest(quest["id"])
        self.assertEqual(done["streak"], 2)
        self.assertEqual([e["outcome"] for e in done["history"]], ["completed", "skipped", "completed"])

    def test_longest_streak_never_decreases(self) -> None:
        quest = self.tracker.create_quest("Read")
        seen = []
        for day in range(8):
            if day < 3 or day == 6:
                self.tracker.complete_quest(quest["id"])
            seen.append(self.tracker.get_quest(quest["id"])["longest_streak"])
            self.clock.advance(days=1)
        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], 3)

    def test_weekly_streak_survives_until_week_closes(self) -> None:
        quest = self.tracker.create_quest("Long run", period="weekly")
        self.tracker.complete_quest(quest["id"])

        self.clock.advance(days=7)
        next_week = self.tracker.get_quest(quest["id"])
        self.assertEqual(next_week["state"], "pending")
        self.assertEqual(next_week["streak"], 1)

        self.clock.advance(days=14)
        later = self.tracker.get_quest(quest["id"])
        self.assertEqual(later["streak"], 0)
        self.assertEqual(later["defer_count"], 2)

    def test_clock_moving_backwards_does_not_roll_over(self) -> None:
        quest = self.tracker.create_quest("Journal")
        self.tracker.complete_quest(quest["id"])
        self.clock.advance(days=-1)
        self.assertEqual(self.tracker.get_quest(quest["id"])["state"], "completed")

    def test_completion_updates_daily_log(self) -> None:
        first = self.tracker.create_quest("A")
        self.tracker.create_quest("B")
        self.tracker.complete_quest(first["id"])

        log = self.tracker.store.get("logs", "2026-10-19")
        self.assertEqual((log["quests_total"], log["quests_completed"]), (2, 1))


class MigrationFlagTests(TrackerTestCase):
    def test_flag_set_on_third_missed_day_and_not_before(self) -> None:
        quest = self.tracker.create_quest("Declutter")
        flags = []
        for _ in range(3):
            self.clock.advance(days=1)
            flags.append(self.tracker.get_quest(quest["id"])["needs_migration"])
        self.assertEqual(flags, [False, False, True])

        flagged = self.tracker.list_quests({"needs_migration": True})
        self.assertEqual([q["id"] for q in flagged], [quest["id"]])

    def test_completion_clears_flag_at_next_rollover(self) -> None:
        quest = self.tracker.create_quest("Declutter")
        self.clock.advance(days=3)
        self.tracker.complete_quest(quest["id"])
        self.clock.advance(days=1)
        self.assertFalse(self.tracker.get_quest(quest["id"])["needs_migration"])


class ProgressiveQuestTests(TrackerTestCase):
    def test_advance_completes_and_reverts(self) -> None:
        quest = self.tracker.create_quest("Pages", kind="progressive", target=3, unit="pages")
        partial = self.tracker.advance_quest(quest["id"], 2)
        self.assertEqual((partial["current"], partial["state"]), (2, "pending"))
        with self.assertRaises(InvalidStateError):
            self.tracker.complete_quest(quest["id"])

        done = self.tracker.advance_quest(quest["id"], 1)
        self.assertEqual((done["state"], done["streak"]), ("completed", 1))

        reverted = self.tracker.advance_quest(quest["id"], -1)
        self.assertEqual(reverted["state"], "pending")
        self.assertEqual(reverted["current"], 2)
        self.assertEqual(reverted["streak"], 0)
        self.assertEqual(reverted["history"], [])

    def test_advance_clamps_and_resets_on_rollover(self) -> None:
        quest = self.tracker.create_quest("Water", kind="progressive", target=8)
        self.assertEqual(self.tracker.advance_quest(quest["id"], 20)["current"], 8)
        self.assertEqual(self.tracker.advance_quest(quest["id"], -50)["current"], 0)

        self.tracker.advance_quest(quest["id"], 4)
        self.clock.advance(days=1)
        self.assertEqual(self.tracker.get_quest(quest["id"])["current"], 0)

    def test_advance_rejects_binary_and_bad_delta(self) -> None:
        binary = self.tracker.create_quest("Call mum")
        with self.assertRaises(InvalidStateError):
            self.tracker.advance_quest(binary["id"], 1)
        progressive = self.tracker.create_quest("Steps", kind="progressive", target=10)
        with self.assertRaises(ValidationError):
            self.tracker.advance_quest(progressive["id"], "3")


class SkipAndUndoTests(TrackerTestCase):
    def test_undo_complete_restores_pending(self) -> None:
        quest = self.tracker.create_quest("Floss")
        self.tracker.complete_quest(quest["id"])
        undone = self.tracker.undo_quest(quest["id"])
        self.assertEqual(undone["state"], "pending")
        self.assertEqual(undone["streak"], 0)
        self.assertEqual(undone["history"], [])
        self.assertIsNone(undone["last_completed_period_key"])

    def test_undo_progressive_completion_restores_progress(self) -> None:
        quest = self.tracker.create_quest("Pushups", kind="progressive", target=20)
        self.tracker.advance_quest(quest["id"], 15)
        self.tracker.advance_quest(quest["id"], 5)
        undone = self.tracker.undo_quest(quest["id"])
        self.assertEqual((undone["state"], undone["current"]), ("pending", 15))

    def test_undo_after_rollover_fails(self) -> None:
        quest = self.tracker.create_quest("Floss")
        self.tracker.complete_quest(quest["id"])
        self.clock.advance(days=1)
        with self.assertRaises(InvalidStateError):
            self.tracker.undo_quest(quest["id"])
        self.assertEqual(self.tracker.get_quest(quest["id"])["streak"], 1)

    def test_nothing_to_undo(self) -> None:
        quest = self.tracker.create_quest("Floss")
        with self.assertRaises(InvalidStateError):
            self.tracker.undo_quest(quest["id"])

    def test_skip_rules(self) -> None:
        quest = self.tracker.create_quest("Gym")
        self.tracker.skip_quest(quest["id"])
        again = self.tracker.skip_quest(quest["id"])
        self.assertEqual(len(again["history"]), 1)

        done = self.tracker.complete_quest(quest["id"])
        self.assertEqual([e["outcome"] for e in done["history"]], ["completed"])
        with self.assertRaises(InvalidStateError):
            self.tracker.skip_quest(quest["id"])


class QuestCrudTests(TrackerTestCase):
    def test_create_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("   ")
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("Run", period="yearly")
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("Run", kind="habitual")
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("Run", kind="progressive", target=0)
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("Run", target=5)
        with self.assertRaises(ValidationError):
            self.tracker.create_quest("Run", time_slot="Brunch")

    def test_unknown_id(self) -> None:
        with self.assertRaises(NotFoundError):
            self.tracker.complete_quest("missing")

    def test_list_filters(self) -> None:
        daily = self.tracker.create_quest("Stretch", category="Health")
        self.tracker.create_quest("Review goals", period="monthly", time_slot="Evening")

        self.assertEqual([q["id"] for q in self.tracker.list_quests({"period": "daily"})], [daily["id"]])
        self.assertEqual(len(self.tracker.list_quests({"time_slot": "Evening"})), 1)
        self.assertEqual(len(self.tracker.list_quests()), 2)
        with self.assertRaises(ValidationError):
            self.tracker.list_quests({"colour": "red"})

    def test_energy_level_view(self) -> None:
        any_energy = self.tracker.create_quest("Tidy desk")
        low = self.tracker.create_quest("Stretch", energy_tag=["Average", "Down"])
        high = self.tracker.create_quest("Sprint", energy_tag="Energetic")
        explicit_any = self.tracker.create_quest("Read", energy_tag="Any")
        self.tracker.complete_quest(explicit_any["id"])

        down_day = [q["id"] for q in self.tracker.quests_for_energy("Down")]
        self.assertEqual(down_day, [any_energy["id"], low["id"]])
        best_day = [q["id"] for q in self.tracker.list_quests({"energy_level": "Energetic"})]
        self.assertEqual(best_day, [any_energy["id"], low["id"], high["id"]])
        self.assertEqual(len(self.tracker.list_quests({"energy_level": "Average", "period": "weekly"})), 0)
        with self.assertRaises(ValidationError):
            self.tracker.quests_for_energy("Sleepy")

    def test_energy_tags_are_cleaned(self) -> None:
        quest = self.tracker.create_quest("Stretch", energy_tag=[" Down ", "Down", ""])
        self.assertEqual(quest["energy_tag"], ["Down"])
        self.assertIsNone(self.tracker.update_quest(quest["id"], energy_tag=[])["energy_tag"])

    def test_update_and_delete(self) -> None:
        quest = self.tracker.create_quest("Pages", kind="progressive", target=10)
        self.tracker.advance_quest(quest["id"], 6)
        updated = self.tracker.update_quest(quest["id"], title="More pages", target=5)
        self.assertEqual(updated["title"], "More pages")
        self.assertEqual(updated["state"], "completed")
        with self.assertRaises(ValidationError):
            self.tracker.update_quest(quest["id"], period="weekly")

        self.tracker.delete_quest(quest["id"])
        with self.assertRaises(NotFoundError):
            self.tracker.get_quest(quest["id"])
        with self.assertRaises(NotFoundError):
            self.tracker.delete_quest(quest["id"])


if __name__ == "__main__":
    unittest.main()
