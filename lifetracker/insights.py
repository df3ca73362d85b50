from __future__ import annotations

from datetime import date, timedelta

from lifetracker.config import EngineConfig, load_preferences
from lifetracker.db import Store
from lifetracker.errors import ValidationError
from lifetracker.periods import PERIODS, period_start
from lifetracker.quests import COMPLETED, MISSED, SKIPPED, QuestEngine
from lifetracker.reminders import WEEKDAYS

UNCATEGORIZED = "Uncategorized"


def heat_level(count: int) -> int:
    if not count:
        return 0
    if count <= 2:
        return 1
    if count <= 4:
        return 2
    return 3


def _rate(done: int, total: int) -> int:
    return int(done * 100 // total) if total else 0


class InsightAggregator:
    """Read-only summaries over daily logs and quest history."""

    def __init__(self, quests: QuestEngine, store: Store, config: EngineConfig) -> None:
        self.quests = quests
        self.store = store
        self.config = config

    def _today(self, today: date | None) -> date:
        return today or self.config.now().date()

    def _completed_by_day(self) -> dict[str, int]:
        return {day: int(log.get("quests_completed") or 0) for day, log in self.store.read("logs").items()}

    def build_heatmap(self, weeks: int = 12, today: date | None = None) -> list[list[dict]]:
        """Day buckets in Monday-first rows, oldest week first; the last row holds today."""
        if weeks < 1:
            raise ValidationError("weeks must be at least 1")
        today = self._today(today)
        counts = self._completed_by_day()
        first = today - timedelta(days=today.weekday()) - timedelta(weeks=weeks - 1)
        grid = []
        for week in range(weeks):
            row = []
            for offset in range(7):
                day = first + timedelta(days=week * 7 + offset)
                count = counts.get(day.isoformat(), 0) if day <= today else 0
                row.append({"date": day.isoformat(), "count": count, "level": heat_level(count)})
            grid.append(row)
        return grid

    def heatmap_stats(self, weeks: int = 12, today: date | None = None) -> dict:
        today = self._today(today)
        cells = [cell for row in self.build_heatmap(weeks, today) for cell in row if cell["date"] <= today.isoformat()]
        total = active = longest = run = 0
        for cell in cells:
            total += cell["count"]
            if cell["count"] > 0:
                active += 1
                run += 1
                longest = max(longest, run)
            else:
                run = 0
        current = 0
        for cell in reversed(cells):
            if cell["count"] <= 0:
                break
            current += 1
        return {
            "total_completions": total,
            "days_with_activity": active,
            "total_days": len(cells),
            "current_streak": current,
            "longest_streak": longest,
            "average_per_active_day": total // active if active else 0,
        }

    def weekly_stats(self, today: date | None = None) -> dict:
        today = self._today(today)
        logs = self.store.read("logs")
        completed_total = assigned_total = 0
        best = {"day": None, "completed": 0, "total": 0, "rate": 0.0}
        for back in range(7):
            day = today - timedelta(days=back)
            log = logs.get(day.isoformat())
            if not log:
                continue
            completed = int(log.get("quests_completed") or 0)
            assigned = int(log.get("quests_total") or 0)
            completed_total += completed
            assigned_total += assigned
            if assigned:
                rate = completed / assigned
                if rate > best["rate"] or (rate == best["rate"] and completed > best["completed"]):
                    best = {"day": WEEKDAYS[day.weekday()], "completed": completed, "total": assigned, "rate": rate}
        return {
            "completion_rate": _rate(completed_total, assigned_total),
            "best_day": best["day"],
            "best_completed": best["completed"],
            "best_total": best["total"],
            "missed": max(0, assigned_total - completed_total),
        }

    def weekly_mood(self, today: date | None = None) -> list[dict]:
        today = self._today(today)
        categories = load_preferences(self.store)["energy_categories"]
        step = 10 / len(categories)
        scores = {name: int((len(categories) - index) * step) for index, name in enumerate(categories)}
        logs = self.store.read("logs")
        days = []
        for back in range(6, -1, -1):
            day = today - timedelta(days=back)
            log = logs.get(day.isoformat()) or {}
            energy = log.get("energy")
            days.append(
                {
                    "date": day.isoformat(),
                    "day": WEEKDAYS[day.weekday()],
                    "energy": energy,
                    "score": scores.get(energy, 0),
                    "entries": [
                        {"hour": item.get("hour"), "energy": item.get("energy"), "score": scores.get(item.get("energy"), 0)}
                        for item in log.get("energy_entries", [])
                    ],
                }
            )
        return days

    def _outcomes(self, group_by: str, start: date, end: date) -> dict[str, dict]:
        if start > end:
            raise ValidationError("Range start is after its end")
        buckets: dict[str, dict] = {}
        if group_by == "period":
            for period in PERIODS:
                buckets[period] = {COMPLETED: 0, SKIPPED: 0, MISSED: 0}
        for quest in self.quests.list_quests():
            name = quest.get(group_by) or UNCATEGORIZED
            bucket = buckets.setdefault(name, {COMPLETED: 0, SKIPPED: 0, MISSED: 0})
            for entry in quest["history"]:
                if start <= period_start(quest["period"], entry["period_key"]) <= end:
                    bucket[entry["outcome"]] += 1
        for bucket in buckets.values():
            # Skips are neither successes nor failures.
            bucket["rate"] = _rate(bucket[COMPLETED], bucket[COMPLETED] + bucket[MISSED])
        return buckets

    def category_performance(self, start: date, end: date) -> dict[str, dict]:
        return self._outcomes("category", start, end)

    def period_performance(self, start: date, end: date) -> dict[str, dict]:
        return self._outcomes("period", start, end)

    def generate_insight(self, weekly: dict, today: date | None = None) -> str | None:
        today = self._today(today)
        categories = load_preferences(self.store)["energy_categories"]
        high, low = categories[0], categories[-1]
        logs = self.store.read("logs")
        rates: dict[str, list[float]] = {high: [], low: []}
        for back in range(7):
            log = logs.get((today - timedelta(days=back)).isoformat())
            if not log or log.get("energy") not in rates:
                continue
            total = int(log.get("quests_total") or 0)
            rates[log["energy"]].append(int(log.get("quests_completed") or 0) / total if total else 0.0)

        high_avg = sum(rates[high]) / len(rates[high]) if rates[high] else 0.0
        low_avg = sum(rates[low]) / len(rates[low]) if rates[low] else 0.0
        if high != low and high_avg > low_avg + 0.3:
            return f"You complete {int((high_avg - low_avg) * 100)}% more on {high} days."
        if weekly["completion_rate"] >= 80:
            return "Great week! You're hitting your goals consistently."
        if weekly["missed"] > 5:
            return "Consider reducing quest count or breaking tasks smaller."
        return None

    def monthly_summary(self, today: date | None = None) -> dict:
        today = self._today(today)
        prefix = f"{today.year:04d}-{today.month:02d}-"
        days = completed = assigned = 0
        for day, log in self.store.read("logs").items():
            if day.startswith(prefix):
                days += 1
                completed += int(log.get("quests_completed") or 0)
                assigned += int(log.get("quests_total") or 0)
        return {
            "month": prefix[:-1],
            "days_tracked": days,
            "quests_completed": completed,
            "quests_assigned": assigned,
            "completion_rate": _rate(completed, assigned),
        }

    def get_insights(self, start: date | None = None, end: date | None = None, weeks: int = 12) -> dict:
        end = self._today(end)
        start = start or end - timedelta(days=6)
        weekly = self.weekly_stats(end)
        quests = self.quests.list_quests()
        return {
            "range": {"start": start.isoformat(), "end": end.isoformat()},
            "heatmap": self.build_heatmap(weeks, end),
            "heatmap_stats": self.heatmap_stats(weeks, end),
            "weekly": weekly,
            "mood": self.weekly_mood(end),
            "categories": self.category_performance(start, end),
            "periods": self.period_performance(start, end),
            "insight": self.generate_insight(weekly, end),
            "monthly": self.monthly_summary(end),
            "streaks": [
                {"id": q["id"], "title": q["title"], "streak": q["streak"], "longest_streak": q["longest_streak"]}
                for q in sorted(quests, key=lambda q: (-q["streak"], q["title"]))
            ],
            "migration_review": [{"id": q["id"], "title": q["title"], "defer_count": q["defer_count"]} for q in quests if q["needs_migration"]],
        }
