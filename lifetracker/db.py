from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import tempfile
import uuid
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from lifetracker.config import clean_setting
from lifetracker.errors import NotFoundError, SchemaError, StorageError, ValidationError
from lifetracker.periods import PERIODS, period_key, period_start, previous_period_key

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
NAMESPACES = ("settings", "quests", "logs", "reminders")
AUTO_BACKUP_PREFIX = "lifetracker_auto_"
BACKUP_PREFIX = "lifetracker_"

_AUTO_BACKUP_RE = re.compile(r"^lifetracker_auto_(\d{8})\.json$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_RECORD_KEY_FIELD = {"quests": "id", "reminders": "id", "logs": "date"}
_QUEST_KINDS = ("binary", "progressive")
_QUEST_STATES = ("pending", "completed", "skipped")
_OUTCOMES = ("completed", "skipped", "missed")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_json(raw: str | None, fallback=None):
    if not raw:
        return fallback
    return json.loads(raw)


def _check_namespace(namespace: str) -> None:
    if namespace not in NAMESPACES:
        raise ValidationError(f"Unknown namespace {namespace!r}")


def _as_list(value: Any, what: str) -> list:
    # Lua-side exports serialise empty arrays as empty objects.
    if value is None or value == {}:
        return []
    if not isinstance(value, list):
        raise SchemaError(f"Invalid {what} format")
    return value


def sanitize_filename(filename: str) -> str:
    cleaned = re.sub(r"[/\\]", "_", (filename or "").strip()).replace("..", "_")
    if not cleaned.endswith(".json"):
        cleaned += ".json"
    if cleaned == ".json":
        raise ValidationError("Invalid backup filename")
    return cleaned


class Store:
    """SQLite-backed record store, one logical namespace per concern.

    Every write commits with ``synchronous=FULL`` before returning, so a
    successful call survives a crash straight after it. Connections are opened
    per call; the store holds no record cache.
    """

    def __init__(self, db_path: Path, backup_dir: Path, clock: Callable[[], datetime] = datetime.now) -> None:
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)
        self.clock = clock

    def get_conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous = FULL")
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open store at {self.db_path}: {exc}") from exc
        return conn

    def init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create data directory: {exc}") from exc
        conn = self.get_conn()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS record (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                );
                """
            )
            conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?) ON CONFLICT(key) DO NOTHING",
                (str(SCHEMA_VERSION),),
            )
            row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            if int(row["value"]) > SCHEMA_VERSION:
                raise SchemaError(f"Store was written by schema {row['value']}; this engine supports {SCHEMA_VERSION}")
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot initialise store: {exc}") from exc
        finally:
            conn.close()

    def read(self, namespace: str) -> dict[str, Any]:
        _check_namespace(namespace)
        conn = self.get_conn()
        try:
            rows = conn.execute(
                "SELECT key, body_json FROM record WHERE namespace = ? ORDER BY rowid", (namespace,)
            ).fetchall()
            return {row["key"]: _parse_json(row["body_json"]) for row in rows}
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read {namespace}: {exc}") from exc
        finally:
            conn.close()

    def get(self, namespace: str, key: str) -> Any:
        _check_namespace(namespace)
        conn = self.get_conn()
        try:
            row = conn.execute(
                "SELECT body_json FROM record WHERE namespace = ? AND key = ?", (namespace, key)
            ).fetchone()
            return _parse_json(row["body_json"]) if row else None
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read {namespace}/{key}: {exc}") from exc
        finally:
            conn.close()

    def write(self, namespace: str, key: str, value: Any) -> None:
        self.write_many([(namespace, key, value)])

    def write_many(self, items: Iterable[tuple[str, str, Any]], deletes: Iterable[tuple[str, str]] = ()) -> None:
        """Upsert (and optionally delete) several records in one transaction: all land or none do."""
        encoded = []
        for namespace, key, value in items:
            _check_namespace(namespace)
            try:
                encoded.append((namespace, key, json.dumps(value, sort_keys=True), utc_now_iso()))
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Value for {namespace}/{key} is not JSON-serialisable") from exc
        removed = list(deletes)
        for namespace, _ in removed:
            _check_namespace(namespace)
        if not encoded and not removed:
            return
        conn = self.get_conn()
        try:
            conn.executemany(
                """
                INSERT INTO record (namespace, key, body_json, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET body_json = excluded.body_json, updated_at = excluded.updated_at
                """,
                encoded,
            )
            conn.executemany("DELETE FROM record WHERE namespace = ? AND key = ?", removed)
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Write failed: {exc}") from exc
        finally:
            conn.close()

    def delete(self, namespace: str, key: str) -> bool:
        _check_namespace(namespace)
        conn = self.get_conn()
        try:
            cur = conn.execute("DELETE FROM record WHERE namespace = ? AND key = ?", (namespace, key))
            conn.commit()
            return cur.rowcount > 0
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Delete failed for {namespace}/{key}: {exc}") from exc
        finally:
            conn.close()

    def flush(self) -> None:
        conn = self.get_conn()
        try:
            conn.execute("PRAGMA wal_checkpoint(FULL)")
        except sqlite3.Error as exc:
            raise StorageError(f"Flush failed: {exc}") from exc
        finally:
            conn.close()

    # Export / import

    def snapshot(self) -> dict[str, Any]:
        out: dict[str, Any] = {"schemaVersion": SCHEMA_VERSION, "exportedAt": utc_now_iso()}
        for namespace in NAMESPACES:
            records = self.read(namespace)
            if namespace == "settings":
                out[namespace] = [{"key": key, "value": value} for key, value in records.items()]
            else:
                out[namespace] = list(records.values())
        return out

    def export_json(self) -> str:
        return json.dumps(self.snapshot(), indent=2, sort_keys=True, ensure_ascii=False)

    def import_json(self, blob: str | bytes | dict) -> dict[str, int]:
        """Replace all state with ``blob``. Nothing changes unless the whole blob is valid."""
        if isinstance(blob, (str, bytes)):
            try:
                payload = json.loads(blob)
            except ValueError as exc:
                raise SchemaError(f"Backup is not valid JSON: {exc}") from exc
        else:
            payload = blob
        if not isinstance(payload, dict):
            raise SchemaError("Backup must be a JSON object")
        rows = _rows_from_payload(_upgrade(payload, self.clock().date()))

        conn = self.get_conn()
        try:
            conn.execute("DELETE FROM record")
            now = utc_now_iso()
            conn.executemany(
                "INSERT INTO record (namespace, key, body_json, updated_at) VALUES (?, ?, ?, ?)",
                [(namespace, key, json.dumps(value, sort_keys=True), now) for namespace, key, value in rows],
            )
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Import failed: {exc}") from exc
        finally:
            conn.close()

        counts = {namespace: 0 for namespace in NAMESPACES}
        for namespace, _, _ in rows:
            counts[namespace] += 1
        logger.info("Imported backup: %s", counts)
        return counts

    # Backup files

    def _write_file_atomic(self, path: Path, text: str) -> None:
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=path.parent, suffix=".tmp", delete=False) as fh:
                tmp_name = fh.name
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise StorageError(f"Cannot write backup {path.name}: {exc}") from exc

    def export_backup_to_file(self, filename: str | None = None) -> Path:
        if not filename:
            filename = f"{BACKUP_PREFIX}backup_{self.clock():%Y%m%d_%H%M%S}.json"
        path = self.backup_dir / sanitize_filename(filename)
        self._write_file_atomic(path, self.export_json())
        return path

    def auto_backup(self, retention_days: int = 7) -> Path | None:
        """Write today's dated snapshot if missing, then prune expired ones."""
        today = self.clock().date()
        path = self.backup_dir / f"{AUTO_BACKUP_PREFIX}{today:%Y%m%d}.json"
        created = None
        if not path.exists():
            self._write_file_atomic(path, self.export_json())
            logger.info("Auto-backup created: %s", path.name)
            created = path
        self._prune_auto_backups(today, retention_days)
        return created

    def _prune_auto_backups(self, today: date, retention_days: int) -> None:
        if not self.backup_dir.exists():
            return
        cutoff = today - timedelta(days=retention_days)
        for path in self.backup_dir.iterdir():
            match = _AUTO_BACKUP_RE.match(path.name)
            if not match:
                continue
            backup_day = datetime.strptime(match.group(1), "%Y%m%d").date()
            if backup_day <= cutoff:
                try:
                    path.unlink()
                except OSError as exc:
                    raise StorageError(f"Cannot remove expired backup {path.name}: {exc}") from exc
                logger.info("Removed expired auto-backup: %s", path.name)

    def list_backups(self) -> list[dict]:
        if not self.backup_dir.exists():
            return []
        backups = []
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"):
            stat = path.stat()
            created_at = datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat()
            try:
                created_at = json.loads(path.read_text(encoding="utf-8")).get("exportedAt") or created_at
            except (OSError, ValueError, AttributeError):
                logger.debug("Unreadable backup metadata in %s", path.name)
            backups.append({"filename": path.name, "path": str(path), "created_at": created_at, "size": stat.st_size})
        backups.sort(key=lambda item: item["created_at"], reverse=True)
        return backups

    def _backup_path(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.backup_dir / candidate
        if candidate.resolve().parent != self.backup_dir.resolve():
            raise ValidationError("Backup path must be inside the backup directory")
        if not candidate.is_file():
            raise NotFoundError("backup", candidate.name)
        return candidate

    def import_backup_from_file(self, path: str | Path) -> dict[str, int]:
        candidate = self._backup_path(path)
        try:
            text = candidate.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot read backup {candidate.name}: {exc}") from exc
        return self.import_json(text)

    def delete_backup(self, path: str | Path) -> None:
        candidate = self._backup_path(path)
        try:
            candidate.unlink()
        except OSError as exc:
            raise StorageError(f"Cannot delete backup {candidate.name}: {exc}") from exc


# Schema migrations. Each step takes a payload at version N and returns N + 1.


def _legacy_day(payload: dict, today: date) -> date:
    created = payload.get("created_at")
    if isinstance(created, str):
        try:
            return date.fromisoformat(created[:10])
        except ValueError:
            logger.debug("Unparseable backup timestamp %r, using today", created)
    return today


def _legacy_int(value: Any, default: int, what: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise SchemaError(f"Invalid {what} {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"Invalid {what} {value!r}") from exc


def _legacy_energy(value: Any) -> str | list[str] | None:
    # "Any", a single level, or a multi-select list of levels.
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip() or None
    tags = [str(item).strip() for item in _as_list(value, "energy_required") if str(item).strip()]
    return tags or None


def _legacy_quest(period: str, item: Any, anchor: date) -> dict:
    if not isinstance(item, dict) or not str(item.get("title") or "").strip():
        raise SchemaError(f"Invalid {period} quest entry")
    progressive = bool(item.get("is_progressive"))
    completed_date = item.get("completed_date")
    created = item.get("created") or anchor.isoformat()
    try:
        created_day = date.fromisoformat(created)
        done_day = date.fromisoformat(completed_date) if completed_date else None
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"Invalid date in quest {item.get('id')}") from exc

    history = []
    streak = max(0, _legacy_int(item.get("streak"), 0, "streak"))
    if done_day:
        key = period_key(period, done_day)
        keys = [key]
        for _ in range(streak - 1):
            keys.append(previous_period_key(period, keys[-1]))
        for back_key in reversed(keys[1:]):
            history.append({"period_key": back_key, "outcome": "completed", "on": period_start(period, back_key).isoformat()})
        history.append({"period_key": key, "outcome": "completed", "on": done_day.isoformat()})
        evaluated = key
    else:
        evaluated = period_key(period, created_day)

    completed_now = bool(item.get("completed")) and done_day is not None
    target = max(1, _legacy_int(item.get("progress_target"), 1, "progress target"))
    quest = {
        "id": str(item.get("id") or uuid.uuid4().hex),
        "title": str(item["title"]).strip(),
        "period": period,
        "time_slot": item.get("time_slot"),
        "energy_tag": _legacy_energy(item.get("energy_required")),
        "category": item.get("category"),
        "kind": "progressive" if progressive else "binary",
        "state": "completed" if completed_now else "pending",
        "streak": len(history) if completed_now else 0,
        "longest_streak": max(streak, len(history)),
        "last_completed_period_key": history[-1]["period_key"] if history else None,
        "defer_count": 0,
        "history": history,
        "last_evaluated_period_key": evaluated,
        "undo": None,
        "created_at": created_day.isoformat(),
        "updated_at": utc_now_iso(),
    }
    if progressive:
        current = _legacy_int(item.get("progress_current"), 0, "progress")
        quest.update(target=target, current=min(target, max(0, current)), unit=item.get("progress_unit") or "")
    return quest


def _legacy_reminder(item: Any) -> dict:
    if not isinstance(item, dict):
        raise SchemaError("Invalid reminder entry")
    return {
        "id": str(item.get("id") or uuid.uuid4().hex),
        "title": str(item.get("title") or "Reminder"),
        "time_of_day": item.get("time") or "09:00",
        "repeat_days": _as_list(item.get("repeat_days"), "repeat_days"),
        "active": bool(item.get("active", True)),
        "last_fired_key": item.get("last_triggered"),
        "start_date": item.get("start_date"),
        "created_at": utc_now_iso(),
        "updated_at": utc_now_iso(),
    }


def _legacy_log(day: str, entry: Any) -> dict:
    if not isinstance(entry, dict):
        raise SchemaError(f"Invalid log entry for {day}")
    return {
        "date": day,
        "energy": entry.get("energy_level"),
        "energy_entries": _as_list(entry.get("energy_entries"), "energy_entries"),
        "quests_total": _legacy_int(entry.get("quests_total"), 0, "quest count"),
        "quests_completed": _legacy_int(entry.get("quests_completed"), 0, "quest count"),
        "notes": entry.get("notes") or "",
        "reflection": entry.get("reflection"),
        "reflection_at": entry.get("reflection_time"),
    }


def _migrate_v1(payload: dict, today: date) -> dict:
    """Original plugin backups: ``{version: 1, data: {...}}`` with quests split by cadence."""
    data = payload.get("data")
    if not isinstance(data, dict):
        raise SchemaError("No data found in backup")
    anchor = _legacy_day(payload, today)

    settings = data.get("settings") or {}
    if not isinstance(settings, dict):
        raise SchemaError("Invalid settings format")
    out_settings = [
        {"key": key, "value": settings[key]}
        for key in ("energy_categories", "time_slots", "quest_categories")
        if isinstance(settings.get(key), list) and settings[key]
    ]
    if isinstance(data.get("persistent_notes"), str):
        out_settings.append({"key": "persistent_notes", "value": data["persistent_notes"]})

    quests_section = data.get("quests") or {}
    if not isinstance(quests_section, dict):
        raise SchemaError("Invalid quests format")
    quests = []
    for period in PERIODS:
        for item in _as_list(quests_section.get(period), f"{period} quests"):
            quests.append(_legacy_quest(period, item, anchor))

    logs_section = data.get("logs") or {}
    if not isinstance(logs_section, dict):
        raise SchemaError("Invalid logs format")

    return {
        "schemaVersion": 2,
        "exportedAt": payload.get("created_at"),
        "settings": out_settings,
        "quests": quests,
        "logs": [_legacy_log(day, entry) for day, entry in sorted(logs_section.items())],
        "reminders": [_legacy_reminder(item) for item in _as_list(data.get("reminders"), "reminders")],
    }


MIGRATIONS: dict[int, Callable[[dict, date], dict]] = {1: _migrate_v1}


def _upgrade(payload: dict, today: date) -> dict:
    version = payload.get("schemaVersion", payload.get("version"))
    if isinstance(version, bool) or not isinstance(version, int):
        raise SchemaError("Backup version not found or invalid")
    if version > SCHEMA_VERSION:
        raise SchemaError(f"Backup is from a newer schema ({version} > {SCHEMA_VERSION})")
    if version < 1:
        raise SchemaError(f"Unsupported backup schema {version}")
    while version < SCHEMA_VERSION:
        payload = MIGRATIONS[version](payload, today)
        version += 1
        logger.info("Migrated backup payload to schema %s", version)
    return payload


def _check_period_key(record: dict, key: Any) -> None:
    if not isinstance(key, str):
        raise SchemaError(f"Quest {record['id']} has a malformed period key")
    try:
        period_start(record["period"], key)
    except ValidationError as exc:
        raise SchemaError(f"Quest {record['id']}: {exc}") from exc


def _validate_quest(record: dict) -> None:
    quest_id = record["id"]
    if not str(record.get("title") or "").strip():
        raise SchemaError(f"Quest {quest_id} has no title")
    if record.get("period") not in PERIODS or record.get("kind") not in _QUEST_KINDS:
        raise SchemaError(f"Quest {quest_id} has an invalid period or kind")
    if record.get("state", "pending") not in _QUEST_STATES:
        raise SchemaError(f"Quest {quest_id} has an invalid state")
    energy = record.get("energy_tag")
    if energy is not None and not isinstance(energy, str):
        if not isinstance(energy, list) or not all(isinstance(tag, str) for tag in energy):
            raise SchemaError(f"Quest {quest_id} has a malformed energy tag")
    if record["kind"] == "progressive":
        target, current = record.get("target"), record.get("current", 0)
        if isinstance(target, bool) or not isinstance(target, int) or target < 1:
            raise SchemaError(f"Quest {quest_id} has an invalid target")
        if isinstance(current, bool) or not isinstance(current, int):
            raise SchemaError(f"Quest {quest_id} has invalid progress")

    history = record.get("history", [])
    if not isinstance(history, list):
        raise SchemaError(f"Quest {quest_id} has malformed history")
    for entry in history:
        if not isinstance(entry, dict) or entry.get("outcome") not in _OUTCOMES:
            raise SchemaError(f"Quest {quest_id} has a malformed history entry")
        _check_period_key(record, entry.get("period_key"))
    if record.get("last_evaluated_period_key") is not None:
        _check_period_key(record, record["last_evaluated_period_key"])


def _validate_record(namespace: str, record: dict) -> None:
    if namespace == "quests":
        _validate_quest(record)
    elif namespace == "reminders":
        if not _TIME_RE.match(str(record.get("time_of_day") or "")):
            raise SchemaError(f"Reminder {record['id']} has an invalid time")
    elif namespace == "logs":
        try:
            date.fromisoformat(record["date"])
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"Invalid log date {record['date']!r}") from exc


def _rows_from_payload(payload: dict) -> list[tuple[str, str, Any]]:
    rows: list[tuple[str, str, Any]] = []
    for namespace in NAMESPACES:
        seen: set[str] = set()
        for item in _as_list(payload.get(namespace), namespace):
            if not isinstance(item, dict):
                raise SchemaError(f"Invalid {namespace} entry")
            if namespace == "settings":
                key, value = item.get("key"), item.get("value")
            else:
                key, value = item.get(_RECORD_KEY_FIELD[namespace]), item
            if not isinstance(key, str) or not key:
                raise SchemaError(f"{namespace} entry is missing its key")
            if key in seen:
                raise SchemaError(f"Duplicate {namespace} key {key!r}")
            seen.add(key)
            if namespace == "settings":
                try:
                    value = clean_setting(key, value)
                except ValidationError as exc:
                    raise SchemaError(f"Invalid setting {key!r}: {exc}") from exc
            else:
                _validate_record(namespace, item)
            rows.append((namespace, key, value))
    return rows
