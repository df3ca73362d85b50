from __future__ import annotations

from datetime import date, datetime

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse, Response

from lifetracker.engine import LifeTracker
from lifetracker.errors import (
    InvalidStateError,
    LifeTrackerError,
    NotFoundError,
    SchemaError,
    StorageError,
    ValidationError,
)

ERROR_STATUS = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (SchemaError, 400),
    (StorageError, 503),
)


def _tracker(request: Request) -> LifeTracker:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        tracker = LifeTracker()
        request.app.state.tracker = tracker
    return tracker


def create_app(tracker: LifeTracker | None = None) -> FastAPI:
    app = FastAPI(title="Life Tracker")
    app.state.tracker = tracker

    @app.exception_handler(LifeTrackerError)
    async def engine_error(request: Request, exc: LifeTrackerError) -> JSONResponse:
        status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        return JSONResponse({"error": type(exc).__name__, "detail": str(exc)}, status_code=status)

    @app.get("/api/quests")
    def list_quests(
        request: Request,
        period: str | None = None,
        time_slot: str | None = None,
        energy_tag: str | None = None,
        energy_level: str | None = None,
        category: str | None = None,
        state: str | None = None,
        needs_migration: bool | None = None,
    ) -> JSONResponse:
        filters = {
            "period": period,
            "time_slot": time_slot,
            "energy_tag": energy_tag,
            "energy_level": energy_level,
            "category": category,
            "state": state,
            "needs_migration": needs_migration,
        }
        return JSONResponse(_tracker(request).list_quests(filters))

    @app.post("/api/quests")
    def create_quest(
        request: Request,
        title: str = Form(...),
        period: str = Form("daily"),
        kind: str = Form("binary"),
        target: int | None = Form(None),
        unit: str | None = Form(None),
        time_slot: str | None = Form(None),
        energy_tag: str | None = Form(None),
        category: str | None = Form(None),
    ) -> JSONResponse:
        quest = _tracker(request).create_quest(
            title,
            period=period,
            kind=kind,
            target=target,
            unit=unit,
            time_slot=time_slot,
            energy_tag=energy_tag,
            category=category,
        )
        return JSONResponse(quest, status_code=201)

    @app.get("/api/quests/{quest_id}")
    def get_quest(request: Request, quest_id: str) -> JSONResponse:
        return JSONResponse(_tracker(request).get_quest(quest_id))

    @app.delete("/api/quests/{quest_id}")
    def delete_quest(request: Request, quest_id: str) -> Response:
        _tracker(request).delete_quest(quest_id)
        return Response(status_code=204)

    @app.post("/api/quests/{quest_id}/complete")
    def complete_quest(request: Request, quest_id: str) -> JSONResponse:
        return JSONResponse(_tracker(request).complete_quest(quest_id))

    @app.post("/api/quests/{quest_id}/advance")
    def advance_quest(request: Request, quest_id: str, delta: int = Form(1)) -> JSONResponse:
        return JSONResponse(_tracker(request).advance_quest(quest_id, delta))

    @app.post("/api/quests/{quest_id}/skip")
    def skip_quest(request: Request, quest_id: str) -> JSONResponse:
        return JSONResponse(_tracker(request).skip_quest(quest_id))

    @app.post("/api/quests/{quest_id}/undo")
    def undo_quest(request: Request, quest_id: str) -> JSONResponse:
        return JSONResponse(_tracker(request).undo_quest(quest_id))

    @app.get("/api/reminders")
    def list_reminders(request: Request) -> JSONResponse:
        return JSONResponse(_tracker(request).list_reminders())

    @app.post("/api/reminders")
    def create_reminder(
        request: Request,
        title: str = Form(...),
        time_of_day: str = Form(...),
        repeat_days: str = Form(""),
        start_date: date | None = Form(None),
    ) -> JSONResponse:
        reminder = _tracker(request).create_reminder(title, time_of_day, repeat_days, start_date)
        return JSONResponse(reminder, status_code=201)

    @app.post("/api/reminders/{reminder_id}/toggle")
    def toggle_reminder(request: Request, reminder_id: str) -> JSONResponse:
        return JSONResponse(_tracker(request).toggle_reminder(reminder_id))

    @app.delete("/api/reminders/{reminder_id}")
    def delete_reminder(request: Request, reminder_id: str) -> Response:
        _tracker(request).delete_reminder(reminder_id)
        return Response(status_code=204)

    @app.post("/api/reminders/check")
    def check_due(request: Request, now: datetime | None = Form(None)) -> JSONResponse:
        return JSONResponse(_tracker(request).check_due_reminders(now))

    @app.post("/api/mood")
    def log_mood(
        request: Request,
        energy: str = Form(...),
        notes: str | None = Form(None),
        hour: int | None = Form(None),
    ) -> JSONResponse:
        return JSONResponse(_tracker(request).log_mood_entry(energy, notes=notes, hour=hour))

    @app.post("/api/reflection")
    def reflection(request: Request, text: str = Form(...)) -> JSONResponse:
        return JSONResponse(_tracker(request).save_reflection(text))

    @app.get("/api/insights")
    def insights(request: Request, start: date | None = None, end: date | None = None) -> JSONResponse:
        return JSONResponse(_tracker(request).get_insights(start, end))

    @app.get("/api/settings")
    def get_settings(request: Request) -> JSONResponse:
        return JSONResponse(_tracker(request).get_preferences())

    @app.post("/api/settings")
    async def save_settings(request: Request) -> JSONResponse:
        try:
            changes = await request.json()
        except ValueError as exc:
            raise ValidationError("Settings body must be JSON") from exc
        if not isinstance(changes, dict):
            raise ValidationError("Settings must be a JSON object")
        return JSONResponse(_tracker(request).update_preferences(**changes))

    @app.post("/api/flush")
    def flush(request: Request) -> JSONResponse:
        backup = _tracker(request).flush_all()
        return JSONResponse({"flushed": True, "backup": str(backup) if backup else None})

    @app.post("/api/suspend")
    def suspend(request: Request) -> JSONResponse:
        backup = _tracker(request).on_suspend()
        return JSONResponse({"flushed": True, "backup": str(backup) if backup else None})

    @app.post("/api/resume")
    def resume(request: Request) -> JSONResponse:
        return JSONResponse(_tracker(request).on_resume())

    @app.get("/export")
    def export_backup(request: Request) -> Response:
        return Response(_tracker(request).export_backup(), media_type="application/json")

    @app.post("/import")
    def import_backup(request: Request, payload: str = Form(...)) -> JSONResponse:
        return JSONResponse(_tracker(request).import_backup(payload))

    return app


app = create_app()
