from __future__ import annotations

import os
from datetime import date, datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from studysync.caldav_client import CalDAVCalendarAdapter, RemoteCalendarAdapter
from studysync.config_manager import ConfigManager
from studysync.models import Session, SessionValidationError, parse_date, view_window
from studysync.replanner import Replanner
from studysync.scheduler import TRIGGERS, SyncScheduler
from studysync.session_store import ORIGIN_LOCAL, SessionStore
from studysync.state_store import StateStore
from studysync.sync_engine import FOLLOW_UP_TRIGGER, SyncEngine, resolve_zone


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SessionUpsertRequest(BaseModel):
    course_id: str | None = None
    start_date: str
    start_time: str
    end_date: str | None = None
    end_time: str
    attended: bool = False
    completion_percentage: int = Field(default=0, ge=0, le=100)
    notes: str = ""
    recurrence: dict[str, Any] | None = None
    original_title: str = ""


class InteractionRequest(BaseModel):
    active: bool


class SyncTriggerRequest(BaseModel):
    trigger: str = "manual"


class MissedSessionRequest(BaseModel):
    replan: bool | None = None


class AppContext:
    def __init__(
        self,
        config_path: str,
        state_path: str,
        adapter: RemoteCalendarAdapter | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.session_store = SessionStore()
        self.session_store.load(self.state_store.load_sessions())
        self.adapter = adapter or CalDAVCalendarAdapter()
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.session_store, self.adapter)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)
        self.replanner = Replanner(self.session_store, now=self.local_now)
        self.session_store.add_listener(self._on_sessions_changed)

    def local_now(self) -> datetime:
        zone = resolve_zone(self.config_manager.load().calendar.timezone)
        return datetime.now(zone).replace(tzinfo=None)

    def _on_sessions_changed(self, origin: str, _session_ids: list[str]) -> None:
        if origin == ORIGIN_LOCAL:
            self.scheduler.request("edit")

    def persist_sessions(self) -> None:
        self.state_store.save_sessions(self.session_store.list())


def _parse_window_bound(value: str | None, field_name: str) -> date | None:
    try:
        return parse_date(value, field_name)
    except SessionValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("STUDYSYNC_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("STUDYSYNC_STATE_PATH", "data/state.db")
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="StudySync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.scheduler.stop()
        app.state.context.persist_sessions()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            app.state.context.config_manager.apply_client_update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        config_manager = app.state.context.config_manager
        return {"config": config_manager.masked(), "meta": config_manager.secret_meta()}

    @app.post("/api/disconnect")
    def disconnect() -> dict[str, Any]:
        app.state.context.config_manager.invalidate_credential()
        return {"message": "calendar disconnected", "config": app.state.context.config_manager.masked()}

    @app.get("/api/calendars")
    async def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        if not config.caldav.is_complete():
            raise HTTPException(status_code=400, detail="CalDAV config missing base_url/username")
        outcome = await app.state.context.adapter.list_calendars(config.caldav)
        if not outcome.ok:
            raise HTTPException(status_code=400, detail=f"{outcome.status.value}: {outcome.error}")
        output = []
        for cal in outcome.value or []:
            item = cal.to_dict()
            item["is_managed"] = cal.calendar_id == config.calendar.calendar_id
            output.append(item)
        return {"calendars": output}

    # Session routes are async so they run on the event loop next to sync passes.
    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, Any]:
        return {"sessions": [item.to_dict() for item in app.state.context.session_store.list()]}

    @app.put("/api/sessions/{session_id}")
    async def put_session(session_id: str, request: SessionUpsertRequest) -> dict[str, Any]:
        try:
            payload = {**request.model_dump(), "id": session_id}
            if payload["recurrence"] and not payload["recurrence"].get("series_start"):
                payload["recurrence"] = {**payload["recurrence"], "series_start": payload["start_date"]}
            session = Session.from_dict(payload)
            stored = app.state.context.session_store.upsert(session, origin=ORIGIN_LOCAL)
        except SessionValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"session": stored.to_dict()}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        removed = app.state.context.session_store.remove(session_id, origin=ORIGIN_LOCAL)
        if removed is None:
            raise HTTPException(status_code=404, detail="session not found")
        return {"message": "session deleted", "session_id": session_id}

    @app.post("/api/sessions/{session_id}/interaction")
    async def session_interaction(session_id: str, request: InteractionRequest) -> dict[str, Any]:
        store = app.state.context.session_store
        if session_id not in store:
            raise HTTPException(status_code=404, detail="session not found")
        if request.active:
            store.begin_interaction(session_id)
        else:
            store.end_interaction(session_id)
        return {"session_id": session_id, "interacting": store.is_interacting(session_id)}

    @app.post("/api/sessions/{session_id}/missed")
    async def missed_session(session_id: str, request: MissedSessionRequest) -> dict[str, Any]:
        confirm = request.replan
        if confirm is None:
            confirm = app.state.context.config_manager.load().replan.default_confirm
        try:
            outcome = app.state.context.replanner.handle_missed_session(session_id, bool(confirm))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="session not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"outcome": outcome.to_dict()}

    @app.get("/api/instances")
    async def list_instances(start: str | None = None, end: str | None = None) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        default_start, default_end = view_window(app.state.context.local_now().date(), config.sync.window_days)
        window_start = _parse_window_bound(start, "start") or default_start
        window_end = _parse_window_bound(end, "end") or default_end
        if window_end < window_start:
            raise HTTPException(status_code=422, detail="end must not be before start")
        instances = app.state.context.session_store.instances_between(window_start, window_end)
        return {
            "start": window_start.isoformat(),
            "end": window_end.isoformat(),
            "instances": [item.to_dict() for item in instances],
        }

    @app.post("/api/sync/run")
    async def run_sync() -> dict[str, Any]:
        result = await app.state.context.sync_engine.run_sync_pass("manual")
        if result.follow_up_required:
            app.state.context.scheduler.request(FOLLOW_UP_TRIGGER)
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/sync/trigger")
    async def trigger_sync(request: SyncTriggerRequest) -> dict[str, Any]:
        if request.trigger not in TRIGGERS:
            raise HTTPException(status_code=422, detail=f"unknown trigger {request.trigger!r}")
        queued = app.state.context.scheduler.request(request.trigger)
        return {"message": "sync triggered", "queued": queued}

    @app.get("/api/sync/status")
    async def sync_status() -> dict[str, Any]:
        context = app.state.context
        last_result = context.scheduler.last_result
        return {
            "running": context.sync_engine.is_running,
            "scheduler_running": context.scheduler.running,
            "cooldown_remaining": context.sync_engine.cooldown_remaining(),
            "last_success_at": context.state_store.get_meta("last_success_at"),
            "last_result": last_result.to_dict() if last_result is not None else None,
        }

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
