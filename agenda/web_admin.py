from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agenda.config_manager import ConfigManager
from agenda.conflict_resolver import ConflictResolver
from agenda.connection import ConnectionService
from agenda.errors import (
    AuthExpired,
    ConflictNotFound,
    EventNotFound,
    InvalidChoice,
    NotConnected,
    SyncError,
    SyncInProgress,
    ValidationFailed,
)
from agenda.event_service import EventService
from agenda.event_store import EventStore
from agenda.models import Clock, utc_now
from agenda.state_store import StateStore
from agenda.sync_engine import SyncEngine, UserLocks


logger = logging.getLogger(__name__)

STATUS_BY_ERROR: dict[type[SyncError], int] = {
    ValidationFailed: 400,
    InvalidChoice: 400,
    AuthExpired: 401,
    NotConnected: 404,
    EventNotFound: 404,
    ConflictNotFound: 409,
    SyncInProgress: 409,
}


def status_for(error: SyncError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 500


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class UserRequest(_CamelModel):
    user_id: str = Field(default="", alias="userId")


class ResolveRequest(_CamelModel):
    event_id: str = Field(default="", alias="eventId")
    resolution: str = ""


class OAuthCallbackRequest(_CamelModel):
    code: str = ""
    user_id: str = Field(default="", alias="userId")


class EventCreateRequest(_CamelModel):
    user_id: str = Field(default="", alias="userId")
    title: str = ""
    description: str | None = None
    type: str | None = None
    start_date: str = Field(default="", alias="startDate")
    end_date: str = Field(default="", alias="endDate")


class EventUpdateRequest(_CamelModel):
    title: str | None = None
    description: str | None = None
    type: str | None = None
    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")


EVENT_FIELD_NAMES = {
    "title": "title",
    "description": "description",
    "type": "category",
    "start_date": "start_at",
    "end_date": "end_at",
}


class AppContext:
    def __init__(self, config_path: str, state_path: str, clock: Clock | None = None) -> None:
        clock = clock or utc_now
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path, clock=clock)
        self.event_store = EventStore(state_path, clock=clock)
        self.locks = UserLocks()
        self.sync_engine = SyncEngine(
            self.config_manager, self.state_store, self.event_store, locks=self.locks, clock=clock
        )
        self.conflict_resolver = ConflictResolver(
            self.config_manager, self.state_store, self.event_store, self.locks, clock=clock
        )
        self.connection = ConnectionService(self.config_manager, self.state_store, clock=clock)
        self.event_service = EventService(
            self.config_manager, self.state_store, self.event_store, self.locks, clock=clock
        )


def _require_user(user_id: str) -> str:
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValidationFailed("userId is required")
    return user_id


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("AGENDA_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("AGENDA_STATE_PATH", "data/agenda.db")
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Agenda Sync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(SyncError)
    def _sync_error(_request: Request, exc: SyncError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("Request failed with %s: %s", type(exc).__name__, exc)
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {location} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=400, content={"error": message})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/api/events/sync")
    def sync_events(request: UserRequest) -> dict[str, Any]:
        user_id = _require_user(request.user_id)
        result = app.state.context.sync_engine.run_once(user_id, trigger="manual")
        if result.error is not None:
            raise result.error
        return {"success": True, **result.summary.to_dict()}

    @app.post("/api/events/resolve")
    def resolve_conflict(request: ResolveRequest) -> dict[str, Any]:
        if not request.event_id.strip() or not request.resolution.strip():
            raise ValidationFailed("eventId and resolution are required")
        result = app.state.context.conflict_resolver.resolve(request.event_id, request.resolution)
        if result.error is not None:
            if (
                isinstance(result.error, ConflictNotFound)
                and app.state.context.event_store.get_event(request.event_id) is None
            ):
                raise EventNotFound(str(result.error))
            raise result.error
        return {
            "success": True,
            "event": result.event.to_dict() if result.event is not None else None,
            "deleted": result.deleted,
        }

    @app.get("/api/google/oauth/url")
    def oauth_url(state: str | None = None) -> dict[str, str]:
        return {"authUrl": app.state.context.connection.auth_url(state=state)}

    @app.post("/api/google/oauth/callback")
    def oauth_callback(request: OAuthCallbackRequest, background_tasks: BackgroundTasks) -> dict[str, Any]:
        user_id = _require_user(request.user_id)
        if not request.code.strip():
            raise ValidationFailed("code is required")
        authorization = app.state.context.connection.complete_authorization(user_id, request.code)
        if app.state.context.config_manager.load().sync.sync_on_connect:
            background_tasks.add_task(app.state.context.sync_engine.run_once, user_id, "connect")
        return {
            "success": True,
            "accessToken": authorization.grant.access_token,
            "expiresIn": authorization.grant.expires_in,
        }

    @app.delete("/api/google/disconnect")
    def disconnect(
        request: UserRequest | None = None,
        user_id: str = Query(default="", alias="userId"),
    ) -> dict[str, Any]:
        user_id = _require_user(request.user_id if request is not None and request.user_id else user_id)
        revoked = app.state.context.connection.disconnect(user_id)
        return {
            "success": True,
            "message": "Google Calendar disconnected",
            "revoked": revoked,
        }

    @app.get("/api/google/status")
    def google_status(user_id: str = Query(default="", alias="userId")) -> dict[str, Any]:
        return app.state.context.connection.status(_require_user(user_id))

    @app.get("/api/events")
    def list_events(user_id: str = Query(default="", alias="userId")) -> dict[str, Any]:
        events = app.state.context.event_service.list_events(_require_user(user_id))
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> JSONResponse:
        event = app.state.context.event_service.create_event(
            user_id=_require_user(request.user_id),
            title=request.title,
            description=request.description,
            category=request.type,
            start_at=request.start_date,
            end_at=request.end_date,
        )
        return JSONResponse(status_code=201, content={"success": True, "event": event.to_dict()})

    @app.get("/api/events/{event_id}")
    def get_event(event_id: str) -> dict[str, Any]:
        return {"event": app.state.context.event_service.get_event(event_id).to_dict()}

    @app.put("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        changes = {
            EVENT_FIELD_NAMES[name]: getattr(request, name)
            for name in request.model_fields_set
            if name in EVENT_FIELD_NAMES
        }
        event = app.state.context.event_service.update_event(event_id, **changes)
        return {"success": True, "event": event.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, Any]:
        app.state.context.event_service.delete_event(event_id)
        return {"success": True, "message": "Event deleted"}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, user_id: str | None = Query(default=None, alias="userId")) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, user_id=user_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
