from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from tandem.config_manager import ConfigManager
from tandem.errors import (
    ConflictError,
    NotConnectedError,
    NotFoundError,
    SyncCancelledError,
    SyncFailedError,
    TandemError,
    ValidationError,
)
from tandem.mirror import MirrorDispatcher
from tandem.scheduler import SyncScheduler
from tandem.services import GroupService, LabelService, ScheduleService, UserService
from tandem.store import Store
from tandem.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class UserCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    display_name: str = ""


class CredentialsRequest(BaseModel):
    remote_account: str = ""
    access_token: str = Field(min_length=1)


class LabelRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    color: str | None = None
    description: str | None = None


class LabelOrderItem(BaseModel):
    label_id: str
    order: int


class LabelReorderRequest(BaseModel):
    orders: list[LabelOrderItem] = Field(default_factory=list)


class GroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""


class GroupUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    status: str | None = None


class GroupFileRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=500)


class ScheduleRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    start: datetime
    end: datetime | None = None
    description: str = ""
    all_day: bool = False
    color: str | None = None
    location: str = ""
    label_ids: list[str] | None = None
    group_id: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.store = Store(state_path)
        self.dispatcher = MirrorDispatcher()
        self.sync_engine = SyncEngine(self.config_manager, self.store, dispatcher=self.dispatcher)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)
        self.users = UserService(self.store)
        self.labels = LabelService(self.store, self.dispatcher)
        self.groups = GroupService(self.store, self.dispatcher)
        self.schedules = ScheduleService(self.store)


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValidationError, NotConnectedError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SyncCancelledError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except SyncFailedError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except TandemError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def create_app() -> FastAPI:
    config_path = os.getenv("TANDEM_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TANDEM_STATE_PATH", "data/tandem.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Tandem", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().sync.scheduler_enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        with _http_errors():
            return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        with _http_errors():
            updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    # users

    @app.post("/api/users", status_code=201)
    def create_user(request: UserCreateRequest) -> dict[str, Any]:
        with _http_errors():
            user = app.state.context.users.create(request.email, request.display_name)
        return user.to_dict()

    @app.get("/api/users/{user_id}")
    def get_user(user_id: str) -> dict[str, Any]:
        with _http_errors():
            return app.state.context.users.get(user_id).to_dict()

    @app.delete("/api/users/{user_id}")
    def delete_user(user_id: str) -> dict[str, str]:
        with _http_errors():
            app.state.context.users.delete(user_id)
        return {"message": "user deleted"}

    @app.put("/api/users/{user_id}/credentials")
    def put_credentials(user_id: str, request: CredentialsRequest) -> dict[str, Any]:
        with _http_errors():
            user = app.state.context.users.set_credentials(user_id, request.remote_account, request.access_token)
        return user.to_dict()

    @app.delete("/api/users/{user_id}/credentials")
    def delete_credentials(user_id: str) -> dict[str, Any]:
        with _http_errors():
            user = app.state.context.users.clear_credentials(user_id)
        return user.to_dict()

    # labels

    @app.get("/api/users/{user_id}/labels")
    def list_labels(user_id: str) -> dict[str, Any]:
        with _http_errors():
            labels = app.state.context.labels.list(user_id)
        return {"labels": [label.to_dict() for label in labels]}

    @app.post("/api/users/{user_id}/labels", status_code=201)
    def create_label(user_id: str, request: LabelRequest) -> dict[str, Any]:
        with _http_errors():
            label = app.state.context.labels.create(
                user_id, request.name, color=request.color, description=request.description or ""
            )
        return label.to_dict()

    @app.put("/api/users/{user_id}/labels/order")
    def reorder_labels(user_id: str, request: LabelReorderRequest) -> dict[str, Any]:
        with _http_errors():
            labels = app.state.context.labels.reorder(
                user_id, [(item.label_id, item.order) for item in request.orders]
            )
        return {"labels": [label.to_dict() for label in labels]}

    @app.put("/api/users/{user_id}/labels/{label_id}")
    def update_label(user_id: str, label_id: str, request: LabelRequest) -> dict[str, Any]:
        with _http_errors():
            label = app.state.context.labels.update(
                user_id, label_id, request.name, color=request.color, description=request.description
            )
        return label.to_dict()

    @app.delete("/api/users/{user_id}/labels/{label_id}")
    def delete_label(user_id: str, label_id: str) -> dict[str, str]:
        with _http_errors():
            app.state.context.labels.delete(user_id, label_id)
        return {"message": "label deleted"}

    # groups

    @app.get("/api/users/{user_id}/groups")
    def list_groups(user_id: str, include_deleted: bool = False) -> dict[str, Any]:
        with _http_errors():
            groups = app.state.context.groups.list(user_id, include_deleted=include_deleted)
        return {"groups": [group.to_dict() for group in groups]}

    @app.post("/api/users/{user_id}/groups", status_code=201)
    def create_group(user_id: str, request: GroupCreateRequest) -> dict[str, Any]:
        with _http_errors():
            group = app.state.context.groups.create(user_id, request.name, request.description)
        return group.to_dict()

    @app.get("/api/users/{user_id}/groups/{group_id}")
    def get_group(user_id: str, group_id: str) -> dict[str, Any]:
        with _http_errors():
            return app.state.context.groups.get(user_id, group_id).to_dict()

    @app.put("/api/users/{user_id}/groups/{group_id}")
    def update_group(user_id: str, group_id: str, request: GroupUpdateRequest) -> dict[str, Any]:
        with _http_errors():
            group = app.state.context.groups.update(
                user_id,
                group_id,
                name=request.name,
                description=request.description,
                status=request.status,
            )
        return group.to_dict()

    @app.delete("/api/users/{user_id}/groups/{group_id}")
    def delete_group(user_id: str, group_id: str) -> dict[str, Any]:
        with _http_errors():
            group = app.state.context.groups.delete(user_id, group_id)
        return {"message": "group deleted", "group": group.to_dict()}

    @app.get("/api/users/{user_id}/groups/{group_id}/files")
    def list_group_files(user_id: str, group_id: str) -> dict[str, Any]:
        with _http_errors():
            files = app.state.context.groups.list_files(user_id, group_id)
        return {"files": [item.to_dict() for item in files]}

    @app.post("/api/users/{user_id}/groups/{group_id}/files", status_code=201)
    def add_group_file(user_id: str, group_id: str, request: GroupFileRequest) -> dict[str, Any]:
        with _http_errors():
            group_file = app.state.context.groups.add_file(user_id, group_id, request.file_name)
        return group_file.to_dict()

    @app.delete("/api/users/{user_id}/groups/{group_id}/files/{file_id}")
    def remove_group_file(user_id: str, group_id: str, file_id: str) -> dict[str, str]:
        with _http_errors():
            app.state.context.groups.remove_file(user_id, group_id, file_id)
        return {"message": "file removed"}

    @app.get("/api/users/{user_id}/groups/{group_id}/schedules")
    def list_group_schedules(user_id: str, group_id: str) -> dict[str, Any]:
        with _http_errors():
            schedules = app.state.context.groups.list_schedules(user_id, group_id)
        return {"schedules": [schedule.to_dict() for schedule in schedules]}

    # schedules and sync

    @app.get("/api/users/{user_id}/schedules")
    def list_schedules(user_id: str) -> dict[str, Any]:
        with _http_errors():
            schedules = app.state.context.schedules.list(user_id)
        return {"schedules": [schedule.to_dict() for schedule in schedules]}

    @app.post("/api/users/{user_id}/schedules", status_code=201)
    def create_schedule(user_id: str, request: ScheduleRequest) -> dict[str, Any]:
        with _http_errors():
            schedule = app.state.context.schedules.create(user_id, **request.model_dump())
        return schedule.to_dict()

    @app.get("/api/users/{user_id}/schedules/range")
    def list_schedules_in_range(user_id: str, start: datetime, end: datetime) -> dict[str, Any]:
        with _http_errors():
            schedules = app.state.context.schedules.list_range(user_id, start, end)
        return {"schedules": [schedule.to_dict() for schedule in schedules]}

    @app.get("/api/users/{user_id}/schedules/upcoming")
    def list_upcoming_schedules(user_id: str) -> dict[str, Any]:
        with _http_errors():
            schedules = app.state.context.schedules.upcoming(user_id)
        return {"schedules": [schedule.to_dict() for schedule in schedules]}

    @app.get("/api/users/{user_id}/schedules/{schedule_id}")
    def get_schedule(user_id: str, schedule_id: str) -> dict[str, Any]:
        with _http_errors():
            return app.state.context.schedules.get(user_id, schedule_id).to_dict()

    @app.put("/api/users/{user_id}/schedules/{schedule_id}")
    def update_schedule(user_id: str, schedule_id: str, request: ScheduleRequest) -> dict[str, Any]:
        with _http_errors():
            schedule = app.state.context.schedules.update(user_id, schedule_id, **request.model_dump())
        return schedule.to_dict()

    @app.delete("/api/users/{user_id}/schedules/{schedule_id}")
    def delete_schedule(user_id: str, schedule_id: str) -> dict[str, str]:
        with _http_errors():
            app.state.context.schedules.delete(user_id, schedule_id)
        return {"message": "schedule deleted"}

    @app.post("/api/users/{user_id}/sync")
    def sync_user(user_id: str) -> dict[str, Any]:
        with _http_errors():
            result = app.state.context.sync_engine.sync_user(user_id, trigger="manual")
        return {**result.counts.to_dict(), "message": result.message}

    @app.get("/api/users/{user_id}/sync/status")
    def sync_status(user_id: str) -> dict[str, Any]:
        with _http_errors():
            return app.state.context.sync_engine.status(user_id)

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        scheduler = app.state.context.scheduler
        if not scheduler.running:
            raise HTTPException(status_code=409, detail="scheduler is not running")
        scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, user_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(limit=limit, user_id=user_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, user_id: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.store.recent_audit_events(limit=limit, user_id=user_id)}

    return app


app = create_app()
