from __future__ import annotations

import os
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from familyhub.caldav_client import CalDAVTransport
from familyhub.config_manager import ConfigManager, configure_logging
from familyhub.dispatcher import SyncDispatcher
from familyhub.models import CalendarEventData
from familyhub.state_store import StateStore
from familyhub.sync_engine import SyncCoordinator


SERIES_FIELDS = ("title", "description", "time", "end_time", "all_day", "color")
REQUIRED_FIELDS = ("title", "date", "all_day")
CONNECTION_SETTINGS = ("server_url", "preferred_calendar_name")


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AccountCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    app_password: str = Field(min_length=1, max_length=256)


class AccountUpdateRequest(BaseModel):
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)
    app_password: Optional[str] = Field(default=None, min_length=1, max_length=256)


class EventCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    date: str
    time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    all_day: bool = False
    color: Optional[str] = None
    sync_account_ids: list[int] = Field(default_factory=list)


class RecurringEventCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    dates: list[str] = Field(min_length=1)
    time: Optional[str] = None
    end_time: Optional[str] = None
    all_day: bool = False
    color: Optional[str] = None
    sync_account_ids: list[int] = Field(default_factory=list)


class EventUpdateRequest(BaseModel):
    """Partial update: only fields present in the request body are applied."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    all_day: Optional[bool] = None
    color: Optional[str] = None
    sync_account_ids: Optional[list[int]] = None


class AppContext:
    def __init__(self, config_path: str, state_path: str, sync_workers: int | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        configure_logging(config)
        self.state_store = StateStore(state_path)
        self.transport = CalDAVTransport(config.caldav)
        self.coordinator = SyncCoordinator(self.state_store, self.transport, config)
        workers = config.sync.max_workers if sync_workers is None else sync_workers
        self.dispatcher = SyncDispatcher(max_workers=workers)


def _validated_event(payload: dict[str, Any]) -> CalendarEventData:
    try:
        return CalendarEventData.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _event_changes(request: EventUpdateRequest) -> dict[str, Any]:
    changes = request.model_dump(exclude_unset=True)
    cleared = [key for key in REQUIRED_FIELDS if key in changes and changes[key] is None]
    if cleared:
        raise HTTPException(status_code=400, detail=f"fields cannot be null: {cleared}")
    return changes


def _check_accounts(context: AppContext, account_ids: list[int]) -> None:
    known = {account.id for account in context.state_store.list_accounts()}
    unknown = sorted(set(account_ids) - known)
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown sync accounts: {unknown}")


def create_app() -> FastAPI:
    config_path = os.getenv("FAMILYHUB_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FAMILYHUB_STATE_PATH", "data/familyhub.db")
    raw_workers = os.getenv("FAMILYHUB_SYNC_WORKERS", "").strip()
    sync_workers = int(raw_workers) if raw_workers else None
    context = AppContext(config_path=config_path, state_path=state_path, sync_workers=sync_workers)

    app = FastAPI(title="Family Hub Calendar Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.dispatcher.shutdown(wait=True)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        ctx = app.state.context
        previous = ctx.transport.config
        updated = ctx.config_manager.update(request.payload)
        ctx.transport.config = updated.caldav
        ctx.coordinator.config = updated
        if any(getattr(previous, key) != getattr(updated.caldav, key) for key in CONNECTION_SETTINGS):
            # Collections found under the old server or calendar name no longer apply.
            ctx.coordinator.reset_connections()
        return {"message": "config updated", "config": updated.to_dict()}

    # Sync accounts

    @app.get("/api/sync-accounts")
    def list_sync_accounts() -> dict[str, Any]:
        accounts = app.state.context.state_store.list_accounts()
        return {"accounts": [account.to_public_dict() for account in accounts]}

    @app.post("/api/sync-accounts", status_code=201)
    def create_sync_account(request: AccountCreateRequest) -> dict[str, Any]:
        account = app.state.context.state_store.create_account(
            email=request.email,
            app_password=request.app_password,
        )
        return account.to_public_dict()

    @app.patch("/api/sync-accounts/{account_id}")
    def update_sync_account(account_id: int, request: AccountUpdateRequest) -> dict[str, Any]:
        ctx = app.state.context
        account = ctx.state_store.update_account(
            account_id,
            email=request.email,
            app_password=request.app_password,
        )
        if account is None:
            raise HTTPException(status_code=404, detail="account not found")
        ctx.coordinator.invalidate_account(account_id)
        return account.to_public_dict()

    @app.delete("/api/sync-accounts/{account_id}", status_code=204)
    def delete_sync_account(account_id: int) -> Response:
        ctx = app.state.context
        account = ctx.state_store.get_account(account_id)
        if account is None:
            raise HTTPException(status_code=404, detail="account not found")
        # The cascade drops mapping rows, so capture them first.
        mappings = ctx.state_store.list_mappings_by_account(account_id)
        ctx.state_store.delete_account(account_id)
        ctx.coordinator.invalidate_account(account_id)
        if mappings:
            ctx.dispatcher.submit(f"account-removed:{account_id}", ctx.coordinator.account_removed, account, mappings)
        return Response(status_code=204)

    @app.post("/api/sync-accounts/{account_id}/test")
    def test_sync_account(account_id: int) -> dict[str, Any]:
        ctx = app.state.context
        account = ctx.state_store.get_account(account_id)
        if account is None:
            raise HTTPException(status_code=404, detail="account not found")
        return ctx.coordinator.test_connection(account).to_dict()

    # Events

    @app.post("/api/events", status_code=201)
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        ctx = app.state.context
        payload = request.model_dump()
        account_ids = payload.pop("sync_account_ids")
        _check_accounts(ctx, account_ids)
        event = ctx.state_store.create_event(_validated_event(payload))
        if account_ids:
            ctx.dispatcher.submit(f"create:{event.id}", ctx.coordinator.sync_create, event, account_ids)
        return event.to_dict()

    @app.post("/api/events/recurring", status_code=201)
    def create_recurring_events(request: RecurringEventCreateRequest) -> dict[str, Any]:
        ctx = app.state.context
        payload = request.model_dump()
        account_ids = payload.pop("sync_account_ids")
        dates = payload.pop("dates")
        _check_accounts(ctx, account_ids)
        drafts = [_validated_event({**payload, "date": value}) for value in dates]
        events = ctx.state_store.create_series(drafts)
        if account_ids:
            ctx.dispatcher.submit(
                f"create-series:{events[0].recurring_group_id}",
                ctx.coordinator.sync_create_series,
                events,
                account_ids,
            )
        return {
            "recurring_group_id": events[0].recurring_group_id,
            "events": [event.to_dict() for event in events],
        }

    @app.patch("/api/events/series/{group_id}")
    def update_series(group_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        ctx = app.state.context
        changes = _event_changes(request)
        account_ids = changes.pop("sync_account_ids", None)
        events = ctx.state_store.list_events_in_group(group_id)
        if not events:
            raise HTTPException(status_code=404, detail="series not found")
        if account_ids is not None:
            _check_accounts(ctx, account_ids)
        series_changes = {key: value for key, value in changes.items() if key in SERIES_FIELDS}
        for event in events:
            _validated_event({**event.to_dict(), **series_changes})
        for event in events:
            ctx.state_store.update_event(event.id, series_changes)
        updated = ctx.state_store.list_events_in_group(group_id)
        if account_ids is None:
            ctx.dispatcher.submit(f"update-series:{group_id}", ctx.coordinator.sync_update_series, updated)
        else:
            ctx.dispatcher.submit(f"diff-series:{group_id}", ctx.coordinator.sync_diff_series, updated, account_ids)
        return {"recurring_group_id": group_id, "events": [event.to_dict() for event in updated]}

    @app.delete("/api/events/series/{group_id}", status_code=204)
    def delete_series(group_id: str) -> Response:
        ctx = app.state.context
        mappings = ctx.state_store.list_mappings_by_group(group_id)
        if ctx.state_store.delete_group(group_id) == 0:
            raise HTTPException(status_code=404, detail="series not found")
        if mappings:
            ctx.dispatcher.submit(f"delete-series:{group_id}", ctx.coordinator.sync_delete_series, mappings)
        return Response(status_code=204)

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: int, request: EventUpdateRequest) -> dict[str, Any]:
        ctx = app.state.context
        current = ctx.state_store.get_event(event_id)
        if current is None:
            raise HTTPException(status_code=404, detail="event not found")
        changes = _event_changes(request)
        account_ids = changes.pop("sync_account_ids", None)
        if account_ids is not None:
            _check_accounts(ctx, account_ids)
        _validated_event({**current.to_dict(), **changes})
        event = ctx.state_store.update_event(event_id, changes)
        if account_ids is None:
            ctx.dispatcher.submit(f"update:{event_id}", ctx.coordinator.sync_update, event)
        else:
            ctx.dispatcher.submit(f"diff:{event_id}", ctx.coordinator.sync_diff, event, account_ids)
        return event.to_dict()

    @app.delete("/api/events/{event_id}", status_code=204)
    def delete_event(event_id: int) -> Response:
        ctx = app.state.context
        mappings = ctx.state_store.list_mappings_by_event(event_id)
        if not ctx.state_store.delete_event(event_id):
            raise HTTPException(status_code=404, detail="event not found")
        if mappings:
            ctx.dispatcher.submit(f"delete:{event_id}", ctx.coordinator.sync_delete, event_id, mappings)
        return Response(status_code=204)

    @app.get("/api/events/{event_id}/sync")
    def event_sync_state(event_id: int) -> dict[str, Any]:
        ctx = app.state.context
        if ctx.state_store.get_event(event_id) is None:
            raise HTTPException(status_code=404, detail="event not found")
        rows = ctx.state_store.list_mappings_by_event(event_id)
        return {"event_id": event_id, "accounts": [row.to_dict() for row in rows]}

    @app.post("/api/sync/retry-pending")
    def retry_pending() -> dict[str, str]:
        ctx = app.state.context
        ctx.dispatcher.submit("retry-pending", ctx.coordinator.retry_pending)
        return {"message": "retry scheduled"}

    return app


app = create_app()
