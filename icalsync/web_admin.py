from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from icalsync.config_manager import ConfigManager
from icalsync.models import APP_VERSION, EVENT_TAG, INDEX_NAMESPACE
from icalsync.notifier import RecordingNotifier
from icalsync.scheduler import WatchScheduler
from icalsync.state_store import StateStore
from icalsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ClearCacheRequest(BaseModel):
    confirm: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str, start_watcher: bool = True) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.notifier = RecordingNotifier()
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, notifier=self.notifier)
        self.scheduler = WatchScheduler(self.sync_engine, self.config_manager)
        self.start_watcher = start_watcher


def select_events(
    records: list[dict[str, Any]],
    *,
    source_name: str | None = None,
    start_from: str | None = None,
    start_to: str | None = None,
    text: str | None = None,
    order_by: str = "start",
    descending: bool = False,
    limit: int = 500,
) -> list[dict[str, Any]]:
    selected = []
    needle = (text or "").casefold()
    for record in records:
        if source_name is not None and record.get("source_name") != source_name:
            continue
        start = record.get("start")
        if start_from and (start is None or str(start) < start_from):
            continue
        if start_to and (start is None or str(start) > start_to):
            continue
        if needle:
            haystack = " ".join(str(record.get(key) or "") for key in ("summary", "description", "location"))
            if needle not in haystack.casefold():
                continue
        selected.append(record)
    # Missing values sort last; everything else compares as text.
    present = [item for item in selected if item.get(order_by) is not None]
    missing = [item for item in selected if item.get(order_by) is None]
    present.sort(key=lambda item: str(item[order_by]), reverse=descending)
    return (present + missing)[: max(1, limit)]


def create_app() -> FastAPI:
    config_path = os.getenv("ICALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ICALSYNC_STATE_PATH", "data/state.db")
    start_watcher = os.getenv("ICALSYNC_DISABLE_WATCHER", "").strip().lower() not in {"1", "true", "yes"}
    context = AppContext(config_path=config_path, state_path=state_path, start_watcher=start_watcher)

    app = FastAPI(title="iCalendar Sync", version=APP_VERSION)
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.start_watcher:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if "sources" in request.payload and not isinstance(request.payload["sources"], list):
            raise HTTPException(status_code=400, detail="sources must be a list")
        try:
            app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if app.state.context.start_watcher:
            # Newly added watched sources need a running watcher.
            app.state.context.scheduler.start()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, Any]:
        report = app.state.context.sync_engine.run_once()
        return {"message": report.message, "result": report.to_dict()}

    @app.post("/api/sync/force")
    def force_sync() -> dict[str, Any]:
        report = app.state.context.sync_engine.force_sync()
        return {"message": report.message, "result": report.to_dict()}

    @app.post("/api/cache/clear")
    def clear_cache(request: ClearCacheRequest) -> dict[str, Any]:
        if not request.confirm:
            raise HTTPException(status_code=400, detail="confirmation required")
        cleared = app.state.context.sync_engine.clear_cache(confirm=lambda _prompt: True)
        if not cleared:
            raise HTTPException(status_code=500, detail="failed to clear calendar cache")
        return {"message": "Calendar index and cache cleared"}

    @app.get("/api/version")
    def version() -> dict[str, str]:
        return {"version": APP_VERSION, "message": app.state.context.sync_engine.show_version()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/notifications")
    def notifications(limit: int = 20) -> dict[str, Any]:
        return {"notifications": app.state.context.notifier.recent(limit=limit)}

    @app.get("/api/events")
    def list_events(
        source_name: str | None = None,
        start_from: str | None = None,
        start_to: str | None = None,
        q: str | None = None,
        order_by: str = "start",
        descending: bool = False,
        limit: int = 500,
    ) -> dict[str, Any]:
        items = app.state.context.state_store.query_objects((INDEX_NAMESPACE, EVENT_TAG))
        events = select_events(
            [item["value"] for item in items],
            source_name=source_name,
            start_from=start_from,
            start_to=start_to,
            text=q,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )
        return {"events": events, "count": len(events)}

    return app
