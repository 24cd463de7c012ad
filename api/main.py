#!/usr/bin/env python3
"""HTTP API for vidl, served by ``vidl web`` (or ``uvicorn api.main:app``)."""

import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from vidl.backup import export_snapshot, import_snapshot
from vidl.config import load_config
from vidl.downloader import build_downloader
from vidl.errors import (
    ConfigError,
    InvariantViolation,
    NotFound,
    RemoteError,
    StoreBusy,
    StoreError,
    VidlError,
)
from vidl.job_queue import DownloadWorkerPool
from vidl.logs import setup_logging
from vidl.models import Service
from vidl.paths import build_paths
from vidl.status import parse_statuses
from vidl.store import Store
from vidl.update import UpdateEngine

APP_NAME = "vidl API"
STATUS_SCHEMA_VERSION = 1
UPDATE_JOB_ID = "channel_update"
MAX_PAGE_SIZE = 500

_ERROR_STATUS = (
    (NotFound, 404),
    (InvariantViolation, 409),
    (RemoteError, 502),
    (StoreBusy, 503),
    (StoreError, 500),
    (ConfigError, 500),
)


class AddChannelRequest(BaseModel):
    name: str
    service: str = Service.YOUTUBE.value


class UpdateRequest(BaseModel):
    selector: str | None = None
    force: bool = False
    full: bool = False


def _parse_status_filter(value):
    try:
        return parse_statuses(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _video_page(store, *, channel_id=None, status=None, name=None, page=1, page_size=50):
    statuses = _parse_status_filter(status)
    videos = store.list_videos(
        channel_id=channel_id,
        statuses=statuses,
        name_contains=name,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    total = store.count_videos(channel_id=channel_id, statuses=statuses, name_contains=name)
    return {
        "videos": [video.as_dict() for video in videos],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def create_app(
    *,
    paths=None,
    config=None,
    store=None,
    downloader=None,
    source_factory=None,
    start_workers=True,
    schedule_updates=True,
):
    """Build the FastAPI app. Store, workers and scheduler are created on startup."""
    app = FastAPI(title=APP_NAME)

    @app.exception_handler(VidlError)
    async def vidl_error_handler(request: Request, exc):
        for error_type, status_code in _ERROR_STATUS:
            if isinstance(exc, error_type):
                break
        else:
            status_code = 500
        if status_code >= 500:
            logging.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.on_event("startup")
    async def startup():
        app.state.paths = paths or build_paths()
        if config is None:
            setup_logging(app.state.paths.log_dir)
        app.state.config = config or load_config(app.state.paths.config_path)
        app.state.store = store or Store(
            app.state.paths.db_path,
            busy_timeout=app.state.config["store_busy_timeout_seconds"],
        )
        if source_factory is not None:
            app.state.engine = UpdateEngine(
                app.state.store,
                source_factory,
                freshness_minutes=app.state.config["update_freshness_minutes"],
                crawl_guard_minutes=app.state.config["crawl_guard_minutes"],
                channel_timeout_seconds=app.state.config["channel_timeout_seconds"],
            )
        else:
            app.state.engine = UpdateEngine.from_config(app.state.store, app.state.config)
        app.state.update_lock = threading.Lock()
        app.state.last_update = None
        app.state.last_update_at = None
        app.state.stop_event = threading.Event()
        app.state.pool = DownloadWorkerPool.from_config(
            app.state.store,
            downloader or build_downloader(app.state.config, app.state.paths),
            app.state.config,
            stop_event=app.state.stop_event,
        )
        if start_workers:
            app.state.pool.start()
        else:
            app.state.pool.recover_interrupted()
        app.state.scheduler = BackgroundScheduler(timezone="UTC")
        app.state.scheduler.start()
        interval = app.state.config["update_interval_minutes"]
        if schedule_updates and interval:
            app.state.scheduler.add_job(
                _scheduled_update,
                trigger=IntervalTrigger(
                    minutes=interval,
                    start_date=datetime.now(timezone.utc) + timedelta(minutes=interval),
                ),
                id=UPDATE_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
            )

    @app.on_event("shutdown")
    async def shutdown():
        scheduler = app.state.scheduler
        if scheduler:
            scheduler.shutdown(wait=False)
        app.state.pool.stop()

    def _run_update(selector=None, *, force=False, full=False):
        if not app.state.update_lock.acquire(blocking=False):
            return None
        try:
            report = app.state.engine.update(selector, force=force, full=full)
            app.state.last_update = report.as_dict()
            app.state.last_update_at = datetime.now(timezone.utc).isoformat()
            return report
        finally:
            app.state.update_lock.release()

    def _scheduled_update():
        try:
            if _run_update() is None:
                logging.info("Scheduled update skipped; update already running")
        except StoreError:
            logging.exception("Scheduled update failed")

    def _next_update_iso():
        job = app.state.scheduler.get_job(UPDATE_JOB_ID)
        if not job or not job.next_run_time:
            return None
        return job.next_run_time.astimezone(timezone.utc).isoformat()

    @app.get("/api/status")
    def api_status():
        store_ = app.state.store
        return {
            "schema_version": STATUS_SCHEMA_VERSION,
            "server_time": datetime.now(timezone.utc).isoformat(),
            "db_schema_version": store_.schema_version(),
            "channels": len(store_.list_channels()),
            "videos": store_.status_counts(),
            "workers": {
                "count": app.state.pool.num_workers,
                "running": app.state.pool.running,
                "completed": app.state.pool.completed,
                "failed": app.state.pool.failed,
            },
            "update": {
                "running": app.state.update_lock.locked(),
                "last_run": app.state.last_update_at,
                "last_report": app.state.last_update,
                "next_run": _next_update_iso(),
            },
        }

    @app.get("/api/channels")
    def api_channels():
        return {"channels": [channel.as_dict() for channel in app.state.store.list_channels()]}

    @app.post("/api/channels", status_code=201)
    def api_add_channel(payload: AddChannelRequest):
        try:
            service = Service.parse(payload.service)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        channel = app.state.engine.add_channel(payload.name, service)
        return channel.as_dict()

    @app.delete("/api/channels/{channel_id}")
    def api_remove_channel(channel_id: int):
        removed = app.state.store.remove_channel(channel_id)
        return {"removed": channel_id, "videos_removed": removed}

    @app.get("/api/channels/{channel_id}/videos")
    def api_channel_videos(
        channel_id: int,
        status: str | None = None,
        name: str | None = None,
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    ):
        channel = app.state.store.get_channel(channel_id)
        result = _video_page(
            app.state.store,
            channel_id=channel_id,
            status=status,
            name=name,
            page=page,
            page_size=page_size,
        )
        result["channel"] = channel.as_dict()
        return result

    @app.get("/api/videos")
    def api_videos(
        channel: int | None = None,
        status: str | None = None,
        name: str | None = None,
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    ):
        return _video_page(
            app.state.store,
            channel_id=channel,
            status=status,
            name=name,
            page=page,
            page_size=page_size,
        )

    @app.get("/api/videos/{video_id}")
    def api_video(video_id: int):
        return app.state.store.get_video(video_id).as_dict()

    @app.post("/api/videos/{video_id}/download", status_code=202)
    def api_download(video_id: int):
        result = app.state.pool.enqueue([video_id])
        video = app.state.store.get_video(video_id)
        return {"queued": bool(result.queued), "video": video.as_dict()}

    @app.post("/api/videos/{video_id}/ignore")
    def api_ignore(video_id: int):
        return app.state.store.ignore(video_id).as_dict()

    @app.post("/api/videos/{video_id}/unignore")
    def api_unignore(video_id: int):
        return app.state.store.unignore(video_id).as_dict()

    @app.post("/api/update")
    def api_update(payload: UpdateRequest | None = None):
        payload = payload or UpdateRequest()
        report = _run_update(payload.selector, force=payload.force, full=payload.full)
        if report is None:
            raise HTTPException(status_code=409, detail="Update already in progress")
        return report.as_dict()

    @app.get("/api/backup")
    def api_export_backup():
        return export_snapshot(app.state.store)

    @app.post("/api/backup")
    def api_import_backup(payload=Body(...), replace: bool = False):
        summary = import_snapshot(app.state.store, payload, replace=replace)
        app.state.pool.wake()
        return summary.as_dict()

    return app


app = create_app()
