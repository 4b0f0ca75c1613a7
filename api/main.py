#!/usr/bin/env python3
import asyncio
import json
import logging
import mimetypes
import os
from datetime import datetime, timezone

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from fetcher.bootstrap import build_services
from fetcher.broadcaster import QueueStream, format_keepalive, format_sse
from fetcher.config import load_effective_config
from fetcher.delivery import iter_file_range, parse_range
from fetcher.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobOwnershipError,
    RangeNotSatisfiableError,
    SongNotFoundError,
)
from fetcher.naming import content_disposition
from fetcher.paths import CONFIG_DIR, DATA_DIR, DOWNLOADS_DIR, LOG_DIR, build_fetcher_paths, ensure_dir, resolve_config_path

APP_NAME = "Music Library Fetcher API"
RECONCILE_JOB_ID = "reconcile_local_flags"


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name):
    return (os.environ.get(name) or "").strip().lower() in _TRUTHY


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    log_path = os.path.abspath(os.path.join(log_dir, "fetcher.log"))
    root = logging.getLogger("")
    root.setLevel(logging.INFO)
    # Reloads must not stack a second handler on the same file.
    if any(getattr(handler, "baseFilename", None) == log_path for handler in root.handlers):
        return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


class DownloadRequest(BaseModel):
    user_id: str
    song_id: str
    folder: str | None = None


class BulkDownloadRequest(BaseModel):
    user_id: str
    song_ids: list[str]
    job_id: str | None = None


app = FastAPI(title=APP_NAME)


@app.on_event("startup")
async def startup():
    ensure_dir(DATA_DIR)
    ensure_dir(CONFIG_DIR)
    ensure_dir(LOG_DIR)
    ensure_dir(DOWNLOADS_DIR)
    _setup_logging(LOG_DIR)
    app.state.paths = build_fetcher_paths()
    try:
        app.state.config_path = resolve_config_path(os.environ.get("MUSIC_FETCHER_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        app.state.config_path = resolve_config_path(None)
    config = load_effective_config(app.state.config_path)
    app.state.config = config
    app.state.services = build_services(config, app.state.paths)
    app.state.scheduler = BackgroundScheduler(timezone="UTC")

    interval = config.get("reconcile_interval_minutes") or 0
    if interval:
        app.state.scheduler.add_job(
            _reconcile_tick,
            trigger=IntervalTrigger(minutes=interval),
            id=RECONCILE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
    app.state.scheduler.start()

    if not _env_flag("MUSIC_FETCHER_DISABLE_WORKER"):
        app.state.services.worker.start()
    else:
        logging.info("Download worker disabled by environment")


@app.on_event("shutdown")
async def shutdown():
    services = getattr(app.state, "services", None)
    if services:
        await anyio.to_thread.run_sync(lambda: services.worker.stop(timeout=30))
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)
    logging.shutdown()


def _reconcile_tick():
    services = app.state.services
    try:
        services.sync.reconcile_local_flags(app.state.paths.user_dir)
    except Exception:
        logging.exception("Local flag reconciliation failed")


def _service():
    return app.state.services.service


def _file_response(request, path, download_name, *, media_type=None):
    try:
        size = os.path.getsize(path)
    except OSError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    content_type = media_type or mimetypes.guess_type(path)[0] or "application/octet-stream"
    headers = {
        "Content-Disposition": content_disposition(download_name),
        "Accept-Ranges": "bytes",
    }
    try:
        byte_range = parse_range(request.headers.get("range"), size)
    except RangeNotSatisfiableError:
        raise HTTPException(
            status_code=416,
            detail="Requested range not satisfiable",
            headers={"Content-Range": f"bytes */{size}"},
        )
    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(iter_file_range(path), media_type=content_type, headers=headers)
    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    return StreamingResponse(
        iter_file_range(path, start, end),
        status_code=206,
        media_type=content_type,
        headers=headers,
    )


@app.post("/api/download", status_code=202)
async def api_download(payload: DownloadRequest):
    try:
        job_id = await anyio.to_thread.run_sync(
            lambda: _service().submit_single(payload.user_id, payload.song_id, payload.folder)
        )
    except SongNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"job_id": job_id}


@app.post("/api/bulk-download", status_code=202)
async def api_bulk_download(payload: BulkDownloadRequest):
    try:
        job_id, created = await anyio.to_thread.run_sync(
            lambda: _service().submit_bulk(payload.user_id, payload.song_ids, payload.job_id)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"job_id": job_id, "created": created}


@app.get("/api/jobs/{job_id}")
async def api_get_job(job_id: str, user_id: str = Query(...)):
    try:
        job = await anyio.to_thread.run_sync(lambda: _service().get_job(job_id, user_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return job.to_dict()


@app.post("/api/jobs/{job_id}/cancel")
async def api_cancel_job(job_id: str, user_id: str = Query(...)):
    try:
        cancelled = await anyio.to_thread.run_sync(lambda: _service().cancel(job_id, user_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobOwnershipError as exc:
        raise HTTPException(status_code=403, detail="Not authorized to cancel this job") from exc
    return {"job_id": job_id, "cancelled": cancelled}


@app.get("/api/active-jobs")
async def api_active_jobs(user_id: str = Query(...)):
    try:
        jobs = await anyio.to_thread.run_sync(lambda: _service().active_jobs(user_id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"jobs": jobs}


@app.get("/api/download-progress")
async def api_download_progress(request: Request, user_id: str = Query(...)):
    config = app.state.config
    broadcaster = app.state.services.broadcaster
    stream = QueueStream(asyncio.get_running_loop(), maxsize=1000)
    broadcaster.register_stream(user_id, stream)
    keepalive = config.get("sse_keepalive_seconds") or 15

    async def _events():
        try:
            yield f"retry: {config.get('sse_retry_ms') or 1000}\n\n"
            opened = {"status": "connected", "user_id": user_id, "time": datetime.now(timezone.utc).isoformat()}
            yield f"event: open\ndata: {json.dumps(opened)}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                event = await stream.next_event(keepalive)
                if event is None:
                    yield format_keepalive()
                    continue
                yield format_sse(event)
        finally:
            stream.close()
            broadcaster.unregister_stream(user_id, stream)
            logging.info("Progress stream closed for user %s", user_id)

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(_events(), media_type="text/event-stream", headers=headers)


@app.get("/api/download/{job_id}")
async def api_job_file(request: Request, job_id: str, user_id: str = Query(...)):
    service = _service()
    try:
        located = await anyio.to_thread.run_sync(lambda: service.locate_job_file(job_id, user_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not located:
        raise HTTPException(status_code=404, detail="File not found")
    path, download_name, song = located
    response = _file_response(request, path, download_name)
    await anyio.to_thread.run_sync(lambda: service.record_delivery(song.id))
    return response


@app.get("/api/bulk-download/{job_id}")
async def api_bulk_archive(request: Request, job_id: str, user_id: str = Query(...)):
    service = _service()
    try:
        located = await anyio.to_thread.run_sync(lambda: service.locate_archive(job_id, user_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not located:
        raise HTTPException(status_code=404, detail="Archive not found")
    path, download_name, meta = located
    response = _file_response(request, path, download_name, media_type="application/zip")
    await anyio.to_thread.run_sync(lambda: service.record_archive_delivery(meta))
    return response


@app.get("/api/direct-download/{song_id}")
async def api_direct_download(request: Request, song_id: str, user_id: str = Query(...)):
    service = _service()
    try:
        located = await anyio.to_thread.run_sync(lambda: service.direct_file(user_id, song_id))
    except SongNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not located:
        raise HTTPException(status_code=404, detail="File not found")
    path, download_name, song = located
    response = _file_response(request, path, download_name)
    await anyio.to_thread.run_sync(lambda: service.record_delivery(song.id))
    return response


@app.get("/api/check-local/{song_id}")
async def api_check_local(song_id: str):
    try:
        local = await anyio.to_thread.run_sync(lambda: _service().check_local(song_id))
    except SongNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"song_id": song_id, "local": local}


@app.get("/api/admin/queue")
async def api_admin_queue(limit: int = Query(50, ge=1, le=500)):
    return await anyio.to_thread.run_sync(lambda: _service().queue_overview(limit))


@app.post("/api/admin/jobs/{job_id}/retry")
async def api_admin_retry(job_id: str):
    try:
        retried = await anyio.to_thread.run_sync(lambda: _service().retry_job(job_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"job_id": job_id, "retried": retried}


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("MUSIC_FETCHER_HOST") or "127.0.0.1"
    port = int(os.environ.get("MUSIC_FETCHER_PORT") or 8000)
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
