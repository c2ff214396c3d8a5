#!/usr/bin/env python3
import base64
import binascii
import functools
import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone

import anyio
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from keeper.config import load_settings
from keeper.errors import AdapterFailure, NotEnabled, NotFound, PersistenceFailure
from keeper.log import setup_logging
from keeper.paths import build_keeper_paths, ensure_dir
from keeper.service import build_service

APP_NAME = "yt-keeper API"
STATUS_SCHEMA_VERSION = 1
_BASIC_AUTH_USER = os.environ.get("YT_KEEPER_BASIC_AUTH_USER")
_BASIC_AUTH_PASS = os.environ.get("YT_KEEPER_BASIC_AUTH_PASS")
_BASIC_AUTH_ENABLED = bool(_BASIC_AUTH_USER and _BASIC_AUTH_PASS)
_TRUST_PROXY = os.environ.get("YT_KEEPER_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


def _check_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return False
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    if ":" not in decoded:
        return False
    user, password = decoded.split(":", 1)
    return hmac.compare_digest(user, _BASIC_AUTH_USER) and hmac.compare_digest(password, _BASIC_AUTH_PASS)


class ChannelCreate(BaseModel):
    url: str
    flat_mode: bool | None = None
    auto_add_new_playlists: bool | None = None
    rescrape_interval_days: int | None = None
    enabled: bool | None = None
    profile_id: int | None = None
    download_metadata: bool | None = None
    embed_metadata: bool | None = None
    download_thumbnail: bool | None = None
    embed_thumbnail: bool | None = None
    download_subtitles: bool | None = None
    embed_subtitles: bool | None = None
    auto_subtitles: bool | None = None
    subtitle_languages: str | None = None
    sponsorblock_enabled: bool | None = None
    sponsorblock_mode: str | None = None
    sponsorblock_categories: str | None = None
    yt_dlp_options: str | None = None


class ChannelUpdate(ChannelCreate):
    url: str | None = None


class PlaylistUpdate(BaseModel):
    enabled: bool


class ProfileCreate(BaseModel):
    name: str
    output_template: str | None = None
    format_selection: str | None = None
    merge_output_format: str | None = None
    additional_args: str | None = None


class ProfileUpdate(ProfileCreate):
    name: str | None = None


class VideoDownloadRequest(BaseModel):
    url: str
    channel_id: int | None = None
    force: bool = False


class SchedulerStartRequest(BaseModel):
    interval_days: float | None = None


async def startup(app):
    paths = build_keeper_paths()
    ensure_dir(paths.data_dir)
    ensure_dir(paths.config_dir)
    ensure_dir(paths.log_dir)
    ensure_dir(paths.downloads_dir)
    settings = load_settings(os.environ.get("YT_KEEPER_CONFIG"), paths=paths)
    setup_logging(settings.log_dir, settings.log_level)
    service = build_service(settings)
    app.state.service = service
    service.manager.start()
    if settings.scheduler_autostart:
        service.scheduler.start(settings.scheduler_interval_days)


async def shutdown(app):
    service = getattr(app.state, "service", None)
    if service is None:
        return
    cancelled = await anyio.to_thread.run_sync(service.close)
    if cancelled:
        logging.warning("Shutdown cancelled %s in-flight download(s)", len(cancelled))


@asynccontextmanager
async def lifespan(app):
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


app = FastAPI(title=APP_NAME, lifespan=lifespan)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED:
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    auth_header = request.headers.get("authorization")
    if not _check_basic_auth(auth_header):
        return PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    return await call_next(request)


def _service():
    return app.state.service


async def _call(fn, *args, **kwargs):
    try:
        return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except NotEnabled as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except AdapterFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except PersistenceFailure as exc:
        logging.error("Store failure: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _set_fields(payload):
    return {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}


def _or_404(item, kind, identifier):
    if item is None:
        raise HTTPException(status_code=404, detail=f"{kind} not found: {identifier}")
    return asdict(item)


@app.get("/api/status")
async def api_status():
    service = _service()
    counts = await _call(service.store.status_counts)
    return {
        "schema_version": STATUS_SCHEMA_VERSION,
        "server_time": datetime.now(timezone.utc).isoformat(),
        "queue": service.manager.status(),
        "scheduler": service.scheduler.status(),
        "videos": counts,
    }


# ------------------------------------------------------------------
# Channels
# ------------------------------------------------------------------


@app.get("/api/channels")
async def api_list_channels():
    channels = await _call(_service().store.list_channels)
    return [asdict(channel) for channel in channels]


@app.post("/api/channels", status_code=201)
async def api_create_channel(payload: ChannelCreate):
    service = _service()
    fields = _set_fields(payload)
    url = fields.pop("url")
    channel = await _call(service.store.create_channel, url, **fields)
    task = service.submit_refresh(channel.id)
    return {"channel": asdict(channel), "task_id": task.id}


@app.get("/api/channels/{channel_id}")
async def api_get_channel(channel_id: int):
    channel = await _call(_service().store.get_channel, channel_id)
    return _or_404(channel, "channel", channel_id)


@app.put("/api/channels/{channel_id}")
async def api_update_channel(channel_id: int, payload: ChannelUpdate):
    channel = await _call(_service().store.update_channel, channel_id, **_set_fields(payload))
    return asdict(channel)


@app.delete("/api/channels/{channel_id}")
async def api_delete_channel(channel_id: int):
    await _call(_service().store.delete_channel, channel_id)
    return {"status": "deleted"}


@app.post("/api/channels/{channel_id}/enumerate", status_code=202)
async def api_enumerate_channel(channel_id: int):
    service = _service()
    channel = await _call(service.store.get_channel, channel_id)
    _or_404(channel, "channel", channel_id)
    task = service.submit_refresh(channel_id)
    return {"task_id": task.id, "status": task.status}


@app.get("/api/channels/{channel_id}/playlists")
async def api_channel_playlists(channel_id: int):
    playlists = await _call(_service().store.list_playlists, channel_id)
    return [asdict(playlist) for playlist in playlists]


@app.get("/api/channels/{channel_id}/videos")
async def api_channel_videos(
    channel_id: int,
    status: str | None = Query(None, max_length=20),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    videos = await _call(_service().store.list_videos_by_channel, channel_id, status=status, limit=limit, offset=offset)
    return [asdict(video) for video in videos]


@app.post("/api/channels/{channel_id}/download", status_code=202)
async def api_download_channel(channel_id: int):
    return await _call(_service().manager.enqueue_channel, channel_id)


# ------------------------------------------------------------------
# Playlists
# ------------------------------------------------------------------


@app.get("/api/playlists/{playlist_id}")
async def api_get_playlist(playlist_id: int):
    playlist = await _call(_service().store.get_playlist, playlist_id)
    return _or_404(playlist, "playlist", playlist_id)


@app.put("/api/playlists/{playlist_id}")
async def api_update_playlist(playlist_id: int, payload: PlaylistUpdate):
    playlist = await _call(_service().store.set_playlist_enabled, playlist_id, payload.enabled)
    return asdict(playlist)


@app.get("/api/playlists/{playlist_id}/videos")
async def api_playlist_videos(playlist_id: int):
    videos = await _call(_service().store.list_videos_by_playlist, playlist_id)
    return [asdict(video) for video in videos]


@app.post("/api/playlists/{playlist_id}/download", status_code=202)
async def api_download_playlist(playlist_id: int):
    queued = await _call(_service().manager.enqueue_playlist, playlist_id)
    return {"queued": queued}


# ------------------------------------------------------------------
# Profiles
# ------------------------------------------------------------------


@app.get("/api/profiles")
async def api_list_profiles():
    profiles = await _call(_service().store.list_profiles)
    return [asdict(profile) for profile in profiles]


@app.post("/api/profiles", status_code=201)
async def api_create_profile(payload: ProfileCreate):
    fields = _set_fields(payload)
    name = fields.pop("name")
    profile = await _call(_service().store.create_profile, name, **fields)
    return asdict(profile)


@app.get("/api/profiles/{profile_id}")
async def api_get_profile(profile_id: int):
    profile = await _call(_service().store.get_profile, profile_id)
    return _or_404(profile, "profile", profile_id)


@app.put("/api/profiles/{profile_id}")
async def api_update_profile(profile_id: int, payload: ProfileUpdate):
    profile = await _call(_service().store.update_profile, profile_id, **payload.model_dump(exclude_unset=True))
    return asdict(profile)


@app.delete("/api/profiles/{profile_id}")
async def api_delete_profile(profile_id: int):
    await _call(_service().store.delete_profile, profile_id)
    return {"status": "deleted"}


# ------------------------------------------------------------------
# Videos / downloads
# ------------------------------------------------------------------


@app.get("/api/videos")
async def api_videos_by_status(
    status: str = Query("completed", max_length=20),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    videos = await _call(_service().store.list_videos_by_status, status, limit=limit, offset=offset)
    return [asdict(video) for video in videos]


@app.get("/api/videos/{video_id}")
async def api_get_video(video_id: str):
    video = await _call(_service().store.get_video, video_id)
    return _or_404(video, "video", video_id)


@app.post("/api/videos/download", status_code=202)
async def api_download_video(payload: VideoDownloadRequest):
    return await _call(
        _service().manager.enqueue_single_video,
        payload.url,
        payload.channel_id,
        force=payload.force,
    )


@app.post("/api/videos/{video_id}/redownload", status_code=202)
async def api_redownload_video(video_id: str):
    queued = await _call(_service().manager.redownload, video_id)
    if not queued:
        raise HTTPException(status_code=409, detail=f"video is already downloading or queued: {video_id}")
    return {"video_id": video_id, "queued": True}


@app.get("/api/downloads/status")
async def api_download_status():
    return _service().manager.status()


@app.post("/api/downloads/retry-failed")
async def api_retry_failed():
    retried = await _call(_service().manager.retry_failed)
    return {"retried_count": retried}


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------


@app.get("/api/scheduler")
async def api_scheduler_status():
    return _service().scheduler.status()


@app.post("/api/scheduler/start")
async def api_scheduler_start(payload: SchedulerStartRequest | None = None):
    interval = payload.interval_days if payload else None
    return await _call(_service().scheduler.start, interval)


@app.post("/api/scheduler/stop")
async def api_scheduler_stop():
    return _service().scheduler.stop()


@app.post("/api/scheduler/trigger/{channel_id}", status_code=202)
async def api_scheduler_trigger(channel_id: int):
    return await _call(_service().scheduler.trigger_channel, channel_id)


# ------------------------------------------------------------------
# Background tasks
# ------------------------------------------------------------------


@app.get("/api/tasks/{task_id}")
async def api_get_task(task_id: str):
    task = _service().tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}")
    return task.to_dict()


@app.post("/api/tasks/{task_id}/cancel")
async def api_cancel_task(task_id: str):
    task = _service().tasks.cancel(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}")
    return task.to_dict()
