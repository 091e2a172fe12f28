#!/usr/bin/env python3
import json
import logging
import os
import unicodedata
import urllib.parse

import anyio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from engine.core import build_settings, load_config, validate_config
from engine.downloads import DownloadTokenIssuer
from engine.formats import NoSuitableFormat
from engine.jobs import CONVERT_TARGETS, JobFailed, JobOrchestrator
from engine.media import guess_mime
from engine.paths import build_engine_paths, ensure_dir, is_within, resolve_config_path
from engine.probe import MetadataProber, ProbeFailed, canonicalize_url, is_http_url
from engine.progress import CanceledTokens, ProgressTable
from engine.runtime import ToolMissing, get_runtime_info, locate_tools
from engine.sessions import SessionManager
from engine.thumbs import fetch_thumbnail, is_valid_video_id

APP_NAME = "mixdisc"
SESSION_SWEEP_JOB_ID = "session_sweep"
TOKEN_SWEEP_JOB_ID = "token_sweep"
TOKEN_SWEEP_INTERVAL_SECONDS = 60
_SECURE_COOKIE = os.environ.get("MIXDISC_SECURE_COOKIE", "").strip().lower() in {"1", "true", "yes", "on"}


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "mixdisc.log")
    root.setLevel(logging.INFO)
    has_file = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
                break
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)


class ProbeRequest(BaseModel):
    url: str | None = None
    fast: bool = False


class AddRequest(BaseModel):
    url: str | None = None
    format_id: str | None = None
    client_token: str | None = None
    used_client: str | None = None
    quality: str | None = None


class CancelRequest(BaseModel):
    token: str | None = None


class ReorderRequest(BaseModel):
    order: list[str] | None = None


class ConvertRequest(BaseModel):
    url: str | None = None
    target: str | None = None
    format_id: str | None = None
    used_client: str | None = None


app = FastAPI(title=APP_NAME)


def _bind_session(response, session_id):
    settings = app.state.settings
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_idle_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=_SECURE_COOKIE,
    )
    response.headers[settings.session_header] = session_id


@app.middleware("http")
async def session_binding_middleware(request: Request, call_next):
    response = await call_next(request)
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        # sliding window: every request renews the cookie and echoes the id
        _bind_session(response, session_id)
    return response


async def session_context(request: Request):
    settings = app.state.settings
    cookie = request.cookies.get(settings.session_cookie_name)
    hint = request.headers.get(settings.session_header)
    try:
        ctx = await app.state.sessions.resolve(cookie, hint)
    except Exception as exc:
        logging.exception("Session resolution failed: %s", exc)
        raise HTTPException(status_code=500, detail="Session unavailable") from exc
    request.state.session_id = ctx.session_id
    async with app.state.sessions.in_flight(ctx):
        yield ctx


def _preset(name, factory):
    value = getattr(app.state, name, None)
    return value if value is not None else factory()


def _load_settings(config_path):
    if not os.path.exists(config_path):
        logging.info("No config at %s; using defaults", config_path)
        return build_settings(None)
    try:
        config = load_config(config_path)
    except json.JSONDecodeError as exc:
        logging.error("Invalid JSON in config, using defaults: %s", exc)
        return build_settings(None)
    except OSError as exc:
        logging.error("Failed to read config, using defaults: %s", exc)
        return build_settings(None)
    errors = validate_config(config)
    if errors:
        logging.error("Invalid config, using defaults: %s", errors)
        return build_settings(None)
    return build_settings(config)


@app.on_event("startup")
async def startup():
    paths = _preset("paths", build_engine_paths)
    app.state.paths = paths
    for root in paths.roots():
        ensure_dir(root)
    _setup_logging(paths.log_dir)
    try:
        config_path = resolve_config_path(os.environ.get("MIXDISC_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        config_path = resolve_config_path(None)
    app.state.config_path = config_path
    settings = _preset("settings", lambda: _load_settings(config_path))
    app.state.settings = settings

    toolchain = getattr(app.state, "toolchain", None)
    if toolchain is None:
        toolchain = await locate_tools()
    app.state.toolchain = toolchain

    app.state.issuer = DownloadTokenIssuer(
        settings.download_token_ttl_seconds,
        settings.download_token_grace_seconds,
    )
    app.state.progress = ProgressTable(settings.progress_active_ttl_seconds, settings.progress_done_ttl_seconds)
    app.state.canceled = CanceledTokens(settings.cancel_ttl_seconds)
    app.state.sessions = SessionManager(
        paths,
        settings,
        app.state.issuer,
        progress=app.state.progress,
        canceled=app.state.canceled,
    )
    await app.state.sessions.purge_orphans()
    app.state.prober = MetadataProber(settings, toolchain.ytdlp)
    app.state.jobs = JobOrchestrator(
        settings,
        toolchain,
        app.state.prober,
        app.state.issuer,
        app.state.progress,
        app.state.canceled,
    )

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        _sweep_sessions,
        trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id=SESSION_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    scheduler.add_job(
        _sweep_tokens,
        trigger=IntervalTrigger(seconds=TOKEN_SWEEP_INTERVAL_SECONDS),
        id=TOKEN_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logging.info("%s started (cap=%ss)", APP_NAME, settings.cap_seconds)


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)
        app.state.scheduler = None
    sessions = getattr(app.state, "sessions", None)
    if sessions:
        await sessions.shutdown()


async def _sweep_sessions():
    await app.state.sessions.sweep_idle()


async def _sweep_tokens():
    app.state.issuer.sweep()
    app.state.progress.purge()
    app.state.canceled.purge()


def _error(status_code, **body):
    return JSONResponse(status_code=status_code, content=body)


def _tool_error(exc):
    return _error(503, error="Missing tool", message=str(exc))


def _content_disposition(name):
    """Attachment header safe for latin-1 transport; the exact name rides in filename*."""
    name = (name or "").replace("\n", " ").replace("\r", " ").strip() or "download"
    stem, ext = os.path.splitext(name)
    ascii_stem = unicodedata.normalize("NFKD", stem).encode("ascii", "ignore").decode("ascii")
    ascii_stem = ascii_stem.replace('"', "'").replace("\\", "_").strip() or "download"
    ascii_ext = ext.encode("ascii", "ignore").decode("ascii")
    quoted = urllib.parse.quote(name, safe="")
    return f"attachment; filename=\"{ascii_stem}{ascii_ext}\"; filename*=UTF-8''{quoted}"


def _iter_file(path, chunk_size=1024 * 1024):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _iter_delivery(issuer, entry, chunk_size=1024 * 1024):
    try:
        handle = open(entry.path, "rb")
    except OSError:
        issuer.revoke(entry.token, unlink=False)
        return
    with handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk
    # only reached when the whole body was sent; disconnects close the generator at a yield
    issuer.complete(entry.token)


def _unlink_tracks(tracks):
    for track in tracks:
        track.unlink()


@app.get("/api/health")
async def api_health():
    return {"status": "ok"}


@app.get("/api/diag")
async def api_diag():
    info = get_runtime_info(app.state.toolchain)
    info["sessions"] = len(app.state.sessions)
    info["download_tokens"] = len(app.state.issuer)
    return info


@app.post("/api/probe")
async def api_probe(payload: ProbeRequest, ctx=Depends(session_context)):
    if not is_http_url(payload.url):
        return _error(400, error="Invalid URL")
    url = canonicalize_url(payload.url)
    try:
        app.state.toolchain.require("ytdlp")
        probe = await app.state.prober.probe(url, "fast" if payload.fast else "smart")
    except ToolMissing as exc:
        return _tool_error(exc)
    except ProbeFailed as exc:
        result = exc.result
        return _error(400, error="Failed to read metadata", detail=result.error, code=result.code, stderr=result.stderr)
    return probe.to_dict()


@app.post("/api/add")
async def api_add(payload: AddRequest, ctx=Depends(session_context)):
    if not is_http_url(payload.url):
        return _error(400, error="Invalid URL")
    url = canonicalize_url(payload.url)
    try:
        outcome = await app.state.jobs.add_track(
            ctx,
            url,
            client_token=payload.client_token,
            format_id=payload.format_id,
            used_client=payload.used_client,
            quality=payload.quality,
        )
    except ToolMissing as exc:
        return _tool_error(exc)
    except ProbeFailed as exc:
        result = exc.result
        return _error(
            400, error="Failed to read video metadata", detail=result.error, code=result.code, stderr=result.stderr
        )
    except JobFailed as exc:
        logging.error("[add] error: %s", exc)
        return _error(500, error="Convert failed", message=str(exc), stderr=exc.stderr)
    except Exception as exc:
        logging.exception("[add] crashed: %s", exc)
        return _error(500, error="Convert failed", message=str(exc))
    if outcome.canceled:
        return {"canceled": True, "client_token": payload.client_token}
    return {
        "item": outcome.track.to_dict(),
        **ctx.playlist.totals(),
        "client_token": payload.client_token,
    }


@app.post("/api/cancel-add", status_code=204)
async def api_cancel_add(payload: CancelRequest, ctx=Depends(session_context)):
    app.state.jobs.cancel_add(ctx, (payload.token or "").strip())
    return Response(status_code=204)


@app.get("/api/add-progress/{token}")
async def api_add_progress(token: str, ctx=Depends(session_context)):
    return app.state.jobs.add_progress(ctx, token)


@app.get("/api/list")
async def api_list(ctx=Depends(session_context)):
    return ctx.playlist.to_dict()


@app.post("/api/clear")
async def api_clear(ctx=Depends(session_context)):
    removed = ctx.playlist.clear()
    await anyio.to_thread.run_sync(_unlink_tracks, removed)
    return {"ok": True, **ctx.playlist.totals()}


@app.post("/api/remove/{track_id}")
async def api_remove(track_id: str, ctx=Depends(session_context)):
    track = ctx.playlist.remove(track_id)
    if track is None:
        return _error(404, error="not found")
    await anyio.to_thread.run_sync(track.unlink)
    return {"ok": True, **ctx.playlist.totals()}


@app.post("/api/reorder")
async def api_reorder(payload: ReorderRequest, ctx=Depends(session_context)):
    if not ctx.playlist.reorder(payload.order or []):
        return _error(400, error="Order does not match playlist")
    return {"ok": True, **ctx.playlist.totals()}


@app.get("/api/file/{track_id}")
async def api_file(track_id: str, ctx=Depends(session_context)):
    track = ctx.playlist.get(track_id)
    if track is None or not is_within(track.filepath, ctx.tracks_dir) or not os.path.isfile(track.filepath):
        raise HTTPException(status_code=404, detail="File not found")
    filename = os.path.basename(track.filepath)
    headers = {"Content-Disposition": _content_disposition(filename)}
    return StreamingResponse(_iter_file(track.filepath), media_type=guess_mime(track.filepath), headers=headers)


@app.post("/api/convert")
async def api_convert(payload: ConvertRequest, ctx=Depends(session_context)):
    if not is_http_url(payload.url):
        return _error(400, error="Invalid URL")
    target = (payload.target or "").lower()
    if target not in CONVERT_TARGETS:
        return _error(400, error="Invalid target (mp3|wav)")
    url = canonicalize_url(payload.url)
    try:
        return await app.state.jobs.convert(
            ctx, url, target, format_id=payload.format_id, used_client=payload.used_client
        )
    except ToolMissing as exc:
        return _tool_error(exc)
    except ProbeFailed as exc:
        result = exc.result
        return _error(400, error="Failed to read metadata", detail=result.error, code=result.code, stderr=result.stderr)
    except NoSuitableFormat as exc:
        return _error(400, error=str(exc), picker=exc.picker, formats=exc.formats, chosen=None, usedClient=exc.used_client)
    except JobFailed as exc:
        logging.error("[convert] error: %s", exc)
        chosen = exc.chosen
        return _error(
            500,
            error="Convert failed",
            message=str(exc),
            chosen={k: chosen.get(k) for k in ("id", "acodec", "vcodec", "asr", "abr", "ext")} if chosen else None,
            formats=exc.formats,
            usedClient=exc.used_client,
        )
    except Exception as exc:
        logging.exception("[convert] crashed: %s", exc)
        return _error(500, error="Convert failed", message=str(exc))


@app.post("/api/zip")
async def api_zip(ctx=Depends(session_context)):
    try:
        return await app.state.jobs.bundle(ctx)
    except ValueError as exc:
        return _error(400, error=str(exc))
    except ToolMissing as exc:
        return _tool_error(exc)
    except JobFailed as exc:
        logging.error("[zip] error: %s", exc)
        return _error(500, error="Zip failed", message=str(exc))


@app.get("/api/downloads/{token}")
async def api_download(token: str, request: Request):
    issuer = app.state.issuer
    entry = issuer.redeem(token)
    if entry is None:
        raise HTTPException(status_code=404, detail="Download expired or not found")
    headers = {"Content-Disposition": _content_disposition(entry.filename)}
    try:
        headers["Content-Length"] = str(os.path.getsize(entry.path))
    except OSError:
        issuer.revoke(token, unlink=False)
        raise HTTPException(status_code=404, detail="Download expired or not found")
    response = StreamingResponse(_iter_delivery(issuer, entry), media_type=guess_mime(entry.path), headers=headers)
    settings = app.state.settings
    owner_live = app.state.sessions.get(entry.session_id) is entry.session
    if owner_live and request.cookies.get(settings.session_cookie_name) != entry.session_id:
        # a link opened in a fresh browser context adopts the issuing session
        _bind_session(response, entry.session_id)
    return response


@app.get("/api/thumb/{video_id}")
async def api_thumb(video_id: str):
    if not is_valid_video_id(video_id):
        raise HTTPException(status_code=400, detail="Invalid video id")
    found = await anyio.to_thread.run_sync(fetch_thumbnail, video_id)
    if not found:
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    data, content_type = found
    return Response(content=data, media_type=content_type, headers={"Cache-Control": "public, max-age=86400"})


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("MIXDISC_HOST", "127.0.0.1")
    port = int(_env_or_default("MIXDISC_PORT", "3000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
