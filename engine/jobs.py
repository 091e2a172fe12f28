import json
import logging
import os
import secrets
import shutil

import anyio

from engine.core import remove_quietly, rmtree_quietly, resolve_cookiefile, safe_base
from engine.formats import NoSuitableFormat, audio_formats, choose_best_format
from engine.media import get_duration_seconds
from engine.playlist import Track, new_track_id
from engine.probe import MetadataResult, ProbeFailed, extract_video_id
from engine.process import run_process, stream_process
from engine.progress import parse_progress_line

CONVERT_TARGETS = {"mp3", "wav"}
BUNDLE_FILENAME = "playlist.zip"


class JobFailed(RuntimeError):
    def __init__(self, message, *, code=None, stderr="", chosen=None, formats=None, used_client=None):
        super().__init__(message)
        self.code = code
        self.stderr = stderr or ""
        self.chosen = chosen
        self.formats = formats
        self.used_client = used_client


class AddOutcome:
    __slots__ = ("canceled", "track")

    def __init__(self, canceled, track=None):
        self.canceled = canceled
        self.track = track


def _job_log(level, *, event, session, token=None, **fields):
    payload = {
        "event": event,
        "session": session,
        "token": token,
        **fields,
    }
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def recover_output_path(stdout):
    """Last stdout line naming an existing file (``--print after_move:filepath``)."""
    for line in reversed((stdout or "").splitlines()):
        line = line.strip()
        if not line or line.startswith("["):
            continue
        if os.path.isfile(line):
            return line
    return None


def _remove_prefixed(directory, prefix):
    if not os.path.isdir(directory):
        return
    for name in os.listdir(directory):
        if name.startswith(prefix):
            remove_quietly(os.path.join(directory, name))


def _stage_bundle(tracks, stage_dir):
    os.makedirs(stage_dir, exist_ok=True)
    staged = []
    for idx, track in enumerate(tracks, start=1):
        ext = os.path.splitext(track.filepath)[1] or ".mp3"
        target = os.path.join(stage_dir, f"{idx:02d} - {safe_base(track.title)}{ext}")
        try:
            os.link(track.filepath, target)
        except OSError:
            shutil.copy2(track.filepath, target)
        staged.append(target)
    return staged


class JobOrchestrator:
    """Drives add-to-playlist jobs, one-off conversions and playlist bundles.

    Add jobs follow a fixed order: progress is recorded at 0 before anything
    else; a cancel seen before the subprocess starts means it never starts; a
    cancel seen after a successful run discards the file instead of adding
    the track. Cancels never kill the subprocess. Whatever the outcome, the
    cancel mark for the token is cleared at the end.
    """

    def __init__(self, settings, toolchain, prober, issuer, progress, canceled,
                 *, runner=run_process, streamer=stream_process):
        self.settings = settings
        self.toolchain = toolchain
        self.prober = prober
        self.issuer = issuer
        self.progress = progress
        self.canceled = canceled
        self.runner = runner
        self.streamer = streamer

    # ------------------------------------------------------------------
    # Cancel + progress
    # ------------------------------------------------------------------

    def cancel_add(self, ctx, token):
        if not token:
            return False
        self.canceled.cancel(ctx.session_id, token)
        _job_log("info", event="add_cancel_requested", session=ctx.key, token=token)
        return True

    def add_progress(self, ctx, token):
        entry = self.progress.get(ctx.session_id, token) if token else None
        if entry is None:
            return {"progress": None, "done": False}
        return entry.to_dict()

    def _is_canceled(self, ctx, token):
        return self.canceled.is_canceled(ctx.session_id, token)

    # ------------------------------------------------------------------
    # Add to playlist
    # ------------------------------------------------------------------

    def _common_args(self, client):
        args = []
        if client and client.strip():
            args += ["--extractor-args", client]
        cookies = resolve_cookiefile(self.settings)
        if cookies:
            args += ["--cookies", cookies]
        args += self.settings.extra_args()
        if self.toolchain.ffmpeg.found and self.toolchain.ffmpeg.looks_like_path():
            args += ["--ffmpeg-location", self.toolchain.ffmpeg.bin]
        return args

    def _audio_quality(self, quality):
        q = (quality or "").strip().lower()
        if q in {"320", "320k"}:
            return "320K"
        return self.settings.audio_quality

    def build_add_command(self, ctx, url, job_id, *, client=None, format_id=None, quality=None):
        args = self._common_args(client)
        if format_id:
            args += ["-f", str(format_id)]
        args += [
            "-x", "--audio-format", "mp3",
            "--audio-quality", self._audio_quality(quality),
            "--no-playlist",
            "--restrict-filenames",
            "--newline",
            "--progress",
            "-o", os.path.join(ctx.tracks_dir, f"{job_id}-%(title)s-%(id)s.%(ext)s"),
            "--print", "after_move:filepath",
            url,
        ]
        return self.toolchain.ytdlp.command(*args)

    async def add_track(self, ctx, url, *, client_token=None, format_id=None, used_client=None, quality=None):
        """Run one add job; returns AddOutcome or raises ProbeFailed/JobFailed."""
        scope = ctx.session_id
        token = client_token or secrets.token_urlsafe(8)
        self.progress.start(scope, token)
        job_id = secrets.token_hex(4)
        outcome = "failed"
        try:
            if self._is_canceled(ctx, token):
                outcome = "canceled"
                _job_log("info", event="add_canceled", session=ctx.key, token=token, phase="before_start")
                return AddOutcome(canceled=True)

            self.toolchain.require("ytdlp", "ffmpeg")
            meta_result = await self.prober.fetch_for(url, client=used_client)
            if meta_result.ok and not (meta_result.meta or {}).get("duration"):
                meta_result = MetadataResult(
                    ok=False,
                    error="Missing duration",
                    code=meta_result.code,
                    stderr=meta_result.stderr,
                    used_client=meta_result.used_client,
                )
            if not meta_result.ok:
                raise ProbeFailed(meta_result)
            meta = meta_result.meta

            if self._is_canceled(ctx, token):
                outcome = "canceled"
                _job_log("info", event="add_canceled", session=ctx.key, token=token, phase="before_start")
                return AddOutcome(canceled=True)

            client = used_client or meta_result.used_client or ""
            command = self.build_add_command(
                ctx, url, job_id, client=client, format_id=format_id, quality=quality
            )
            _job_log("info", event="add_started", session=ctx.key, token=token, job=job_id,
                     client=client or None, format_id=format_id)

            def _on_line(line):
                percent = parse_progress_line(line)
                if percent is not None:
                    self.progress.update(scope, token, percent)

            result = await self.streamer(command, _on_line)
            if result.code != 0:
                raise JobFailed(f"yt-dlp exit {result.code}", code=result.code, stderr=result.stderr)
            filepath = recover_output_path(result.stdout)
            if not filepath:
                raise JobFailed("Encoded file not found", code=result.code, stderr=result.stderr)

            if self._is_canceled(ctx, token):
                remove_quietly(filepath)
                outcome = "canceled"
                _job_log("info", event="add_canceled", session=ctx.key, token=token, phase="after_finish")
                return AddOutcome(canceled=True)

            size = os.stat(filepath).st_size
            duration = await anyio.to_thread.run_sync(get_duration_seconds, filepath)
            track = Track(
                id=new_track_id(),
                title=meta.get("title") or os.path.basename(filepath),
                duration=duration or float(meta.get("duration") or 0),
                filepath=filepath,
                size_bytes=size,
                video_id=meta.get("id") or extract_video_id(url),
                thumbnail=meta.get("thumbnail"),
            )
            ctx.playlist.add(track)
            outcome = "added"
            _job_log("info", event="add_finished", session=ctx.key, token=token, job=job_id,
                     track=track.id, duration=track.duration, size=size)
            return AddOutcome(canceled=False, track=track)
        except (ProbeFailed, JobFailed) as exc:
            _job_log("warning", event="add_failed", session=ctx.key, token=token, job=job_id, error=str(exc))
            raise
        finally:
            if outcome != "added":
                _remove_prefixed(ctx.tracks_dir, f"{job_id}-")
            if outcome == "added":
                self.progress.finish(scope, token, 100, "added")
            elif outcome == "canceled":
                entry = self.progress.get(scope, token)
                self.progress.finish(scope, token, entry.percent if entry else 0, "canceled")
            else:
                self.progress.finish(scope, token, 0, "failed")
            self.canceled.clear(scope, token)

    # ------------------------------------------------------------------
    # One-off conversion
    # ------------------------------------------------------------------

    async def _download_source(self, ctx, url, format_id, client, job_id):
        args = []
        if format_id:
            args += ["-f", str(format_id)]
        args += self._common_args(client)
        args += [
            "--no-playlist",
            "--restrict-filenames",
            "-o", os.path.join(ctx.scratch_dir, f"{job_id}-%(title)s-%(id)s.%(ext)s"),
            "--print", "after_move:filepath",
            url,
        ]
        result = await self.runner(self.toolchain.ytdlp.command(*args))
        if result.code != 0:
            raise JobFailed(f"yt-dlp download failed: {result.stderr}", code=result.code, stderr=result.stderr)
        source = recover_output_path(result.stdout)
        if not source:
            raise JobFailed("Downloaded file not found", code=result.code, stderr=result.stderr)
        return source

    async def _transcode(self, ctx, source, target, job_id):
        out = os.path.join(ctx.scratch_dir, f"{job_id}-out.{target}")
        if target == "mp3":
            args = ["-y", "-i", source, "-vn", "-c:a", "libmp3lame", "-q:a", "0", out]
        else:
            args = ["-y", "-i", source, "-vn", "-ar", "44100", "-ac", "2", "-sample_fmt", "s16", out]
        result = await self.runner(self.toolchain.ffmpeg.command(*args))
        if result.code != 0 or not os.path.isfile(out):
            remove_quietly(out)
            raise JobFailed(f"ffmpeg {target} failed: {result.stderr}", code=result.code, stderr=result.stderr)
        return out

    def publish(self, ctx, path, filename):
        """Move a finished file into the session's downloads dir and issue a token."""
        ext = os.path.splitext(path)[1]
        dest = os.path.join(ctx.downloads_dir, f"{secrets.token_hex(6)}{ext}")
        os.makedirs(ctx.downloads_dir, exist_ok=True)
        os.replace(path, dest)
        size = os.stat(dest).st_size
        token = self.issuer.issue(ctx, dest, filename)
        return {
            "ok": True,
            "href": f"/api/downloads/{token}",
            "filename": filename,
            "sizeBytes": size,
        }

    async def convert(self, ctx, url, target, *, format_id=None, used_client=None):
        target = (target or "").lower()
        if target not in CONVERT_TARGETS:
            raise ValueError("Invalid target (mp3|wav)")
        self.toolchain.require("ytdlp", "ffmpeg")

        meta_result = await self.prober.fetch_for(url)
        if not meta_result.ok:
            raise ProbeFailed(meta_result)
        meta = meta_result.meta
        client = used_client or meta_result.used_client or ""
        candidates = audio_formats(meta)

        if format_id:
            chosen = next((f for f in candidates if str(f.get("id")) == str(format_id)), None)
        else:
            chosen = choose_best_format(candidates)
            if chosen is None:
                raise NoSuitableFormat(candidates, used_client=client or None)
            format_id = chosen["id"]

        job_id = secrets.token_hex(4)
        _job_log("info", event="convert_started", session=ctx.key, target=target,
                 format_id=format_id, client=client or "(default)", url=url)
        source = None
        try:
            source = await self._download_source(ctx, url, format_id, client, job_id)
            out = await self._transcode(ctx, source, target, job_id)
            payload = self.publish(ctx, out, f"{safe_base(meta.get('title'))}.{target}")
        except JobFailed as exc:
            exc.chosen = chosen
            exc.formats = candidates
            exc.used_client = client or None
            _job_log("warning", event="convert_failed", session=ctx.key, error=str(exc))
            raise
        finally:
            _remove_prefixed(ctx.scratch_dir, f"{job_id}-")
        _job_log("info", event="convert_finished", session=ctx.key, filename=payload["filename"],
                 size=payload["sizeBytes"])
        return payload

    # ------------------------------------------------------------------
    # Playlist bundle
    # ------------------------------------------------------------------

    async def bundle(self, ctx):
        tracks = ctx.playlist.items
        if not tracks:
            raise ValueError("Playlist is empty")
        self.toolchain.require("archiver")
        bundle_id = secrets.token_hex(4)
        stage_dir = os.path.join(ctx.scratch_dir, f"bundle-{bundle_id}")
        archive = os.path.join(ctx.scratch_dir, f"bundle-{bundle_id}.zip")
        try:
            try:
                staged = await anyio.to_thread.run_sync(_stage_bundle, tracks, stage_dir)
            except OSError as exc:
                raise JobFailed(f"Could not stage tracks: {exc}") from exc
            result = await self.runner(self.toolchain.archiver.command("-j", "-q", archive, *staged))
            if result.code != 0 or not os.path.isfile(archive):
                remove_quietly(archive)
                raise JobFailed(f"zip failed: {result.stderr}", code=result.code, stderr=result.stderr)
            payload = self.publish(ctx, archive, BUNDLE_FILENAME)
        finally:
            await anyio.to_thread.run_sync(rmtree_quietly, stage_dir)
        _job_log("info", event="bundle_finished", session=ctx.key, tracks=len(tracks),
                 size=payload["sizeBytes"])
        return payload
