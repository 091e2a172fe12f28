import asyncio
import json
import logging
import re
import urllib.parse
from dataclasses import dataclass, field

from engine.core import resolve_cookiefile
from engine.formats import audio_formats, choose_best_format, has_hi_res_audio_only, pick_thumbnail
from engine.process import run_process

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{6,20}$")
_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}


class ProbeFailed(RuntimeError):
    def __init__(self, result):
        super().__init__(result.error or "Failed to read metadata")
        self.result = result


@dataclass
class MetadataResult:
    ok: bool
    meta: dict | None = None
    error: str | None = None
    code: int | None = None
    stderr: str = ""
    used_client: str | None = None

    @property
    def format_count(self):
        formats = (self.meta or {}).get("formats")
        return len(formats) if isinstance(formats, list) else 0


@dataclass
class ProbeResult:
    video_id: str | None
    title: str | None
    duration: float | None
    thumbnail: str | None
    best_format: dict | None
    audio_formats: list = field(default_factory=list)
    used_client: str | None = None

    def to_dict(self):
        return {
            "id": self.video_id,
            "title": self.title,
            "duration": self.duration,
            "thumbnail": self.thumbnail,
            "bestFormat": self.best_format,
            "audioFormats": self.audio_formats,
            "usedClient": self.used_client,
        }


def is_http_url(value):
    return isinstance(value, str) and re.match(r"^https?://", value.strip(), re.IGNORECASE) is not None


def extract_video_id(url):
    """Best-effort video ID extraction from a YouTube URL."""
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return None
    host = (parsed.netloc or "").lower()
    if host.endswith("youtu.be") and parsed.path:
        candidate = parsed.path.strip("/").split("/")[0]
        return candidate if _VIDEO_ID_RE.match(candidate) else None
    if host in _YOUTUBE_HOSTS:
        qs = urllib.parse.parse_qs(parsed.query or "")
        if qs.get("v"):
            candidate = qs["v"][0]
            return candidate if _VIDEO_ID_RE.match(candidate) else None
        parts = [p for p in parsed.path.split("/") if p]
        if len(parts) >= 2 and parts[0] in {"shorts", "live", "embed"}:
            return parts[1] if _VIDEO_ID_RE.match(parts[1]) else None
    return None


def canonicalize_url(url):
    """Collapse short/mobile/music variants onto one watch URL; other hosts pass through."""
    url = (url or "").strip()
    vid = extract_video_id(url)
    if vid:
        return f"https://www.youtube.com/watch?v={vid}"
    return url


def build_probe(result):
    meta = result.meta or {}
    formats = audio_formats(meta)
    return ProbeResult(
        video_id=meta.get("id"),
        title=meta.get("title"),
        duration=meta.get("duration"),
        thumbnail=pick_thumbnail(meta),
        best_format=choose_best_format(formats),
        audio_formats=formats,
        used_client=result.used_client or None,
    )


def select_result(results):
    """Choose among settled per-client results.

    Candidate order is trust order: the first successful result exposing a
    >= 44.1 kHz audio-only format wins; otherwise the successful result with
    the most formats; otherwise the first result, so the reported error is
    deterministic.
    """
    if not results:
        return None
    for result in results:
        if result.ok and has_hi_res_audio_only(result.meta):
            return result
    successes = [r for r in results if r.ok]
    if successes:
        # max() keeps the earliest entry on ties
        return max(successes, key=lambda r: r.format_count)
    return results[0]


class MetadataProber:
    def __init__(self, settings, ytdlp, *, runner=run_process):
        self.settings = settings
        self.ytdlp = ytdlp
        self.runner = runner

    def _args(self, url, client):
        args = ["-J", "--no-playlist", "--skip-download"]
        cookies = resolve_cookiefile(self.settings)
        if cookies:
            args += ["--cookies", cookies]
        if client and client.strip():
            args += ["--extractor-args", client]
        args += self.settings.extra_args()
        args.append(url)
        return args

    async def fetch(self, url, client=""):
        """Single extractor call with one client identity."""
        result = await self.runner(self.ytdlp.command(*self._args(url, client)))
        used = client or None
        if result.code != 0:
            return MetadataResult(
                ok=False, error="yt-dlp failed", code=result.code, stderr=result.stderr, used_client=used
            )
        try:
            meta = json.loads(result.stdout)
        except ValueError:
            return MetadataResult(
                ok=False, error="JSON parse failed", code=result.code, stderr=result.stderr, used_client=used
            )
        if not isinstance(meta, dict):
            return MetadataResult(
                ok=False, error="JSON parse failed", code=result.code, stderr=result.stderr, used_client=used
            )
        return MetadataResult(ok=True, meta=meta, code=0, stderr=result.stderr, used_client=used)

    async def fetch_smart(self, url):
        if self.settings.extractor_args:
            return await self.fetch(url, self.settings.extractor_args)
        clients = list(self.settings.probe_clients)
        results = await asyncio.gather(*(self.fetch(url, client) for client in clients))
        chosen = select_result(list(results))
        logging.info(
            "Smart probe: %d clients, %d ok, chose %s",
            len(results),
            sum(1 for r in results if r.ok),
            chosen.used_client or "(default)",
        )
        return chosen

    async def fetch_for(self, url, *, fast=False, client=None):
        if client:
            return await self.fetch(url, client)
        if fast:
            return await self.fetch(url, self.settings.fast_client)
        return await self.fetch_smart(url)

    async def probe(self, url, mode="smart"):
        """Return a ProbeResult or raise ProbeFailed carrying code and stderr."""
        result = await self.fetch_for(url, fast=(mode == "fast"))
        if not result.ok:
            raise ProbeFailed(result)
        return build_probe(result)
