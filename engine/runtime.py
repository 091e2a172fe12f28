import logging
import os
import platform
import sys
from dataclasses import dataclass

from yt_dlp.version import __version__ as YT_DLP_VERSION

from engine.process import run_process

APP_VERSION = "1.0.0"
_VERSION_FLAGS = (("--version",), ("-version",), ("-v",), ("-V",), ())


class ToolMissing(RuntimeError):
    def __init__(self, name, hint):
        super().__init__(f"{name} not found. {hint}")
        self.name = name


@dataclass(frozen=True)
class Tool:
    name: str
    argv: tuple = ()
    mode: str | None = None
    version: str | None = None

    @property
    def found(self):
        return bool(self.argv)

    @property
    def bin(self):
        return self.argv[0] if self.argv else None

    def command(self, *args):
        return [*self.argv, *args]

    def looks_like_path(self):
        binary = self.bin or ""
        return os.path.isabs(binary) or "\\" in binary or (len(binary) > 2 and binary[1] == ":")

    def to_dict(self):
        return {"bin": self.bin, "mode": self.mode, "version": self.version}


@dataclass(frozen=True)
class Toolchain:
    ytdlp: Tool
    ffmpeg: Tool
    archiver: Tool

    def require(self, *names):
        hints = {
            "ytdlp": "Install it or set YTDLP_PATH env var.",
            "ffmpeg": "Set FFMPEG_PATH env var to its full path.",
            "archiver": "Install zip or set ZIP_PATH env var.",
        }
        for name in names:
            tool = getattr(self, name)
            if not tool.found:
                raise ToolMissing(tool.name, hints[name])


def _first_line(result):
    text = (result.stdout or result.stderr or "").strip()
    return text.splitlines()[0].strip() if text else None


async def detect_command(argv, runner=run_process):
    """Return (flags, first output line) for the first version flag that exits 0."""
    for flags in _VERSION_FLAGS:
        result = await runner([*argv, *flags])
        if result.code == 0:
            return flags, _first_line(result)
    return None, None


def _ytdlp_candidates(environ):
    direct = [environ.get("YTDLP_PATH"), "yt-dlp", "yt-dlp.exe"]
    for binary in direct:
        if binary:
            yield (binary,), "direct"
    # The yt-dlp package is a hard dependency, so the running interpreter always has it.
    for python in (sys.executable, "python", "py"):
        if python:
            yield (python, "-m", "yt_dlp"), "python"


async def locate_ytdlp(runner=run_process, environ=None):
    environ = os.environ if environ is None else environ
    for argv, mode in _ytdlp_candidates(environ):
        result = await runner([*argv, "--version"])
        if result.code == 0:
            return Tool("yt-dlp", argv=argv, mode=mode, version=_first_line(result))
    return Tool("yt-dlp")


async def locate_ffmpeg(runner=run_process, environ=None):
    environ = os.environ if environ is None else environ
    candidate = environ.get("FFMPEG_PATH") or "ffmpeg"
    flags, version = await detect_command((candidate,), runner=runner)
    if flags is None:
        return Tool("ffmpeg")
    return Tool("ffmpeg", argv=(candidate,), mode="direct", version=version)


async def locate_archiver(runner=run_process, environ=None):
    environ = os.environ if environ is None else environ
    candidate = environ.get("ZIP_PATH") or "zip"
    flags, version = await detect_command((candidate,), runner=runner)
    if flags is None:
        return Tool("zip")
    return Tool("zip", argv=(candidate,), mode="direct", version=version)


async def locate_tools(runner=run_process, environ=None):
    toolchain = Toolchain(
        ytdlp=await locate_ytdlp(runner, environ),
        ffmpeg=await locate_ffmpeg(runner, environ),
        archiver=await locate_archiver(runner, environ),
    )
    for tool in (toolchain.ytdlp, toolchain.ffmpeg, toolchain.archiver):
        if tool.found:
            logging.info("%s: %s (%s) %s", tool.name, tool.bin, tool.mode, tool.version or "")
        else:
            logging.warning("%s: NOT FOUND", tool.name)
    return toolchain


def get_runtime_info(toolchain=None):
    info = {
        "app_version": APP_VERSION,
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "yt_dlp_package": YT_DLP_VERSION,
    }
    if toolchain is not None:
        info["ytdlp"] = toolchain.ytdlp.to_dict()
        info["ffmpeg"] = toolchain.ffmpeg.to_dict()
        info["zip"] = toolchain.archiver.to_dict()
    return info
