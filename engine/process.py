import asyncio
import logging
from dataclasses import dataclass

# yt-dlp can print long JSON/info lines; readline() fails past the stream limit
STREAM_LINE_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class ProcessResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self):
        return self.code == 0


async def _reap(proc):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_process(argv, *, cwd=None):
    """Run a command to completion and capture its output.

    Spawn failures (missing executable, permissions) come back as code -1
    with the error text in stderr instead of raising.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as exc:
        return ProcessResult(code=-1, stdout="", stderr=str(exc))
    try:
        stdout, stderr = await proc.communicate()
    except BaseException:
        await _reap(proc)
        raise
    return ProcessResult(
        code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def _pump(stream, sink, on_line):
    while True:
        raw = await stream.readline()
        if not raw:
            break
        text = raw.decode("utf-8", errors="replace")
        sink.append(text)
        # yt-dlp may still redraw with carriage returns inside a single line
        for part in text.replace("\r", "\n").split("\n"):
            part = part.strip()
            if not part:
                continue
            try:
                on_line(part)
            except Exception:
                logging.exception("Process line handler failed")


async def stream_process(argv, on_line, *, cwd=None):
    """Run a command while handing every stdout/stderr line to ``on_line``.

    Both streams are read concurrently so interleaved progress output is seen
    as it arrives. Returns the same ProcessResult as ``run_process``.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            limit=STREAM_LINE_LIMIT,
        )
    except OSError as exc:
        return ProcessResult(code=-1, stdout="", stderr=str(exc))
    out, err = [], []
    try:
        await asyncio.gather(
            _pump(proc.stdout, out, on_line),
            _pump(proc.stderr, err, on_line),
        )
    except BaseException:
        # the child must never outlive a failed or cancelled reader
        await _reap(proc)
        raise
    code = await proc.wait()
    return ProcessResult(code=code, stdout="".join(out), stderr="".join(err))
