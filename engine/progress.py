"""Add-job progress tracking.

``parse_progress_line`` is the whole grammar for reading yt-dlp output: a
``[download]`` (or untagged) line carrying ``NN.N%`` yields that number, and any of the
post-processing markers yields 99 because the file exists but is not final
yet. Everything else is ignored.

The two tables are keyed by ``(session_id, client_token)`` so one session
cannot observe or cancel another session's adds, and both expire lazily on
access plus on the periodic sweep.
"""

import re
import time
from dataclasses import dataclass

RUNNING_CAP = 99
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
FINALIZING_MARKERS = (
    "[ExtractAudio]",
    "[Merger]",
    "[FixupM4a]",
    "[FixupM3u8]",
    "[VideoConvertor]",
    "[ffmpeg]",
    "Post-process",
    "Deleting original file",
)


def parse_progress_line(line):
    """Return a percentage (0-99) for a recognised line, else None."""
    if not line:
        return None
    for marker in FINALIZING_MARKERS:
        if marker in line:
            return RUNNING_CAP
    stripped = line.lstrip()
    # other tagged lines ([youtube], [info], ...) may mention percentages too
    if stripped.startswith("[") and not stripped.startswith("[download]"):
        return None
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    value = float(match.group(1))
    return max(0.0, min(float(RUNNING_CAP), value))


@dataclass
class ProgressEntry:
    percent: float
    done: bool
    expires_at: float
    outcome: str | None = None

    def to_dict(self):
        payload = {"progress": self.percent, "done": self.done}
        if self.outcome == "canceled":
            payload["canceled"] = True
        return payload


class _TTLTable:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries = {}

    def __len__(self):
        self.purge()
        return len(self._entries)

    def purge(self):
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expiry(entry) <= now]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def _expiry(self, entry):
        raise NotImplementedError


class ProgressTable(_TTLTable):
    def __init__(self, active_ttl, done_ttl, clock=time.monotonic):
        super().__init__(clock)
        self.active_ttl = active_ttl
        self.done_ttl = done_ttl

    def _expiry(self, entry):
        return entry.expires_at

    def start(self, scope, token):
        self.purge()
        entry = ProgressEntry(percent=0.0, done=False, expires_at=self._clock() + self.active_ttl)
        self._entries[(scope, token)] = entry
        return entry

    def update(self, scope, token, percent):
        """Record a running percentage; never moves backwards, capped at 99."""
        entry = self._entries.get((scope, token))
        if entry is None or entry.done:
            return entry.percent if entry else None
        value = min(float(percent), float(RUNNING_CAP))
        if value > entry.percent:
            entry.percent = value
        entry.expires_at = self._clock() + self.active_ttl
        return entry.percent

    def finish(self, scope, token, percent, outcome):
        entry = self._entries.get((scope, token))
        if entry is None:
            entry = ProgressEntry(percent=0.0, done=False, expires_at=0)
            self._entries[(scope, token)] = entry
        entry.percent = float(percent)
        entry.done = True
        entry.outcome = outcome
        entry.expires_at = self._clock() + self.done_ttl
        return entry

    def get(self, scope, token):
        self.purge()
        return self._entries.get((scope, token))

    def drop_scope(self, scope):
        for key in [k for k in self._entries if k[0] == scope]:
            self._entries.pop(key, None)


class CanceledTokens(_TTLTable):
    def __init__(self, ttl, clock=time.monotonic):
        super().__init__(clock)
        self.ttl = ttl

    def _expiry(self, entry):
        return entry

    def cancel(self, scope, token):
        self.purge()
        self._entries[(scope, token)] = self._clock() + self.ttl

    def is_canceled(self, scope, token):
        self.purge()
        return (scope, token) in self._entries

    def clear(self, scope, token):
        self._entries.pop((scope, token), None)

    def drop_scope(self, scope):
        for key in [k for k in self._entries if k[0] == scope]:
            self._entries.pop(key, None)
