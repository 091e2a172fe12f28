import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass

from engine.core import remove_quietly


@dataclass
class DownloadEntry:
    token: str
    session: object
    path: str
    filename: str
    expires_at: float

    @property
    def session_id(self):
        return self.session.session_id


class DownloadTokenIssuer:
    """Short-lived download handles for prepared files.

    A token names one file and is independent of the session cookie. Each
    successful redeem pushes the expiry out by ``grace`` seconds so browsers
    can retry or resume; the token is dropped once a transfer completes,
    when its file disappears, or when it expires.
    """

    def __init__(self, ttl, grace, clock=time.monotonic):
        self.ttl = ttl
        self.grace = grace
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, token):
        with self._lock:
            return token in self._entries

    def issue(self, context, path, filename):
        token = secrets.token_urlsafe(18)
        entry = DownloadEntry(
            token=token,
            session=context,
            path=os.path.abspath(path),
            filename=filename,
            expires_at=self._clock() + self.ttl,
        )
        with self._lock:
            self._entries[token] = entry
            context.download_tokens.add(token)
        logging.info("Download token issued for %s", os.path.basename(path))
        return token

    def _drop_locked(self, token):
        entry = self._entries.pop(token, None)
        if entry is not None:
            entry.session.download_tokens.discard(token)
        return entry

    def redeem(self, token):
        """Return the live entry for ``token`` or None (unknown, expired, file gone)."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if entry.expires_at > now and os.path.isfile(entry.path):
                entry.expires_at = max(entry.expires_at, now + self.grace)
                return entry
            self._drop_locked(token)
        if entry.expires_at <= now:
            remove_quietly(entry.path)
        else:
            logging.info("Download token dropped: file vanished")
        return None

    def complete(self, token, *, unlink=True):
        with self._lock:
            entry = self._drop_locked(token)
        if entry is None:
            return False
        if unlink:
            remove_quietly(entry.path)
        logging.info("Download delivered: %s", entry.filename)
        return True

    def revoke(self, token, *, unlink=True):
        with self._lock:
            entry = self._drop_locked(token)
        if entry is not None and unlink:
            remove_quietly(entry.path)
        return entry is not None

    def revoke_all(self, tokens, *, unlink=True):
        return sum(1 for token in list(tokens) if self.revoke(token, unlink=unlink))

    def sweep(self):
        now = self._clock()
        with self._lock:
            expired = [token for token, entry in self._entries.items() if entry.expires_at <= now]
            dropped = [self._drop_locked(token) for token in expired]
        for entry in dropped:
            remove_quietly(entry.path)
        if dropped:
            logging.info("Expired %d download token(s)", len(dropped))
        return len(dropped)
