import asyncio
import logging
import os
import re
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import anyio

from engine.core import rmtree_quietly
from engine.paths import SessionDirs, ensure_dir, session_dirs, session_key
from engine.playlist import PlaylistStore

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


def is_valid_session_id(value):
    return isinstance(value, str) and bool(_SESSION_ID_RE.match(value))


def mint_session_id():
    return secrets.token_urlsafe(24)


def resolve_session_id(cookie_value, hint_value, is_known, mint=mint_session_id):
    """Pick the session identifier for a request.

    Precedence, in order:
      1. a header hint naming a context that is live or being created
      2. the session cookie
      3. a header hint for a brand-new identifier (nothing exists to impersonate)
      4. a freshly minted identifier

    Malformed values are ignored. Returns ``(session_id, source)``.
    """
    cookie = cookie_value if is_valid_session_id(cookie_value) else None
    hint = hint_value if is_valid_session_id(hint_value) else None
    if hint and is_known(hint):
        return hint, "header"
    if cookie:
        return cookie, "cookie"
    if hint:
        return hint, "header-new"
    return mint(), "minted"


@dataclass
class SessionContext:
    session_id: str
    key: str
    playlist: PlaylistStore
    dirs: SessionDirs
    last_access: float
    download_tokens: set = field(default_factory=set)
    active_requests: int = 0

    @property
    def tracks_dir(self):
        return self.dirs.tracks_dir

    @property
    def scratch_dir(self):
        return self.dirs.scratch_dir

    @property
    def downloads_dir(self):
        return self.dirs.downloads_dir

    def touch(self, now):
        self.last_access = now


def _make_dirs(dirs):
    for path in dirs.all():
        ensure_dir(path)


def _remove_session_files(tracks, dirs):
    for track in tracks:
        track.unlink()
    for path in dirs.all():
        rmtree_quietly(path)


def _clear_roots(roots):
    removed = 0
    for root in roots:
        if not os.path.isdir(root):
            continue
        for name in os.listdir(root):
            rmtree_quietly(os.path.join(root, name))
            removed += 1
    return removed


class SessionManager:
    """Owns every live SessionContext, keyed by session identifier.

    Creation is exactly-once per identifier: concurrent first requests share
    one in-flight creation task. Idle contexts are destroyed by
    ``sweep_idle``; contexts with requests in flight are skipped.
    """

    def __init__(self, paths, settings, issuer, *, progress=None, canceled=None, clock=time.monotonic):
        self.paths = paths
        self.settings = settings
        self.issuer = issuer
        self.progress = progress
        self.canceled = canceled
        self._clock = clock
        self._contexts = {}
        self._pending = {}

    def __len__(self):
        return len(self._contexts)

    def is_known(self, session_id):
        return session_id in self._contexts or session_id in self._pending

    def get(self, session_id):
        return self._contexts.get(session_id)

    def contexts(self):
        return list(self._contexts.values())

    async def get_or_create(self, session_id):
        ctx = self._contexts.get(session_id)
        if ctx is not None:
            ctx.touch(self._clock())
            return ctx
        task = self._pending.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._create(session_id))
            self._pending[session_id] = task
            task.add_done_callback(lambda t: self._forget_pending(session_id, t))
        # shield: one disconnected client must not cancel creation for the others
        ctx = await asyncio.shield(task)
        ctx.touch(self._clock())
        return ctx

    def _forget_pending(self, session_id, task):
        if self._pending.get(session_id) is task:
            self._pending.pop(session_id, None)

    async def _create(self, session_id):
        key = session_key(session_id)
        dirs = session_dirs(self.paths, key)
        await anyio.to_thread.run_sync(_make_dirs, dirs)
        ctx = SessionContext(
            session_id=session_id,
            key=key,
            playlist=PlaylistStore(self.settings.cap_seconds),
            dirs=dirs,
            last_access=self._clock(),
        )
        self._contexts[session_id] = ctx
        logging.info("Session created: %s", key)
        return ctx

    async def resolve(self, cookie_value=None, hint_value=None):
        session_id, source = resolve_session_id(cookie_value, hint_value, self.is_known)
        if source == "minted":
            logging.debug("Minted new session identifier")
        return await self.get_or_create(session_id)

    @asynccontextmanager
    async def in_flight(self, ctx):
        ctx.active_requests += 1
        try:
            yield ctx
        finally:
            ctx.active_requests -= 1
            ctx.touch(self._clock())

    async def destroy(self, ctx):
        if self._contexts.get(ctx.session_id) is ctx:
            self._contexts.pop(ctx.session_id, None)
        self.issuer.revoke_all(ctx.download_tokens)
        if self.progress is not None:
            self.progress.drop_scope(ctx.session_id)
        if self.canceled is not None:
            self.canceled.drop_scope(ctx.session_id)
        tracks = ctx.playlist.clear()
        await anyio.to_thread.run_sync(_remove_session_files, tracks, ctx.dirs)
        logging.info("Session destroyed: %s (%d track(s) removed)", ctx.key, len(tracks))

    async def sweep_idle(self):
        now = self._clock()
        ttl = self.settings.session_idle_ttl_seconds
        idle = [
            ctx for ctx in self._contexts.values()
            if now - ctx.last_access > ttl and ctx.active_requests == 0
        ]
        for ctx in idle:
            try:
                await self.destroy(ctx)
            except Exception:
                logging.exception("Session destroy failed: %s", ctx.key)
        if idle:
            logging.info("Idle sweep destroyed %d session(s)", len(idle))
        return len(idle)

    async def purge_orphans(self):
        """Remove per-session directories left behind by a previous process."""
        removed = await anyio.to_thread.run_sync(_clear_roots, self.paths.roots())
        if removed:
            logging.info("Removed %d orphaned session directories", removed)
        return removed

    async def shutdown(self):
        for ctx in list(self._contexts.values()):
            await self.destroy(ctx)
