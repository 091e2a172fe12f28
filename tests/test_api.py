import logging
import os
import tempfile
import unittest
import urllib.parse

from fastapi.testclient import TestClient

from api.main import app
from engine.core import Settings
from engine.paths import build_engine_paths
from engine.playlist import Track
from engine.probe import MetadataResult
from engine.process import ProcessResult
from engine.runtime import Tool, Toolchain

SESSION_ID = "k" * 24
URL = "https://youtu.be/abcdefghijk"
META = {
    "id": "abcdefghijk",
    "title": "Song",
    "duration": 180,
    "formats": [{"format_id": "251", "acodec": "opus", "vcodec": "none", "abr": 160, "asr": 48000}],
}


class FakeProber:
    def __init__(self, result):
        self.result = result

    async def fetch_for(self, url, *, fast=False, client=None):
        return self.result


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        app.state.paths = build_engine_paths(
            data_dir=os.path.join(self.tmpdir.name, "data"),
            log_dir=os.path.join(self.tmpdir.name, "logs"),
        )
        app.state.settings = Settings()
        app.state.toolchain = Toolchain(
            ytdlp=Tool("yt-dlp", argv=("yt-dlp",), mode="direct"),
            ffmpeg=Tool("ffmpeg", argv=("ffmpeg",), mode="direct"),
            archiver=Tool("zip", argv=("zip",), mode="direct"),
        )
        self._client_cm = TestClient(app)
        self.client = self._client_cm.__enter__()

    def tearDown(self):
        self._client_cm.__exit__(None, None, None)
        root = logging.getLogger("")
        for handler in list(root.handlers):
            if getattr(handler, "baseFilename", "").startswith(self.tmpdir.name):
                root.removeHandler(handler)
                handler.close()
        self.tmpdir.cleanup()

    def _headers(self):
        return {"X-CD-Session": SESSION_ID}

    def _context(self):
        self.client.get("/api/list", headers=self._headers())
        return app.state.sessions.get(SESSION_ID)

    def _add_track(self, ctx, track_id, title="Song", duration=60):
        path = os.path.join(ctx.tracks_dir, f"{track_id}.mp3")
        with open(path, "wb") as handle:
            handle.write(b"mp3")
        return ctx.playlist.add(Track(id=track_id, title=title, duration=duration, filepath=path, size_bytes=3))

    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_only_api_routes_are_served(self):
        resp = self.client.get("/")
        self.assertEqual(resp.status_code, 404)
        self.assertNotIn("www-authenticate", resp.headers)
        self.assertEqual(self.client.get("/index.html").status_code, 404)
        resp = self.client.get("/api/list", headers={"Authorization": "Basic Zm9vOmJhcg=="})
        self.assertEqual(resp.status_code, 200)

    def test_list_mints_and_echoes_session(self):
        resp = self.client.get("/api/list")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"capSeconds": 4800, "totalSeconds": 0, "items": []})
        session_id = resp.headers["X-CD-Session"]
        self.assertEqual(resp.cookies.get("cd_session"), session_id)
        again = self.client.get("/api/list")
        self.assertEqual(again.headers["X-CD-Session"], session_id)

    def test_header_hint_without_cookie(self):
        ctx = self._context()
        self.client.cookies.clear()
        resp = self.client.get("/api/list", headers=self._headers())
        self.assertEqual(resp.headers["X-CD-Session"], SESSION_ID)
        self.assertIs(app.state.sessions.get(SESSION_ID), ctx)

    def test_sessions_are_isolated(self):
        ctx = self._context()
        self._add_track(ctx, "a")
        self.client.cookies.clear()
        other = self.client.get("/api/list", headers={"X-CD-Session": "z" * 24})
        self.assertEqual(other.json()["items"], [])

    def test_reorder(self):
        ctx = self._context()
        for tid in ("a", "b", "c"):
            self._add_track(ctx, tid)
        bad = self.client.post("/api/reorder", json={"order": ["a", "b"]}, headers=self._headers())
        self.assertEqual(bad.status_code, 400)
        good = self.client.post("/api/reorder", json={"order": ["c", "b", "a"]}, headers=self._headers())
        self.assertEqual(good.status_code, 200)
        self.assertEqual(ctx.playlist.ids(), ["c", "b", "a"])

    def test_remove_and_clear(self):
        ctx = self._context()
        first = self._add_track(ctx, "a", duration=30)
        second = self._add_track(ctx, "b", duration=40)
        self.assertEqual(self.client.post("/api/remove/missing", headers=self._headers()).status_code, 404)

        resp = self.client.post("/api/remove/a", headers=self._headers())
        self.assertEqual(resp.json()["totalSeconds"], 40)
        self.assertFalse(os.path.exists(first.filepath))

        resp = self.client.post("/api/clear", headers=self._headers())
        self.assertEqual(resp.json()["totalSeconds"], 0)
        self.assertFalse(os.path.exists(second.filepath))

    def test_file_route(self):
        ctx = self._context()
        self._add_track(ctx, "a")
        resp = self.client.get("/api/file/a", headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"mp3")
        self.assertEqual(self.client.get("/api/file/zzz", headers=self._headers()).status_code, 404)

    def test_progress_and_cancel(self):
        resp = self.client.get("/api/add-progress/unknown", headers=self._headers())
        self.assertEqual(resp.json(), {"progress": None, "done": False})
        resp = self.client.post("/api/cancel-add", json={"token": "tok"}, headers=self._headers())
        self.assertEqual(resp.status_code, 204)
        self.assertTrue(app.state.canceled.is_canceled(SESSION_ID, "tok"))

    def test_add_track_end_to_end(self):
        ctx = self._context()

        async def streamer(argv, on_line, **_kwargs):
            on_line("[download]  10.0% of 1MiB")
            template = argv[argv.index("-o") + 1]
            path = template.replace("%(title)s-%(id)s.%(ext)s", "Song-abcdefghijk.mp3")
            with open(path, "wb") as handle:
                handle.write(b"mp3")
            return ProcessResult(code=0, stdout=path + "\n", stderr="")

        app.state.jobs.prober = FakeProber(MetadataResult(ok=True, meta=META, code=0))
        app.state.jobs.streamer = streamer
        resp = self.client.post("/api/add", json={"url": URL, "client_token": "tok"}, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["client_token"], "tok")
        self.assertEqual(body["item"]["title"], "Song")
        self.assertEqual(body["totalSeconds"], 180)
        self.assertEqual(len(ctx.playlist), 1)
        progress = self.client.get("/api/add-progress/tok", headers=self._headers()).json()
        self.assertEqual(progress, {"progress": 100.0, "done": True})

    def test_add_rejects_bad_url(self):
        resp = self.client.post("/api/add", json={"url": "notaurl"}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)

    def test_add_reports_metadata_failure(self):
        app.state.jobs.prober = FakeProber(
            MetadataResult(ok=False, error="yt-dlp failed", code=1, stderr="ERROR: private video")
        )
        resp = self.client.post("/api/add", json={"url": URL, "client_token": "tok"}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["stderr"], "ERROR: private video")
        self.assertEqual(body["detail"], "yt-dlp failed")
        self.assertEqual(body["code"], 1)

    def test_convert_and_download_non_ascii_title(self):
        title = "Don’t Stop – 東京"
        meta = dict(META, title=title)

        async def runner(argv, **_kwargs):
            if argv[0] == "yt-dlp":
                template = argv[argv.index("-o") + 1]
                path = template.replace("%(title)s-%(id)s.%(ext)s", "Song-abcdefghijk.webm")
            else:
                path = argv[-1]
            with open(path, "wb") as handle:
                handle.write(b"ID3audio")
            return ProcessResult(code=0, stdout=path + "\n", stderr="")

        app.state.jobs.prober = FakeProber(MetadataResult(ok=True, meta=meta, code=0))
        app.state.jobs.runner = runner
        resp = self.client.post("/api/convert", json={"url": URL, "target": "mp3"}, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["filename"], f"{title}.mp3")

        download = self.client.get(payload["href"])
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, b"ID3audio")
        disposition = download.headers["content-disposition"]
        self.assertIn('filename="Dont Stop.mp3"', disposition)
        self.assertIn("filename*=UTF-8''" + urllib.parse.quote(f"{title}.mp3", safe=""), disposition)

    def test_convert_validation(self):
        resp = self.client.post("/api/convert", json={"url": URL, "target": "flac"}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/convert", json={"url": "x", "target": "mp3"}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)

    def test_zip_empty_playlist(self):
        resp = self.client.post("/api/zip", headers=self._headers())
        self.assertEqual(resp.status_code, 400)

    def test_download_token_is_single_use(self):
        ctx = self._context()
        path = os.path.join(ctx.scratch_dir, "out.wav")
        with open(path, "wb") as handle:
            handle.write(b"RIFF")
        payload = app.state.jobs.publish(ctx, path, "Song.wav")

        resp = self.client.get(payload["href"])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"RIFF")
        self.assertIn('filename="Song.wav"', resp.headers["content-disposition"])
        self.assertEqual(self.client.get(payload["href"]).status_code, 404)
        self.assertEqual(os.listdir(ctx.downloads_dir), [])

    def test_download_rebinds_fresh_browser_to_owner(self):
        ctx = self._context()
        path = os.path.join(ctx.scratch_dir, "out.mp3")
        with open(path, "wb") as handle:
            handle.write(b"ID3")
        payload = app.state.jobs.publish(ctx, path, "Song.mp3")
        self.client.cookies.clear()
        resp = self.client.get(payload["href"])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.cookies.get("cd_session"), SESSION_ID)

    def test_unknown_download_token(self):
        self.assertEqual(self.client.get("/api/downloads/nope").status_code, 404)

    def test_thumb_rejects_bad_id(self):
        self.assertEqual(self.client.get("/api/thumb/x").status_code, 400)

    def test_diag(self):
        body = self.client.get("/api/diag").json()
        self.assertEqual(body["ytdlp"]["bin"], "yt-dlp")
        self.assertEqual(body["zip"]["bin"], "zip")
        self.assertIn("app_version", body)


if __name__ == "__main__":
    unittest.main()
