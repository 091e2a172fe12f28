import os
import tempfile
import unittest

from engine.downloads import DownloadTokenIssuer


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeContext:
    def __init__(self, session_id="s" * 20):
        self.session_id = session_id
        self.download_tokens = set()


class DownloadTokenIssuerTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.issuer = DownloadTokenIssuer(ttl=600, grace=120, clock=self.clock)
        self.ctx = FakeContext()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _file(self, name="out.mp3"):
        path = os.path.join(self.tmpdir.name, name)
        with open(path, "wb") as handle:
            handle.write(b"data")
        return path

    def test_issue_and_redeem(self):
        path = self._file()
        token = self.issuer.issue(self.ctx, path, "Song.mp3")
        self.assertIn(token, self.ctx.download_tokens)
        entry = self.issuer.redeem(token)
        self.assertEqual(entry.path, os.path.abspath(path))
        self.assertEqual(entry.filename, "Song.mp3")
        self.assertEqual(entry.session_id, self.ctx.session_id)

    def test_redeem_unknown_token(self):
        self.assertIsNone(self.issuer.redeem("missing"))

    def test_vanished_file_drops_token(self):
        path = self._file()
        token = self.issuer.issue(self.ctx, path, "Song.mp3")
        os.remove(path)
        self.assertIsNone(self.issuer.redeem(token))
        self.assertNotIn(token, self.issuer)
        self.assertNotIn(token, self.ctx.download_tokens)

    def test_redeem_extends_expiry_by_grace(self):
        path = self._file()
        token = self.issuer.issue(self.ctx, path, "Song.mp3")
        self.clock.now += 590
        self.assertIsNotNone(self.issuer.redeem(token))
        # original expiry has passed; the grace window keeps the link alive
        self.clock.now += 100
        self.assertIsNotNone(self.issuer.redeem(token))

    def test_expired_token_removes_file(self):
        path = self._file()
        token = self.issuer.issue(self.ctx, path, "Song.mp3")
        self.clock.now += 601
        self.assertIsNone(self.issuer.redeem(token))
        self.assertFalse(os.path.exists(path))
        self.assertEqual(len(self.issuer), 0)

    def test_complete_deletes_file_and_token(self):
        path = self._file()
        token = self.issuer.issue(self.ctx, path, "Song.mp3")
        self.assertTrue(self.issuer.complete(token))
        self.assertFalse(os.path.exists(path))
        self.assertFalse(self.issuer.complete(token))
        self.assertIsNone(self.issuer.redeem(token))

    def test_sweep_expires_stale_tokens(self):
        stale = self._file("stale.mp3")
        fresh = self._file("fresh.mp3")
        self.issuer.issue(self.ctx, stale, "a.mp3")
        self.clock.now += 300
        fresh_token = self.issuer.issue(self.ctx, fresh, "b.mp3")
        self.clock.now += 301
        self.assertEqual(self.issuer.sweep(), 1)
        self.assertFalse(os.path.exists(stale))
        self.assertTrue(os.path.exists(fresh))
        self.assertEqual(self.ctx.download_tokens, {fresh_token})

    def test_revoke_all(self):
        tokens = [self.issuer.issue(self.ctx, self._file(f"{i}.mp3"), f"{i}.mp3") for i in range(3)]
        self.assertEqual(self.issuer.revoke_all(self.ctx.download_tokens), 3)
        for token in tokens:
            self.assertNotIn(token, self.issuer)
        self.assertEqual(os.listdir(self.tmpdir.name), [])


if __name__ == "__main__":
    unittest.main()
