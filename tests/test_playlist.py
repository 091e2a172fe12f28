import os
import tempfile
import unittest

from engine.playlist import PlaylistStore, Track


class PlaylistStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = PlaylistStore(cap_seconds=4800)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _track(self, track_id, duration=60):
        path = os.path.join(self.tmpdir.name, f"{track_id}.mp3")
        with open(path, "wb") as handle:
            handle.write(b"\x00" * 16)
        return self.store.add(
            Track(id=track_id, title=f"Song {track_id}", duration=duration, filepath=path, size_bytes=16)
        )

    def test_total_is_sum_of_durations(self):
        self._track("a", 100)
        self._track("b", 250)
        self.assertEqual(self.store.total_seconds, 350)
        self.assertEqual(self.store.to_dict()["capSeconds"], 4800)
        self.assertEqual(self.store.to_dict()["totalSeconds"], 350)

    def test_cap_is_not_enforced(self):
        self._track("a", 5000)
        self.assertEqual(len(self.store), 1)
        self.assertGreater(self.store.total_seconds, self.store.cap_seconds)

    def test_negative_duration_becomes_zero(self):
        track = self._track("a", -5)
        self.assertEqual(track.duration, 0)

    def test_reorder_permutation(self):
        for tid in ("a", "b", "c"):
            self._track(tid)
        self.assertTrue(self.store.reorder(["c", "a", "b"]))
        self.assertEqual(self.store.ids(), ["c", "a", "b"])

    def test_reorder_rejects_missing_extra_or_duplicate_ids(self):
        for tid in ("a", "b", "c"):
            self._track(tid)
        self.assertFalse(self.store.reorder(["a", "b"]))
        self.assertFalse(self.store.reorder(["a", "b", "c", "d"]))
        self.assertFalse(self.store.reorder(["a", "a", "b"]))
        self.assertFalse(self.store.reorder(["a", "b", "z"]))
        self.assertFalse(self.store.reorder("abc"))
        self.assertEqual(self.store.ids(), ["a", "b", "c"])

    def test_remove_returns_track_or_none(self):
        self._track("a")
        removed = self.store.remove("a")
        self.assertEqual(removed.id, "a")
        self.assertIsNone(self.store.remove("a"))
        self.assertEqual(self.store.total_seconds, 0)

    def test_clear_then_unlink_removes_every_file(self):
        paths = [self._track(tid).filepath for tid in ("a", "b", "c")]
        removed = self.store.clear()
        for track in removed:
            track.unlink()
        self.assertEqual(len(removed), 3)
        self.assertEqual(self.store.total_seconds, 0)
        self.assertEqual(self.store.items, [])
        for path in paths:
            self.assertFalse(os.path.exists(path))

    def test_items_is_a_copy(self):
        self._track("a")
        self.store.items.clear()
        self.assertEqual(len(self.store), 1)

    def test_track_dict_shape(self):
        track = self._track("a", 42)
        self.assertEqual(
            track.to_dict(),
            {"id": "a", "title": "Song a", "duration": 42, "sizeBytes": 16, "videoId": None, "thumbnail": None},
        )


if __name__ == "__main__":
    unittest.main()
