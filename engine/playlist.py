import secrets
from dataclasses import dataclass

from engine.core import remove_quietly


def new_track_id():
    return secrets.token_urlsafe(6)


@dataclass
class Track:
    id: str
    title: str
    duration: float
    filepath: str
    size_bytes: int
    video_id: str | None = None
    thumbnail: str | None = None

    def __post_init__(self):
        if self.duration is None or self.duration < 0:
            self.duration = 0

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "duration": self.duration,
            "sizeBytes": self.size_bytes,
            "videoId": self.video_id,
            "thumbnail": self.thumbnail,
        }

    def unlink(self):
        return remove_quietly(self.filepath)


class PlaylistStore:
    """Ordered tracks of one session.

    Capacity is reported, never enforced: callers compare ``total_seconds``
    against ``cap_seconds`` themselves.
    """

    def __init__(self, cap_seconds):
        self.cap_seconds = cap_seconds
        self._items = []

    def __len__(self):
        return len(self._items)

    @property
    def items(self):
        return list(self._items)

    @property
    def total_seconds(self):
        return sum(track.duration or 0 for track in self._items)

    def ids(self):
        return [track.id for track in self._items]

    def get(self, track_id):
        for track in self._items:
            if track.id == track_id:
                return track
        return None

    def add(self, track):
        self._items.append(track)
        return track

    def remove(self, track_id):
        for idx, track in enumerate(self._items):
            if track.id == track_id:
                return self._items.pop(idx)
        return None

    def clear(self):
        removed, self._items = self._items, []
        return removed

    def reorder(self, order):
        """Apply ``order`` only if it is a permutation of the current ids."""
        if not isinstance(order, (list, tuple)):
            return False
        current = self.ids()
        if len(order) != len(current) or len(set(order)) != len(order):
            return False
        if set(order) != set(current):
            return False
        by_id = {track.id: track for track in self._items}
        self._items = [by_id[track_id] for track_id in order]
        return True

    def totals(self):
        return {"totalSeconds": self.total_seconds, "capSeconds": self.cap_seconds}

    def to_dict(self):
        return {
            "capSeconds": self.cap_seconds,
            "totalSeconds": self.total_seconds,
            "items": [track.to_dict() for track in self._items],
        }
