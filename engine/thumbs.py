import logging
import re

import requests

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{6,20}$")
THUMB_VARIANTS = ("maxresdefault", "sddefault", "hqdefault", "mqdefault", "default")


def is_valid_video_id(value):
    return isinstance(value, str) and bool(_VIDEO_ID_RE.match(value))


def fetch_thumbnail(video_id, session=None, timeout=10):
    """Return (bytes, content_type) for the best available thumbnail, else None."""
    if not is_valid_video_id(video_id):
        return None
    http = session or requests
    for variant in THUMB_VARIANTS:
        url = f"https://i.ytimg.com/vi/{video_id}/{variant}.jpg"
        try:
            resp = http.get(url, timeout=timeout, headers={"User-Agent": "Mozilla/5.0"})
        except requests.RequestException as exc:
            logging.warning("Thumbnail fetch failed for %s (%s): %s", video_id, variant, exc)
            continue
        content_type = resp.headers.get("Content-Type", "")
        if resp.status_code == 200 and resp.content and content_type.startswith("image/"):
            return resp.content, content_type
    return None
