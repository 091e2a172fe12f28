import logging
import os

from mutagen import File as MutagenFile
from mutagen import MutagenError

_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".opus": "audio/ogg",
    ".zip": "application/zip",
}


def get_duration_seconds(file_path):
    """Duration of an encoded audio file, or None if it cannot be read."""
    try:
        audio = MutagenFile(file_path)
    except (MutagenError, OSError) as exc:
        logging.warning("Could not read audio duration for %s: %s", os.path.basename(file_path), exc)
        return None
    if audio and audio.info and audio.info.length:
        return int(round(audio.info.length))
    return None


def guess_mime(path):
    return _MIME_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")
