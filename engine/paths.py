import hashlib
import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    value = os.environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


# Base directories for all file access. Override via env for container mounts.
CONFIG_DIR = _env_path("MIXDISC_CONFIG_DIR", PROJECT_ROOT / "config")
DATA_DIR = _env_path("MIXDISC_DATA_DIR", PROJECT_ROOT / "data")
LOG_DIR = _env_path("MIXDISC_LOG_DIR", PROJECT_ROOT / "logs")


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    tracks_root: str
    scratch_root: str
    downloads_root: str

    def roots(self):
        return (self.tracks_root, self.scratch_root, self.downloads_root)


@dataclass(frozen=True)
class SessionDirs:
    tracks_dir: str
    scratch_dir: str
    downloads_dir: str

    def all(self):
        return (self.tracks_dir, self.scratch_dir, self.downloads_dir)


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def session_key(session_id):
    """Stable, filesystem-safe key for a session identifier.

    The raw identifier never reaches the filesystem.
    """
    digest = hashlib.sha256(str(session_id).encode("utf-8")).hexdigest()
    return digest[:24]


def session_dirs(paths, key):
    return SessionDirs(
        tracks_dir=os.path.join(paths.tracks_root, key),
        scratch_dir=os.path.join(paths.scratch_root, key),
        downloads_dir=os.path.join(paths.downloads_root, key),
    )


def is_within(path, base_dir):
    try:
        return _is_within_base(path, base_dir)
    except ValueError:
        return False


def build_engine_paths(data_dir=None, log_dir=None):
    data_dir = os.path.abspath(data_dir) if data_dir else DATA_DIR
    return EnginePaths(
        log_dir=os.path.abspath(log_dir) if log_dir else LOG_DIR,
        tracks_root=os.path.join(data_dir, "tracks"),
        scratch_root=os.path.join(data_dir, "tmp"),
        downloads_root=os.path.join(data_dir, "downloads"),
    )
