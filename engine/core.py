import json
import logging
import os
import re
import shutil
import unicodedata
from dataclasses import dataclass, field

DEFAULT_PROBE_CLIENTS = (
    "youtube:player_client=web",
    "youtube:player_client=ios",
    "youtube:player_client=android",
    "",
)

DEFAULT_CONFIG = {
    "cap_seconds": 80 * 60,
    "session_idle_ttl_seconds": 6 * 60 * 60,
    "session_cookie_name": "cd_session",
    "session_header": "X-CD-Session",
    "download_token_ttl_seconds": 600,
    "download_token_grace_seconds": 120,
    "progress_active_ttl_seconds": 60 * 60,
    "progress_done_ttl_seconds": 60,
    "cancel_ttl_seconds": 600,
    "probe_clients": list(DEFAULT_PROBE_CLIENTS),
    "fast_client": "youtube:player_client=web",
    "extractor_args": "",
    "yt_dlp_cookies": None,
    "yt_dlp_extra": "--force-ipv4",
    "audio_quality": "0",
}

_INT_KEYS = (
    "cap_seconds",
    "session_idle_ttl_seconds",
    "download_token_ttl_seconds",
    "download_token_grace_seconds",
    "progress_active_ttl_seconds",
    "progress_done_ttl_seconds",
    "cancel_ttl_seconds",
)
_STR_KEYS = (
    "session_cookie_name",
    "session_header",
    "fast_client",
    "extractor_args",
    "yt_dlp_extra",
    "audio_quality",
)


@dataclass(frozen=True)
class Settings:
    cap_seconds: int = DEFAULT_CONFIG["cap_seconds"]
    session_idle_ttl_seconds: int = DEFAULT_CONFIG["session_idle_ttl_seconds"]
    session_cookie_name: str = DEFAULT_CONFIG["session_cookie_name"]
    session_header: str = DEFAULT_CONFIG["session_header"]
    download_token_ttl_seconds: int = DEFAULT_CONFIG["download_token_ttl_seconds"]
    download_token_grace_seconds: int = DEFAULT_CONFIG["download_token_grace_seconds"]
    progress_active_ttl_seconds: int = DEFAULT_CONFIG["progress_active_ttl_seconds"]
    progress_done_ttl_seconds: int = DEFAULT_CONFIG["progress_done_ttl_seconds"]
    cancel_ttl_seconds: int = DEFAULT_CONFIG["cancel_ttl_seconds"]
    probe_clients: tuple = field(default=DEFAULT_PROBE_CLIENTS)
    fast_client: str = DEFAULT_CONFIG["fast_client"]
    extractor_args: str = ""
    yt_dlp_cookies: str | None = None
    yt_dlp_extra: str = DEFAULT_CONFIG["yt_dlp_extra"]
    audio_quality: str = DEFAULT_CONFIG["audio_quality"]

    @property
    def sweep_interval_seconds(self):
        return max(1, min(self.session_idle_ttl_seconds, 600))

    def extra_args(self):
        return [part for part in (self.yt_dlp_extra or "").split(" ") if part]


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for key in _INT_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{key} must be an integer")
        elif value < 1:
            errors.append(f"{key} must be >= 1")

    for key in _STR_KEYS:
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string")

    for key in ("session_cookie_name", "session_header"):
        value = config.get(key)
        if isinstance(value, str) and not re.fullmatch(r"[A-Za-z0-9_-]+", value):
            errors.append(f"{key} may only contain letters, digits, '-' and '_'")

    clients = config.get("probe_clients")
    if clients is not None:
        if not isinstance(clients, list) or not clients:
            errors.append("probe_clients must be a non-empty list")
        else:
            for idx, client in enumerate(clients):
                if not isinstance(client, str):
                    errors.append(f"probe_clients[{idx}] must be a string")

    cookies = config.get("yt_dlp_cookies")
    if cookies is not None and not isinstance(cookies, str):
        errors.append("yt_dlp_cookies must be a string")

    quality = config.get("audio_quality")
    if isinstance(quality, str) and quality not in {"0", "320K"}:
        errors.append("audio_quality must be '0' or '320K'")

    return errors


def build_settings(config=None, environ=None):
    """Merge a validated config dict and env overrides onto the defaults."""
    environ = os.environ if environ is None else environ
    merged = dict(DEFAULT_CONFIG)
    if isinstance(config, dict):
        for key in DEFAULT_CONFIG:
            if key in config and config[key] is not None:
                merged[key] = config[key]

    # Tool-level overrides keep the names operators already use for yt-dlp setups.
    if environ.get("YTDLP_EXTRACTOR_ARGS"):
        merged["extractor_args"] = environ["YTDLP_EXTRACTOR_ARGS"]
    if environ.get("COOKIES_PATH"):
        merged["yt_dlp_cookies"] = environ["COOKIES_PATH"]
    if "YTDLP_EXTRA" in environ:
        merged["yt_dlp_extra"] = environ["YTDLP_EXTRA"]

    return Settings(
        cap_seconds=int(merged["cap_seconds"]),
        session_idle_ttl_seconds=int(merged["session_idle_ttl_seconds"]),
        session_cookie_name=merged["session_cookie_name"],
        session_header=merged["session_header"],
        download_token_ttl_seconds=int(merged["download_token_ttl_seconds"]),
        download_token_grace_seconds=int(merged["download_token_grace_seconds"]),
        progress_active_ttl_seconds=int(merged["progress_active_ttl_seconds"]),
        progress_done_ttl_seconds=int(merged["progress_done_ttl_seconds"]),
        cancel_ttl_seconds=int(merged["cancel_ttl_seconds"]),
        probe_clients=tuple(merged["probe_clients"]),
        fast_client=merged["fast_client"] or "",
        extractor_args=(merged["extractor_args"] or "").strip(),
        yt_dlp_cookies=merged["yt_dlp_cookies"] or None,
        yt_dlp_extra=merged["yt_dlp_extra"] or "",
        audio_quality=merged["audio_quality"] or "0",
    )


def resolve_cookiefile(settings):
    cookies = settings.yt_dlp_cookies
    if not cookies:
        return None
    if not os.path.exists(cookies):
        logging.warning("yt-dlp cookies file not found: %s", cookies)
        return None
    return cookies


# ------------------------------------------------------------------
# Filename + filesystem helpers
# ------------------------------------------------------------------

def sanitize_for_filesystem(name, maxlen=120):
    """Remove characters unsafe for filenames and trim length."""
    if not name:
        return ""
    name = re.sub(r"[\\/:*?\"<>|]+", " ", str(name))
    name = re.sub(r"\s+", " ", name).strip()
    name = unicodedata.normalize("NFC", name)
    if len(name) > maxlen:
        name = name[:maxlen].rstrip()
    return name


def safe_base(title):
    return sanitize_for_filesystem(title) or "audio"


def remove_quietly(path):
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logging.warning("Cleanup failed for %s: %s", path, exc)
        return False


def rmtree_quietly(path):
    if not path or not os.path.exists(path):
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logging.warning("Directory cleanup failed for %s: %s", path, exc)
