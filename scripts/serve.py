#!/usr/bin/env python3
"""
Run the mixdisc web service.
- Session-scoped playlists built from YouTube URLs, encoded to MP3 by yt-dlp.
- One-off MP3/WAV conversion and whole-playlist ZIP bundles via download tokens.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import asyncio
import json
import logging

import uvicorn

from engine.paths import LOG_DIR, ensure_dir
from engine.runtime import get_runtime_info, locate_tools


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    logging.basicConfig(
        filename=os.path.join(log_dir, "mixdisc.log"),
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    console.setLevel(logging.INFO)
    logging.getLogger("").addHandler(console)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None, help="Config file (absolute, or relative to the config dir).")
    parser.add_argument("--host", default=os.environ.get("MIXDISC_HOST") or "127.0.0.1")
    parser.add_argument("--port", type=int, default=int(os.environ.get("MIXDISC_PORT") or 3000))
    parser.add_argument("--version", action="store_true", help="Show version info and detected tools, then exit.")
    args = parser.parse_args()

    if args.version:
        toolchain = asyncio.run(locate_tools())
        print(json.dumps(get_runtime_info(toolchain), indent=2))
        return

    if args.config:
        os.environ["MIXDISC_CONFIG"] = args.config

    _setup_logging(LOG_DIR)
    logging.info("Serving on http://%s:%s", args.host, args.port)
    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
