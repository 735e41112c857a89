"""Archiver defaults (endpoints, headers, layout names, fixed assets, env knobs).

Centralizes static defaults so the pipeline modules have no embedded magic
strings. Environment variables (optionally loaded from a ``.env`` file) only
change defaults; explicit CLI options always win.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


# Endpoints / headers
STORY_ENDPOINT = os.getenv("STORY_ARCHIVER_ENDPOINT", "https://stories.example.com/api/story/get")
STORY_ID_PARAM = "id"
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# Archive layout
ASSETS_DIRNAME = "assets"
STORY_JSON = "story.json"
STORY_JSON_ORIG = "story.json.orig"
ASSET_INDEX = "index"
TITLE_FILE = "title.js"
SCOPED_CSS_FILE = "story.css"
STAGING_DIRNAME = ".staging"
# Older releases archived every story into this fixed directory name.
LEGACY_ARCHIVE_DIRNAME = "story"
CSS_SCOPE_SELECTOR = "#story-container"

# Package data shipped with the archiver
_ROOT = Path(__file__).resolve().parents[1]
STATIC_RESOURCES_DIR = _ROOT / "data" / "static"
BUILD_ASSETS_DIR = _ROOT / "data" / "build"

# Assets every archive needs regardless of the story content.
FIXED_ASSETS = (
    {
        "url": os.getenv(
            "STORY_ARCHIVER_DIVIDER_URL",
            "https://stories.example.com/static/images/divider.png",
        ),
        "filename": "divider.png",
    },
)

# Run knobs
DEFAULT_CONCURRENCY = max(1, _env_int("STORY_ARCHIVER_CONCURRENCY", 1))
DEFAULT_RETRIES = max(0, _env_int("STORY_ARCHIVER_RETRIES", 3))
DEFAULT_MAX_ERRORS = max(0, _env_int("STORY_ARCHIVER_MAX_ERRORS", 10))
DEFAULT_TIMEOUT = _env_float("STORY_ARCHIVER_TIMEOUT", 30.0)
DEFAULT_DOWNLOADER = os.getenv("STORY_ARCHIVER_DOWNLOADER", "yt-dlp")
ARCHIVE_VIDEOS = _env_bool("STORY_ARCHIVER_VIDEOS", "1")
