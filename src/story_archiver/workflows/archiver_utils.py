"""Shared helper functions used by the archiving workflow."""

from __future__ import annotations

import hashlib
import os
import re
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

from .archiver_config import BUILD_ASSETS_DIR, DEFAULT_DOWNLOADER, STATIC_RESOURCES_DIR

_NAME_DROP_RE = re.compile(r"[^A-Za-z0-9_\- ]+")
_WHITESPACE_RE = re.compile(r"\s+")
_URL_TITLE_DROP_RE = re.compile(r"[^a-z0-9_-]+")
_HYPHEN_RUN_RE = re.compile(r"-{2,}")
_FILENAME_DROP_RE = re.compile(r"[^A-Za-z0-9_-]+")


def sanitize_story_name(name: str, story_id: Optional[int] = None) -> str:
    """Turn a display name into a stable directory name.

    Characters outside ``[A-Za-z0-9_- ]`` are dropped and whitespace runs
    become a single underscore; outer underscores are trimmed. Falls back
    to ``story_<id>`` when nothing survives.
    """

    cleaned = _NAME_DROP_RE.sub("", name or "").strip()
    cleaned = _WHITESPACE_RE.sub("_", cleaned).strip("_ ")
    if cleaned:
        return cleaned
    return f"story_{story_id}" if story_id is not None else "story"


def derive_url_title(name: str, fallback: str = "story") -> str:
    """Mechanical URL slug: lowercase, spaces to hyphens, URL-unsafe characters stripped."""

    slug = (name or "").strip().lower()
    slug = _WHITESPACE_RE.sub("-", slug)
    slug = _URL_TITLE_DROP_RE.sub("", slug)
    slug = _HYPHEN_RUN_RE.sub("-", slug).strip("-")
    return slug or fallback


def url_digest(url: str, length: int = 12) -> str:
    return hashlib.sha256((url or "").encode("utf-8")).hexdigest()[:length]


def asset_filename(url: str, *, suffix: Optional[str] = None) -> str:
    """Hash-qualified local filename for a remote URL.

    The digest keeps two different URLs sharing a basename from landing on
    the same path, while the same URL always maps to the same name.
    """

    try:
        path = unquote(urlparse(url).path or "")
    except ValueError:
        path = ""
    name = PurePosixPath(path).name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    stem = _FILENAME_DROP_RE.sub("_", stem).strip("_")[:60] or "asset"
    if suffix is None:
        ext = re.sub(r"[^A-Za-z0-9]", "", ext)[:8].lower()
        suffix = f".{ext}" if ext else ""
    return f"{stem}-{url_digest(url)}{suffix}"


def relative_posix(path: Path, root: Path) -> str:
    """Path of ``path`` relative to ``root`` with forward slashes."""

    return path.relative_to(root).as_posix()


def resolve_downloader(explicit: Optional[str]) -> Optional[str]:
    """Return an executable path for the video downloader, or None when absent."""

    candidate = (explicit or DEFAULT_DOWNLOADER or "").strip()
    if not candidate:
        return None
    if os.sep in candidate or (os.altsep and os.altsep in candidate):
        path = Path(candidate).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        return None
    return shutil.which(candidate)


def collect_environment_warnings(downloader: Optional[str] = None) -> List[Dict[str, str]]:
    """Advisory conditions worth surfacing before a run; none of them block it."""

    warnings: List[Dict[str, str]] = []
    if resolve_downloader(downloader) is None:
        warnings.append({
            "code": "downloader_missing",
            "message": "video downloader not found; linked videos stay remote",
            "remedy": "Install yt-dlp or pass --downloader /path/to/yt-dlp.",
        })
    if not os.getenv("STORY_ARCHIVER_ENDPOINT"):
        warnings.append({
            "code": "endpoint_default",
            "message": "STORY_ARCHIVER_ENDPOINT not set; using the built-in endpoint",
            "remedy": "",
        })
    for label, path in (("static_resources", STATIC_RESOURCES_DIR), ("build_assets", BUILD_ASSETS_DIR)):
        if not path.is_dir():
            warnings.append({
                "code": f"{label}_missing",
                "message": f"{path} is missing; the archive will lack viewer files",
                "remedy": "Reinstall story-archiver.",
            })
    return warnings


def sanity_check() -> None:
    assert sanitize_story_name("My Test! Story", 12345) == "My_Test_Story"
    assert sanitize_story_name("My_Test_Story", 12345) == "My_Test_Story"
    assert sanitize_story_name("!!!", 7) == "story_7"
    assert sanitize_story_name("___", 7) == "story_7"
    assert derive_url_title("My Test! Story") == "my-test-story"
    assert asset_filename("https://a.example/x/pic.PNG").endswith(".png")


sanity_check()

__all__ = [
    "sanitize_story_name",
    "derive_url_title",
    "url_digest",
    "asset_filename",
    "relative_posix",
    "resolve_downloader",
    "collect_environment_warnings",
    "sanity_check",
]
