"""Resolve a story identifier to its metadata and on-disk archive location."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.keys import K_ID, K_NAME, K_TITLE, K_URL_TITLE
from .archiver_config import (
    ASSETS_DIRNAME,
    LEGACY_ARCHIVE_DIRNAME,
    STAGING_DIRNAME,
    STORY_ENDPOINT,
    STORY_ID_PARAM,
    STORY_JSON,
    STORY_JSON_ORIG,
    TITLE_FILE,
    USER_AGENT,
)
from .archiver_utils import derive_url_title, sanitize_story_name
from .asset_fetch import POLICY_KEEP, POLICY_OVERWRITE

logger = logging.getLogger(__name__)

PostFunc = Callable[[str, Dict[str, str], float], bytes]

_TITLE_EXPORT_RE = re.compile(
    r"""export\s+const\s+(?P<key>\w+)\s*=\s*(?P<value>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""",
)


class StoryNotSpecifiedError(RuntimeError):
    """No story identifier was given and none could be recovered from disk."""


class MetadataFetchError(RuntimeError):
    """Story metadata could not be fetched or is unusable."""


class DestinationCollisionError(RuntimeError):
    """Two different remote URLs were assigned the same local path."""


@dataclass(frozen=True)
class ArchiveLocation:
    archive_dir: Path
    assets_dir: Path

    @classmethod
    def for_story(cls, out_root: Path, story: Dict[str, Any]) -> "ArchiveLocation":
        story_id = story.get(K_ID)
        archive_dir = out_root / sanitize_story_name(str(story.get(K_NAME) or ""), story_id)
        return cls(archive_dir=archive_dir, assets_dir=archive_dir / ASSETS_DIRNAME)


@dataclass(frozen=True)
class TitleInfo:
    title: Optional[str]
    url_title: str


@dataclass
class RunContext:
    """Everything the stages share for one run, created once by the resolver."""

    story_id: int
    story: Dict[str, Any]
    location: ArchiveLocation
    url_title: str
    claimed: Dict[Path, str] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.story.get(K_NAME) or "")

    def claim(self, destination: Path, url: str) -> None:
        """Reserve ``destination`` for ``url`` for the rest of the run."""

        owner = self.claimed.setdefault(destination, url)
        if owner != url:
            raise DestinationCollisionError(
                f"{destination} is already assigned to {owner}; refusing to reuse it for {url}"
            )


# ---------------------------------------------------------------------------
# Identifier resolution
# ---------------------------------------------------------------------------


def default_metadata_candidates(out_root: Path) -> List[Path]:
    return [out_root / STORY_JSON, out_root / LEGACY_ARCHIVE_DIRNAME / STORY_JSON]


def read_story_id(path: Path) -> Optional[int]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("unable to read %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    try:
        return int(data[K_ID])
    except (KeyError, TypeError, ValueError):
        return None


def archived_story_ids(out_root: Path) -> Dict[int, List[Path]]:
    """Story ids held by the archive directories directly under ``out_root``."""

    found: Dict[int, List[Path]] = {}
    if not out_root.is_dir():
        return found
    for child in sorted(out_root.iterdir()):
        if not child.is_dir() or child.name == STAGING_DIRNAME:
            continue
        for name in (STORY_JSON, STORY_JSON_ORIG):
            story_id = read_story_id(child / name)
            if story_id is not None:
                found.setdefault(story_id, []).append(child)
                break
    return found


def resolve_story_id(explicit: Optional[int], out_root: Path) -> int:
    if explicit is not None:
        return int(explicit)
    for candidate in default_metadata_candidates(out_root):
        if not candidate.exists():
            continue
        story_id = read_story_id(candidate)
        if story_id is not None:
            logger.info("using story %d from %s", story_id, candidate)
            return story_id
    found = archived_story_ids(out_root)
    if len(found) == 1:
        story_id, dirs = next(iter(found.items()))
        logger.info("using story %d from %s", story_id, dirs[0])
        return story_id
    if found:
        listing = ", ".join(f"{sid} ({dirs[0].name})" for sid, dirs in sorted(found.items()))
        raise StoryNotSpecifiedError(f"several archived stories under {out_root}: {listing}; pass a story id")
    raise StoryNotSpecifiedError("no story specified and no previous archive found")


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


def _default_post(endpoint: str, data: Dict[str, str], timeout: float) -> bytes:
    resp = requests.post(endpoint, data=data, timeout=timeout, headers={"User-Agent": USER_AGENT})
    resp.raise_for_status()
    return resp.content


def staging_path(out_root: Path, story_id: int) -> Path:
    return out_root / STAGING_DIRNAME / f"story_{story_id}.json.orig"


def _parse_story(raw: bytes, source: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MetadataFetchError(f"unreadable story metadata from {source}: {exc}") from exc
    if not isinstance(data, dict) or K_ID not in data or K_NAME not in data:
        raise MetadataFetchError(f"story metadata from {source} lacks '{K_ID}' or '{K_NAME}'")
    return data


def load_story(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise MetadataFetchError(f"unreadable story metadata at {path}: {exc}") from exc
    return _parse_story(raw, str(path))


def find_existing_archives(out_root: Path, story_id: int) -> List[Path]:
    """Archive directories under ``out_root`` already holding metadata for ``story_id``."""

    if not out_root.is_dir():
        return []
    return [
        child
        for child in sorted(out_root.iterdir())
        if child.is_dir()
        and child.name != STAGING_DIRNAME
        and read_story_id(child / STORY_JSON_ORIG) == story_id
    ]


def find_existing_archive(out_root: Path, story_id: int) -> Optional[Path]:
    existing = find_existing_archives(out_root, story_id)
    return existing[0] if existing else None


def fetch_story_metadata(
    story_id: int,
    staged: Path,
    policy: str,
    *,
    endpoint: str = STORY_ENDPOINT,
    retries: int = 3,
    timeout: float = 30.0,
    backoff: float = 0.8,
    post: Optional[PostFunc] = None,
) -> Path:
    """Fetch raw story JSON into ``staged``; ``keep`` reuses an existing staged copy."""

    if policy == POLICY_KEEP and staged.exists():
        logger.info("reusing staged metadata %s", staged)
        return staged
    poster = post or _default_post
    staged.parent.mkdir(parents=True, exist_ok=True)
    last_exc: Optional[Exception] = None
    delay = backoff
    for attempt in range(1, max(0, retries) + 2):
        try:
            payload = poster(endpoint, {STORY_ID_PARAM: str(story_id)}, timeout)
            break
        except requests.RequestException as exc:
            last_exc = exc
            logger.warning("metadata fetch attempt %d for story %d failed: %s", attempt, story_id, exc)
            if attempt <= retries and delay > 0:
                time.sleep(delay)
                delay = min(delay * 2, 6.0)
    else:
        raise MetadataFetchError(f"could not fetch story {story_id} from {endpoint}: {last_exc}")

    _parse_story(payload, endpoint)

    partial = staged.with_name(staged.name + ".part")
    try:
        partial.write_bytes(payload)
        os.replace(partial, staged)
    finally:
        partial.unlink(missing_ok=True)
    logger.info("fetched metadata for story %d (%d bytes)", story_id, len(payload))
    return staged


# ---------------------------------------------------------------------------
# Title module
# ---------------------------------------------------------------------------


def _js_string(literal: str) -> str:
    if literal.startswith("'"):
        return literal[1:-1].replace("\\'", "'")
    return json.loads(literal)


def read_title_file(path: Path) -> Optional[TitleInfo]:
    """Exports of a previously generated title module, or None when absent or unusable."""

    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    values: Dict[str, str] = {}
    for match in _TITLE_EXPORT_RE.finditer(text):
        try:
            values[match.group("key")] = _js_string(match.group("value"))
        except json.JSONDecodeError:
            continue
    url_title = values.get(K_URL_TITLE)
    if not url_title:
        return None
    return TitleInfo(title=values.get(K_TITLE), url_title=url_title)


def resolve_url_title(archive_dir: Path, name: str, story_id: Optional[int] = None) -> str:
    previous = read_title_file(archive_dir / TITLE_FILE)
    if previous is not None:
        return previous.url_title
    return derive_url_title(name, fallback=f"story-{story_id}" if story_id is not None else "story")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def warn_stale_archives(out_root: Path, location: ArchiveLocation, story_id: int) -> List[Path]:
    """Report archives of the same story (or the legacy default one) living elsewhere."""

    current = location.archive_dir.resolve()
    stale: List[Path] = []
    legacy = out_root / LEGACY_ARCHIVE_DIRNAME
    if legacy.is_dir() and any((legacy / name).exists() for name in (STORY_JSON, STORY_JSON_ORIG)):
        stale.append(legacy)
    for other in find_existing_archives(out_root, story_id):
        if other not in stale:
            stale.append(other)
    stale = [path for path in stale if path.resolve() != current]
    for path in stale:
        logger.warning(
            "an older archive exists at %s; it is left untouched (remove it once %s looks right)",
            path,
            location.archive_dir,
        )
    return stale


def resolve_archive(
    story_id: Optional[int],
    out_root: Path,
    *,
    force_update: bool = False,
    endpoint: str = STORY_ENDPOINT,
    retries: int = 3,
    timeout: float = 30.0,
    backoff: float = 0.8,
    post: Optional[PostFunc] = None,
) -> RunContext:
    """Resolve identifier, metadata and archive location for one run."""

    resolved_id = resolve_story_id(story_id, out_root)
    staged = staging_path(out_root, resolved_id)
    policy = POLICY_OVERWRITE if force_update else POLICY_KEEP

    if not force_update and not staged.exists():
        existing = find_existing_archive(out_root, resolved_id)
        if existing is not None:
            logger.info("reusing metadata from %s", existing)
            staged.parent.mkdir(parents=True, exist_ok=True)
            staged.write_bytes((existing / STORY_JSON_ORIG).read_bytes())

    fetch_story_metadata(
        resolved_id,
        staged,
        policy,
        endpoint=endpoint,
        retries=retries,
        timeout=timeout,
        backoff=backoff,
        post=post,
    )
    story = load_story(staged)
    location = ArchiveLocation.for_story(out_root, story)
    location.assets_dir.mkdir(parents=True, exist_ok=True)

    os.replace(staged, location.archive_dir / STORY_JSON_ORIG)
    try:
        staged.parent.rmdir()
    except OSError:
        pass

    warn_stale_archives(out_root, location, resolved_id)
    url_title = resolve_url_title(location.archive_dir, str(story.get(K_NAME) or ""), resolved_id)
    logger.info("archiving story %d into %s", resolved_id, location.archive_dir)
    return RunContext(
        story_id=resolved_id,
        story=story,
        location=location,
        url_title=url_title,
    )
