"""Helpers that write the non-fetched parts of an archive."""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List

from .archiver_config import ASSET_INDEX, STORY_JSON, TITLE_FILE
from .archiver_utils import relative_posix
from .asset_fetch import PARTIAL_SUFFIX

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + PARTIAL_SUFFIX)
    try:
        partial.write_text(text, encoding="utf-8")
        os.replace(partial, path)
    finally:
        partial.unlink(missing_ok=True)


def persist_story_json(story: Dict[str, Any], archive_dir: Path) -> Path:
    path = archive_dir / STORY_JSON
    write_text_atomic(path, json.dumps(story, ensure_ascii=False, indent=2) + "\n")
    logger.info("wrote %s", path)
    return path


def copy_resources(source_dir: Path, archive_dir: Path) -> List[Path]:
    """Copy every file under ``source_dir`` into ``archive_dir``, keeping the layout."""

    copied: List[Path] = []
    if not source_dir.is_dir():
        logger.warning("resource directory %s is missing; nothing copied", source_dir)
        return copied
    for src in sorted(source_dir.rglob("*")):
        if not src.is_file() or src.name.startswith(".") or src.name == "__init__.py":
            continue
        target = archive_dir / src.relative_to(source_dir)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, target)
        copied.append(target)
    logger.info("copied %d file(s) from %s", len(copied), source_dir)
    return copied


def list_assets(assets_dir: Path, archive_dir: Path) -> List[str]:
    entries: List[str] = []
    if not assets_dir.is_dir():
        return entries
    for path in assets_dir.rglob("*"):
        if not path.is_file():
            continue
        if path.name.endswith(PARTIAL_SUFFIX):
            continue
        if path.parent == assets_dir and path.name == ASSET_INDEX:
            continue
        entries.append(relative_posix(path, archive_dir))
    return sorted(entries)


def write_asset_index(assets_dir: Path, archive_dir: Path) -> Path:
    """List every archived asset (relative to the archive root), one per line."""

    entries = list_assets(assets_dir, archive_dir)
    path = assets_dir / ASSET_INDEX
    write_text_atomic(path, "".join(f"{entry}\n" for entry in entries))
    logger.info("indexed %d asset(s) in %s", len(entries), path)
    return path


def render_title_module(title: str, url_title: str) -> str:
    return (
        f"export const title = {json.dumps(title, ensure_ascii=False)};\n"
        f"export const urlTitle = {json.dumps(url_title, ensure_ascii=False)};\n"
    )


def write_title_file(archive_dir: Path, title: str, url_title: str) -> bool:
    """Create the title module once; an existing one (possibly hand-edited) is kept."""

    path = archive_dir / TITLE_FILE
    if path.exists():
        logger.info("keeping existing %s", path)
        return False
    write_text_atomic(path, render_title_module(title, url_title))
    logger.info("wrote %s", path)
    return True


def write_scoped_css(path: Path, css: str) -> Path:
    write_text_atomic(path, css)
    logger.info("wrote %s", path)
    return path
