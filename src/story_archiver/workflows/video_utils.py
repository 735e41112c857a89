"""YouTube link detection and downloads through an external downloader executable."""

from __future__ import annotations

import asyncio
from asyncio.subprocess import PIPE as SUBPROCESS_PIPE
import logging
import re
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_YOUTUBE_RE = re.compile(
    r"^(?:https?:)?//(?:www\.|m\.)?"
    r"(?:youtube\.com/(?:embed/|shorts/|v/|watch\?(?:.*&)?v=)"
    r"|youtube-nocookie\.com/embed/"
    r"|youtu\.be/)"
    r"(?P<id>[A-Za-z0-9_-]{6,})",
    re.IGNORECASE,
)


class VideoDownloadError(RuntimeError):
    """The downloader executable could not produce the requested file."""


def youtube_video_id(url: str) -> Optional[str]:
    match = _YOUTUBE_RE.match((url or "").strip())
    return match.group("id") if match else None


def is_video_url(url: str) -> bool:
    return youtube_video_id(url) is not None


def canonical_video_url(url: str) -> str:
    """Watch URL for a video link; embed/short forms all collapse to one URL."""

    video_id = youtube_video_id(url)
    if video_id is None:
        return url
    return f"https://www.youtube.com/watch?v={video_id}"


class VideoDownloader:
    """Run a yt-dlp compatible executable to fetch one video into one file."""

    def __init__(self, executable: str, *, video_format: str = "mp4/best") -> None:
        self.executable = executable
        self.video_format = video_format

    def build_command(self, url: str, destination: Path) -> List[str]:
        return [
            self.executable,
            "--quiet",
            "--no-warnings",
            "--no-playlist",
            "--no-part",
            "--force-overwrites",
            "-f",
            self.video_format,
            "-o",
            str(destination),
            url,
        ]

    async def download(self, url: str, destination: Path) -> None:
        cmd = self.build_command(url, destination)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=SUBPROCESS_PIPE,
                stderr=SUBPROCESS_PIPE,
            )
        except FileNotFoundError as exc:
            raise VideoDownloadError(f"downloader not found: {self.executable}") from exc
        _stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "ignore").strip()[:500] if stderr else ""
            raise VideoDownloadError(f"{self.executable} exited with {proc.returncode}: {detail}")
        if not destination.exists():
            raise VideoDownloadError(f"{self.executable} produced no file for {url}")
        logger.debug("downloaded video %s via %s", url, self.executable)
