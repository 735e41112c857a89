import asyncio

import pytest

from story_archiver.workflows import video_utils
from story_archiver.workflows.video_utils import (
    VideoDownloadError,
    VideoDownloader,
    canonical_video_url,
    is_video_url,
    youtube_video_id,
)


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ?autoplay=1",
        "//www.youtube-nocookie.com/embed/dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://m.youtube.com/shorts/dQw4w9WgXcQ",
    ],
)
def test_youtube_forms_share_one_canonical_url(url):
    assert youtube_video_id(url) == "dQw4w9WgXcQ"
    assert canonical_video_url(url) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def test_non_video_urls():
    assert not is_video_url("https://vimeo.com/123456")
    assert not is_video_url("https://cdn.example.com/youtube.com/embed/x.png")
    assert canonical_video_url("https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"


def test_build_command_targets_destination(tmp_path):
    dest = tmp_path / "v.mp4.part"
    cmd = VideoDownloader("yt-dlp").build_command("https://youtu.be/dQw4w9WgXcQ", dest)
    assert cmd[0] == "yt-dlp"
    assert cmd[-1] == "https://youtu.be/dQw4w9WgXcQ"
    assert cmd[cmd.index("-o") + 1] == str(dest)


def test_download_missing_executable_raises(tmp_path):
    downloader = VideoDownloader(str(tmp_path / "no-such-downloader"))
    with pytest.raises(VideoDownloadError):
        asyncio.run(downloader.download("https://youtu.be/dQw4w9WgXcQ", tmp_path / "v.mp4"))


def test_download_nonzero_exit_raises(tmp_path, monkeypatch):
    class FakeProc:
        returncode = 1

        async def communicate(self):
            return b"", b"ERROR: video unavailable"

    async def fake_exec(*cmd, **kwargs):
        return FakeProc()

    monkeypatch.setattr(video_utils.asyncio, "create_subprocess_exec", fake_exec)
    downloader = VideoDownloader("yt-dlp")
    with pytest.raises(VideoDownloadError) as excinfo:
        asyncio.run(downloader.download("https://youtu.be/dQw4w9WgXcQ", tmp_path / "v.mp4"))
    assert "video unavailable" in str(excinfo.value)


def test_download_success_requires_file(tmp_path, monkeypatch):
    dest = tmp_path / "v.mp4"

    class FakeProc:
        returncode = 0

        async def communicate(self):
            dest.write_bytes(b"video")
            return b"", b""

    async def fake_exec(*cmd, **kwargs):
        return FakeProc()

    monkeypatch.setattr(video_utils.asyncio, "create_subprocess_exec", fake_exec)
    asyncio.run(VideoDownloader("yt-dlp").download("https://youtu.be/dQw4w9WgXcQ", dest))
    assert dest.read_bytes() == b"video"
