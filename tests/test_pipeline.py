import json

import aiohttp
import requests

from story_archiver.workflows.archiver_utils import asset_filename
from story_archiver.workflows.asset_fetch import AssetFetcher
from story_archiver.workflows.pipeline import (
    EXIT_METADATA,
    EXIT_NO_STORY,
    EXIT_OK,
    EXIT_THRESHOLD,
    ArchiveOptions,
    PipelineState,
    run_archive_pipeline,
)

IMG = "https://cdn.example.com/img/a.png"
COVER = "https://cdn.example.com/cover.jpg"
BG = "https://cdn.example.com/bg.jpg"
VIDEO = "https://www.youtube.com/embed/dQw4w9WgXcQ"

STORY = {
    "id": 12345,
    "name": "My Test! Story",
    "images": [{"url": IMG}, {"url": IMG}],
    "cover_image": COVER,
    "css": f"body {{ background: url('{BG}'); }}\n.choice {{ color: red; }}",
    "html_elements": [
        {"html": f'<p><img src="{IMG}"></p>'},
        {"html": f'<iframe src="{VIDEO}"></iframe>'},
    ],
    "extra": {"kept": True},
}


def _post(story=STORY):
    def post(endpoint, data, timeout):
        assert data == {"id": str(story["id"])}
        return json.dumps(story).encode()

    return post


def _options(tmp_path, **kwargs):
    kwargs.setdefault("story_id", 12345)
    kwargs.setdefault("archive_videos", False)
    kwargs.setdefault("backoff_initial", 0.0)
    return ArchiveOptions(out_root=tmp_path, **kwargs)


def _fake_fetch(monkeypatch, fail=()):
    seen = []

    async def fake_fetch_once(self, session, url):
        seen.append(url)
        if url in fail or "*" in fail:
            raise aiohttp.ClientConnectionError("down")
        return f"payload for {url}".encode()

    monkeypatch.setattr(AssetFetcher, "_fetch_once", fake_fetch_once, raising=False)
    return seen


def test_end_to_end_archive(tmp_path, monkeypatch):
    seen = _fake_fetch(monkeypatch)

    result = run_archive_pipeline(_options(tmp_path), post=_post())

    assert result.state is PipelineState.COMPLETED
    assert result.exit_code == EXIT_OK
    archive = tmp_path / "My_Test_Story"
    assert result.archive_dir == archive
    assert (archive / "assets").is_dir()

    # Duplicate references produce one fetch; the fixed divider is fetched too.
    assert seen.count(IMG) == 1
    assert set(seen) >= {IMG, COVER, BG}
    assert (archive / "assets" / "divider.png").exists()

    local_img = f"assets/{asset_filename(IMG)}"
    story = json.loads((archive / "story.json").read_text(encoding="utf-8"))
    assert [image["url"] for image in story["images"]] == [local_img, local_img]
    assert story["cover_image"] == f"assets/{asset_filename(COVER)}"
    assert f"url('assets/{asset_filename(BG)}')" in story["css"]
    assert story["html_elements"][0]["html"] == f'<p><img src="{local_img}"></p>'
    # No downloader: the video link stays remote.
    assert VIDEO in story["html_elements"][1]["html"]
    assert story["extra"] == {"kept": True}

    assert json.loads((archive / "story.json.orig").read_text()) == STORY
    scoped = (archive / "story.css").read_text()
    assert scoped.startswith("#story-container {")
    assert "#story-container .choice" in scoped

    index = (archive / "assets" / "index").read_text().splitlines()
    assert index == sorted(index)
    assert local_img in index
    assert "assets/divider.png" in index

    title = (archive / "title.js").read_text()
    assert 'export const urlTitle = "my-test-story";' in title
    assert (archive / "index.html").exists()
    assert (archive / "bb.js").exists()
    assert result.stages[-1] == "copy_build_assets"


def test_rerun_keeps_title_file_and_existing_assets(tmp_path, monkeypatch):
    _fake_fetch(monkeypatch)
    run_archive_pipeline(_options(tmp_path), post=_post())
    archive = tmp_path / "My_Test_Story"
    custom = 'export const title = "Renamed";\nexport const urlTitle = "renamed-story";\n'
    (archive / "title.js").write_text(custom)

    seen = _fake_fetch(monkeypatch)

    def no_post(endpoint, data, timeout):
        raise AssertionError("metadata must be reused")

    result = run_archive_pipeline(_options(tmp_path), post=no_post)

    assert result.exit_code == EXIT_OK
    assert result.context.url_title == "renamed-story"
    assert (archive / "title.js").read_text() == custom
    assert seen == []


def test_threshold_aborts_and_keeps_partial_archive(tmp_path, monkeypatch):
    story = dict(STORY, images=[{"url": f"https://cdn.example.com/{i}.png"} for i in range(5)])
    seen = _fake_fetch(monkeypatch, fail=("*",))

    result = run_archive_pipeline(
        _options(tmp_path, max_errors=2, retries=0, concurrency=1),
        post=_post(story),
    )

    assert result.state is PipelineState.ABORTED
    assert result.exit_code == EXIT_THRESHOLD
    assert len(seen) == 3
    assert result.outcome.failures == 3
    assert result.stages[-1] == "archive_story_images"
    archive = tmp_path / "My_Test_Story"
    assert (archive / "story.json.orig").exists()
    assert not (archive / "story.json").exists()
    summary = result.to_dict()
    assert summary["state"] == "aborted"
    assert len(summary["failed_urls"]) == 3


def test_tolerated_failures_keep_remote_urls(tmp_path, monkeypatch):
    _fake_fetch(monkeypatch, fail=(COVER,))

    result = run_archive_pipeline(_options(tmp_path, retries=0), post=_post())

    assert result.exit_code == EXIT_OK
    assert result.outcome.failures == 1
    story = json.loads((tmp_path / "My_Test_Story" / "story.json").read_text())
    assert story["cover_image"] == COVER


def test_missing_story_id_exits_with_usage_code(tmp_path):
    result = run_archive_pipeline(_options(tmp_path, story_id=None))
    assert result.state is PipelineState.ABORTED
    assert result.exit_code == EXIT_NO_STORY
    assert result.context is None


def test_metadata_failure_exit_code(tmp_path):
    def down(endpoint, data, timeout):
        raise requests.ConnectionError("down")

    result = run_archive_pipeline(_options(tmp_path, retries=0), post=down)
    assert result.exit_code == EXIT_METADATA
    assert "12345" in result.error


def test_rerun_without_story_id_finds_previous_archive(tmp_path, monkeypatch):
    _fake_fetch(monkeypatch)
    first = run_archive_pipeline(_options(tmp_path), post=_post())
    assert first.exit_code == EXIT_OK

    def no_post(endpoint, data, timeout):
        raise AssertionError("metadata must be reused")

    second = run_archive_pipeline(_options(tmp_path, story_id=None), post=no_post)

    assert second.exit_code == EXIT_OK
    assert second.context.story_id == 12345
    assert second.archive_dir == tmp_path / "My_Test_Story"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["My_Test_Story"]
