import json

from story_archiver.workflows.archive_utils import (
    copy_resources,
    persist_story_json,
    render_title_module,
    write_asset_index,
    write_title_file,
)


def test_asset_index_is_sorted_and_relative_to_archive(tmp_path):
    assets = tmp_path / "assets"
    (assets / "nested").mkdir(parents=True)
    (assets / "b.png").write_bytes(b"b")
    (assets / "a.png").write_bytes(b"a")
    (assets / "nested" / "c.css").write_text("c")
    (assets / "d.png.part").write_bytes(b"partial")

    index = write_asset_index(assets, tmp_path)

    assert index == assets / "index"
    assert index.read_text().splitlines() == ["assets/a.png", "assets/b.png", "assets/nested/c.css"]
    # Re-running does not list the index itself.
    write_asset_index(assets, tmp_path)
    assert "assets/index" not in index.read_text()


def test_title_file_is_never_overwritten(tmp_path):
    assert write_title_file(tmp_path, 'A "quoted" title', "a-quoted-title")
    first = (tmp_path / "title.js").read_text()
    assert first == render_title_module('A "quoted" title', "a-quoted-title")
    assert 'export const title = "A \\"quoted\\" title";' in first

    (tmp_path / "title.js").write_text("// hand edited\n")
    assert not write_title_file(tmp_path, "Other", "other")
    assert (tmp_path / "title.js").read_text() == "// hand edited\n"


def test_persist_story_json_is_pretty_printed(tmp_path):
    path = persist_story_json({"id": 1, "name": "Ünïcode"}, tmp_path)
    text = path.read_text(encoding="utf-8")
    assert text.startswith('{\n  "id": 1')
    assert json.loads(text)["name"] == "Ünïcode"


def test_copy_resources_keeps_layout_and_skips_hidden(tmp_path):
    src = tmp_path / "src"
    (src / "js").mkdir(parents=True)
    (src / "index.html").write_text("<html></html>")
    (src / "js" / "app.js").write_text("//")
    (src / ".DS_Store").write_text("")
    dest = tmp_path / "archive"

    copied = copy_resources(src, dest)

    assert sorted(p.relative_to(dest).as_posix() for p in copied) == ["index.html", "js/app.js"]
    assert not (dest / ".DS_Store").exists()


def test_copy_resources_missing_source_is_a_noop(tmp_path):
    assert copy_resources(tmp_path / "nope", tmp_path / "archive") == []
