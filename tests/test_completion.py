"""Tests for filesystem completion probing."""

from conftest import write_rendition

from hls_packager import layout
from hls_packager.completion import (
    FilesystemCompletionProbe,
    package_complete,
    rendition_complete,
)


def write_manifest(package_dir, renditions, header=True):
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"] if header else []
    for name in renditions:
        lines.append("#EXT-X-STREAM-INF:BANDWIDTH=1000000,RESOLUTION=854x480")
        lines.append(f"{name}/playlist.m3u8")
    (package_dir / layout.MANIFEST_NAME).write_text("\n".join(lines) + "\n")


def test_rendition_complete(tmp_path):
    write_rendition(tmp_path, "480p", segments=3)
    assert rendition_complete(tmp_path, "480p") is True


def test_rendition_missing_directory(tmp_path):
    assert rendition_complete(tmp_path, "720p") is False


def test_rendition_missing_segment(tmp_path):
    write_rendition(tmp_path, "720p", segments=3, missing=1)
    assert rendition_complete(tmp_path, "720p") is False


def test_rendition_index_without_segments(tmp_path):
    rendition_dir = tmp_path / "480p"
    rendition_dir.mkdir()
    (rendition_dir / layout.INDEX_NAME).write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
    assert rendition_complete(tmp_path, "480p") is False


def test_package_complete(tmp_path):
    write_rendition(tmp_path, "480p")
    write_rendition(tmp_path, "720p")
    write_manifest(tmp_path, ["480p", "720p"])
    assert package_complete(tmp_path) is True


def test_package_without_manifest(tmp_path):
    write_rendition(tmp_path, "480p")
    assert package_complete(tmp_path) is False


def test_package_manifest_without_header(tmp_path):
    write_rendition(tmp_path, "480p")
    write_manifest(tmp_path, ["480p"], header=False)
    assert package_complete(tmp_path) is False


def test_package_manifest_references_missing_index(tmp_path):
    write_rendition(tmp_path, "480p")
    write_manifest(tmp_path, ["480p", "720p"])
    assert package_complete(tmp_path) is False
    assert FilesystemCompletionProbe().manifest_renditions(tmp_path) is None


def test_package_with_incomplete_rendition(tmp_path):
    write_rendition(tmp_path, "480p")
    write_rendition(tmp_path, "720p", segments=2, missing=1)
    write_manifest(tmp_path, ["480p", "720p"])
    assert package_complete(tmp_path) is False


def test_empty_manifest_is_not_complete(tmp_path):
    write_manifest(tmp_path, [])
    assert package_complete(tmp_path) is False


def test_manifest_renditions(tmp_path):
    write_rendition(tmp_path, "480p")
    write_rendition(tmp_path, "720p")
    write_manifest(tmp_path, ["480p", "720p"])
    assert FilesystemCompletionProbe().manifest_renditions(tmp_path) == ["480p", "720p"]


def test_missing_package_dir_never_raises(tmp_path):
    probe = FilesystemCompletionProbe()
    missing = tmp_path / "nope"
    assert probe.package_complete(missing) is False
    assert probe.rendition_complete(missing, "480p") is False
    assert probe.manifest_renditions(missing) is None
