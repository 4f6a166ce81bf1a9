"""Tests for the resumable package pipeline."""

from unittest.mock import MagicMock

import pytest

from conftest import write_rendition

from hls_packager import layout
from hls_packager import manifest as manifest_lib
from hls_packager.completion import package_complete, rendition_complete
from hls_packager.encoder import RenditionEncoder
from hls_packager.ladder import plan
from hls_packager.models import PackagerConfig, PackageStatus, SchedulerConfig
from hls_packager.pipeline import PackagePipeline
from hls_packager.probe import SourceMetadata


class SimulatedCrash(Exception):
    pass


def make_pipeline(fake_runner, config=None, progress=None):
    config = config or PackagerConfig()
    encoder = RenditionEncoder(config.encoding, config.runner, runner_factory=fake_runner)
    return PackagePipeline(config, encoder=encoder, progress=progress)


def test_fresh_package(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "out" / "clip"
    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.COMPLETED
    assert outcome.ok
    assert outcome.renditions == ["480p", "720p", "1080p"]
    assert outcome.encoded == ["480p", "720p", "1080p"]
    assert fake_runner.encoded_heights == [480, 720, 1080]
    assert package_complete(package_dir)

    text = (package_dir / layout.MANIFEST_NAME).read_text()
    assert text.startswith("#EXTM3U\n#EXT-X-VERSION:3\n")
    assert "RESOLUTION=1920x1080" in text


def test_second_run_is_a_no_op(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "clip"
    pipeline = make_pipeline(fake_runner)
    pipeline.run("clip.mp4", hd_metadata, package_dir)
    before = (package_dir / layout.MANIFEST_NAME).read_text()
    fake_runner.calls.clear()

    outcome = pipeline.run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.COMPLETED
    assert outcome.already_complete
    assert fake_runner.calls == []
    assert (package_dir / layout.MANIFEST_NAME).read_text() == before


def test_resume_reuses_complete_and_reencodes_incomplete(tmp_path, fake_runner, hd_metadata):
    """480p complete, 720p missing its last segment, 1080p never started."""
    package_dir = tmp_path / "clip"
    write_rendition(package_dir, "480p", segments=3)
    write_rendition(package_dir, "720p", segments=3, missing=1)
    reused_segment = package_dir / "480p" / (layout.SEGMENT_PATTERN % 0)
    mtime = reused_segment.stat().st_mtime_ns

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.COMPLETED
    assert outcome.reused == ["480p"]
    assert outcome.encoded == ["720p", "1080p"]
    assert fake_runner.encoded_heights == [720, 1080]
    assert reused_segment.stat().st_mtime_ns == mtime
    assert package_complete(package_dir)
    assert manifest_lib.load(package_dir).renditions == ["480p", "720p", "1080p"]


def test_manifest_listing_incomplete_rendition_is_rebuilt(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "clip"
    write_rendition(package_dir, "480p")
    write_rendition(package_dir, "720p", missing=1)
    (package_dir / layout.MANIFEST_NAME).write_text(
        "#EXTM3U\n#EXT-X-VERSION:3\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=1000000,RESOLUTION=854x480\n480p/playlist.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=2500000,RESOLUTION=1280x720\n720p/playlist.m3u8\n"
    )

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.ok
    assert fake_runner.encoded_heights == [720, 1080]


def test_corrupt_manifest_is_rebuilt(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "clip"
    package_dir.mkdir()
    (package_dir / layout.MANIFEST_NAME).write_text("not a playlist")

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.ok
    assert package_complete(package_dir)


def test_complete_package_with_different_ladder_is_extended(tmp_path, fake_runner, hd_metadata):
    """A complete manifest covering only part of the planned ladder is not skipped."""
    package_dir = tmp_path / "clip"
    write_rendition(package_dir, "480p")
    working = manifest_lib.append(manifest_lib.WorkingManifest(), plan(720, 1280)[0])
    manifest_lib.persist(package_dir, working)
    assert package_complete(package_dir)

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert not outcome.already_complete
    assert outcome.reused == ["480p"]
    assert fake_runner.encoded_heights == [720, 1080]


def test_failed_rendition_continue_policy(tmp_path, fake_runner, hd_metadata):
    fake_runner.failing_heights.add(720)
    package_dir = tmp_path / "clip"

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.PARTIAL
    assert set(outcome.failed) == {"720p"}
    assert "720p" in outcome.error
    assert outcome.renditions == ["480p", "1080p"]
    # Manifest only references complete renditions
    assert package_complete(package_dir)
    assert not rendition_complete(package_dir, "720p")


def test_failed_rendition_abort_policy(tmp_path, fake_runner, hd_metadata):
    fake_runner.failing_heights.add(720)
    config = PackagerConfig(scheduler=SchedulerConfig(on_rendition_failure="abort"))
    package_dir = tmp_path / "clip"

    outcome = make_pipeline(fake_runner, config).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.FAILED
    assert fake_runner.encoded_heights == [480, 720]
    assert manifest_lib.load(package_dir).renditions == ["480p"]


def test_all_renditions_fail(tmp_path, fake_runner, hd_metadata):
    fake_runner.failing_codecs.add("libx264")
    package_dir = tmp_path / "clip"

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.FAILED
    assert outcome.renditions == []
    assert not package_complete(package_dir)


def test_partial_package_retries_missing_rendition(tmp_path, fake_runner, hd_metadata):
    fake_runner.failing_heights.add(720)
    package_dir = tmp_path / "clip"
    pipeline = make_pipeline(fake_runner)
    pipeline.run("clip.mp4", hd_metadata, package_dir)

    fake_runner.failing_heights.clear()
    fake_runner.calls.clear()
    outcome = pipeline.run("clip.mp4", hd_metadata, package_dir)

    assert outcome.ok
    assert fake_runner.encoded_heights == [720]
    assert outcome.renditions == ["480p", "720p", "1080p"]


def test_manifest_is_persisted_after_each_rendition(tmp_path, fake_runner, hd_metadata):
    """Simulated crash: the third encode blows up; the manifest holds the first two."""
    package_dir = tmp_path / "clip"
    config = PackagerConfig()
    encoder = RenditionEncoder(config.encoding, config.runner, runner_factory=fake_runner)
    real_encode = encoder.encode

    def crashing_encode(source_path, spec, *args, **kwargs):
        if spec.height == 1080:
            raise SimulatedCrash
        return real_encode(source_path, spec, *args, **kwargs)

    encoder.encode = crashing_encode
    pipeline = PackagePipeline(config, encoder=encoder)

    with pytest.raises(SimulatedCrash):
        pipeline.run("clip.mp4", hd_metadata, package_dir)

    assert manifest_lib.load(package_dir).renditions == ["480p", "720p"]
    assert package_complete(package_dir)


def test_progress_slots_are_released(tmp_path, fake_runner, hd_metadata):
    progress = MagicMock()
    progress.open.side_effect = range(10)
    make_pipeline(fake_runner, progress=progress).run("clip.mp4", hd_metadata, tmp_path / "clip")

    assert progress.open.call_count == 3
    assert [c.args[0] for c in progress.close.call_args_list] == [0, 1, 2]


def test_small_source_gets_minimal_ladder(tmp_path, fake_runner):
    metadata = SourceMetadata(width=640, height=360, duration=5.0, bitrate=None)
    outcome = make_pipeline(fake_runner).run("tiny.mp4", metadata, tmp_path / "tiny")
    assert outcome.renditions == ["480p"]
    assert fake_runner.calls[0]["width"] == 854


def hidden_dirs(directory):
    return [p.name for p in directory.iterdir() if p.is_dir() and p.name.startswith(".")]


def test_leftovers_from_interrupted_run_are_removed(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "out" / "clip"
    write_rendition(package_dir, ".720p.tmp-deadbeef", missing=1)
    write_rendition(package_dir, ".480p.stale-cafef00d", missing=1)

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.status == PackageStatus.COMPLETED
    assert hidden_dirs(package_dir) == []
    assert package_complete(package_dir)


def test_leftovers_removed_even_when_package_is_complete(tmp_path, fake_runner, hd_metadata):
    package_dir = tmp_path / "out" / "clip"
    make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)
    write_rendition(package_dir, ".1080p.tmp-0badf00d")

    outcome = make_pipeline(fake_runner).run("clip.mp4", hd_metadata, package_dir)

    assert outcome.already_complete
    assert hidden_dirs(package_dir) == []
