from pathlib import Path

import pytest

from hls_packager import layout
from hls_packager.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from hls_packager.probe import SourceMetadata


def write_rendition(package_dir: Path, name: str, segments: int = 2, missing: int = 0) -> Path:
    """Lay out a rendition directory; the last `missing` segments are listed but not written."""
    rendition_dir = Path(package_dir) / name
    rendition_dir.mkdir(parents=True, exist_ok=True)
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10"]
    for i in range(segments):
        segment = layout.SEGMENT_PATTERN % i
        lines.extend(["#EXTINF:10.0,", segment])
        if i < segments - missing:
            (rendition_dir / segment).write_bytes(b"\x47" * 188)
    lines.append("#EXT-X-ENDLIST")
    (rendition_dir / layout.INDEX_NAME).write_text("\n".join(lines) + "\n")
    return rendition_dir


class FakeRunner:
    """Stands in for FfmpegRunner: writes an HLS index and segments, or fails.

    Codecs in factory.partial_codecs write the index and the first segment,
    then fail (or raise factory.partial_error, if set).
    """

    def __init__(self, factory, progress_callback=None):
        self.factory = factory
        self.progress_callback = progress_callback

    def encode_hls(self, expected_duration=None, **kwargs):
        self.factory.calls.append(kwargs)
        codec = kwargs["codec"]
        height = kwargs["height"]
        if codec in self.factory.failing_codecs or height in self.factory.failing_heights:
            return self._failed(codec)

        if codec in self.factory.partial_codecs:
            self._write_output(kwargs, written=1)
            if self.factory.partial_error is not None:
                raise self.factory.partial_error
            return self._failed(codec)

        self._write_output(kwargs, written=self.factory.segments)
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.01)

    def _write_output(self, kwargs, written):
        index = Path(kwargs["index_path"])
        lines = ["#EXTM3U"]
        for i in range(self.factory.segments):
            segment = Path(kwargs["segment_pattern"] % i)
            if i < written:
                segment.write_bytes(b"\x47" * 188)
            lines.extend(["#EXTINF:10.0,", segment.name])
        lines.append("#EXT-X-ENDLIST")
        index.write_text("\n".join(lines) + "\n")

    @staticmethod
    def _failed(codec):
        return FfmpegResult(
            success=False,
            returncode=1,
            stderr=f"{codec} exploded",
            duration_s=0.0,
            error_type=FfmpegErrorType.TRANSIENT,
        )


class FakeRunnerFactory:
    def __init__(self, segments=2):
        self.segments = segments
        self.failing_codecs = set()
        self.failing_heights = set()
        self.partial_codecs = set()
        self.partial_error = None
        self.calls = []

    def __call__(self, progress_callback=None):
        return FakeRunner(self, progress_callback)

    @property
    def encoded_heights(self):
        return [c["height"] for c in self.calls]

    @property
    def codecs(self):
        return [c["codec"] for c in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunnerFactory()


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "videos" / "clip.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def hd_metadata():
    return SourceMetadata(width=1280, height=720, duration=60.0, bitrate=2_000_000, codec_name="h264")
