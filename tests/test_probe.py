"""Tests for ffprobe-based source inspection."""

import json
import subprocess
from unittest.mock import patch

import pytest

from hls_packager.probe import SourceMetadata, SourceProbeError, parse_probe_output, probe_source


def ffprobe_json(streams, duration="62.5", bit_rate="4000000"):
    return {"streams": streams, "format": {"duration": duration, "bit_rate": bit_rate}}


VIDEO = {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080}
AUDIO = {"codec_type": "audio", "codec_name": "aac"}


def test_parse_video_stream():
    meta = parse_probe_output(ffprobe_json([AUDIO, VIDEO]))
    assert meta == SourceMetadata(width=1920, height=1080, duration=62.5, bitrate=4000000, codec_name="h264")


def test_parse_skips_cover_art():
    cover = {"codec_type": "video", "codec_name": "mjpeg", "width": 600, "height": 600,
             "disposition": {"attached_pic": 1}}
    meta = parse_probe_output(ffprobe_json([cover, VIDEO]))
    assert (meta.width, meta.height) == (1920, 1080)


def test_parse_falls_back_to_stream_duration():
    stream = dict(VIDEO, duration="12.0")
    meta = parse_probe_output({"streams": [stream], "format": {}})
    assert meta.duration == 12.0
    assert meta.bitrate is None


def test_parse_unknown_bitrate_and_duration():
    meta = parse_probe_output(ffprobe_json([VIDEO], duration="N/A", bit_rate="N/A"))
    assert meta.bitrate is None
    assert meta.duration == 0.0


def test_parse_audio_only_rejected():
    with pytest.raises(SourceProbeError, match="No video stream"):
        parse_probe_output(ffprobe_json([AUDIO]))


def test_parse_zero_dimensions_rejected():
    with pytest.raises(SourceProbeError):
        parse_probe_output(ffprobe_json([dict(VIDEO, width=0)]))


def test_probe_missing_file(tmp_path):
    with pytest.raises(SourceProbeError, match="not found"):
        probe_source(str(tmp_path / "missing.mp4"))


@patch("hls_packager.probe.get_ffprobe_exe", return_value="ffprobe")
def test_probe_runs_ffprobe(_exe, tmp_path):
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"data")
    completed = subprocess.CompletedProcess(
        args=[], returncode=0, stdout=json.dumps(ffprobe_json([VIDEO])), stderr=""
    )

    with patch("hls_packager.probe.subprocess.run", return_value=completed) as mock_run:
        meta = probe_source(str(source))

    assert meta.height == 1080
    cmd = mock_run.call_args.args[0]
    assert cmd[0] == "ffprobe"
    assert cmd[-1] == str(source)
    assert "json" in cmd


@patch("hls_packager.probe.get_ffprobe_exe", return_value="ffprobe")
def test_probe_ffprobe_failure(_exe, tmp_path):
    source = tmp_path / "broken.mp4"
    source.write_bytes(b"data")
    error = subprocess.CalledProcessError(1, ["ffprobe"], stderr="Invalid data found when processing input")

    with patch("hls_packager.probe.subprocess.run", side_effect=error):
        with pytest.raises(SourceProbeError, match="Invalid data"):
            probe_source(str(source))


@patch("hls_packager.probe.get_ffprobe_exe", return_value="ffprobe")
def test_probe_timeout(_exe, tmp_path):
    source = tmp_path / "slow.mp4"
    source.write_bytes(b"data")

    with patch("hls_packager.probe.subprocess.run", side_effect=subprocess.TimeoutExpired("ffprobe", 30)):
        with pytest.raises(SourceProbeError, match="timed out"):
            probe_source(str(source))
