"""Source metadata inspection via ffprobe."""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .ffmpeg_runner import get_ffprobe_exe

logger = logging.getLogger(__name__)


class SourceProbeError(RuntimeError):
    """Source is unreadable or has no decodable video track.

    Raised synchronously from Scheduler.submit; no job is created.
    """


@dataclass(frozen=True)
class SourceMetadata:
    """Video metadata from ffprobe."""
    width: int
    height: int
    duration: float
    bitrate: Optional[int]
    codec_name: str = "unknown"


def probe_source(source_path: str, timeout_s: float = 30.0) -> SourceMetadata:
    """Probe a source file for its video dimensions, duration and container bitrate.

    Args:
        source_path: Path to the source video
        timeout_s: ffprobe timeout

    Returns:
        SourceMetadata for the first video stream

    Raises:
        SourceProbeError: If the file is unreadable, ffprobe fails, or there is
            no video stream with usable dimensions.
    """
    path = Path(source_path)
    if not path.is_file():
        raise SourceProbeError(f"Source file not found: {source_path}")
    if not os.access(path, os.R_OK):
        raise SourceProbeError(f"Cannot read source file: {source_path}")

    cmd = [
        get_ffprobe_exe(),
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            check=True,
            text=True,
            timeout=timeout_s,
        )
        data = json.loads(result.stdout or "{}")
    except subprocess.CalledProcessError as e:
        raise SourceProbeError(f"ffprobe failed for {source_path}: {(e.stderr or '').strip()}") from e
    except json.JSONDecodeError as e:
        raise SourceProbeError(f"ffprobe output parsing failed: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise SourceProbeError(f"ffprobe timed out after {timeout_s}s") from e
    except OSError as e:
        raise SourceProbeError(f"ffprobe could not be started: {e}") from e

    return parse_probe_output(data, source_path)


def parse_probe_output(data: dict, source_path: str = "<source>") -> SourceMetadata:
    """Build SourceMetadata from ffprobe JSON output."""
    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") != "video":
            continue
        # Cover art is exposed as a single-frame video stream
        if (stream.get("disposition") or {}).get("attached_pic"):
            continue
        video_stream = stream
        break

    if not video_stream:
        raise SourceProbeError(f"No video stream found in {source_path}")

    width = int(video_stream.get("width") or 0)
    height = int(video_stream.get("height") or 0)
    if width <= 0 or height <= 0:
        raise SourceProbeError(f"Video stream in {source_path} has no usable dimensions")

    format_info = data.get("format", {})
    duration = _to_float(format_info.get("duration")) or _to_float(video_stream.get("duration"))
    bitrate = _to_float(format_info.get("bit_rate"))

    metadata = SourceMetadata(
        width=width,
        height=height,
        duration=duration or 0.0,
        bitrate=int(bitrate) if bitrate else None,
        codec_name=video_stream.get("codec_name", "unknown"),
    )
    logger.debug("Probed %s: %s", source_path, metadata)
    return metadata


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
