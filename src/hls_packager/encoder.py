"""Rendition encoding: strategy selection, fallback and atomic publication.

Each rendition is encoded into a hidden temporary directory next to its
final location and renamed into place only after the engine succeeded and
the output verified complete. A failed attempt removes its temporary
directory, so the completion prober never sees a half-written rendition.
"""

import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from . import layout
from .ffmpeg_runner import FfmpegProgress, FfmpegRunner
from .models import EncodingConfig, RenditionSpec, RunnerConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FfmpegProgress], None]
RunnerFactory = Callable[[Optional[ProgressCallback]], FfmpegRunner]


class EncoderStrategy(str, Enum):
    ACCELERATED = "accelerated"  # Hardware-assisted codec
    SOFTWARE = "software"        # CPU codec (libx264)


@dataclass
class EncodeResult:
    """Outcome of encoding one rendition (after any fallback)."""
    rendition: str
    success: bool
    strategy: Optional[EncoderStrategy] = None
    reason: str = ""
    attempts: List[Tuple[EncoderStrategy, str]] = field(default_factory=list)
    duration_s: float = 0.0


class RenditionEncoder:
    """Encodes one rendition, accelerated first (if enabled) then software.

    Args:
        encoding: Codec, segment and audio settings
        runner_config: Timeouts and artifact settings for the FFmpeg runner
        thumbnails: Optional collaborator with request_thumbnail(rendition_dir)
        runner_factory: Builds an FfmpegRunner for a progress callback
            (defaults to FfmpegRunner.from_config)
    """

    def __init__(
        self,
        encoding: Optional[EncodingConfig] = None,
        runner_config: Optional[RunnerConfig] = None,
        thumbnails=None,
        runner_factory: Optional[RunnerFactory] = None,
    ):
        self.encoding = encoding or EncodingConfig()
        self.runner_config = runner_config or RunnerConfig()
        self.thumbnails = thumbnails
        self._runner_factory = runner_factory or (
            lambda cb: FfmpegRunner.from_config(self.runner_config, progress_callback=cb)
        )

    def strategies(self) -> List[Tuple[EncoderStrategy, str]]:
        """Strategies to attempt, in order, with their codec."""
        plan = []
        if self.encoding.hwaccel_enabled:
            plan.append((EncoderStrategy.ACCELERATED, self.encoding.hwaccel_codec))
        plan.append((EncoderStrategy.SOFTWARE, self.encoding.software_codec))
        return plan

    def encode(
        self,
        source_path: str,
        spec: RenditionSpec,
        output_dir: Path,
        progress_callback: Optional[ProgressCallback] = None,
        source_duration: Optional[float] = None,
    ) -> EncodeResult:
        """Encode a rendition into <output_dir>/<spec.name>/.

        Never raises for engine failures; they are reported in the result.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        final_dir = output_dir / spec.name
        started = time.time()
        result = EncodeResult(rendition=spec.name, success=False)

        for strategy, codec in self.strategies():
            tmp_dir = layout.tmp_dir_for(output_dir, spec.name, uuid.uuid4().hex[:8])
            published = False
            try:
                reason = self._attempt(
                    strategy, codec, source_path, spec, tmp_dir, progress_callback, source_duration
                )
                if reason is None:
                    try:
                        self._publish(tmp_dir, final_dir)
                        published = True
                    except OSError as e:
                        reason = f"publish failed: {e}"
            finally:
                # Whatever happened, an unpublished attempt leaves nothing behind
                if not published:
                    shutil.rmtree(tmp_dir, ignore_errors=True)

            if published:
                result.success = True
                result.strategy = strategy
                result.attempts.append((strategy, "ok"))
                break

            result.attempts.append((strategy, reason))
            logger.warning(
                "%s encode of %s failed (%s): %s", strategy.value, spec.name, codec, reason
            )

        result.duration_s = time.time() - started
        if not result.success:
            result.reason = "; ".join(f"{s.value}: {r}" for s, r in result.attempts)
            return result

        logger.info(
            "Encoded %s with %s strategy in %.1fs", spec.name, result.strategy.value, result.duration_s
        )
        self._request_thumbnail(final_dir)
        return result

    def _attempt(
        self,
        strategy: EncoderStrategy,
        codec: str,
        source_path: str,
        spec: RenditionSpec,
        tmp_dir: Path,
        progress_callback: Optional[ProgressCallback],
        source_duration: Optional[float],
    ) -> Optional[str]:
        """Run one strategy into tmp_dir. Returns None on success, else a reason."""
        tmp_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Encoding %s with %s (%s) into %s", spec.name, strategy.value, codec, tmp_dir)

        try:
            runner = self._runner_factory(progress_callback)
            ffmpeg_result = runner.encode_hls(
                expected_duration=source_duration,
                source_path=str(source_path),
                index_path=str(tmp_dir / layout.INDEX_NAME),
                segment_pattern=str(tmp_dir / layout.SEGMENT_PATTERN),
                width=spec.width,
                height=spec.height,
                codec=codec,
                bitrate_kbps=spec.bitrate_kbps,
                preset=spec.preset,
                crf=spec.crf,
                segment_duration_s=self.encoding.segment_duration_s,
                audio_codec=self.encoding.audio_codec,
                audio_bitrate=self.encoding.audio_bitrate,
                audio_sample_rate=self.encoding.audio_sample_rate,
            )
        except (OSError, RuntimeError) as e:
            return f"{type(e).__name__}: {e}"

        if not ffmpeg_result.success:
            return ffmpeg_result.reason or "encoder failed"

        segments = layout.read_index_segments(tmp_dir / layout.INDEX_NAME)
        if not segments:
            return "encoder produced no segments"
        missing = [s for s in segments if not (tmp_dir / s).is_file()]
        if missing:
            return f"encoder output missing segment {missing[0]}"
        return None

    @staticmethod
    def _publish(tmp_dir: Path, final_dir: Path) -> None:
        """Atomically move a verified rendition into its final location."""
        stale = None
        if final_dir.exists():
            # Incomplete leftovers from an earlier run; renamed aside first
            # since a directory cannot be renamed over a non-empty one.
            stale = layout.stale_dir_for(final_dir.parent, final_dir.name, uuid.uuid4().hex[:8])
            final_dir.rename(stale)
        try:
            tmp_dir.rename(final_dir)
        finally:
            if stale is not None:
                shutil.rmtree(stale, ignore_errors=True)

    def _request_thumbnail(self, rendition_dir: Path) -> None:
        if self.thumbnails is None:
            return
        try:
            self.thumbnails.request_thumbnail(rendition_dir)
        except Exception:
            logger.exception("Thumbnail request failed for %s", rendition_dir)
