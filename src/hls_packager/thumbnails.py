"""Thumbnail side process.

Best-effort and asynchronous: the pipeline fires a request per finished
rendition and never looks at the result.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from . import layout
from .ffmpeg_runner import FfmpegRunner
from .models import ThumbnailConfig

logger = logging.getLogger(__name__)


class ThumbnailGenerator:
    """Writes <package>/thumbnail.jpg from the first segment of a rendition."""

    def __init__(self, config: Optional[ThumbnailConfig] = None, max_workers: int = 1):
        self.config = config or ThumbnailConfig()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="thumbnail")
        self._lock = threading.Lock()
        self._in_flight = set()

    def request_thumbnail(self, rendition_dir: Path) -> Optional[Future]:
        """Queue thumbnail generation for a finished rendition directory.

        Returns the future (for tests), or None if nothing needs doing.
        """
        if not self.config.enabled:
            return None

        package_dir = Path(rendition_dir).parent
        with self._lock:
            if package_dir in self._in_flight:
                return None
            if (package_dir / layout.THUMBNAIL_NAME).exists():
                return None
            self._in_flight.add(package_dir)

        try:
            return self._executor.submit(self._generate, Path(rendition_dir))
        except RuntimeError:
            # Executor already shut down
            with self._lock:
                self._in_flight.discard(package_dir)
            return None

    def _generate(self, rendition_dir: Path) -> Optional[Path]:
        package_dir = rendition_dir.parent
        output = package_dir / layout.THUMBNAIL_NAME
        try:
            segments = layout.read_index_segments(rendition_dir / layout.INDEX_NAME)
            if not segments:
                logger.info("No segments in %s yet, skipping thumbnail", rendition_dir)
                return None

            runner = FfmpegRunner(save_artifacts_on_failure=False, no_progress_timeout_s=60)
            result = runner.extract_frame(
                source_path=str(rendition_dir / segments[0]),
                output_path=str(output),
                seek_s=self.config.seek_s,
                size=self.config.size,
            )
            if not result.success:
                logger.warning("Thumbnail generation failed for %s: %s", package_dir.name, result.reason)
                return None

            logger.info("Thumbnail created: %s", output)
            return output
        except Exception:
            logger.exception("Thumbnail generation crashed for %s", package_dir)
            return None
        finally:
            with self._lock:
                self._in_flight.discard(package_dir)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
