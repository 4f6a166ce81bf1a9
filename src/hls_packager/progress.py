"""Progress display: one tqdm bar per in-flight rendition.

Several package pipelines report concurrently, so slot allocation and bar
updates are serialized by a lock.
"""

import threading
from typing import Dict, Optional

from tqdm import tqdm

from .ffmpeg_runner import FfmpegProgress


class ProgressBoard:
    """Shared progress sink with one visual slot per running rendition."""

    def __init__(self, disable: Optional[bool] = None):
        """
        Args:
            disable: Passed to tqdm (None = disable when not attached to a TTY)
        """
        self.disable = disable
        self._lock = threading.Lock()
        self._bars: Dict[int, tqdm] = {}
        self._positions: Dict[int, int] = {}
        self._next_id = 0

    def open(self, label: str) -> int:
        """Allocate a slot and return its handle."""
        with self._lock:
            handle = self._next_id
            self._next_id += 1
            used = set(self._positions.values())
            position = next(p for p in range(len(used) + 1) if p not in used)
            self._positions[handle] = position
            self._bars[handle] = tqdm(
                total=100,
                desc=label,
                unit="%",
                position=position,
                leave=False,
                disable=self.disable,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {postfix}",
            )
            return handle

    def update(self, handle: int, progress: FfmpegProgress) -> None:
        with self._lock:
            bar = self._bars.get(handle)
            if bar is None:
                return
            bar.n = round(progress.fraction * 100, 1)
            bar.set_postfix(fps=f"{progress.fps:.0f}", speed=f"{progress.speed:.1f}x", refresh=False)
            bar.refresh()

    def close(self, handle: int) -> None:
        with self._lock:
            bar = self._bars.pop(handle, None)
            self._positions.pop(handle, None)
            if bar is not None:
                bar.close()

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._bars)
