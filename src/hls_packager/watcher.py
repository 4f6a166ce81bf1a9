"""Directory-watch trigger: submits newly-arrived source files to the scheduler."""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .probe import SourceProbeError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mkv", ".avi", ".mov", ".wmv"}


def is_source_file(path: Path, extensions: Optional[Iterable[str]] = None) -> bool:
    """Supported extension and no hidden (dot) path component."""
    allowed = {e.lower() for e in (extensions or VIDEO_EXTENSIONS)}
    path = Path(path)
    if any(part.startswith(".") for part in path.parts if part not in (".", "..")):
        return False
    return path.suffix.lower() in allowed


def scan_sources(root: str, extensions: Optional[List[str]] = None) -> List[Path]:
    """
    Recursively find source videos under a directory.

    Args:
        root: Watch root
        extensions: Allowed extensions (e.g. ['mp4', 'mov']). If None, uses defaults.

    Returns:
        List of Path objects, sorted alphabetically.
    """
    path = Path(root)
    if not path.exists():
        raise FileNotFoundError(f"Watch root not found: {root}")

    allowed = None
    if extensions:
        allowed = {e if e.startswith(".") else f".{e}" for e in extensions}

    files = []
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for name in filenames:
            candidate = Path(dirpath) / name
            if is_source_file(candidate.relative_to(path), allowed):
                files.append(candidate)

    files.sort(key=lambda p: str(p))
    return files


class SourceEventHandler(FileSystemEventHandler):
    """
    Handles filesystem events under the watch root.

    Events for one path are debounced: a copy in progress produces a burst of
    created/modified events, and the file is only submitted once it has been
    quiet for `debounce_s` seconds.
    """

    def __init__(self, submit: Callable[[Path], None], debounce_s: float = 2.0):
        super().__init__()
        self.submit = submit
        self.debounce_s = debounce_s
        self._timers: Dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()

    def _schedule(self, path: Path):
        with self._lock:
            timer = self._timers.pop(path, None)
            if timer is not None:
                timer.cancel()
            timer = threading.Timer(self.debounce_s, self._fire, args=(path,))
            timer.daemon = True
            self._timers[path] = timer
            timer.start()

    def _fire(self, path: Path):
        with self._lock:
            self._timers.pop(path, None)
        self.submit(path)

    def on_created(self, event):
        if not event.is_directory and is_source_file(Path(event.src_path)):
            logger.info("New video detected: %s", event.src_path)
            self._schedule(Path(event.src_path))

    def on_modified(self, event):
        if event.is_directory:
            return
        path = Path(event.src_path)
        with self._lock:
            pending = path in self._timers
        if pending:
            self._schedule(path)

    def on_moved(self, event):
        if not event.is_directory and is_source_file(Path(event.dest_path)):
            logger.info("Video moved in: %s", event.dest_path)
            self._schedule(Path(event.dest_path))

    def cleanup(self):
        """Cancel any pending debounce timers."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()


class SourceWatcher:
    """Watches a directory tree and submits each new source once.

    Args:
        scheduler: Object with submit(path) -> Future
        watch_root: Directory to watch recursively
        debounce_s: Quiet period before a new file is submitted
    """

    def __init__(self, scheduler, watch_root: str, debounce_s: float = 2.0):
        self.scheduler = scheduler
        self.watch_root = Path(watch_root)
        self.handler = SourceEventHandler(self.submit, debounce_s=debounce_s)
        self._observer: Optional[Observer] = None

    def submit(self, path: Path) -> None:
        """Submit one source; input errors are logged, never raised."""
        try:
            future = self.scheduler.submit(str(path))
        except SourceProbeError as e:
            logger.warning("Rejected %s: %s", path, e)
            return
        except RuntimeError as e:
            logger.error("Could not submit %s: %s", path, e)
            return
        future.add_done_callback(lambda f, p=path: _log_outcome(p, f))

    def scan_existing(self) -> int:
        """Submit every source already present under the watch root."""
        files = scan_sources(str(self.watch_root))
        for path in files:
            self.submit(path)
        return len(files)

    def start(self, scan_existing: bool = True) -> None:
        self.watch_root.mkdir(parents=True, exist_ok=True)
        if scan_existing:
            count = self.scan_existing()
            logger.info("Initial scan found %d source(s) in %s", count, self.watch_root)
        self._observer = Observer()
        self._observer.schedule(self.handler, str(self.watch_root), recursive=True)
        self._observer.start()
        logger.info("Watching folder: %s", self.watch_root)

    def stop(self) -> None:
        self.handler.cleanup()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


def _log_outcome(path: Path, future) -> None:
    outcome = future.result()
    if outcome.error:
        logger.warning("%s finished %s: %s", path.name, outcome.status.value, outcome.error)
    else:
        logger.info("%s finished %s", path.name, outcome.status.value)
