"""Priority job scheduler with a bounded worker pool.

Job state transitions:
    queued → admitted   (admission loop pops it while a slot is free)
    admitted → running  (worker thread starts the package pipeline)
    running → completed (pipeline reported completed)
    running → failed    (partial/failed outcome, or the pipeline raised)

All admission bookkeeping (pending queue, running count, busy package
directories) is owned by a single admission thread that reads messages from
a channel; submitters and workers only post messages. Shorter and
lower-resolution sources are admitted first. A package directory is owned by
at most one running job; a source that maps to a busy directory stays queued
until that job finishes. Running jobs are never preempted and there is no
cancellation.
"""

import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import layout
from .ladder import tier_rank
from .models import PackageOutcome, PackageStatus, PackagerConfig
from .pipeline import PackagePipeline
from .probe import SourceMetadata, probe_source

logger = logging.getLogger(__name__)

PriorityKey = Tuple[float, int, int]


class JobState(str, Enum):
    QUEUED = "queued"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A package request. Only its queue position changes while queued."""
    source_path: str
    category: Path
    package_dir: Path
    package_key: str  # resolved package_dir; one running job per key
    metadata: SourceMetadata
    priority: PriorityKey
    submitted_at: float
    future: Future = field(default_factory=Future, repr=False)
    state: JobState = JobState.QUEUED


def priority_key(metadata: SourceMetadata, sequence: int) -> PriorityKey:
    """(duration ascending, resolution-tier rank ascending, insertion order).

    A source whose duration could not be probed sorts after every known one.
    """
    duration = metadata.duration if metadata.duration > 0 else float("inf")
    return (duration, tier_rank(metadata.height), sequence)


# Channel messages
_SUBMIT = "submit"
_DONE = "done"
_STOP = "stop"


class Scheduler:
    """Accepts package requests and keeps up to max_concurrent_jobs pipelines running.

    Args:
        config: Resolved configuration
        pipeline: Package pipeline (built from config if omitted)
        prober: Metadata inspector, called synchronously in submit()
        max_concurrent_jobs: Overrides config.scheduler (default: half the CPUs)
        autostart: Start the admission loop immediately
    """

    def __init__(
        self,
        config: PackagerConfig,
        pipeline: Optional[PackagePipeline] = None,
        prober: Callable[[str], SourceMetadata] = probe_source,
        max_concurrent_jobs: Optional[int] = None,
        autostart: bool = True,
    ):
        self.config = config
        self.pipeline = pipeline or PackagePipeline(config)
        self.prober = prober
        self.max_concurrent_jobs = max_concurrent_jobs or config.scheduler.effective_max_jobs
        self.output_root = Path(config.paths.output_root)
        self.watch_root = Path(config.paths.watch_root) if config.paths.watch_root else None

        self._channel: "queue.Queue[Tuple[str, Optional[Job], Optional[PackageOutcome]]]" = queue.Queue()
        self._sequence = itertools.count()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_jobs, thread_name_prefix="package"
        )

        # Touched only by the admission thread
        self._pending: List[Job] = []
        self._running = 0
        self._busy_packages: Set[str] = set()
        self._stopping = False

        # Duplicate-in-flight lookup, shared with submitters
        self._in_flight: Dict[str, Job] = {}
        self._in_flight_lock = threading.Lock()
        self._closed = False

        self._loop_thread: Optional[threading.Thread] = None
        self.admission_log: List[str] = []
        if autostart:
            self.start()

    def start(self) -> None:
        if self._loop_thread is not None:
            return
        self._loop_thread = threading.Thread(
            target=self._admission_loop, name="admission", daemon=True
        )
        self._loop_thread.start()

    def submit(self, source_path: str, category: Optional[Path] = None) -> "Future[PackageOutcome]":
        """Request a package for a source file.

        Returns a future resolved with the PackageOutcome. A source already
        queued or running returns the existing job's future.

        Raises:
            SourceProbeError: If the source is unreadable or has no video track
            RuntimeError: If the scheduler has been shut down
        """
        path = Path(source_path).resolve()
        key = str(path)

        with self._in_flight_lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            existing = self._in_flight.get(key)
            if existing is not None:
                logger.info("%s is already %s, not resubmitting", path.name, existing.state.value)
                return existing.future

        metadata = self.prober(key)

        if category is None:
            category = layout.category_for(path, self.watch_root)
        package_dir = layout.package_dir_for(path, self.output_root, Path(category))
        job = Job(
            source_path=key,
            category=Path(category),
            package_dir=package_dir,
            package_key=str(package_dir.resolve()),
            metadata=metadata,
            priority=priority_key(metadata, next(self._sequence)),
            submitted_at=time.time(),
        )

        with self._in_flight_lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            existing = self._in_flight.get(key)
            if existing is not None:
                return existing.future
            self._in_flight[key] = job
            sharing = [
                j for j in self._in_flight.values()
                if j is not job and j.package_key == job.package_key
            ]

        if sharing:
            logger.warning(
                "%s shares package directory %s with %s; it will wait for that job",
                path.name, package_dir, Path(sharing[0].source_path).name,
            )

        logger.info(
            "Queued %s (%.0fs, %dx%d)", path.name, metadata.duration, metadata.width, metadata.height
        )
        self._channel.put((_SUBMIT, job, None))
        return job.future

    def shutdown(self, wait: bool = True) -> None:
        """Stop admitting. Queued jobs fail; running jobs finish first when wait=True."""
        with self._in_flight_lock:
            if self._closed:
                return
            self._closed = True
        self._channel.put((_STOP, None, None))
        if wait and self._loop_thread is not None:
            self._loop_thread.join()
        self._executor.shutdown(wait=wait)

    def in_flight(self) -> List[Job]:
        with self._in_flight_lock:
            return list(self._in_flight.values())

    # -- admission thread -------------------------------------------------

    def _admission_loop(self) -> None:
        while True:
            messages = [self._channel.get()]
            # Drain whatever else is waiting so a burst is ordered as a whole
            while True:
                try:
                    messages.append(self._channel.get_nowait())
                except queue.Empty:
                    break

            for kind, job, outcome in messages:
                if kind == _SUBMIT:
                    self._enqueue(job)
                elif kind == _DONE:
                    self._finish(job, outcome)
                elif kind == _STOP:
                    self._stopping = True
                    self._fail_pending("scheduler shut down before admission")

            if self._stopping:
                self._fail_pending("scheduler shut down before admission")
                if self._running == 0:
                    return
                continue

            self._admit()

    def _enqueue(self, job: Job) -> None:
        self._pending.append(job)
        self._pending.sort(key=lambda j: j.priority)

    def _admit(self) -> None:
        # Skips over jobs whose package directory is owned by a running job
        index = 0
        while self._running < self.max_concurrent_jobs and index < len(self._pending):
            job = self._pending[index]
            if job.package_key in self._busy_packages:
                index += 1
                continue
            self._pending.pop(index)
            job.state = JobState.ADMITTED
            self._running += 1
            self._busy_packages.add(job.package_key)
            self.admission_log.append(job.source_path)
            logger.debug("Admitted %s (%d/%d running)", job.source_path, self._running, self.max_concurrent_jobs)
            self._executor.submit(self._run_job, job)

    def _finish(self, job: Job, outcome: PackageOutcome) -> None:
        self._running -= 1
        self._busy_packages.discard(job.package_key)
        job.state = JobState.COMPLETED if outcome.status == PackageStatus.COMPLETED else JobState.FAILED
        with self._in_flight_lock:
            self._in_flight.pop(job.source_path, None)
        if not job.future.done():
            job.future.set_result(outcome)

    def _fail_pending(self, reason: str) -> None:
        while self._pending:
            job = self._pending.pop(0)
            job.state = JobState.FAILED
            with self._in_flight_lock:
                self._in_flight.pop(job.source_path, None)
            if not job.future.done():
                job.future.set_result(_failed_outcome(job, reason))

    # -- worker threads ---------------------------------------------------

    def _run_job(self, job: Job) -> None:
        job.state = JobState.RUNNING
        try:
            outcome = self.pipeline.run(job.source_path, job.metadata, job.package_dir)
        except Exception as e:
            logger.exception("Pipeline crashed for %s", job.source_path)
            outcome = _failed_outcome(job, f"{type(e).__name__}: {e}")
        self._channel.put((_DONE, job, outcome))


def _failed_outcome(job: Job, reason: str) -> PackageOutcome:
    return PackageOutcome(
        source_path=job.source_path,
        package_dir=str(job.package_dir),
        status=PackageStatus.FAILED,
        error=reason,
    )


def create_scheduler(config: PackagerConfig, show_progress: Optional[bool] = None, autostart: bool = True):
    """Wire the scheduler with the encoder, thumbnail side process and progress board.

    Returns:
        (scheduler, thumbnail_generator) so callers can shut both down
    """
    from .encoder import RenditionEncoder
    from .progress import ProgressBoard
    from .thumbnails import ThumbnailGenerator

    thumbnails = ThumbnailGenerator(config.thumbnails)
    encoder = RenditionEncoder(config.encoding, config.runner, thumbnails=thumbnails)
    board = ProgressBoard(disable=None if show_progress is None else not show_progress)
    pipeline = PackagePipeline(config, encoder=encoder, progress=board)
    return Scheduler(config, pipeline=pipeline, autostart=autostart), thumbnails
