"""Resumable package pipeline: one source in, one HLS package out.

For one admitted source the pipeline:
1. Removes temporary directories an interrupted run left behind
2. Skips the package if it is already complete for the planned ladder
3. Plans the ladder and loads the prior manifest (if valid) for diffing
4. Per rendition, in ladder order:
   - reuses it if the completion probe confirms it on disk
   - otherwise encodes it (accelerated, then software)
   - rewrites the master manifest in full
5. Reports completed / partial / failed

Renditions within a package run strictly one at a time.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional

from . import ladder, layout
from . import manifest as manifest_lib
from .completion import CompletionProbe, FilesystemCompletionProbe
from .encoder import RenditionEncoder
from .models import PackageOutcome, PackageStatus, PackagerConfig
from .probe import SourceMetadata
from .progress import ProgressBoard

logger = logging.getLogger(__name__)


class PackagePipeline:
    """Drives one package to a terminal state.

    Args:
        config: Resolved configuration
        encoder: Rendition encoder (strategy + fallback)
        completion: Completion probe (filesystem by default)
        progress: Shared progress sink (optional)
    """

    def __init__(
        self,
        config: PackagerConfig,
        encoder: Optional[RenditionEncoder] = None,
        completion: Optional[CompletionProbe] = None,
        progress: Optional[ProgressBoard] = None,
    ):
        self.config = config
        self.encoder = encoder or RenditionEncoder(config.encoding, config.runner)
        self.completion = completion or FilesystemCompletionProbe()
        self.progress = progress

    def run(self, source_path: str, metadata: SourceMetadata, package_dir: Path) -> PackageOutcome:
        started = time.time()
        package_dir = Path(package_dir)
        planned = ladder.plan(metadata.height, metadata.width, self.config.encoding.quality_profile)
        planned_names = [spec.name for spec in planned]
        self._remove_leftovers(package_dir)

        if self._already_complete(package_dir, planned_names):
            logger.info("Package %s already complete, skipping", package_dir)
            return PackageOutcome(
                source_path=str(source_path),
                package_dir=str(package_dir),
                status=PackageStatus.COMPLETED,
                renditions=planned_names,
                reused=planned_names,
                already_complete=True,
                duration_s=time.time() - started,
            )

        package_dir.mkdir(parents=True, exist_ok=True)
        loaded = manifest_lib.load(package_dir)
        working = loaded.fresh() if loaded else manifest_lib.WorkingManifest()
        previous = set(loaded.renditions) if loaded else set()

        encoded: List[str] = []
        reused: List[str] = []
        failed: Dict[str, str] = {}
        abort = self.config.scheduler.on_rendition_failure == "abort"

        logger.info(
            "Packaging %s -> %s (%s)", Path(source_path).name, package_dir, ", ".join(planned_names)
        )

        for spec in planned:
            if self.completion.rendition_complete(package_dir, spec.name):
                logger.debug("Rendition %s already complete, reusing", spec.name)
                reused.append(spec.name)
                working = manifest_lib.append(working, spec, spec.width)
                manifest_lib.persist(package_dir, working)
                continue

            if spec.name in previous:
                logger.warning(
                    "Manifest listed %s but it is incomplete on disk; re-encoding", spec.name
                )

            result = self._encode(source_path, metadata, package_dir, spec)
            if result.success:
                encoded.append(spec.name)
                working = manifest_lib.append(working, spec, spec.width)
            else:
                failed[spec.name] = result.reason
                logger.error("Rendition %s of %s failed: %s", spec.name, package_dir.name, result.reason)

            # Rewritten even on failure so a stale entry for this rendition is dropped
            manifest_lib.persist(package_dir, working)

            if failed and abort:
                logger.error("Aborting %s after failed rendition %s", package_dir.name, spec.name)
                break

        if not failed:
            status = PackageStatus.COMPLETED
        elif abort or not working.entries:
            status = PackageStatus.FAILED
        else:
            status = PackageStatus.PARTIAL

        outcome = PackageOutcome(
            source_path=str(source_path),
            package_dir=str(package_dir),
            status=status,
            renditions=working.renditions,
            encoded=encoded,
            reused=reused,
            failed=failed,
            error=_failure_summary(failed) if failed else None,
            duration_s=time.time() - started,
        )
        logger.info(
            "Package %s %s: %d encoded, %d reused, %d failed",
            package_dir.name, status.value, len(encoded), len(reused), len(failed),
        )
        return outcome

    @staticmethod
    def _remove_leftovers(package_dir: Path) -> None:
        """Drop temporary and stale rendition directories from an interrupted run."""
        for leftover in layout.leftover_dirs(package_dir):
            logger.info("Removing leftover %s", leftover)
            shutil.rmtree(leftover, ignore_errors=True)

    def _already_complete(self, package_dir: Path, planned_names: List[str]) -> bool:
        """Complete package whose manifest covers exactly the planned ladder."""
        if not self.completion.package_complete(package_dir):
            return False
        return self.completion.manifest_renditions(package_dir) == planned_names

    def _encode(self, source_path, metadata, package_dir, spec):
        handle = None
        callback = None
        if self.progress is not None:
            handle = self.progress.open(f"{package_dir.name} {spec.name}")
            callback = lambda p: self.progress.update(handle, p)  # noqa: E731
        try:
            return self.encoder.encode(
                source_path,
                spec,
                package_dir,
                progress_callback=callback,
                source_duration=metadata.duration,
            )
        finally:
            if handle is not None:
                self.progress.close(handle)


def _failure_summary(failed: Dict[str, str]) -> str:
    return "failed renditions: " + ", ".join(sorted(failed))
