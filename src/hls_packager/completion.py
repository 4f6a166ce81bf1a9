"""Completion probing: the basis for idempotent resume.

The filesystem is the durable source of truth. These checks only stat files
and parse one small text file, since they run before every job and every
rendition.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from . import layout
from .manifest import HEADER_TOKEN, parse_manifest

logger = logging.getLogger(__name__)


class CompletionProbe(ABC):
    """Abstract completion state lookup.

    Implementations must never raise for missing state; absence is a normal
    negative result.
    """

    @abstractmethod
    def rendition_complete(self, package_dir: Path, rendition: str) -> bool:
        """True iff the rendition index lists >= 1 segment and all segments exist."""
        pass

    @abstractmethod
    def package_complete(self, package_dir: Path) -> bool:
        """True iff the manifest is valid and every rendition it references is complete."""
        pass

    @abstractmethod
    def manifest_renditions(self, package_dir: Path) -> Optional[List[str]]:
        """Rendition names referenced by a valid manifest, or None if the manifest is invalid."""
        pass


class FilesystemCompletionProbe(CompletionProbe):
    """Completion probe that inspects the package directory directly."""

    def rendition_complete(self, package_dir: Path, rendition: str) -> bool:
        return _index_complete(layout.index_path(Path(package_dir), rendition))

    def package_complete(self, package_dir: Path) -> bool:
        package_dir = Path(package_dir)
        paths = self._valid_manifest_paths(package_dir)
        if not paths:
            return False
        return all(_index_complete(package_dir / rel) for rel in paths)

    def manifest_renditions(self, package_dir: Path) -> Optional[List[str]]:
        paths = self._valid_manifest_paths(Path(package_dir))
        if paths is None:
            return None
        return [Path(rel).parent.as_posix() for rel in paths]

    @staticmethod
    def _valid_manifest_paths(package_dir: Path) -> Optional[List[str]]:
        """Index paths of a valid manifest, or None.

        Valid means the header token is present and every referenced
        rendition index exists.
        """
        manifest_file = package_dir / layout.MANIFEST_NAME
        try:
            text = manifest_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

        header, entries = parse_manifest(text)
        if HEADER_TOKEN not in header:
            logger.debug("Manifest without %s header: %s", HEADER_TOKEN, manifest_file)
            return None

        paths = [path for _, path in entries]
        for rel in paths:
            if not (package_dir / rel).is_file():
                logger.debug("Manifest references missing index %s in %s", rel, package_dir)
                return None
        return paths


def _index_complete(index_file: Path) -> bool:
    segments = layout.read_index_segments(index_file)
    if not segments:
        return False
    base = index_file.parent
    return all((base / segment).is_file() for segment in segments)


_default_probe = FilesystemCompletionProbe()


def rendition_complete(package_dir: Path, rendition: str) -> bool:
    return _default_probe.rendition_complete(package_dir, rendition)


def package_complete(package_dir: Path) -> bool:
    return _default_probe.package_complete(package_dir)
