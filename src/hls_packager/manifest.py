"""Master manifest synthesis.

The master manifest is the only durable record of which renditions a package
offers, so it is rebuilt append-only and rewritten in full after every
rendition:

    #EXTM3U
    #EXT-X-VERSION:3
    #EXT-X-STREAM-INF:BANDWIDTH=1000000,RESOLUTION=854x480
    480p/playlist.m3u8
    ...

A crash after N of M renditions leaves a manifest referencing exactly the N
renditions that were complete when it was written.
"""

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Tuple

from . import layout
from .models import RenditionSpec

logger = logging.getLogger(__name__)

HEADER_TOKEN = "#EXTM3U"
VERSION_LINE = "#EXT-X-VERSION:3"
STREAM_INF = "#EXT-X-STREAM-INF:"

DEFAULT_HEADER: Tuple[str, ...] = (HEADER_TOKEN, VERSION_LINE)

Entry = Tuple[str, str]  # (selector line, rendition index path)


@dataclass(frozen=True)
class WorkingManifest:
    """In-memory manifest owned by a single package pipeline."""

    header_lines: Tuple[str, ...] = DEFAULT_HEADER
    entries: Tuple[Entry, ...] = field(default_factory=tuple)

    @property
    def paths(self) -> List[str]:
        return [path for _, path in self.entries]

    @property
    def renditions(self) -> List[str]:
        return [Path(path).parent.as_posix() for path in self.paths]

    def to_text(self) -> str:
        lines = list(self.header_lines)
        for selector, path in self.entries:
            lines.append(selector)
            lines.append(path)
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class LoadedManifest:
    """Result of loading an existing manifest: metadata kept, selectors collected for diffing."""

    header_lines: Tuple[str, ...]
    entries: Tuple[Entry, ...]

    @property
    def renditions(self) -> List[str]:
        return [Path(path).parent.as_posix() for _, path in self.entries]

    def indexes_present(self, package_dir: Path) -> bool:
        """True if every rendition index this manifest references exists."""
        return all((Path(package_dir) / path).is_file() for _, path in self.entries)

    def fresh(self) -> WorkingManifest:
        """Empty working manifest that keeps this manifest's header/metadata lines."""
        return WorkingManifest(header_lines=normalize_header(self.header_lines))


def parse_manifest(text: str) -> Tuple[List[str], List[Entry]]:
    """Split manifest text into header/metadata lines and (selector, path) pairs."""
    header: List[str] = []
    entries: List[Entry] = []
    pending: Optional[str] = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith(STREAM_INF):
            pending = line
        elif line.startswith("#"):
            header.append(line)
        elif pending is not None:
            entries.append((pending, line))
            pending = None
        # URI lines without a selector are stray and dropped

    return header, entries


def normalize_header(header_lines) -> Tuple[str, ...]:
    """Header with #EXTM3U first and exactly one version line, other metadata preserved."""
    rest = [
        line
        for line in header_lines
        if line != HEADER_TOKEN and not line.startswith("#EXT-X-VERSION")
    ]
    return (HEADER_TOKEN, VERSION_LINE, *rest)


def selector_for(spec: RenditionSpec, width: Optional[int] = None) -> str:
    width = spec.width if width is None else width
    return f"{STREAM_INF}BANDWIDTH={spec.bandwidth},RESOLUTION={width}x{spec.height}"


def load(package_dir: Path) -> Optional[LoadedManifest]:
    """Load the package manifest.

    Returns None when the manifest is absent, unreadable or lacks the master
    header token; a corrupt manifest triggers a rebuild rather than a crash.
    """
    manifest_file = Path(package_dir) / layout.MANIFEST_NAME
    if not manifest_file.exists():
        return None
    try:
        text = manifest_file.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Unreadable manifest %s, rebuilding: %s", manifest_file, e)
        return None

    header, entries = parse_manifest(text)
    if HEADER_TOKEN not in header:
        logger.warning("Manifest %s has no %s header, rebuilding", manifest_file, HEADER_TOKEN)
        return None
    return LoadedManifest(header_lines=tuple(header), entries=tuple(entries))


def append(working: WorkingManifest, spec: RenditionSpec, width: Optional[int] = None) -> WorkingManifest:
    """Return a new working manifest with the rendition appended (replacing any prior entry)."""
    path = layout.index_relpath(spec.name)
    kept = tuple(entry for entry in working.entries if entry[1] != path)
    return replace(working, entries=kept + ((selector_for(spec, width), path),))


def persist(package_dir: Path, working: WorkingManifest) -> Path:
    """Write the manifest in full, atomically.

    An existing manifest that is valid (header present, every referenced
    index on disk) is first copied to the backup path. The new content goes to a temporary file in the same
    directory and is renamed over the manifest.
    """
    package_dir = Path(package_dir)
    package_dir.mkdir(parents=True, exist_ok=True)
    manifest_file = package_dir / layout.MANIFEST_NAME

    existing = load(package_dir)
    if existing is not None and existing.indexes_present(package_dir):
        shutil.copy2(manifest_file, package_dir / layout.MANIFEST_BACKUP_NAME)

    tmp_file = package_dir / f".{layout.MANIFEST_NAME}.{uuid.uuid4().hex[:8]}.tmp"
    try:
        with open(tmp_file, "w", encoding="utf-8") as f:
            f.write(working.to_text())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, manifest_file)
    finally:
        if tmp_file.exists():
            tmp_file.unlink()

    logger.debug("Wrote %s (%d renditions)", manifest_file, len(working.entries))
    return manifest_file
