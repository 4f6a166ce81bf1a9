"""On-disk package layout shared by the pipeline, the prober and the HTTP listing."""

from pathlib import Path
from typing import List, Optional

MANIFEST_NAME = "master.m3u8"
MANIFEST_BACKUP_NAME = "master.m3u8.backup"
INDEX_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
THUMBNAIL_NAME = "thumbnail.jpg"


def category_for(source_path: Path, watch_root: Optional[Path]) -> Path:
    """Relative category path of a source under the watch root.

    Sources outside the watch root (or with no watch root) have no category.
    """
    if watch_root is None:
        return Path()
    try:
        return source_path.resolve().parent.relative_to(watch_root.resolve())
    except ValueError:
        return Path()


def package_dir_for(source_path: Path, output_root: Path, category: Path = Path()) -> Path:
    """<root>/[<category>/...]/<sourceBaseName>"""
    return output_root / category / source_path.stem


def index_path(package_dir: Path, rendition: str) -> Path:
    return package_dir / rendition / INDEX_NAME


def index_relpath(rendition: str) -> str:
    """Manifest-relative path of a rendition index (always forward slashes)."""
    return f"{rendition}/{INDEX_NAME}"


def read_index_segments(index_file: Path) -> Optional[List[str]]:
    """Segment references listed by a rendition index.

    Returns None if the index cannot be read. Tags and blank lines are skipped.
    """
    try:
        text = index_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def tmp_dir_for(package_dir: Path, rendition: str, token: str) -> Path:
    """Hidden sibling a rendition is encoded into before it is published."""
    return package_dir / f".{rendition}.tmp-{token}"


def stale_dir_for(package_dir: Path, rendition: str, token: str) -> Path:
    """Hidden sibling an incomplete rendition is moved to while being replaced."""
    return package_dir / f".{rendition}.stale-{token}"


def leftover_dirs(package_dir: Path) -> List[Path]:
    """Temporary and stale rendition directories left by an interrupted run."""
    try:
        entries = list(package_dir.iterdir())
    except OSError:
        return []
    return sorted(
        p for p in entries
        if p.is_dir() and p.name.startswith(".") and (".tmp-" in p.name or ".stale-" in p.name)
    )
