"""Rendition ladder planning.

The ladder is a pure function of (source height, source width, quality profile).
It is re-run on every resume, so it must stay deterministic.
"""

from typing import Dict, List, Tuple

from .models import RenditionSpec

# (height, base bitrate in kbit/s), ascending
LADDER_TIERS: List[Tuple[int, int]] = [
    (480, 1000),
    (720, 2500),
    (1080, 5000),
    (1440, 8000),
    (2160, 16000),
]

# profile -> (preset, crf)
QUALITY_PROFILES: Dict[str, Tuple[str, int]] = {
    "low": ("veryfast", 28),
    "medium": ("medium", 23),
    "high": ("slow", 20),
}

DEFAULT_PROFILE = "medium"


def resolve_profile(quality_profile: str) -> Tuple[str, int]:
    """Map a profile name to (preset, crf). Unknown names fall back to medium."""
    key = (quality_profile or "").strip().lower()
    return QUALITY_PROFILES.get(key, QUALITY_PROFILES[DEFAULT_PROFILE])


def rendition_name(height: int) -> str:
    return f"{height}p"


def scaled_width(target_height: int, source_width: int, source_height: int) -> int:
    """Width preserving the source aspect ratio.

    The exact round(target_height * source_width / source_height) is bumped
    up by one when odd, since yuv420p H.264 needs even dimensions (the same
    result as ffmpeg's scale=-2).
    """
    width = round(target_height * source_width / source_height)
    if width % 2:
        width += 1
    return max(width, 2)


def tier_rank(source_height: int) -> int:
    """Index of the lowest tier that covers the source height.

    Sources taller than the top tier rank one past it. Used as the
    secondary scheduling key.
    """
    for index, (height, _) in enumerate(LADDER_TIERS):
        if source_height <= height:
            return index
    return len(LADDER_TIERS)


def plan(source_height: int, source_width: int, quality_profile: str = DEFAULT_PROFILE) -> List[RenditionSpec]:
    """Plan the renditions for a source.

    Every tier at or below the source height is included, plus exactly one
    tier above it (if any) so small sources still get a minimal ladder.

    Args:
        source_height: Source frame height in pixels
        source_width: Source frame width in pixels
        quality_profile: low, medium or high

    Returns:
        RenditionSpec list in ascending height order

    Raises:
        ValueError: If the source dimensions are not positive
    """
    if source_height <= 0 or source_width <= 0:
        raise ValueError(f"Invalid source dimensions: {source_width}x{source_height}")

    preset, crf = resolve_profile(quality_profile)

    selected = [tier for tier in LADDER_TIERS if tier[0] <= source_height]
    above = [tier for tier in LADDER_TIERS if tier[0] > source_height]
    if above:
        selected.append(above[0])

    return [
        RenditionSpec(
            name=rendition_name(height),
            height=height,
            width=scaled_width(height, source_width, source_height),
            bitrate_kbps=bitrate,
            preset=preset,
            crf=crf,
        )
        for height, bitrate in selected
    ]
