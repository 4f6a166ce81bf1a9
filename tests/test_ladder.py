"""Tests for rendition ladder planning."""

import pytest

from hls_packager.ladder import (
    LADDER_TIERS,
    plan,
    resolve_profile,
    scaled_width,
    tier_rank,
)


def names(specs):
    return [s.name for s in specs]


def test_1080p_source_gets_tiers_up_to_and_one_above():
    specs = plan(1080, 1920)
    assert names(specs) == ["480p", "720p", "1080p", "1440p"]


def test_small_source_gets_one_tier_above():
    """A 360p source still gets a 480p rendition."""
    assert names(plan(360, 640)) == ["480p"]


def test_source_between_tiers():
    assert names(plan(600, 800)) == ["480p", "720p"]


def test_source_above_top_tier_has_no_extra():
    assert names(plan(4320, 7680)) == [f"{h}p" for h, _ in LADDER_TIERS]


def test_top_tier_source():
    assert names(plan(2160, 3840)) == ["480p", "720p", "1080p", "1440p", "2160p"]


def test_ladder_ascending_with_bitrates():
    specs = plan(1080, 1920)
    assert [s.height for s in specs] == sorted(s.height for s in specs)
    assert [s.bitrate_kbps for s in specs] == [1000, 2500, 5000, 8000]
    assert specs[0].bandwidth == 1_000_000


def test_width_preserves_aspect_ratio():
    specs = plan(1080, 1920)
    assert [s.width for s in specs] == [854, 1280, 1920, 2560]


def test_width_is_always_even():
    # 4:3 source at 480 -> 640, odd-producing ratio forces a bump
    assert scaled_width(480, 1000, 720) % 2 == 0
    assert scaled_width(720, 1001, 1000) == 722
    for spec in plan(1080, 1443):
        assert spec.width % 2 == 0


def test_plan_is_deterministic():
    assert plan(720, 1280, "high") == plan(720, 1280, "high")


@pytest.mark.parametrize(
    "profile,expected",
    [("low", ("veryfast", 28)), ("medium", ("medium", 23)), ("high", ("slow", 20))],
)
def test_quality_profiles(profile, expected):
    assert resolve_profile(profile) == expected
    spec = plan(720, 1280, profile)[0]
    assert (spec.preset, spec.crf) == expected


def test_unknown_profile_falls_back_to_medium():
    assert resolve_profile("ultra") == ("medium", 23)
    assert resolve_profile("") == ("medium", 23)
    assert resolve_profile(" HIGH ") == ("slow", 20)


def test_invalid_dimensions_rejected():
    with pytest.raises(ValueError):
        plan(0, 1920)
    with pytest.raises(ValueError):
        plan(1080, -1)


def test_tier_rank():
    assert tier_rank(360) == 0
    assert tier_rank(480) == 0
    assert tier_rank(720) == 1
    assert tier_rank(1000) == 2
    assert tier_rank(2160) == 4
    assert tier_rank(4320) == len(LADDER_TIERS)


def test_1000p_source():
    assert names(plan(1000, 1778)) == ["480p", "720p", "1080p"]
