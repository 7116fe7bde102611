from decimal import Decimal

import pytest

from video_models import (
    CATALOG,
    UnknownModelError,
    clamp_duration,
    estimate_cost_usd,
    get_model,
    supports_aspect,
)


def test_veo3_fast_is_fixed_at_eight_seconds():
    m = get_model("kie", "fast")
    assert m.model_id == "veo3_fast"
    assert clamp_duration(m, 15) == 8
    assert clamp_duration(m, 2) == 8
    assert clamp_duration(m, 8) == 8


@pytest.mark.parametrize(
    "requested,expected",
    [(1, 2), (2, 2), (6, 6), (10, 10), (30, 10)],
)
def test_kie_quality_clamps_into_range(requested, expected):
    assert clamp_duration(get_model("kie", "quality"), requested) == expected


def test_missing_duration_defaults_to_model_max():
    m = get_model("vertex", "quality")
    assert clamp_duration(m, None) == m.max_duration
    assert clamp_duration(m, 0) == m.max_duration


def test_clamped_duration_always_within_bounds():
    for m in CATALOG.values():
        for s in (-5, 0, 1, 3, 5, 7, 9, 12, 100):
            d = clamp_duration(m, s)
            assert m.min_duration <= d <= m.max_duration


def test_vertex_has_no_square_format():
    assert supports_aspect(get_model("kie", "fast"), "1:1")
    assert not supports_aspect(get_model("vertex", "fast"), "1:1")
    assert supports_aspect(get_model("vertex", "fast"), "9:16")


def test_cost_is_duration_times_price():
    m = get_model("kie", "fast")
    assert estimate_cost_usd(m, 8) == Decimal("0.40")
    assert estimate_cost_usd(get_model("kie", "alt"), 5) == Decimal("1.50")


def test_unknown_model_raises():
    with pytest.raises(UnknownModelError):
        get_model("kie", "ultra")

