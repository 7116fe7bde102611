from decimal import Decimal

from video_billing import calc_video_charge, format_charge_line, usd_to_stars


def test_forty_cents_is_38_stars():
    # 0.40 * 1.5 / 0.016 = 37.5 -> 38
    assert usd_to_stars(Decimal("0.40")) == 38


def test_float_input_does_not_lose_the_half_star():
    assert usd_to_stars(0.4) == 38


def test_exact_division_is_not_rounded_up():
    # 0.032 * 1.5 / 0.016 = 3
    assert usd_to_stars(Decimal("0.032")) == 3


def test_zero_cost_is_free():
    assert usd_to_stars(Decimal("0")) == 0


def test_custom_markup():
    assert usd_to_stars(Decimal("1.00"), markup=Decimal("1"), star_cost=Decimal("0.016")) == 63


def test_charge_line():
    ch = calc_video_charge(provider="kie", model="veo3_fast", duration_sec=8, cost_usd="0.40")
    assert ch.stars == 38
    assert format_charge_line(ch) == "veo3_fast • 8s → 38 ⭐"
    assert format_charge_line(ch, is_ru=False).endswith("38 stars")
