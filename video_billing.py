# video_billing.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from app.core.config import MARKUP_RATE, STAR_COST_USD


@dataclass(frozen=True)
class VideoCharge:
    provider: str
    model: str
    duration_sec: int
    cost_usd: Decimal
    stars: int


def usd_to_stars(
    cost_usd: Decimal | float | str,
    *,
    markup: Decimal = MARKUP_RATE,
    star_cost: Decimal = STAR_COST_USD,
) -> int:
    """
    stars = ceil(cost_usd * markup / star_cost)
    Считаем в Decimal: во float 0.4*1.5/0.016 даёт 37.49999... и округление ломается.
    """
    cost = Decimal(str(cost_usd))
    if cost <= 0:
        return 0
    raw = cost * Decimal(markup) / Decimal(star_cost)
    return int(raw.to_integral_value(rounding=ROUND_CEILING))


def calc_video_charge(*, provider: str, model: str, duration_sec: int, cost_usd: Decimal | float | str) -> VideoCharge:
    cost = Decimal(str(cost_usd))
    return VideoCharge(
        provider=provider,
        model=model,
        duration_sec=int(duration_sec),
        cost_usd=cost,
        stars=usd_to_stars(cost),
    )


def format_charge_line(ch: VideoCharge, *, is_ru: bool = True) -> str:
    if is_ru:
        return f"{ch.model} • {ch.duration_sec}s → {ch.stars} ⭐"
    return f"{ch.model} • {ch.duration_sec}s → {ch.stars} stars"
