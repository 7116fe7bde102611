# video_models.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple

MODEL_TAGS: Tuple[str, ...] = ("fast", "quality", "alt")
ALL_ASPECT_RATIOS: Tuple[str, ...] = ("16:9", "9:16", "1:1")


@dataclass(frozen=True)
class ProviderModel:
    provider: str
    model_id: str
    title: str
    price_per_second: Decimal
    min_duration: int
    max_duration: int
    aspect_ratios: Tuple[str, ...]


# Единая таблица: длительности, форматы и цены за секунду (USD) у провайдеров.
# veo3_fast у Kie.ai генерирует только 8 секунд.
CATALOG: Dict[Tuple[str, str], ProviderModel] = {
    ("kie", "fast"): ProviderModel(
        provider="kie",
        model_id="veo3_fast",
        title="Veo 3 Fast",
        price_per_second=Decimal("0.05"),
        min_duration=8,
        max_duration=8,
        aspect_ratios=("16:9", "9:16", "1:1"),
    ),
    ("kie", "quality"): ProviderModel(
        provider="kie",
        model_id="veo3",
        title="Veo 3",
        price_per_second=Decimal("0.25"),
        min_duration=2,
        max_duration=10,
        aspect_ratios=("16:9", "9:16", "1:1"),
    ),
    ("kie", "alt"): ProviderModel(
        provider="kie",
        model_id="runway-aleph",
        title="Runway Aleph",
        price_per_second=Decimal("0.30"),
        min_duration=2,
        max_duration=10,
        aspect_ratios=("16:9", "9:16", "1:1"),
    ),
    ("vertex", "fast"): ProviderModel(
        provider="vertex",
        model_id="veo-3.0-generate-fast",
        title="Veo 3 Fast",
        price_per_second=Decimal("0.40"),
        min_duration=4,
        max_duration=8,
        aspect_ratios=("16:9", "9:16"),
    ),
    ("vertex", "quality"): ProviderModel(
        provider="vertex",
        model_id="veo-3.0-generate-preview",
        title="Veo 3",
        price_per_second=Decimal("0.40"),
        min_duration=4,
        max_duration=8,
        aspect_ratios=("16:9", "9:16"),
    ),
    ("vertex", "alt"): ProviderModel(
        provider="vertex",
        model_id="veo-2.0-generate-001",
        title="Veo 2",
        price_per_second=Decimal("0.30"),
        min_duration=5,
        max_duration=8,
        aspect_ratios=("16:9", "9:16"),
    ),
}


class UnknownModelError(ValueError):
    pass


def get_model(provider: str, tag: str) -> ProviderModel:
    key = ((provider or "").strip().lower(), (tag or "").strip().lower())
    m = CATALOG.get(key)
    if m is None:
        raise UnknownModelError(f"No model '{tag}' for provider '{provider}'")
    return m


def clamp_duration(model: ProviderModel, seconds: int | None) -> int:
    """Clamp requested seconds into the model's supported range."""
    try:
        s = int(seconds or 0)
    except Exception:
        s = 0
    if s <= 0:
        s = model.max_duration
    if s < model.min_duration:
        return model.min_duration
    if s > model.max_duration:
        return model.max_duration
    return s


def supports_aspect(model: ProviderModel, aspect_ratio: str) -> bool:
    return (aspect_ratio or "").strip() in model.aspect_ratios


def estimate_cost_usd(model: ProviderModel, seconds: int) -> Decimal:
    return model.price_per_second * Decimal(int(seconds))
