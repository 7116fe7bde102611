from __future__ import annotations

import os
from decimal import Decimal
from typing import List, Optional


def env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def env_first(*names: str) -> Optional[str]:
    for n in names:
        v = os.getenv(n)
        if v and v.strip():
            return v.strip()
    return None


def env_int(name: str, default: int) -> int:
    v = env(name)
    if not v:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


def env_float(name: str, default: float) -> float:
    v = env(name)
    if not v:
        return float(default)
    try:
        return float(v)
    except Exception:
        return float(default)


def env_decimal(name: str, default: str) -> Decimal:
    v = env(name) or default
    try:
        return Decimal(v)
    except Exception:
        return Decimal(default)


def env_list(name: str, default: str = "") -> List[str]:
    raw = env(name, default)
    return [p.strip() for p in raw.split(",") if p.strip()]


def clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


# --- billing ---
STAR_COST_USD = env_decimal("STAR_COST_USD", "0.016")
MARKUP_RATE = env_decimal("MARKUP_RATE", "1.5")

# --- bots ---
DEFAULT_BOT_NAME = env("DEFAULT_BOT_NAME", "neuro_blogger_bot") or "neuro_blogger_bot"

# --- providers ---
PROVIDER_TIMEOUT_SEC = env_float("PROVIDER_TIMEOUT_SEC", 600.0)
VIDEO_PROVIDER_ORDER = env_list("VIDEO_PROVIDER_ORDER", "kie,vertex")

# --- callback ---
KIE_CALLBACK_PATH = "/api/kie-ai/callback"


def kie_callback_url() -> Optional[str]:
    """Public URL Kie.ai should POST job results to, or None for polling mode."""
    explicit = env("KIE_CALLBACK_URL")
    if explicit:
        return explicit
    base = env_first("CALLBACK_BASE_URL", "API_BASE_URL")
    if not base:
        return None
    return base.rstrip("/") + KIE_CALLBACK_PATH


def admin_ids() -> List[int]:
    out: List[int] = []
    for p in env_list("ADMIN_IDS"):
        try:
            out.append(int(p))
        except ValueError:
            continue
    return out
