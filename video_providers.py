"""Common contract for video generation providers.

A provider turns GenerationParams into one of two outcomes:
  Immediate(result)  - the video is ready now
  Deferred(task_id)  - the provider accepted the job and will POST the result later

attempt() wraps health check + generate + timeout and never raises:
it returns the outcome or a ProviderError, which is what the pipeline's
fallback loop consumes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Union

from app.core.config import PROVIDER_TIMEOUT_SEC, VIDEO_PROVIDER_ORDER
from app.core.log import log_evt
from video_models import ProviderModel, UnknownModelError, clamp_duration, estimate_cost_usd, get_model, supports_aspect

logger = logging.getLogger("video_providers")


class ProviderError(RuntimeError):
    kind = "unknown"

    def __init__(self, message: str, *, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    kind = "unavailable"


class ProviderAuthError(ProviderError):
    kind = "auth"


class ProviderValidationError(ProviderError):
    kind = "validation"


class ProviderTimeoutError(ProviderError):
    kind = "timeout"


class ProviderTaskFailedError(ProviderError):
    kind = "task_failed"


class ProviderRateLimitError(ProviderError):
    kind = "rate_limit"

    def __init__(self, message: str, *, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider=provider, status_code=429)
        self.retry_after = retry_after


@dataclass(frozen=True)
class GenerationParams:
    prompt: str
    model_tag: str
    aspect_ratio: str
    duration: int
    image_url: Optional[str] = None


@dataclass(frozen=True)
class ProviderResult:
    video_url: Optional[str]
    cost_usd: Decimal
    provider: str
    model: str
    duration: int
    processing_time: Optional[float] = None


@dataclass(frozen=True)
class Immediate:
    result: ProviderResult


@dataclass(frozen=True)
class Deferred:
    task_id: str
    provider: str
    model: str
    duration: int
    estimated_cost_usd: Decimal
    callback_url: Optional[str] = None


Outcome = Union[Immediate, Deferred]


class VideoProvider:
    name = ""

    def model_for(self, model_tag: str) -> ProviderModel:
        return get_model(self.name, model_tag)

    def dispatch_duration(self, params: GenerationParams) -> int:
        return clamp_duration(self.model_for(params.model_tag), params.duration)

    def cost_for(self, params: GenerationParams) -> Decimal:
        m = self.model_for(params.model_tag)
        return estimate_cost_usd(m, clamp_duration(m, params.duration))

    def supports(self, params: GenerationParams) -> bool:
        try:
            return supports_aspect(self.model_for(params.model_tag), params.aspect_ratio)
        except UnknownModelError:
            return False

    async def check_health(self) -> bool:
        raise NotImplementedError

    async def generate_video(self, params: GenerationParams) -> Outcome:
        raise NotImplementedError

    async def attempt(self, params: GenerationParams, *, timeout: Optional[float] = None) -> Union[Outcome, ProviderError]:
        if not self.supports(params):
            return ProviderValidationError(
                f"{self.name}: model '{params.model_tag}' does not support aspect ratio {params.aspect_ratio}",
                provider=self.name,
            )

        try:
            healthy = await self.check_health()
        except Exception as e:
            log_evt(logger, "PROVIDER_HEALTH_ERROR", level=logging.WARNING, provider=self.name, err=f"{type(e).__name__}: {e}")
            healthy = False
        if not healthy:
            return ProviderUnavailableError(f"{self.name}: health check failed", provider=self.name)

        limit = float(timeout if timeout is not None else PROVIDER_TIMEOUT_SEC)
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self.generate_video(params), timeout=limit)
        except asyncio.TimeoutError:
            return ProviderTimeoutError(f"{self.name}: no result within {limit:.0f}s", provider=self.name)
        except ProviderError as e:
            if not e.provider:
                e.provider = self.name
            return e
        except Exception as e:
            return ProviderError(f"{self.name}: {type(e).__name__}: {e}", provider=self.name)

        log_evt(
            logger,
            "PROVIDER_OK",
            provider=self.name,
            outcome=type(outcome).__name__,
            elapsed=round(time.monotonic() - started, 2),
        )
        return outcome


def build_provider_chain(order: Optional[Sequence[str]] = None) -> List[VideoProvider]:
    """Ordered providers, primary first (VIDEO_PROVIDER_ORDER, default kie,vertex)."""
    from kie_client import KieProvider
    from vertex_veo import VertexProvider

    known = {"kie": KieProvider, "vertex": VertexProvider}
    chain: List[VideoProvider] = []
    for name in (order or VIDEO_PROVIDER_ORDER):
        cls = known.get(name.strip().lower())
        if cls is None:
            log_evt(logger, "PROVIDER_UNKNOWN", level=logging.WARNING, provider=name)
            continue
        chain.append(cls())
    return chain
