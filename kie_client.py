# kie_client.py
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from app.core.config import env, env_float, env_int, kie_callback_url
from app.core.log import log_evt
from http_retry import call_with_retries, parse_retry_after
from video_providers import (
    Deferred,
    GenerationParams,
    Immediate,
    Outcome,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResult,
    ProviderTaskFailedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderValidationError,
    VideoProvider,
)

logger = logging.getLogger("kie_client")

KIE_BASE_URL = (env("KIE_BASE_URL") or "https://api.kie.ai/api/v1").rstrip("/")

KIE_HTTP_TIMEOUT_SECONDS = env_int("KIE_HTTP_TIMEOUT", 300)
KIE_HEALTH_TIMEOUT_SECONDS = env_int("KIE_HEALTH_TIMEOUT", 10)
KIE_POLL_INTERVAL_SECONDS = env_float("KIE_POLL_INTERVAL_SEC", 15.0)
KIE_MAX_WAIT_SECONDS = env_int("KIE_MAX_WAIT_SEC", 300)

PROVIDER = "kie"


class KieAIError(ProviderError):
    pass


@dataclass(frozen=True)
class KieTaskStatus:
    task_id: str
    status: str
    video_url: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    duration: Optional[int] = None


def _api_key() -> str:
    return env("KIE_AI_API_KEY")


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise ProviderAuthError("KIE_AI_API_KEY is missing", provider=PROVIDER)
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}


def build_generate_payload(
    *,
    model_id: str,
    params: GenerationParams,
    callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model_id,
        "prompt": params.prompt,
        "aspectRatio": params.aspect_ratio,
    }
    if params.image_url:
        payload["imageUrls"] = [params.image_url]
    if callback_url:
        payload["callBackUrl"] = callback_url
    return payload


def raise_for_status(status: int, text: str, *, retry_after: Optional[str] = None) -> None:
    if status < 400:
        return
    body = (text or "")[:1500]
    if status in (401, 403):
        raise ProviderAuthError(f"Kie.ai auth failed ({status}): {body}", provider=PROVIDER, status_code=status)
    if status == 402:
        # кончились кредиты на аккаунте Kie.ai, это не ошибка запроса
        raise ProviderUnavailableError(f"Kie.ai insufficient credits (402): {body}", provider=PROVIDER, status_code=402)
    if status == 429:
        raise ProviderRateLimitError(
            f"Kie.ai rate limit (429): {body}",
            provider=PROVIDER,
            retry_after=parse_retry_after(retry_after),
        )
    if status >= 500:
        raise ProviderUnavailableError(f"Kie.ai server error ({status}): {body}", provider=PROVIDER, status_code=status)
    raise ProviderValidationError(f"Kie.ai rejected request ({status}): {body}", provider=PROVIDER, status_code=status)


def _parse_json(text: str, *, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except Exception as e:
        raise KieAIError(f"Kie.ai {what}: invalid JSON: {e}; body={text[:1500]}", provider=PROVIDER) from e
    if not isinstance(data, dict):
        raise KieAIError(f"Kie.ai {what}: unexpected body={text[:1500]}", provider=PROVIDER)
    return data


def _check_api_code(resp: Dict[str, Any]) -> None:
    # Kie.ai отвечает HTTP 200 и кладёт реальный код в тело
    code = resp.get("code")
    if code is None or int(code) == 200:
        return
    raise_for_status(int(code), str(resp.get("msg") or resp))


def extract_task_id(resp: Dict[str, Any]) -> str:
    _check_api_code(resp)
    data = resp.get("data") or {}
    tid = data.get("taskId") or data.get("task_id") or resp.get("taskId")
    if not tid:
        raise KieAIError(f"Kie.ai response missing taskId. resp={str(resp)[:1500]}", provider=PROVIDER)
    return str(tid)


def parse_task_status(task_id: str, resp: Dict[str, Any]) -> KieTaskStatus:
    _check_api_code(resp)
    data = resp.get("data") or {}
    status = str(data.get("status") or "").strip().lower()
    if not status and "successFlag" in data:
        flag = int(data.get("successFlag") or 0)
        status = {0: "processing", 1: "completed"}.get(flag, "failed")

    video_url = data.get("videoUrl")
    if not video_url:
        urls = (data.get("response") or {}).get("resultUrls") or []
        video_url = urls[0] if urls else None

    progress = data.get("progress")
    duration = data.get("duration")
    return KieTaskStatus(
        task_id=str(task_id),
        status=status or "processing",
        video_url=str(video_url) if video_url else None,
        error=(str(data.get("error") or data.get("errorMessage") or "") or None),
        progress=int(progress) if isinstance(progress, (int, float)) else None,
        duration=int(duration) if isinstance(duration, (int, float)) else None,
    )


async def kie_create_task(session: aiohttp.ClientSession, payload: Dict[str, Any]) -> str:
    url = f"{KIE_BASE_URL}/veo/generate"

    async def _post() -> str:
        async with session.post(url, headers=_headers(), json=payload, timeout=aiohttp.ClientTimeout(total=KIE_HTTP_TIMEOUT_SECONDS)) as r:
            text = await r.text()
            raise_for_status(r.status, text, retry_after=r.headers.get("Retry-After"))
            return extract_task_id(_parse_json(text, what="generate"))

    return await call_with_retries(_post, retry_on=(ProviderRateLimitError,), label="kie.generate")


async def kie_get_task(session: aiohttp.ClientSession, task_id: str) -> KieTaskStatus:
    url = f"{KIE_BASE_URL}/veo/task/{task_id}"
    async with session.get(url, headers=_headers(), timeout=aiohttp.ClientTimeout(total=KIE_HEALTH_TIMEOUT_SECONDS)) as r:
        text = await r.text()
        raise_for_status(r.status, text, retry_after=r.headers.get("Retry-After"))
        return parse_task_status(task_id, _parse_json(text, what="task status"))


class KieProvider(VideoProvider):
    name = PROVIDER

    def __init__(self, *, callback_url: Optional[str] = None, use_callback: bool = True):
        self.callback_url = callback_url if callback_url is not None else kie_callback_url()
        self.use_callback = use_callback

    async def check_health(self) -> bool:
        if not _api_key():
            return False
        url = f"{KIE_BASE_URL}/chat/credit"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, headers=_headers(), timeout=aiohttp.ClientTimeout(total=KIE_HEALTH_TIMEOUT_SECONDS)) as r:
                    ok = r.status == 200
                    if not ok:
                        log_evt(logger, "KIE_HEALTH_BAD", level=logging.WARNING, status=r.status)
                    return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log_evt(logger, "KIE_HEALTH_ERROR", level=logging.WARNING, err=f"{type(e).__name__}: {e}")
            return False

    async def get_task_status(self, task_id: str) -> KieTaskStatus:
        async with aiohttp.ClientSession() as session:
            return await kie_get_task(session, task_id)

    async def generate_video(self, params: GenerationParams) -> Outcome:
        model = self.model_for(params.model_tag)
        duration = self.dispatch_duration(params)
        cost = self.cost_for(params)
        callback_url = self.callback_url if self.use_callback else None
        payload = build_generate_payload(model_id=model.model_id, params=params, callback_url=callback_url)

        started = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                task_id = await kie_create_task(session, payload)
                log_evt(logger, "KIE_TASK_CREATED", task_id=task_id, model=model.model_id, duration=duration, callback=bool(callback_url))

                if callback_url:
                    return Deferred(
                        task_id=task_id,
                        provider=PROVIDER,
                        model=model.model_id,
                        duration=duration,
                        estimated_cost_usd=cost,
                        callback_url=callback_url,
                    )

                st = await self._wait(session, task_id)
        except aiohttp.ClientError as e:
            raise ProviderUnavailableError(f"Kie.ai network error: {e}", provider=PROVIDER) from e

        return Immediate(
            ProviderResult(
                video_url=st.video_url,
                cost_usd=cost,
                provider=PROVIDER,
                model=model.model_id,
                duration=duration,
                processing_time=round(time.monotonic() - started, 2),
            )
        )

    async def _wait(self, session: aiohttp.ClientSession, task_id: str) -> KieTaskStatus:
        # the job is already accepted; a failed poll is retried until the deadline
        start = time.monotonic()
        delay = KIE_POLL_INTERVAL_SECONDS
        last_status = "unknown"
        while True:
            await asyncio.sleep(delay)
            delay = KIE_POLL_INTERVAL_SECONDS
            try:
                st = await kie_get_task(session, task_id)
            except (ProviderRateLimitError, ProviderUnavailableError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                retry_after = getattr(e, "retry_after", None)
                if retry_after is not None:
                    delay = max(delay, float(retry_after))
                log_evt(logger, "KIE_POLL_RETRY", level=logging.WARNING, task_id=task_id, delay=delay, err=f"{type(e).__name__}: {e}")
            else:
                last_status = st.status
                if st.status == "completed":
                    if not st.video_url:
                        raise ProviderTaskFailedError(f"Kie.ai task {task_id} completed without videoUrl", provider=PROVIDER)
                    return st
                if st.status == "failed":
                    raise ProviderTaskFailedError(f"Kie.ai task {task_id} failed: {st.error or 'unknown error'}", provider=PROVIDER)

            if time.monotonic() - start > KIE_MAX_WAIT_SECONDS:
                raise ProviderTimeoutError(
                    f"Kie.ai task timeout after {KIE_MAX_WAIT_SECONDS}s (task_id={task_id}, status={last_status})",
                    provider=PROVIDER,
                )
