# vertex_veo.py (Google Vertex AI, Veo long-running predictions)
import asyncio
import base64
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
import google.auth
from google.auth.exceptions import DefaultCredentialsError, RefreshError
from google.auth.transport.requests import Request as GoogleAuthRequest

from app.core.config import env, env_float, env_int
from app.core.log import log_evt
from db_supabase import upload_bytes_public
from http_retry import call_with_retries, parse_retry_after
from video_providers import (
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

logger = logging.getLogger("vertex_veo")

PROVIDER = "vertex"

VERTEX_POLL_INTERVAL_SECONDS = env_float("VERTEX_POLL_INTERVAL_SEC", 5.0)
VERTEX_MAX_WAIT_SECONDS = env_int("VERTEX_MAX_WAIT_SEC", 300)
VERTEX_HTTP_TIMEOUT_SECONDS = env_int("VERTEX_HTTP_TIMEOUT", 60)

_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


class VertexVeoError(ProviderError):
    pass


def _project() -> str:
    return env("GOOGLE_CLOUD_PROJECT") or env("VERTEX_PROJECT_ID")


def _location() -> str:
    return env("GOOGLE_CLOUD_LOCATION", "us-central1") or "us-central1"


def model_endpoint(model_id: str, *, project: str, location: str) -> str:
    return (
        f"https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
        f"/locations/{location}/publishers/google/models/{model_id}"
    )


def _fetch_access_token() -> str:
    """Application Default Credentials -> bearer token (blocking, run in a thread)."""
    try:
        creds, _ = google.auth.default(scopes=_SCOPES)
        creds.refresh(GoogleAuthRequest())
    except (DefaultCredentialsError, RefreshError) as e:
        raise ProviderAuthError(f"Vertex AI credentials unavailable: {e}", provider=PROVIDER) from e
    if not creds.token:
        raise ProviderAuthError("Vertex AI credentials returned empty token", provider=PROVIDER)
    return str(creds.token)


def build_predict_body(
    *,
    params: GenerationParams,
    duration: int,
    image: Optional[Dict[str, str]] = None,
    storage_uri: Optional[str] = None,
) -> Dict[str, Any]:
    instance: Dict[str, Any] = {"prompt": params.prompt}
    if image:
        instance["image"] = image
    parameters: Dict[str, Any] = {
        "aspectRatio": params.aspect_ratio,
        "durationSeconds": int(duration),
        "sampleCount": 1,
    }
    if storage_uri:
        parameters["storageUri"] = storage_uri
    return {"instances": [instance], "parameters": parameters}


def gcs_to_https(uri: str) -> str:
    if uri.startswith("gs://"):
        return "https://storage.googleapis.com/" + uri[len("gs://"):]
    return uri


def extract_videos(op: Dict[str, Any]) -> List[Dict[str, Any]]:
    resp = op.get("response") or {}
    videos = resp.get("videos") or resp.get("generatedSamples") or []
    out: List[Dict[str, Any]] = []
    for v in videos:
        if isinstance(v, dict) and isinstance(v.get("video"), dict):
            v = v["video"]
        if isinstance(v, dict):
            out.append(v)
    return out


def _raise_for_status(status: int, text: str, *, retry_after: Optional[str] = None) -> None:
    if status < 400:
        return
    body = (text or "")[:1500]
    if status in (401, 403):
        raise ProviderAuthError(f"Vertex AI auth failed ({status}): {body}", provider=PROVIDER, status_code=status)
    if status == 429:
        raise ProviderRateLimitError(
            f"Vertex AI rate limit (429): {body}",
            provider=PROVIDER,
            retry_after=parse_retry_after(retry_after),
        )
    if status >= 500:
        raise ProviderUnavailableError(f"Vertex AI unavailable ({status}): {body}", provider=PROVIDER, status_code=status)
    raise ProviderValidationError(f"Vertex AI rejected request ({status}): {body}", provider=PROVIDER, status_code=status)


class VertexProvider(VideoProvider):
    name = PROVIDER

    def __init__(self, *, project: Optional[str] = None, location: Optional[str] = None):
        self.project = project or _project()
        self.location = location or _location()

    async def _token(self) -> str:
        return await asyncio.to_thread(_fetch_access_token)

    async def check_health(self) -> bool:
        if not self.project:
            return False
        try:
            await self._token()
        except ProviderAuthError as e:
            log_evt(logger, "VERTEX_HEALTH_BAD", level=logging.WARNING, err=str(e))
            return False
        return True

    async def _post(self, session: aiohttp.ClientSession, url: str, body: Dict[str, Any], token: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        async with session.post(url, headers=headers, json=body, timeout=aiohttp.ClientTimeout(total=VERTEX_HTTP_TIMEOUT_SECONDS)) as r:
            text = await r.text()
            _raise_for_status(r.status, text, retry_after=r.headers.get("Retry-After"))
            try:
                return await r.json(content_type=None)
            except Exception as e:
                raise VertexVeoError(f"Vertex AI: invalid JSON: {e}; body={text[:1500]}", provider=PROVIDER) from e

    async def _image_instance(self, session: aiohttp.ClientSession, image_url: Optional[str]) -> Optional[Dict[str, str]]:
        if not image_url:
            return None
        if image_url.startswith("gs://"):
            return {"gcsUri": image_url, "mimeType": "image/jpeg"}
        async with session.get(image_url, timeout=aiohttp.ClientTimeout(total=VERTEX_HTTP_TIMEOUT_SECONDS)) as r:
            if r.status >= 400:
                raise ProviderValidationError(f"Vertex AI: cannot fetch input image ({r.status})", provider=PROVIDER)
            data = await r.read()
            mime = (r.headers.get("Content-Type") or "image/jpeg").split(";")[0]
        return {"bytesBase64Encoded": base64.b64encode(data).decode("ascii"), "mimeType": mime}

    async def generate_video(self, params: GenerationParams) -> Outcome:
        if not self.project:
            raise ProviderAuthError("GOOGLE_CLOUD_PROJECT is not set", provider=PROVIDER)

        model = self.model_for(params.model_tag)
        duration = self.dispatch_duration(params)
        cost = self.cost_for(params)
        base = model_endpoint(model.model_id, project=self.project, location=self.location)
        storage_uri = env("VERTEX_STORAGE_URI") or None

        started = time.monotonic()
        token = await self._token()
        try:
            async with aiohttp.ClientSession() as session:
                image = await self._image_instance(session, params.image_url)
                body = build_predict_body(params=params, duration=duration, image=image, storage_uri=storage_uri)
                op = await call_with_retries(
                    lambda: self._post(session, f"{base}:predictLongRunning", body, token),
                    retry_on=(ProviderRateLimitError,),
                    label="vertex.predict",
                )
                op_name = op.get("name")
                if not op_name:
                    raise VertexVeoError(f"Vertex AI: no operation name. resp={str(op)[:1500]}", provider=PROVIDER)
                log_evt(logger, "VERTEX_OPERATION_STARTED", operation=op_name, model=model.model_id, duration=duration)

                done = await self._wait(session, f"{base}:fetchPredictOperation", op_name, token)
        except aiohttp.ClientError as e:
            raise ProviderUnavailableError(f"Vertex AI network error: {e}", provider=PROVIDER) from e

        video_url = await self._video_url(done)
        return Immediate(
            ProviderResult(
                video_url=video_url,
                cost_usd=cost,
                provider=PROVIDER,
                model=model.model_id,
                duration=duration,
                processing_time=round(time.monotonic() - started, 2),
            )
        )

    async def _wait(self, session: aiohttp.ClientSession, url: str, op_name: str, token: str) -> Dict[str, Any]:
        # the operation is already running; a failed poll is retried until the deadline
        start = time.monotonic()
        delay = VERTEX_POLL_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(delay)
            delay = VERTEX_POLL_INTERVAL_SECONDS
            try:
                op = await self._post(session, url, {"operationName": op_name}, token)
            except (ProviderRateLimitError, ProviderUnavailableError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                retry_after = getattr(e, "retry_after", None)
                if retry_after is not None:
                    delay = max(delay, float(retry_after))
                log_evt(logger, "VERTEX_POLL_RETRY", level=logging.WARNING, operation=op_name, delay=delay, err=f"{type(e).__name__}: {e}")
            else:
                if op.get("done"):
                    err = op.get("error")
                    if err:
                        msg = err.get("message") if isinstance(err, dict) else str(err)
                        raise ProviderTaskFailedError(f"Vertex AI operation failed: {msg}", provider=PROVIDER)
                    return op
            if time.monotonic() - start > VERTEX_MAX_WAIT_SECONDS:
                raise ProviderTimeoutError(
                    f"Vertex AI operation timeout after {VERTEX_MAX_WAIT_SECONDS}s ({op_name})",
                    provider=PROVIDER,
                )

    async def _video_url(self, op: Dict[str, Any]) -> str:
        videos = extract_videos(op)
        if not videos:
            filtered = (op.get("response") or {}).get("raiMediaFilteredReasons")
            raise ProviderTaskFailedError(f"Vertex AI returned no videos (filtered={filtered})", provider=PROVIDER)
        v = videos[0]
        if v.get("gcsUri"):
            return gcs_to_https(str(v["gcsUri"]))
        b64 = v.get("bytesBase64Encoded")
        if not b64:
            raise ProviderTaskFailedError("Vertex AI video has neither gcsUri nor bytes", provider=PROVIDER)
        data = base64.b64decode(b64)
        return await asyncio.to_thread(
            upload_bytes_public,
            data,
            prefix="veo_outputs",
            ext="mp4",
            content_type=str(v.get("mimeType") or "video/mp4"),
        )
