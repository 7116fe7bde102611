"""Video generation pipeline.

Request flow:
  VALIDATING  -> bot, user, aspect ratio, balance pre-check
  DISPATCHING -> provider chain, first success wins (FALLBACK when moving past the primary)
  DEFERRED    -> provider accepted the job; result arrives via process_callback()
  SETTLING    -> debit stars (once per ref_id)
  DELIVERING  -> send the video (link as fallback)
  DONE / FAILED

Settlement is generate-then-debit on both the immediate and the callback path;
a non-mutating balance check runs before any provider is called.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import DEFAULT_BOT_NAME, PROVIDER_TIMEOUT_SEC, admin_ids
from app.core.log import log_evt
from billing_db import InsufficientFundsError, debit, ensure_can_afford, record_failed_settlement
from bot_registry import BotNotFoundError, BotRegistry, get_registry
from db_supabase import get_user_by_telegram_id, increment_user_level, save_video_asset
from telegram_delivery import TelegramBot, deliver_video, safe_send_message, video_caption
from video_billing import calc_video_charge, format_charge_line, usd_to_stars
from video_models import ALL_ASPECT_RATIOS, MODEL_TAGS
from video_providers import (
    Deferred,
    GenerationParams,
    Immediate,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResult,
    ProviderTaskFailedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderValidationError,
    VideoProvider,
    build_provider_chain,
)
from video_tasks import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
    TaskMetadata,
    create_task,
    finish_task,
    get_task,
    update_progress,
)

logger = logging.getLogger("video_pipeline")

SETTLEMENT_REASON = "video_generation"
SERVICE_TYPE = "text_to_video"


class PipelineState(str, Enum):
    VALIDATING = "validating"
    DISPATCHING = "dispatching"
    FALLBACK = "fallback"
    DEFERRED = "deferred"
    SETTLING = "settling"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"


class GenerationValidationError(ValueError):
    pass


class UserNotFoundError(LookupError):
    def __init__(self, telegram_id: int):
        super().__init__(f"User {telegram_id} not found")
        self.telegram_id = telegram_id


class TaskStoreError(RuntimeError):
    pass


class CallbackValidationError(ValueError):
    pass


class GenerationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str = Field(..., min_length=1)
    model: str = Field(default="fast", pattern="^(fast|quality|alt)$")
    aspect_ratio: str = Field(default="9:16", alias="aspectRatio", pattern="^(16:9|9:16|1:1)$")
    duration: int = Field(default=8, ge=1, le=60)
    telegram_id: int = Field(..., ge=1)
    username: str = ""
    is_ru: bool = True
    bot_name: str = DEFAULT_BOT_NAME
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    def params(self) -> GenerationParams:
        return GenerationParams(
            prompt=self.prompt.strip(),
            model_tag=self.model,
            aspect_ratio=self.aspect_ratio,
            duration=self.duration,
            image_url=self.image_url or None,
        )


@dataclass(frozen=True)
class Requester:
    telegram_id: int
    username: str
    bot_name: str
    is_ru: bool
    prompt: str
    aspect_ratio: str


@dataclass
class PipelineRun:
    request_id: str
    state: PipelineState
    task_id: Optional[str] = None
    result: Optional[ProviderResult] = None
    error: Optional[BaseException] = None
    stars: Optional[int] = None
    delivered_via: Optional[str] = None


@dataclass(frozen=True)
class ErrorCategory:
    type: str
    critical: bool


# ---------------- user-facing texts ----------------

_MESSAGES: Dict[str, Dict[str, str]] = {
    "started": {
        "ru": "🎬 Генерация видео началась! Это займёт несколько минут.",
        "en": "🎬 Video generation started! This will take a few minutes.",
    },
    "deferred": {
        "ru": "⏳ Задача принята. Видео придёт сюда, как только будет готово.\nID задачи: {task_id}",
        "en": "⏳ Job accepted. The video will arrive here as soon as it is ready.\nTask ID: {task_id}",
    },
    "fallback": {
        "ru": "⚠️ Основной сервис недоступен, используем резервную систему.",
        "en": "⚠️ The primary service is unavailable, switching to the backup system.",
    },
    "authentication": {
        "ru": "❌ Сервис генерации временно недоступен (ошибка доступа). Мы уже разбираемся.",
        "en": "❌ The generation service is temporarily unavailable (access error). We are on it.",
    },
    "insufficient_credits": {
        "ru": "💸 Недостаточно звёзд на балансе. Нужно: {required} ⭐, на балансе: {balance} ⭐.",
        "en": "💸 Not enough stars. Required: {required} ⭐, balance: {balance} ⭐.",
    },
    "rate_limit": {
        "ru": "⏳ Слишком много запросов. Попробуйте через пару минут.",
        "en": "⏳ Too many requests. Please try again in a couple of minutes.",
    },
    "user_not_found": {
        "ru": "❌ Пользователь не найден. Нажмите /start и попробуйте снова.",
        "en": "❌ User not found. Press /start and try again.",
    },
    "service_unavailable": {
        "ru": "🔧 Сервис генерации видео временно недоступен. Попробуйте позже.",
        "en": "🔧 The video generation service is temporarily unavailable. Please try later.",
    },
    "timeout": {
        "ru": "⌛ Генерация заняла слишком много времени. Попробуйте ещё раз.",
        "en": "⌛ Generation took too long. Please try again.",
    },
    "validation": {
        "ru": "⚠️ Некорректные параметры: {detail}",
        "en": "⚠️ Invalid parameters: {detail}",
    },
    "unknown": {
        "ru": "❌ Произошла ошибка при генерации видео. Попробуйте позже.",
        "en": "❌ Something went wrong while generating the video. Please try later.",
    },
    "task_failed": {
        "ru": "❌ Не удалось сгенерировать видео.\nПричина: {reason}\nID задачи: {task_id}",
        "en": "❌ Video generation failed.\nReason: {reason}\nTask ID: {task_id}",
    },
    "unsettled": {
        "ru": "💸 Видео сгенерировано, но на балансе недостаточно звёзд ({balance} ⭐, нужно {required} ⭐). Пополните баланс и обратитесь в поддержку, ID: {ref_id}",
        "en": "💸 The video was generated but your balance is too low ({balance} ⭐, need {required} ⭐). Top up and contact support, ID: {ref_id}",
    },
}


def message(key: str, is_ru: bool, **kw: Any) -> str:
    tpl = _MESSAGES[key]["ru" if is_ru else "en"]
    return tpl.format(**kw) if kw else tpl


def categorize_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, ProviderAuthError):
        return ErrorCategory("authentication", True)
    if isinstance(exc, InsufficientFundsError):
        return ErrorCategory("insufficient_credits", False)
    if isinstance(exc, ProviderRateLimitError):
        return ErrorCategory("rate_limit", False)
    if isinstance(exc, UserNotFoundError):
        return ErrorCategory("user_not_found", False)
    if isinstance(exc, (ProviderTimeoutError, asyncio.TimeoutError)):
        return ErrorCategory("timeout", False)
    if isinstance(exc, (ProviderUnavailableError, ProviderTaskFailedError)):
        return ErrorCategory("service_unavailable", False)
    if isinstance(exc, (ProviderValidationError, GenerationValidationError)):
        return ErrorCategory("validation", False)
    return ErrorCategory("unknown", True)


def friendly_error(exc: BaseException, *, is_ru: bool, ref: str) -> str:
    cat = categorize_error(exc)
    if cat.type == "insufficient_credits" and isinstance(exc, InsufficientFundsError):
        text = message(cat.type, is_ru, required=exc.required, balance=exc.balance)
    elif cat.type == "validation":
        text = message(cat.type, is_ru, detail=str(exc)[:300])
    else:
        text = message(cat.type, is_ru)
    return f"{text}\n\nID: {ref}"


async def notify_admins(registry: BotRegistry, text: str) -> None:
    bot = registry.default()
    for admin_id in admin_ids():
        await safe_send_message(bot, admin_id, text)


def _step(state: PipelineState, **kw: Any) -> None:
    log_evt(logger, "PIPELINE_STEP", step=state.value, **kw)


# ---------------- dispatch ----------------

async def dispatch(
    params: GenerationParams,
    providers: Sequence[VideoProvider],
    *,
    on_fallback=None,
    timeout: Optional[float] = None,
    log_ctx: Optional[Dict[str, Any]] = None,
) -> tuple[Optional[Union[Immediate, Deferred]], List[ProviderError]]:
    """Try providers in order; returns (outcome, errors). outcome is None when all failed."""
    errors: List[ProviderError] = []
    ctx = log_ctx or {}
    for idx, provider in enumerate(providers):
        if not provider.supports(params):
            log_evt(
                logger,
                "PROVIDER_SKIPPED",
                level=logging.WARNING,
                provider=provider.name,
                aspect_ratio=params.aspect_ratio,
                model=params.model_tag,
                **ctx,
            )
            continue
        if idx > 0 and errors and on_fallback is not None:
            _step(PipelineState.FALLBACK, provider=provider.name, **ctx)
            await on_fallback(provider)

        res = await provider.attempt(params, timeout=timeout)
        if isinstance(res, Immediate) and not res.result.video_url:
            res = ProviderTaskFailedError(f"{provider.name}: result without video url", provider=provider.name)

        if isinstance(res, ProviderError):
            log_evt(
                logger,
                "PROVIDER_FAILED",
                level=logging.WARNING,
                provider=provider.name,
                kind=res.kind,
                err=str(res)[:500],
                **ctx,
            )
            errors.append(res)
            continue
        return res, errors
    return None, errors


# ---------------- settlement + delivery (shared with the callback path) ----------------

async def settle_and_deliver(
    requester: Requester,
    result: ProviderResult,
    *,
    ref_id: str,
    bot: TelegramBot,
    task_id: Optional[str] = None,
) -> PipelineRun:
    run = PipelineRun(request_id=ref_id, state=PipelineState.SETTLING, task_id=task_id, result=result)
    ctx = {"ref_id": ref_id, "telegram_id": requester.telegram_id}
    _step(PipelineState.SETTLING, cost_usd=result.cost_usd, **ctx)

    charge = calc_video_charge(
        provider=result.provider,
        model=result.model,
        duration_sec=result.duration,
        cost_usd=result.cost_usd,
    )
    stars = charge.stars
    run.stars = stars
    new_balance: Optional[int] = None
    if stars > 0:
        res = await debit(
            requester.telegram_id,
            stars,
            reason=SETTLEMENT_REASON,
            ref_id=ref_id,
            bot_name=requester.bot_name,
            service_type=SERVICE_TYPE,
            description=format_charge_line(charge, is_ru=False),
            meta={
                "cost_usd": str(result.cost_usd),
                "provider": result.provider,
                "model": result.model,
                "duration": result.duration,
                "language": "ru" if requester.is_ru else "en",
            },
        )
        if res.duplicate:
            log_evt(logger, "SETTLEMENT_DUPLICATE", **ctx)
            run.state = PipelineState.DONE
            return run
        if not res.success:
            log_evt(
                logger,
                "SETTLEMENT_UNPAID",
                level=logging.ERROR,
                video_url=result.video_url,
                stars=stars,
                balance=res.new_balance,
                **ctx,
            )
            await asyncio.to_thread(
                record_failed_settlement,
                telegram_id=requester.telegram_id,
                stars=stars,
                reason=SETTLEMENT_REASON,
                ref_id=ref_id,
                bot_name=requester.bot_name,
                service_type=SERVICE_TYPE,
                meta={"video_url": result.video_url, "cost_usd": str(result.cost_usd), "provider": result.provider},
            )
            await safe_send_message(
                bot,
                requester.telegram_id,
                message("unsettled", requester.is_ru, balance=res.new_balance, required=stars, ref_id=ref_id),
            )
            run.state = PipelineState.FAILED
            run.error = InsufficientFundsError(telegram_id=requester.telegram_id, balance=res.new_balance, required=stars)
            return run
        new_balance = res.new_balance

    run.state = PipelineState.DELIVERING
    _step(PipelineState.DELIVERING, **ctx)
    try:
        await asyncio.to_thread(
            save_video_asset,
            telegram_id=requester.telegram_id,
            video_url=str(result.video_url),
            prompt=requester.prompt,
            model=result.model,
            provider=result.provider,
            username=requester.username,
            bot_name=requester.bot_name,
            task_id=task_id,
        )
    except Exception as e:
        log_evt(logger, "ASSET_SAVE_FAILED", level=logging.ERROR, err=f"{type(e).__name__}: {e}", **ctx)

    caption = video_caption(
        is_ru=requester.is_ru,
        aspect_ratio=requester.aspect_ratio,
        duration=result.duration,
        model=result.model,
        provider=result.provider,
        stars=stars,
        balance=new_balance,
    )
    try:
        run.delivered_via = await deliver_video(bot, requester.telegram_id, str(result.video_url), caption, is_ru=requester.is_ru)
    except Exception as e:
        # деньги уже списаны, видео сохранено в assets: не откатываем
        log_evt(logger, "DELIVERY_FAILED", level=logging.ERROR, video_url=result.video_url, err=f"{type(e).__name__}: {e}", **ctx)

    try:
        await asyncio.to_thread(increment_user_level, requester.telegram_id)
    except Exception as e:
        log_evt(logger, "LEVEL_UPDATE_FAILED", level=logging.WARNING, err=f"{type(e).__name__}: {e}", **ctx)

    run.state = PipelineState.DONE
    _step(PipelineState.DONE, delivered_via=run.delivered_via, **ctx)
    return run


# ---------------- orchestrator ----------------

_providers: Optional[List[VideoProvider]] = None


def get_providers() -> List[VideoProvider]:
    global _providers
    if _providers is None:
        _providers = build_provider_chain()
    return _providers


def set_providers(providers: Optional[List[VideoProvider]]) -> None:
    global _providers
    _providers = providers


async def run_generation(
    req: GenerationRequest,
    *,
    registry: Optional[BotRegistry] = None,
    providers: Optional[Sequence[VideoProvider]] = None,
    request_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> PipelineRun:
    """Full pipeline for one request. Never raises."""
    registry = registry or get_registry()
    chain = list(providers if providers is not None else get_providers())
    request_id = request_id or uuid4().hex
    run = PipelineRun(request_id=request_id, state=PipelineState.VALIDATING)
    ctx = {"request_id": request_id, "telegram_id": req.telegram_id}
    bot: Optional[TelegramBot] = None

    try:
        _step(PipelineState.VALIDATING, bot_name=req.bot_name, model=req.model, **ctx)
        try:
            bot = registry.resolve(req.bot_name)
        except BotNotFoundError as e:
            log_evt(logger, "BOT_NOT_FOUND", level=logging.ERROR, bot_name=e.bot_name, **ctx)
            run.state, run.error = PipelineState.FAILED, e
            return run

        user = await asyncio.to_thread(get_user_by_telegram_id, req.telegram_id)
        if not user:
            raise UserNotFoundError(req.telegram_id)

        params = req.params()
        if req.model not in MODEL_TAGS or req.aspect_ratio not in ALL_ASPECT_RATIOS:
            raise GenerationValidationError(f"model={req.model} aspect_ratio={req.aspect_ratio}")
        if not chain:
            raise ProviderUnavailableError("no video providers configured")
        primary = chain[0]
        if not primary.supports(params):
            raise GenerationValidationError(
                f"aspect ratio {req.aspect_ratio} is not supported by {primary.model_for(req.model).title}"
            )

        estimated = usd_to_stars(primary.cost_for(params))
        await ensure_can_afford(req.telegram_id, estimated)

        run.state = PipelineState.DISPATCHING
        _step(PipelineState.DISPATCHING, providers=[p.name for p in chain], estimated_stars=estimated, **ctx)
        await safe_send_message(bot, req.telegram_id, message("started", req.is_ru))

        async def _on_fallback(_provider: VideoProvider) -> None:
            run.state = PipelineState.FALLBACK
            await safe_send_message(bot, req.telegram_id, message("fallback", req.is_ru))

        outcome, errors = await dispatch(
            params,
            chain,
            on_fallback=_on_fallback,
            timeout=timeout if timeout is not None else PROVIDER_TIMEOUT_SEC,
            log_ctx=ctx,
        )

        if outcome is None:
            raise errors[-1] if errors else ProviderUnavailableError("all providers failed")

        requester = Requester(
            telegram_id=req.telegram_id,
            username=req.username,
            bot_name=bot.name or req.bot_name,
            is_ru=req.is_ru,
            prompt=params.prompt,
            aspect_ratio=req.aspect_ratio,
        )

        if isinstance(outcome, Deferred):
            meta = TaskMetadata(
                model=req.model,
                aspect_ratio=req.aspect_ratio,
                prompt=params.prompt,
                username=req.username,
                duration=outcome.duration,
                estimated_cost=str(outcome.estimated_cost_usd),
                image_url=req.image_url,
                callback_url=outcome.callback_url,
                request_id=request_id,
            )
            await asyncio.to_thread(
                create_task,
                task_id=outcome.task_id,
                provider=outcome.provider,
                telegram_id=req.telegram_id,
                bot_name=requester.bot_name,
                model=outcome.model,
                prompt=params.prompt,
                is_ru=req.is_ru,
                metadata=meta,
            )
            run.state, run.task_id = PipelineState.DEFERRED, outcome.task_id
            _step(PipelineState.DEFERRED, task_id=outcome.task_id, provider=outcome.provider, **ctx)
            await safe_send_message(bot, req.telegram_id, message("deferred", req.is_ru, task_id=outcome.task_id))
            return run

        settled = await settle_and_deliver(requester, outcome.result, ref_id=request_id, bot=bot)
        settled.request_id = request_id
        return settled

    except Exception as e:
        cat = categorize_error(e)
        log_evt(
            logger,
            "PIPELINE_FAILED",
            level=logging.ERROR if cat.critical else logging.WARNING,
            step=run.state.value,
            category=cat.type,
            err=f"{type(e).__name__}: {e}",
            **ctx,
        )
        run.error = e
        failed_step = run.state
        run.state = PipelineState.FAILED
        await safe_send_message(bot, req.telegram_id, friendly_error(e, is_ru=req.is_ru, ref=request_id))
        if cat.critical:
            await notify_admins(
                registry,
                f"🚨 Video generation error [{cat.type}]\nstep: {failed_step.value}\n"
                f"user: {req.telegram_id} bot: {req.bot_name}\nref: {request_id}\n{type(e).__name__}: {str(e)[:500]}",
            )
        return run


# ---------------- provider callbacks ----------------

class CallbackPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task_id: str = Field(..., alias="taskId")
    status: str
    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    error: Optional[str] = None
    duration: Optional[float] = Field(default=None, allow_inf_nan=False)
    cost: Optional[float] = Field(default=None, allow_inf_nan=False)
    progress: Optional[float] = Field(default=None, allow_inf_nan=False)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def parse_callback(body: Any) -> CallbackPayload:
    if not isinstance(body, dict):
        raise CallbackValidationError("Request body must be a JSON object")
    task_id = body.get("taskId")
    if not isinstance(task_id, str) or not task_id.strip():
        raise CallbackValidationError("Missing required field: taskId")
    status = body.get("status")
    if status not in (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED):
        raise CallbackValidationError("Invalid status: must be one of processing, completed, failed")
    metadata = body.get("metadata")
    try:
        return CallbackPayload.model_validate(
            {**body, "taskId": task_id.strip(), "metadata": metadata if isinstance(metadata, dict) else {}}
        )
    except Exception as e:
        raise CallbackValidationError(f"Invalid callback payload: {e}") from e


def _decimal(v: Any) -> Optional[Decimal]:
    if v is None:
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


async def process_callback(cb: CallbackPayload, *, registry: Optional[BotRegistry] = None) -> Dict[str, Any]:
    """
    Apply one provider notification. Raises TaskStoreError when the task row
    cannot be read or written; everything after the durable write is best-effort.
    """
    ctx = {"task_id": cb.task_id, "status": cb.status}
    log_evt(logger, "CALLBACK_RECEIVED", has_video=bool(cb.video_url), **ctx)

    try:
        task = await asyncio.to_thread(get_task, cb.task_id)
    except Exception as e:
        raise TaskStoreError(f"task lookup failed: {type(e).__name__}: {e}") from e

    if not task:
        log_evt(logger, "CALLBACK_UNKNOWN_TASK", level=logging.WARNING, **ctx)
        return {"success": True, "message": "Task not found in database, but callback acknowledged"}

    if task.get("status") in TERMINAL_STATUSES:
        log_evt(logger, "CALLBACK_ALREADY_FINAL", current=task.get("status"), **ctx)
        return {"success": True, "message": "Task already finalized"}

    meta = TaskMetadata.from_row(task)
    update: Dict[str, Any] = {
        "callback_received": True,
        "callback_timestamp": datetime.now(timezone.utc).isoformat(),
        "callback_metadata": {**meta.callback_metadata, **cb.metadata},
    }
    if cb.progress is not None:
        update["progress"] = int(cb.progress)
    if cb.cost is not None:
        update["cost"] = str(cb.cost)
    if cb.duration is not None:
        update["reported_duration"] = int(cb.duration)
    meta = meta.model_copy(update=update)

    if cb.status == STATUS_PROCESSING:
        try:
            await asyncio.to_thread(update_progress, cb.task_id, metadata=meta)
        except Exception as e:
            raise TaskStoreError(f"progress update failed: {type(e).__name__}: {e}") from e
        return {"success": True, "message": "Progress updated"}

    status = cb.status
    error_message = cb.error
    if status == STATUS_COMPLETED and not cb.video_url:
        status = STATUS_FAILED
        error_message = "Provider reported completion without a video URL"

    try:
        row = await asyncio.to_thread(
            finish_task,
            cb.task_id,
            status=status,
            metadata=meta,
            video_url=cb.video_url if status == STATUS_COMPLETED else None,
            error_message=error_message if status == STATUS_FAILED else None,
        )
    except Exception as e:
        raise TaskStoreError(f"status update failed: {type(e).__name__}: {e}") from e

    if row is None:
        log_evt(logger, "CALLBACK_LOST_RACE", **ctx)
        return {"success": True, "message": "Task already finalized"}

    try:
        await _after_transition(task, meta, cb, status=status, error_message=error_message, registry=registry or get_registry())
    except Exception as e:
        log_evt(logger, "CALLBACK_DOWNSTREAM_FAILED", level=logging.ERROR, err=f"{type(e).__name__}: {e}", **ctx)

    return {"success": True, "message": "Callback processed successfully"}


async def _after_transition(
    task: Dict[str, Any],
    meta: TaskMetadata,
    cb: CallbackPayload,
    *,
    status: str,
    error_message: Optional[str],
    registry: BotRegistry,
) -> None:
    task_id = str(task.get("task_id"))
    telegram_id = int(task.get("telegram_id"))
    is_ru = bool(task.get("is_ru", True))
    bot_name = str(task.get("bot_name") or registry.default_name)

    try:
        bot = registry.resolve(bot_name)
    except BotNotFoundError:
        log_evt(logger, "CALLBACK_BOT_NOT_FOUND", level=logging.ERROR, task_id=task_id, bot_name=bot_name, video_url=cb.video_url)
        return

    if status == STATUS_FAILED:
        reason = error_message or ("Неизвестная ошибка" if is_ru else "Unknown error")
        await safe_send_message(bot, telegram_id, message("task_failed", is_ru, reason=reason, task_id=task_id))
        return

    # zero or negative reported cost is treated as missing
    cost = _decimal(cb.cost)
    if cost is None or cost <= 0:
        cost = _decimal(meta.estimated_cost) or Decimal("0")
    result = ProviderResult(
        video_url=cb.video_url,
        cost_usd=cost,
        provider=str(task.get("provider") or ""),
        model=str(task.get("model") or ""),
        duration=int(meta.duration or cb.duration or 0),
    )
    requester = Requester(
        telegram_id=telegram_id,
        username=meta.username or "",
        bot_name=bot_name,
        is_ru=is_ru,
        prompt=str(task.get("prompt") or meta.prompt or ""),
        aspect_ratio=meta.aspect_ratio or "",
    )
    await settle_and_deliver(requester, result, ref_id=task_id, bot=bot, task_id=task_id)
