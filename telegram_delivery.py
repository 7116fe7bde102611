from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from app.core.log import log_evt
from http_retry import call_with_retries

logger = logging.getLogger("telegram_delivery")

TELEGRAM_API = "https://api.telegram.org"


class TelegramError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, description: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.description = description


class TelegramRateLimitError(TelegramError):
    def __init__(self, message: str, *, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TelegramBot:
    """Minimal Bot API client bound to one bot token."""

    def __init__(self, token: str, *, name: str = "", transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 60):
        self.token = token
        self.name = name
        self._transport = transport
        self._timeout = timeout

    @property
    def api_base(self) -> str:
        return f"{TELEGRAM_API}/bot{self.token}"

    async def _call_once(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(f"{self.api_base}/{method}", json=payload)
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code == 429:
            retry_after = (data.get("parameters") or {}).get("retry_after")
            raise TelegramRateLimitError(f"Telegram {method} rate limited", retry_after=retry_after)
        if r.status_code >= 400 or not data.get("ok", False):
            desc = str(data.get("description") or r.text[:500])
            raise TelegramError(f"Telegram {method} HTTP {r.status_code}: {desc}", status_code=r.status_code, description=desc)
        return data.get("result") or {}

    async def call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await call_with_retries(
            lambda: self._call_once(method, payload),
            retry_on=(TelegramRateLimitError,),
            label=f"telegram.{method}",
        )

    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return await self.call("sendMessage", payload)

    async def send_video(self, chat_id: int, video_url: str, caption: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "video": video_url}
        if caption:
            payload["caption"] = caption
        return await self.call("sendVideo", payload)


async def deliver_video(bot: TelegramBot, chat_id: int, video_url: str, caption: str, *, is_ru: bool = True) -> str:
    """
    Send video by URL (Telegram fetches it). Falls back to one text message with the link.
    Returns "video" or "link".
    """
    try:
        await bot.send_video(chat_id, video_url, caption=caption)
        return "video"
    except (TelegramError, httpx.HTTPError) as e:
        log_evt(logger, "TG_SEND_VIDEO_FAILED", level=logging.WARNING, chat_id=chat_id, bot=bot.name, err=f"{type(e).__name__}: {e}")

    text = f"{caption}\n\n🔗 {video_url}" if caption else video_url
    prefix = "✅ Видео готово, но не удалось отправить файл. Ссылка:" if is_ru else "✅ Your video is ready, but the file could not be sent. Link:"
    await bot.send_message(chat_id, f"{prefix}\n{text}")
    return "link"


async def safe_send_message(bot: Optional[TelegramBot], chat_id: int, text: str) -> bool:
    """Best-effort notification; never raises."""
    if bot is None:
        return False
    try:
        await bot.send_message(chat_id, text)
        return True
    except Exception as e:
        log_evt(logger, "TG_SEND_MESSAGE_FAILED", level=logging.WARNING, chat_id=chat_id, bot=bot.name, err=f"{type(e).__name__}: {e}")
        return False


def video_caption(
    *,
    is_ru: bool,
    aspect_ratio: str,
    duration: int,
    model: str,
    provider: str,
    stars: Optional[int] = None,
    balance: Optional[int] = None,
) -> str:
    if is_ru:
        lines = [
            "🎬 Ваше видео готово!",
            "",
            f"📐 Формат: {aspect_ratio}",
            f"⏱ Длительность: {duration}s",
            f"🤖 Модель: {model}",
            f"⚙️ Провайдер: {provider}",
        ]
        if stars is not None:
            lines.append(f"💫 Списано: {stars} ⭐")
        if balance is not None:
            lines.append(f"💰 Баланс: {balance} ⭐")
    else:
        lines = [
            "🎬 Your video is ready!",
            "",
            f"📐 Format: {aspect_ratio}",
            f"⏱ Duration: {duration}s",
            f"🤖 Model: {model}",
            f"⚙️ Provider: {provider}",
        ]
        if stars is not None:
            lines.append(f"💫 Charged: {stars} ⭐")
        if balance is not None:
            lines.append(f"💰 Balance: {balance} ⭐")
    return "\n".join(lines)
