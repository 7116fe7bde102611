from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from telegram_delivery import TelegramBot, TelegramError


class FakeBot(TelegramBot):
    """Records outgoing Bot API calls instead of hitting the network."""

    def __init__(self, name: str = "neuro_blogger_bot", *, fail_video: bool = False, fail_all: bool = False):
        super().__init__("TEST:TOKEN", name=name)
        self.fail_video = fail_video
        self.fail_all = fail_all
        self.messages: List[Tuple[int, str]] = []
        self.videos: List[Tuple[int, str, Optional[str]]] = []

    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> Dict[str, Any]:
        if self.fail_all:
            raise TelegramError("sendMessage failed", status_code=500)
        self.messages.append((chat_id, text))
        return {"message_id": len(self.messages)}

    async def send_video(self, chat_id: int, video_url: str, caption: Optional[str] = None) -> Dict[str, Any]:
        if self.fail_video or self.fail_all:
            raise TelegramError("sendVideo failed: wrong file identifier", status_code=400)
        self.videos.append((chat_id, video_url, caption))
        return {"message_id": len(self.videos)}

    def texts(self) -> List[str]:
        return [t for _, t in self.messages]
