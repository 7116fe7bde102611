from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from app.core.config import DEFAULT_BOT_NAME, env
from telegram_delivery import TelegramBot

logger = logging.getLogger("bot_registry")


class BotNotFoundError(LookupError):
    def __init__(self, bot_name: str):
        super().__init__(f"Bot '{bot_name}' is not registered")
        self.bot_name = bot_name


def parse_bot_tokens(raw: str) -> Dict[str, str]:
    """'name=token,name2=token2' -> {name: token}"""
    out: Dict[str, str] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, token = part.split("=", 1)
        name, token = name.strip(), token.strip()
        if name and token:
            out[name] = token
    return out


class BotRegistry:
    def __init__(self, bots: Optional[Dict[str, TelegramBot]] = None, *, default_name: str = DEFAULT_BOT_NAME):
        self._bots: Dict[str, TelegramBot] = dict(bots or {})
        self.default_name = default_name

    @classmethod
    def from_env(cls) -> "BotRegistry":
        tokens = parse_bot_tokens(env("BOT_TOKENS"))
        single = env("TELEGRAM_BOT_TOKEN")
        if single and DEFAULT_BOT_NAME not in tokens:
            tokens[DEFAULT_BOT_NAME] = single
        reg = cls({name: TelegramBot(token, name=name) for name, token in tokens.items()})
        logger.info("bot registry loaded: %s", ", ".join(sorted(tokens)) or "<empty>")
        return reg

    def names(self) -> Iterable[str]:
        return list(self._bots)

    def resolve(self, bot_name: Optional[str]) -> TelegramBot:
        name = (bot_name or "").strip() or self.default_name
        bot = self._bots.get(name)
        if bot is None:
            raise BotNotFoundError(name)
        return bot

    def default(self) -> Optional[TelegramBot]:
        return self._bots.get(self.default_name) or next(iter(self._bots.values()), None)


_registry: Optional[BotRegistry] = None


def get_registry() -> BotRegistry:
    global _registry
    if _registry is None:
        _registry = BotRegistry.from_env()
    return _registry


def set_registry(registry: Optional[BotRegistry]) -> None:
    global _registry
    _registry = registry
