from __future__ import annotations

import json
import logging
import os

_NOISY = ("httpx", "httpcore", "httpx._client", "httpcore._sync", "httpcore._async")


def setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    silence_httpx()


def silence_httpx() -> None:
    # httpx logs every request line at INFO; that includes bot tokens in URLs
    for name in _NOISY:
        lg = logging.getLogger(name)
        lg.setLevel(logging.WARNING)
        lg.propagate = False


def log_evt(logger: logging.Logger, evt: str, *, level: int = logging.INFO, **kw) -> None:
    payload = {"evt": evt, **kw}
    try:
        logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
    except Exception:
        logger.log(level, f"{evt} {kw}")
