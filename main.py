import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.log import setup_logging
from app.routers.kie_callback import router as kie_callback_router
from app.routers.video import router as video_router
from bot_registry import BotRegistry, set_registry
from worker import start_watchdog, stop_watchdog

setup_logging()

# ---- logging (ensure INFO shows up in Uvicorn logs) ----
UVICORN_LOGGER = logging.getLogger("uvicorn.error")
if UVICORN_LOGGER.level > logging.INFO:
    UVICORN_LOGGER.setLevel(logging.INFO)

APP_VERSION = "v1-video-pipeline"


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = BotRegistry.from_env()
    set_registry(registry)
    app.state.bot_registry = registry
    UVICORN_LOGGER.info("BOOT: main.py %s loaded, bots=%s", APP_VERSION, list(registry.names()))
    # single process: the watchdog settles under the same debit locks as the webhook
    watchdog = start_watchdog(registry=registry)
    try:
        yield
    finally:
        await stop_watchdog(watchdog)


app = FastAPI(lifespan=lifespan)

app.include_router(kie_callback_router, prefix="/api/kie-ai")
app.include_router(video_router)


@app.get("/health")
def health():
    return {"status": "ok"}
