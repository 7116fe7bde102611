from __future__ import annotations

import asyncio
import gc
import logging
import os
import socket
from typing import Any, Dict, Optional

# -----------------------------------------------------------------------------
# Watchdog for video_tasks stuck in "processing"
#   - asks the provider for the job state when the webhook never arrived
#   - terminal states go through process_callback(), same path as the webhook
#   - idle exponential backoff between sweeps
#   - runs as a task inside the API process, so both settlement paths share
#     the per-user debit locks in billing_db
# -----------------------------------------------------------------------------

from app.core.config import env, env_int
from app.core.log import log_evt, silence_httpx
from bot_registry import BotRegistry, get_registry
from kie_client import KieProvider
from video_pipeline import CallbackPayload, TaskStoreError, process_callback
from video_tasks import STATUS_COMPLETED, STATUS_FAILED, list_stale_processing

logger = logging.getLogger("worker")

WORKER_ID = os.getenv("WORKER_ID") or socket.gethostname()


async def check_task(task: Dict[str, Any], *, kie: KieProvider, registry: BotRegistry) -> bool:
    """Returns True when the task reached a terminal state in this sweep."""
    task_id = str(task.get("task_id"))
    if (task.get("provider") or "kie") != "kie":
        return False

    try:
        st = await kie.get_task_status(task_id)
    except Exception as e:
        log_evt(logger, "WATCHDOG_STATUS_FAILED", level=logging.WARNING, task_id=task_id, err=f"{type(e).__name__}: {e}")
        return False

    if st.status not in (STATUS_COMPLETED, STATUS_FAILED):
        return False

    cb = CallbackPayload(
        taskId=task_id,
        status=st.status,
        videoUrl=st.video_url,
        error=st.error,
        duration=st.duration,
        progress=st.progress,
        metadata={"source": "watchdog", "worker_id": WORKER_ID},
    )
    try:
        await process_callback(cb, registry=registry)
    except TaskStoreError as e:
        log_evt(logger, "WATCHDOG_STORE_ERROR", level=logging.ERROR, task_id=task_id, err=str(e))
        return False
    log_evt(logger, "WATCHDOG_RESOLVED", task_id=task_id, status=st.status)
    return True


async def sweep(*, kie: KieProvider, registry: BotRegistry, stale_sec: int, limit: int = 20) -> int:
    tasks = await asyncio.to_thread(list_stale_processing, older_than_sec=stale_sec, limit=limit)
    resolved = 0
    for task in tasks:
        if await check_task(task, kie=kie, registry=registry):
            resolved += 1
    return resolved


async def run_watchdog(*, registry: Optional[BotRegistry] = None) -> None:
    logger.info("[worker] watchdog started id=%s", WORKER_ID)

    registry = registry or get_registry()
    kie = KieProvider(use_callback=False)

    stale_sec = env_int("VIDEO_TASK_STALE_SEC", 900)
    base_sleep_s = float(os.getenv("WATCHDOG_IDLE_SLEEP_BASE", "30"))
    max_sleep_s = float(os.getenv("WATCHDOG_IDLE_SLEEP_MAX", "300"))

    sleep_s = base_sleep_s
    idle_loops = 0

    while True:
        silence_httpx()
        try:
            resolved = await sweep(kie=kie, registry=registry, stale_sec=stale_sec)
        except Exception as e:
            log_evt(logger, "WATCHDOG_SWEEP_FAILED", level=logging.ERROR, err=f"{type(e).__name__}: {e}")
            resolved = 0

        if not resolved:
            idle_loops += 1
            await asyncio.sleep(sleep_s)
            sleep_s = min(max_sleep_s, sleep_s * 2)
            if idle_loops % 10 == 0:
                gc.collect()
            continue

        idle_loops = 0
        sleep_s = base_sleep_s
        await asyncio.sleep(1)


def watchdog_enabled() -> bool:
    return env("WATCHDOG_ENABLED", "1").lower() not in ("0", "false", "no", "off")


def start_watchdog(*, registry: Optional[BotRegistry] = None) -> Optional["asyncio.Task[None]"]:
    if not watchdog_enabled():
        logger.info("[worker] watchdog disabled")
        return None
    return asyncio.create_task(run_watchdog(registry=registry), name="video-task-watchdog")


async def stop_watchdog(task: Optional["asyncio.Task[None]"]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
