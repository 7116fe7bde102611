import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.core.log import log_evt
from video_pipeline import CallbackValidationError, TaskStoreError, parse_callback, process_callback

router = APIRouter()

logger = logging.getLogger("kie_callback")


@router.post("/callback", summary="Kie.ai job result webhook")
async def kie_callback(request: Request) -> JSONResponse:
    raw = await request.body()
    try:
        body = json.loads(raw or b"null")
    except ValueError:
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid JSON body"})

    try:
        cb = parse_callback(body)
    except CallbackValidationError as e:
        log_evt(logger, "KIE_CALLBACK_REJECTED", level=logging.WARNING, err=str(e))
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})

    try:
        result = await process_callback(cb, registry=getattr(request.app.state, "bot_registry", None))
    except TaskStoreError as e:
        log_evt(logger, "KIE_CALLBACK_STORE_ERROR", level=logging.ERROR, task_id=cb.task_id, err=str(e))
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    return JSONResponse(status_code=200, content=result)


@router.get("/callback/health", summary="Kie.ai callback healthcheck")
async def kie_callback_health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": "kie-ai-callback",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
