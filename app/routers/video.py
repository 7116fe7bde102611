import asyncio
from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from video_pipeline import GenerationRequest, run_generation
from video_tasks import get_task

router = APIRouter()


@router.post("/generate/veo3-video", summary="Queue a text/image-to-video generation")
async def generate_video(body: GenerationRequest, background_tasks: BackgroundTasks, request: Request) -> Dict[str, Any]:
    request_id = uuid4().hex
    background_tasks.add_task(
        run_generation,
        body,
        registry=getattr(request.app.state, "bot_registry", None),
        request_id=request_id,
    )
    return {"success": True, "message": "Processing started", "request_id": request_id}


@router.get("/api/video-tasks/{task_id}", summary="Status of an async video task")
async def video_task_status(task_id: str) -> Dict[str, Any]:
    task = await asyncio.to_thread(get_task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return {
        "task_id": task.get("task_id"),
        "status": task.get("status"),
        "provider": task.get("provider"),
        "model": task.get("model"),
        "video_url": task.get("video_url"),
        "error_message": task.get("error_message"),
        "created_at": task.get("created_at"),
        "completed_at": task.get("completed_at"),
    }
