from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from db_supabase import get_supabase, now_iso

TABLE = "video_tasks"

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class TaskMetadata(BaseModel):
    """Typed contents of video_tasks.metadata (jsonb)."""

    model_config = ConfigDict(extra="ignore")

    version: int = 1
    model: Optional[str] = None
    aspect_ratio: Optional[str] = None
    prompt: Optional[str] = None
    username: Optional[str] = None
    duration: Optional[int] = None
    estimated_cost: Optional[str] = None
    image_url: Optional[str] = None
    callback_url: Optional[str] = None
    request_id: Optional[str] = None

    callback_received: bool = False
    callback_timestamp: Optional[str] = None
    progress: Optional[int] = None
    cost: Optional[str] = None
    reported_duration: Optional[int] = None
    callback_metadata: Dict[str, Any] = {}

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "TaskMetadata":
        raw = (row or {}).get("metadata") or {}
        if not isinstance(raw, dict):
            raw = {}
        return cls.model_validate(raw)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def create_task(
    *,
    task_id: str,
    provider: str,
    telegram_id: int,
    bot_name: str,
    model: str,
    prompt: str,
    is_ru: bool,
    metadata: TaskMetadata,
) -> Dict[str, Any]:
    sb = get_supabase()
    res = (
        sb.table(TABLE)
        .insert(
            {
                "task_id": str(task_id),
                "provider": provider,
                "telegram_id": str(telegram_id),
                "bot_name": bot_name,
                "model": model,
                "prompt": prompt,
                "status": STATUS_PROCESSING,
                "is_ru": bool(is_ru),
                "metadata": metadata.to_json(),
                "created_at": now_iso(),
            }
        )
        .execute()
    )
    if not res.data:
        raise RuntimeError(f"Failed to persist video task {task_id}")
    return res.data[0]


def get_task(task_id: str) -> Optional[Dict[str, Any]]:
    sb = get_supabase()
    rows = sb.table(TABLE).select("*").eq("task_id", str(task_id)).limit(1).execute().data or []
    return rows[0] if rows else None


def finish_task(
    task_id: str,
    *,
    status: str,
    metadata: TaskMetadata,
    video_url: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    processing -> completed|failed. Only succeeds while the row is still processing,
    so exactly one caller wins. Returns the updated row, or None if someone else finished it.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal status: {status}")
    sb = get_supabase()
    patch: Dict[str, Any] = {
        "status": status,
        "completed_at": now_iso(),
        "metadata": metadata.to_json(),
    }
    if video_url:
        patch["video_url"] = video_url
    if error_message:
        patch["error_message"] = error_message[:1500]
    upd = (
        sb.table(TABLE)
        .update(patch)
        .eq("task_id", str(task_id))
        .eq("status", STATUS_PROCESSING)
        .execute()
    ).data or []
    return upd[0] if upd else None


def update_progress(task_id: str, *, metadata: TaskMetadata) -> bool:
    sb = get_supabase()
    upd = (
        sb.table(TABLE)
        .update({"metadata": metadata.to_json()})
        .eq("task_id", str(task_id))
        .eq("status", STATUS_PROCESSING)
        .execute()
    ).data or []
    return bool(upd)


def list_stale_processing(*, older_than_sec: int, limit: int = 20) -> List[Dict[str, Any]]:
    sb = get_supabase()
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=int(older_than_sec))).isoformat()
    return (
        sb.table(TABLE)
        .select("*")
        .eq("status", STATUS_PROCESSING)
        .lt("created_at", cutoff)
        .order("created_at", desc=False)
        .limit(int(limit))
        .execute()
    ).data or []
