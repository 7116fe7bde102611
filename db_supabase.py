"""Supabase access shared by the video pipeline.

Tables used:
- users:        telegram_id, username, level, language_code, bot_name
- payments_v2:  balance ledger (see billing_db.py)
- video_tasks:  async provider jobs (see video_tasks.py)
- assets:       delivered media (telegram_id, video_url, prompt, model, provider, type)

Env vars:
- SUPABASE_URL
- SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_SERVICE_KEY)
- SUPABASE_MEDIA_BUCKET (storage bucket for uploaded videos, default "media")
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from supabase import Client, create_client

from app.core.config import env, env_first

_supabase_client: Optional[Client] = None


class SupabaseNotConfigured(RuntimeError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is not None:
        return _supabase_client

    url = env_first("SUPABASE_URL")
    key = env_first("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE")
    if not url or not key:
        raise SupabaseNotConfigured("Supabase env vars not set: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")

    _supabase_client = create_client(url, key)
    return _supabase_client


def set_supabase(client: Any) -> None:
    """Replace the process-wide client (tests inject a fake here)."""
    global _supabase_client
    _supabase_client = client


def get_user_by_telegram_id(telegram_id: int) -> Optional[Dict[str, Any]]:
    sb = get_supabase()
    rows = (
        sb.table("users")
        .select("*")
        .eq("telegram_id", str(telegram_id))
        .limit(1)
        .execute()
    ).data or []
    return rows[0] if rows else None


def increment_user_level(telegram_id: int) -> int:
    """level += 1, returns the new level."""
    sb = get_supabase()
    user = get_user_by_telegram_id(telegram_id)
    if not user:
        raise RuntimeError(f"User {telegram_id} not found for level update")
    new_level = int(user.get("level") or 0) + 1
    sb.table("users").update({"level": new_level, "updated_at": now_iso()}).eq(
        "telegram_id", str(telegram_id)
    ).execute()
    return new_level


def save_video_asset(
    *,
    telegram_id: int,
    video_url: str,
    prompt: str,
    model: str,
    provider: str,
    username: str = "",
    bot_name: str = "",
    task_id: Optional[str] = None,
) -> None:
    sb = get_supabase()
    sb.table("assets").insert(
        {
            "telegram_id": str(telegram_id),
            "username": username or None,
            "bot_name": bot_name or None,
            "type": "video",
            "url": video_url,
            "prompt": prompt,
            "model": model,
            "provider": provider,
            "task_id": task_id,
            "created_at": now_iso(),
        }
    ).execute()


def upload_bytes_public(data: bytes, *, prefix: str, ext: str = "mp4", content_type: str = "video/mp4") -> str:
    """Upload bytes to Supabase Storage and return a public URL."""
    sb = get_supabase()
    bucket = env("SUPABASE_MEDIA_BUCKET", "media") or "media"
    ext = (ext or "mp4").lstrip(".").lower()
    path = f"{prefix.strip('/')}/{int(time.time())}_{uuid4().hex[:10]}.{ext}"

    sb.storage.from_(bucket).upload(
        path=path,
        file=data,
        file_options={"content-type": content_type, "upsert": "true"},
    )
    public = sb.storage.from_(bucket).get_public_url(path)
    if isinstance(public, str):
        return public
    url = (public.get("publicUrl") if isinstance(public, dict) else None) or ""
    if not url:
        raise RuntimeError("Supabase storage: could not get public url")
    return str(url)
