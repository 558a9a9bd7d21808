"""
Scene record store and generation log sink (Supabase).

Tables:
  scenes           — one row per unit of work
  projects         — owning project (default voice)
  assets           — uploaded headshots
  system_settings  — key/value, e.g. default_headshot_id
  generation_logs  — append-only diagnostic records

All mutations use the service role client and are scoped by scene id. Writes
made by a pipeline run are also conditional on the run_id that owns the scene.
"""

import logging
import os
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

from pydantic import BaseModel
from supabase import Client, create_client

from .errors import NotFoundError
from .models import Headshot, LogLevel, PipelineStep, Scene, SceneStatus

logger = logging.getLogger(__name__)

DEFAULT_HEADSHOT_SETTING = "default_headshot_id"
SCENE_SELECT = "*, project:projects(*), headshot:assets(*)"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_row(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert enums, datetimes and models into JSON-friendly column values."""
    row = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        row[key] = value
    return row


# ── Contracts ────────────────────────────────────────────────────────────────

class SceneStore(Protocol):
    def get_scene(self, scene_id: str) -> Scene: ...

    def claim(
        self, scene_id: str, expected: Iterable[SceneStatus], fields: dict[str, Any]
    ) -> Optional[Scene]: ...

    def update_owned(
        self,
        scene_id: str,
        run_id: Optional[str],
        fields: dict[str, Any],
        expected: Optional[Iterable[SceneStatus]] = None,
    ) -> Optional[Scene]: ...

    def get_default_headshot(self) -> Optional[Headshot]: ...

    def recent_logs(self, scene_id: str, limit: int = 10) -> list[dict]: ...

    def find_logged_job_id(self, scene_id: str, step: PipelineStep) -> Optional[str]: ...


class LogSink(Protocol):
    def append(
        self,
        scene_id: str,
        project_id: str,
        step: PipelineStep,
        level: LogLevel,
        message: str,
        provider: Optional[str] = None,
        **extras: Any,
    ) -> None: ...


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


_JOB_ID_PATTERN = re.compile(r"submitted: ([A-Za-z0-9_-]+)")


class SupabaseSceneStore:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client or get_service_client()

    def get_scene(self, scene_id: str) -> Scene:
        result = (
            self.sb.table("scenes")
            .select(SCENE_SELECT)
            .eq("id", scene_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise NotFoundError(f"Scene not found: {scene_id}")
        return Scene.model_validate(result.data[0])

    def claim(
        self, scene_id: str, expected: Iterable[SceneStatus], fields: dict[str, Any]
    ) -> Optional[Scene]:
        """
        Conditional update: apply ``fields`` only while status is one of ``expected``.

        Returns the updated row, or None when another run got there first.
        """
        result = (
            self.sb.table("scenes")
            .update(to_row({**fields, "updated_at": now_utc()}))
            .eq("id", scene_id)
            .in_("status", [SceneStatus(s).value for s in expected])
            .execute()
        )
        if not result.data:
            return None
        return Scene.model_validate(result.data[0])

    def update_owned(
        self,
        scene_id: str,
        run_id: Optional[str],
        fields: dict[str, Any],
        expected: Optional[Iterable[SceneStatus]] = None,
    ) -> Optional[Scene]:
        """
        Apply ``fields`` only while the scene's run_id is ``run_id`` (and, when
        given, its status is one of ``expected``).

        Returns the updated row, or None when another run owns the scene now.
        """
        query = (
            self.sb.table("scenes")
            .update(to_row({**fields, "updated_at": now_utc()}))
            .eq("id", scene_id)
        )
        query = query.is_("run_id", "null") if run_id is None else query.eq("run_id", run_id)
        if expected is not None:
            query = query.in_("status", [SceneStatus(s).value for s in expected])
        result = query.execute()
        if not result.data:
            return None
        return Scene.model_validate(result.data[0])

    def get_default_headshot(self) -> Optional[Headshot]:
        setting = (
            self.sb.table("system_settings")
            .select("value")
            .eq("key", DEFAULT_HEADSHOT_SETTING)
            .limit(1)
            .execute()
        )
        if not setting.data or not setting.data[0].get("value"):
            return None

        asset = (
            self.sb.table("assets")
            .select("*")
            .eq("id", setting.data[0]["value"])
            .limit(1)
            .execute()
        )
        if not asset.data:
            logger.warning(f"default_headshot_id points at missing asset {setting.data[0]['value']}")
            return None
        return Headshot.model_validate(asset.data[0])

    def recent_logs(self, scene_id: str, limit: int = 10) -> list[dict]:
        result = (
            self.sb.table("generation_logs")
            .select("id, level, step, message, provider, created_at")
            .eq("scene_id", scene_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data or []

    def find_logged_job_id(self, scene_id: str, step: PipelineStep) -> Optional[str]:
        """Pull a vendor job id out of the latest '... submitted: <id>' log line."""
        result = (
            self.sb.table("generation_logs")
            .select("message")
            .eq("scene_id", scene_id)
            .eq("step", step.value)
            .ilike("message", "%submitted:%")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        match = _JOB_ID_PATTERN.search(result.data[0]["message"])
        return match.group(1) if match else None


class SupabaseLogSink:
    """Fire-and-forget writer for generation_logs."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    def append(
        self,
        scene_id: str,
        project_id: str,
        step: PipelineStep,
        level: LogLevel,
        message: str,
        provider: Optional[str] = None,
        **extras: Any,
    ) -> None:
        row = {
            "scene_id": scene_id,
            "project_id": project_id,
            "step": step,
            "level": level,
            "message": message,
            "provider": provider,
            **{k: v for k, v in extras.items() if v is not None},
        }
        try:
            sb = self._client or get_service_client()
            sb.table("generation_logs").insert(to_row(row)).execute()
        except Exception as e:
            # Diagnostics must never abort the pipeline.
            logger.error(f"[{scene_id}] Failed to write generation log: {e}")
