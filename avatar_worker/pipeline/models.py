"""
Pydantic models and enums for the scene generation pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Scene Status ─────────────────────────────────────────────────────────────

class SceneStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATING_AUDIO = "GENERATING_AUDIO"
    GENERATING_IMAGE = "GENERATING_IMAGE"
    GENERATING_VIDEO = "GENERATING_VIDEO"
    APPLYING_LIPSYNC = "APPLYING_LIPSYNC"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# A new run may only start from these.
STARTABLE_STATUSES = (SceneStatus.DRAFT, SceneStatus.FAILED, SceneStatus.COMPLETED)

# Statuses whose poll loop can be resumed from a persisted checkpoint.
RESUMABLE_STATUSES = (SceneStatus.GENERATING_VIDEO, SceneStatus.APPLYING_LIPSYNC)


# ── Log Tags ─────────────────────────────────────────────────────────────────

class PipelineStep(str, Enum):
    AUDIO_GENERATION = "AUDIO_GENERATION"
    IMAGE_GENERATION = "IMAGE_GENERATION"
    VIDEO_GENERATION = "VIDEO_GENERATION"
    LIPSYNC_APPLICATION = "LIPSYNC_APPLICATION"
    VIDEO_ASSEMBLY = "VIDEO_ASSEMBLY"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


# ── Vendor Task Status ───────────────────────────────────────────────────────

class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class VoiceSettings(BaseModel):
    stability: float = 0.5
    similarity_boost: float = 0.8
    style: float = 0.2
    use_speaker_boost: bool = True


class SpeechResult(BaseModel):
    audio: bytes
    content_type: str = "audio/mpeg"
    character_count: int
    model: str = ""


class ImageTask(BaseModel):
    task_id: str
    status: TaskStatus
    image_url: Optional[str] = None
    error: Optional[str] = None


class VideoTask(BaseModel):
    task_id: str
    status: TaskStatus
    video_url: Optional[str] = None
    progress: Optional[int] = None
    error: Optional[str] = None


class LipsyncTask(BaseModel):
    job_id: str
    status: TaskStatus
    video_url: Optional[str] = None
    error: Optional[str] = None


# ── Scene Record ─────────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    name: str = ""
    default_voice_id: Optional[str] = None


class Headshot(BaseModel):
    """An uploaded identity photo (asset) used in place of image generation."""
    id: Optional[str] = None
    name: str = ""
    r2_key: str = ""
    r2_url: Optional[str] = None


class PollState(BaseModel):
    """Checkpoint persisted on every poll so a restarted worker can resume."""
    step: PipelineStep
    task_id: str
    attempt: int = 0
    next_poll_at: Optional[datetime] = None


class Scene(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    name: str = ""
    order_index: int = 0
    status: SceneStatus = SceneStatus.DRAFT

    # Inputs
    dialogue: Optional[str] = None
    environment: Optional[str] = None
    wardrobe: Optional[str] = None
    movement: Optional[str] = None
    camera: Optional[str] = None
    mood_lighting: Optional[str] = None
    target_duration: Optional[float] = None
    voice_id: Optional[str] = None
    headshot_id: Optional[str] = None

    # Outputs, filled step by step
    audio_url: Optional[str] = None
    audio_key: Optional[str] = None
    audio_duration: Optional[float] = None
    audio_model: Optional[str] = None
    image_url: Optional[str] = None
    image_key: Optional[str] = None
    image_prompt: Optional[str] = None
    image_model: Optional[str] = None
    raw_video_url: Optional[str] = None
    raw_video_key: Optional[str] = None
    video_prompt: Optional[str] = None
    video_model: Optional[str] = None
    video_mode: Optional[str] = None
    video_task_id: Optional[str] = None
    lipsync_video_url: Optional[str] = None
    lipsync_model: Optional[str] = None
    lipsync_job_id: Optional[str] = None
    final_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    # Failure bookkeeping
    failure_reason: Optional[str] = None
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    poll_state: Optional[PollState] = None
    # Token of the run that currently owns the scene; every write of a run is conditional on it.
    run_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    project: Optional[Project] = None
    headshot: Optional[Headshot] = None


class GenerationLogEntry(BaseModel):
    scene_id: str
    project_id: str
    step: PipelineStep
    level: LogLevel
    message: str
    provider: Optional[str] = None
    duration_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    request_payload: Optional[dict[str, Any]] = None
    response_payload: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


# ── Progress / Results ───────────────────────────────────────────────────────

class ProgressEvent(BaseModel):
    """One streamed step transition: {step, status, message, urls...}."""
    model_config = ConfigDict(extra="allow")

    step: int
    status: str
    message: str = ""


class PipelineResult(BaseModel):
    scene_id: str
    status: SceneStatus
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    raw_video_url: Optional[str] = None
    lipsync_video_url: Optional[str] = None
    final_video_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


# ── API Request / Response Models ────────────────────────────────────────────

class GenerateResponse(BaseModel):
    message: str
    scene_id: str
    job_id: Optional[str] = None
    queue_position: Optional[int] = None
    method: str = "queue"


class CheckLipsyncRequest(BaseModel):
    job_id: Optional[str] = None


class RecoverRequest(BaseModel):
    output_url: str = Field(..., description="Vendor URL of the finished lip-synced video")
    job_id: Optional[str] = None


class RecoveryResponse(BaseModel):
    success: bool
    recovered: bool = False
    vendor_status: Optional[str] = None
    job_id: Optional[str] = None
    final_video_url: Optional[str] = None
    message: str = ""
