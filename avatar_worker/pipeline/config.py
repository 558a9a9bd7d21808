"""
Worker configuration.

Values come from the environment (``.env`` is loaded by main.py at startup)
and are collected into a PipelineConfig that is passed to the orchestrator,
so tests can build one directly with zero poll intervals.
"""

import os

from pydantic import BaseModel, Field

from .duration import LipsyncPlan
from .models import VoiceSettings

# ElevenLabs "Sarah", used when neither the scene nor the project sets a voice
DEFAULT_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class PipelineConfig(BaseModel):
    # Providers
    video_provider: str = "kling"      # kling | veo
    image_provider: str = "flux"       # flux | gemini
    lipsync_plan: LipsyncPlan = LipsyncPlan.CREATOR

    # Speech
    default_voice_id: str = DEFAULT_VOICE_ID
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)

    # Video request
    video_duration: int = 5
    aspect_ratio: str = "16:9"
    video_mode: str = "pro"

    # Image polling (async-shape vendors): 2s x 60 = 2 minutes
    image_poll_interval: float = 2
    image_max_polls: int = 60

    # Video polling: 30s x 40 = 20 minutes
    video_poll_interval: float = 30
    video_max_polls: int = 40

    # Lip-sync polling: 10s for the first 2 minutes, then 15s; ~12 minutes total
    lipsync_fast_interval: float = 10
    lipsync_fast_window: float = 120
    lipsync_poll_interval: float = 15
    lipsync_max_polls: int = 50

    # Write a DEBUG poll record every Nth attempt (terminal transitions always log)
    poll_log_every: int = 4

    signed_url_ttl: int = 3600
    worker_concurrency: int = 2

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            video_provider=os.getenv("VIDEO_PROVIDER", "kling").lower(),
            image_provider=os.getenv("IMAGE_PROVIDER", "flux").lower(),
            lipsync_plan=LipsyncPlan(os.getenv("SYNCLABS_PLAN", "creator").lower()),
            default_voice_id=os.getenv("ELEVENLABS_VOICE_ID", DEFAULT_VOICE_ID),
            video_duration=_env_int("VIDEO_DURATION", 5),
            aspect_ratio=os.getenv("VIDEO_ASPECT_RATIO", "16:9"),
            video_mode=os.getenv("VIDEO_MODE", "pro"),
            video_poll_interval=_env_float("VIDEO_POLL_INTERVAL", 30),
            video_max_polls=_env_int("VIDEO_MAX_POLLS", 40),
            lipsync_fast_interval=_env_float("LIPSYNC_FAST_INTERVAL", 10),
            lipsync_fast_window=_env_float("LIPSYNC_FAST_WINDOW", 120),
            lipsync_poll_interval=_env_float("LIPSYNC_POLL_INTERVAL", 15),
            lipsync_max_polls=_env_int("LIPSYNC_MAX_POLLS", 50),
            poll_log_every=_env_int("POLL_LOG_EVERY", 4),
            signed_url_ttl=_env_int("SIGNED_URL_TTL", 3600),
            worker_concurrency=_env_int("WORKER_CONCURRENCY", 2),
        )
