"""
Scene Generation Pipeline

Turns a scene (dialogue + style descriptors) into a finished avatar video:
  Step 1 — Audio:    ElevenLabs text-to-speech
  Step 2 — Image:    uploaded headshot, else Flux / Gemini image generation
  Step 3 — Video:    Kling / Veo image-to-video (bounded poll)
  Step 4 — Lip-sync: Sync Labs (bounded poll + recovery probe)
  Finalize — copy to the scene's final key, status COMPLETED
"""

from .orchestrator import SceneGenerationService
from .routes import scene_router
from .models import PipelineResult, SceneStatus

__all__ = [
    "SceneGenerationService",
    "scene_router",
    "PipelineResult",
    "SceneStatus",
]
