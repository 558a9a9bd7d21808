"""
Step 2 fallback: Image generation when no headshot is available.

Two vendor shapes are supported:
  - FluxImageClient  — PiAPI Flux Schnell, submit + poll (async shape)
  - GeminiImageClient — Gemini image model, one generateContent call (sync shape)
"""

import base64
import logging
import os
from typing import Optional

import httpx

from .vendor_http import json_body, request_with_backoff
from .errors import ProviderError, ValidationError
from .models import ImageTask, TaskStatus

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

PIAPI_TASK_URL = "https://api.piapi.ai/api/v1/task"
FLUX_MODEL = "Qubico/flux1-schnell"

GEMINI_IMAGE_MODEL = "gemini-2.0-flash-preview-image-generation"
GEMINI_API_URL = (
    f"https://generativelanguage.googleapis.com/v1beta/models/"
    f"{GEMINI_IMAGE_MODEL}:generateContent"
)

FLUX_DIMENSIONS = {
    "1:1": (1024, 1024),
    "16:9": (1344, 768),
    "9:16": (768, 1344),
    "4:3": (1152, 896),
    "3:4": (896, 1152),
}

_FLUX_STATUS = {
    "pending": TaskStatus.PENDING,
    "submitted": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "staged": TaskStatus.PENDING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "completed": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
}


class FluxImageClient:
    provider = "PiAPI-Flux"
    model = FLUX_MODEL

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("PIAPI_API_KEY", "")
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ValidationError("PIAPI_API_KEY is not configured")
        return {"X-API-Key": self.api_key, "Content-Type": "application/json"}

    async def submit(self, prompt: str, aspect_ratio: str = "16:9") -> str:
        width, height = FLUX_DIMENSIONS.get(aspect_ratio, FLUX_DIMENSIONS["16:9"])
        response = await request_with_backoff(
            self.provider,
            "POST",
            PIAPI_TASK_URL,
            transport=self._transport,
            headers=self._headers(),
            json={
                "model": FLUX_MODEL,
                "task_type": "txt2img",
                "input": {
                    "prompt": prompt,
                    "width": width,
                    "height": height,
                    "num_inference_steps": 4,
                },
            },
        )
        data = json_body(self.provider, response)
        task_id = (data.get("data") or {}).get("task_id")
        if not task_id:
            raise ProviderError(self.provider, f"No task ID in Flux response: {data}")

        logger.info(f"Flux image task submitted: {task_id}")
        return task_id

    async def poll(self, task_id: str) -> ImageTask:
        response = await request_with_backoff(
            self.provider,
            "GET",
            f"{PIAPI_TASK_URL}/{task_id}",
            transport=self._transport,
            headers=self._headers(),
        )
        task = json_body(self.provider, response).get("data") or {}
        status = _FLUX_STATUS.get(str(task.get("status", "")).lower(), TaskStatus.PENDING)

        output = task.get("output") or {}
        images = output.get("images") or []
        image_url = output.get("image_url")
        if not image_url and images:
            first = images[0]
            image_url = first.get("url") if isinstance(first, dict) else first

        error = task.get("error")
        if isinstance(error, dict):
            error = error.get("message") or str(error)

        return ImageTask(
            task_id=task_id,
            status=status,
            image_url=image_url,
            error=error or None,
        )


class GeminiImageClient:
    provider = "Gemini"
    model = GEMINI_IMAGE_MODEL

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("GOOGLE_API_KEY", "")
        self._transport = transport

    async def generate(self, prompt: str, aspect_ratio: str = "16:9") -> tuple[bytes, str]:
        """Return ``(image_bytes, mime_type)`` for ``prompt``."""
        if not self.api_key:
            raise ValidationError("GOOGLE_API_KEY is not configured")

        response = await request_with_backoff(
            self.provider,
            "POST",
            GEMINI_API_URL,
            timeout=120,
            transport=self._transport,
            params={"key": self.api_key},
            json={
                "contents": [
                    {"parts": [{"text": f"{prompt}\n\nAspect ratio: {aspect_ratio}."}]}
                ],
                "generationConfig": {
                    "responseModalities": ["TEXT", "IMAGE"],
                    "temperature": 0.7,
                },
            },
        )
        result = json_body(self.provider, response)

        candidates = result.get("candidates", [])
        if not candidates:
            raise ProviderError(self.provider, "Gemini returned no candidates for image generation.")

        for part in candidates[0].get("content", {}).get("parts", []):
            if "inlineData" in part:
                mime_type = part["inlineData"].get("mimeType", "image/png")
                return base64.b64decode(part["inlineData"]["data"]), mime_type

        raise ProviderError(self.provider, "Gemini response contained no image data.")
