"""
Step 3: Image-to-video.

  - KlingVideoClient — Kling via PiAPI's unified task endpoint (default)
  - KieVeoClient     — Veo 3.1 via Kie.ai

Both expose submit(...) -> task_id and poll(task_id) -> VideoTask with the
vendor status folded into pending / processing / completed / failed.
"""

import json
import logging
import os
from typing import Optional

import httpx

from .vendor_http import json_body, request_with_backoff
from .errors import ProviderError, ValidationError
from .models import TaskStatus, VideoTask

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

PIAPI_TASK_URL = "https://api.piapi.ai/api/v1/task"
KIE_API_BASE = "https://api.kie.ai/api/v1"

DEFAULT_NEGATIVE_PROMPT = "blurry, distorted, low quality, static, frozen"

_KLING_STATUS = {
    "pending": TaskStatus.PENDING,
    "submitted": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "staged": TaskStatus.PENDING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "completed": TaskStatus.COMPLETED,
    "succeed": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
}


def _stringify_error(raw) -> Optional[str]:
    if raw in (None, "", {}):
        return None
    if isinstance(raw, dict):
        return raw.get("message") or raw.get("raw_message") or json.dumps(raw)
    return str(raw)


class KlingVideoClient:
    provider = "Kling"
    model = "kling"

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

    async def submit(
        self,
        image_url: str,
        prompt: str,
        duration: int = 5,
        aspect_ratio: str = "16:9",
        mode: str = "pro",
    ) -> str:
        request_body = {
            "model": "kling",
            "task_type": "video_generation",
            "input": {
                "image_url": image_url,
                "prompt": prompt,
                "negative_prompt": DEFAULT_NEGATIVE_PROMPT,
                "cfg_scale": 0.5,
                "duration": duration,
                "aspect_ratio": aspect_ratio,
                "mode": mode,
            },
        }
        response = await request_with_backoff(
            self.provider,
            "POST",
            PIAPI_TASK_URL,
            transport=self._transport,
            headers=self._headers(),
            json=request_body,
        )
        data = json_body(self.provider, response)

        task_id = (data.get("data") or {}).get("task_id")
        if not task_id:
            raise ProviderError(self.provider, f"Kling API error: {data.get('message') or data}")

        logger.info(f"Kling video submitted: task_id={task_id} ({duration}s, {aspect_ratio}, {mode})")
        return task_id

    async def poll(self, task_id: str) -> VideoTask:
        response = await request_with_backoff(
            self.provider,
            "GET",
            f"{PIAPI_TASK_URL}/{task_id}",
            transport=self._transport,
            headers=self._headers(),
        )
        data = json_body(self.provider, response)
        task = data.get("data")
        if not isinstance(task, dict):
            raise ProviderError(self.provider, f"Kling API error: {data.get('message') or data}")

        output = task.get("output") or {}
        videos = output.get("videos") or []
        video_url = (
            output.get("video_url")
            or (videos[0].get("url") if videos and isinstance(videos[0], dict) else None)
            or output.get("video")
            or (task.get("result") or {}).get("video_url")
        )

        return VideoTask(
            task_id=task_id,
            status=_KLING_STATUS.get(str(task.get("status", "")).lower(), TaskStatus.PENDING),
            video_url=video_url,
            progress=task.get("progress"),
            error=_stringify_error(task.get("error") or task.get("message") or task.get("error_message")),
        )


class KieVeoClient:
    """Veo 3.1 Fast through Kie.ai, image-to-video."""

    provider = "Kie-Veo"
    model = "veo3_fast"

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("KIE_API_KEY", "")
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ValidationError("KIE_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def submit(
        self,
        image_url: str,
        prompt: str,
        duration: int = 5,
        aspect_ratio: str = "16:9",
        mode: str = "pro",
    ) -> str:
        payload = {
            "prompt": prompt,
            "model": self.model,
            "mode": "REFERENCE_2_VIDEO",
            "aspectRatio": aspect_ratio,
            "imageUrls": [image_url],
            "duration": duration,
        }
        response = await request_with_backoff(
            self.provider,
            "POST",
            f"{KIE_API_BASE}/veo/generate",
            transport=self._transport,
            headers=self._headers(),
            json=payload,
        )
        data = json_body(self.provider, response)

        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        task_id = (
            inner.get("taskId") or inner.get("task_id")
            or data.get("taskId") or data.get("task_id")
        )
        if not task_id:
            raise ProviderError(self.provider, f"Kie.ai submit failed — no task_id: {data}")

        logger.info(f"Veo animation submitted: task_id={task_id}")
        return task_id

    async def poll(self, task_id: str) -> VideoTask:
        response = await request_with_backoff(
            self.provider,
            "GET",
            f"{KIE_API_BASE}/veo/record-info",
            transport=self._transport,
            headers=self._headers(),
            params={"taskId": task_id},
        )
        data = json_body(self.provider, response)
        record = data.get("data") if isinstance(data.get("data"), dict) else {}

        # Kie.ai uses two indicators: data.status and Veo's data.successFlag
        # (0 generating, 1 success, 2/3 failed).
        raw_status = str(record.get("status", ""))
        success_flag = record.get("successFlag")
        if raw_status in ("SUCCESS", "success") or success_flag == 1:
            status = TaskStatus.COMPLETED
        elif raw_status in ("GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail") \
                or success_flag in (2, 3):
            status = TaskStatus.FAILED
        elif raw_status in ("GENERATING", "queuing", "waiting") or success_flag == 0:
            status = TaskStatus.PROCESSING
        else:
            status = TaskStatus.PENDING

        video_url = None
        response_block = record.get("response") or {}
        result_urls = response_block.get("resultUrls") or []
        if result_urls:
            video_url = result_urls[0]
        results = record.get("results") or record.get("works") or []
        if not video_url and results and isinstance(results[0], dict):
            first = results[0]
            video_url = first.get("url") or first.get("videoUrl") or first.get("video_url")
        if not video_url:
            video_url = record.get("videoUrl") or record.get("video_url") or record.get("resultUrl")

        return VideoTask(
            task_id=task_id,
            status=status,
            video_url=video_url,
            error=_stringify_error(record.get("errorMessage") or record.get("msg") or record.get("failReason")),
        )
