"""
Step 4: Lip-sync — Sync Labs v2.

Besides submit/poll, the client exposes raw_status(): the untouched job record,
used by the recovery probe when a job reports completion without an output URL.
"""

import json
import logging
import os
from typing import Optional

import httpx

from .vendor_http import json_body, request_with_backoff
from .duration import PLAN_MAX_SECONDS, LipsyncPlan
from .errors import ProviderError, ValidationError
from .models import LipsyncTask, TaskStatus
from .recovery import extract_output_url

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SYNCLABS_API_URL = "https://api.sync.so/v2"
SYNCLABS_MODEL = "lipsync-2"

_SYNCLABS_STATUS = {
    "PENDING": TaskStatus.PENDING,
    "QUEUED": TaskStatus.PENDING,
    "PROCESSING": TaskStatus.PROCESSING,
    "COMPLETED": TaskStatus.COMPLETED,
    "COMPLETE": TaskStatus.COMPLETED,
    "FAILED": TaskStatus.FAILED,
    "ERROR": TaskStatus.FAILED,
    "REJECTED": TaskStatus.FAILED,
    "CANCELED": TaskStatus.FAILED,
}


def parse_synclabs_error(status_code: Optional[int], body: str, plan: LipsyncPlan) -> str:
    """Turn a Sync Labs error body into an operator-friendly message."""
    max_minutes = PLAN_MAX_SECONDS[plan] // 60
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        parsed = None

    if isinstance(parsed, dict):
        inner_code = parsed.get("statusCode")
        message = str(parsed.get("message") or "")

        if inner_code == 402 or "audio exceeds duration" in message.lower():
            return (
                f"Audio exceeds your Sync Labs plan limit. Current plan: {plan.value} "
                f"(max {max_minutes} min). Upgrade at sync.so/billing or shorten your dialogue."
            )
        if inner_code == 401 or status_code == 401:
            return "Sync Labs authentication failed. Check SYNCLABS_API_KEY."
        if inner_code == 429 or status_code == 429:
            return "Sync Labs rate limit exceeded. Wait a moment and try again."
        if message:
            return f"Sync Labs error: {message}"

    return f"Sync Labs API error ({status_code}): {(body or '')[:200]}"


class SyncLabsClient:
    provider = "SyncLabs"
    model = SYNCLABS_MODEL

    def __init__(
        self,
        api_key: Optional[str] = None,
        plan: LipsyncPlan = LipsyncPlan.CREATOR,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("SYNCLABS_API_KEY", "")
        self.plan = LipsyncPlan(plan)
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ValidationError("SYNCLABS_API_KEY is not configured")
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def submit(self, video_url: str, audio_url: str) -> str:
        try:
            response = await request_with_backoff(
                self.provider,
                "POST",
                f"{SYNCLABS_API_URL}/generate",
                transport=self._transport,
                headers=self._headers(),
                json={
                    "model": self.model,
                    "input": [
                        {"type": "video", "url": video_url},
                        {"type": "audio", "url": audio_url},
                    ],
                    "options": {"output_format": "mp4"},
                },
            )
        except ProviderError as e:
            if e.status_code is None:
                raise
            friendly = parse_synclabs_error(e.status_code, e.details.get("body", ""), self.plan)
            raise ProviderError(self.provider, friendly, status_code=e.status_code, details=e.details) from e

        data = json_body(self.provider, response)
        job_id = data.get("id")
        if not job_id:
            raise ProviderError(self.provider, f"Sync Labs returned no job id: {data}")

        logger.info(f"Lip-sync job submitted: {job_id}")
        return job_id

    async def raw_status(self, job_id: str) -> dict:
        response = await request_with_backoff(
            self.provider,
            "GET",
            f"{SYNCLABS_API_URL}/generate/{job_id}",
            transport=self._transport,
            headers=self._headers(),
        )
        return json_body(self.provider, response)

    async def poll(self, job_id: str) -> LipsyncTask:
        data = await self.raw_status(job_id)

        status = _SYNCLABS_STATUS.get(str(data.get("status", "")).upper(), TaskStatus.PENDING)
        video_url, _ = extract_output_url(data)

        error = data.get("error") or data.get("message")
        return LipsyncTask(
            job_id=job_id,
            status=status,
            video_url=video_url,
            error=str(error) if error else None,
        )
