"""
Step 1: Speech — ElevenLabs text-to-speech.

Request/response: the audio bytes come back in the body of the POST, no polling.
"""

import logging
import os
from typing import Optional

import httpx

from .vendor_http import request_with_backoff
from .errors import ValidationError
from .models import SpeechResult, VoiceSettings

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_MODEL = "eleven_multilingual_v2"
PROVIDER = "ElevenLabs"


class ElevenLabsClient:
    provider = PROVIDER
    model = ELEVENLABS_MODEL

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 2,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("ELEVENLABS_API_KEY", "")
        self._transport = transport
        self._max_retries = max_retries

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        settings: Optional[VoiceSettings] = None,
    ) -> SpeechResult:
        """Generate speech for ``text`` with the given voice."""
        if not self.api_key:
            raise ValidationError("ELEVENLABS_API_KEY is not configured")
        settings = settings or VoiceSettings()

        response = await request_with_backoff(
            PROVIDER,
            "POST",
            f"{ELEVENLABS_API_URL}/text-to-speech/{voice_id}",
            timeout=120,
            max_retries=self._max_retries,
            transport=self._transport,
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json={
                "text": text,
                "model_id": ELEVENLABS_MODEL,
                "voice_settings": settings.model_dump(),
            },
        )

        logger.info(f"ElevenLabs synthesized {len(text)} chars with voice {voice_id}")
        return SpeechResult(
            audio=response.content,
            content_type=response.headers.get("content-type", "audio/mpeg").split(";")[0],
            character_count=len(text),
            model=ELEVENLABS_MODEL,
        )
