import json

import httpx
import pytest

from avatar_worker.pipeline.errors import ProviderError
from avatar_worker.pipeline.imagegen import FluxImageClient, GeminiImageClient
from avatar_worker.pipeline.models import TaskStatus
from avatar_worker.pipeline.speech import ElevenLabsClient
from avatar_worker.pipeline.videogen import KieVeoClient, KlingVideoClient


def _transport(payload, status=200):
    return httpx.MockTransport(lambda request: httpx.Response(status, json=payload))


# ── Kling ────────────────────────────────────────────────────────────────────

async def test_kling_submit():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 200, "data": {"task_id": "k-1"}})

    client = KlingVideoClient(api_key="k", transport=httpx.MockTransport(handler))
    task_id = await client.submit("https://img", "nods, close-up", duration=10, mode="std")

    assert task_id == "k-1"
    assert bodies[0]["input"]["image_url"] == "https://img"
    assert bodies[0]["input"]["duration"] == 10
    assert bodies[0]["input"]["mode"] == "std"


async def test_kling_submit_without_task_id():
    client = KlingVideoClient(api_key="k", transport=_transport({"code": 500, "message": "quota"}))
    with pytest.raises(ProviderError, match="quota"):
        await client.submit("https://img", "p")


async def test_kling_poll_completed():
    payload = {"data": {"status": "completed", "output": {"videos": [{"url": "https://k/v.mp4"}]}}}
    task = await KlingVideoClient(api_key="k", transport=_transport(payload)).poll("k-1")

    assert task.status == TaskStatus.COMPLETED
    assert task.video_url == "https://k/v.mp4"


async def test_kling_poll_failed_error_object():
    payload = {"data": {"status": "failed", "error": {"message": "oom"}}}
    task = await KlingVideoClient(api_key="k", transport=_transport(payload)).poll("k-1")

    assert task.status == TaskStatus.FAILED
    assert task.error == "oom"


# ── Veo via Kie.ai ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("record,expected", [
    ({"successFlag": 0}, TaskStatus.PROCESSING),
    ({"successFlag": 1, "response": {"resultUrls": ["https://kie/v.mp4"]}}, TaskStatus.COMPLETED),
    ({"successFlag": 2, "errorMessage": "blocked"}, TaskStatus.FAILED),
    ({"status": "GENERATE_FAILED"}, TaskStatus.FAILED),
    ({}, TaskStatus.PENDING),
])
async def test_veo_poll_status(record, expected):
    task = await KieVeoClient(api_key="k", transport=_transport({"code": 200, "data": record})).poll("v-1")
    assert task.status == expected


async def test_veo_poll_result_url():
    record = {"successFlag": 1, "response": {"resultUrls": ["https://kie/v.mp4"]}}
    task = await KieVeoClient(api_key="k", transport=_transport({"data": record})).poll("v-1")
    assert task.video_url == "https://kie/v.mp4"


async def test_veo_submit_reads_camel_case_task_id():
    client = KieVeoClient(api_key="k", transport=_transport({"code": 200, "data": {"taskId": "v-9"}}))
    assert await client.submit("https://img", "p") == "v-9"


# ── Image / speech ───────────────────────────────────────────────────────────

async def test_flux_poll_reads_first_image():
    payload = {"data": {"status": "completed", "output": {"images": ["https://flux/i.png"]}}}
    task = await FluxImageClient(api_key="k", transport=_transport(payload)).poll("f-1")

    assert task.status == TaskStatus.COMPLETED
    assert task.image_url == "https://flux/i.png"


async def test_gemini_generate_decodes_inline_image():
    payload = {"candidates": [{"content": {"parts": [
        {"text": "here you go"},
        {"inlineData": {"mimeType": "image/jpeg", "data": "aGVsbG8="}},
    ]}}]}
    data, mime = await GeminiImageClient(api_key="g", transport=_transport(payload)).generate("portrait")

    assert data == b"hello"
    assert mime == "image/jpeg"


async def test_gemini_without_image_data():
    payload = {"candidates": [{"content": {"parts": [{"text": "sorry"}]}}]}
    with pytest.raises(ProviderError):
        await GeminiImageClient(api_key="g", transport=_transport(payload)).generate("portrait")


async def test_elevenlabs_returns_audio_bytes():
    def handler(request):
        assert request.url.path.endswith("/text-to-speech/voice-1")
        assert request.headers["xi-api-key"] == "el"
        return httpx.Response(200, content=b"ID3...", headers={"content-type": "audio/mpeg"})

    result = await ElevenLabsClient(api_key="el", transport=httpx.MockTransport(handler)).synthesize(
        "Hello there", "voice-1"
    )

    assert result.audio == b"ID3..."
    assert result.character_count == 11
    assert result.content_type == "audio/mpeg"
