import json

import httpx
import pytest

from avatar_worker.pipeline.duration import LipsyncPlan
from avatar_worker.pipeline.errors import ProviderError, ValidationError
from avatar_worker.pipeline.lipsync import SyncLabsClient, parse_synclabs_error
from avatar_worker.pipeline.models import TaskStatus


def _client(handler, plan=LipsyncPlan.CREATOR):
    return SyncLabsClient(api_key="sk-test", plan=plan, transport=httpx.MockTransport(handler))


async def test_submit_sends_video_and_audio():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "job-123", "status": "PENDING"})

    job_id = await _client(handler).submit("https://signed/v.mp4", "https://signed/a.mp3")

    assert job_id == "job-123"
    assert captured["url"].endswith("/v2/generate")
    assert captured["headers"]["x-api-key"] == "sk-test"
    assert captured["body"]["input"] == [
        {"type": "video", "url": "https://signed/v.mp4"},
        {"type": "audio", "url": "https://signed/a.mp3"},
    ]


async def test_submit_plan_limit_error_is_friendly():
    def handler(request):
        return httpx.Response(402, json={"statusCode": 402, "message": "Audio exceeds duration limit"})

    with pytest.raises(ProviderError) as exc_info:
        await _client(handler, LipsyncPlan.HOBBYIST).submit("https://v", "https://a")

    assert exc_info.value.status_code == 402
    assert "hobbyist" in exc_info.value.message
    assert "max 1 min" in exc_info.value.message


@pytest.mark.parametrize("raw_status,expected", [
    ("PENDING", TaskStatus.PENDING),
    ("PROCESSING", TaskStatus.PROCESSING),
    ("COMPLETED", TaskStatus.COMPLETED),
    ("REJECTED", TaskStatus.FAILED),
    ("something-new", TaskStatus.PENDING),
])
async def test_poll_status_mapping(raw_status, expected):
    def handler(request):
        return httpx.Response(200, json={"id": "job-1", "status": raw_status})

    task = await _client(handler).poll("job-1")
    assert task.status == expected


async def test_poll_reads_output_url_and_error():
    def handler(request):
        assert request.url.path.endswith("/generate/job-1")
        return httpx.Response(200, json={"id": "job-1", "status": "COMPLETED", "outputUrl": "https://x/out.mp4"})

    task = await _client(handler).poll("job-1")
    assert task.video_url == "https://x/out.mp4"

    failed = await _client(lambda r: httpx.Response(200, json={"status": "FAILED", "error": "no face"})).poll("job-2")
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "no face"


async def test_missing_api_key():
    with pytest.raises(ValidationError):
        await SyncLabsClient(api_key="").submit("https://v", "https://a")


def test_parse_error_variants():
    plan = LipsyncPlan.CREATOR
    assert "authentication" in parse_synclabs_error(401, json.dumps({"message": "nope"}), plan)
    assert "rate limit" in parse_synclabs_error(429, "{}", plan)
    assert parse_synclabs_error(400, json.dumps({"message": "bad video"}), plan) == "Sync Labs error: bad video"
    assert parse_synclabs_error(500, "upstream exploded", plan).startswith("Sync Labs API error (500)")
