import json
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from avatar_worker import queue as task_queue
from avatar_worker import rate_limiter
from avatar_worker.pipeline.models import SceneStatus
from avatar_worker.pipeline.routes import get_redis, get_service, scene_router


@pytest.fixture
def redis_client():
    return None


@pytest.fixture
def client(service, redis_client):
    app = FastAPI()
    app.include_router(scene_router)
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_redis] = lambda: redis_client
    return TestClient(app)


# ── Generate ─────────────────────────────────────────────────────────────────

def test_generate_without_redis_runs_in_background(client, scene, store):
    response = client.post(f"/scenes/{scene.id}/generate")

    assert response.status_code == 202
    assert response.json()["method"] == "background"
    assert store.rows[scene.id].status == SceneStatus.COMPLETED


def test_generate_unknown_scene(client):
    response = client.post("/scenes/missing/generate")

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "NOT_FOUND"


def test_generate_while_generating_is_409(client, scene, store, speech):
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.GENERATING_VIDEO})

    response = client.post(f"/scenes/{scene.id}/generate")

    assert response.status_code == 409
    assert response.json()["detail"]["details"]["status"] == "GENERATING_VIDEO"
    assert speech.calls == []


class TestQueued:
    @pytest.fixture
    def redis_client(self):
        return MagicMock()

    def test_enqueues_job(self, client, scene, store, monkeypatch):
        enqueued = []
        monkeypatch.setattr(rate_limiter, "check_rate_limit", lambda r, project_id: (True, 19, 0))
        monkeypatch.setattr(
            task_queue, "enqueue_task",
            lambda r, project_id, job_id, task_type, payload: enqueued.append((project_id, task_type, payload)) or 2,
        )

        response = client.post(f"/scenes/{scene.id}/generate")

        body = response.json()
        assert response.status_code == 202
        assert body["method"] == "queue"
        assert body["queue_position"] == 2
        assert body["job_id"]
        assert enqueued == [("proj-1", task_queue.TASK_SCENE_GENERATE, {"scene_id": scene.id})]
        assert store.rows[scene.id].status == SceneStatus.DRAFT

    def test_rate_limited(self, client, scene, monkeypatch):
        monkeypatch.setattr(rate_limiter, "check_rate_limit", lambda r, project_id: (False, 0, 42))

        response = client.post(f"/scenes/{scene.id}/generate")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"

    def test_scene_already_queued_is_409(self, client, scene, monkeypatch):
        enqueued = []
        monkeypatch.setattr(task_queue, "reserve_scene", lambda r, scene_id, job_id: "job-earlier")
        monkeypatch.setattr(task_queue, "enqueue_task", lambda *args: enqueued.append(args) or 1)

        response = client.post(f"/scenes/{scene.id}/generate")

        assert response.status_code == 409
        assert response.json()["detail"]["details"]["job_id"] == "job-earlier"
        assert enqueued == []

    def test_rate_limited_request_frees_scene_slot(self, client, scene, monkeypatch):
        released = []
        monkeypatch.setattr(rate_limiter, "check_rate_limit", lambda r, project_id: (False, 0, 42))
        monkeypatch.setattr(task_queue, "reserve_scene", lambda r, scene_id, job_id: None)
        monkeypatch.setattr(task_queue, "release_scene", lambda r, scene_id, job_id: released.append(scene_id))

        response = client.post(f"/scenes/{scene.id}/generate")

        assert response.status_code == 429
        assert released == [scene.id]


# ── Streaming ────────────────────────────────────────────────────────────────

def test_generate_stream_emits_sse_events(client, scene):
    response = client.post(f"/scenes/{scene.id}/generate-stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line[len("data: "):])
        for line in response.text.split("\n\n")
        if line.startswith("data: ")
    ]
    assert events[0]["status"] == "GENERATING_AUDIO"
    assert events[-1]["status"] == "COMPLETED"
    assert events[-1]["final_video_url"]


def test_generate_stream_conflict_before_streaming(client, scene, store):
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.APPLYING_LIPSYNC})
    assert client.post(f"/scenes/{scene.id}/generate-stream").status_code == 409


# ── Status / recovery / URLs ─────────────────────────────────────────────────

def test_status(client, scene, store):
    store.rows[scene.id] = scene.model_copy(update={
        "status": SceneStatus.FAILED, "failure_reason": "oom", "retry_count": 2,
    })

    body = client.get(f"/scenes/{scene.id}/status").json()

    assert body["status"] == "FAILED"
    assert body["failure_reason"] == "oom"
    assert body["retry_count"] == 2
    assert body["logs"] == []


def test_check_lipsync_without_body(client, scene, store, lipsync):
    lipsync.raw = {"status": "COMPLETED", "output_url": "https://x/out.mp4"}
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.FAILED, "lipsync_job_id": "lip-7"})

    body = client.post(f"/scenes/{scene.id}/check-lipsync").json()

    assert body["success"] and body["recovered"]
    assert body["job_id"] == "lip-7"
    assert store.rows[scene.id].status == SceneStatus.COMPLETED


def test_check_lipsync_with_job_id(client, scene, store, lipsync):
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.FAILED})

    body = client.post(f"/scenes/{scene.id}/check-lipsync", json={"job_id": "lip-8"}).json()

    assert body["success"] is False
    assert lipsync.raw_calls == ["lip-8"]


def test_recover(client, scene, store):
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.FAILED})

    response = client.post(f"/scenes/{scene.id}/recover", json={"output_url": "https://x/manual.mp4"})

    assert response.status_code == 200
    assert response.json()["recovered"] is True


def test_recover_bad_url(client, scene, store):
    store.rows[scene.id] = scene.model_copy(update={"status": SceneStatus.FAILED})

    response = client.post(f"/scenes/{scene.id}/recover", json={"output_url": "javascript:alert(1)"})

    assert response.status_code == 400


def test_video_url(client, scene, store):
    store.rows[scene.id] = scene.model_copy(update={
        "status": SceneStatus.COMPLETED,
        "final_video_url": "https://cdn.test/projects/proj-1/scenes/scene-1/final-1.mp4",
    })

    body = client.get(f"/scenes/{scene.id}/video-url").json()

    assert body == {
        "url": "https://signed.test/projects/proj-1/scenes/scene-1/final-1.mp4?ttl=3600",
        "type": "final",
        "expires_in": 3600,
    }


def test_video_url_unknown_type(client, scene):
    assert client.get(f"/scenes/{scene.id}/video-url", params={"type": "gif"}).status_code == 400
