"""
In-memory stand-ins for the store, log sink, blob store and vendors.

Vendors are scripted: each poll() pops the next scripted response and keeps
returning the last one once the script runs out.
"""

import threading
from typing import Optional

from avatar_worker.pipeline.errors import NotFoundError
from avatar_worker.pipeline.models import (
    ImageTask,
    LipsyncTask,
    LogLevel,
    Scene,
    SpeechResult,
    TaskStatus,
    VideoTask,
)


# ── Store / sink / blobs ─────────────────────────────────────────────────────

class FakeLogSink:
    def __init__(self):
        self.entries: list[dict] = []

    def append(self, scene_id, project_id, step, level, message, provider=None, **extras):
        self.entries.append({
            "scene_id": scene_id,
            "project_id": project_id,
            "step": step,
            "level": level,
            "message": message,
            "provider": provider,
            **extras,
        })

    def at_level(self, level: LogLevel) -> list[dict]:
        return [e for e in self.entries if e["level"] == level]


class FakeSceneStore:
    def __init__(self, log_sink: FakeLogSink):
        self.rows: dict[str, Scene] = {}
        self.updates: list[tuple[str, dict]] = []
        self.claims: list[tuple[str, dict]] = []
        self.default_headshot = None
        self.log_sink = log_sink
        self._lock = threading.Lock()

    def add(self, scene: Scene) -> Scene:
        self.rows[scene.id] = scene
        return scene

    def get_scene(self, scene_id: str) -> Scene:
        if scene_id not in self.rows:
            raise NotFoundError(f"Scene not found: {scene_id}")
        return self.rows[scene_id].model_copy(deep=True)

    def claim(self, scene_id, expected, fields) -> Optional[Scene]:
        with self._lock:
            scene = self.get_scene(scene_id)
            if scene.status not in tuple(expected):
                return None
            self.claims.append((scene_id, dict(fields)))
            self.rows[scene_id] = scene.model_copy(update=fields)
            return self.get_scene(scene_id)

    def update_owned(self, scene_id, run_id, fields, expected=None) -> Optional[Scene]:
        with self._lock:
            scene = self.get_scene(scene_id)
            if scene.run_id != run_id:
                return None
            if expected is not None and scene.status not in tuple(expected):
                return None
            self.updates.append((scene_id, dict(fields)))
            self.rows[scene_id] = scene.model_copy(update=fields)
            return self.get_scene(scene_id)

    def get_default_headshot(self):
        return self.default_headshot

    def recent_logs(self, scene_id, limit=10):
        entries = [e for e in self.log_sink.entries if e["scene_id"] == scene_id]
        return list(reversed(entries))[:limit]

    def find_logged_job_id(self, scene_id, step):
        for entry in reversed(self.log_sink.entries):
            if entry["scene_id"] == scene_id and entry["step"] == step and "submitted: " in entry["message"]:
                return entry["message"].split("submitted: ", 1)[1].strip()
        return None

    def writes_of(self, field: str) -> list:
        return [fields[field] for _, fields in self.updates if fields.get(field) is not None]


class FakeBlobStore:
    BASE = "https://cdn.test/"

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fetched: list[str] = []

    async def upload(self, data, key, content_type):
        self.objects[key] = (data, content_type)
        return f"{self.BASE}{key}"

    async def fetch(self, url):
        self.fetched.append(url)
        return b"bytes-of:" + url.encode()

    def object_url(self, key):
        return f"{self.BASE}{key}"

    def signed_read_url(self, key, ttl_seconds=3600):
        return f"https://signed.test/{key}?ttl={ttl_seconds}"

    def key_from_url(self, url):
        if url.startswith(self.BASE):
            return url[len(self.BASE):]
        return None


# ── Vendors ──────────────────────────────────────────────────────────────────

class FakeSpeech:
    provider = "ElevenLabs"
    model = "eleven_multilingual_v2"

    def __init__(self):
        self.calls = []

    async def synthesize(self, text, voice_id, settings=None):
        self.calls.append({"text": text, "voice_id": voice_id, "settings": settings})
        return SpeechResult(audio=b"mp3", content_type="audio/mpeg", character_count=len(text), model=self.model)


class FakeAsyncImageGen:
    provider = "PiAPI-Flux"
    model = "Qubico/flux1-schnell"

    def __init__(self, script=None):
        self.script = list(script or [(TaskStatus.COMPLETED, "https://vendor.test/image.png", None)])
        self.submitted = []
        self.polls = 0

    async def submit(self, prompt, aspect_ratio="16:9"):
        self.submitted.append(prompt)
        return "img-task-1"

    async def poll(self, task_id):
        self.polls += 1
        status, url, error = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return ImageTask(task_id=task_id, status=status, image_url=url, error=error)


class FakeSyncImageGen:
    provider = "Gemini"
    model = "gemini-image"

    def __init__(self):
        self.calls = []

    async def generate(self, prompt, aspect_ratio="16:9"):
        self.calls.append(prompt)
        return b"png-bytes", "image/png"


class FakeVideoGen:
    provider = "Kling"
    model = "kling"

    def __init__(self, script=None, task_id="vid-task-1"):
        self.script = list(script or [(TaskStatus.COMPLETED, "https://vendor.test/raw.mp4", None)])
        self.task_id = task_id
        self.submitted = []
        self.polled = []

    async def submit(self, image_url, prompt, duration=5, aspect_ratio="16:9", mode="pro"):
        self.submitted.append({"image_url": image_url, "prompt": prompt, "duration": duration})
        return self.task_id

    async def poll(self, task_id):
        self.polled.append(task_id)
        status, url, error = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return VideoTask(task_id=task_id, status=status, video_url=url, error=error)


class FakeLipsync:
    provider = "SyncLabs"
    model = "lipsync-2"

    def __init__(self, script=None, raw=None, job_id="lip-job-1"):
        self.script = list(script or [(TaskStatus.COMPLETED, "https://vendor.test/lipsync.mp4", None)])
        self.raw = raw if raw is not None else {"status": "PROCESSING"}
        self.job_id = job_id
        self.submitted = []
        self.polled = []
        self.raw_calls = []

    async def submit(self, video_url, audio_url):
        self.submitted.append({"video_url": video_url, "audio_url": audio_url})
        return self.job_id

    async def poll(self, job_id):
        self.polled.append(job_id)
        status, url, error = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return LipsyncTask(job_id=job_id, status=status, video_url=url, error=error)

    async def raw_status(self, job_id):
        self.raw_calls.append(job_id)
        return self.raw

