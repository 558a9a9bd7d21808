"""
Capability contracts the orchestrator depends on.

Any vendor client that satisfies one of these protocols can be plugged into
SceneGenerationService; the concrete clients live in speech.py, imagegen.py,
videogen.py and lipsync.py; R2BlobStore in storage.py satisfies BlobStore.
"""

from typing import Optional, Protocol, runtime_checkable

from .models import ImageTask, LipsyncTask, SpeechResult, VideoTask, VoiceSettings


@runtime_checkable
class SpeechProvider(Protocol):
    provider: str

    async def synthesize(
        self, text: str, voice_id: str, settings: Optional[VoiceSettings] = None
    ) -> SpeechResult: ...


@runtime_checkable
class SyncImageGenerator(Protocol):
    """Vendors that return image bytes from a single call."""
    provider: str
    model: str

    async def generate(self, prompt: str, aspect_ratio: str = "16:9") -> tuple[bytes, str]: ...


@runtime_checkable
class AsyncImageGenerator(Protocol):
    """Vendors that hand back a task id to poll."""
    provider: str
    model: str

    async def submit(self, prompt: str, aspect_ratio: str = "16:9") -> str: ...

    async def poll(self, task_id: str) -> ImageTask: ...


@runtime_checkable
class VideoGenerator(Protocol):
    provider: str
    model: str

    async def submit(
        self,
        image_url: str,
        prompt: str,
        duration: int = 5,
        aspect_ratio: str = "16:9",
        mode: str = "pro",
    ) -> str: ...

    async def poll(self, task_id: str) -> VideoTask: ...


@runtime_checkable
class LipsyncProvider(Protocol):
    provider: str
    model: str

    async def submit(self, video_url: str, audio_url: str) -> str: ...

    async def poll(self, job_id: str) -> LipsyncTask: ...

    async def raw_status(self, job_id: str) -> dict: ...


class BlobStore(Protocol):
    async def upload(self, data: bytes, key: str, content_type: str) -> str: ...

    async def fetch(self, url: str) -> bytes: ...

    def object_url(self, key: str) -> str: ...

    def signed_read_url(self, key: str, ttl_seconds: int = 3600) -> str: ...

    def key_from_url(self, url: str) -> Optional[str]: ...
