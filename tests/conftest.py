import pytest

from avatar_worker import metrics
from avatar_worker.pipeline.config import PipelineConfig
from avatar_worker.pipeline.models import Project, Scene
from avatar_worker.pipeline.orchestrator import SceneGenerationService

from .fakes import (
    FakeAsyncImageGen,
    FakeBlobStore,
    FakeLipsync,
    FakeLogSink,
    FakeSceneStore,
    FakeSpeech,
    FakeVideoGen,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────

async def _no_sleep(seconds):
    return None


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def config():
    return PipelineConfig(
        image_poll_interval=0,
        image_max_polls=5,
        video_poll_interval=0,
        video_max_polls=6,
        lipsync_fast_interval=0,
        lipsync_fast_window=0,
        lipsync_poll_interval=0,
        lipsync_max_polls=6,
        poll_log_every=2,
    )


@pytest.fixture
def log_sink():
    return FakeLogSink()


@pytest.fixture
def store(log_sink):
    return FakeSceneStore(log_sink)


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def image_gen():
    return FakeAsyncImageGen()


@pytest.fixture
def video_gen():
    return FakeVideoGen()


@pytest.fixture
def lipsync():
    return FakeLipsync()


@pytest.fixture
def scene(store):
    return store.add(Scene(
        id="scene-1",
        project_id="proj-1",
        name="Intro",
        dialogue="Hello, this is a test.",
        environment="sunlit studio",
        movement="nods slowly",
        project=Project(id="proj-1", name="Launch"),
    ))


@pytest.fixture
def make_service(store, log_sink, blob_store, speech, image_gen, video_gen, lipsync, config):
    def factory(**overrides) -> SceneGenerationService:
        kwargs = dict(
            store=store,
            log_sink=log_sink,
            blob_store=blob_store,
            speech=speech,
            image_gen=image_gen,
            video_gen=video_gen,
            lipsync=lipsync,
            config=config,
            sleep=_no_sleep,
        )
        kwargs.update(overrides)
        return SceneGenerationService(**kwargs)

    return factory


@pytest.fixture
def service(make_service):
    return make_service()
