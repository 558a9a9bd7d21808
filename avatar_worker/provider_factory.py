from .pipeline.config import PipelineConfig
from .pipeline.errors import ValidationError
from .pipeline.imagegen import FluxImageClient, GeminiImageClient
from .pipeline.lipsync import SyncLabsClient
from .pipeline.orchestrator import SceneGenerationService
from .pipeline.speech import ElevenLabsClient
from .pipeline.storage import R2BlobStore
from .pipeline.store import SupabaseLogSink, SupabaseSceneStore
from .pipeline.videogen import KieVeoClient, KlingVideoClient

VIDEO_PROVIDERS = {
    "kling": KlingVideoClient,
    "veo": KieVeoClient,
}

IMAGE_PROVIDERS = {
    "flux": FluxImageClient,
    "gemini": GeminiImageClient,
}


class ProviderFactory:
    @staticmethod
    def get_video_provider(name: str):
        if name not in VIDEO_PROVIDERS:
            raise ValidationError(f"Unknown VIDEO_PROVIDER '{name}' (expected one of {sorted(VIDEO_PROVIDERS)})")
        return VIDEO_PROVIDERS[name]()

    @staticmethod
    def get_image_provider(name: str):
        if name not in IMAGE_PROVIDERS:
            raise ValidationError(f"Unknown IMAGE_PROVIDER '{name}' (expected one of {sorted(IMAGE_PROVIDERS)})")
        return IMAGE_PROVIDERS[name]()

    @staticmethod
    def build_service(config: PipelineConfig = None) -> SceneGenerationService:
        """Wire the production clients (Supabase, R2, vendors) from configuration."""
        config = config or PipelineConfig.from_env()
        return SceneGenerationService(
            store=SupabaseSceneStore(),
            log_sink=SupabaseLogSink(),
            blob_store=R2BlobStore(),
            speech=ElevenLabsClient(),
            image_gen=ProviderFactory.get_image_provider(config.image_provider),
            video_gen=ProviderFactory.get_video_provider(config.video_provider),
            lipsync=SyncLabsClient(plan=config.lipsync_plan),
            config=config,
        )
