"""
FastAPI routes for scene generation.

Scene Endpoints:
  POST /scenes/{id}/generate          — Queue a run (or run as a background task without Redis)
  POST /scenes/{id}/generate-stream   — Run with Server-Sent Events progress
  GET  /scenes/{id}/status            — Outputs, failure fields, recent logs
  POST /scenes/{id}/check-lipsync     — Operator: probe Sync Labs and finalize if done
  POST /scenes/{id}/recover           — Operator: finalize from a known output URL
  GET  /scenes/{id}/video-url         — Fresh signed URL for a stored artifact
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from .. import metrics
from .. import queue as task_queue
from .. import rate_limiter
from .errors import ConflictError, PipelineError
from .models import CheckLipsyncRequest, GenerateResponse, RecoverRequest, RecoveryResponse
from .orchestrator import SceneGenerationService

logger = logging.getLogger(__name__)

scene_router = APIRouter(prefix="/scenes", tags=["scenes"])

_service: Optional[SceneGenerationService] = None


def get_service() -> SceneGenerationService:
    """Lazily built singleton; tests override this dependency."""
    global _service
    if _service is None:
        from ..provider_factory import ProviderFactory

        _service = ProviderFactory.build_service()
    return _service


def get_redis():
    return task_queue.get_redis()


def _http_error(e: PipelineError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


async def _run_in_background(service: SceneGenerationService, scene_id: str):
    try:
        result = await service.run(scene_id)
        logger.info(f"[{scene_id}] Background run finished: {result.status.value}")
    except PipelineError as e:
        logger.warning(f"[{scene_id}] Background run not started: {e.message}")


# ── A. Trigger ───────────────────────────────────────────────────────────────

@scene_router.post("/{scene_id}/generate", response_model=GenerateResponse, status_code=202)
async def generate_scene(
    scene_id: str,
    background_tasks: BackgroundTasks,
    service: SceneGenerationService = Depends(get_service),
    r=Depends(get_redis),
):
    """
    Start a scene run.

    With Redis the run is queued: the scene holds a single queue slot until
    its job is acked, and the per-project rate limit applies. Without Redis
    the run executes as a background task of this process; there is no
    shared counter to rate-limit against, so only the status check guards it.

    Errors:
      - 404: Scene not found
      - 409: Scene already generating, or already queued
      - 429: Project rate limit exceeded
    """
    metrics.inc_counter("requests.generate")
    try:
        scene = await service.ensure_startable(scene_id)
    except PipelineError as e:
        raise _http_error(e)

    if r is None:
        background_tasks.add_task(_run_in_background, service, scene_id)
        return GenerateResponse(message="Scene generation started", scene_id=scene_id, method="background")

    job_id = str(uuid.uuid4())
    holder = task_queue.reserve_scene(r, scene_id, job_id)
    if holder is not None:
        raise _http_error(ConflictError(f"Scene {scene_id} is already queued", {"job_id": holder}))

    allowed, _, retry_after = rate_limiter.check_rate_limit(r, scene.project_id)
    if not allowed:
        task_queue.release_scene(r, scene_id, job_id)
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )

    position = task_queue.enqueue_task(
        r, scene.project_id, job_id, task_queue.TASK_SCENE_GENERATE, {"scene_id": scene_id}
    )
    return GenerateResponse(
        message="Scene queued",
        scene_id=scene_id,
        job_id=job_id,
        queue_position=position,
        method="queue",
    )


async def _sse(service: SceneGenerationService, scene_id: str):
    async for event in service.stream(scene_id):
        yield f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"


@scene_router.post("/{scene_id}/generate-stream")
async def generate_scene_stream(
    scene_id: str,
    service: SceneGenerationService = Depends(get_service),
):
    """Run the pipeline and stream {step, status, message, ...urls} events."""
    metrics.inc_counter("requests.generate_stream")
    try:
        await service.ensure_startable(scene_id)
    except PipelineError as e:
        raise _http_error(e)

    return StreamingResponse(
        _sse(service, scene_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── B. Status ────────────────────────────────────────────────────────────────

@scene_router.get("/{scene_id}/status")
async def get_scene_status(scene_id: str, service: SceneGenerationService = Depends(get_service)):
    try:
        return await service.get_status(scene_id)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Status lookup failed for {scene_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ── C. Operator Recovery ─────────────────────────────────────────────────────

@scene_router.post("/{scene_id}/check-lipsync", response_model=RecoveryResponse)
async def check_lipsync(
    scene_id: str,
    request: Optional[CheckLipsyncRequest] = None,
    service: SceneGenerationService = Depends(get_service),
):
    """
    Ask Sync Labs whether the scene's lip-sync job finished and, if it did,
    complete the scene with its output.

    Errors:
      - 404: Scene or lip-sync job id not found
      - 409: Scene is in an earlier pipeline step
      - 502: Sync Labs unreachable
    """
    try:
        return await service.check_lipsync(scene_id, request.job_id if request else None)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Lip-sync check failed for {scene_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@scene_router.post("/{scene_id}/recover", response_model=RecoveryResponse)
async def recover_scene(
    scene_id: str,
    request: RecoverRequest,
    service: SceneGenerationService = Depends(get_service),
):
    """Complete a scene from a lip-sync output URL copied from the Sync Labs dashboard."""
    try:
        return await service.recover(scene_id, request.output_url, request.job_id)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Recovery failed for {scene_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ── D. Signed URLs ───────────────────────────────────────────────────────────

@scene_router.get("/{scene_id}/video-url")
async def get_video_url(
    scene_id: str,
    type: str = Query("final"),
    service: SceneGenerationService = Depends(get_service),
):
    try:
        url = await service.signed_url(scene_id, type)
    except PipelineError as e:
        raise _http_error(e)
    return {"url": url, "type": type, "expires_in": service.config.signed_url_ttl}
