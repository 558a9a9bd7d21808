"""
SceneGenerationService — the scene pipeline orchestrator.

Chains the four generation steps with persisted status after each one:
  Step 1: Audio    (ElevenLabs)
  Step 2: Image    (uploaded headshot, else Flux / Gemini)
  Step 3: Video    (Kling / Veo, bounded poll)
  Step 4: Lip-sync (Sync Labs, bounded poll + recovery probe)
  Finalize: copy the lip-synced output to the scene's "final" key

Status flow:
  DRAFT → GENERATING_AUDIO → GENERATING_IMAGE → GENERATING_VIDEO
        → APPLYING_LIPSYNC → COMPLETED
  any non-terminal state → FAILED

A run starts with a conditional update on status, so two triggers racing for
the same scene cannot both start it. The claim also stamps a fresh run_id on
the scene, and every later write of that run is conditional on it: whoever
takes the scene over (a resumed run, a restarted run, an operator recovery)
stamps its own run_id, and the previous run stops at its next write.

Video and lip-sync polling write a checkpoint to the scene on every attempt;
resume() picks the poll loop back up from that checkpoint after a worker
restart. A scene found mid-step without a checkpoint was interrupted before
it could record one and is restarted from Step 1.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .. import metrics
from .capabilities import (
    AsyncImageGenerator,
    BlobStore,
    LipsyncProvider,
    SpeechProvider,
    SyncImageGenerator,
    VideoGenerator,
)
from .config import PipelineConfig
from .duration import estimate_duration, validate_audio_duration
from .errors import (
    ConflictError,
    GenerationTimeoutError,
    NotFoundError,
    PipelineError,
    ProviderError,
    RecoveryExhaustedError,
    SupersededError,
    ValidationError,
)
from .models import (
    RESUMABLE_STATUSES,
    STARTABLE_STATUSES,
    LogLevel,
    PipelineResult,
    PipelineStep,
    PollState,
    ProgressEvent,
    RecoveryResponse,
    Scene,
    SceneStatus,
    TaskStatus,
)
from .polling import BoundedPoller, fixed_interval, stepped_interval
from .prompts import build_image_prompt, build_video_prompt
from .recovery import RecoveryProbe, is_well_formed_url
from .storage import scene_key
from .store import LogSink, SceneStore, now_utc

logger = logging.getLogger(__name__)

UPLOADED_IMAGE_MODEL = "uploaded"

# Output fields a fresh run clears, so a re-run of a COMPLETED scene never
# carries a final_video_url while it is generating.
_OUTPUT_FIELDS = (
    "audio_url", "audio_key", "audio_duration", "audio_model",
    "image_url", "image_key", "image_prompt", "image_model",
    "raw_video_url", "raw_video_key", "video_prompt", "video_model", "video_mode", "video_task_id",
    "lipsync_video_url", "lipsync_model", "lipsync_job_id",
    "final_video_url",
)

# Operator recovery may finalize a scene only from these.
_RECOVERABLE_STATUSES = (SceneStatus.APPLYING_LIPSYNC, SceneStatus.FAILED, SceneStatus.COMPLETED)

# step name → (key field, url field) for signed URL lookups
VIDEO_URL_FIELDS = {
    "final": (None, "final_video_url"),
    "lipsync": (None, "lipsync_video_url"),
    "raw": ("raw_video_key", "raw_video_url"),
    "audio": ("audio_key", "audio_url"),
    "image": ("image_key", "image_url"),
}

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]

# Streamed runs outlive their HTTP connection; hold a reference until they finish.
_detached_runs: set[asyncio.Task] = set()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _image_extension(mime_type: str) -> str:
    return {"image/jpeg": "jpg", "image/webp": "webp"}.get(mime_type, "png")


class _RunContext:
    """Mutable state for one run: the latest scene snapshot and the current step."""

    def __init__(self, scene: Scene, run_id: str, on_progress: Optional[ProgressCallback] = None):
        self.scene = scene
        self.run_id = run_id
        self.step = PipelineStep.AUDIO_GENERATION
        self.step_number = 0
        self.on_progress = on_progress

    async def emit(self, status: str, message: str, **extra: Any):
        if self.on_progress is None:
            return
        event = ProgressEvent(step=self.step_number, status=status, message=message, **extra)
        await self.on_progress(event)


class SceneGenerationService:
    """
    Scene pipeline orchestrator.

    Usage:
        service = SceneGenerationService(store, log_sink, blob_store,
                                         speech, image_gen, video_gen, lipsync)

        result = await service.run(scene_id)           # fresh run
        result = await service.resume(scene_id)        # continue from checkpoint
        async for event in service.stream(scene_id):   # run with progress events
            ...

    Terminal failures never raise out of run()/resume(): they are persisted on
    the scene and returned as a FAILED PipelineResult. NotFoundError and
    ConflictError are raised before anything is written. SupersededError is
    raised when another run took the scene over; the superseded run stops
    without writing anything further.
    """

    def __init__(
        self,
        store: SceneStore,
        log_sink: LogSink,
        blob_store: BlobStore,
        speech: SpeechProvider,
        image_gen: Any,
        video_gen: VideoGenerator,
        lipsync: LipsyncProvider,
        config: Optional[PipelineConfig] = None,
        probe: Optional[RecoveryProbe] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.log_sink = log_sink
        self.blob_store = blob_store
        self.speech = speech
        self.image_gen = image_gen
        self.video_gen = video_gen
        self.lipsync = lipsync
        self.config = config or PipelineConfig()
        self.probe = probe or RecoveryProbe(lipsync)
        self.sleep = sleep

    # ── Store / log plumbing ─────────────────────────────────────────────

    async def _db(self, fn: Callable, *args):
        """Run a blocking store call off the event loop."""
        return await asyncio.to_thread(fn, *args)

    async def _load(self, scene_id: str) -> Scene:
        return await self._db(self.store.get_scene, scene_id)

    async def _persist(self, ctx: _RunContext, fields: dict[str, Any]) -> Scene:
        """
        One atomic update, applied only while this run still owns the scene.
        The local snapshot keeps its project/headshot relations.
        """
        updated = await self._db(self.store.update_owned, ctx.scene.id, ctx.run_id, fields)
        if updated is None:
            raise SupersededError(
                f"Scene {ctx.scene.id} was taken over by another run",
                {"run_id": ctx.run_id},
            )
        ctx.scene = ctx.scene.model_copy(update=fields)
        return ctx.scene

    async def _take_over(self, scene: Scene, expected: tuple) -> Optional[str]:
        """
        Move ownership of ``scene`` to a new run_id, provided nobody changed its
        status or owner since it was loaded. Returns the new run_id, or None.
        """
        run_id = uuid.uuid4().hex
        claimed = await self._db(
            self.store.update_owned, scene.id, scene.run_id, {"run_id": run_id}, expected
        )
        return run_id if claimed is not None else None

    async def _log(
        self,
        ctx: _RunContext,
        level: LogLevel,
        message: str,
        provider: Optional[str] = None,
        step: Optional[PipelineStep] = None,
        **extras: Any,
    ):
        step = step or ctx.step
        log_fn = {
            LogLevel.DEBUG: logger.debug,
            LogLevel.INFO: logger.info,
            LogLevel.WARN: logger.warning,
            LogLevel.ERROR: logger.error,
        }[level]
        log_fn(f"[{ctx.scene.id}] {step.value}: {message}")
        try:
            await self._db(
                lambda: self.log_sink.append(
                    ctx.scene.id, ctx.scene.project_id, step, level, message, provider, **extras
                )
            )
        except Exception as e:
            # Diagnostics must never abort the pipeline.
            logger.error(f"[{ctx.scene.id}] Failed to write generation log: {e}")

    def _readable_url(self, key: Optional[str], url: Optional[str]) -> str:
        """Fresh signed URL for a stored blob, falling back to the persisted URL."""
        if key:
            return self.blob_store.signed_read_url(key, self.config.signed_url_ttl)
        if url:
            return url
        raise ValidationError("Missing upstream artifact: no blob key or URL persisted")

    # ── Entry points ─────────────────────────────────────────────────────

    async def ensure_startable(self, scene_id: str) -> Scene:
        """Load the scene and reject it unless a new run may start from its status."""
        scene = await self._load(scene_id)
        if scene.status not in STARTABLE_STATUSES:
            raise ConflictError(
                f"Scene {scene_id} is already generating (status={scene.status.value})",
                {"status": scene.status.value},
            )
        return scene

    async def run(self, scene_id: str, on_progress: Optional[ProgressCallback] = None) -> PipelineResult:
        """
        Run the whole pipeline for one scene.

        Raises:
            NotFoundError: the scene does not exist.
            ConflictError: the scene is already generating, or another
                trigger claimed it first.
            SupersededError: another run took the scene over mid-flight.
        """
        scene = await self.ensure_startable(scene_id)
        return await self._run_from_start(scene, on_progress)

    async def _run_from_start(
        self, scene: Scene, on_progress: Optional[ProgressCallback] = None, interrupted: bool = False
    ) -> PipelineResult:
        run_id = uuid.uuid4().hex
        claim_fields: dict[str, Any] = {field: None for field in _OUTPUT_FIELDS}
        claim_fields.update({
            "status": SceneStatus.GENERATING_AUDIO,
            "failure_reason": None,
            "poll_state": None,
            "last_attempt_at": now_utc(),
            "run_id": run_id,
        })
        if interrupted:
            # Only the status and owner that were observed may be replaced.
            claimed = await self._db(
                self.store.update_owned, scene.id, scene.run_id, claim_fields, (scene.status,)
            )
        else:
            claimed = await self._db(self.store.claim, scene.id, STARTABLE_STATUSES, claim_fields)
        if claimed is None:
            raise ConflictError(f"Scene {scene.id} was claimed by another run")

        ctx = _RunContext(scene.model_copy(update=claim_fields), run_id, on_progress)
        metrics.inc_counter("scenes.started")
        if interrupted:
            metrics.inc_counter("scenes.restarted")
        metrics.add_gauge("active_scenes", 1)
        run_started = time.monotonic()

        try:
            if interrupted:
                await self._log(
                    ctx, LogLevel.WARN,
                    f"Previous run was interrupted during {scene.status.value}, restarting from audio",
                )
            self._preflight(ctx.scene)
            await self._audio_step(ctx)
            await self._image_step(ctx)
            await self._video_step(ctx)
            output_url = await self._lipsync_step(ctx)
            await self._finalize(ctx, output_url, run_started)
        except SupersededError:
            self._superseded(ctx)
            raise
        except Exception as e:
            return await self._fail(ctx, e)
        finally:
            metrics.add_gauge("active_scenes", -1)

        return self._result(ctx.scene)

    async def resume(self, scene_id: str, on_progress: Optional[ProgressCallback] = None) -> PipelineResult:
        """
        Continue a run interrupted mid-poll, using the persisted checkpoint.

        Never submits a new vendor job: the poll loop re-attaches to the task id
        in ``poll_state`` and continues from its attempt count. Resuming takes
        ownership of the scene, so a run still polling the same checkpoint
        stops at its next write.
        """
        scene = await self._load(scene_id)
        state = scene.poll_state
        if scene.status not in RESUMABLE_STATUSES or state is None:
            raise ConflictError(
                f"Scene {scene_id} has no resumable checkpoint (status={scene.status.value})",
                {"status": scene.status.value},
            )

        run_id = await self._take_over(scene, (scene.status,))
        if run_id is None:
            raise ConflictError(f"Checkpoint of scene {scene_id} was taken by another run")

        ctx = _RunContext(scene.model_copy(update={"run_id": run_id}), run_id, on_progress)
        ctx.step = state.step
        first_delay = 0.0
        if state.next_poll_at is not None:
            due = state.next_poll_at
            if due.tzinfo is None:
                due = due.replace(tzinfo=timezone.utc)
            first_delay = max(0.0, (due - datetime.now(timezone.utc)).total_seconds())

        metrics.inc_counter("scenes.resumed")
        metrics.add_gauge("active_scenes", 1)
        run_started = time.monotonic()

        try:
            await self._log(
                ctx, LogLevel.WARN,
                f"Resuming poll of task {state.task_id} at attempt {state.attempt + 1}",
            )
            if state.step == PipelineStep.VIDEO_GENERATION:
                ctx.step_number = 3
                step_started = time.monotonic()
                video_url = await self._poll_video(ctx, state.task_id, state.attempt, first_delay)
                await self._store_video(ctx, video_url, step_started)
                output_url = await self._lipsync_step(ctx)
            elif state.step == PipelineStep.LIPSYNC_APPLICATION:
                ctx.step_number = 4
                step_started = time.monotonic()
                output_url = await self._poll_lipsync(ctx, state.task_id, state.attempt, first_delay)
                await self._lipsync_done(ctx, state.task_id, step_started)
            else:
                raise ValidationError(f"Checkpoint step {state.step.value} cannot be resumed")
            await self._finalize(ctx, output_url, run_started)
        except SupersededError:
            self._superseded(ctx)
            raise
        except Exception as e:
            return await self._fail(ctx, e)
        finally:
            metrics.add_gauge("active_scenes", -1)

        return self._result(ctx.scene)

    async def run_or_resume(self, scene_id: str) -> PipelineResult:
        """
        Queue entry point.

        Starts a fresh run for a startable scene and resumes a checkpointed
        one. A scene caught mid-step with no checkpoint belongs to a run that
        died before it could record one (a redelivered job); it is restarted
        from Step 1 so it never stays in a generating status.
        """
        scene = await self._load(scene_id)
        if scene.status in STARTABLE_STATUSES:
            return await self._run_from_start(scene)
        if scene.status in RESUMABLE_STATUSES and scene.poll_state is not None:
            return await self.resume(scene_id)
        logger.warning(f"[{scene_id}] Found in {scene.status.value} without a checkpoint, restarting")
        return await self._run_from_start(scene, interrupted=True)

    async def stream(self, scene_id: str) -> AsyncIterator[ProgressEvent]:
        """
        Run the pipeline and yield one ProgressEvent per step transition.

        The final event is either ``status="COMPLETED"`` or ``status="FAILED"``.
        The run itself is detached from the consumer: if the client goes away
        the scene still finishes and records its outcome.
        """
        events: asyncio.Queue = asyncio.Queue()

        async def run_then_close() -> PipelineResult:
            try:
                return await self.run(scene_id, on_progress=events.put)
            finally:
                await events.put(None)

        task = asyncio.create_task(run_then_close())
        _detached_runs.add(task)
        task.add_done_callback(_detached_runs.discard)

        while True:
            event = await events.get()
            if event is None:
                break
            yield event

        try:
            await task
        except PipelineError as e:
            yield ProgressEvent(
                step=0,
                status=SceneStatus.FAILED.value,
                message=e.message,
                error=e.message,
                error_code=e.error_code,
            )

    # ── Pre-flight ───────────────────────────────────────────────────────

    def _preflight(self, scene: Scene):
        if not scene.dialogue or not scene.dialogue.strip():
            raise ValidationError("Scene has no dialogue")
        check = validate_audio_duration(len(scene.dialogue), self.config.lipsync_plan)
        if not check.valid:
            raise ValidationError(
                check.message,
                {"estimated_seconds": check.estimated_seconds, "max_seconds": check.max_seconds},
            )

    # ── Step 1: Audio ────────────────────────────────────────────────────

    async def _audio_step(self, ctx: _RunContext):
        ctx.step, ctx.step_number = PipelineStep.AUDIO_GENERATION, 1
        scene = ctx.scene
        started = time.monotonic()
        await ctx.emit(SceneStatus.GENERATING_AUDIO.value, "Generating audio...")

        project_voice = scene.project.default_voice_id if scene.project else None
        voice_id = scene.voice_id or project_voice or self.config.default_voice_id
        await self._log(ctx, LogLevel.DEBUG, f"Audio generation started (voice={voice_id})", self.speech.provider)

        speech = await self.speech.synthesize(scene.dialogue, voice_id, self.config.voice_settings)
        key = scene_key(scene.project_id, scene.id, "audio")
        audio_url = await self.blob_store.upload(speech.audio, key, speech.content_type)

        await self._persist(ctx, {
            "audio_url": audio_url,
            "audio_key": key,
            "audio_duration": round(estimate_duration(speech.character_count), 2),
            "audio_model": speech.model or self.speech.provider,
            "status": SceneStatus.GENERATING_IMAGE,
        })

        duration_ms = _elapsed_ms(started)
        metrics.record_latency(f"step.{ctx.step.value}", duration_ms)
        await self._log(
            ctx, LogLevel.INFO,
            f"Audio generated: {speech.character_count} chars in {duration_ms}ms",
            self.speech.provider,
            duration_ms=duration_ms,
        )
        await ctx.emit(SceneStatus.GENERATING_AUDIO.value, "Audio ready", audio_url=audio_url)

    # ── Step 2: Image ────────────────────────────────────────────────────

    async def _image_step(self, ctx: _RunContext):
        ctx.step, ctx.step_number = PipelineStep.IMAGE_GENERATION, 2
        scene = ctx.scene
        started = time.monotonic()
        await ctx.emit(SceneStatus.GENERATING_IMAGE.value, "Resolving avatar image...")

        headshot = scene.headshot
        if headshot is None and scene.headshot_id:
            await self._log(ctx, LogLevel.WARN, f"Headshot {scene.headshot_id} not found, trying default")
        if headshot is None:
            headshot = await self._db(self.store.get_default_headshot)

        if headshot is not None and (headshot.r2_url or headshot.r2_key):
            image_url = headshot.r2_url or self.blob_store.object_url(headshot.r2_key)
            await self._persist(ctx, {
                "image_url": image_url,
                "image_key": headshot.r2_key or None,
                "image_prompt": None,
                "image_model": UPLOADED_IMAGE_MODEL,
                "status": SceneStatus.GENERATING_VIDEO,
            })
            duration_ms = _elapsed_ms(started)
            metrics.record_latency(f"step.{ctx.step.value}", duration_ms)
            await self._log(
                ctx, LogLevel.INFO,
                f"Using uploaded headshot {headshot.name or headshot.id}",
                UPLOADED_IMAGE_MODEL,
                duration_ms=duration_ms,
            )
            await ctx.emit(SceneStatus.GENERATING_IMAGE.value, "Using uploaded headshot", image_url=image_url)
            return

        prompt = build_image_prompt(scene)
        provider = self.image_gen.provider
        await self._log(ctx, LogLevel.DEBUG, "No headshot available, generating image", provider,
                        request_payload={"prompt": prompt})

        if isinstance(self.image_gen, SyncImageGenerator):
            data, mime_type = await self.image_gen.generate(prompt, self.config.aspect_ratio)
        elif isinstance(self.image_gen, AsyncImageGenerator):
            data, mime_type = await self._generate_image_async(ctx, prompt), "image/png"
        else:
            raise ValidationError(f"Image provider {provider} exposes neither generate() nor submit()/poll()")

        key = scene_key(scene.project_id, scene.id, "image", _image_extension(mime_type))
        image_url = await self.blob_store.upload(data, key, mime_type)
        await self._persist(ctx, {
            "image_url": image_url,
            "image_key": key,
            "image_prompt": prompt,
            "image_model": self.image_gen.model,
            "status": SceneStatus.GENERATING_VIDEO,
        })

        duration_ms = _elapsed_ms(started)
        metrics.record_latency(f"step.{ctx.step.value}", duration_ms)
        await self._log(ctx, LogLevel.INFO, f"Image generated in {duration_ms}ms", provider,
                        duration_ms=duration_ms)
        await ctx.emit(SceneStatus.GENERATING_IMAGE.value, "Image ready", image_url=image_url)

    async def _generate_image_async(self, ctx: _RunContext, prompt: str) -> bytes:
        provider = self.image_gen.provider
        task_id = await self.image_gen.submit(prompt, self.config.aspect_ratio)
        await self._log(ctx, LogLevel.DEBUG, f"Image task submitted: {task_id}", provider)

        poller = BoundedPoller(
            PipelineStep.IMAGE_GENERATION,
            task_id,
            self.config.image_max_polls,
            fixed_interval(self.config.image_poll_interval),
            log_every=self.config.poll_log_every,
            sleep=self.sleep,
        )

        async def check(attempt: int) -> Optional[str]:
            task = await self.image_gen.poll(task_id)
            if task.status == TaskStatus.COMPLETED:
                if not task.image_url:
                    raise ProviderError(provider, f"Image task {task_id} completed without an image URL")
                return task.image_url
            if task.status == TaskStatus.FAILED:
                raise ProviderError(provider, f"Image generation failed: {task.error or 'unknown error'}",
                                    details={"task_id": task_id})
            return None

        image_url = await poller.run(check)
        return await self.blob_store.fetch(image_url)

    # ── Step 3: Video ────────────────────────────────────────────────────

    async def _video_step(self, ctx: _RunContext):
        ctx.step, ctx.step_number = PipelineStep.VIDEO_GENERATION, 3
        scene = ctx.scene
        started = time.monotonic()
        provider = self.video_gen.provider
        await ctx.emit(SceneStatus.GENERATING_VIDEO.value, "Generating video...")

        prompt = build_video_prompt(scene)
        image_url = self._readable_url(scene.image_key, scene.image_url)
        task_id = await self.video_gen.submit(
            image_url,
            prompt,
            self.config.video_duration,
            self.config.aspect_ratio,
            self.config.video_mode,
        )
        await self._persist(ctx, {
            "video_prompt": prompt,
            "video_model": self.video_gen.model,
            "video_mode": self.config.video_mode,
            "video_task_id": task_id,
            "poll_state": PollState(step=ctx.step, task_id=task_id),
        })
        await self._log(
            ctx, LogLevel.DEBUG, f"Video task submitted: {task_id}", provider,
            request_payload={
                "prompt": prompt,
                "duration": self.config.video_duration,
                "aspect_ratio": self.config.aspect_ratio,
                "mode": self.config.video_mode,
            },
        )

        video_url = await self._poll_video(ctx, task_id)
        await self._store_video(ctx, video_url, started)

    async def _checkpoint(self, ctx: _RunContext, state: PollState):
        await self._persist(ctx, {"poll_state": state})

    async def _poll_video(
        self, ctx: _RunContext, task_id: str, start_attempt: int = 0, first_delay: Optional[float] = None
    ) -> str:
        provider = self.video_gen.provider
        poller = BoundedPoller(
            PipelineStep.VIDEO_GENERATION,
            task_id,
            self.config.video_max_polls,
            fixed_interval(self.config.video_poll_interval),
            checkpoint=lambda state: self._checkpoint(ctx, state),
            log_every=self.config.poll_log_every,
            sleep=self.sleep,
        )

        async def check(attempt: int) -> Optional[str]:
            task = await self.video_gen.poll(task_id)
            if task.status == TaskStatus.COMPLETED:
                if not task.video_url:
                    raise ProviderError(provider, f"Video task {task_id} completed without a video URL")
                await self._log(ctx, LogLevel.DEBUG, f"Video task {task_id} completed after {attempt + 1} polls",
                                provider, response_payload={"video_url": task.video_url})
                return task.video_url
            if task.status == TaskStatus.FAILED:
                raise ProviderError(
                    provider,
                    f"Video generation failed: {task.error or 'unknown error'}",
                    details={"task_id": task_id},
                )
            if poller.should_log(attempt):
                progress = f" ({task.progress}%)" if task.progress is not None else ""
                await self._log(
                    ctx, LogLevel.DEBUG,
                    f"Video poll {attempt + 1}/{poller.max_polls}: {task.status.value}{progress}",
                    provider,
                )
            return None

        return await poller.run(check, start_attempt, first_delay)

    async def _store_video(self, ctx: _RunContext, video_url: str, started: float):
        scene = ctx.scene
        data = await self.blob_store.fetch(video_url)
        key = scene_key(scene.project_id, scene.id, "video")
        raw_video_url = await self.blob_store.upload(data, key, "video/mp4")
        await self._persist(ctx, {
            "raw_video_url": raw_video_url,
            "raw_video_key": key,
            "poll_state": None,
            "status": SceneStatus.APPLYING_LIPSYNC,
        })

        duration_ms = _elapsed_ms(started)
        metrics.record_latency(f"step.{ctx.step.value}", duration_ms)
        await self._log(ctx, LogLevel.INFO, f"Video generated in {duration_ms // 1000}s",
                        self.video_gen.provider, duration_ms=duration_ms)
        await ctx.emit(SceneStatus.GENERATING_VIDEO.value, "Video ready", raw_video_url=raw_video_url)

    # ── Step 4: Lip-sync ─────────────────────────────────────────────────

    async def _lipsync_step(self, ctx: _RunContext) -> str:
        ctx.step, ctx.step_number = PipelineStep.LIPSYNC_APPLICATION, 4
        scene = ctx.scene
        started = time.monotonic()
        provider = self.lipsync.provider
        await ctx.emit(SceneStatus.APPLYING_LIPSYNC.value, "Applying lip-sync...")

        video_url = self._readable_url(scene.raw_video_key, scene.raw_video_url)
        audio_url = self._readable_url(scene.audio_key, scene.audio_url)
        job_id = await self.lipsync.submit(video_url, audio_url)
        await self._persist(ctx, {
            "lipsync_model": self.lipsync.model,
            "lipsync_job_id": job_id,
            "poll_state": PollState(step=ctx.step, task_id=job_id),
        })
        await self._log(ctx, LogLevel.DEBUG, f"Lip-sync job submitted: {job_id}", provider)

        output_url = await self._poll_lipsync(ctx, job_id)
        await self._lipsync_done(ctx, job_id, started)
        return output_url

    async def _probe(self, ctx: _RunContext, job_id: str) -> Optional[str]:
        result = await self.probe.probe(job_id)
        if result.found:
            await self._log(
                ctx, LogLevel.WARN,
                f"Recovered lip-sync output for job {job_id} via '{result.strategy}'",
                self.lipsync.provider,
                response_payload={"url": result.url, "strategy": result.strategy},
            )
            metrics.inc_counter("lipsync.recovered")
            return result.url
        await self._log(
            ctx, LogLevel.WARN,
            f"Recovery probe found no output for job {job_id} (vendor status={result.vendor_status})",
            self.lipsync.provider,
            response_payload={"available_fields": result.available_fields},
        )
        return None

    async def _poll_lipsync(
        self, ctx: _RunContext, job_id: str, start_attempt: int = 0, first_delay: Optional[float] = None
    ) -> str:
        provider = self.lipsync.provider
        poller = BoundedPoller(
            PipelineStep.LIPSYNC_APPLICATION,
            job_id,
            self.config.lipsync_max_polls,
            stepped_interval(
                self.config.lipsync_fast_interval,
                self.config.lipsync_fast_window,
                self.config.lipsync_poll_interval,
            ),
            checkpoint=lambda state: self._checkpoint(ctx, state),
            log_every=self.config.poll_log_every,
            sleep=self.sleep,
        )
        anomaly_seen = False

        async def check(attempt: int) -> Optional[str]:
            nonlocal anomaly_seen
            task = await self.lipsync.poll(job_id)
            if task.status == TaskStatus.COMPLETED:
                if task.video_url:
                    await self._log(ctx, LogLevel.DEBUG, f"Lip-sync job {job_id} completed after {attempt + 1} polls",
                                    provider, response_payload={"video_url": task.video_url})
                    return task.video_url
                anomaly_seen = True
                await self._log(ctx, LogLevel.WARN,
                                f"Lip-sync job {job_id} reported completed without an output URL, probing",
                                provider)
                try:
                    return await self._probe(ctx, job_id)
                except ProviderError as e:
                    await self._log(ctx, LogLevel.WARN, f"Recovery probe failed, will keep polling: {e}", provider)
                    return None
            if task.status == TaskStatus.FAILED:
                raise ProviderError(
                    provider,
                    f"Lip-sync failed: {task.error or 'unknown error'}",
                    details={"job_id": job_id},
                )
            if poller.should_log(attempt):
                await self._log(
                    ctx, LogLevel.DEBUG,
                    f"Lip-sync poll {attempt + 1}/{poller.max_polls}: {task.status.value}",
                    provider,
                )
            return None

        try:
            return await poller.run(check, start_attempt, first_delay)
        except GenerationTimeoutError as e:
            await self._log(ctx, LogLevel.WARN,
                            f"Lip-sync polling exhausted after {e.attempts} polls, running final recovery probe",
                            provider)
            recovered = await self._probe(ctx, job_id)
            if recovered:
                return recovered
            if not anomaly_seen:
                raise
            raise RecoveryExhaustedError(
                f"Lip-sync job {job_id} reported completion but no output URL could be recovered "
                f"after {e.attempts} polls",
                job_id,
            ) from e

    async def _lipsync_done(self, ctx: _RunContext, job_id: str, started: float):
        duration_ms = _elapsed_ms(started)
        metrics.record_latency(f"step.{PipelineStep.LIPSYNC_APPLICATION.value}", duration_ms)
        await self._log(ctx, LogLevel.INFO, f"Lip-sync job {job_id} completed in {duration_ms // 1000}s",
                        self.lipsync.provider, step=PipelineStep.LIPSYNC_APPLICATION, duration_ms=duration_ms)

    # ── Finalize ─────────────────────────────────────────────────────────

    async def _finalize(self, ctx: _RunContext, output_url: str, run_started: Optional[float] = None):
        ctx.step, ctx.step_number = PipelineStep.VIDEO_ASSEMBLY, 5
        scene = ctx.scene
        started = time.monotonic()

        data = await self.blob_store.fetch(output_url)
        key = scene_key(scene.project_id, scene.id, "final")
        final_url = await self.blob_store.upload(data, key, "video/mp4")

        await self._persist(ctx, {
            "lipsync_video_url": final_url,
            "final_video_url": final_url,
            "lipsync_model": scene.lipsync_model or self.lipsync.model,
            "poll_state": None,
            "failure_reason": None,
            "status": SceneStatus.COMPLETED,
        })

        duration_ms = _elapsed_ms(run_started if run_started is not None else started)
        metrics.inc_counter("scenes.completed")
        metrics.record_latency("scene.total", duration_ms)
        await self._log(ctx, LogLevel.INFO, f"Pipeline complete in {duration_ms // 1000}s",
                        duration_ms=duration_ms)
        await ctx.emit(SceneStatus.COMPLETED.value, "Video complete!",
                       final_video_url=final_url, lipsync_video_url=final_url)

    # ── Failure ──────────────────────────────────────────────────────────

    def _superseded(self, ctx: _RunContext):
        logger.warning(f"[{ctx.scene.id}] Run {ctx.run_id} was superseded during {ctx.step.value}, stopping")
        metrics.inc_counter("scenes.superseded")

    async def _fail(self, ctx: _RunContext, error: Exception) -> PipelineResult:
        if isinstance(error, PipelineError):
            reason, code, details = error.message, error.error_code, error.details
            logger.error(f"[{ctx.scene.id}] {ctx.step.value} failed: {reason}")
        else:
            reason, code, details = str(error) or error.__class__.__name__, "INTERNAL_ERROR", {}
            logger.error(f"[{ctx.scene.id}] {ctx.step.value} failed unexpectedly: {error}", exc_info=True)

        await self._persist(ctx, {
            "status": SceneStatus.FAILED,
            "failure_reason": reason,
            "retry_count": ctx.scene.retry_count + 1,
            "last_attempt_at": now_utc(),
            "poll_state": None,
        })
        await self._log(
            ctx, LogLevel.ERROR, reason,
            getattr(error, "provider", None),
            error_code=code,
            error_details=details or None,
        )

        metrics.inc_counter("scenes.failed")
        metrics.inc_counter(f"errors.{code}")
        metrics.record_error(ctx.step.value, code, reason, ctx.scene.id)
        await ctx.emit(SceneStatus.FAILED.value, reason, error=reason, error_code=code)

        result = self._result(ctx.scene)
        result.error = reason
        result.error_code = code
        return result

    @staticmethod
    def _result(scene: Scene) -> PipelineResult:
        return PipelineResult(
            scene_id=scene.id,
            status=scene.status,
            audio_url=scene.audio_url,
            image_url=scene.image_url,
            raw_video_url=scene.raw_video_url,
            lipsync_video_url=scene.lipsync_video_url,
            final_video_url=scene.final_video_url,
        )

    # ── Operator surface ─────────────────────────────────────────────────

    async def get_status(self, scene_id: str, log_limit: int = 10) -> dict:
        """Scene outputs, failure fields and the most recent generation logs."""
        scene = await self._load(scene_id)
        logs = await self._db(self.store.recent_logs, scene_id, log_limit)
        return {
            "scene_id": scene.id,
            "status": scene.status.value,
            "audio_url": scene.audio_url,
            "image_url": scene.image_url,
            "raw_video_url": scene.raw_video_url,
            "lipsync_video_url": scene.lipsync_video_url,
            "final_video_url": scene.final_video_url,
            "failure_reason": scene.failure_reason,
            "retry_count": scene.retry_count,
            "last_attempt_at": scene.last_attempt_at,
            "poll_state": scene.poll_state.model_dump(mode="json") if scene.poll_state else None,
            "logs": logs,
        }

    async def signed_url(self, scene_id: str, kind: str = "final") -> str:
        """Fresh time-limited URL for one of the scene's stored artifacts."""
        if kind not in VIDEO_URL_FIELDS:
            raise ValidationError(f"Unknown artifact type '{kind}'. Use one of: {', '.join(VIDEO_URL_FIELDS)}")
        scene = await self._load(scene_id)
        key_field, url_field = VIDEO_URL_FIELDS[kind]
        url = getattr(scene, url_field)
        key = (getattr(scene, key_field) if key_field else None) or (
            self.blob_store.key_from_url(url) if url else None
        )
        if not key:
            raise NotFoundError(f"Scene {scene_id} has no {kind} artifact")
        return self.blob_store.signed_read_url(key, self.config.signed_url_ttl)

    @staticmethod
    def _check_recoverable(scene: Scene):
        if scene.status not in _RECOVERABLE_STATUSES:
            raise ConflictError(
                f"Scene {scene.id} cannot be recovered while {scene.status.value}",
                {"status": scene.status.value},
            )

    async def _recovery_context(self, scene: Scene) -> _RunContext:
        """Take the scene over for an operator finalize; a run still polling it stops at its next write."""
        self._check_recoverable(scene)
        run_id = await self._take_over(scene, _RECOVERABLE_STATUSES)
        if run_id is None:
            raise ConflictError(f"Scene {scene.id} changed while it was being recovered")
        ctx = _RunContext(scene.model_copy(update={"run_id": run_id}), run_id)
        ctx.step = PipelineStep.LIPSYNC_APPLICATION
        return ctx

    async def check_lipsync(self, scene_id: str, job_id: Optional[str] = None) -> RecoveryResponse:
        """
        Ask the lip-sync vendor directly whether a job finished, and finalize
        the scene if it did.

        The job id comes from the request, the scene's ``lipsync_job_id``, or
        the latest "Lip-sync job submitted: <id>" log line, in that order.
        """
        scene = await self._load(scene_id)
        job_id = job_id or scene.lipsync_job_id or await self._db(
            self.store.find_logged_job_id, scene_id, PipelineStep.LIPSYNC_APPLICATION
        )
        if not job_id:
            raise NotFoundError(f"No lip-sync job id found for scene {scene_id}")

        if scene.status == SceneStatus.COMPLETED and scene.final_video_url:
            return RecoveryResponse(
                success=True,
                job_id=job_id,
                final_video_url=scene.final_video_url,
                message="Scene is already completed",
            )

        self._check_recoverable(scene)
        result = await self.probe.probe(job_id)
        if not result.found:
            return RecoveryResponse(
                success=False,
                vendor_status=result.vendor_status,
                job_id=job_id,
                message=f"Lip-sync job is {result.vendor_status or 'unknown'}; no output URL yet",
            )

        ctx = await self._recovery_context(scene)
        await self._log(ctx, LogLevel.WARN,
                        f"Operator check recovered output for job {job_id} via '{result.strategy}'",
                        self.lipsync.provider)
        await self._finalize(ctx, result.url)
        return RecoveryResponse(
            success=True,
            recovered=True,
            vendor_status=result.vendor_status,
            job_id=job_id,
            final_video_url=ctx.scene.final_video_url,
            message="Lip-sync output recovered and scene completed",
        )

    async def recover(self, scene_id: str, output_url: str, job_id: Optional[str] = None) -> RecoveryResponse:
        """Finalize a scene from a lip-sync output URL supplied by an operator."""
        if not is_well_formed_url(output_url):
            raise ValidationError(f"Not a valid output URL: {output_url[:200]}")

        scene = await self._load(scene_id)
        ctx = await self._recovery_context(scene)
        job_id = job_id or scene.lipsync_job_id
        await self._log(ctx, LogLevel.WARN,
                        f"Manual recovery from supplied output URL (job={job_id or 'unknown'})",
                        self.lipsync.provider, request_payload={"output_url": output_url})
        await self._finalize(ctx, output_url.strip())
        return RecoveryResponse(
            success=True,
            recovered=True,
            job_id=job_id,
            final_video_url=ctx.scene.final_video_url,
            message="Scene completed from supplied output URL",
        )
