import asyncio
import json
import logging
import os
import threading
import time
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Query

load_dotenv()

from . import metrics
from . import queue as task_queue
from .pipeline import scene_router
from .pipeline.errors import ConflictError, NotFoundError
from .pipeline.models import SceneStatus
from .pipeline.routes import get_service

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_shutdown = threading.Event()


# ── Queue consumer threads (reliable) ─────────────────────────────────────────

def _heartbeat_loop(r, job_id: str, done: threading.Event):
    while not done.wait(task_queue.HEARTBEAT_INTERVAL):
        try:
            task_queue.heartbeat(r, job_id)
        except Exception as e:
            logger.warning(f"Heartbeat for job {job_id} failed: {e}")


def process_scene_job(r, job_id: str, scene_id: str):
    """Run (or resume) one scene inside this thread's own event loop."""
    service = get_service()
    done = threading.Event()
    beat = threading.Thread(target=_heartbeat_loop, args=(r, job_id, done), daemon=True)
    beat.start()
    try:
        result = asyncio.run(service.run_or_resume(scene_id))
    finally:
        done.set()

    # A FAILED scene already carries its failure_reason; retrying belongs to the operator.
    status = "completed" if result.status == SceneStatus.COMPLETED else "failed"
    task_queue.ack_task(r, job_id, status)


def _queue_consumer_loop(worker_id: int):
    """Background thread: dequeues via BLMOVE, acks once the scene records an outcome."""
    logger.info(f"Queue consumer {worker_id} started (reliable mode)")
    while not _shutdown.is_set():
        try:
            r = task_queue.get_redis()
            if r is None:
                time.sleep(5)
                continue

            job_id = task_queue.dequeue_task(r, timeout=5)
            if job_id is None:
                continue

            meta = task_queue.get_task_meta(r, job_id)
            if not meta:
                logger.warning(f"Queue consumer {worker_id}: no metadata for job {job_id}, skipping")
                task_queue.ack_task(r, job_id, "skipped")
                continue

            task_type = meta.get("task_type", "")
            payload = json.loads(meta.get("payload", "{}"))
            task_queue.update_task_status(r, job_id, "processing")
            logger.info(
                f"Queue consumer {worker_id}: processing {task_type} job {job_id} "
                f"(attempt {int(meta.get('retries', '0')) + 1})"
            )

            if task_type != task_queue.TASK_SCENE_GENERATE:
                logger.error(f"Queue consumer {worker_id}: unknown task type '{task_type}'")
                task_queue.ack_task(r, job_id, "skipped")
                continue

            try:
                process_scene_job(r, job_id, payload["scene_id"])
            except (ConflictError, NotFoundError) as e:
                logger.warning(f"Queue consumer {worker_id}: job {job_id} dropped: {e.message}")
                task_queue.ack_task(r, job_id, "skipped")
            except Exception as task_err:
                # No outcome recorded on the scene: retry, or dead-letter after MAX_RETRIES
                logger.error(f"Queue consumer {worker_id}: job {job_id} crashed: {task_err}", exc_info=True)
                task_queue.nack_task(r, job_id, str(task_err))

        except Exception as e:
            logger.error(f"Queue consumer {worker_id} loop error: {e}", exc_info=True)
            time.sleep(2)


def _stale_task_sweeper():
    while not _shutdown.wait(task_queue.STALE_TASK_TIMEOUT // 2):
        r = task_queue.get_redis()
        if r is None:
            continue
        try:
            task_queue.recover_stale_tasks(r)
        except Exception as e:
            logger.error(f"Stale task sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    r = task_queue.get_redis()
    if r:
        recovered = task_queue.recover_stale_tasks(r)
        if recovered:
            logger.info(f"Recovered {recovered} stale task(s) from previous session")

        concurrency = get_service().config.worker_concurrency
        for worker_id in range(concurrency):
            threading.Thread(target=_queue_consumer_loop, args=(worker_id,), daemon=True).start()
        threading.Thread(target=_stale_task_sweeper, daemon=True).start()
        logger.info(f"Launched {concurrency} queue consumer thread(s)")
    else:
        logger.info("No Redis — scene runs execute as background tasks")
    yield
    logger.info("Worker shutting down...")
    _shutdown.set()


app = FastAPI(title="Avatar Scene Worker", lifespan=lifespan)
app.include_router(scene_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "redis_configured": bool(os.environ.get("REDIS_URL")),
        "elevenlabs_key_set": bool(os.environ.get("ELEVENLABS_API_KEY")),
        "piapi_key_set": bool(os.environ.get("PIAPI_API_KEY")),
        "synclabs_key_set": bool(os.environ.get("SYNCLABS_API_KEY")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    r = task_queue.get_redis()
    if r:
        try:
            metrics.set_gauge("queue_depth", task_queue.get_queue_length(r))
            metrics.set_gauge("processing_count", task_queue.get_processing_count(r))
            metrics.set_gauge("dead_letter_count", task_queue.get_dead_letter_count(r))
        except Exception as e:
            logger.warning(f"Could not read queue gauges: {e}")
    return metrics.get_snapshot()


@app.get("/queue/status")
def queue_status(job_id: str = Query(...)):
    """Return queue position + ETA for a given job."""
    r = task_queue.get_redis()
    if not r:
        return {"position": 0, "estimated_wait_seconds": 0, "queue_length": 0, "status": "processing"}

    position = task_queue.get_queue_position(r, job_id)
    meta = task_queue.get_task_meta(r, job_id)
    concurrency = int(os.environ.get("WORKER_CONCURRENCY", "2"))
    est_wait = task_queue.estimate_wait_seconds(r, job_id, concurrency) if position else 0

    return {
        "position": position or 0,
        "estimated_wait_seconds": est_wait,
        "queue_length": task_queue.get_queue_length(r),
        "status": meta.get("status", "unknown") if meta else "not_found",
        "scene_id": json.loads(meta.get("payload", "{}")).get("scene_id") if meta else None,
    }


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("avatar_worker.main:app", host="0.0.0.0", port=port)
