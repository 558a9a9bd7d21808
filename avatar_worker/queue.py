"""
Redis-backed FIFO task queue with reliable delivery.

Uses the BLMOVE (reliable queue) pattern so a scene job is never lost:
  1. LPUSH → `scenequeue:jobs`              (enqueue)
  2. BLMOVE → `scenequeue:processing`        (atomic dequeue + in-flight tracking)
  3. LREM from processing on success         (ack)
  4. Requeue or → `scenequeue:dead_letter` after 3 failures (nack)

A scene run can legitimately take 30+ minutes (video and lip-sync polling),
so consumers stamp `heartbeat_at` while they work; a task only counts as
stale once its heartbeat stops.

Keys:
  scenequeue:jobs             — pending tasks (Redis list, FIFO)
  scenequeue:processing       — in-flight tasks (Redis list)
  scenequeue:dead_letter      — permanently failed tasks (Redis list)
  scenequeue:meta:{job_id}    — per-job metadata (Redis hash, TTL 6h)
  scenequeue:scene:{scene_id} — job id holding the scene (Redis string, TTL 6h)
"""

import json
import os
import time
import logging
from typing import Optional

import redis

logger = logging.getLogger(__name__)

QUEUE_KEY = "scenequeue:jobs"
PROCESSING_KEY = "scenequeue:processing"
DEAD_LETTER_KEY = "scenequeue:dead_letter"
META_PREFIX = "scenequeue:meta:"
SCENE_SLOT_PREFIX = "scenequeue:scene:"
META_TTL = 6 * 3600

TASK_SCENE_GENERATE = "scene_generate"

MAX_RETRIES = 3
STALE_TASK_TIMEOUT = 600  # no heartbeat for 10 minutes → requeue
HEARTBEAT_INTERVAL = 60


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Connection ────────────────────────────────────────────────────────────────

_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
            except redis.RedisError as e:
                logger.error(f"Redis connection failed: {e} — falling back to background tasks")
                return None
            logger.info(f"Redis connected: {redis_url[:30]}...")
            _redis_client = client
    return _redis_client


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(
    redis_client,
    project_id: str,
    job_id: str,
    task_type: str,
    payload: dict,
) -> int:
    """
    Add a task to the back of the queue.
    Returns the queue position (1-based).
    """
    meta = {
        "project_id": project_id,
        "job_id": job_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)

    meta_key = f"{META_PREFIX}{job_id}"
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)

    # LPUSH = new items go to left; pop from right = FIFO
    pipe.lpush(QUEUE_KEY, job_id)

    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued job {job_id} for project {project_id} (type={task_type}, pos={position})")
    return position


# ── Reliable Dequeue (BLMOVE) ─────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a task from the pending queue to the processing list.

    The task is never in limbo: it is either in `jobs` or in `processing`.
    If the worker crashes, `recover_stale_tasks()` moves it back.

    Returns the job_id or None on timeout.
    """
    result = redis_client.blmove(
        QUEUE_KEY, PROCESSING_KEY,
        timeout=timeout,
        src="RIGHT", dest="LEFT",
    )
    if result is None:
        return None

    job_id = _decode(result)
    now = str(time.time())
    redis_client.hset(f"{META_PREFIX}{job_id}", mapping={
        "processing_started_at": now,
        "heartbeat_at": now,
    })

    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


def heartbeat(redis_client, job_id: str):
    """Mark an in-flight task as alive."""
    redis_client.hset(f"{META_PREFIX}{job_id}", "heartbeat_at", str(time.time()))


# ── Per-scene slot ────────────────────────────────────────────────────────────

def reserve_scene(redis_client, scene_id: str, job_id: str) -> Optional[str]:
    """
    Hold the scene's slot for ``job_id`` until the job is acked or dead-lettered,
    so one scene never has two jobs queued or in flight.

    Returns None when the slot was taken, or the job id already holding it.
    """
    key = f"{SCENE_SLOT_PREFIX}{scene_id}"
    if redis_client.set(key, job_id, nx=True, ex=META_TTL):
        return None
    holder = redis_client.get(key)
    return _decode(holder) if holder is not None else None


def release_scene(redis_client, scene_id: str, job_id: str):
    """Free the scene's slot if ``job_id`` still holds it."""
    key = f"{SCENE_SLOT_PREFIX}{scene_id}"
    holder = redis_client.get(key)
    if holder is not None and _decode(holder) == job_id:
        redis_client.delete(key)


def _release_job_scene(redis_client, job_id: str):
    meta = get_task_meta(redis_client, job_id) or {}
    scene_id = json.loads(meta.get("payload", "{}")).get("scene_id")
    if scene_id:
        release_scene(redis_client, scene_id, job_id)


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, job_id: str, status: str = "completed"):
    """Acknowledge a finished task — remove it from the processing list."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_task_status(redis_client, job_id, status)
    _release_job_scene(redis_client, job_id)
    logger.info(f"Acked job {job_id} ({status})")


def nack_task(redis_client, job_id: str, error_msg: str = ""):
    """
    Negative-acknowledge a task that crashed before the scene recorded an outcome.
    Increments retry count. If below MAX_RETRIES, requeues.
    Otherwise moves to the dead-letter queue.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0)
    retries += 1
    redis_client.hset(meta_key, "retries", str(retries))

    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_task_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked job {job_id} (retry {retries}/{MAX_RETRIES}), requeued")
    else:
        redis_client.lpush(DEAD_LETTER_KEY, job_id)
        update_task_status(redis_client, job_id, "dead_letter")
        _release_job_scene(redis_client, job_id)
        logger.error(f"Job {job_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, timeout: int = STALE_TASK_TIMEOUT) -> int:
    """
    Move in-flight tasks whose heartbeat is older than ``timeout`` back to the
    pending queue. These are from crashed workers; the redelivered scene is
    resumed from its poll checkpoint.

    Call this on worker startup and periodically.
    Returns the number of recovered tasks.
    """
    processing_items = redis_client.lrange(PROCESSING_KEY, 0, -1)
    recovered = 0
    now = time.time()

    for item in processing_items:
        job_id = _decode(item)
        meta = get_task_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        last_seen = max(
            float(meta.get("heartbeat_at", 0) or 0),
            float(meta.get("processing_started_at", 0) or 0),
        )
        if last_seen > 0 and (now - last_seen) > timeout:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_task_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(f"Recovered stale job {job_id} (no heartbeat for {int(now - last_seen)}s)")

    if recovered:
        logger.info(f"Recovered {recovered} stale task(s) from processing queue")
    return recovered


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_position(redis_client, job_id: str) -> Optional[int]:
    """
    Get the 1-based position of a job in the pending queue.
    Returns None if the job is not in the queue (already processing or done).
    """
    queue_items = redis_client.lrange(QUEUE_KEY, 0, -1)

    for i, item in enumerate(queue_items):
        if _decode(item) == job_id:
            # Items are popped from the right, so rightmost = next
            return len(queue_items) - i

    return None


def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_dead_letter_count(redis_client) -> int:
    return redis_client.llen(DEAD_LETTER_KEY)


def get_task_meta(redis_client, job_id: str) -> Optional[dict]:
    """Get metadata for a queued/processing task."""
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_task_status(redis_client, job_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)


# ── ETA Estimation ────────────────────────────────────────────────────────────

ESTIMATED_SCENE_SECONDS = 900  # typical audio + image + video + lip-sync run


def estimate_wait_seconds(redis_client, job_id: str, concurrency: int = 1) -> int:
    """Estimate how long until this job starts processing."""
    position = get_queue_position(redis_client, job_id)
    if position is None:
        return 0
    return (position - 1) * ESTIMATED_SCENE_SECONDS // max(1, concurrency)
