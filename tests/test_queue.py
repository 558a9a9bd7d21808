import json
import time
from unittest.mock import MagicMock

from avatar_worker import queue as task_queue


def _meta(**fields):
    return {k.encode(): str(v).encode() for k, v in fields.items()}


def test_enqueue_writes_meta_and_pushes_job():
    r = MagicMock()
    r.llen.return_value = 3
    pipe = r.pipeline.return_value

    position = task_queue.enqueue_task(r, "proj-1", "job-1", task_queue.TASK_SCENE_GENERATE, {"scene_id": "scene-1"})

    assert position == 3
    mapping = pipe.hset.call_args.kwargs["mapping"]
    assert mapping["status"] == "queued"
    assert mapping["retries"] == "0"
    assert json.loads(mapping["payload"]) == {"scene_id": "scene-1"}
    pipe.expire.assert_called_once_with("scenequeue:meta:job-1", task_queue.META_TTL)
    pipe.lpush.assert_called_once_with(task_queue.QUEUE_KEY, "job-1")
    pipe.execute.assert_called_once()


def test_dequeue_moves_to_processing_and_stamps_heartbeat():
    r = MagicMock()
    r.blmove.return_value = b"job-1"

    assert task_queue.dequeue_task(r, timeout=1) == "job-1"

    r.blmove.assert_called_once_with(
        task_queue.QUEUE_KEY, task_queue.PROCESSING_KEY, timeout=1, src="RIGHT", dest="LEFT"
    )
    stamped = r.hset.call_args.kwargs["mapping"]
    assert stamped["heartbeat_at"] == stamped["processing_started_at"]


def test_dequeue_timeout():
    r = MagicMock()
    r.blmove.return_value = None
    assert task_queue.dequeue_task(r) is None
    r.hset.assert_not_called()


def test_ack_removes_from_processing():
    r = MagicMock()
    task_queue.ack_task(r, "job-1", "failed")

    r.lrem.assert_called_once_with(task_queue.PROCESSING_KEY, 1, "job-1")
    r.hset.assert_called_once_with("scenequeue:meta:job-1", "status", "failed")


def test_nack_requeues_below_retry_limit():
    r = MagicMock()
    r.hget.return_value = b"0"

    task_queue.nack_task(r, "job-1", "store unreachable")

    r.lpush.assert_called_once_with(task_queue.QUEUE_KEY, "job-1")
    r.hset.assert_any_call("scenequeue:meta:job-1", "retries", "1")
    r.hset.assert_any_call("scenequeue:meta:job-1", "last_error", "store unreachable")


def test_nack_dead_letters_at_retry_limit():
    r = MagicMock()
    r.hget.return_value = str(task_queue.MAX_RETRIES - 1).encode()

    task_queue.nack_task(r, "job-1", "crash")

    r.lpush.assert_called_once_with(task_queue.DEAD_LETTER_KEY, "job-1")
    r.hset.assert_any_call("scenequeue:meta:job-1", "status", "dead_letter")


def test_recover_stale_uses_heartbeat():
    now = time.time()
    metas = {
        # started long ago but still beating
        "scenequeue:meta:alive": _meta(processing_started_at=now - 3000, heartbeat_at=now - 30),
        "scenequeue:meta:dead": _meta(processing_started_at=now - 3000, heartbeat_at=now - 900),
    }
    r = MagicMock()
    r.lrange.return_value = [b"alive", b"dead", b"orphan"]
    r.hgetall.side_effect = lambda key: metas.get(key, {})

    recovered = task_queue.recover_stale_tasks(r, timeout=600)

    assert recovered == 1
    r.lpush.assert_called_once_with(task_queue.QUEUE_KEY, "dead")
    r.lrem.assert_any_call(task_queue.PROCESSING_KEY, 1, "dead")
    r.lrem.assert_any_call(task_queue.PROCESSING_KEY, 1, "orphan")


def test_queue_position_and_eta():
    r = MagicMock()
    # LPUSH puts newest on the left; rightmost is dequeued next
    r.lrange.return_value = [b"job-c", b"job-b", b"job-a"]

    assert task_queue.get_queue_position(r, "job-a") == 1
    assert task_queue.get_queue_position(r, "job-c") == 3
    assert task_queue.get_queue_position(r, "job-z") is None
    assert task_queue.estimate_wait_seconds(r, "job-c", concurrency=2) == task_queue.ESTIMATED_SCENE_SECONDS


def test_get_task_meta_decodes():
    r = MagicMock()
    r.hgetall.return_value = _meta(status="processing", task_type="scene_generate")

    assert task_queue.get_task_meta(r, "job-1") == {"status": "processing", "task_type": "scene_generate"}


def test_get_redis_without_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(task_queue, "_redis_client", None)
    assert task_queue.get_redis() is None


def test_reserve_scene_holds_one_job_per_scene():
    r = MagicMock()
    r.set.return_value = True

    assert task_queue.reserve_scene(r, "scene-1", "job-1") is None
    r.set.assert_called_once_with("scenequeue:scene:scene-1", "job-1", nx=True, ex=task_queue.META_TTL)

    r.set.return_value = None
    r.get.return_value = b"job-1"
    assert task_queue.reserve_scene(r, "scene-1", "job-2") == "job-1"


def test_ack_releases_the_scene_slot():
    r = MagicMock()
    r.hgetall.return_value = _meta(payload=json.dumps({"scene_id": "scene-1"}))
    r.get.return_value = b"job-1"

    task_queue.ack_task(r, "job-1")

    r.delete.assert_called_once_with("scenequeue:scene:scene-1")


def test_release_leaves_slot_held_by_another_job():
    r = MagicMock()
    r.get.return_value = b"job-2"

    task_queue.release_scene(r, "scene-1", "job-1")

    r.delete.assert_not_called()


def test_requeued_job_keeps_its_scene_slot():
    r = MagicMock()
    r.hget.return_value = b"0"
    r.hgetall.return_value = _meta(payload=json.dumps({"scene_id": "scene-1"}))
    r.get.return_value = b"job-1"

    task_queue.nack_task(r, "job-1", "crash")

    r.delete.assert_not_called()


def test_dead_lettered_job_frees_its_scene_slot():
    r = MagicMock()
    r.hget.return_value = str(task_queue.MAX_RETRIES - 1).encode()
    r.hgetall.return_value = _meta(payload=json.dumps({"scene_id": "scene-1"}))
    r.get.return_value = b"job-1"

    task_queue.nack_task(r, "job-1", "crash")

    r.delete.assert_called_once_with("scenequeue:scene:scene-1")
