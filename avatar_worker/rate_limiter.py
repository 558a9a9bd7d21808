"""
Per-project generation limit: a sliding window over a Redis sorted set.

`ratelimit:scenes:{project_id}` holds one member per accepted generation,
scored by its timestamp. A check trims the expired members, provisionally
adds the new one and counts, all in one MULTI; an over-limit request takes
its member back out. Counters live in Redis so every worker replica enforces
the same limit.
"""

import os
import time
import uuid
import logging
from typing import NamedTuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = int(os.getenv("SCENE_RATE_LIMIT", "20"))   # generations per window
DEFAULT_WINDOW_SECONDS = int(os.getenv("SCENE_RATE_WINDOW", "3600"))

KEY_PREFIX = "ratelimit:scenes:"


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int   # seconds; 0 when allowed


def check_rate_limit(
    redis_client,
    project_id: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> RateLimitDecision:
    """Record a generation request for ``project_id`` unless the window is full."""
    now = time.time()
    key = f"{KEY_PREFIX}{project_id}"
    # unique per request, even for identical timestamps
    member = f"{now}:{uuid.uuid4().hex[:8]}"

    pipe = redis_client.pipeline(transaction=True)
    pipe.zremrangebyscore(key, 0, now - window_seconds)
    pipe.zadd(key, {member: now})
    pipe.zcard(key)
    pipe.zrange(key, 0, 0, withscores=True)
    pipe.expire(key, window_seconds + 60)
    _, _, count, oldest, _ = pipe.execute()

    if count > max_requests:
        redis_client.zrem(key, member)
        oldest_score = oldest[0][1] if oldest else now
        retry_after = max(1, int(oldest_score + window_seconds - now) + 1)
        logger.warning(
            f"Rate limit exceeded for project {project_id}: {count - 1}/{max_requests}, "
            f"retry in {retry_after}s"
        )
        return RateLimitDecision(False, 0, retry_after)

    logger.debug(f"Rate limit OK for project {project_id}: {count}/{max_requests}")
    return RateLimitDecision(True, max_requests - count, 0)
