"""
Bounded polling for long-running vendor jobs.

A BoundedPoller calls a check function until it returns a value, waiting
between attempts according to an interval schedule. Before every wait it
hands a PollState checkpoint to the caller so the scene row always records
which task is being polled, how many attempts were spent and when the next
poll is due. A worker that picks the scene up again can rebuild the poller
from that checkpoint instead of submitting a new job.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import GenerationTimeoutError
from .models import PipelineStep, PollState

logger = logging.getLogger(__name__)

T = TypeVar("T")

Schedule = Callable[[int], float]
Checkpoint = Callable[[PollState], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


def fixed_interval(seconds: float) -> Schedule:
    """Same wait before every attempt."""
    return lambda attempt: seconds


def stepped_interval(fast: float, window: float, slow: float) -> Schedule:
    """``fast`` waits until ``window`` seconds have elapsed, ``slow`` after that."""

    def interval(attempt: int) -> float:
        return fast if attempt * fast < window else slow

    return interval


class BoundedPoller:
    def __init__(
        self,
        step: PipelineStep,
        task_id: str,
        max_polls: int,
        schedule: Schedule,
        checkpoint: Optional[Checkpoint] = None,
        log_every: int = 4,
        sleep: Sleep = asyncio.sleep,
    ):
        self.step = step
        self.task_id = task_id
        self.max_polls = max_polls
        self.schedule = schedule
        self.checkpoint = checkpoint
        self.log_every = max(1, log_every)
        self.sleep = sleep

    def should_log(self, attempt: int) -> bool:
        """True every Nth attempt (and on the first and last)."""
        return attempt == 0 or attempt == self.max_polls - 1 or (attempt + 1) % self.log_every == 0

    async def run(
        self,
        check: Callable[[int], Awaitable[Optional[T]]],
        start_attempt: int = 0,
        first_delay: Optional[float] = None,
    ) -> T:
        """
        Poll until ``check(attempt)`` returns something other than None.

        ``check`` raises to abort the loop (e.g. vendor reported failure).
        ``start_attempt`` and ``first_delay`` come from a persisted checkpoint
        when a run is resumed. Raises GenerationTimeoutError once
        ``max_polls`` attempts are spent.
        """
        for attempt in range(start_attempt, self.max_polls):
            if attempt == start_attempt and first_delay is not None:
                delay = max(0.0, first_delay)
            else:
                delay = self.schedule(attempt)

            if self.checkpoint is not None:
                await self.checkpoint(PollState(
                    step=self.step,
                    task_id=self.task_id,
                    attempt=attempt,
                    next_poll_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                ))

            if delay > 0:
                await self.sleep(delay)

            result = await check(attempt)
            if result is not None:
                return result

        logger.warning(
            f"{self.step.value}: task {self.task_id} still not terminal after {self.max_polls} polls"
        )
        raise GenerationTimeoutError(
            f"{self.step.value} timed out after {self.max_polls} polls (task {self.task_id})",
            task_id=self.task_id,
            attempts=self.max_polls,
        )
