"""
Pre-flight duration check against the lip-sync plan tier.

Sync Labs rejects audio longer than the plan allows, and it only does so at
the very last step. Estimating the spoken length up front lets a run fail
before any audio, image or video credits are spent.
"""

import math
from enum import Enum

from pydantic import BaseModel

# ~150 words per minute, ~5 characters per word
WORDS_PER_MINUTE = 150
CHARS_PER_WORD = 5


class LipsyncPlan(str, Enum):
    HOBBYIST = "hobbyist"
    CREATOR = "creator"
    GROWTH = "growth"
    SCALE = "scale"


PLAN_MAX_SECONDS: dict[LipsyncPlan, int] = {
    LipsyncPlan.HOBBYIST: 60,
    LipsyncPlan.CREATOR: 300,
    LipsyncPlan.GROWTH: 600,
    LipsyncPlan.SCALE: 1800,
}


class DurationCheck(BaseModel):
    valid: bool
    estimated_seconds: float
    max_seconds: int
    plan: LipsyncPlan
    message: str = ""


def estimate_duration(character_count: int) -> float:
    """Estimated spoken length in seconds for a dialogue of ``character_count`` chars."""
    return character_count / CHARS_PER_WORD / WORDS_PER_MINUTE * 60


def validate_audio_duration(
    character_count: int,
    plan: LipsyncPlan = LipsyncPlan.CREATOR,
) -> DurationCheck:
    """
    Compare the estimated duration with the plan's maximum clip length.

    Rejects only when the estimate strictly exceeds the maximum.
    """
    plan = LipsyncPlan(plan)
    estimated = estimate_duration(character_count)
    max_seconds = PLAN_MAX_SECONDS[plan]

    if estimated > max_seconds:
        return DurationCheck(
            valid=False,
            estimated_seconds=estimated,
            max_seconds=max_seconds,
            plan=plan,
            message=(
                f"Audio too long: ~{math.ceil(estimated / 60)} min ({estimated:.0f}s) estimated, "
                f"max {max_seconds // 60} min ({max_seconds}s) allowed on {plan.value} plan. "
                f"Shorten dialogue or upgrade the lip-sync plan."
            ),
        )

    return DurationCheck(
        valid=True,
        estimated_seconds=estimated,
        max_seconds=max_seconds,
        plan=plan,
        message=(
            f"Dialogue validated: {character_count} chars, ~{estimated:.1f}s estimated "
            f"(max {max_seconds}s on {plan.value} plan)"
        ),
    )
