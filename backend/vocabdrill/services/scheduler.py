"""
SM-2 scheduling.

advance() maps (card state, quality) to the next card state. It performs no I/O
and never validates: callers reject qualities outside 0-5 first (see
is_valid_quality).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

MIN_EASE_FACTOR = 1.3
INITIAL_EASE_FACTOR = 2.5
INITIAL_INTERVAL = 1  # days
PASSING_QUALITY = 3

STAGE_NEW = "new"
STAGE_LEARNING = "learning"
STAGE_MATURE = "mature"


@dataclass(frozen=True)
class SchedulingState:
    ease_factor: float = INITIAL_EASE_FACTOR
    interval: int = INITIAL_INTERVAL
    repetitions: int = 0
    due_at: datetime | None = None
    last_reviewed_at: datetime | None = None


def new_state(now: datetime | None = None) -> SchedulingState:
    """State of a freshly created card: default ease, due immediately."""
    return SchedulingState(due_at=now or datetime.now(timezone.utc))


def is_valid_quality(quality: object) -> bool:
    return isinstance(quality, int) and not isinstance(quality, bool) and 0 <= quality <= 5


def _next_ease(ease_factor: float, quality: int) -> float:
    miss = 5 - quality
    updated = ease_factor + (0.1 - miss * (0.08 + miss * 0.02))
    return max(updated, MIN_EASE_FACTOR)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def advance(state: SchedulingState, quality: int, now: datetime) -> SchedulingState:
    ease_factor = _next_ease(state.ease_factor, quality)

    if quality < PASSING_QUALITY:
        # Lapse: restart the curve, ease already decayed above
        repetitions = 0
        interval = 1
    else:
        repetitions = state.repetitions + 1
        if repetitions == 1:
            interval = 1
        elif repetitions == 2:
            interval = 6
        else:
            interval = _round_half_up(state.interval * ease_factor)

    interval = max(interval, 1)
    return replace(
        state,
        ease_factor=ease_factor,
        interval=interval,
        repetitions=repetitions,
        due_at=now + timedelta(days=interval),
        last_reviewed_at=now,
    )


def learning_stage(repetitions: int) -> str:
    if repetitions <= 1:
        return STAGE_NEW
    if repetitions <= 4:
        return STAGE_LEARNING
    return STAGE_MATURE
