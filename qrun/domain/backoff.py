import random
from typing import Optional

ICEHOUSE_BASE_SECONDS = 20
ICEHOUSE_MIN_SECONDS = 10
ICEHOUSE_MAX_SECONDS = 600

MAX_JOB_RUN_SECONDS = 12 * 60 * 60

def icehouse_wait_seconds(
    empty_streak: int,
    previous_wait: float = 0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    How long to leave a queue alone after it came back empty.

    Formula:
        wait = streak^2 * 20
        wait = wait * uniform(0.5, 1.5)
        wait = clamp(wait, 10, 600)

    Args:
        empty_streak: Consecutive empty polls, including this one (>= 1).
        previous_wait: Wait assigned after the previous empty poll. The result
                       never drops below it, so jitter cannot shorten the
                       cool-down of a queue that keeps coming back empty.

    Returns:
        float: Seconds to skip the queue for, measured from the empty poll.
    """
    rng = rng or random
    streak = max(1, empty_streak)

    wait = ICEHOUSE_BASE_SECONDS * streak * streak
    wait = wait * rng.uniform(0.5, 1.5)

    wait = min(max(wait, ICEHOUSE_MIN_SECONDS), ICEHOUSE_MAX_SECONDS)
    return max(wait, previous_wait)

def next_visibility_timeout(current_timeout: int, elapsed_seconds: float) -> int:
    """
    Doubles the lease, capped so no job is leased past MAX_JOB_RUN_SECONDS
    from its start. Always at least 1 second.
    """
    remaining = max(1, int(MAX_JOB_RUN_SECONDS - elapsed_seconds))
    return min(current_timeout * 2, remaining)

def next_extend_at(elapsed_seconds: float, new_timeout: int) -> int:
    # Renew at the midpoint of the new window
    return round(elapsed_seconds + new_timeout / 2)
