import random

def backoff_delay(
    attempts: int,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 30.0,
    jitter: bool = True
) -> float:
    """
    Seconds to wait before the next push channel connect attempt.

    `attempts` counts the failures before this wait; 0 yields the base delay,
    each further failure doubles it up to `max_delay_seconds`. Jitter adds up
    to 10% on top so a fleet of trackers doesn't reconnect in lockstep.
    """
    exponent = min(max(attempts, 0), 20)
    delay = min(base_delay_seconds * (2 ** exponent), max_delay_seconds)
    if jitter:
        delay += random.uniform(0, delay * 0.1)
    return delay
