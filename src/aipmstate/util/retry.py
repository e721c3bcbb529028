# src/aipmstate/util/retry.py: Exponential backoff helpers.
# Polling loops that wait on another process (the directory lock fallback, for
# one) sleep for exponentially growing intervals with a little jitter, capped
# per attempt and never past an overall deadline.

import random
import time


def backoff_delays(initial: float = 0.05, maximum: float = 1.0, factor: float = 2.0, jitter: float = 0.1):
    """Yields an endless sequence of sleep intervals growing by `factor` up to `maximum`."""
    delay = initial
    while True:
        yield min(maximum, delay) * (1 + random.uniform(0, jitter))
        delay *= factor


def poll_until(attempt, timeout: float, initial: float = 0.05, maximum: float = 1.0) -> bool:
    """
    Calls `attempt` until it returns True or `timeout` seconds have passed.

    Args:
        attempt: A zero-argument callable returning True on success.
        timeout: Overall time budget in seconds. Zero means a single attempt.
        initial: First sleep interval.
        maximum: Upper bound for a single sleep interval.

    Returns:
        True if an attempt succeeded, False if the deadline passed first.
    """
    deadline = time.monotonic() + max(timeout, 0)
    for delay in backoff_delays(initial, maximum):
        if attempt():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(delay, remaining))
    return False

