"""Backoff policy for automatic sync retries."""

INITIAL_DELAY = 5.0  # seconds
MAX_DELAY = 300.0  # seconds
MAX_ATTEMPTS = 5

# 5s * 2**6 already exceeds MAX_DELAY; larger exponents only risk overflow
_MAX_EXPONENT = 32


def next_delay(attempt_count: int) -> float:
    """Delay before the retry that follows ``attempt_count`` failed drains.

    ``min(INITIAL_DELAY * 2**attempt_count, MAX_DELAY)``: 5s, 10s, 20s, 40s,
    80s, 160s, then 300s forever.
    """
    exponent = min(max(int(attempt_count), 0), _MAX_EXPONENT)
    return min(INITIAL_DELAY * (2 ** exponent), MAX_DELAY)
