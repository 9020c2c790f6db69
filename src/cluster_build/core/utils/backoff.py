import random


def get_backoff_delay(
    attempt: int,
    min_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 10.0,
    jitter: float = 0.0,
) -> float:
    """
    Returns the delay in seconds before retry number ``attempt + 1``.

    Parameters:
    - attempt (int): Zero-based count of failed attempts so far.
    - min_delay (float): Delay after the first failure.
    - factor (float): Growth factor applied per failed attempt.
    - max_delay (float): Upper bound before jitter.
    - jitter (float): Random jitter as a fraction (e.g., 0.2 = ±20%).

    Returns:
    - float: The delay in seconds.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    delay = min(min_delay * (factor**attempt), max_delay)
    if jitter:
        delay *= random.uniform(1 - jitter, 1 + jitter)
    return delay
