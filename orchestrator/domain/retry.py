import random
from typing import Optional

from orchestrator.domain.states import BackoffStrategy, FailureMode

# 2^32 * base is far beyond any sane max_delay; keeps pow() bounded.
MAX_EXPONENT = 32

def compute_delay(
    attempt: int,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 3600.0,
    rng: random.Random = random,
) -> float:
    """
    Delay (seconds) before the attempt following `attempt`.

    Formula:
        fixed:              delay = base
        exponential:        delay = min(max, base * 2 ^ (attempt - 1))
        exponential_jitter: exponential * uniform(0.5, 1.0)

    Args:
        attempt: 1-indexed number of the attempt that just failed.
                 Values below 1 are treated as 1.
    """
    strategy = BackoffStrategy(strategy)
    attempt = max(attempt, 1)

    if strategy == BackoffStrategy.FIXED:
        return min(base_delay_seconds, max_delay_seconds)

    exponent = min(attempt - 1, MAX_EXPONENT)
    delay = min(max_delay_seconds, base_delay_seconds * (2 ** exponent))

    if strategy == BackoffStrategy.EXPONENTIAL_JITTER:
        # Spread retries out to avoid a thundering herd
        delay *= rng.uniform(0.5, 1.0)

    return delay

def decide(
    attempt: int,
    strategy: BackoffStrategy,
    failure_mode: FailureMode = FailureMode.RETRYABLE,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 3600.0,
    rng: random.Random = random,
) -> Optional[float]:
    """
    Backoff decision for a failed attempt.
    Returns the delay in seconds, or None when the task must be dead-lettered.
    A non-retryable failure short-circuits regardless of attempts left.
    """
    if FailureMode(failure_mode) == FailureMode.NON_RETRYABLE:
        return None
    return compute_delay(attempt, strategy, base_delay_seconds, max_delay_seconds, rng)
