"""Timeout Policy Engine - complexity-aware, attempt-aware timeouts."""

from .config import TimeoutPolicy
from .models import ComplexityProfile


def compute_timeout(profile: ComplexityProfile, attempt_index: int, policy: TimeoutPolicy) -> float:
    """Get the timeout in seconds for an attempt.

    Grows linearly with complexity score and with each retry, and is always
    clamped to policy.max_seconds.
    """
    if attempt_index < 1:
        raise ValueError(f"attempt_index must be >= 1, got {attempt_index}")

    timeout = (
        policy.base_seconds
        + profile.score * policy.complexity_multiplier
        + (attempt_index - 1) * policy.retry_increment_seconds
    )
    return min(timeout, policy.max_seconds)


def timeout_schedule(profile: ComplexityProfile, policy: TimeoutPolicy) -> list[float]:
    """Timeouts for every attempt the policy allows, in order."""
    return [compute_timeout(profile, attempt, policy) for attempt in range(1, policy.max_retries + 1)]


def backoff_delay(attempt_index: int, policy: TimeoutPolicy) -> float:
    """Progressive (linear) delay slept after a failed attempt."""
    return attempt_index * policy.backoff_unit_seconds
