"""
Tests for the timeout policy engine:
- Complexity scaling
- Per-attempt increment
- Clamping to the policy maximum
- Progressive backoff
"""

import pytest

from ..config import TimeoutPolicy
from ..errors import ConfigurationError
from ..models import ComplexityProfile
from ..timeouts import backoff_delay, compute_timeout, timeout_schedule


class TestComputeTimeout:
    """Tests for compute_timeout."""

    def test_documented_schedule(self):
        """base 30, mult 2, max 180, increment 30, score 10 gives 50/80/110."""
        policy = TimeoutPolicy(base_seconds=30, complexity_multiplier=2, max_seconds=180, retry_increment_seconds=30)
        profile = ComplexityProfile(score=10)

        assert compute_timeout(profile, 1, policy) == 50
        assert compute_timeout(profile, 2, policy) == 80
        assert compute_timeout(profile, 3, policy) == 110

    def test_zero_score_uses_base(self):
        """A zero-complexity project gets the base timeout on the first attempt."""
        assert compute_timeout(ComplexityProfile(score=0), 1, TimeoutPolicy()) == 30

    def test_clamped_to_max(self):
        """No attempt ever exceeds max_seconds."""
        policy = TimeoutPolicy()
        profile = ComplexityProfile(score=500)
        for attempt in range(1, 10):
            assert compute_timeout(profile, attempt, policy) == policy.max_seconds

    def test_monotonic_in_attempt(self):
        """Later attempts never get less time."""
        policy = TimeoutPolicy(max_retries=6)
        profile = ComplexityProfile(score=25)
        schedule = timeout_schedule(profile, policy)
        assert schedule == sorted(schedule)
        assert len(schedule) == 6

    def test_monotonic_in_score(self):
        """More complex projects never get less time."""
        policy = TimeoutPolicy()
        timeouts = [compute_timeout(ComplexityProfile(score=s), 1, policy) for s in range(0, 100, 5)]
        assert timeouts == sorted(timeouts)

    def test_invalid_attempt(self):
        """Attempt indices start at 1."""
        with pytest.raises(ValueError):
            compute_timeout(ComplexityProfile(score=0), 0, TimeoutPolicy())


class TestBackoff:
    """Tests for the progressive delay between attempts."""

    def test_linear_backoff(self):
        """Delay after attempt N is N * backoff unit."""
        policy = TimeoutPolicy(backoff_unit_seconds=5)
        assert [backoff_delay(n, policy) for n in (1, 2, 3)] == [5, 10, 15]

    def test_zero_unit(self):
        policy = TimeoutPolicy(backoff_unit_seconds=0)
        assert backoff_delay(3, policy) == 0


class TestPolicyValidation:
    """TimeoutPolicy rejects nonsensical values at construction."""

    def test_max_below_base(self):
        with pytest.raises(ConfigurationError):
            TimeoutPolicy(base_seconds=60, max_seconds=30)

    def test_zero_attempts(self):
        with pytest.raises(ConfigurationError):
            TimeoutPolicy(max_retries=0)

    def test_negative_multiplier(self):
        with pytest.raises(ConfigurationError):
            TimeoutPolicy(complexity_multiplier=-1)
