"""Tests for retry logic with exponential backoff."""

import time

import pytest

from ingestion.collector.retry import RetryPolicy, retry_with_backoff
from ingestion.common.errors import PermanentFetchError, RetryExhaustedError, TransientFetchError


class TestRetryPolicy:
    """Tests for the policy the collector applies to every page."""

    def test_delays_grow_exponentially(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_factor=2.0, max_delay=60.0)

        assert [policy.delay_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=10.0, backoff_factor=10.0, max_delay=30.0)

        assert policy.delay_for(3) == 30.0

    def test_retry_after_raises_the_delay(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=60.0)
        error = TransientFetchError("429", retry_after=7, status_code=429)

        assert policy.delay_for(0, error) == 7.0

    def test_retry_after_is_capped_by_max_delay(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0)
        error = TransientFetchError("429", retry_after=3600)

        assert policy.delay_for(0, error) == 5.0

    def test_call_sleeps_between_attempts(self):
        sleeps = []
        attempts = {"count": 0}
        policy = RetryPolicy(max_retries=3, initial_delay=0.5, backoff_factor=2.0)

        def flaky():
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise TransientFetchError("503")
            return "ok"

        assert policy.call(flaky, sleep=sleeps.append) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_call_wraps_exhaustion(self):
        policy = RetryPolicy(max_retries=2)
        last = TransientFetchError("still down")

        def always_fails():
            raise last

        with pytest.raises(RetryExhaustedError) as exc_info:
            policy.call(always_fails, sleep=lambda _: None)

        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__ is last

    def test_permanent_errors_are_not_retried(self):
        calls = {"count": 0}

        def rejected():
            calls["count"] += 1
            raise PermanentFetchError("401", status_code=401)

        with pytest.raises(PermanentFetchError):
            RetryPolicy(max_retries=3).call(rejected, sleep=lambda _: None)

        assert calls["count"] == 1


class TestRetryLogic:
    """Tests for the retry decorator."""

    def test_retry_succeeds_on_first_attempt(self):
        """Function that succeeds immediately should not retry."""
        call_count = {"count": 0}

        @retry_with_backoff(max_retries=3)
        def successful_function():
            call_count["count"] += 1
            return "success"

        assert successful_function() == "success"
        assert call_count["count"] == 1

    def test_retry_succeeds_after_transient_failures(self):
        """Function should retry until it succeeds."""
        call_count = {"count": 0}

        @retry_with_backoff(max_retries=3, initial_delay=0.01, backoff_factor=2.0)
        def fails_twice_then_succeeds():
            call_count["count"] += 1
            if call_count["count"] < 3:
                raise TransientFetchError("Temporary failure")
            return "success"

        assert fails_twice_then_succeeds() == "success"
        assert call_count["count"] == 3

    def test_retry_exhausts_all_attempts(self):
        """The last exception is re-raised unchanged after max_retries."""
        call_count = {"count": 0}

        @retry_with_backoff(max_retries=3, initial_delay=0.01)
        def always_fails():
            call_count["count"] += 1
            raise ConnectionError("Always fails")

        with pytest.raises(ConnectionError, match="Always fails"):
            always_fails()

        # Should try initial + 3 retries = 4 total attempts
        assert call_count["count"] == 4

    @pytest.mark.slow
    def test_retry_exponential_backoff_timing(self):
        """Verify exponential backoff delays are correct."""
        call_times = []

        @retry_with_backoff(max_retries=3, initial_delay=0.1, backoff_factor=2.0)
        def fails_always():
            call_times.append(time.time())
            raise TimeoutError("Fail")

        with pytest.raises(TimeoutError):
            fails_always()

        delays = [call_times[i + 1] - call_times[i] for i in range(len(call_times) - 1)]

        # Allow 20% tolerance for timing variations
        assert len(delays) == 3
        assert delays[0] == pytest.approx(0.1, rel=0.2)
        assert delays[1] == pytest.approx(0.2, rel=0.2)
        assert delays[2] == pytest.approx(0.4, rel=0.2)

    def test_retry_only_catches_specified_exceptions(self):
        """Retry should only catch exceptions in the exceptions tuple."""

        @retry_with_backoff(max_retries=2, exceptions=(ConnectionError,))
        def raises_value_error():
            raise ValueError("Wrong exception type")

        with pytest.raises(ValueError, match="Wrong exception type"):
            raises_value_error()

    def test_retry_preserves_function_metadata(self):
        """Decorator should preserve function name and docstring."""

        @retry_with_backoff(max_retries=1)
        def my_function():
            """This is my function."""
            return "result"

        assert my_function.__name__ == "my_function"
        assert my_function.__doc__ == "This is my function."

    def test_retry_with_function_arguments(self):
        call_count = {"count": 0}

        @retry_with_backoff(max_retries=2, initial_delay=0.01)
        def function_with_args(x, y, z=3):
            call_count["count"] += 1
            if call_count["count"] < 2:
                raise ConnectionError("Fail")
            return x + y + z

        assert function_with_args(1, 2, z=4) == 7
        assert call_count["count"] == 2

    def test_retry_with_no_retries(self):
        """max_retries=0 means try once, no retries."""
        call_count = {"count": 0}

        @retry_with_backoff(max_retries=0)
        def fails_once():
            call_count["count"] += 1
            raise ConnectionError("Fail")

        with pytest.raises(ConnectionError):
            fails_once()

        assert call_count["count"] == 1


# ============================================================================
# Mark all tests as unit tests
# ============================================================================

pytestmark = pytest.mark.unit
