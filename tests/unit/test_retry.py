"""
Unit tests for the retry policy (backvault/backup/retry.py).
"""

import pytest

from backvault.backup.errors import AuthError, BackendConnectionError, ObjectNotFoundError, TransferError
from backvault.backup.retry import RetryPolicy, is_retryable, next_delay


class TestNextDelay:
    """Test the backoff computation."""

    def test_exponential_growth(self):
        assert next_delay(1, 100, 10000) == pytest.approx(0.1)
        assert next_delay(2, 100, 10000) == pytest.approx(0.2)
        assert next_delay(3, 100, 10000) == pytest.approx(0.4)

    def test_capped_at_max_delay(self):
        assert next_delay(20, 1000, 30000) == pytest.approx(30.0)

    def test_jitter_bounded_by_base_delay(self):
        assert next_delay(1, 100, 10000, rand=0.5) == pytest.approx(0.15)
        assert next_delay(1, 100, 120, rand=0.99) == pytest.approx(0.12)


class TestIsRetryable:

    def test_transfer_errors_use_their_flag(self):
        assert is_retryable(BackendConnectionError("reset"))
        assert not is_retryable(AuthError("denied"))
        assert not is_retryable(ObjectNotFoundError("missing"))
        assert is_retryable(TransferError("flaky", retryable=True))

    def test_network_builtins_are_retryable(self):
        assert is_retryable(ConnectionResetError())
        assert is_retryable(TimeoutError())
        assert not is_retryable(ValueError("bad"))


class TestRetryPolicy:
    """Test RetryPolicy.call()."""

    def _policy(self, sleeps, max_attempts=3):
        return RetryPolicy(max_attempts=max_attempts, base_delay_ms=100, max_delay_ms=1000,
                           jitter=False, sleep=sleeps.append)

    def test_returns_on_first_success(self):
        sleeps = []
        assert self._policy(sleeps).call(lambda: 'ok') == 'ok'
        assert sleeps == []

    def test_retries_transient_failures(self):
        sleeps = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise BackendConnectionError("connection reset")
            return 'done'

        assert self._policy(sleeps).call(flaky) == 'done'
        assert len(calls) == 3
        assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]

    def test_raises_original_error_after_max_attempts(self):
        sleeps = []
        error = BackendConnectionError("timeout", key='k')

        def always_fails():
            raise error

        with pytest.raises(BackendConnectionError) as exc_info:
            self._policy(sleeps, max_attempts=4).call(always_fails)

        assert exc_info.value is error
        assert exc_info.value.attempts == 4
        assert len(sleeps) == 3

    def test_terminal_errors_are_not_retried(self):
        sleeps = []
        calls = []

        def denied():
            calls.append(1)
            raise AuthError("bad credentials")

        with pytest.raises(AuthError) as exc_info:
            self._policy(sleeps).call(denied)

        assert len(calls) == 1
        assert exc_info.value.attempts == 1
        assert sleeps == []

    def test_passes_arguments(self):
        sleeps = []
        assert self._policy(sleeps).call(lambda a, b=0: a + b, 2, b=3) == 5
