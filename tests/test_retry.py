"""Tests for the retry policy."""

import pytest

from distore.errors import ConfigError, NotFound, PayloadTooLarge, RateLimited, TransportError
from distore.transfer.retry import RetryPolicy, call_with_retry


class Script:
    """Async operation that raises the scripted errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return 'ok'


class TestCallWithRetry:
    """call_with_retry budgets and delays."""

    @pytest.mark.asyncio
    async def test_success_needs_no_retry(self, retry_policy, sleeps):
        operation = Script()

        assert await call_with_retry(operation, retry_policy) == 'ok'
        assert operation.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limit_waits_signalled_delay(self, retry_policy, sleeps):
        """Test that RateLimited sleeps exactly retry_after."""
        operation = Script(RateLimited(1.5), RateLimited(0.25))

        assert await call_with_retry(operation, retry_policy) == 'ok'
        assert sleeps == [1.5, 0.25]

    @pytest.mark.asyncio
    async def test_rate_limits_do_not_use_attempt_budget(self, retry_policy):
        """Test that rate limits and transport errors have separate budgets."""
        # max_attempts=3, max_rate_limit_retries=5
        operation = Script(
            RateLimited(0.1), RateLimited(0.1), RateLimited(0.1), RateLimited(0.1),
            TransportError('boom'), TransportError('boom'),
        )

        assert await call_with_retry(operation, retry_policy) == 'ok'
        assert operation.calls == 7

    @pytest.mark.asyncio
    async def test_rate_limit_budget_exhausted(self, retry_policy):
        operation = Script(*[RateLimited(0.1) for _ in range(6)])

        with pytest.raises(RateLimited):
            await call_with_retry(operation, retry_policy)
        assert operation.calls == 6

    @pytest.mark.asyncio
    async def test_transport_error_backs_off_exponentially(self, retry_policy, sleeps):
        operation = Script(TransportError('a'), TransportError('b'))

        assert await call_with_retry(operation, retry_policy) == 'ok'
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_transport_error_budget_exhausted(self, retry_policy):
        operation = Script(*[TransportError(str(i)) for i in range(3)])

        with pytest.raises(TransportError, match='2'):
            await call_with_retry(operation, retry_policy)
        assert operation.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize('error', [PayloadTooLarge(), NotFound(), ConfigError()])
    async def test_permanent_errors_are_not_retried(self, retry_policy, error):
        operation = Script(error)

        with pytest.raises(type(error)):
            await call_with_retry(operation, retry_policy)
        assert operation.calls == 1


class TestRetryPolicy:
    """Policy validation and backoff."""

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0)
        assert [policy.backoff_delay(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_fraction(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=0.1)
        for _ in range(50):
            assert 2.0 <= policy.backoff_delay(1) <= 2.2

    @pytest.mark.parametrize('kwargs', [
        {'max_attempts': 0},
        {'max_rate_limit_retries': -1},
        {'base_delay': -1.0},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ConfigError):
            RetryPolicy(**kwargs)
