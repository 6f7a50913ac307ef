"""Tests for bounded retry policies."""

import pytest

from release_spine.core.errors import BuildFailure, ChannelUnreachable
from release_spine.execution.retry import ExponentialBackoff, NoRetry, RetryContext


def _flaky(failures: int, error_factory=lambda: ChannelUnreachable("refused")):
    """Callable failing ``failures`` times before returning 'ok'."""
    calls = {"n": 0}

    def call():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error_factory()
        return "ok"

    call.calls = calls
    return call


class TestExponentialBackoff:
    def test_delays_double_and_cap(self):
        strategy = ExponentialBackoff(max_retries=10, base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= strategy.next_delay(0) <= 5.0

    def test_no_retry(self):
        assert NoRetry().should_retry(0) is False
        assert NoRetry().next_delay(0) == 0.0


class TestRetryContext:
    @pytest.mark.parametrize("bound", [0, 1, 3])
    def test_bound_permits_n_plus_one_attempts(self, bound):
        """A bound of n allows the first attempt plus n retries, never more."""
        sleeps: list[float] = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=bound, jitter=False), sleep=sleeps.append
        )
        call = _flaky(failures=100)

        with pytest.raises(ChannelUnreachable):
            ctx.run(call)

        assert call.calls["n"] == bound + 1
        assert ctx.attempts == bound + 1
        assert ctx.exhausted is True
        assert len(sleeps) == bound

    def test_succeeds_within_bound(self):
        sleeps: list[float] = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=3, base_delay=1.0, jitter=False), sleep=sleeps.append
        )

        assert ctx.run(_flaky(failures=2)) == "ok"
        assert ctx.attempts == 3
        assert ctx.exhausted is False
        assert sleeps == [1.0, 2.0]

    def test_non_retryable_error_raises_immediately(self):
        sleeps: list[float] = []
        ctx = RetryContext(ExponentialBackoff(max_retries=5), sleep=sleeps.append)
        call = _flaky(failures=1, error_factory=lambda: BuildFailure("bad recipe"))

        with pytest.raises(BuildFailure):
            ctx.run(call)

        assert ctx.attempts == 1
        assert ctx.exhausted is False
        assert sleeps == []

    def test_foreign_exceptions_are_not_retried(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=5), sleep=lambda s: None)
        with pytest.raises(KeyError):
            ctx.run(_flaky(failures=1, error_factory=lambda: KeyError("x")))
        assert ctx.attempts == 1

    def test_on_retry_hook(self):
        seen = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=2, jitter=False),
            on_retry=lambda attempt, err, delay: seen.append((attempt, type(err).__name__, delay)),
            sleep=lambda s: None,
        )
        ctx.run(_flaky(failures=2))
        assert seen == [(1, "ChannelUnreachable", 1.0), (2, "ChannelUnreachable", 2.0)]
