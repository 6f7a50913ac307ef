"""Tests for cooperative cancellation."""

import pytest

from release_spine.core.errors import RunCancelled
from release_spine.execution.cancellation import CancellationToken


class TestCancellationToken:
    def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled_carries_stage(self):
        token = CancellationToken()
        token.cancel("operator")
        with pytest.raises(RunCancelled) as exc_info:
            token.raise_if_cancelled(stage="deploy")
        assert exc_info.value.stage == "deploy"
        assert exc_info.value.cause_code == "Cancelled"

    def test_sleep_returns_when_not_cancelled(self):
        CancellationToken().sleep(0)

    def test_sleep_raises_when_cancelled(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RunCancelled):
            token.sleep(10)
