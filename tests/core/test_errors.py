"""Tests for the release-spine error taxonomy."""

import pytest

from release_spine.core.errors import (
    BuildFailure,
    ChannelUnreachable,
    ErrorCategory,
    HealthRejected,
    ProvisioningTimeout,
    QuotaExceeded,
    RegistryAuthFailure,
    RegistryTransientFailure,
    ReleaseError,
    ReplaceFailure,
    RunCancelled,
    StageCrashed,
    StageExhausted,
    TargetBusy,
    categorize_error,
    is_retryable,
)


class TestCategories:
    """Each error class carries its taxonomy category and retry flag."""

    @pytest.mark.parametrize(
        "error_cls",
        [BuildFailure, RegistryAuthFailure, QuotaExceeded, TargetBusy],
    )
    def test_fatal_configuration(self, error_cls):
        err = error_cls("boom")
        assert err.category == ErrorCategory.FATAL_CONFIG
        assert err.retryable is False

    @pytest.mark.parametrize(
        "error_cls",
        [RegistryTransientFailure, ChannelUnreachable, ProvisioningTimeout],
    )
    def test_transient_network(self, error_cls):
        err = error_cls("flaky")
        assert err.category == ErrorCategory.TRANSIENT_NETWORK
        assert err.retryable is True

    def test_replace_failure_is_fatal_runtime(self):
        err = ReplaceFailure("start failed")
        assert err.category == ErrorCategory.FATAL_RUNTIME
        assert not err.retryable

    def test_auth_and_transient_registry_errors_are_distinct(self):
        """Operators must be able to tell 'rotate credentials' from 're-run'."""
        assert not issubclass(RegistryAuthFailure, RegistryTransientFailure)
        assert not issubclass(RegistryTransientFailure, RegistryAuthFailure)

    def test_retryable_can_be_overridden(self):
        err = RegistryTransientFailure("x", retryable=False)
        assert not is_retryable(err)


class TestCauseCodes:
    """The run-level cause code reported for each error."""

    def test_default_is_class_name(self):
        assert BuildFailure("x").cause_code == "BuildFailure"

    def test_health_rejected(self):
        assert HealthRejected("never healthy").cause_code == "Health-Rejected"

    def test_cancelled(self):
        assert RunCancelled("stop").cause_code == "Cancelled"

    def test_exhausted_wraps_original(self):
        original = RegistryTransientFailure("push timed out", stage="build")
        exhausted = StageExhausted.from_error(original, attempts=4)

        assert exhausted.cause_code == "RegistryTransientFailure-exhausted"
        assert exhausted.category == ErrorCategory.FATAL_RUNTIME
        assert exhausted.retryable is False
        assert exhausted.original is original
        assert exhausted.attempts == 4
        assert exhausted.__cause__ is original
        assert exhausted.stage == "build"
        assert "4 attempt" in exhausted.message


class TestContext:
    """Structured context and serialization."""

    def test_with_context_sets_known_fields_and_metadata(self):
        err = ReplaceFailure("failed").with_context(
            stage="deploy", target="web", host="10.0.0.5", restored=True
        )
        assert err.stage == "deploy"
        assert err.context.target == "web"
        assert err.context.metadata == {"restored": True}

    def test_to_dict(self):
        cause = OSError("disk full")
        err = StageCrashed("crashed", stage="build", cause=cause).with_context(run_id="r1")
        data = err.to_dict()

        assert data["error_type"] == "StageCrashed"
        assert data["category"] == "FATAL_RUNTIME"
        assert data["retryable"] is False
        assert data["stage"] == "build"
        assert data["context"]["run_id"] == "r1"
        assert data["cause"] == "OSError: disk full"

    def test_repr(self):
        assert repr(TargetBusy("busy")) == "TargetBusy('busy', category=FATAL_CONFIG)"


class TestHelpers:
    def test_foreign_exceptions_are_fatal_runtime(self):
        assert categorize_error(ValueError("x")) == ErrorCategory.FATAL_RUNTIME
        assert is_retryable(ValueError("x")) is False

    def test_release_error_category(self):
        assert categorize_error(ChannelUnreachable("x")) == ErrorCategory.TRANSIENT_NETWORK

    def test_base_error_defaults(self):
        err = ReleaseError("plain")
        assert err.category == ErrorCategory.FATAL_RUNTIME
        assert err.cause is None
