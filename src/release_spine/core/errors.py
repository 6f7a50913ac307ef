"""
Structured error types for release-spine.

Every failure a pipeline stage can produce is a ``ReleaseError`` subclass
carrying its taxonomy class, retry semantics, the stage that raised it, and
structured context for logging and the run report.

Manifesto:
    - **Typed taxonomy:** Fatal-Configuration, Transient-Network,
      Fatal-Runtime, Health-Rejected. The category decides what the
      scheduler does next, not the message text.
    - **Explicit retry semantics:** Each error type knows if it may be
      retried. Only the scheduler acts on that flag.
    - **No secrets:** Context carries identifiers (stage, image, host),
      never credential values.
    - **Error chaining:** The underlying exception is kept as ``cause``.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        ReleaseError                           │
        │        (category, retryable, stage, context, cause)          │
        ├──────────────────────────────────────────────────────────────┤
        │  FATAL_CONFIG            TRANSIENT_NETWORK                    │
        │  BuildFailure            RegistryTransientFailure             │
        │  RegistryAuthFailure     ChannelUnreachable                   │
        │  RemoteAuthFailure       ProvisioningTimeout                  │
        │  QuotaExceeded                                                │
        │  PermissionDenied        FATAL_RUNTIME                        │
        │  InvalidConfigError      ReplaceFailure                       │
        │  TargetBusy              StageExhausted / StageCrashed        │
        │                                                               │
        │  HEALTH_REJECTED         CANCELLED                            │
        │  HealthRejected          RunCancelled                         │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = RegistryTransientFailure("push timed out")
    >>> err.retryable
    True
    >>> err.category.value
    'TRANSIENT_NETWORK'

    >>> exhausted = StageExhausted.from_error(err, attempts=4)
    >>> exhausted.cause_code
    'RegistryTransientFailure-exhausted'

Tags:
    error-handling, exception-hierarchy, retry-logic, release-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error taxonomy used for retry and cleanup decisions."""

    FATAL_CONFIG = "FATAL_CONFIG"  # bad recipe, bad credentials, quota/permission
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"  # push timeout, channel unreachable
    FATAL_RUNTIME = "FATAL_RUNTIME"  # replace failure, retries exhausted
    HEALTH_REJECTED = "HEALTH_REJECTED"  # deployed but never became healthy
    CANCELLED = "CANCELLED"  # external cancellation


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only identifiers belong here. Credential values must never be stored.
    """

    run_id: str | None = None
    stage: str | None = None
    target: str | None = None
    image: str | None = None
    host: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "stage", "target", "image", "host"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ReleaseError(Exception):
    """
    Base exception for all release-spine errors.

    Subclasses set ``default_category`` and ``default_retryable``; both may
    be overridden per instance.

    Attributes:
        message: Human-readable description (no secret material)
        category: ErrorCategory for the scheduler's retry/abort decision
        retryable: Whether the owning stage may attempt again
        stage: Name of the stage that raised the error, when known
        context: ErrorContext with identifiers for logging
        cause: Underlying exception, also chained as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.FATAL_RUNTIME
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        stage: str | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.stage = stage
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def error_class(self) -> str:
        """Short class name reported per stage in the run report."""
        return type(self).__name__

    @property
    def cause_code(self) -> str:
        """Structured cause reported when a run fails on this error."""
        return self.error_class

    def with_context(self, **kwargs: Any) -> ReleaseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ReplaceFailure("start failed").with_context(
                target="web", image="registry/app:abc1234"
            )
        """
        for key, value in kwargs.items():
            if key == "stage":
                self.stage = value
                self.context.stage = value
            elif hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.error_class,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.stage:
            result["stage"] = self.stage
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# FATAL-CONFIGURATION (never retried)
# =============================================================================


class ConfigurationError(ReleaseError):
    """Base for errors an operator must fix before re-triggering."""

    default_category = ErrorCategory.FATAL_CONFIG
    default_retryable = False


class BuildFailure(ConfigurationError):
    """Build recipe invalid or a build step exited non-zero."""


class RegistryAuthFailure(ConfigurationError):
    """Registry rejected the publisher's credentials.

    Kept distinct from transient failures so operators rotate credentials
    instead of re-triggering the run.
    """


class RemoteAuthFailure(ConfigurationError):
    """Registry login on the remote host was rejected."""


class QuotaExceeded(ConfigurationError):
    """Cloud provider refused to create a resource because of quota."""


class PermissionDenied(ConfigurationError):
    """Cloud provider (or a static provider) refused the operation."""


class InvalidConfigError(ConfigurationError):
    """Pipeline configuration is missing or malformed."""


class TargetBusy(ConfigurationError):
    """Another run holds the deployment target and the lock wait expired."""


class MissingCredentialError(ConfigurationError):
    """A required credential could not be resolved."""


# =============================================================================
# TRANSIENT-NETWORK (retried with bounded backoff)
# =============================================================================


class TransientError(ReleaseError):
    """Base for retryable network-class failures."""

    default_category = ErrorCategory.TRANSIENT_NETWORK
    default_retryable = True


class RegistryTransientFailure(TransientError):
    """Registry push failed with a network error, timeout, or rate limit."""


class ChannelUnreachable(TransientError):
    """Management channel (SSH) to the resource is not accepting sessions."""


class ProvisioningTimeout(TransientError):
    """Resource never reached a ready state within the provisioning bound."""


# =============================================================================
# FATAL-RUNTIME
# =============================================================================


class ReplaceFailure(ReleaseError):
    """Old instance could not be stopped or the new one could not start."""

    default_category = ErrorCategory.FATAL_RUNTIME
    default_retryable = False


class StageCrashed(ReleaseError):
    """A stage raised an exception outside the release-spine taxonomy."""

    default_category = ErrorCategory.FATAL_RUNTIME
    default_retryable = False


class StageExhausted(ReleaseError):
    """A retryable error persisted past the stage's retry bound.

    The original error is kept as ``cause`` and ``original``; the run
    cause becomes ``<OriginalClass>-exhausted``.
    """

    default_category = ErrorCategory.FATAL_RUNTIME
    default_retryable = False

    def __init__(self, message: str, *, original: ReleaseError, attempts: int, **kwargs: Any):
        super().__init__(message, cause=original, stage=original.stage, **kwargs)
        self.original = original
        self.attempts = attempts

    @classmethod
    def from_error(cls, error: ReleaseError, attempts: int) -> StageExhausted:
        return cls(
            f"{error.error_class} persisted after {attempts} attempt(s): {error.message}",
            original=error,
            attempts=attempts,
        )

    @property
    def cause_code(self) -> str:
        return f"{self.original.error_class}-exhausted"


# =============================================================================
# HEALTH-REJECTED / CANCELLED
# =============================================================================


class HealthRejected(ReleaseError):
    """Deployment succeeded mechanically but liveness was never confirmed."""

    default_category = ErrorCategory.HEALTH_REJECTED
    default_retryable = False

    @property
    def cause_code(self) -> str:
        return "Health-Rejected"


class RunCancelled(ReleaseError):
    """The run was cancelled externally and stopped at a stage boundary."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False

    @property
    def cause_code(self) -> str:
        return "Cancelled"


# =============================================================================
# Scheduler bookkeeping
# =============================================================================


class InvalidTransitionError(ReleaseError):
    """A PipelineRun was asked to move to a state its machine forbids."""


class RunFinalizedError(ReleaseError):
    """A finalized PipelineRun was mutated."""


# =============================================================================
# Helpers
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may be retried by its stage."""
    if isinstance(error, ReleaseError):
        return error.retryable
    return False


def categorize_error(error: BaseException) -> ErrorCategory:
    """Return the taxonomy class of any exception.

    Foreign exceptions are treated as Fatal-Runtime.
    """
    if isinstance(error, ReleaseError):
        return error.category
    return ErrorCategory.FATAL_RUNTIME


__all__ = [
    "BuildFailure",
    "ChannelUnreachable",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorContext",
    "HealthRejected",
    "InvalidConfigError",
    "InvalidTransitionError",
    "MissingCredentialError",
    "PermissionDenied",
    "ProvisioningTimeout",
    "QuotaExceeded",
    "RegistryAuthFailure",
    "RegistryTransientFailure",
    "ReleaseError",
    "RemoteAuthFailure",
    "ReplaceFailure",
    "RunCancelled",
    "RunFinalizedError",
    "StageCrashed",
    "StageExhausted",
    "TargetBusy",
    "TransientError",
    "categorize_error",
    "is_retryable",
]
