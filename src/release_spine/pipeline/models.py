"""Data model for release-spine pipeline runs.

Pydantic v2 models for everything that flows between stages: the trigger,
the artifact coordinate, infrastructure state, the deployment target,
health verdicts, and the :class:`PipelineRun` that the scheduler owns.

Key Concepts:
    Trigger: The event that started a run (push, tag, manual).
    ArtifactRef: Registry coordinate ``repository:tag``. Frozen; computed
        once per run.
    StageResult: Per-stage status, attempt count and last error class.
    PipelineRun: One execution. Mutated only by the scheduler through its
        ``start_stage`` / ``fail_stage`` / ... methods; frozen once
        ``finalize()`` has been called.
    DeclaredState / InfraResource / InfraPatch: desired VM state,
        observed VM state, and the minimal difference between them.
    DeploymentTarget: An InfraResource plus the ArtifactRef currently
        running on it.
    HealthVerdict: Ephemeral outcome of one liveness polling loop.

Architecture Decisions:
    - ``ArtifactRef`` and ``Trigger`` are frozen so a retried stage can
      never observe a different tag than the first attempt did.
    - State transitions are whitelisted in ``RUN_TRANSITIONS``; an illegal
      move raises rather than silently corrupting the run.

Tags:
    models, pydantic, pipeline, state-machine, release-spine
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from release_spine.core.errors import InvalidTransitionError, ReleaseError, RunFinalizedError

_HEX_REVISION = re.compile(r"^[0-9a-f]{7,64}$")

TAG_NAMESPACE_KEY = "release-spine/pipeline"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _elapsed(started_at: str | None, completed_at: str | None) -> float:
    if not started_at or not completed_at:
        return 0.0
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(completed_at)
    return (end - start).total_seconds()


# ---------------------------------------------------------------------------
# Trigger / artifact
# ---------------------------------------------------------------------------


class TriggerKind(str, Enum):
    """What started a pipeline run."""

    PUSH = "push"
    TAG = "tag"
    MANUAL = "manual"


class Trigger(BaseModel):
    """An event record ``{kind, revision, ref_name}``."""

    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    revision: str
    ref_name: str = ""

    @field_validator("revision")
    @classmethod
    def _check_revision(cls, value: str) -> str:
        value = value.strip().lower()
        if not _HEX_REVISION.match(value):
            raise ValueError(f"revision must be a hex commit hash of 7-64 chars, got {value!r}")
        return value


class ArtifactRef(BaseModel):
    """Registry coordinate ``(repository, tag)``."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.image


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class StageName(str, Enum):
    """Stages of a pipeline run, in dependency order."""

    TAG = "tag"
    BUILD = "build"
    PROVISION = "provision"
    DEPLOY = "deploy"
    VERIFY = "verify"
    CLEANUP = "cleanup"


REQUIRED_STAGES: tuple[StageName, ...] = (
    StageName.TAG,
    StageName.BUILD,
    StageName.PROVISION,
    StageName.DEPLOY,
    StageName.VERIFY,
)


class StageStatus(str, Enum):
    """Lifecycle of a single stage."""

    NOT_RUN = "not-run"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"  # an attempt failed, another one is pending


class StageResult(BaseModel):
    """Outcome of one stage within one run."""

    stage: StageName
    status: StageStatus = StageStatus.NOT_RUN
    attempts: int = 0
    error_class: str | None = None
    error_detail: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    def _record_error(self, error: BaseException) -> None:
        if isinstance(error, ReleaseError):
            self.error_class = error.cause_code
            self.error_detail = error.message
        else:
            self.error_class = type(error).__name__
            self.error_detail = str(error)

    def _complete(self, status: StageStatus) -> None:
        self.status = status
        self.completed_at = _now()
        self.duration_seconds = _elapsed(self.started_at, self.completed_at)


# ---------------------------------------------------------------------------
# Run state machine
# ---------------------------------------------------------------------------


class RunState(str, Enum):
    """Scheduler state of a PipelineRun."""

    PENDING = "Pending"
    BUILDING = "Building"
    PROVISIONING = "Provisioning"
    DEPLOYING = "Deploying"
    VERIFYING = "Verifying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED)


RUN_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.BUILDING, RunState.FAILED}),
    RunState.BUILDING: frozenset({RunState.PROVISIONING, RunState.FAILED}),
    RunState.PROVISIONING: frozenset({RunState.DEPLOYING, RunState.FAILED}),
    RunState.DEPLOYING: frozenset({RunState.VERIFYING, RunState.FAILED}),
    RunState.VERIFYING: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
}


class Verdict(str, Enum):
    """Overall verdict of a run."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PipelineRun(BaseModel):
    """One execution of the pipeline.

    Created at trigger receipt, mutated only by the scheduler, immutable
    once the verdict is finalized.
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    pipeline: str
    trigger: Trigger
    artifact: ArtifactRef | None = None
    stages: list[StageResult] = Field(
        default_factory=lambda: [StageResult(stage=name) for name in StageName]
    )
    state: RunState = RunState.PENDING
    verdict: Verdict = Verdict.PENDING
    cause: str | None = None
    cause_detail: str | None = None
    cancelled: bool = False
    target: str | None = None
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0

    _finalized: bool = PrivateAttr(default=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and getattr(self, "_finalized", False):
            raise RunFinalizedError(f"run {self.run_id} is finalized; cannot set {name}")
        super().__setattr__(name, value)

    @property
    def finalized(self) -> bool:
        return self._finalized

    # -- stage bookkeeping ---------------------------------------------------

    def stage(self, name: StageName) -> StageResult:
        for result in self.stages:
            if result.stage == name:
                return result
        raise KeyError(name)

    def _mutable_stage(self, name: StageName) -> StageResult:
        self._guard()
        return self.stage(name)

    def start_stage(self, name: StageName) -> None:
        result = self._mutable_stage(name)
        if result.started_at is None:
            result.started_at = _now()
        result.status = StageStatus.RUNNING
        result.attempts += 1

    def retry_stage(self, name: StageName, error: BaseException) -> None:
        result = self._mutable_stage(name)
        result.status = StageStatus.RETRIED
        result._record_error(error)

    def succeed_stage(self, name: StageName) -> None:
        self._mutable_stage(name)._complete(StageStatus.SUCCEEDED)

    def fail_stage(self, name: StageName, error: BaseException) -> None:
        result = self._mutable_stage(name)
        result._record_error(error)
        result._complete(StageStatus.FAILED)

    @property
    def required_stages_succeeded(self) -> bool:
        return all(self.stage(name).succeeded for name in REQUIRED_STAGES)

    # -- state machine -------------------------------------------------------

    def transition(self, new_state: RunState) -> None:
        """Move to ``new_state`` if the state machine allows it."""
        self._guard()
        if new_state == self.state:
            return
        if new_state not in RUN_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"run {self.run_id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def finalize(self, *, cause: str | None = None, cause_detail: str | None = None) -> None:
        """Fix the verdict and freeze the run.

        The verdict is success only when every required stage succeeded
        (Verify included) and no failure cause was given.
        """
        self._guard()
        if cause is None and self.required_stages_succeeded:
            self.transition(RunState.SUCCEEDED)
            self.verdict = Verdict.SUCCESS
        else:
            if self.state != RunState.FAILED:
                self.transition(RunState.FAILED)
            self.verdict = Verdict.FAILED
            self.cause = cause or "IncompleteRun"
            self.cause_detail = cause_detail
        self.completed_at = _now()
        self.duration_seconds = _elapsed(self.started_at, self.completed_at)
        self._finalized = True

    def _guard(self) -> None:
        if self._finalized:
            raise RunFinalizedError(f"run {self.run_id} is finalized")


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


def _normalize_ports(ports: list[int]) -> list[int]:
    for port in ports:
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
    return sorted(set(ports))


class DeclaredState(BaseModel):
    """Desired state of the pipeline's compute resource."""

    model_config = ConfigDict(frozen=True)

    name: str
    instance_class: str = "e2-small"
    ports: list[int] = Field(default_factory=lambda: [22, 80])
    runtime: str = "docker"
    machine_image: str = "ubuntu-2204-lts"
    zone: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, value: list[int]) -> list[int]:
        return _normalize_ports(value)

    @property
    def tag_namespace(self) -> dict[str, str]:
        """Tags that mark a resource as owned by this pipeline."""
        return {**self.tags, TAG_NAMESPACE_KEY: self.name}


class InfraPatch(BaseModel):
    """Minimal change that converges an observed resource to its declaration."""

    open_ports: list[int] = Field(default_factory=list)
    instance_class: str | None = None
    install_runtime: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.open_ports and self.instance_class is None and not self.install_runtime

    def describe(self) -> str:
        if self.is_empty:
            return "no changes"
        parts = []
        if self.open_ports:
            parts.append(f"open ports {', '.join(map(str, self.open_ports))}")
        if self.instance_class:
            parts.append(f"resize to {self.instance_class}")
        if self.install_runtime:
            parts.append("install runtime")
        return "; ".join(parts)


class InfraResource(BaseModel):
    """A provisioned compute target as observed from the provider."""

    resource_id: str
    address: str | None = None
    instance_class: str
    open_ports: list[int] = Field(default_factory=list)
    runtime_installed: bool = False
    tags: dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now)

    @field_validator("open_ports")
    @classmethod
    def _check_ports(cls, value: list[int]) -> list[int]:
        return _normalize_ports(value)

    @property
    def ready(self) -> bool:
        """Reachable address assigned and runtime installed."""
        return bool(self.address) and self.runtime_installed

    def owned_by(self, declared: DeclaredState) -> bool:
        return self.tags.get(TAG_NAMESPACE_KEY) == declared.name

    def satisfies(self, declared: DeclaredState) -> bool:
        from release_spine.pipeline.provisioner import compute_patch

        return compute_patch(declared, self).is_empty


# ---------------------------------------------------------------------------
# Deployment / health
# ---------------------------------------------------------------------------


class DeploymentTarget(BaseModel):
    """An InfraResource bound to the ArtifactRef currently running on it.

    ``replaced`` is False when the last deploy found the artifact already
    serving with the same env and changed nothing on the host. Rollback
    leaves such a target untouched.
    """

    name: str
    resource: InfraResource
    container_name: str
    current: ArtifactRef | None = None
    previous: ArtifactRef | None = None
    standby_container: str | None = None
    standby_was_running: bool = True
    replaced: bool = False
    updated_at: str = Field(default_factory=_now)

    @property
    def address(self) -> str | None:
        return self.resource.address


class HealthVerdict(BaseModel):
    """Outcome of one liveness polling loop."""

    model_config = ConfigDict(frozen=True)

    target: str
    endpoint: str
    healthy: bool
    attempts: int
    last_error: str | None = None


# ---------------------------------------------------------------------------
# Exit surface
# ---------------------------------------------------------------------------


class StageReport(BaseModel):
    stage: StageName
    status: StageStatus
    attempts: int
    error_class: str | None = None


class RunReport(BaseModel):
    """What the surrounding automation consumes after a run."""

    run_id: str
    pipeline: str
    verdict: Verdict
    state: RunState
    cause: str | None = None
    cause_detail: str | None = None
    artifact: str | None = None
    target: str | None = None
    revision: str
    trigger: TriggerKind
    started_at: str
    completed_at: str | None = None
    duration_seconds: float = 0.0
    stages: list[StageReport] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: PipelineRun) -> RunReport:
        return cls(
            run_id=run.run_id,
            pipeline=run.pipeline,
            verdict=run.verdict,
            state=run.state,
            cause=run.cause,
            cause_detail=run.cause_detail,
            artifact=run.artifact.image if run.artifact else None,
            target=run.target,
            revision=run.trigger.revision,
            trigger=run.trigger.kind,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            stages=[
                StageReport(
                    stage=s.stage,
                    status=s.status,
                    attempts=s.attempts,
                    error_class=s.error_class,
                )
                for s in run.stages
            ],
        )


__all__ = [
    "REQUIRED_STAGES",
    "RUN_TRANSITIONS",
    "TAG_NAMESPACE_KEY",
    "ArtifactRef",
    "DeclaredState",
    "DeploymentTarget",
    "HealthVerdict",
    "InfraPatch",
    "InfraResource",
    "PipelineRun",
    "RunReport",
    "RunState",
    "StageName",
    "StageReport",
    "StageResult",
    "StageStatus",
    "Trigger",
    "TriggerKind",
    "Verdict",
]
