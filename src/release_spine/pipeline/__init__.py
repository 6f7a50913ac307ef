"""release-spine pipeline: tag, build ∥ provision, deploy, verify, clean up.

Key Concepts:
    tag(): Trigger → ArtifactRef. Pure and deterministic.
    ArtifactPublisher: ``docker build`` + idempotent ``docker push``.
    Provisioner: Converges one tagged VM to its DeclaredState through an
        InfraProvider. Never destroys anything.
    RemoteExecutor: Pull, rename-stop-start replace, rollback over SSH.
    HealthProber: Fixed-interval HTTP liveness polling with httpx.
    PipelineScheduler: Sequences the stages, owns retry/abort/cleanup
        decisions, and finalizes the PipelineRun verdict.

Architecture Decisions:
    - subprocess-only: ``docker`` and ``ssh`` CLIs, no docker-py/paramiko.
    - Stage outcomes are ``Ok``/``Err``; only the scheduler retries.
    - Build and Provision overlap on a two-worker thread pool; nothing
      else in a run is concurrent.
"""

from release_spine.pipeline.config import (
    BuildSpec,
    EnvConfig,
    PipelineConfig,
    ProbeConfig,
    StageRetryConfig,
    TargetConfig,
)
from release_spine.pipeline.models import (
    ArtifactRef,
    DeclaredState,
    DeploymentTarget,
    HealthVerdict,
    InfraPatch,
    InfraResource,
    PipelineRun,
    RunReport,
    RunState,
    StageName,
    StageStatus,
    Trigger,
    TriggerKind,
    Verdict,
)
from release_spine.pipeline.prober import HealthProber
from release_spine.pipeline.provisioner import (
    InMemoryInfraProvider,
    InfraProvider,
    Provisioner,
    StaticHostProvider,
    compute_patch,
)
from release_spine.pipeline.publisher import ArtifactPublisher, PublishOutcome
from release_spine.pipeline.remote import RemoteChannel, RemoteExecutor, SSHChannel
from release_spine.pipeline.scheduler import PipelineScheduler
from release_spine.pipeline.tagger import tag

__all__ = [
    "ArtifactPublisher",
    "ArtifactRef",
    "BuildSpec",
    "DeclaredState",
    "DeploymentTarget",
    "EnvConfig",
    "HealthProber",
    "HealthVerdict",
    "InMemoryInfraProvider",
    "InfraPatch",
    "InfraProvider",
    "InfraResource",
    "PipelineConfig",
    "PipelineRun",
    "PipelineScheduler",
    "ProbeConfig",
    "Provisioner",
    "PublishOutcome",
    "RemoteChannel",
    "RemoteExecutor",
    "RunReport",
    "RunState",
    "SSHChannel",
    "StageName",
    "StageRetryConfig",
    "StageStatus",
    "StaticHostProvider",
    "TargetConfig",
    "Trigger",
    "TriggerKind",
    "Verdict",
    "compute_patch",
    "tag",
]
