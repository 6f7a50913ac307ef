"""Pipeline scheduler: the only place that decides retry, abort and cleanup.

Sequences one run of the release train::

    Tag ──► ┌ Build ────┐ ──► [target lock] Deploy ──► Verify ──► Succeeded
            └ Provision ┘                      │          │
                                               └──────────┴──► Cleanup ──► Failed

Manifesto:
    - Stages return ``Ok``/``Err``; they never retry themselves.
    - A retryable error is retried in place up to the stage's bound ``n``
      (at most ``n + 1`` attempts). When the bound is spent the error is
      promoted to ``StageExhausted`` and the run fails with cause
      ``<ErrorClass>-exhausted``.
    - Deploy starts only when both Build and Provision succeeded.
    - Verify is never skipped. An unhealthy verdict fails the run with
      cause ``Health-Rejected`` and rolls back to the previous instance.
    - Cleanup is best effort. Its failure is logged and recorded on the
      cleanup stage; it never replaces the original cause.
    - Deploy, Verify and Cleanup run under the deployment target lock, so
      two runs never interleave a partial deploy on the same target.
    - Cancellation is honoured at stage boundaries. A replace that has
      started always finishes first.

Tags:
    scheduler, orchestration, retry, cleanup, state-machine, release-spine
"""

from __future__ import annotations

import contextvars
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import ExitStack
from pathlib import Path
from typing import Any, TypeVar

from release_spine.core.errors import (
    HealthRejected,
    InvalidConfigError,
    ReleaseError,
    RunCancelled,
    StageCrashed,
    StageExhausted,
    TargetBusy,
)
from release_spine.core.logging import LogContext, get_logger
from release_spine.core.result import Err, Ok, Result
from release_spine.core.secrets import SecretsResolver
from release_spine.core.settings import ReleaseSettings, get_settings
from release_spine.execution.cancellation import CancellationToken
from release_spine.execution.locks import TargetLockManager
from release_spine.execution.retry import NoRetry, RetryContext, RetryStrategy
from release_spine.pipeline.config import PipelineConfig
from release_spine.pipeline.docker import DockerCLI
from release_spine.pipeline.models import (
    ArtifactRef,
    DeploymentTarget,
    HealthVerdict,
    InfraResource,
    PipelineRun,
    RunReport,
    RunState,
    StageName,
    Trigger,
)
from release_spine.pipeline.prober import HealthProber
from release_spine.pipeline.provisioner import (
    InfraProvider,
    InMemoryInfraProvider,
    Provisioner,
    StaticHostProvider,
)
from release_spine.pipeline.publisher import ArtifactPublisher
from release_spine.pipeline.remote import RemoteExecutor, ssh_channel_factory
from release_spine.pipeline.report import ReportWriter, TargetStateStore
from release_spine.pipeline.tagger import tag

logger = get_logger(__name__)

T = TypeVar("T")


def build_provider(config: PipelineConfig) -> InfraProvider:
    """Instantiate the provider selected in ``config.provider``."""
    provider = config.provider
    if provider.kind == "memory":
        return InMemoryInfraProvider()
    if not provider.host:
        raise InvalidConfigError("provider.kind=static requires provider.host")
    return StaticHostProvider(
        provider.host,
        config.infra,
        resource_id=provider.resource_id,
        runtime_installed=provider.runtime_installed,
    )


class PipelineScheduler:
    """Runs triggers through the pipeline.

    Parameters
    ----------
    config
        The pipeline configuration.
    publisher, provisioner, executor, prober
        Stage components. :meth:`from_config` wires the real ones.
    locks
        Deployment target lock manager.
    reports
        Writes a summary per run when given.
    settings
        Process settings (lock timeout).
    sleep
        Wait between retries. Defaults to a cancellation-aware sleep.
    lock_poll_interval
        Seconds between attempts to take a busy target lock.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        publisher: ArtifactPublisher,
        provisioner: Provisioner,
        executor: RemoteExecutor,
        prober: HealthProber,
        locks: TargetLockManager,
        reports: ReportWriter | None = None,
        settings: ReleaseSettings | None = None,
        sleep: Callable[[float], None] | None = None,
        lock_poll_interval: float = 1.0,
    ) -> None:
        self.config = config
        self.publisher = publisher
        self.provisioner = provisioner
        self.executor = executor
        self.prober = prober
        self.locks = locks
        self.reports = reports
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.lock_poll_interval = lock_poll_interval

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        settings: ReleaseSettings | None = None,
        *,
        resolver: SecretsResolver | None = None,
        provider: InfraProvider | None = None,
    ) -> PipelineScheduler:
        """Wire the default subprocess/ssh/httpx components for ``config``."""
        settings = settings or get_settings()
        resolver = resolver or SecretsResolver()
        state_dir = Path(settings.state_dir)
        provider = provider or build_provider(config)

        return cls(
            config,
            publisher=ArtifactPublisher(
                DockerCLI(),
                resolver,
                config.credentials,
                registry=config.registry_host,
            ),
            provisioner=Provisioner(
                provider,
                ready_timeout=config.provider.ready_timeout_seconds,
                poll_interval=config.provider.poll_interval_seconds,
            ),
            executor=RemoteExecutor(
                config.target,
                ssh_channel_factory(config.ssh),
                TargetStateStore(state_dir),
                resolver=resolver,
                credentials=config.credentials,
                registry=config.registry_host,
                command_timeout=config.ssh.command_timeout,
            ),
            prober=HealthProber(timeout=config.probe.timeout_seconds),
            locks=TargetLockManager(state_dir / "locks.db"),
            reports=ReportWriter(settings.report_dir),
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, trigger: Trigger, cancel: CancellationToken | None = None) -> PipelineRun:
        """Execute one pipeline run and return the finalized record."""
        cancel = cancel or CancellationToken()
        run = PipelineRun(
            pipeline=self.config.name,
            trigger=trigger,
            target=self.config.target.name,
        )

        with LogContext(run_id=run.run_id, pipeline=self.config.name):
            logger.info(
                "run.started",
                trigger=trigger.kind.value,
                revision=trigger.revision,
                ref=trigger.ref_name or None,
            )
            failure: ReleaseError | None = None
            try:
                self._execute(run, cancel)
            except ReleaseError as exc:
                failure = exc
            except Exception as exc:
                failure = StageCrashed(f"scheduler crashed: {type(exc).__name__}: {exc}", cause=exc)
                logger.exception("run.crashed")

            if failure is None:
                run.finalize()
            else:
                run.cancelled = isinstance(failure, RunCancelled)
                run.finalize(cause=failure.cause_code, cause_detail=failure.message)

            logger.info(
                "run.finished",
                verdict=run.verdict.value,
                cause=run.cause,
                artifact=str(run.artifact) if run.artifact else None,
                duration_seconds=round(run.duration_seconds, 3),
            )
            self._write_report(run)
        return run

    def _execute(self, run: PipelineRun, cancel: CancellationToken) -> None:
        cancel.raise_if_cancelled(StageName.TAG.value)
        run.artifact = self._stage(
            run,
            StageName.TAG,
            lambda: Ok(tag(run.trigger, self.config.repository)),
            NoRetry(),
            cancel,
        )

        cancel.raise_if_cancelled(StageName.BUILD.value)
        resource = self._build_and_provision(run, run.artifact, cancel)

        with ExitStack() as stack:
            try:
                stack.enter_context(
                    self.locks.hold(
                        self.config.target.name,
                        run.run_id,
                        timeout=self.settings.lock_timeout_seconds,
                        poll_interval=self.lock_poll_interval,
                        cancel=cancel,
                    )
                )
            except TargetBusy as exc:
                run.start_stage(StageName.DEPLOY)
                run.fail_stage(StageName.DEPLOY, exc)
                raise
            self._deploy_and_verify(run, run.artifact, resource, cancel)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _build_and_provision(
        self, run: PipelineRun, artifact: ArtifactRef, cancel: CancellationToken
    ) -> InfraResource:
        run.transition(RunState.BUILDING)
        retries = self.config.retries

        def build() -> Any:
            return self._stage(
                run,
                StageName.BUILD,
                lambda: self.publisher.publish(self.config.build, artifact),
                retries.build.strategy(),
                cancel,
            )

        def provision() -> InfraResource:
            return self._stage(
                run,
                StageName.PROVISION,
                lambda: self.provisioner.converge(self.config.infra),
                retries.provision.strategy(),
                cancel,
            )

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="release-spine") as pool:
            build_future = pool.submit(contextvars.copy_context().run, build)
            provision_future = pool.submit(contextvars.copy_context().run, provision)

            build_error = _wait(build_future)
            if build_error is None:
                run.transition(RunState.PROVISIONING)
            provision_error = _wait(provision_future)

        if build_error is not None:
            if provision_error is not None:
                logger.warning(
                    "stage.failed_concurrently",
                    stage=StageName.PROVISION.value,
                    error_class=_error_class(provision_error),
                )
            raise _as_release_error(build_error, StageName.BUILD)
        if provision_error is not None:
            raise _as_release_error(provision_error, StageName.PROVISION)
        return provision_future.result()

    def _deploy_and_verify(
        self,
        run: PipelineRun,
        artifact: ArtifactRef,
        resource: InfraResource,
        cancel: CancellationToken,
    ) -> None:
        deployed: DeploymentTarget | None = None
        try:
            cancel.raise_if_cancelled(StageName.DEPLOY.value)
            run.transition(RunState.DEPLOYING)
            env = self.config.target.env_config()
            deployed = self._stage(
                run,
                StageName.DEPLOY,
                lambda: self.executor.deploy(resource, artifact, env, run_id=run.run_id),
                self.config.retries.deploy.strategy(),
                cancel,
            )

            cancel.raise_if_cancelled(StageName.VERIFY.value)
            run.transition(RunState.VERIFYING)
            target = deployed
            self._stage(run, StageName.VERIFY, lambda: self._verify(target), NoRetry(), cancel)
        except Exception:
            if deployed is not None:
                self._cleanup(run, deployed)
            raise

        finalized = self.executor.finalize(deployed)
        if isinstance(finalized, Err):
            logger.warning(
                "deploy.finalize_failed",
                target=deployed.name,
                error_class=_error_class(finalized.error),
            )

    def _verify(self, target: DeploymentTarget) -> Result[HealthVerdict]:
        if not target.address:
            return Err(HealthRejected(f"target {target.name} has no address", stage="verify"))
        probe = self.config.probe
        endpoint = self.config.target.endpoint(target.address)
        verdict = self.prober.probe(
            target.name,
            endpoint,
            max_attempts=probe.max_attempts,
            interval=probe.interval_seconds,
        )
        if verdict.healthy:
            return Ok(verdict)
        return Err(
            HealthRejected(
                f"{endpoint} not healthy after {verdict.attempts} attempt(s): {verdict.last_error}",
                stage="verify",
            ).with_context(target=target.name)
        )

    def _cleanup(self, run: PipelineRun, deployed: DeploymentTarget) -> None:
        run.start_stage(StageName.CLEANUP)
        logger.info("cleanup.started", target=deployed.name)
        try:
            result = self.executor.rollback(deployed)
        except Exception as exc:
            result = Err(StageCrashed(f"cleanup crashed: {type(exc).__name__}: {exc}", cause=exc))

        if isinstance(result, Ok):
            run.succeed_stage(StageName.CLEANUP)
            restored = result.value.current
            logger.info(
                "cleanup.rolled_back",
                target=deployed.name,
                restored=str(restored) if restored else None,
            )
        else:
            run.fail_stage(StageName.CLEANUP, result.error)
            logger.warning(
                "cleanup.failed",
                target=deployed.name,
                error_class=_error_class(result.error),
            )

    # ------------------------------------------------------------------
    # Retry driver
    # ------------------------------------------------------------------

    def _stage(
        self,
        run: PipelineRun,
        name: StageName,
        operation: Callable[[], Result[T]],
        strategy: RetryStrategy,
        cancel: CancellationToken,
    ) -> T:
        """Run one stage under ``strategy`` and record its StageResult."""
        stage = name.value

        def attempt() -> T:
            run.start_stage(name)
            logger.info("stage.started", stage=stage, attempt=run.stage(name).attempts)
            try:
                outcome = operation()
            except ReleaseError:
                raise
            except Exception as exc:
                raise StageCrashed(
                    f"{stage} crashed: {type(exc).__name__}: {exc}", stage=stage, cause=exc
                ) from exc
            match outcome:
                case Ok(value):
                    return value
                case Err(error):
                    raise _as_release_error(error, name)
            raise StageCrashed(f"{stage} returned {type(outcome).__name__}", stage=stage)

        def on_retry(attempt_no: int, error: Exception, delay: float) -> None:
            run.retry_stage(name, error)
            logger.warning(
                "stage.retry",
                stage=stage,
                attempt=attempt_no,
                delay=round(delay, 2),
                error_class=_error_class(error),
            )

        ctx = RetryContext(strategy, on_retry=on_retry, sleep=self._sleep or cancel.sleep)
        try:
            value = ctx.run(attempt)
        except ReleaseError as exc:
            error: ReleaseError = exc
            if ctx.exhausted:
                error = StageExhausted.from_error(exc, ctx.attempts)
            error.with_context(stage=stage, run_id=run.run_id)
            run.fail_stage(name, error)
            logger.error(
                "stage.failed",
                stage=stage,
                attempts=ctx.attempts,
                error_class=error.cause_code,
                category=error.category.value,
                error=error.to_dict(),
            )
            if error is exc:
                raise
            raise error from exc
        run.succeed_stage(name)
        logger.info("stage.succeeded", stage=stage, attempts=ctx.attempts)
        return value

    def _write_report(self, run: PipelineRun) -> None:
        if self.reports is None:
            return
        try:
            self.reports.write(RunReport.from_run(run))
        except OSError as exc:
            logger.error("report.write_failed", error=str(exc))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _wait(future: Future[Any]) -> BaseException | None:
    return future.exception()


def _error_class(error: BaseException) -> str:
    if isinstance(error, ReleaseError):
        return error.cause_code
    return type(error).__name__


def _as_release_error(error: BaseException, name: StageName) -> ReleaseError:
    if isinstance(error, ReleaseError):
        return error
    return StageCrashed(
        f"{name.value} crashed: {type(error).__name__}: {error}", stage=name.value, cause=error
    )


__all__ = ["PipelineScheduler", "build_provider"]
