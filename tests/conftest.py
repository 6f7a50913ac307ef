"""
Shared pytest fixtures for release-spine tests.

This module provides:
- A pipeline configuration with fast, jitter-free retries
- Isolated settings (state/report dirs under ``tmp_path``)
- ``pipeline_harness``: a PipelineScheduler wired to the fakes in
  ``tests/_support/fakes.py`` (no Docker, SSH or network)

Usage::

    def test_something(pipeline_harness):
        h = pipeline_harness()
        run = h.scheduler.run(h.trigger("abc1234"))
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

# Ensure the package and tests._support are importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from release_spine.core.logging import configure_logging
from release_spine.core.secrets import DictSecretBackend, SecretsResolver
from release_spine.core.settings import ReleaseSettings, reset_settings
from release_spine.execution.locks import TargetLockManager
from release_spine.pipeline.config import PipelineConfig
from release_spine.pipeline.docker import DockerCLI
from release_spine.pipeline.models import Trigger, TriggerKind
from release_spine.pipeline.prober import HealthProber
from release_spine.pipeline.provisioner import InMemoryInfraProvider, Provisioner
from release_spine.pipeline.publisher import ArtifactPublisher
from release_spine.pipeline.remote import RemoteExecutor
from release_spine.pipeline.report import ReportWriter, TargetStateStore
from release_spine.pipeline.scheduler import PipelineScheduler
from tests._support.builders import REGISTRY_PASSWORD, REPOSITORY, existing_resource, make_config
from tests._support.fakes import Container, FakeDockerRunner, FakeHost, HealthEndpoint, health_transport


@pytest.fixture(autouse=True)
def _structured_logging() -> None:
    # re-bind to the current stderr; capsys and CliRunner swap it per test
    configure_logging(level="DEBUG", json_format=True)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("RELEASE_SPINE_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("RELEASE_SPINE_REPORT_DIR", str(tmp_path / "reports"))
    reset_settings()
    yield
    reset_settings()


@dataclass
class Harness:
    """A scheduler plus handles on every fake behind it."""

    scheduler: PipelineScheduler
    config: PipelineConfig
    settings: ReleaseSettings
    docker: FakeDockerRunner
    host: FakeHost
    provider: InMemoryInfraProvider
    health: HealthEndpoint
    locks: TargetLockManager
    state: TargetStateStore
    reports: ReportWriter
    retry_sleeps: list[float] = field(default_factory=list)
    probe_sleeps: list[float] = field(default_factory=list)

    @staticmethod
    def trigger(revision: str = "abc1234", ref: str = "main", kind: TriggerKind = TriggerKind.PUSH) -> Trigger:
        return Trigger(kind=kind, revision=revision, ref_name=ref)


@pytest.fixture
def pipeline_harness(tmp_path: Path) -> Callable[..., Harness]:
    """Factory building a fully faked pipeline."""
    created: list[Harness] = []

    def build(
        *,
        config: PipelineConfig | None = None,
        docker: FakeDockerRunner | None = None,
        host: FakeHost | None = None,
        provider: InMemoryInfraProvider | None = None,
        health: HealthEndpoint | None = None,
        running: str | None = f"{REPOSITORY}:0000000",
        lock_timeout: float = 0.2,
        locks: TargetLockManager | None = None,
    ) -> Harness:
        config = config or make_config()
        docker = docker or FakeDockerRunner()
        host = host or FakeHost()
        if running and "web" not in host.containers:
            host.containers["web"] = Container(image=running)
        if provider is None:
            provider = InMemoryInfraProvider()
            provider.add(existing_resource(host.host))
        health = health or HealthEndpoint(healthy_from=1)
        settings = ReleaseSettings(
            state_dir=tmp_path / "state",
            report_dir=tmp_path / "reports",
            lock_timeout_seconds=lock_timeout,
        )
        resolver = SecretsResolver([DictSecretBackend({"registry_password": REGISTRY_PASSWORD})])
        state = TargetStateStore(settings.state_dir)
        reports = ReportWriter(settings.report_dir)
        locks = locks or TargetLockManager()
        retry_sleeps: list[float] = []
        probe_sleeps: list[float] = []

        scheduler = PipelineScheduler(
            config,
            publisher=ArtifactPublisher(
                DockerCLI(runner=docker, docker_bin="docker"),
                resolver,
                config.credentials,
                registry=config.registry_host,
            ),
            provisioner=Provisioner(provider, ready_timeout=30, poll_interval=0, sleep=lambda s: None),
            executor=RemoteExecutor(
                config.target,
                lambda resource: host,
                state,
                resolver=resolver,
                credentials=config.credentials,
                registry=config.registry_host,
            ),
            prober=HealthProber(sleep=probe_sleeps.append, transport=health_transport(health)),
            locks=locks,
            reports=reports,
            settings=settings,
            sleep=retry_sleeps.append,
            lock_poll_interval=0.01,
        )
        harness = Harness(
            scheduler=scheduler,
            config=config,
            settings=settings,
            docker=docker,
            host=host,
            provider=provider,
            health=health,
            locks=locks,
            state=state,
            reports=reports,
            retry_sleeps=retry_sleeps,
            probe_sleeps=probe_sleeps,
        )
        created.append(harness)
        return harness

    yield build
    for harness in created:
        harness.locks.close()
