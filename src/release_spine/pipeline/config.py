"""Configuration models for release-spine pipelines.

A :class:`PipelineConfig` declares everything one release train needs: the
image repository and build recipe, the desired VM state, how to reach the
VM, which environment keys the deployed container recognizes, and the
retry/probe bounds of each stage.

Key Concepts:
    PipelineConfig: Root model. ``from_yaml()`` loads a pipeline file,
        ``from_env()`` layers ``RELEASE_SPINE_*`` overrides on top.
    BuildSpec: Build recipe coordinates (context dir, Dockerfile, args).
    TargetConfig: Container name, port mappings, health path, and the
        allow-list of environment keys.
    EnvConfig: Immutable key/value record handed to the Remote Executor.
        Values are opaque and passed through unmodified.
    StageRetryConfig: Retry bound and backoff shape for one stage.
    ProbeConfig: Liveness polling bounds.

Architecture Decisions:
    - Pydantic v2 models, YAML via ``yaml.safe_load`` + ``model_validate``.
    - Override precedence: kwargs > env vars > file > field defaults.
    - Unknown env keys are a configuration error, not a warning: the
      orchestrator never forwards keys the target did not declare.

Example::

    config = PipelineConfig.from_yaml("pipeline.yaml")
    env = config.target.env_config()
    env.get("DATABASE_URL")

Tags:
    config, settings, pydantic, yaml, release-spine
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from release_spine.core.errors import InvalidConfigError
from release_spine.execution.retry import ExponentialBackoff
from release_spine.pipeline.models import DeclaredState

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class BuildSpec(BaseModel):
    """Where and how to build the deployable image."""

    context_dir: Path = Field(default=Path("."), description="Docker build context")
    dockerfile: str = Field(default="Dockerfile", description="Dockerfile path relative to context")
    build_args: dict[str, str] = Field(default_factory=dict)
    platform: str | None = Field(default=None, description="Target platform, e.g. linux/amd64")
    timeout_seconds: int = Field(default=1800, gt=0)


class StageRetryConfig(BaseModel):
    """Retry bound and backoff for one stage.

    ``max_retries = n`` allows at most ``n + 1`` attempts.
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True

    def strategy(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )


class RetryConfig(BaseModel):
    """Per-stage retry settings."""

    build: StageRetryConfig = Field(default_factory=lambda: StageRetryConfig(max_retries=3))
    provision: StageRetryConfig = Field(
        default_factory=lambda: StageRetryConfig(max_retries=1, base_delay=5.0)
    )
    deploy: StageRetryConfig = Field(
        default_factory=lambda: StageRetryConfig(max_retries=10, base_delay=2.0, max_delay=30.0)
    )


class ProbeConfig(BaseModel):
    """Liveness polling bounds."""

    max_attempts: int = Field(default=20, ge=1)
    interval_seconds: float = Field(default=3.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)


class ProviderConfig(BaseModel):
    """Which infrastructure provider backs the Provisioner."""

    kind: Literal["static", "memory"] = "static"
    host: str | None = Field(default=None, description="Address of a pre-existing host (static)")
    resource_id: str | None = None
    runtime_installed: bool = True
    ready_timeout_seconds: float = Field(default=300.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)


class SSHConfig(BaseModel):
    """Management channel settings."""

    user: str = "deploy"
    port: int = Field(default=22, ge=1, le=65535)
    identity_file: Path | None = None
    connect_timeout: int = Field(default=10, gt=0)
    command_timeout: int = Field(default=300, gt=0)
    known_hosts_file: Path | None = None


class CredentialsConfig(BaseModel):
    """Secret keys resolved through :class:`SecretsResolver` (never values)."""

    registry_username: str | None = None
    registry_username_key: str | None = None
    registry_password_key: str | None = "registry_password"
    remote_registry_login: bool = True


class EnvConfig(BaseModel):
    """Immutable environment record passed through to the container."""

    model_config = ConfigDict(frozen=True)

    pairs: tuple[tuple[str, str], ...] = ()

    def get(self, key: str, default: str | None = None) -> str | None:
        for name, value in self.pairs:
            if name == key:
                return value
        return default

    def keys(self) -> list[str]:
        return [name for name, _ in self.pairs]

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)


class TargetConfig(BaseModel):
    """The deployment target on the provisioned VM."""

    name: str = "default"
    container_name: str = "app"
    ports: dict[int, int] = Field(
        default_factory=lambda: {80: 8080},
        description="Host port -> container port",
    )
    health_path: str = "/"
    health_port: int | None = Field(default=None, description="Defaults to the first host port")
    health_scheme: Literal["http", "https"] = "http"
    env_keys: list[str] = Field(
        default_factory=list,
        description="Environment keys this target recognizes",
    )
    env: dict[str, str] = Field(default_factory=dict)
    restart_policy: str = "unless-stopped"
    stop_timeout_seconds: int = Field(default=10, ge=0)

    @field_validator("health_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @model_validator(mode="after")
    def _check_env(self) -> TargetConfig:
        for key in self.env_keys:
            if not _ENV_KEY.match(key):
                raise ValueError(f"invalid environment key name: {key!r}")
        unknown = sorted(set(self.env) - set(self.env_keys))
        if unknown:
            raise ValueError(
                f"environment keys not recognized by target {self.name!r}: {', '.join(unknown)}"
            )
        multiline = sorted(key for key, value in self.env.items() if "\n" in value)
        if multiline:
            raise ValueError(f"environment values must be single-line: {', '.join(multiline)}")
        return self

    def env_config(self) -> EnvConfig:
        return EnvConfig(pairs=tuple(sorted(self.env.items())))

    def endpoint(self, address: str) -> str:
        port = self.health_port or next(iter(self.ports), 80)
        return f"{self.health_scheme}://{address}:{port}{self.health_path}"


class PipelineConfig(BaseModel):
    """Root configuration for a release-spine pipeline.

    Example::

        config = PipelineConfig(
            name="web",
            repository="ghcr.io/acme/web",
            infra=DeclaredState(name="web", ports=[22, 80]),
            provider=ProviderConfig(host="203.0.113.10"),
        )
    """

    name: str
    repository: str
    build: BuildSpec = Field(default_factory=BuildSpec)
    infra: DeclaredState
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    retries: RetryConfig = Field(default_factory=RetryConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)

    @model_validator(mode="before")
    @classmethod
    def _default_infra(cls, data: Any) -> Any:
        if isinstance(data, dict) and "infra" not in data and "name" in data:
            data = {**data, "infra": {"name": data["name"]}}
        return data

    @property
    def registry_host(self) -> str | None:
        """Registry host part of ``repository`` (None for Docker Hub)."""
        first = self.repository.split("/", 1)[0]
        if "/" in self.repository and ("." in first or ":" in first or first == "localhost"):
            return first
        return None

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> PipelineConfig:
        """Load a pipeline file, then apply env and keyword overrides."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise InvalidConfigError(f"cannot read pipeline file {path}: {exc}", cause=exc) from exc
        if not isinstance(data, dict):
            raise InvalidConfigError(f"pipeline file {path} must contain a mapping")
        return cls.from_env(_base=data, **overrides)

    @classmethod
    def from_env(cls, _base: dict[str, Any] | None = None, **overrides: Any) -> PipelineConfig:
        """Create config from RELEASE_SPINE_* environment variables."""
        values: dict[str, Any] = dict(_base or {})
        env_map = {
            "name": "RELEASE_SPINE_PIPELINE",
            "repository": "RELEASE_SPINE_REPOSITORY",
        }
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                values[field_name] = env_val

        host = os.environ.get("RELEASE_SPINE_HOST")
        if host is not None:
            values["provider"] = {**values.get("provider", {}), "host": host}
        ssh_user = os.environ.get("RELEASE_SPINE_SSH_USER")
        if ssh_user is not None:
            values["ssh"] = {**values.get("ssh", {}), "user": ssh_user}
        attempts = os.environ.get("RELEASE_SPINE_PROBE_MAX_ATTEMPTS")
        if attempts is not None:
            values["probe"] = {**values.get("probe", {}), "max_attempts": attempts}

        values.update(overrides)
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise InvalidConfigError(f"invalid pipeline configuration: {exc}", cause=exc) from exc


__all__ = [
    "BuildSpec",
    "CredentialsConfig",
    "EnvConfig",
    "PipelineConfig",
    "ProbeConfig",
    "ProviderConfig",
    "RetryConfig",
    "SSHConfig",
    "StageRetryConfig",
    "TargetConfig",
]
