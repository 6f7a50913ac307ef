"""Remote executor: put an artifact in service on a provisioned host.

Manifesto:
    A failed deploy must leave the previously running version serving.
    The executor follows a fixed protocol and never reorders it:

    (a) confirm the management channel answers
    (b) log the remote host in to the registry, if credentials are set
    (c) pull the artifact
    (d) replace: rename the running container to ``<name>-previous`` and
        stop it, then start the new one under ``<name>``. If the start
        fails, remove the half-started container and bring the previous
        one back under its original name. A container that was already
        stopped is restored stopped. Nothing is replaced when the same
        artifact already serves with the same env file digest.
    (e) record the new artifact as current (container label + local
        target state store)

    The standby is removed by :meth:`RemoteExecutor.finalize` only after
    the health prober confirmed the new instance; :meth:`rollback`
    restores it instead.

    Errors before (d) are transport-class and safe to retry: nothing on
    the host has changed yet. Any failure inside (d) is a
    ``ReplaceFailure`` and is never retried.

Architecture:
    ::

        RemoteExecutor ──► RemoteChannel.run(argv, stdin=..., timeout=...)
                                 │
                                 └─ SSHChannel: ssh -o BatchMode=yes ... user@host -- argv

Tags:
    deploy, ssh, docker, replace, rollback, release-spine
"""

from __future__ import annotations

import hashlib
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from release_spine.core.errors import (
    ChannelUnreachable,
    ReleaseError,
    RemoteAuthFailure,
    ReplaceFailure,
)
from release_spine.core.logging import get_logger
from release_spine.core.result import Err, Ok, Result
from release_spine.core.secrets import CredentialScope, SecretsResolver
from release_spine.pipeline.config import CredentialsConfig, EnvConfig, SSHConfig, TargetConfig
from release_spine.pipeline.docker import CommandResult, CommandRunner, is_transient_message, run_command
from release_spine.pipeline.models import ArtifactRef, DeploymentTarget, InfraResource
from release_spine.pipeline.report import TargetStateStore

logger = get_logger(__name__)

ARTIFACT_LABEL = "release-spine.artifact"
ENV_LABEL = "release-spine.env"
TARGET_LABEL = "release-spine.target"
STANDBY_SUFFIX = "-previous"
ENV_DIR = ".release-spine"

# ssh reserves 255 for its own (connection/auth) errors
SSH_TRANSPORT_EXIT = 255


# ---------------------------------------------------------------------------
# Management channel
# ---------------------------------------------------------------------------


@runtime_checkable
class RemoteChannel(Protocol):
    """Command execution on the target host."""

    host: str

    def run(
        self, command: list[str], *, stdin: str | None = None, timeout: float = 60
    ) -> CommandResult: ...


def transport_failed(result: CommandResult) -> bool:
    return result.timed_out or result.returncode == SSH_TRANSPORT_EXIT


class SSHChannel:
    """RemoteChannel over the ``ssh`` CLI.

    Parameters
    ----------
    host
        Address of the resource.
    config
        User, port, key and timeouts.
    runner
        Command runner (inject a fake in tests).
    """

    def __init__(
        self,
        host: str,
        config: SSHConfig | None = None,
        runner: CommandRunner | None = None,
        ssh_bin: str = "ssh",
    ) -> None:
        self.host = host
        self.config = config or SSHConfig()
        self._runner = runner or run_command
        self._ssh = ssh_bin

    def argv(self, command: list[str]) -> list[str]:
        cfg = self.config
        args = [
            self._ssh,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={cfg.connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(cfg.port),
        ]
        if cfg.known_hosts_file:
            args += ["-o", f"UserKnownHostsFile={cfg.known_hosts_file}"]
        if cfg.identity_file:
            args += ["-i", str(cfg.identity_file)]
        args += [f"{cfg.user}@{self.host}", "--", shlex.join(command)]
        return args

    def run(
        self, command: list[str], *, stdin: str | None = None, timeout: float = 60
    ) -> CommandResult:
        logger.debug("ssh.exec", host=self.host, command=shlex.join(command))
        return self._runner(self.argv(command), input=stdin, timeout=timeout)


def ssh_channel_factory(
    config: SSHConfig, runner: CommandRunner | None = None
) -> Callable[[InfraResource], RemoteChannel]:
    """Build one :class:`SSHChannel` per resource address."""

    def factory(resource: InfraResource) -> RemoteChannel:
        if not resource.address:
            raise ChannelUnreachable(
                f"resource {resource.resource_id} has no address", stage="deploy"
            )
        return SSHChannel(resource.address, config, runner)

    return factory


def parse_image(image: str | None) -> ArtifactRef | None:
    """``repo:tag`` -> ArtifactRef (None when there is no tag)."""
    if not image:
        return None
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return None
    return ArtifactRef(repository=repository, tag=tag)


def env_payload(env_config: EnvConfig) -> str:
    """Contents of the remote ``--env-file``."""
    return "".join(f"{key}={value}\n" for key, value in env_config.items())


def env_digest(env_config: EnvConfig) -> str:
    return hashlib.sha256(env_payload(env_config).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ContainerState:
    """What ``docker inspect`` reports about one container."""

    running: bool
    image: str | None = None
    env_digest: str | None = None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class RemoteExecutor:
    """Deploys artifacts to one target through a :class:`RemoteChannel`.

    Parameters
    ----------
    target
        Target settings: container name, ports, restart policy.
    channel_factory
        Opens a channel to a resource.
    state_store
        Where the DeploymentTarget record is persisted.
    resolver, credentials, registry
        Remote registry login (step b). Skipped when no password key
        is configured or the key cannot be resolved.
    command_timeout
        Bound for long remote commands (pull, run).
    """

    def __init__(
        self,
        target: TargetConfig,
        channel_factory: Callable[[InfraResource], RemoteChannel],
        state_store: TargetStateStore,
        *,
        resolver: SecretsResolver | None = None,
        credentials: CredentialsConfig | None = None,
        registry: str | None = None,
        command_timeout: float = 300,
    ) -> None:
        self.target = target
        self.channel_factory = channel_factory
        self.state_store = state_store
        self.resolver = resolver or SecretsResolver()
        self.credentials = credentials or CredentialsConfig()
        self.registry = registry
        self.command_timeout = command_timeout

    @property
    def container(self) -> str:
        return self.target.container_name

    @property
    def standby(self) -> str:
        return f"{self.container}{STANDBY_SUFFIX}"

    # -- public API ----------------------------------------------------------

    def deploy(
        self,
        resource: InfraResource,
        artifact: ArtifactRef,
        env_config: EnvConfig,
        *,
        run_id: str | None = None,
    ) -> Result[DeploymentTarget]:
        """Run steps (a) to (e) against ``resource``."""
        try:
            return Ok(self._deploy(resource, artifact, env_config, run_id))
        except ReleaseError as exc:
            exc.with_context(stage="deploy", target=self.target.name, image=artifact.image)
            logger.warning(
                "deploy.failed",
                target=self.target.name,
                error_class=exc.error_class,
                retryable=exc.retryable,
            )
            return Err(exc)

    def finalize(self, target: DeploymentTarget) -> Result[DeploymentTarget]:
        """Remove the standby container after a healthy verify."""
        if not target.standby_container:
            return Ok(target)
        try:
            channel = self.channel_factory(target.resource)
            self._must(channel, ["docker", "rm", "-f", target.standby_container], "remove standby")
        except ReleaseError as exc:
            return Err(exc.with_context(stage="cleanup", target=target.name))
        updated = target.model_copy(update={"standby_container": None, "updated_at": _now()})
        self.state_store.save(updated)
        logger.info("deploy.finalized", target=target.name, current=str(updated.current))
        return Ok(updated)

    def rollback(self, target: DeploymentTarget) -> Result[DeploymentTarget]:
        """Remove the new container and put the standby back in service.

        A target whose deploy replaced nothing is returned unchanged: the
        container under ``<name>`` is the one that was serving before the run.
        """
        if not target.replaced:
            logger.info("deploy.rollback_skipped", target=target.name, current=str(target.current))
            return Ok(target)
        try:
            channel = self.channel_factory(target.resource)
            self._must(channel, ["docker", "rm", "-f", target.container_name], "remove new container")
            if target.standby_container:
                self._restore(
                    channel,
                    target.standby_container,
                    target.container_name,
                    start=target.standby_was_running,
                )
        except ReleaseError as exc:
            return Err(exc.with_context(stage="cleanup", target=target.name))
        updated = target.model_copy(
            update={
                "current": target.previous if target.standby_container else None,
                "previous": None,
                "standby_container": None,
                "replaced": False,
                "updated_at": _now(),
            }
        )
        self.state_store.save(updated)
        logger.info(
            "deploy.rolled_back",
            target=target.name,
            restored=str(updated.current) if updated.current else None,
        )
        return Ok(updated)

    # -- protocol steps ------------------------------------------------------

    def _deploy(
        self,
        resource: InfraResource,
        artifact: ArtifactRef,
        env_config: EnvConfig,
        run_id: str | None,
    ) -> DeploymentTarget:
        channel = self.channel_factory(resource)
        self._check_channel(channel)
        self._remote_login(channel)
        self._pull(channel, artifact)

        running = self._inspect(channel, self.container)
        if running is None:
            running = self._recover_standby(channel)

        digest = env_digest(env_config)
        if (
            running is not None
            and running.running
            and running.image == artifact.image
            and running.env_digest == digest
        ):
            logger.info("deploy.already_current", target=self.target.name, image=artifact.image)
            target = DeploymentTarget(
                name=self.target.name,
                resource=resource,
                container_name=self.container,
                current=artifact,
                previous=self._known_previous(artifact),
            )
            self.state_store.save(target)
            return target

        self._write_env(channel, env_config)
        previous = self._replace(channel, artifact, running, digest, run_id)

        target = DeploymentTarget(
            name=self.target.name,
            resource=resource,
            container_name=self.container,
            current=artifact,
            previous=previous,
            standby_container=self.standby if running is not None else None,
            standby_was_running=running.running if running is not None else False,
            replaced=True,
        )
        self.state_store.save(target)
        logger.info(
            "deploy.completed",
            target=self.target.name,
            image=artifact.image,
            previous=str(previous) if previous else None,
        )
        return target

    def _check_channel(self, channel: RemoteChannel) -> None:
        result = channel.run(["docker", "version", "--format", "{{.Server.Version}}"], timeout=30)
        if transport_failed(result):
            raise ChannelUnreachable(
                f"management channel to {channel.host} unavailable: {result.output}",
                stage="deploy",
            ).with_context(host=channel.host)
        if not result.ok:
            raise ReplaceFailure(
                f"container runtime not usable on {channel.host}: {result.output}",
                stage="deploy",
            ).with_context(host=channel.host)

    def _remote_login(self, channel: RemoteChannel) -> None:
        key = self.credentials.registry_password_key
        if not self.credentials.remote_registry_login or not key or not self.resolver.contains(key):
            return
        with CredentialScope(
            self.resolver,
            password_key=key,
            username_key=self.credentials.registry_username_key,
            username=self.credentials.registry_username,
        ) as credential:
            command = ["docker", "login", "--username", credential.username or "", "--password-stdin"]
            if self.registry:
                command.append(self.registry)
            result = channel.run(command, stdin=credential.password.get_secret(), timeout=60)
        if transport_failed(result):
            raise ChannelUnreachable(
                f"channel dropped during remote login on {channel.host}", stage="deploy"
            )
        if not result.ok:
            raise RemoteAuthFailure(
                f"registry login on {channel.host} rejected: {result.output}", stage="deploy"
            ).with_context(host=channel.host)
        logger.info("deploy.remote_login", host=channel.host)

    def _pull(self, channel: RemoteChannel, artifact: ArtifactRef) -> None:
        result = channel.run(["docker", "pull", artifact.image], timeout=self.command_timeout)
        if transport_failed(result) or (not result.ok and is_transient_message(result.output)):
            raise ChannelUnreachable(
                f"pull of {artifact.image} interrupted: {result.output}", stage="deploy"
            ).with_context(host=channel.host)
        if not result.ok:
            raise ReplaceFailure(
                f"pull of {artifact.image} failed: {result.output}", stage="deploy"
            ).with_context(host=channel.host)
        logger.info("deploy.pulled", host=channel.host, image=artifact.image)

    def _inspect(self, channel: RemoteChannel, name: str) -> ContainerState | None:
        """State of container ``name``, or None if it does not exist."""
        fmt = "|".join(
            [
                "{{.State.Running}}",
                "{{index .Config.Labels \"" + ARTIFACT_LABEL + "\"}}",
                "{{index .Config.Labels \"" + ENV_LABEL + "\"}}",
            ]
        )
        result = channel.run(["docker", "inspect", "--format", fmt, name], timeout=30)
        if transport_failed(result):
            raise ChannelUnreachable(f"channel dropped inspecting {name}", stage="deploy")
        if not result.ok:
            return None
        running, image, digest = (result.stdout.strip().split("|") + ["", ""])[:3]
        return ContainerState(
            running=running == "true",
            image=_label(image),
            env_digest=_label(digest),
        )

    def _recover_standby(self, channel: RemoteChannel) -> ContainerState | None:
        """Bring back a standby orphaned by an interrupted rollback."""
        standby = self._inspect(channel, self.standby)
        if standby is None:
            return None
        logger.warning("deploy.standby_orphaned", container=self.standby, image=standby.image)
        try:
            self._restore(channel, self.standby, self.container)
        except ReplaceFailure as exc:
            raise ReplaceFailure(
                f"{self.standby} exists without {self.container} and could not be restored: "
                f"{exc.message}",
                stage="deploy",
            ).with_context(host=channel.host, restored=False) from exc
        return self._inspect(channel, self.container)

    def _write_env(self, channel: RemoteChannel, env_config: EnvConfig) -> None:
        script = f"mkdir -p {ENV_DIR} && umask 077 && cat > {shlex.quote(self._env_path)}"
        result = channel.run(["sh", "-c", script], stdin=env_payload(env_config), timeout=30)
        if transport_failed(result):
            raise ChannelUnreachable("channel dropped writing env file", stage="deploy")
        if not result.ok:
            raise ReplaceFailure(f"cannot write env file: {result.output}", stage="deploy")

    @property
    def _env_path(self) -> str:
        return f"{ENV_DIR}/{self.container}.env"

    def _run_argv(self, artifact: ArtifactRef, digest: str, run_id: str | None) -> list[str]:
        argv = [
            "docker", "run", "-d",
            "--name", self.container,
            "--restart", self.target.restart_policy,
            "--env-file", self._env_path,
            "--label", f"{ARTIFACT_LABEL}={artifact.image}",
            "--label", f"{ENV_LABEL}={digest}",
            "--label", f"{TARGET_LABEL}={self.target.name}",
        ]
        if run_id:
            argv += ["--label", f"release-spine.run={run_id}"]
        for host_port, container_port in sorted(self.target.ports.items()):
            argv += ["-p", f"{host_port}:{container_port}"]
        argv.append(artifact.image)
        return argv

    def _replace(
        self,
        channel: RemoteChannel,
        artifact: ArtifactRef,
        running: ContainerState | None,
        digest: str,
        run_id: str | None,
    ) -> ArtifactRef | None:
        previous = parse_image(running.image) if running else None
        was_running = running is not None and running.running

        # <name> exists here, so a standby left by an interrupted run is superseded.
        channel.run(["docker", "rm", "-f", self.standby], timeout=60)

        if running is not None:
            self._must(channel, ["docker", "rename", self.container, self.standby], "rename old", fatal=True)
            if was_running:
                stop = channel.run(
                    ["docker", "stop", "-t", str(self.target.stop_timeout_seconds), self.standby],
                    timeout=self.target.stop_timeout_seconds + 60,
                )
                if not stop.ok:
                    self._try_restore(channel, start=True)
                    raise ReplaceFailure(
                        f"could not stop {self.container}: {stop.output}", stage="deploy"
                    ).with_context(host=channel.host, restored=True)

        start = channel.run(self._run_argv(artifact, digest, run_id), timeout=self.command_timeout)
        if not start.ok:
            channel.run(["docker", "rm", "-f", self.container], timeout=60)
            restored = self._try_restore(channel, start=was_running) if running is not None else False
            raise ReplaceFailure(
                f"new container for {artifact.image} failed to start: {start.output}",
                stage="deploy",
            ).with_context(host=channel.host, restored=restored)

        logger.info("deploy.replaced", container=self.container, image=artifact.image)
        return previous

    def _restore(self, channel: RemoteChannel, standby: str, name: str, *, start: bool = True) -> None:
        self._must(channel, ["docker", "rename", standby, name], "restore name")
        if start:
            self._must(channel, ["docker", "start", name], "restart previous")

    def _try_restore(self, channel: RemoteChannel, *, start: bool) -> bool:
        try:
            self._restore(channel, self.standby, self.container, start=start)
        except ReleaseError as exc:
            logger.error(
                "deploy.restore_failed",
                container=self.container,
                error_class=exc.error_class,
                detail=exc.message,
            )
            return False
        logger.info("deploy.restored", container=self.container, started=start)
        return True

    def _must(
        self, channel: RemoteChannel, command: list[str], what: str, *, fatal: bool = False
    ) -> CommandResult:
        result = channel.run(command, timeout=60)
        if result.ok:
            return result
        if transport_failed(result) and not fatal:
            raise ChannelUnreachable(f"{what}: channel to {channel.host} dropped")
        raise ReplaceFailure(f"{what} failed on {channel.host}: {result.output}")

    def _known_previous(self, artifact: ArtifactRef) -> ArtifactRef | None:
        stored = self.state_store.load(self.target.name)
        if stored is None:
            return None
        return stored.previous if stored.current == artifact else stored.current


def _label(value: str) -> str | None:
    return value if value and value != "<no value>" else None


def _now() -> str:
    return datetime.now(UTC).isoformat()


__all__ = [
    "ARTIFACT_LABEL",
    "ContainerState",
    "ENV_LABEL",
    "RemoteChannel",
    "RemoteExecutor",
    "SSHChannel",
    "env_digest",
    "env_payload",
    "parse_image",
    "ssh_channel_factory",
    "transport_failed",
]
