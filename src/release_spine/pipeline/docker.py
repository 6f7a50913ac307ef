"""Docker CLI wrapper used by the publisher and (remotely) the executor.

Runs the ``docker`` binary via subprocess. No ``docker-py`` dependency:
anything exposing a ``docker`` CLI (Docker Desktop, Podman, Colima, CI
runners) works.

Key Concepts:
    CommandResult: Exit code plus captured output of one command.
    CommandRunner: Callable executing an argv. :func:`run_command` is the
        subprocess implementation; tests inject a fake.
    DockerCLI: ``build()``, ``login()``, ``push()``, ``local_digest()``,
        ``remote_digest()``. Each failure is classified into the
        release-spine error taxonomy.

Architecture Decisions:
    - Secrets travel on stdin (``--password-stdin``), never in argv, so
      they cannot leak via ``ps`` or the ``docker.exec`` debug log.
    - Timeouts are reported as results (``timed_out=True``) rather than
      raised, so callers classify them alongside exit codes.

Tags:
    docker, subprocess, registry, build, push, release-spine
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from release_spine.core.errors import (
    BuildFailure,
    RegistryAuthFailure,
    RegistryTransientFailure,
    ReleaseError,
)
from release_spine.core.logging import get_logger
from release_spine.core.secrets import SecretValue

logger = get_logger(__name__)

_AUTH_ERRORS = re.compile(
    r"unauthorized|denied|authentication required|incorrect username or password",
    re.IGNORECASE,
)
_TRANSIENT_ERRORS = re.compile(
    r"timeout|timed out|connection reset|connection refused|refused|toomanyrequests|"
    r"\b429\b|\b5\d\d\b|\beof\b|i/o timeout|temporary failure|no such host",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


class CommandRunner(Protocol):
    def __call__(
        self, argv: list[str], *, input: str | None = None, timeout: float = 60
    ) -> CommandResult: ...


def run_command(argv: list[str], *, input: str | None = None, timeout: float = 60) -> CommandResult:
    """Run ``argv`` with captured text output and a hard timeout."""
    try:
        proc = subprocess.run(
            argv,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            returncode=-1,
            stderr=f"command timed out after {timeout:.0f}s",
            timed_out=True,
        )
    except OSError as exc:
        return CommandResult(returncode=127, stderr=f"cannot execute {argv[0]}: {exc}")
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def classify_push_error(message: str) -> type[ReleaseError]:
    """Map registry stderr to an error class.

    Auth-looking messages are fatal; everything else on push is treated
    as transient.
    """
    if _AUTH_ERRORS.search(message):
        return RegistryAuthFailure
    return RegistryTransientFailure


def is_transient_message(message: str) -> bool:
    return bool(_TRANSIENT_ERRORS.search(message))


# ---------------------------------------------------------------------------
# DockerCLI
# ---------------------------------------------------------------------------


class DockerCLI:
    """Thin, classified wrapper over the ``docker`` binary.

    Parameters
    ----------
    runner
        Command runner; defaults to :func:`run_command`.
    docker_bin
        Docker executable. Resolved on PATH when not given.
    push_timeout
        Upper bound in seconds for one ``docker push``.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        docker_bin: str | None = None,
        push_timeout: float = 600,
    ) -> None:
        self._runner = runner or run_command
        self._docker = docker_bin or shutil.which("docker") or "docker"
        self.push_timeout = push_timeout

    def _run(self, args: list[str], *, input: str | None = None, timeout: float = 60) -> CommandResult:
        cmd = [self._docker, *args]
        logger.debug("docker.exec", cmd=" ".join(cmd))
        return self._runner(cmd, input=input, timeout=timeout)

    def build(
        self,
        image: str,
        *,
        context_dir: Path,
        dockerfile: str = "Dockerfile",
        build_args: dict[str, str] | None = None,
        platform: str | None = None,
        timeout: float = 1800,
    ) -> None:
        """Build ``image`` from ``context_dir``.

        Raises:
            BuildFailure: Recipe invalid, step failed, or build timed out
        """
        args = ["build", "-t", image, "-f", str(Path(context_dir) / dockerfile)]
        for key, value in sorted((build_args or {}).items()):
            args.extend(["--build-arg", f"{key}={value}"])
        if platform:
            args.extend(["--platform", platform])
        args.append(str(context_dir))

        result = self._run(args, timeout=timeout)
        if not result.ok:
            raise BuildFailure(
                f"docker build failed (exit {result.returncode}): {_tail(result.output)}",
                stage="build",
            ).with_context(image=image)

    def login(self, registry: str | None, username: str, password: SecretValue) -> None:
        """Log in to ``registry`` (Docker Hub when None), password via stdin."""
        args = ["login", "--username", username, "--password-stdin"]
        if registry:
            args.append(registry)
        result = self._run(args, input=password.get_secret(), timeout=60)
        if result.ok:
            logger.info("registry.login", registry=registry or "docker.io", username=username)
            return
        message = _tail(result.output)
        if result.timed_out or (is_transient_message(message) and not _AUTH_ERRORS.search(message)):
            raise RegistryTransientFailure(f"registry login failed: {message}", stage="build")
        raise RegistryAuthFailure(f"registry rejected credentials: {message}", stage="build")

    def push(self, image: str) -> str | None:
        """Push ``image``; return the pushed content digest when reported."""
        result = self._run(["push", image], timeout=self.push_timeout)
        if not result.ok:
            error_cls = RegistryTransientFailure if result.timed_out else classify_push_error(result.output)
            raise error_cls(
                f"docker push failed (exit {result.returncode}): {_tail(result.output)}",
                stage="build",
            ).with_context(image=image)
        match = re.search(r"digest:\s*(sha256:[0-9a-f]{64})", result.stdout)
        return match.group(1) if match else None

    def local_digest(self, image: str) -> str | None:
        """Registry digest of the local ``image`` for its own repository."""
        result = self._run(["image", "inspect", "--format", "{{json .RepoDigests}}", image])
        if not result.ok:
            return None
        try:
            digests = json.loads(result.stdout.strip() or "[]") or []
        except json.JSONDecodeError:
            return None
        repository = image.rsplit(":", 1)[0] if ":" in image.rsplit("/", 1)[-1] else image
        for entry in digests:
            repo, _, digest = entry.partition("@")
            if repo == repository and digest:
                return digest
        return None

    def remote_digest(self, image: str) -> str | None:
        """Digest the registry currently holds for ``image``, or None."""
        result = self._run(["manifest", "inspect", "--verbose", image], timeout=60)
        if not result.ok:
            return None
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            return None
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        descriptor = payload.get("Descriptor") or {}
        return descriptor.get("digest")


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


__all__ = [
    "CommandResult",
    "CommandRunner",
    "DockerCLI",
    "classify_push_error",
    "is_transient_message",
    "run_command",
]
