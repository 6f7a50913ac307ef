"""Artifact builder/publisher.

Builds the image for an :class:`ArtifactRef` and pushes it to the registry.

Manifesto:
    Publishing the same coordinate twice must be harmless. If the registry
    already holds the tag with the same content digest as the local build,
    the push is skipped and reported as ``already_present``. A coordinate
    whose remote digest differs is pushed (overwritten): the tag is derived
    from the revision, so a mismatch means a non-reproducible rebuild, not
    a different release.

Failure classes:
    - ``BuildFailure`` (fatal): invalid recipe or failing build step.
    - ``RegistryAuthFailure`` (fatal): credentials rejected.
    - ``RegistryTransientFailure`` (retryable): timeouts, resets, 429/5xx.

A build that succeeded is remembered per image, so a retried push does not
rebuild.

Tags:
    build, publish, registry, idempotent, release-spine
"""

from __future__ import annotations

import threading

from pydantic import BaseModel, ConfigDict

from release_spine.core.errors import ReleaseError
from release_spine.core.logging import get_logger
from release_spine.core.result import Err, Ok, Result
from release_spine.core.secrets import CredentialScope, SecretsResolver
from release_spine.pipeline.config import BuildSpec, CredentialsConfig
from release_spine.pipeline.docker import DockerCLI
from release_spine.pipeline.models import ArtifactRef

logger = get_logger(__name__)


class PublishOutcome(BaseModel):
    """Result of one publish call."""

    model_config = ConfigDict(frozen=True)

    artifact: ArtifactRef
    digest: str | None = None
    already_present: bool = False
    built: bool = True


class ArtifactPublisher:
    """Build-then-push for a single repository.

    Parameters
    ----------
    docker
        Docker CLI wrapper (inject a fake runner in tests).
    resolver
        Secrets resolver used for the registry login.
    credentials
        Which secret keys hold the registry username/password. Login is
        skipped when no password key is configured or the key is absent.
    registry
        Registry host to log in to (None = Docker Hub).
    """

    def __init__(
        self,
        docker: DockerCLI | None = None,
        resolver: SecretsResolver | None = None,
        credentials: CredentialsConfig | None = None,
        registry: str | None = None,
    ) -> None:
        self.docker = docker or DockerCLI()
        self.resolver = resolver or SecretsResolver()
        self.credentials = credentials or CredentialsConfig()
        self.registry = registry
        self._built: set[str] = set()
        self._lock = threading.Lock()

    def publish(self, build_spec: BuildSpec, artifact: ArtifactRef) -> Result[PublishOutcome]:
        """Build and push ``artifact``.

        Returns ``Ok(PublishOutcome)`` or ``Err`` carrying a typed
        :class:`ReleaseError`.
        """
        try:
            return Ok(self._publish(build_spec, artifact))
        except ReleaseError as exc:
            exc.with_context(stage="build", image=artifact.image)
            logger.warning(
                "publish.failed",
                image=artifact.image,
                error_class=exc.error_class,
                retryable=exc.retryable,
            )
            return Err(exc)

    def _publish(self, build_spec: BuildSpec, artifact: ArtifactRef) -> PublishOutcome:
        image = artifact.image
        built_now = self._ensure_built(build_spec, image)

        local = self.docker.local_digest(image)
        if local is not None and self.docker.remote_digest(image) == local:
            logger.info("publish.already_present", image=image, digest=local)
            return PublishOutcome(
                artifact=artifact, digest=local, already_present=True, built=built_now
            )

        self._login()
        digest = self.docker.push(image)
        logger.info("publish.pushed", image=image, digest=digest)
        return PublishOutcome(artifact=artifact, digest=digest, built=built_now)

    def _ensure_built(self, build_spec: BuildSpec, image: str) -> bool:
        with self._lock:
            if image in self._built:
                logger.debug("build.cached", image=image)
                return False
        logger.info("build.started", image=image, context=str(build_spec.context_dir))
        self.docker.build(
            image,
            context_dir=build_spec.context_dir,
            dockerfile=build_spec.dockerfile,
            build_args=build_spec.build_args,
            platform=build_spec.platform,
            timeout=build_spec.timeout_seconds,
        )
        with self._lock:
            self._built.add(image)
        logger.info("build.completed", image=image)
        return True

    def _login(self) -> None:
        key = self.credentials.registry_password_key
        if not key or not self.resolver.contains(key):
            logger.debug("registry.login.skipped", registry=self.registry or "docker.io")
            return
        with CredentialScope(
            self.resolver,
            password_key=key,
            username_key=self.credentials.registry_username_key,
            username=self.credentials.registry_username,
        ) as credential:
            self.docker.login(self.registry, credential.username or "", credential.password)


__all__ = ["ArtifactPublisher", "PublishOutcome"]
