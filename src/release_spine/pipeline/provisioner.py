"""Infrastructure provisioner: converge one VM to its declared state.

Manifesto:
    Provisioning is convergence, not creation. The provisioner looks for
    resources carrying the pipeline's tag namespace
    (``release-spine/pipeline=<name>``) and does the least it can:

    - none found → create one, with a one-shot bootstrap script that runs
      at creation time only
    - one found → compute the minimal :class:`InfraPatch`; reuse the
      resource unchanged when the patch is empty
    - several found → use the oldest, log the others, destroy nothing

    It never destroys resources and never touches anything outside its
    tag namespace.

Architecture:
    ::

        Provisioner.converge(declared)
            │
            ├─ provider.list_tagged(namespace) ─► [InfraResource...]
            ├─ create(declared, render_bootstrap_script(declared))
            │     or apply_patch(id, compute_patch(declared, observed))
            └─ wait_ready(id)  ── bounded ──► ProvisioningTimeout

    ``InfraProvider`` is the seam to the cloud. Two providers ship here:
    :class:`StaticHostProvider` for a pre-existing host and
    :class:`InMemoryInfraProvider` for tests and dry runs.

Tags:
    provisioning, infrastructure, convergence, idempotent, release-spine
"""

from __future__ import annotations

import itertools
import shlex
import threading
import time
from collections.abc import Callable
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field, model_validator

from release_spine.core.errors import (
    PermissionDenied,
    ProvisioningTimeout,
    QuotaExceeded,
    ReleaseError,
)
from release_spine.core.logging import get_logger
from release_spine.core.result import Err, Ok, Result
from release_spine.pipeline.models import (
    TAG_NAMESPACE_KEY,
    DeclaredState,
    InfraPatch,
    InfraResource,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Provider protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class InfraProvider(Protocol):
    """Cloud-side operations the provisioner relies on."""

    def list_tagged(self, tags: dict[str, str]) -> list[InfraResource]: ...

    def create(self, declared: DeclaredState, init_script: str) -> InfraResource: ...

    def describe(self, resource_id: str) -> InfraResource: ...

    def apply_patch(self, resource_id: str, patch: InfraPatch) -> InfraResource: ...


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def compute_patch(declared: DeclaredState, observed: InfraResource) -> InfraPatch:
    """Minimal change converging ``observed`` to ``declared``.

    Ports are only ever added; an extra open port is left alone.
    """
    missing = sorted(set(declared.ports) - set(observed.open_ports))
    return InfraPatch(
        open_ports=missing,
        instance_class=(
            declared.instance_class if observed.instance_class != declared.instance_class else None
        ),
        install_runtime=not observed.runtime_installed,
    )


def render_bootstrap_script(declared: DeclaredState) -> str:
    """One-shot init script: install the container runtime and open ports."""
    lines = [
        "#!/bin/bash",
        "set -euo pipefail",
        f"# release-spine bootstrap for {declared.name}",
        "export DEBIAN_FRONTEND=noninteractive",
    ]
    if declared.runtime == "docker":
        lines += [
            "if ! command -v docker >/dev/null 2>&1; then",
            "  curl -fsSL https://get.docker.com | sh",
            "fi",
            "systemctl enable --now docker",
        ]
    else:
        lines.append(f"apt-get update && apt-get install -y {shlex.quote(declared.runtime)}")
    lines.append("if command -v ufw >/dev/null 2>&1; then")
    lines += [f"  ufw allow {port}/tcp" for port in declared.ports]
    lines.append("fi")
    return "\n".join(lines) + "\n"


def _namespace(declared: DeclaredState) -> dict[str, str]:
    return {TAG_NAMESPACE_KEY: declared.name}


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


class ProvisionPlan(BaseModel):
    """Read-only preview of what ``converge`` would do."""

    action: Literal["create", "patch", "noop"]
    resource_id: str | None = None
    patch: InfraPatch = Field(default_factory=InfraPatch)
    duplicates: list[str] = Field(default_factory=list)
    bootstrap_script: str | None = None

    @model_validator(mode="after")
    def _check_resource(self) -> ProvisionPlan:
        if self.action != "create" and self.resource_id is None:
            raise ValueError(f"{self.action} plan needs a resource_id")
        return self

    def describe(self) -> str:
        if self.action == "create":
            return "create new resource"
        if self.action == "noop":
            return f"reuse {self.resource_id} unchanged"
        return f"patch {self.resource_id}: {self.patch.describe()}"


class Provisioner:
    """Converges a single declared resource through an :class:`InfraProvider`.

    Parameters
    ----------
    provider
        Cloud seam.
    ready_timeout
        Seconds to wait for address assignment and runtime install.
    poll_interval
        Seconds between readiness checks.
    sleep, clock
        Injected for tests.
    """

    def __init__(
        self,
        provider: InfraProvider,
        *,
        ready_timeout: float = 300.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _owned(self, declared: DeclaredState) -> list[InfraResource]:
        found = self.provider.list_tagged(_namespace(declared))
        owned = [r for r in found if r.owned_by(declared)]
        return sorted(owned, key=lambda r: (r.created_at, r.resource_id))

    def plan(self, declared: DeclaredState) -> ProvisionPlan:
        owned = self._owned(declared)
        if not owned:
            return ProvisionPlan(
                action="create", bootstrap_script=render_bootstrap_script(declared)
            )
        chosen, extras = owned[0], owned[1:]
        patch = compute_patch(declared, chosen)
        return ProvisionPlan(
            action="noop" if patch.is_empty else "patch",
            resource_id=chosen.resource_id,
            patch=patch,
            duplicates=[r.resource_id for r in extras],
        )

    def converge(self, declared: DeclaredState) -> Result[InfraResource]:
        """Create, patch or reuse the pipeline's resource and wait until ready."""
        try:
            return Ok(self._converge(declared))
        except ReleaseError as exc:
            exc.with_context(stage="provision")
            logger.warning(
                "provision.failed",
                resource=declared.name,
                error_class=exc.error_class,
                retryable=exc.retryable,
            )
            return Err(exc)

    def _converge(self, declared: DeclaredState) -> InfraResource:
        plan = self.plan(declared)
        for extra in plan.duplicates:
            logger.warning(
                "provision.duplicate_resource",
                resource_id=extra,
                using=plan.resource_id,
            )

        if plan.resource_id is None:
            resource = self.provider.create(declared, plan.bootstrap_script or "")
            logger.info("provision.created", resource_id=resource.resource_id)
        elif plan.action == "patch":
            resource = self.provider.apply_patch(plan.resource_id, plan.patch)
            logger.info(
                "provision.patched",
                resource_id=plan.resource_id,
                patch=plan.patch.describe(),
            )
        else:
            resource = self.provider.describe(plan.resource_id)
            logger.info("provision.reused", resource_id=plan.resource_id)

        return self.wait_ready(resource.resource_id)

    def wait_ready(self, resource_id: str) -> InfraResource:
        """Poll ``describe`` until the resource is ready or the bound expires."""
        deadline = self._clock() + self.ready_timeout
        while True:
            resource = self.provider.describe(resource_id)
            if resource.ready:
                logger.info("provision.ready", resource_id=resource_id, address=resource.address)
                return resource
            if self._clock() >= deadline:
                raise ProvisioningTimeout(
                    f"resource {resource_id} not ready after {self.ready_timeout:.0f}s "
                    f"(address={resource.address!r}, runtime_installed={resource.runtime_installed})",
                    stage="provision",
                )
            self._sleep(self.poll_interval)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class StaticHostProvider:
    """A single pre-existing host declared in configuration.

    The host is assumed to already satisfy the declaration. It can be
    inspected but never created or modified.
    """

    def __init__(
        self,
        host: str,
        declared: DeclaredState,
        *,
        resource_id: str | None = None,
        runtime_installed: bool = True,
    ) -> None:
        self._resource = InfraResource(
            resource_id=resource_id or f"static-{host}",
            address=host,
            instance_class=declared.instance_class,
            open_ports=list(declared.ports),
            runtime_installed=runtime_installed,
            tags=declared.tag_namespace,
            created_at="1970-01-01T00:00:00+00:00",
        )

    def list_tagged(self, tags: dict[str, str]) -> list[InfraResource]:
        if all(self._resource.tags.get(k) == v for k, v in tags.items()):
            return [self._resource]
        return []

    def create(self, declared: DeclaredState, init_script: str) -> InfraResource:
        raise PermissionDenied(
            f"static provider cannot create resources (no host matches {declared.name!r})",
            stage="provision",
        )

    def describe(self, resource_id: str) -> InfraResource:
        if resource_id != self._resource.resource_id:
            raise PermissionDenied(f"unknown static resource {resource_id}", stage="provision")
        return self._resource

    def apply_patch(self, resource_id: str, patch: InfraPatch) -> InfraResource:
        raise PermissionDenied(
            f"static host {self._resource.address} cannot be modified ({patch.describe()})",
            stage="provision",
        )


class InMemoryInfraProvider:
    """Process-local provider for tests and dry runs.

    Parameters
    ----------
    quota
        Maximum number of resources; ``create`` beyond it raises
        :class:`QuotaExceeded`.
    boot_polls
        ``describe`` calls before a newly created resource is ready.
    """

    def __init__(self, quota: int = 10, boot_polls: int = 0) -> None:
        self.quota = quota
        self.boot_polls = boot_polls
        self.resources: dict[str, InfraResource] = {}
        self.init_scripts: dict[str, str] = {}
        self.created: list[str] = []
        self.patched: list[tuple[str, InfraPatch]] = []
        self._pending_boot: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, resource: InfraResource) -> InfraResource:
        with self._lock:
            self.resources[resource.resource_id] = resource
        return resource

    def list_tagged(self, tags: dict[str, str]) -> list[InfraResource]:
        with self._lock:
            return [
                r
                for r in self.resources.values()
                if all(r.tags.get(k) == v for k, v in tags.items())
            ]

    def create(self, declared: DeclaredState, init_script: str) -> InfraResource:
        with self._lock:
            if len(self.resources) >= self.quota:
                raise QuotaExceeded(
                    f"quota of {self.quota} resources reached", stage="provision"
                )
            number = next(self._ids)
            resource_id = f"vm-{number:04d}"
            resource = InfraResource(
                resource_id=resource_id,
                address=None,
                instance_class=declared.instance_class,
                open_ports=list(declared.ports),
                runtime_installed=False,
                tags=declared.tag_namespace,
            )
            self.resources[resource_id] = resource
            self.init_scripts[resource_id] = init_script
            self.created.append(resource_id)
            self._pending_boot[resource_id] = self.boot_polls
            return resource

    def describe(self, resource_id: str) -> InfraResource:
        with self._lock:
            resource = self.resources[resource_id]
            remaining = self._pending_boot.get(resource_id)
            if remaining is not None:
                if remaining > 0:
                    self._pending_boot[resource_id] = remaining - 1
                else:
                    del self._pending_boot[resource_id]
                    number = int(resource_id.rsplit("-", 1)[-1])
                    resource = resource.model_copy(
                        update={"address": f"10.0.0.{number}", "runtime_installed": True}
                    )
                    self.resources[resource_id] = resource
            return resource

    def apply_patch(self, resource_id: str, patch: InfraPatch) -> InfraResource:
        with self._lock:
            resource = self.resources[resource_id]
            update: dict[str, object] = {
                "open_ports": sorted(set(resource.open_ports) | set(patch.open_ports))
            }
            if patch.instance_class:
                update["instance_class"] = patch.instance_class
            if patch.install_runtime:
                update["runtime_installed"] = True
            resource = resource.model_copy(update=update)
            self.resources[resource_id] = resource
            self.patched.append((resource_id, patch))
            return resource


__all__ = [
    "InMemoryInfraProvider",
    "InfraProvider",
    "ProvisionPlan",
    "Provisioner",
    "StaticHostProvider",
    "compute_patch",
    "render_bootstrap_script",
]
