"""Tests for infrastructure convergence."""

import pytest
from pydantic import ValidationError

from release_spine.core.errors import PermissionDenied, ProvisioningTimeout, QuotaExceeded
from release_spine.core.result import Err, Ok
from release_spine.pipeline.models import TAG_NAMESPACE_KEY, DeclaredState, InfraResource
from release_spine.pipeline.provisioner import (
    InMemoryInfraProvider,
    InfraProvider,
    ProvisionPlan,
    Provisioner,
    StaticHostProvider,
    compute_patch,
    render_bootstrap_script,
)

from tests._support.builders import existing_resource

DECLARED = DeclaredState(name="web", ports=[22, 80])


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _provisioner(provider, **kwargs) -> Provisioner:
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("sleep", lambda s: None)
    return Provisioner(provider, **kwargs)


class TestComputePatch:
    def test_nothing_to_do(self):
        assert compute_patch(DECLARED, existing_resource()).is_empty

    def test_missing_ports_only_added(self):
        observed = existing_resource(open_ports=[22, 8443])
        patch = compute_patch(DeclaredState(name="web", ports=[22, 80, 443]), observed)
        assert patch.open_ports == [80, 443]

    def test_resize_and_runtime(self):
        observed = existing_resource(instance_class="e2-micro", runtime_installed=False)
        patch = compute_patch(DECLARED, observed)
        assert patch.instance_class == "e2-small"
        assert patch.install_runtime is True


class TestBootstrapScript:
    def test_installs_docker_and_opens_ports(self):
        script = render_bootstrap_script(DECLARED)
        assert script.startswith("#!/bin/bash\n")
        assert "get.docker.com" in script
        assert "ufw allow 22/tcp" in script
        assert "ufw allow 80/tcp" in script


class TestConverge:
    def test_creates_when_nothing_exists(self):
        provider = InMemoryInfraProvider()
        result = _provisioner(provider).converge(DECLARED)

        assert isinstance(result, Ok)
        resource = result.value
        assert provider.created == [resource.resource_id]
        assert resource.ready
        assert resource.tags[TAG_NAMESPACE_KEY] == "web"
        assert "get.docker.com" in provider.init_scripts[resource.resource_id]

    def test_second_converge_reuses_without_creating(self):
        """Two runs against the same declaration create at most one resource."""
        provider = InMemoryInfraProvider()
        provisioner = _provisioner(provider)
        first = provisioner.converge(DECLARED).unwrap()
        second = provisioner.converge(DECLARED).unwrap()

        assert first.resource_id == second.resource_id
        assert len(provider.created) == 1
        assert provider.patched == []

    def test_reuses_existing_resource(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource())
        resource = _provisioner(provider).converge(DECLARED).unwrap()

        assert resource.resource_id == "vm-existing"
        assert provider.created == []
        assert provider.patched == []

    def test_patches_drifted_resource(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource(open_ports=[22]))
        resource = _provisioner(provider).converge(DECLARED).unwrap()

        assert resource.open_ports == [22, 80]
        assert [rid for rid, _ in provider.patched] == ["vm-existing"]
        assert provider.created == []

    def test_oldest_duplicate_wins_and_nothing_is_destroyed(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource(resource_id="vm-new", created_at="2024-06-01T00:00:00+00:00"))
        provider.add(existing_resource(resource_id="vm-old", created_at="2023-01-01T00:00:00+00:00"))

        plan = _provisioner(provider).plan(DECLARED)
        resource = _provisioner(provider).converge(DECLARED).unwrap()

        assert plan.duplicates == ["vm-new"]
        assert resource.resource_id == "vm-old"
        assert set(provider.resources) == {"vm-new", "vm-old"}

    def test_foreign_resources_are_ignored(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource(resource_id="vm-api", tags={TAG_NAMESPACE_KEY: "api"}))
        _provisioner(provider).converge(DECLARED).unwrap()

        assert len(provider.created) == 1
        assert provider.resources["vm-api"].tags[TAG_NAMESPACE_KEY] == "api"

    def test_waits_for_boot(self):
        provider = InMemoryInfraProvider(boot_polls=3)
        clock = FakeClock()
        resource = _provisioner(provider, sleep=clock.sleep, clock=clock, poll_interval=5).converge(
            DECLARED
        ).unwrap()

        assert resource.address == "10.0.0.1"
        assert clock.now == 15

    def test_ready_timeout(self):
        provider = InMemoryInfraProvider(boot_polls=1000)
        clock = FakeClock()
        result = _provisioner(
            provider, sleep=clock.sleep, clock=clock, poll_interval=5, ready_timeout=20
        ).converge(DECLARED)

        assert isinstance(result, Err)
        assert isinstance(result.error, ProvisioningTimeout)
        assert result.error.retryable
        assert result.error.stage == "provision"

    def test_quota_exceeded(self):
        provider = InMemoryInfraProvider(quota=0)
        result = _provisioner(provider).converge(DECLARED)
        assert isinstance(result.error, QuotaExceeded)
        assert not result.error.retryable


class TestPlan:
    def test_create_plan_carries_script(self):
        plan = _provisioner(InMemoryInfraProvider()).plan(DECLARED)
        assert plan.action == "create"
        assert plan.bootstrap_script
        assert plan.describe() == "create new resource"

    def test_patch_plan(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource(open_ports=[22]))
        plan = _provisioner(provider).plan(DECLARED)
        assert plan.action == "patch"
        assert plan.describe() == "patch vm-existing: open ports 80"
        assert provider.patched == []

    def test_noop_plan(self):
        provider = InMemoryInfraProvider()
        provider.add(existing_resource())
        assert _provisioner(provider).plan(DECLARED).describe() == "reuse vm-existing unchanged"

    @pytest.mark.parametrize("action", ["patch", "noop"])
    def test_reuse_plans_require_a_resource(self, action):
        with pytest.raises(ValidationError):
            ProvisionPlan(action=action)


class TestStaticHostProvider:
    def test_is_a_provider(self):
        assert isinstance(StaticHostProvider("203.0.113.10", DECLARED), InfraProvider)

    def test_reuses_host(self):
        provider = StaticHostProvider("203.0.113.10", DECLARED)
        resource = _provisioner(provider).converge(DECLARED).unwrap()
        assert resource.address == "203.0.113.10"
        assert resource.resource_id == "static-203.0.113.10"

    def test_cannot_patch(self):
        provider = StaticHostProvider("203.0.113.10", DECLARED)
        result = _provisioner(provider).converge(DeclaredState(name="web", ports=[22, 80, 443]))
        assert isinstance(result.error, PermissionDenied)

    def test_cannot_create_for_other_pipeline(self):
        provider = StaticHostProvider("203.0.113.10", DECLARED)
        result = _provisioner(provider).converge(DeclaredState(name="api"))
        assert isinstance(result.error, PermissionDenied)

    def test_unknown_resource(self):
        with pytest.raises(PermissionDenied):
            StaticHostProvider("h", DECLARED).describe("other")
        assert isinstance(
            StaticHostProvider("h", DECLARED, runtime_installed=False).describe("static-h"),
            InfraResource,
        )
