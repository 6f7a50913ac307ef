"""Tests for pipeline data models and the run state machine."""

import pytest
from pydantic import ValidationError

from release_spine.core.errors import (
    HealthRejected,
    InvalidTransitionError,
    RegistryTransientFailure,
    RunFinalizedError,
    StageExhausted,
)
from release_spine.pipeline.models import (
    RUN_TRANSITIONS,
    TAG_NAMESPACE_KEY,
    ArtifactRef,
    DeclaredState,
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

from tests._support.builders import existing_resource


def _run() -> PipelineRun:
    return PipelineRun(pipeline="web", trigger=Trigger(kind=TriggerKind.PUSH, revision="abc1234"))


def _succeed_all(run: PipelineRun) -> None:
    run.transition(RunState.BUILDING)
    run.transition(RunState.PROVISIONING)
    run.transition(RunState.DEPLOYING)
    run.transition(RunState.VERIFYING)
    for name in (StageName.TAG, StageName.BUILD, StageName.PROVISION, StageName.DEPLOY, StageName.VERIFY):
        run.start_stage(name)
        run.succeed_stage(name)


class TestTrigger:
    def test_revision_normalized(self):
        trigger = Trigger(kind=TriggerKind.PUSH, revision="  ABC1234  ")
        assert trigger.revision == "abc1234"

    @pytest.mark.parametrize("revision", ["abc12", "not-a-sha", "g" * 40, ""])
    def test_invalid_revision(self, revision):
        with pytest.raises(ValidationError):
            Trigger(kind=TriggerKind.PUSH, revision=revision)

    def test_frozen(self):
        trigger = Trigger(kind=TriggerKind.PUSH, revision="abc1234")
        with pytest.raises(ValidationError):
            trigger.revision = "def5678"


class TestArtifactRef:
    def test_image(self):
        ref = ArtifactRef(repository="ghcr.io/acme/web", tag="v1.0")
        assert ref.image == "ghcr.io/acme/web:v1.0"
        assert str(ref) == ref.image


class TestStateMachine:
    def test_happy_path_transitions(self):
        run = _run()
        _succeed_all(run)
        assert run.state == RunState.VERIFYING

    def test_illegal_transition_raises(self):
        run = _run()
        with pytest.raises(InvalidTransitionError):
            run.transition(RunState.VERIFYING)

    def test_terminal_states_have_no_exits(self):
        assert RUN_TRANSITIONS[RunState.SUCCEEDED] == frozenset()
        assert RUN_TRANSITIONS[RunState.FAILED] == frozenset()
        assert RunState.FAILED.terminal and not RunState.DEPLOYING.terminal

    def test_every_non_terminal_state_can_fail(self):
        for state, targets in RUN_TRANSITIONS.items():
            if not state.terminal:
                assert RunState.FAILED in targets


class TestStageBookkeeping:
    def test_attempts_and_retry_status(self):
        run = _run()
        run.start_stage(StageName.BUILD)
        run.retry_stage(StageName.BUILD, RegistryTransientFailure("push timed out"))
        assert run.stage(StageName.BUILD).status == StageStatus.RETRIED

        run.start_stage(StageName.BUILD)
        run.succeed_stage(StageName.BUILD)
        result = run.stage(StageName.BUILD)
        assert result.attempts == 2
        assert result.succeeded
        assert result.error_class == "RegistryTransientFailure"

    def test_failure_records_cause_code(self):
        run = _run()
        run.start_stage(StageName.BUILD)
        error = StageExhausted.from_error(RegistryTransientFailure("timeout"), attempts=4)
        run.fail_stage(StageName.BUILD, error)
        assert run.stage(StageName.BUILD).error_class == "RegistryTransientFailure-exhausted"

    def test_foreign_error_recorded_by_class_name(self):
        run = _run()
        run.start_stage(StageName.DEPLOY)
        run.fail_stage(StageName.DEPLOY, KeyError("x"))
        assert run.stage(StageName.DEPLOY).error_class == "KeyError"

    def test_unknown_stage(self):
        with pytest.raises(KeyError):
            _run().stage("nope")


class TestFinalize:
    def test_success_requires_all_required_stages(self):
        run = _run()
        _succeed_all(run)
        run.finalize()
        assert run.verdict == Verdict.SUCCESS
        assert run.state == RunState.SUCCEEDED
        assert run.cause is None
        assert run.completed_at is not None

    def test_deploy_without_verify_is_not_success(self):
        """Verdict success requires a healthy verify, not just a deploy."""
        run = _run()
        _succeed_all(run)
        run.stage(StageName.VERIFY).status = StageStatus.FAILED
        run.finalize()
        assert run.verdict == Verdict.FAILED
        assert run.cause == "IncompleteRun"

    def test_failure_with_cause(self):
        run = _run()
        run.transition(RunState.BUILDING)
        err = HealthRejected("never healthy")
        run.finalize(cause=err.cause_code, cause_detail=err.message)
        assert run.verdict == Verdict.FAILED
        assert run.state == RunState.FAILED
        assert run.cause == "Health-Rejected"
        assert run.cause_detail == "never healthy"

    def test_finalized_run_is_frozen(self):
        run = _run()
        run.finalize(cause="Cancelled")
        assert run.finalized
        with pytest.raises(RunFinalizedError):
            run.cause = "other"
        with pytest.raises(RunFinalizedError):
            run.start_stage(StageName.CLEANUP)
        with pytest.raises(RunFinalizedError):
            run.finalize()

    def test_report(self):
        run = _run()
        run.artifact = ArtifactRef(repository="r/web", tag="abc1234")
        run.finalize(cause="BuildFailure")
        report = RunReport.from_run(run)

        assert report.verdict == Verdict.FAILED
        assert report.artifact == "r/web:abc1234"
        assert report.revision == "abc1234"
        assert [s.stage for s in report.stages] == list(StageName)


class TestInfrastructure:
    def test_ports_normalized(self):
        declared = DeclaredState(name="web", ports=[80, 22, 80])
        assert declared.ports == [22, 80]

    def test_port_range(self):
        with pytest.raises(ValidationError):
            DeclaredState(name="web", ports=[0])

    def test_tag_namespace(self):
        declared = DeclaredState(name="web", tags={"team": "platform"})
        assert declared.tag_namespace == {"team": "platform", TAG_NAMESPACE_KEY: "web"}

    def test_resource_ready_and_ownership(self):
        resource = existing_resource()
        assert resource.ready
        assert resource.owned_by(DeclaredState(name="web"))
        assert not resource.owned_by(DeclaredState(name="api"))
        assert not InfraResource(resource_id="x", instance_class="e2-small").ready

    def test_satisfies(self):
        resource = existing_resource()
        assert resource.satisfies(DeclaredState(name="web", ports=[22, 80]))
        assert not resource.satisfies(DeclaredState(name="web", ports=[22, 80, 443]))

    def test_patch_describe(self):
        assert InfraPatch().is_empty
        assert InfraPatch().describe() == "no changes"
        patch = InfraPatch(open_ports=[443], install_runtime=True)
        assert patch.describe() == "open ports 443; install runtime"
