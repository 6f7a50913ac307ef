"""Tests for run reports and the target state store."""

import os
import time

from release_spine.pipeline.models import (
    ArtifactRef,
    DeploymentTarget,
    PipelineRun,
    RunReport,
    Trigger,
    TriggerKind,
    Verdict,
)
from release_spine.pipeline.report import ReportWriter, TargetStateStore

from tests._support.builders import existing_resource


def _report(run_id: str = "run-1", cause: str | None = "BuildFailure") -> RunReport:
    run = PipelineRun(
        run_id=run_id,
        pipeline="web",
        trigger=Trigger(kind=TriggerKind.PUSH, revision="abc1234"),
    )
    run.finalize(cause=cause)
    return RunReport.from_run(run)


class TestReportWriter:
    def test_write_and_read(self, tmp_path):
        writer = ReportWriter(tmp_path)
        path = writer.write(_report())

        assert path == tmp_path / "run-1" / "summary.json"
        loaded = writer.read("run-1")
        assert loaded.verdict == Verdict.FAILED
        assert loaded.cause == "BuildFailure"
        assert not list(path.parent.glob(".summary.json.*"))

    def test_read_missing(self, tmp_path):
        assert ReportWriter(tmp_path).read("nope") is None
        assert ReportWriter(tmp_path / "absent").latest() is None

    def test_latest(self, tmp_path):
        writer = ReportWriter(tmp_path)
        older = writer.write(_report("run-1"))
        writer.write(_report("run-2"))
        past = time.time() - 60
        os.utime(older, (past, past))

        assert writer.latest().run_id == "run-2"


class TestTargetStateStore:
    def _target(self, **overrides) -> DeploymentTarget:
        values = dict(
            name="web",
            resource=existing_resource(),
            container_name="web",
            current=ArtifactRef(repository="r/web", tag="abc1234"),
        )
        values.update(overrides)
        return DeploymentTarget(**values)

    def test_save_and_load(self, tmp_path):
        store = TargetStateStore(tmp_path)
        target = self._target()
        store.save(target)

        assert (tmp_path / "targets" / "web.json").exists()
        assert store.load("web") == target
        assert store.load("api") is None

    def test_overwrite(self, tmp_path):
        store = TargetStateStore(tmp_path)
        store.save(self._target())
        store.save(self._target(current=ArtifactRef(repository="r/web", tag="def5678")))
        assert store.load("web").current.tag == "def5678"

    def test_corrupt_file_is_ignored(self, tmp_path):
        store = TargetStateStore(tmp_path)
        (tmp_path / "targets").mkdir()
        (tmp_path / "targets" / "web.json").write_text("{not json")
        assert store.load("web") is None

    def test_all(self, tmp_path):
        store = TargetStateStore(tmp_path)
        assert store.all() == []
        store.save(self._target(name="web"))
        store.save(self._target(name="api"))
        assert [t.name for t in store.all()] == ["api", "web"]
