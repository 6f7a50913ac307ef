"""Run reports and deployment target state.

Two small JSON stores:

- :class:`ReportWriter` writes ``<report_dir>/<run_id>/summary.json`` after
  every run. This is the exit surface surrounding automation consumes.
- :class:`TargetStateStore` keeps one ``<state_dir>/targets/<name>.json``
  record per :class:`DeploymentTarget`: which artifact is current, which
  one came before, and whether a standby container still exists.

Writes go to a temporary sibling and are moved into place with
``os.replace`` so a reader never sees a half-written file.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path

from release_spine.core.logging import get_logger
from release_spine.pipeline.models import DeploymentTarget, RunReport

logger = get_logger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ReportWriter:
    """Persists :class:`RunReport` summaries."""

    def __init__(self, report_dir: str | Path) -> None:
        self.report_dir = Path(report_dir)

    def path_for(self, run_id: str) -> Path:
        return self.report_dir / run_id / "summary.json"

    def write(self, report: RunReport) -> Path:
        path = self.path_for(report.run_id)
        _atomic_write(path, report.model_dump_json(indent=2))
        logger.info("report.written", path=str(path), verdict=report.verdict.value)
        return path

    def read(self, run_id: str) -> RunReport | None:
        path = self.path_for(run_id)
        if not path.exists():
            return None
        return RunReport.model_validate_json(path.read_text(encoding="utf-8"))

    def latest(self) -> RunReport | None:
        """Most recently written report, if any."""
        if not self.report_dir.exists():
            return None
        summaries = sorted(
            self.report_dir.glob("*/summary.json"),
            key=lambda p: p.stat().st_mtime,
        )
        if not summaries:
            return None
        return RunReport.model_validate_json(summaries[-1].read_text(encoding="utf-8"))


class TargetStateStore:
    """Thread-safe JSON store of deployment targets."""

    def __init__(self, state_dir: str | Path) -> None:
        self.root = Path(state_dir) / "targets"
        self._lock = threading.Lock()

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def save(self, target: DeploymentTarget) -> None:
        with self._lock:
            _atomic_write(self._path(target.name), target.model_dump_json(indent=2))
        logger.debug(
            "target.saved",
            target=target.name,
            current=str(target.current) if target.current else None,
        )

    def load(self, name: str) -> DeploymentTarget | None:
        path = self._path(name)
        with self._lock:
            if not path.exists():
                return None
            raw = path.read_text(encoding="utf-8")
        try:
            return DeploymentTarget.model_validate_json(raw)
        except ValueError:
            logger.warning("target.corrupt", target=name, path=str(path))
            return None

    def all(self) -> list[DeploymentTarget]:
        if not self.root.exists():
            return []
        targets = []
        for path in sorted(self.root.glob("*.json")):
            target = self.load(path.stem)
            if target is not None:
                targets.append(target)
        return targets


__all__ = ["ReportWriter", "TargetStateStore"]
