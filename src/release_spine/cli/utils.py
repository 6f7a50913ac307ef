"""
CLI utility helpers - config loading and output formatting.
"""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from release_spine.core.errors import ReleaseError
from release_spine.core.logging import configure_logging
from release_spine.core.settings import ReleaseSettings, get_settings
from release_spine.pipeline.config import PipelineConfig
from release_spine.pipeline.models import PipelineRun, RunReport, StageStatus, Verdict

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.RETRIED: "yellow",
    StageStatus.RUNNING: "cyan",
    StageStatus.NOT_RUN: "dim",
}


# ── Setup helpers ────────────────────────────────────────────────────────


def setup(log_level: str | None = None, log_json: bool | None = None) -> ReleaseSettings:
    """Load settings and configure logging for a command."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=log_json if log_json is not None else settings.log_json,
    )
    return settings


def load_config(path: Path) -> PipelineConfig:
    """Load a pipeline file or exit with code 1."""
    try:
        return PipelineConfig.from_yaml(path)
    except ReleaseError as exc:
        err_console.print(f"[bold red]Error[/bold red]: {exc.message}")
        raise typer.Exit(code=1) from exc


def fail(message: str, code: int = 1) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def print_run(run: PipelineRun) -> None:
    """Render a finished run: verdict line plus per-stage table."""
    print_report(RunReport.from_run(run))


def print_report(report: RunReport) -> None:
    ok = report.verdict == Verdict.SUCCESS
    colour = "green" if ok else "red"
    console.print(
        f"[bold {colour}]{report.state.value}[/] run {report.run_id} "
        f"- {report.artifact or 'no artifact'}"
    )
    if not ok and report.cause:
        console.print(f"  cause: [red]{report.cause}[/]")
        if report.cause_detail:
            console.print(f"  detail: {report.cause_detail}")

    table = Table(title=f"Pipeline {report.pipeline}")
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last Error")
    for stage in report.stages:
        style = _STATUS_STYLE.get(stage.status, "")
        table.add_row(
            stage.stage.value,
            f"[{style}]{stage.status.value}[/]" if style else stage.status.value,
            str(stage.attempts),
            stage.error_class or "",
        )
    console.print(table)
    console.print(f"  duration: {report.duration_seconds:.1f}s")
