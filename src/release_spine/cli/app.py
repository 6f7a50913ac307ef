"""
Root Typer application for the ``release-spine`` CLI.

Usage::

    release-spine run -c pipeline.yaml --revision abc1234 --ref main
    release-spine run -c pipeline.yaml --revision abc1234 --kind tag --ref refs/tags/v1.2.0
    release-spine tag --repository ghcr.io/acme/web --revision abc1234
    release-spine plan -c pipeline.yaml
    release-spine status -c pipeline.yaml
    release-spine probe http://10.0.0.4/health --attempts 5 --interval 1

``run`` and ``probe`` exit 0 on success and 1 on failure.
"""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from release_spine.cli.utils import console, fail, load_config, print_report, print_run, setup
from release_spine.execution.cancellation import CancellationToken
from release_spine.pipeline.models import Trigger, TriggerKind, Verdict

app = typer.Typer(
    name="release-spine",
    help="release-spine: tag, build, provision, deploy and verify one release train.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_CONFIG_OPTION = typer.Option(
    Path("pipeline.yaml"), "--config", "-c", help="Pipeline configuration file."
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from release_spine import __version__

        typer.echo(f"release-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """release-spine CLI: continuous delivery for a single pipeline."""


def _trigger(revision: str, kind: TriggerKind, ref: str) -> Trigger:
    try:
        return Trigger(kind=kind, revision=revision, ref_name=ref)
    except ValidationError as exc:
        fail(f"invalid trigger: {exc.errors()[0]['msg']}")


# ── run ──────────────────────────────────────────────────────────────────


@app.command()
def run(
    revision: str = typer.Option(..., "--revision", "-r", help="Commit hash that triggered the run."),
    kind: TriggerKind = typer.Option(TriggerKind.PUSH, "--kind", "-k", help="Trigger kind."),
    ref: str = typer.Option("", "--ref", help="Branch or tag ref (refs/tags/v1.0 for releases)."),
    config_path: Path = _CONFIG_OPTION,
    json_out: bool = typer.Option(False, "--json", help="Print the run report as JSON."),
    log_level: str | None = typer.Option(None, "--log-level", help="Override log level."),
) -> None:
    """Run the pipeline for one trigger."""
    from release_spine.core.errors import ReleaseError
    from release_spine.pipeline.models import RunReport
    from release_spine.pipeline.scheduler import PipelineScheduler

    settings = setup(log_level)
    config = load_config(config_path)
    trigger = _trigger(revision, kind, ref)

    try:
        scheduler = PipelineScheduler.from_config(config, settings)
    except ReleaseError as exc:
        fail(exc.message)

    cancel = CancellationToken()

    def _interrupt(signum: int, frame: Any) -> None:
        cancel.cancel("interrupted")

    previous_handler = signal.signal(signal.SIGINT, _interrupt)
    try:
        result = scheduler.run(trigger, cancel)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if json_out:
        typer.echo(RunReport.from_run(result).model_dump_json(indent=2))
    else:
        print_run(result)

    if result.verdict != Verdict.SUCCESS:
        raise typer.Exit(code=1)


# ── tag ──────────────────────────────────────────────────────────────────


@app.command("tag")
def tag_cmd(
    revision: str = typer.Option(..., "--revision", "-r", help="Commit hash."),
    repository: str = typer.Option(..., "--repository", help="Image repository."),
    kind: TriggerKind = typer.Option(TriggerKind.PUSH, "--kind", "-k", help="Trigger kind."),
    ref: str = typer.Option("", "--ref", help="Branch or tag ref."),
) -> None:
    """Print the artifact coordinate a trigger would produce."""
    from release_spine.pipeline.tagger import tag

    typer.echo(tag(_trigger(revision, kind, ref), repository).image)


# ── plan ─────────────────────────────────────────────────────────────────


@app.command()
def plan(
    config_path: Path = _CONFIG_OPTION,
    show_script: bool = typer.Option(False, "--script", help="Show the bootstrap script."),
) -> None:
    """Preview what provisioning would do (read-only)."""
    from release_spine.core.errors import ReleaseError
    from release_spine.pipeline.provisioner import Provisioner
    from release_spine.pipeline.scheduler import build_provider

    setup()
    config = load_config(config_path)
    try:
        preview = Provisioner(build_provider(config)).plan(config.infra)
    except ReleaseError as exc:
        fail(exc.message)

    console.print(f"[bold]plan[/] {config.infra.name}: {preview.describe()}")
    for duplicate in preview.duplicates:
        console.print(f"  [yellow]duplicate (left untouched):[/] {duplicate}")
    if show_script and preview.bootstrap_script:
        console.print(preview.bootstrap_script, markup=False, highlight=False)


# ── status ───────────────────────────────────────────────────────────────


@app.command()
def status(
    config_path: Path = _CONFIG_OPTION,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the deployed artifact and the last run report."""
    from release_spine.pipeline.report import ReportWriter, TargetStateStore

    settings = setup()
    config = load_config(config_path)
    target = TargetStateStore(settings.state_dir).load(config.target.name)
    last = ReportWriter(settings.report_dir).latest()

    if json_out:
        payload = {
            "target": target.model_dump(mode="json") if target else None,
            "last_run": last.model_dump(mode="json") if last else None,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    if target is None:
        console.print(f"[dim]target {config.target.name}: nothing deployed yet[/]")
    else:
        console.print(f"[bold]target[/] {target.name} @ {target.address or '?'}")
        console.print(f"  current:  {target.current or '-'}")
        console.print(f"  previous: {target.previous or '-'}")
        if target.standby_container:
            console.print(f"  standby:  {target.standby_container}")
        console.print(f"  updated:  {target.updated_at}")
    if last is not None:
        print_report(last)


# ── probe ────────────────────────────────────────────────────────────────


@app.command()
def probe(
    endpoint: str = typer.Argument(..., help="URL to poll."),
    attempts: int = typer.Option(20, "--attempts", "-n", min=1, help="Maximum attempts."),
    interval: float = typer.Option(3.0, "--interval", "-i", min=0.0, help="Seconds between attempts."),
    timeout: float = typer.Option(5.0, "--timeout", help="Per-request timeout."),
    target: str = typer.Option("adhoc", "--target", help="Target name for logging."),
) -> None:
    """Poll an endpoint until it answers 2xx."""
    from release_spine.pipeline.prober import HealthProber

    setup()
    verdict = HealthProber(timeout=timeout).probe(
        target, endpoint, max_attempts=attempts, interval=interval
    )
    if verdict.healthy:
        console.print(f"[green]healthy[/] after {verdict.attempts} attempt(s)")
        return
    console.print(f"[red]unhealthy[/] after {verdict.attempts} attempt(s): {verdict.last_error}")
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
