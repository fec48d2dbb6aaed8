# shipyard/cli.py
"""
CLI interface for shipyard.

Thin presentation layer over PipelineEngine and the scheduler daemon.
Exit codes: 0 complete, 1 failed or invalid input, 2 paused at a gate,
3 aborted, 130 interrupted by Ctrl+C.
"""

import json
import logging
import os
import subprocess
import sys
from pathlib import Path

import typer

from shipyard.capabilities import build_capabilities
from shipyard.config.loader import HOME_ENV, load_config, resolve_home
from shipyard.config.schema import ShipyardConfig
from shipyard.errors import ConfigError, LockError, StateDocumentError
from shipyard.logging_config import configure_cli_logging, configure_logging
from shipyard.models.runs import PipelineRun, RunStatus
from shipyard.pipeline.engine import PipelineEngine, StartRequest, exit_code_for
from shipyard.pipeline.templates import default_search_dirs, list_templates, load_template
from shipyard.storage.paths import HomePaths

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="shipyard",
    help="Staged, resumable AI coding pipelines and a scheduler that runs them in parallel.",
    no_args_is_help=True,
)
daemon_app = typer.Typer(help="Run the scheduler daemon.", no_args_is_help=True)
app.add_typer(daemon_app, name="daemon")

_PROJECT_OPTION = typer.Option(None, "--project-dir", "-C", help="Project directory (default: cwd)")


def _status_color(status: str) -> str:
    """Return ANSI color for a run status."""
    colors = {
        "complete": typer.colors.GREEN,
        "running": typer.colors.YELLOW,
        "pending": typer.colors.CYAN,
        "paused_for_gate": typer.colors.MAGENTA,
        "failed": typer.colors.RED,
        "aborted": typer.colors.RED,
        "interrupted": typer.colors.RED,
    }
    return colors.get(status, typer.colors.WHITE)


def _fmt_duration(seconds: float | None) -> str:
    """Format seconds as human-readable duration (e.g. '5m17s', '42s')."""
    if seconds is None:
        return ""
    s = int(seconds)
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    return f"{m}m{s:02d}s"


def _load(create: bool = True) -> tuple[ShipyardConfig, HomePaths]:
    try:
        config = load_config(create_missing=create)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    return config, HomePaths(resolve_home(config, create=create))


def _engine(project_dir: Path | None, create: bool = True) -> PipelineEngine:
    config, home = _load(create)
    return PipelineEngine(
        Path(project_dir or Path.cwd()),
        config,
        build_capabilities(config, home),
        home,
    )


def _finish(run: PipelineRun) -> None:
    """Print the outcome line and exit with the status's code."""
    status = run.status.value
    typer.echo(typer.style(f"Run {run.run_id}: {status}", fg=_status_color(status)))
    if run.status == RunStatus.PAUSED_FOR_GATE:
        typer.echo(f"Waiting for approval of '{run.pending_gate}'. Run 'shipyard approve' to continue.")
    if run.error and run.status != RunStatus.COMPLETE:
        typer.echo(typer.style(f"Error: {run.error}", fg=typer.colors.RED), err=True)
    if run.pr_url:
        typer.echo(f"PR: {run.pr_url}")
    raise typer.Exit(exit_code_for(run.status))


def _stage_status(run: PipelineRun, stage_id: str, enabled: bool) -> str:
    status = run.stages.get(stage_id)
    if status is None:
        return "pending" if enabled else "skipped"
    return status.value


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    """shipyard: issue in, merged PR out."""
    configure_cli_logging(verbose)


@app.command()
def start(
    goal: str = typer.Argument("", help="What to build (optional with --issue)"),
    issue: int = typer.Option(None, "--issue", "-i", help="Ticket number to work on"),
    template: str = typer.Option(None, "--template", "-t", help="Pipeline template"),
    test_cmd: str = typer.Option(None, "--test-cmd", help="Test command (default: detect)"),
    model: str = typer.Option(None, "--model", "-m", help="Agent model"),
    skip_gates: bool = typer.Option(False, "--skip-gates", help="Treat every gate as auto"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print estimates only; write nothing"),
    worktree: bool = typer.Option(False, "--worktree/--no-worktree", help="Run in an isolated worktree"),
    worktree_name: str = typer.Option(None, "--worktree-name", help="Explicit worktree name"),
    branch: str = typer.Option(None, "--branch", help="Branch to work on (default: generated)"),
    self_heal: int = typer.Option(None, "--self-heal", help="Build retries after test failures"),
    base: str = typer.Option(None, "--base", help="Base branch"),
    ignore_budget: bool = typer.Option(False, "--ignore-budget", help="Continue past the daily budget"),
    project_dir: Path = _PROJECT_OPTION,
    job_id: str = typer.Option(None, "--job-id", help="Scheduler job id (set by the daemon)"),
):
    """Start a new pipeline run and execute it until it completes, fails or pauses."""
    request = StartRequest(
        goal=goal,
        issue=issue,
        template=template,
        test_cmd=test_cmd,
        model=model,
        skip_gates=skip_gates,
        worktree=worktree,
        worktree_name=worktree_name,
        branch=branch,
        self_heal=self_heal,
        base=base,
        ignore_budget=ignore_budget,
        job_id=job_id,
    )

    if dry_run:
        engine = _engine(project_dir, create=False)
        try:
            typer.echo(engine.dry_run(request), nl=False)
        except ConfigError as e:
            _fail(str(e))
        return

    engine = _engine(project_dir)
    try:
        run = engine.start(request)
    except (ConfigError, LockError, StateDocumentError) as e:
        _fail(str(e))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted. Run 'shipyard resume' to continue.", err=True)
        raise typer.Exit(130)
    _finish(run)


@app.command()
def resume(
    project_dir: Path = _PROJECT_OPTION,
    job_id: str = typer.Option(None, "--job-id", help="Scheduler job id (set by the daemon)"),
):
    """Continue the project's run from its first incomplete stage."""
    engine = _engine(project_dir)
    try:
        run = engine.resume(job_id=job_id)
    except (ConfigError, LockError, StateDocumentError) as e:
        _fail(str(e))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted. Run 'shipyard resume' to continue.", err=True)
        raise typer.Exit(130)
    _finish(run)


@app.command()
def approve(
    gate: str = typer.Argument(None, help="Gate to approve (default: the pending one)"),
    project_dir: Path = _PROJECT_OPTION,
):
    """Approve the pending gate and continue the run."""
    engine = _engine(project_dir)
    try:
        run = engine.approve(gate)
    except (ConfigError, LockError, StateDocumentError) as e:
        _fail(str(e))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted. Run 'shipyard resume' to continue.", err=True)
        raise typer.Exit(130)
    _finish(run)


@app.command()
def abort(
    reason: str = typer.Option("aborted by operator", "--reason", help="Recorded in the run"),
    project_dir: Path = _PROJECT_OPTION,
):
    """Abort the run (a running process stops before its next stage)."""
    engine = _engine(project_dir)
    try:
        run = engine.abort(reason)
    except (ConfigError, LockError, StateDocumentError) as e:
        _fail(str(e))
    if run.status == RunStatus.ABORTED:
        typer.echo(typer.style(f"Run {run.run_id}: aborted", fg=_status_color("aborted")))
        raise typer.Exit(exit_code_for(run.status))
    if run.is_terminal:
        typer.echo(f"Run {run.run_id} already {run.status.value}.")
        raise typer.Exit(exit_code_for(run.status))
    typer.echo(f"Abort requested for run {run.run_id}; it stops before its next stage.")


@app.command()
def status(
    project_dir: Path = _PROJECT_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the run as JSON"),
):
    """Show the project's run: status, stages and attempt records."""
    from rich.console import Console
    from rich.table import Table

    engine = _engine(project_dir, create=False)
    try:
        run = engine.status()
    except StateDocumentError as e:
        _fail(str(e))
    if run is None:
        typer.echo("No run in this project.")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(run.model_dump(mode="json"), indent=2))
        return

    typer.echo(f"Run:      {run.run_id}")
    typer.echo(typer.style(f"Status:   {run.status.value}", fg=_status_color(run.status.value)))
    typer.echo(f"Template: {run.template.name}")
    typer.echo(f"Goal:     {run.goal or f'issue #{run.issue}'}")
    if run.branch:
        typer.echo(f"Branch:   {run.branch}")
    if run.pending_gate:
        typer.echo(f"Gate:     waiting for '{run.pending_gate}'")
    typer.echo(f"Cost:     ${run.cost_usd:.2f}")
    if run.error:
        typer.echo(typer.style(f"Error:    {run.error.splitlines()[0]}", fg=typer.colors.RED))

    table = Table(title="Stages")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last duration", justify="right")
    for spec in run.template.stages:
        records = [r for r in run.records if r.stage == spec.id]
        last = records[-1] if records else None
        table.add_row(
            spec.id,
            _stage_status(run, spec.id, spec.enabled),
            str(len(records)),
            _fmt_duration(last.duration_s if last else None),
        )
    Console().print(table)


@app.command()
def templates(project_dir: Path = _PROJECT_OPTION):
    """List built-in and discovered templates."""
    config, _ = _load(create=False)
    search = default_search_dirs(
        Path(project_dir or Path.cwd()), config.pipeline.state_dir_name, config.pipeline.template_dirs
    )
    typer.echo(f"{'NAME':<14} {'SOURCE':<30} DESCRIPTION")
    typer.echo("-" * 80)
    for name, source, description in list_templates(search):
        typer.echo(f"{name:<14} {source[-30:]:<30} {description}")


@app.command()
def show(
    template: str = typer.Argument(..., help="Template name"),
    project_dir: Path = _PROJECT_OPTION,
):
    """Print a template's stages and gates."""
    config, _ = _load(create=False)
    search = default_search_dirs(
        Path(project_dir or Path.cwd()), config.pipeline.state_dir_name, config.pipeline.template_dirs
    )
    try:
        tpl = load_template(template, search)
    except ConfigError as e:
        _fail(str(e))
    typer.echo(f"{tpl.name}: {tpl.description}")
    for spec in tpl.stages:
        marker = "" if spec.enabled else "  (disabled)"
        typer.echo(f"  {spec.id:<10} gate={spec.gate.value}{marker}")


# ----------------------------------------------------------------------
# Daemon
# ----------------------------------------------------------------------


def _build_lifecycle(config: ShipyardConfig, home: HomePaths, repo_dir: Path, install_signals: bool = True):
    from shipyard.scheduler import DaemonLifecycle, ProcessSpawner, Scheduler

    caps = build_capabilities(config, home)
    spawner = ProcessSpawner(repo_dir, home, config, caps.vcs)
    scheduler = Scheduler(config, home, caps.tracker, caps.cost, spawner)
    return DaemonLifecycle(scheduler, install_signals=install_signals)


@daemon_app.command("start")
def daemon_start(
    detach: bool = typer.Option(False, "--detach", "-d", help="Run in the background"),
    once: bool = typer.Option(False, "--once", help="Run a single cycle and exit"),
    project_dir: Path = _PROJECT_OPTION,
):
    """Start the scheduler daemon for a repository."""
    config, home = _load()
    repo_dir = Path(project_dir or Path.cwd()).resolve()

    if detach:
        home.daemon_log.parent.mkdir(parents=True, exist_ok=True)
        cmd = [sys.executable, "-m", "shipyard", "daemon", "start", "--project-dir", str(repo_dir)]
        with home.daemon_log.open("ab") as log:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                env={**os.environ, HOME_ENV: str(home.home)},
            )
        typer.echo(f"Daemon started (PID {proc.pid}). Logs: {home.daemon_log}")
        return

    configure_logging()
    lifecycle = _build_lifecycle(config, home, repo_dir, install_signals=not once)
    try:
        if once:
            state = lifecycle.run_once()
            typer.echo(
                f"Cycle done: ceiling {state.ceiling}, {len(state.active)} active, {len(state.queue)} queued"
            )
        else:
            lifecycle.run()
    except LockError as e:
        _fail(f"Another daemon is running: {e}")


@daemon_app.command("stop")
def daemon_stop(timeout: float = typer.Option(30.0, "--timeout", help="Seconds to wait")):
    """Stop the running daemon (its runs are stopped and requeued)."""
    from shipyard.scheduler import stop_daemon

    _, home = _load(create=False)
    if stop_daemon(home, timeout=timeout):
        typer.echo("Daemon stopped.")
    else:
        _fail(f"Daemon still running after {timeout:.0f}s")


@daemon_app.command("status")
def daemon_status_cmd(as_json: bool = typer.Option(False, "--json", help="Print as JSON")):
    """Show the daemon's ceiling, queue and active jobs."""
    from shipyard.scheduler import daemon_status

    _, home = _load(create=False)
    try:
        info = daemon_status(home)
    except StateDocumentError as e:
        _fail(str(e))

    if as_json:
        typer.echo(json.dumps(info, indent=2))
        return

    state = "running" if info["running"] else "stopped"
    color = typer.colors.GREEN if info["running"] else typer.colors.YELLOW
    typer.echo(typer.style(f"Daemon:   {state}", fg=color) + (f" (PID {info['pid']})" if info["pid"] else ""))
    typer.echo(f"Ceiling:  {info['ceiling']}  breaker: {info['breaker']}")
    if info["last_poll"]:
        typer.echo(f"Polled:   {info['last_poll']}")
    typer.echo(f"Active:   {len(info['active'])}")
    for job in info["active"]:
        typer.echo(f"  #{job['issue']:<6} pid {job['pid']:<7} stage {job.get('stage') or '-'}")
    typer.echo(f"Queued:   {len(info['queue'])}")
    for item in info["queue"]:
        typer.echo(f"  #{item['issue']:<6} score {item['score']:<4} {item['title']}")
