"""CLI entry points for flowforge."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from flowforge._version import __version__
from flowforge.config.defaults import DEFAULTS, SAMPLE_WORKFLOW
from flowforge.config.loader import ConfigError, ConfigLoader, DefinitionLoader
from flowforge.config.schema import FlowForgeSettings
from flowforge.core.errors import FlowForgeError
from flowforge.core.run import RunStatus, WorkflowRun
from flowforge.observe.events import EventType, RunEvent

app = typer.Typer(
    name="flowforge",
    help="FlowForge — declarative multi-agent workflow runs.",
    no_args_is_help=True,
)
console = Console()

SETTINGS_FILE = "flowforge.yaml"

_state: dict = {"config": None, "data_dir": None, "actor": None}

_STATUS_STYLE = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "cyan",
    RunStatus.BLOCKED: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
}


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, "--config", "-c", help=f"Settings file (default: ./{SETTINGS_FILE})"),
    data_dir: Optional[str] = typer.Option(None, "--data-dir", help="Override storage.path"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Acting user for access checks"),
):
    _state["config"] = config
    _state["data_dir"] = data_dir
    _state["actor"] = actor


def _settings() -> FlowForgeSettings:
    path = _state["config"]
    if path is None and Path(SETTINGS_FILE).exists():
        path = SETTINGS_FILE
    settings = ConfigLoader.load(path)
    if _state["data_dir"]:
        settings.storage.path = _state["data_dir"]
    return settings


def _forge(dry_run: bool | None = None):
    from flowforge.core.forge import FlowForge
    from flowforge.observe.logging import configure_logging

    settings = _settings()
    configure_logging(settings.observe.log_level, settings.observe.log_format)
    return FlowForge.from_settings(settings, dry_run=dry_run)


def _abort(error: Exception) -> None:
    label = "Configuration Error" if isinstance(error, ConfigError) else "Error"
    console.print(f"[red]{label}:[/red] {error}")
    raise typer.Exit(code=1)


def _parse_context(pairs: list[str]) -> dict:
    """Turn ``key=value`` pairs into a dict; values are read as YAML scalars."""
    context: dict = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got '{pair}'", param_hint="--context")
        try:
            context[key] = yaml.safe_load(value) if value else ""
        except yaml.YAMLError:
            context[key] = value
    return context


def _print_event(event: RunEvent) -> None:
    data = event.data
    if event.event_type == EventType.STEP_START:
        console.print(
            f"  [bold]▸[/bold] [cyan]{event.step_id}[/cyan] "
            f"[dim][{data.get('agent')}, attempt {data.get('attempt')}][/dim]"
        )
    elif event.event_type == EventType.STEP_END:
        console.print(f"    [green]✓[/green] {event.step_id}")
    elif event.event_type == EventType.RETRY:
        console.print(
            f"    [yellow]↻ {event.step_id} failed: {data.get('error')}; "
            f"retry {data.get('retry_number')}/{data.get('max_retries')} "
            f"from {data.get('retry_step')}[/yellow]"
        )
    elif event.event_type == EventType.LOOP_ITERATION:
        console.print(f"    [blue]⟳ {event.step_id} iteration {data.get('iteration')}[/blue]")
    elif event.event_type == EventType.GATE_BLOCKED:
        console.print(f"  [yellow]🔔 Waiting at gate {event.step_id}[/yellow]")
    elif event.event_type == EventType.GATE_APPROVED:
        console.print(f"  [green]✓ Gate {event.step_id} approved automatically[/green]")
    elif event.event_type == EventType.RUN_FAILED:
        console.print(f"  [red]✗ {event.step_id}: {data.get('error')}[/red]")


def _print_run(run: WorkflowRun) -> None:
    style = _STATUS_STYLE.get(run.status, "white")
    lines = [
        f"[bold]Run:[/bold] {run.id}",
        f"[bold]Workflow:[/bold] {run.workflow_id} v{run.workflow_version}",
        f"[bold]Task:[/bold] {run.task_id or '—'}",
        f"[bold]Status:[/bold] [{style}]{run.status.value}[/{style}]",
    ]
    if run.current_step:
        lines.append(f"[bold]Current step:[/bold] {run.current_step}")
    if run.gate:
        lines.append(f"[bold]Gate:[/bold] {run.gate.message or run.gate.step_id}")
    if run.error:
        lines.append(f"[bold]Error:[/bold] [red]{run.error}[/red]")
    if run.duration is not None:
        lines.append(f"[bold]Duration:[/bold] {run.duration:.1f}s")
    console.print(Panel("\n".join(lines), border_style=style, expand=False))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Step")
    table.add_column("Type", style="dim")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Iterations", justify="right")
    table.add_column("Error", style="red", overflow="fold")
    for record in run.steps:
        table.add_row(
            record.step_id,
            record.type,
            record.status.value,
            str(record.attempts),
            str(record.retries),
            str(record.iterations),
            (record.error or "")[:120],
        )
    console.print(table)


# ----------------------------------------------------------------------
# Commands


@app.command()
def init(
    directory: str = typer.Argument(..., help="Project directory to create"),
):
    """Create a project with default settings and a sample workflow."""
    project_dir = Path(directory)
    if project_dir.exists() and any(project_dir.iterdir()):
        console.print(f"[red]Error:[/red] Directory '{directory}' already exists and is not empty.")
        raise typer.Exit(code=1)

    workflows_dir = project_dir / DEFAULTS["storage"]["path"] / "workflows"
    workflows_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / SETTINGS_FILE).write_text(yaml.safe_dump(DEFAULTS, sort_keys=False), encoding="utf-8")
    (workflows_dir / "feature-dev.yml").write_text(SAMPLE_WORKFLOW, encoding="utf-8")
    (project_dir / ".gitignore").write_text(".flowforge/runs/\n.env\n__pycache__/\n", encoding="utf-8")

    console.print(
        Panel(
            f"[bold green]✅ Project '{directory}' created![/bold green]\n\n"
            f"[bold]Next steps:[/bold]\n"
            f"  cd {directory}\n"
            f"  export OPENAI_API_KEY=your-key  [dim]# or run with --dry-run[/dim]\n"
            f"  flowforge run feature-dev --task TASK-1",
            title="⚡ FlowForge",
            border_style="green",
        )
    )


@app.command()
def validate(
    path: str = typer.Argument(..., help="Workflow YAML file"),
):
    """Validate a workflow file without saving it."""
    try:
        definition = DefinitionLoader.load(path)
    except ConfigError as e:
        console.print(f"[red]❌ Validation failed:[/red]\n{e}")
        raise typer.Exit(code=1)

    console.print(f"[green]✅ {path} is valid![/green]")
    console.print(f"  Workflow: {definition.id} ({definition.name}) v{definition.version}")
    console.print(f"  Agents: {', '.join(a.id for a in definition.agents)}")
    console.print(f"  Steps: {' → '.join(f'{s.id} [{s.type}]' for s in definition.steps)}")


@app.command()
def apply(
    path: str = typer.Argument(..., help="Workflow YAML file"),
):
    """Validate a workflow file and save it to the store as-is."""
    try:
        definition = DefinitionLoader.load(path)
        forge = _forge()
        try:
            asyncio.run(forge.definitions.save(definition, actor=_state["actor"]))
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)
    console.print(f"[green]✅ Saved {definition.id} v{definition.version}[/green]")


@app.command()
def workflows():
    """List stored workflow definitions."""
    try:
        forge = _forge()
        try:
            valid, errors = asyncio.run(forge.definitions.list_with_errors())
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)

    table = Table(title="Workflows", show_header=True, header_style="bold cyan")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Version", justify="right")
    table.add_column("Steps", justify="right")
    for definition in valid:
        table.add_row(definition.id, definition.name, str(definition.version), str(len(definition.steps)))
    console.print(table)

    for workflow_id, error in errors.items():
        console.print(f"[yellow]⚠ Skipped invalid workflow '{workflow_id}':[/yellow] {error}")


@app.command()
def run(
    workflow_id: str = typer.Argument(..., help="Workflow to run"),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Task id the run belongs to"),
    context: list[str] = typer.Option([], "--context", "-x", help="Initial context as key=value"),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Simulate agents instead of calling models"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Prompt at gates instead of stopping"),
):
    """Start a run and drive it until it finishes or blocks."""
    initial = _parse_context(context)
    if task is not None:
        initial.setdefault("task", task)
    actor = _state["actor"]

    try:
        forge = _forge(dry_run=True if dry_run else None)
    except ConfigError as e:
        _abort(e)

    forge.event_bus.subscribe_sync(_print_event)
    console.print(f"\n[bold]⚡ FlowForge[/bold] v{__version__} — {workflow_id}")
    if forge.settings.runner.dry_run:
        console.print("[yellow]🔍 DRY RUN MODE — agents will be simulated[/yellow]")

    async def _go() -> WorkflowRun:
        result = await forge.runs.start_run(workflow_id, task_id=task, context=initial, actor=actor)
        while interactive and result.status == RunStatus.BLOCKED:
            from flowforge.control.approval import GatePrompter

            decision = await asyncio.to_thread(GatePrompter(console).ask, result)
            if not decision.approved:
                return await forge.runs.force_fail(
                    result.id, reason=f"Gate rejected: {decision.reason}", actor=actor
                )
            result = await forge.runs.resume_run(result.id, context=decision.context, actor=actor)
        return result

    try:
        result = asyncio.run(_go())
    except (ConfigError, FlowForgeError) as e:
        _abort(e)
    finally:
        forge.close()

    console.print()
    _print_run(result)
    if result.status == RunStatus.BLOCKED:
        console.print(f"[dim]Resume with: flowforge resume {result.id}[/dim]")
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def resume(
    run_id: str = typer.Argument(...),
    context: list[str] = typer.Option([], "--context", "-x", help="Context to merge, as key=value"),
):
    """Approve the gate a blocked run is waiting at and continue it."""
    extra = _parse_context(context)
    try:
        forge = _forge()
        forge.event_bus.subscribe_sync(_print_event)
        try:
            result = asyncio.run(forge.runs.resume_run(run_id, context=extra, actor=_state["actor"]))
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)

    _print_run(result)
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def runs(
    status: Optional[RunStatus] = typer.Option(None, "--status", "-s"),
    workflow: Optional[str] = typer.Option(None, "--workflow", "-w"),
    task: Optional[str] = typer.Option(None, "--task", "-t"),
):
    """List runs, newest first."""
    try:
        forge = _forge()
        try:
            found = asyncio.run(forge.runs.list_runs(task_id=task, workflow_id=workflow, status=status))
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)

    table = Table(title="Runs", show_header=True, header_style="bold cyan")
    table.add_column("Run")
    table.add_column("Workflow")
    table.add_column("Task", style="dim")
    table.add_column("Status")
    table.add_column("Step", style="dim")
    table.add_column("Started", style="dim")
    for item in found:
        style = _STATUS_STYLE.get(item.status, "white")
        table.add_row(
            item.id,
            f"{item.workflow_id} v{item.workflow_version}",
            item.task_id or "—",
            f"[{style}]{item.status.value}[/{style}]",
            item.current_step or "—",
            item.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def show(
    run_id: str = typer.Argument(...),
):
    """Show one run with its step records and context."""
    try:
        forge = _forge()
        try:
            found = asyncio.run(forge.runs.require_run(run_id))
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)

    _print_run(found)
    if found.context:
        console.print_json(data=found.context, default=str)


@app.command()
def fail(
    run_id: str = typer.Argument(...),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the run is being failed"),
):
    """Force a non-terminal run into the failed state."""
    try:
        forge = _forge()
        try:
            result = asyncio.run(forge.runs.force_fail(run_id, reason=reason, actor=_state["actor"]))
        finally:
            forge.close()
    except (ConfigError, FlowForgeError) as e:
        _abort(e)

    console.print(f"[yellow]Run {result.id} marked failed.[/yellow]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8420, "--port", "-p"),
):
    """Start the HTTP API server."""
    import uvicorn

    from flowforge.dashboard.app import create_app

    try:
        forge = _forge()
    except ConfigError as e:
        _abort(e)

    console.print(f"[bold]⚡ FlowForge API[/bold] — http://{host}:{port}/api")
    try:
        uvicorn.run(create_app(forge, recover=True), host=host, port=port, log_level="info")
    finally:
        forge.close()


@app.command()
def version():
    """Show FlowForge version."""
    console.print(f"⚡ FlowForge v{__version__}")


if __name__ == "__main__":
    app()
