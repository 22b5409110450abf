"""CLI interface for the story pipeline."""

import asyncio
import importlib
import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .checkpoint import CheckpointStore
from .errors import ConfigurationError, CycleError, EscalationNotFoundError
from .escalation import EscalationSink
from .graph import DependencyGraph
from .models import EscalationSeverity, RunStatus, RunSummary, run_id_for
from .orchestration import PipelineOrchestrator, RunCancellation
from .progress import ProgressLog
from .protocols import Collaborators
from .scheduler import PipelineScheduler
from .workspace import PipelineHome


console = Console()

STATUS_COLORS = {
    RunStatus.PENDING: "white",
    RunStatus.RUNNING: "cyan",
    RunStatus.PAUSED: "yellow",
    RunStatus.AWAITING_ESCALATION: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
}

SEVERITY_COLORS = {
    EscalationSeverity.WARNING: "yellow",
    EscalationSeverity.ESCALATION: "red",
    EscalationSeverity.CRITICAL: "bold red",
}


def load_collaborators(spec: str, project_path: Path) -> Collaborators:
    """Import 'package.module:factory' and call factory(project_path)."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Expected module:factory, got '{spec}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import collaborators module '{module_name}': {e}") from e

    factory = getattr(module, attr, None)
    if factory is None:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'")

    collaborators = factory(project_path)
    if not isinstance(collaborators, Collaborators):
        raise ConfigurationError(f"{spec} returned {type(collaborators).__name__}, expected Collaborators")
    return collaborators


def _print_summary(summary: RunSummary) -> None:
    color = STATUS_COLORS.get(summary.status, "white")
    table = Table(title=f"Run {summary.run_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Unit", summary.unit_id)
    table.add_row("Status", f"[{color}]{summary.status.value}[/{color}]")
    table.add_row("Current step", summary.current_step.value if summary.current_step else "-")
    table.add_row("Completed steps", str(len(summary.completed_steps)))
    table.add_row("Attempts", str(summary.total_attempts))
    if summary.retry_counters:
        table.add_row("Retries", ", ".join(f"{k}={v}" for k, v in summary.retry_counters.items()))
    if summary.open_escalations:
        table.add_row("Open escalations", "\n".join(summary.open_escalations))
    table.add_row("Started", summary.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    if summary.finished_at:
        table.add_row("Finished", summary.finished_at.strftime("%Y-%m-%d %H:%M:%S"))
    console.print(table)


@click.group()
@click.version_option()
def main():
    """Story pipeline - drive units of work from context to merge."""
    pass


@main.command()
@click.argument('unit_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.',
              help='Project directory holding .pipeline/')
@click.option('--collaborators', 'collaborators_spec', required=True,
              help='Factory returning Collaborators, as package.module:function')
def run(unit_id: str, project_path: str, collaborators_spec: str):
    """Run or resume UNIT_ID.

    The factory is called with the project path and must return a
    story_pipeline.protocols.Collaborators.
    """
    path = Path(project_path)
    orchestrator = PipelineOrchestrator.for_project(path, load_collaborators(collaborators_spec, path))
    orchestrator.cancellation.setup_signal_handlers()

    try:
        summary = asyncio.run(orchestrator.start(unit_id))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise

    _print_summary(summary)


def _load_graph(graph_file: Path) -> DependencyGraph:
    try:
        mapping = json.loads(graph_file.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read dependency graph {graph_file}: {e}")
    if not isinstance(mapping, dict) or not all(isinstance(deps, list) for deps in mapping.values()):
        raise click.ClickException("Dependency graph must map each unit to a list of units it depends on")
    try:
        return DependencyGraph.from_mapping(mapping)
    except CycleError as e:
        raise click.ClickException(str(e))


@main.command('run-all')
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.',
              help='Project directory holding .pipeline/')
@click.option('--collaborators', 'collaborators_spec', required=True,
              help='Factory returning Collaborators, as package.module:function')
@click.option('--max-concurrent', type=click.IntRange(min=1), default=None,
              help='Concurrent runs (default: max_concurrent_runs from config)')
def run_all(graph_file: str, project_path: str, collaborators_spec: str, max_concurrent: Optional[int]):
    """Run every unit in GRAPH_FILE, respecting dependencies.

    GRAPH_FILE is a JSON object mapping each unit id to the list of unit
    ids it depends on.
    """
    graph = _load_graph(Path(graph_file))
    path = Path(project_path)
    orchestrator = PipelineOrchestrator.for_project(
        path, load_collaborators(collaborators_spec, path), graph=graph
    )
    orchestrator.cancellation.setup_signal_handlers()

    try:
        report = asyncio.run(PipelineScheduler(orchestrator, max_concurrent).run_all(graph))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return

    if report.crashed:
        raise click.ClickException(f"{len(report.crashed)} unit(s) crashed: {', '.join(report.crashed)}")


@main.command()
@click.argument('unit_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
def status(unit_id: str, project_path: str):
    """Show the status of UNIT_ID's run."""
    home = PipelineHome(Path(project_path))
    run = CheckpointStore(home.state_dir).load(run_id_for(unit_id))
    if run is None:
        console.print(f"[yellow]No run recorded for {unit_id}[/yellow]")
        return

    sink = EscalationSink(home.escalations_dir, notifiers=[])
    open_ids = {r.id for r in sink.list_open(unit_id)}
    _print_summary(RunSummary.from_run(run, [e for e in run.escalation_ids if e in open_ids]))


@main.command()
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--all', 'include_resolved', is_flag=True, help='Include resolved escalations')
@click.option('--unit', 'unit_id', help='Only escalations for this unit')
def escalations(project_path: str, include_resolved: bool, unit_id: Optional[str]):
    """List escalations (open only by default)."""
    home = PipelineHome(Path(project_path))
    sink = EscalationSink(home.escalations_dir, notifiers=[])
    records = sink.list(unit_id=unit_id, include_resolved=include_resolved)

    if not records:
        console.print("[green]No escalations[/green]")
        return

    table = Table(title="Escalations")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Unit")
    table.add_column("Step")
    table.add_column("Summary")
    table.add_column("Created")
    table.add_column("Resolved")

    for r in records:
        color = SEVERITY_COLORS[r.severity]
        table.add_row(
            r.id,
            f"[{color}]{r.severity.value}[/{color}]",
            r.unit_id,
            r.step_name.value if r.step_name else "-",
            r.summary,
            r.created_at.strftime("%Y-%m-%d %H:%M"),
            r.resolved_at.strftime("%Y-%m-%d %H:%M") if r.resolved_at else "-",
        )

    console.print(table)


@main.command()
@click.argument('escalation_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--note', help='Resolution note recorded with the escalation')
def resolve(escalation_id: str, project_path: str, note: Optional[str]):
    """Resolve ESCALATION_ID so its run can resume."""
    home = PipelineHome(Path(project_path))
    sink = EscalationSink(home.escalations_dir, notifiers=[])
    try:
        record = sink.resolve(escalation_id, note)
    except EscalationNotFoundError:
        raise click.ClickException(f"No escalation '{escalation_id}'")

    console.print(f"Unit [cyan]{record.unit_id}[/cyan] can be resumed with 'story-pipeline run {record.unit_id}'")


@main.command()
@click.argument('unit_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--collaborators', 'collaborators_spec',
              help='Factory returning Collaborators; needed to cancel a parked run right away')
@click.option('--reason', default='Cancelled by operator', help='Reason recorded with the cancellation')
def cancel(unit_id: str, project_path: str, collaborators_spec: Optional[str], reason: str):
    """Cancel UNIT_ID's run.

    A running run stops after its current step. A parked run is cancelled
    immediately when --collaborators is given, otherwise on its next start.
    """
    path = Path(project_path)
    if collaborators_spec:
        orchestrator = PipelineOrchestrator.for_project(path, load_collaborators(collaborators_spec, path))
        summary = asyncio.run(orchestrator.cancel(unit_id, reason))
        if summary is None:
            console.print(f"[yellow]No run recorded for {unit_id}[/yellow]")
            return
        _print_summary(summary)
        return

    home = PipelineHome(path)
    stop_file = RunCancellation(home.stop_dir).request(unit_id, reason)
    console.print(f"[yellow]Stop requested for {unit_id}[/yellow] ({stop_file})")


@main.command()
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--lines', default=50, help='Number of recent lines to show')
def progress(project_path: str, lines: int):
    """Show recent entries from the run progress log."""
    log = ProgressLog(PipelineHome(Path(project_path)).progress_file)
    content = log.read_recent(lines)
    if not content:
        console.print("[yellow]No progress yet. Run 'story-pipeline run' to start.[/yellow]")
        return
    console.print(content)


@main.command()
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
def serve(project_path: str, host: str, port: int):
    """Serve the status and escalation API."""
    from .api import run_server

    path = Path(project_path)
    console.print("[bold]Starting story pipeline API[/bold]")
    console.print(f"Project: {path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_server(path, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == '__main__':
    main()
