"""Concurrent scheduling of independent units.

Every unit runs on its own asyncio task, at most max_concurrent_runs at a
time. A unit starts once all the units it depends on have completed; a unit
whose run parks or fails holds back everything that depends on it.
"""

import asyncio
from typing import Optional

from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table

from .graph import DependencyGraph
from .models import RunStatus, RunSummary
from .orchestration import PipelineOrchestrator


console = Console()


class ScheduleReport(BaseModel):
    """What happened to each unit in a scheduling pass."""
    completed: list[str] = Field(default_factory=list)
    parked: dict[str, str] = Field(default_factory=dict, description="unit -> run status")
    crashed: dict[str, str] = Field(default_factory=dict, description="unit -> error")
    blocked: dict[str, list[str]] = Field(
        default_factory=dict,
        description="unit -> units that cannot start because of it"
    )
    never_started: list[str] = Field(default_factory=list)


class PipelineScheduler:
    """Runs a dependency graph of units through one orchestrator."""

    def __init__(self, orchestrator: PipelineOrchestrator, max_concurrent: Optional[int] = None):
        self.orchestrator = orchestrator
        self.max_concurrent = max_concurrent or orchestrator.config.max_concurrent_runs
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def _run_one(self, unit_id: str) -> RunSummary:
        async with self._semaphore:
            return await self.orchestrator.start(unit_id)

    async def run_all(self, graph: DependencyGraph) -> ScheduleReport:
        report = ScheduleReport()
        completed: set[str] = set()
        started: set[str] = set()
        stuck: set[str] = set()
        tasks: dict[asyncio.Task, str] = {}

        while True:
            for unit_id in graph.ready_units(completed):
                if unit_id in started:
                    continue
                started.add(unit_id)
                tasks[asyncio.create_task(self._run_one(unit_id))] = unit_id

            if not tasks:
                break

            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                unit_id = tasks.pop(task)
                try:
                    summary = task.result()
                except Exception as e:
                    # Already escalated as critical by the orchestrator
                    report.crashed[unit_id] = f"{type(e).__name__}: {e}"
                    stuck.add(unit_id)
                    continue

                if summary.status == RunStatus.COMPLETED:
                    completed.add(unit_id)
                    report.completed.append(unit_id)
                else:
                    report.parked[unit_id] = summary.status.value
                    stuck.add(unit_id)

        for unit_id in stuck:
            dependents = graph.blocked_by(unit_id)
            if dependents:
                report.blocked[unit_id] = dependents
        report.never_started = [u for u in graph.units if u not in started]

        self._print_report(report)
        return report

    @staticmethod
    def _print_report(report: ScheduleReport) -> None:
        table = Table(title="Schedule")
        table.add_column("Unit")
        table.add_column("Result")
        for unit_id in report.completed:
            table.add_row(unit_id, "[green]completed[/green]")
        for unit_id, status in report.parked.items():
            table.add_row(unit_id, f"[yellow]{status}[/yellow]")
        for unit_id, error in report.crashed.items():
            table.add_row(unit_id, f"[red]crashed: {error}[/red]")
        for unit_id in report.never_started:
            table.add_row(unit_id, "[dim]not started[/dim]")
        console.print(table)
