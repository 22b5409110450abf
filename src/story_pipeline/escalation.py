"""Escalation storage and notification.

Each escalation is one JSON file, esc-<uuid>.json, in the escalations
directory. One file per record means concurrent runs never contend for the
same file, and records are resolved in place rather than deleted so the
directory doubles as an audit trail.

A record is always persisted before anyone is notified: a notifier that
crashes cannot lose an escalation.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from .errors import EscalationNotFoundError
from .fileio import atomic_write_text
from .models import EscalationMetrics, EscalationRecord, EscalationSeverity, StepName


console = Console()

_SEVERITY_STYLE = {
    EscalationSeverity.WARNING: "yellow",
    EscalationSeverity.ESCALATION: "red",
    EscalationSeverity.CRITICAL: "bold red",
}


class Notifier(Protocol):
    def notify(self, record: EscalationRecord) -> None:
        ...


class ConsoleNotifier:
    """Prints escalations as a rich panel."""

    def __init__(self, output: Optional[Console] = None):
        self.output = output or console

    def notify(self, record: EscalationRecord) -> None:
        style = _SEVERITY_STYLE[record.severity]
        actions = "\n".join(f"  {i}. {a}" for i, a in enumerate(record.suggested_actions, 1))
        step = record.step_name.value if record.step_name else "-"
        self.output.print(Panel(
            f"[{style}]{record.summary}[/{style}]\n\n"
            f"Unit: {record.unit_id}\n"
            f"Step: {step}\n"
            f"Run: {record.subject_run_id}\n\n"
            f"Suggested actions:\n{actions}",
            title=f"{record.severity.value.upper()} {record.id}",
        ))


class DesktopNotifier:
    """Desktop notifications through plyer.

    Fails silently if plyer is not installed.
    """

    def notify(self, record: EscalationRecord) -> None:
        try:
            from plyer import notification
        except ImportError:
            # plyer not installed, skip desktop notifications
            return

        notification.notify(
            title=f"Story pipeline: {record.severity.value}",
            message=f"{record.unit_id}: {record.summary}"[:256],
            app_name="Story Pipeline",
            timeout=10,
        )


class EscalationSink:
    """Durable escalation store with best-effort notification.

    Args:
        escalations_dir: Directory holding one JSON file per record
        notifiers: Called after each record is persisted
    """

    def __init__(self, escalations_dir: Path, notifiers: Optional[list[Notifier]] = None):
        self.escalations_dir = Path(escalations_dir)
        self.notifiers = list(notifiers) if notifiers is not None else [ConsoleNotifier()]

    @staticmethod
    def new_id() -> str:
        return f"esc-{uuid.uuid4()}"

    def _path(self, escalation_id: str) -> Path:
        return self.escalations_dir / f"{escalation_id}.json"

    def _write(self, record: EscalationRecord) -> None:
        atomic_write_text(self._path(record.id), record.model_dump_json(indent=2))

    def _read(self, path: Path) -> Optional[EscalationRecord]:
        try:
            return EscalationRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            console.print(f"[yellow]Warning: Could not load escalation {path.name}: {e}[/yellow]")
            return None

    def raise_escalation(self, record: EscalationRecord) -> EscalationRecord:
        """Persist a record, then notify. Returns the stored record."""
        if self._path(record.id).exists():
            raise ValueError(f"Escalation {record.id} already exists")

        self._write(record)

        for notifier in self.notifiers:
            try:
                notifier.notify(record)
            except Exception as e:
                console.print(f"[yellow]Escalation notifier {type(notifier).__name__} failed: {e}[/yellow]")

        return record

    def get(self, escalation_id: str) -> EscalationRecord:
        """Raises EscalationNotFoundError if no such record exists."""
        path = self._path(escalation_id)
        record = self._read(path) if path.exists() else None
        if record is None:
            raise EscalationNotFoundError(escalation_id)
        return record

    def list_open(self, unit_id: Optional[str] = None) -> list[EscalationRecord]:
        return self.list(unit_id=unit_id, include_resolved=False)

    def has_open_critical(self, unit_id: str) -> bool:
        return any(r.severity == EscalationSeverity.CRITICAL for r in self.list_open(unit_id))

    def resolve(self, escalation_id: str, resolution: Optional[str] = None) -> EscalationRecord:
        """Mark a record resolved. Resolving twice keeps the first resolution."""
        record = self.get(escalation_id)
        if not record.is_open:
            return record

        resolved = record.model_copy(update={
            "resolved_at": datetime.now(),
            "resolution": resolution,
        })
        self._write(resolved)
        console.print(f"[green]Resolved escalation {escalation_id}[/green]")
        return resolved

    def metrics(self) -> EscalationMetrics:
        records = self.list()
        resolved = [r for r in records if not r.is_open]

        by_severity: dict[str, int] = {}
        by_step: dict[str, int] = {}
        for record in records:
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
            step = record.step_name.value if isinstance(record.step_name, StepName) else "none"
            by_step[step] = by_step.get(step, 0) + 1

        average = 0.0
        if resolved:
            average = sum(
                (r.resolved_at - r.created_at).total_seconds() for r in resolved
            ) / len(resolved)

        return EscalationMetrics(
            total=len(records),
            open=len(records) - len(resolved),
            resolved=len(resolved),
            average_resolution_seconds=average,
            by_severity=by_severity,
            by_step=by_step,
        )

    def list(
        self,
        unit_id: Optional[str] = None,
        include_resolved: bool = True,
        severity: Optional[EscalationSeverity] = None,
    ) -> list[EscalationRecord]:
        """Records, oldest first."""
        if not self.escalations_dir.exists():
            return []

        records = []
        for path in self.escalations_dir.glob("esc-*.json"):
            record = self._read(path)
            if record is None:
                continue
            if unit_id is not None and record.unit_id != unit_id:
                continue
            if not include_resolved and not record.is_open:
                continue
            if severity is not None and record.severity != severity:
                continue
            records.append(record)

        records.sort(key=lambda r: (r.created_at, r.id))
        return records
