"""Run progress log.

A plain-text, append-only log of what every run did: starts, each step
outcome, escalations and completions. Operators tail it to follow the
pipeline; it is never parsed back by the pipeline itself.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import EscalationRecord, OutcomeKind, PipelineRun, StepOutcome


class ProgressLog:
    """Appends human-readable entries to the progress file.

    Supports rotation once the file exceeds a size threshold, archiving
    the old file next to it.
    """

    def __init__(self, progress_file: Path, rotation_threshold_kb: int = 512):
        self.progress_file = Path(progress_file)
        self.rotation_threshold_kb = rotation_threshold_kb

    def read_recent(self, lines: int = 50) -> str:
        """Read only the last lines of the log."""
        if not self.progress_file.exists():
            return ""

        content = self.progress_file.read_text(encoding="utf-8", errors="replace")
        all_lines = content.strip().split("\n")

        if len(all_lines) <= lines:
            return content

        return "\n".join(["[... earlier progress truncated ...]\n"] + all_lines[-lines:])

    def append_entry(self, run_id: str, action: str, summary: str, step: Optional[str] = None) -> None:
        """Append an entry to the file."""
        self._maybe_rotate()
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        lines = [
            f"\n{'='*60}",
            f"[{timestamp}] Run: {run_id}",
            f"Action: {action}",
        ]
        if step:
            lines.append(f"Step: {step}")
        lines.append(f"\n{summary}")
        lines.append("")

        self.progress_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.progress_file, "a", encoding="utf-8") as f:
            f.write("\n".join(lines))

    def log_run_started(self, run: PipelineRun, resumed: bool) -> None:
        if resumed:
            step = run.current_step.value if run.current_step else "finalize"
            summary = f"Resuming {run.unit_id} at step {step} ({len(run.step_results)} outcomes recorded)"
        else:
            summary = f"Starting {run.unit_id}"
        self.append_entry(run.id, "run_resumed" if resumed else "run_started", summary)

    def log_step(self, run: PipelineRun, outcome: StepOutcome) -> None:
        summary = f"Attempt {outcome.attempt_number}: {outcome.outcome.value} in {outcome.duration_seconds:.1f}s"
        if outcome.outcome != OutcomeKind.SUCCESS and outcome.error:
            summary += f"\n{outcome.error.code}: {outcome.error.message}"
        self.append_entry(run.id, "step_outcome", summary, step=outcome.step_name.value)

    def log_escalation(self, run: PipelineRun, record: EscalationRecord) -> None:
        summary = f"{record.severity.value.upper()} {record.id}: {record.summary}\n\nSuggested actions:\n" + "\n".join(
            f"  - {a}" for a in record.suggested_actions
        )
        step = record.step_name.value if record.step_name else None
        self.append_entry(run.id, "escalation_raised", summary, step=step)

    def log_run_finished(self, run: PipelineRun) -> None:
        self.append_entry(run.id, f"run_{run.status.value}", f"{run.unit_id} finished as {run.status.value}")

    def _maybe_rotate(self) -> bool:
        """Archive the log if it grew past the threshold.

        Returns:
            True if rotation was performed, False otherwise
        """
        if not self.progress_file.exists():
            return False
        if self.progress_file.stat().st_size / 1024 < self.rotation_threshold_kb:
            return False

        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        archive = self.progress_file.with_name(f"{self.progress_file.stem}-archive-{timestamp}.txt")
        self.progress_file.replace(archive)
        return True

    def get_archive_files(self) -> list[Path]:
        """Archived logs, oldest first."""
        pattern = f"{self.progress_file.stem}-archive-*.txt"
        return sorted(self.progress_file.parent.glob(pattern))
