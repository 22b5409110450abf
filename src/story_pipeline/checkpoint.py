"""Checkpoint persistence for pipeline runs.

Each run is stored as two siblings in the state directory:

    <run_id>.json   authoritative, validated on load
    <run_id>.md     human-readable rendering for operators

Both are written atomically. The JSON file is written first; if it cannot
be written the previous checkpoint stays valid and CheckpointWriteError is
raised. The Markdown file is derived, so failing to write it only warns.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError
from rich.console import Console

from .errors import CheckpointWriteError, InvariantViolation
from .fileio import atomic_write_text, temp_files_for
from .git_manager import GitManager
from .models import STEP_SEQUENCE, OutcomeKind, PipelineRun


console = Console()


class VersionHistory(Protocol):
    def record(self, paths: list[Path], message: str) -> Optional[str]:
        ...


class GitVersionHistory:
    """Commits checkpoint files to the git repository containing them."""

    def __init__(self, repo_path: Path):
        self.git = GitManager(repo_path)

    def record(self, paths: list[Path], message: str) -> Optional[str]:
        if not self.git.is_git_repo():
            console.print(f"[yellow]Version history skipped: {self.git.repo_path} is not a git repository[/yellow]")
            return None
        self.git.stage(paths)
        return self.git.commit(message, paths=paths)


def render_markdown(run: PipelineRun) -> str:
    """Human-readable view of a run."""
    lines = [
        f"# Pipeline run {run.id}",
        "",
        f"- **Unit:** {run.unit_id}",
        f"- **Status:** {run.status.value}",
        f"- **Current step:** {run.current_step.value if run.current_step else 'done'}",
        f"- **Started:** {run.started_at.isoformat(timespec='seconds')}",
    ]
    if run.last_checkpoint_at:
        lines.append(f"- **Last checkpoint:** {run.last_checkpoint_at.isoformat(timespec='seconds')}")
    if run.finished_at:
        lines.append(f"- **Finished:** {run.finished_at.isoformat(timespec='seconds')}")
    if run.escalation_ids:
        lines.append(f"- **Escalations:** {', '.join(run.escalation_ids)}")

    lines += ["", "## Steps", "", "| Step | Attempts | Retries | Result |", "|---|---|---|---|"]
    for step in STEP_SEQUENCE:
        outcomes = run.outcomes_for(step)
        result = outcomes[-1].outcome.value if outcomes else "-"
        lines.append(f"| {step.value} | {len(outcomes)} | {run.retries_used(step)} | {result} |")

    if run.step_results:
        lines += ["", "## History", ""]
        for outcome in run.step_results:
            line = (
                f"- `{outcome.ended_at.isoformat(timespec='seconds')}` {outcome.step_name.value} "
                f"#{outcome.attempt_number}: {outcome.outcome.value}"
            )
            if outcome.outcome != OutcomeKind.SUCCESS and outcome.error:
                line += f" ({outcome.error.code}: {outcome.error.message})"
            lines.append(line)

    return "\n".join(lines) + "\n"


class CheckpointStore:
    """Saves and loads PipelineRun checkpoints.

    Loaded runs are cached per run id and revalidated against the JSON
    file's modification time, so an external edit is picked up on the next
    load. Callers always get a copy; mutating it never touches the cache.

    Args:
        state_dir: Directory holding the checkpoint files
        version_history: Optional hook called after every successful save
    """

    def __init__(self, state_dir: Path, version_history: Optional[VersionHistory] = None):
        self.state_dir = Path(state_dir)
        self.version_history = version_history
        self._cache: dict[str, tuple[PipelineRun, int]] = {}

    def json_path(self, run_id: str) -> Path:
        return self.state_dir / f"{run_id}.json"

    def markdown_path(self, run_id: str) -> Path:
        return self.state_dir / f"{run_id}.md"

    def save(self, run: PipelineRun) -> None:
        """Persist a run and stamp its last_checkpoint_at.

        Raises:
            InvariantViolation: the run is inconsistent, or its step index
                went backwards since the last save
            CheckpointWriteError: the JSON file could not be written
        """
        cached = self._cache.get(run.id)
        if cached and run.current_step_index < cached[0].current_step_index:
            raise InvariantViolation(
                f"Run {run.id} step index went back from {cached[0].current_step_index} "
                f"to {run.current_step_index}"
            )

        run.last_checkpoint_at = datetime.now()
        try:
            snapshot = PipelineRun.model_validate(run.model_dump())
        except ValidationError as e:
            raise InvariantViolation(f"Refusing to checkpoint inconsistent run {run.id}: {e}") from e

        path = self.json_path(run.id)
        try:
            atomic_write_text(path, snapshot.model_dump_json(indent=2))
        except OSError as e:
            raise CheckpointWriteError(f"Could not write checkpoint for {run.id}: {e}", str(path)) from e

        self._cache[run.id] = (snapshot, path.stat().st_mtime_ns)

        md_path = self.markdown_path(run.id)
        try:
            atomic_write_text(md_path, render_markdown(snapshot))
        except OSError as e:
            console.print(f"[yellow]Warning: Could not write {md_path.name}: {e}[/yellow]")

        if self.version_history is not None:
            try:
                self.version_history.record(
                    [path, md_path],
                    f"checkpoint: {run.id} {snapshot.status.value} at step {snapshot.current_step_index}",
                )
            except Exception as e:
                console.print(f"[yellow]Warning: Checkpoint version history failed: {e}[/yellow]")

    def load(self, run_id: str) -> Optional[PipelineRun]:
        """Load a run, or None if absent or unreadable."""
        path = self.json_path(run_id)
        try:
            mtime = path.stat().st_mtime_ns
        except FileNotFoundError:
            self._cache.pop(run_id, None)
            return None

        cached = self._cache.get(run_id)
        if cached and cached[1] == mtime:
            return cached[0].model_copy(deep=True)

        try:
            run = PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            console.print(f"[red]Invalid checkpoint {path.name}, ignoring it: {e}[/red]")
            self._cache.pop(run_id, None)
            return None

        self._cache[run_id] = (run, mtime)
        return run.model_copy(deep=True)

    def delete(self, run_id: str) -> bool:
        """Remove a run's checkpoint files, and any temp files a crash left behind.

        Returns True if anything was removed.
        """
        removed = False
        for path in (self.json_path(run_id), self.markdown_path(run_id)):
            for leftover in [path] + temp_files_for(path):
                try:
                    leftover.unlink()
                    removed = True
                except FileNotFoundError:
                    pass
        self._cache.pop(run_id, None)
        return removed

    def list_runs(self) -> list[PipelineRun]:
        """Every loadable run in the state directory."""
        if not self.state_dir.exists():
            return []
        runs = []
        for path in sorted(self.state_dir.glob("*.json")):
            run = self.load(path.stem)
            if run is not None:
                runs.append(run)
        return runs

    def clear_cache(self) -> None:
        self._cache.clear()
