"""Tests for the run progress log."""

from datetime import datetime

from story_pipeline.models import (
    ErrorDetail, EscalationRecord, EscalationSeverity, FaultKind, OutcomeKind,
    PipelineRun, StepName, StepOutcome,
)
from story_pipeline.progress import ProgressLog


class TestProgressLog:
    def test_append_entry(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")

        log.append_entry("run-STORY-1", "run_started", "Starting STORY-1", step="context-assembly")

        content = (tmp_path / "progress.txt").read_text()
        assert "Run: run-STORY-1" in content
        assert "Action: run_started" in content
        assert "Step: context-assembly" in content
        assert "Starting STORY-1" in content

    def test_read_recent_missing_file(self, tmp_path):
        assert ProgressLog(tmp_path / "progress.txt").read_recent() == ""

    def test_read_recent_truncates(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        for i in range(20):
            log.append_entry("run-x", "step_outcome", f"entry {i}")

        recent = log.read_recent(lines=5)

        assert recent.startswith("[... earlier progress truncated ...]")
        assert "entry 19" in recent
        assert "entry 0\n" not in recent

    def test_rotation(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt", rotation_threshold_kb=1)
        (tmp_path / "progress.txt").write_text("x" * 2048)

        log.append_entry("run-x", "run_started", "after rotation")

        archives = log.get_archive_files()
        assert len(archives) == 1
        assert archives[0].read_text() == "x" * 2048
        assert "after rotation" in (tmp_path / "progress.txt").read_text()

    def test_no_rotation_below_threshold(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        log.append_entry("run-x", "run_started", "small")
        log.append_entry("run-x", "run_started", "small")

        assert log.get_archive_files() == []

    def test_log_helpers(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        run = PipelineRun.new("STORY-1")
        now = datetime.now()
        failure = StepOutcome(
            step_name=StepName.CONTEXT_ASSEMBLY, attempt_number=1, started_at=now, ended_at=now,
            outcome=OutcomeKind.RETRYABLE_FAILURE,
            error=ErrorDetail(kind=FaultKind.RETRYABLE, code="RATE_LIMIT", message="slow down"),
        )
        record = EscalationRecord(
            id="esc-1", severity=EscalationSeverity.ESCALATION, subject_run_id=run.id,
            unit_id="STORY-1", step_name=StepName.CONTEXT_ASSEMBLY,
            summary="context-assembly failed", suggested_actions=["Wait for the rate limit window"],
        )

        log.log_run_started(run, resumed=False)
        log.log_step(run, failure)
        log.log_escalation(run, record)
        log.log_run_started(run, resumed=True)

        content = log.read_recent(lines=200)
        assert "Starting STORY-1" in content
        assert "RATE_LIMIT: slow down" in content
        assert "ESCALATION esc-1" in content
        assert "  - Wait for the rate limit window" in content
        assert "Resuming STORY-1 at step context-assembly" in content
