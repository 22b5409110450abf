"""Tests for data models and collaborator contracts."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from story_pipeline.errors import ConfigurationError, InvariantViolation
from story_pipeline.models import (
    CORRECTIVE_STEPS, STEP_SEQUENCE, CheckStatus, CorrectivePass, ErrorDetail,
    FaultKind, OutcomeKind, PipelineConfig, PipelineRun, RunStatus, RunSummary,
    StepName, StepOutcome, StepTimeouts, TestRunResult, run_id_for,
)
from story_pipeline.protocols import AgentRoster


def outcome(step: StepName, attempt: int = 1, kind: OutcomeKind = OutcomeKind.SUCCESS, **kwargs) -> StepOutcome:
    now = datetime.now()
    if kind != OutcomeKind.SUCCESS and "error" not in kwargs:
        kwargs["error"] = ErrorDetail(kind=FaultKind.FATAL, code="X", message="failed")
    return StepOutcome(step_name=step, attempt_number=attempt, started_at=now, ended_at=now, outcome=kind, **kwargs)


class TestRunId:
    def test_slugifies_unit_id(self):
        assert run_id_for("STORY-1") == "run-STORY-1"
        assert run_id_for("team/story 42") == "run-team-story-42"

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            run_id_for(" / ")


class TestStepOutcome:
    def test_failure_requires_error(self):
        now = datetime.now()
        with pytest.raises(ValidationError):
            StepOutcome(
                step_name=StepName.PUBLISH, attempt_number=1, started_at=now, ended_at=now,
                outcome=OutcomeKind.FATAL_FAILURE,
            )

    def test_attempt_number_starts_at_one(self):
        with pytest.raises(ValidationError):
            outcome(StepName.PUBLISH, attempt=0)

    def test_outcomes_are_immutable(self):
        recorded = outcome(StepName.PUBLISH)
        with pytest.raises(ValidationError):
            recorded.outcome = OutcomeKind.FATAL_FAILURE

    def test_duration(self):
        start = datetime(2026, 1, 1, 12, 0, 0)
        recorded = StepOutcome(
            step_name=StepName.PUBLISH, attempt_number=1, started_at=start,
            ended_at=start + timedelta(seconds=90), outcome=OutcomeKind.SUCCESS,
        )
        assert recorded.duration_seconds == 90


class TestPipelineRun:
    def test_new_run_starts_at_first_step(self):
        run = PipelineRun.new("STORY-1")
        assert run.status == RunStatus.PENDING
        assert run.current_step == StepName.CONTEXT_ASSEMBLY
        assert not run.is_terminal

    def test_attempt_numbers_must_increase(self):
        run = PipelineRun.new("STORY-1")
        run.record(outcome(StepName.CONTEXT_ASSEMBLY, 1, OutcomeKind.RETRYABLE_FAILURE))
        with pytest.raises(InvariantViolation):
            run.record(outcome(StepName.CONTEXT_ASSEMBLY, 1))
        run.record(outcome(StepName.CONTEXT_ASSEMBLY, 2))
        assert run.next_attempt_number(StepName.CONTEXT_ASSEMBLY) == 3

    def test_index_never_moves_back(self):
        run = PipelineRun.new("STORY-1")
        run.advance()
        with pytest.raises(InvariantViolation):
            run.advance_to(0)

    def test_index_cannot_pass_end(self):
        run = PipelineRun.new("STORY-1")
        run.advance_to(len(STEP_SEQUENCE))
        assert run.current_step is None
        with pytest.raises(InvariantViolation):
            run.advance()

    def test_latest_artifacts_prefers_newest_success(self):
        run = PipelineRun.new("STORY-1")
        run.record(outcome(StepName.IMPLEMENTATION, 1, artifacts={"files": {"a.py": "1"}}))
        run.record(outcome(StepName.IMPLEMENTATION, 2, OutcomeKind.RETRYABLE_FAILURE))
        run.record(outcome(StepName.IMPLEMENTATION, 3, artifacts={"files": {"a.py": "2"}}))
        assert run.latest_artifacts(StepName.IMPLEMENTATION) == {"files": {"a.py": "2"}}
        assert run.latest_artifacts(StepName.PUBLISH) == {}

    def test_retry_counters(self):
        run = PipelineRun.new("STORY-1")
        assert run.retries_used(StepName.PUBLISH) == 0
        run.count_retry(StepName.PUBLISH)
        assert run.count_retry(StepName.PUBLISH) == 2
        assert run.retry_counters == {"publish": 2}

    def test_completed_requires_every_success(self):
        with pytest.raises(ValidationError):
            PipelineRun(id="run-x", unit_id="x", status=RunStatus.COMPLETED)

        results = [outcome(step) for step in STEP_SEQUENCE]
        run = PipelineRun(
            id="run-x", unit_id="x", status=RunStatus.COMPLETED,
            current_step_index=len(STEP_SEQUENCE), step_results=results,
        )
        assert run.is_terminal

    def test_failed_requires_fatal_final_outcome(self):
        with pytest.raises(ValidationError):
            PipelineRun(id="run-x", unit_id="x", status=RunStatus.FAILED,
                        step_results=[outcome(StepName.CONTEXT_ASSEMBLY)])

        run = PipelineRun(id="run-x", unit_id="x", status=RunStatus.FAILED,
                          step_results=[outcome(StepName.CONTEXT_ASSEMBLY, kind=OutcomeKind.FATAL_FAILURE)])
        assert run.is_terminal

    def test_add_escalation_deduplicates(self):
        run = PipelineRun.new("STORY-1")
        run.add_escalation("esc-1")
        run.add_escalation("esc-1")
        assert run.escalation_ids == ["esc-1"]

    def test_summary(self):
        run = PipelineRun.new("STORY-1")
        run.record(outcome(StepName.CONTEXT_ASSEMBLY))
        run.advance()
        run.add_escalation("esc-1")

        summary = RunSummary.from_run(run, ["esc-1"])

        assert summary.completed_steps == [StepName.CONTEXT_ASSEMBLY]
        assert summary.current_step == StepName.WORKSPACE_SETUP
        assert summary.open_escalations == ["esc-1"]


class TestCorrectivePass:
    def test_remaining_steps(self):
        corrective = CorrectivePass(started=True, completed_steps=[StepName.IMPLEMENTATION])
        assert corrective.remaining_steps() == list(CORRECTIVE_STEPS[1:])
        assert not corrective.completed

    def test_completed(self):
        assert CorrectivePass(started=True, completed_steps=list(CORRECTIVE_STEPS)).completed
        assert not CorrectivePass().completed


class TestConfigModels:
    def test_step_timeouts(self):
        timeouts = StepTimeouts(implementation=10)
        assert timeouts.for_step(StepName.IMPLEMENTATION) == 10
        assert timeouts.for_step(StepName.TEST_GENERATION) == 1800
        assert timeouts.for_step(StepName.CONTEXT_ASSEMBLY) == 300
        assert timeouts.for_step(StepName.VERIFY_AND_MERGE) is None
        for step in STEP_SEQUENCE:
            if step != StepName.VERIFY_AND_MERGE:
                assert timeouts.for_step(step) > 0

    def test_defaults(self):
        config = PipelineConfig()
        assert config.proceed_threshold == 0.85
        assert config.decision.escalation_threshold == 0.75
        assert config.retry.max_attempts == 3
        assert config.ci.max_retriggers == 2
        assert config.delete_checkpoint_on_success is False

    def test_check_status(self):
        assert CheckStatus(status="completed", conclusion="success").is_success
        assert not CheckStatus(status="completed", conclusion="failure").is_success
        assert not CheckStatus(status="in_progress").is_complete

    def test_test_run_result(self):
        assert TestRunResult(passed=3).succeeded
        assert not TestRunResult(passed=3, failed=1).succeeded


class ImplementerStub:
    reasoning_source = "model-a"


class ReviewerStub:
    reasoning_source = "model-b"


class TestAgentRoster:
    def test_distinct_sources_accepted(self):
        roster = AgentRoster(implementer=ImplementerStub(), reviewer=ReviewerStub())
        assert roster.reviewer.reasoning_source == "model-b"

    def test_shared_source_refused(self):
        reviewer = ReviewerStub()
        reviewer.reasoning_source = "model-a"
        with pytest.raises(ConfigurationError):
            AgentRoster(implementer=ImplementerStub(), reviewer=reviewer)

    def test_missing_source_refused(self):
        with pytest.raises(ConfigurationError):
            AgentRoster(implementer=object(), reviewer=ReviewerStub())
