"""Data models for the story pipeline.

Uses Pydantic for validation. Checkpoints are JSON so a crashed or
hand-edited state file is rejected on load instead of half-trusted.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvariantViolation


class RunStatus(str, Enum):
    """Lifecycle status of a pipeline run."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_ESCALATION = "awaiting-escalation"
    COMPLETED = "completed"
    FAILED = "failed"


class StepName(str, Enum):
    """The fixed steps of a story run, in execution order."""
    CONTEXT_ASSEMBLY = "context-assembly"
    WORKSPACE_SETUP = "workspace-setup"
    IMPLEMENTATION = "implementation"
    TEST_GENERATION = "test-generation-and-execution"
    SELF_REVIEW = "self-review"
    INDEPENDENT_REVIEW = "independent-review"
    REVIEW_DECISION = "review-decision"
    PUBLISH = "publish"
    VERIFY_AND_MERGE = "verify-and-merge"
    CLEANUP = "cleanup"
    FINALIZE = "finalize"


STEP_SEQUENCE: tuple[StepName, ...] = tuple(StepName)

# Steps re-executed by the review gate's corrective pass
CORRECTIVE_STEPS: tuple[StepName, ...] = (
    StepName.IMPLEMENTATION,
    StepName.TEST_GENERATION,
    StepName.SELF_REVIEW,
    StepName.INDEPENDENT_REVIEW,
)


class OutcomeKind(str, Enum):
    """Terminal outcome of a single step attempt."""
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


class FaultKind(str, Enum):
    """Classification of a failure.

    LOW_CONFIDENCE is not a fault: it marks a decision below threshold and
    is handled like an escalation trigger.
    """
    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    LOW_CONFIDENCE = "low-confidence"


class DecisionSource(str, Enum):
    """Which tier of the decision engine produced an answer."""
    KNOWLEDGE_BASE = "knowledge-base"
    REASONING_TIER = "reasoning-tier"


class EscalationSeverity(str, Enum):
    """How urgently an escalation needs attention.

    WARNING: log and continue
    ESCALATION: pause the affected run
    CRITICAL: stop accepting new work for the affected unit
    """
    WARNING = "warning"
    ESCALATION = "escalation"
    CRITICAL = "critical"


# =============================================================================
# Step outcomes and runs
# =============================================================================

class ErrorDetail(BaseModel):
    """Structured failure information attached to a step outcome."""
    model_config = ConfigDict(frozen=True)

    kind: FaultKind
    code: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    cause_chain: list[str] = Field(default_factory=list)


class StepOutcome(BaseModel):
    """One concluded attempt at a step.

    Outcomes are immutable once recorded. A correction is a new outcome
    with a higher attempt number, never an edit.
    """
    model_config = ConfigDict(frozen=True)

    step_name: StepName
    attempt_number: int = Field(..., ge=1)
    started_at: datetime
    ended_at: datetime
    outcome: OutcomeKind
    error: Optional[ErrorDetail] = None
    artifacts: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _failures_carry_error(self) -> "StepOutcome":
        if self.outcome != OutcomeKind.SUCCESS and self.error is None:
            raise ValueError(f"{self.outcome.value} outcome for {self.step_name.value} needs an error")
        return self

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


class CorrectivePass(BaseModel):
    """Progress of the review gate's single corrective pass."""
    started: bool = False
    feedback: list[str] = Field(
        default_factory=list,
        description="Review findings handed back to the implementer"
    )
    completed_steps: list[StepName] = Field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.started and all(s in self.completed_steps for s in CORRECTIVE_STEPS)

    def remaining_steps(self) -> list[StepName]:
        return [s for s in CORRECTIVE_STEPS if s not in self.completed_steps]


def run_id_for(unit_id: str) -> str:
    """Stable run id for a unit of work, safe to use as a file name."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", unit_id.strip()).strip("-.")
    if not slug:
        raise ValueError(f"Cannot derive a run id from unit id {unit_id!r}")
    return f"run-{slug}"


class PipelineRun(BaseModel):
    """Durable state of one end-to-end pipeline execution."""
    id: str
    unit_id: str
    status: RunStatus = RunStatus.PENDING
    current_step_index: int = Field(default=0, ge=0, le=len(STEP_SEQUENCE))
    step_results: list[StepOutcome] = Field(default_factory=list)
    retry_counters: dict[str, int] = Field(default_factory=dict)
    escalation_ids: list[str] = Field(default_factory=list)
    corrective_pass: CorrectivePass = Field(default_factory=CorrectivePass)
    ci_retriggers: int = 0

    started_at: datetime = Field(default_factory=datetime.now)
    last_checkpoint_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def new(cls, unit_id: str) -> "PipelineRun":
        return cls(id=run_id_for(unit_id), unit_id=unit_id)

    @model_validator(mode="after")
    def _status_invariants(self) -> "PipelineRun":
        if self.status == RunStatus.COMPLETED:
            missing = [s.value for s in STEP_SEQUENCE if not self.has_success(s)]
            if missing:
                raise ValueError(f"Run {self.id} is completed but has no success for: {', '.join(missing)}")
        if self.status == RunStatus.FAILED:
            last = self.step_results[-1] if self.step_results else None
            if last is None or last.outcome != OutcomeKind.FATAL_FAILURE:
                raise ValueError(f"Run {self.id} is failed but its final outcome is not fatal")
        return self

    # -------------------------------------------------------------------------
    # Step bookkeeping
    # -------------------------------------------------------------------------

    @property
    def current_step(self) -> Optional[StepName]:
        if self.current_step_index >= len(STEP_SEQUENCE):
            return None
        return STEP_SEQUENCE[self.current_step_index]

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)

    def outcomes_for(self, step: StepName) -> list[StepOutcome]:
        return [o for o in self.step_results if o.step_name == step]

    def has_success(self, step: StepName) -> bool:
        return any(o.outcome == OutcomeKind.SUCCESS for o in self.outcomes_for(step))

    def next_attempt_number(self, step: StepName) -> int:
        return len(self.outcomes_for(step)) + 1

    def latest_artifacts(self, step: StepName) -> dict[str, Any]:
        """Artifacts of the most recent successful attempt at a step."""
        for outcome in reversed(self.step_results):
            if outcome.step_name == step and outcome.outcome == OutcomeKind.SUCCESS:
                return dict(outcome.artifacts)
        return {}

    def record(self, outcome: StepOutcome) -> None:
        """Append an outcome. Attempt numbers per step must strictly increase."""
        previous = self.outcomes_for(outcome.step_name)
        if previous and outcome.attempt_number <= previous[-1].attempt_number:
            raise InvariantViolation(
                f"Attempt {outcome.attempt_number} for {outcome.step_name.value} "
                f"does not follow attempt {previous[-1].attempt_number}"
            )
        self.step_results.append(outcome)

    def retries_used(self, step: StepName) -> int:
        return self.retry_counters.get(step.value, 0)

    def count_retry(self, step: StepName) -> int:
        self.retry_counters[step.value] = self.retries_used(step) + 1
        return self.retry_counters[step.value]

    def advance_to(self, index: int) -> None:
        if index < self.current_step_index:
            raise InvariantViolation(
                f"Run {self.id} cannot move back from step {self.current_step_index} to {index}"
            )
        if index > len(STEP_SEQUENCE):
            raise InvariantViolation(f"Step index {index} is past the end of the pipeline")
        self.current_step_index = index

    def advance(self) -> None:
        self.advance_to(self.current_step_index + 1)

    def add_escalation(self, escalation_id: str) -> None:
        if escalation_id not in self.escalation_ids:
            self.escalation_ids.append(escalation_id)


class RunSummary(BaseModel):
    """Read-only view of a run for CLIs and dashboards."""
    run_id: str
    unit_id: str
    status: RunStatus
    current_step: Optional[StepName] = None
    completed_steps: list[StepName] = Field(default_factory=list)
    total_attempts: int = 0
    retry_counters: dict[str, int] = Field(default_factory=dict)
    open_escalations: list[str] = Field(default_factory=list)
    started_at: datetime
    last_checkpoint_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: PipelineRun, open_escalations: Optional[list[str]] = None) -> "RunSummary":
        return cls(
            run_id=run.id,
            unit_id=run.unit_id,
            status=run.status,
            current_step=run.current_step,
            completed_steps=[s for s in STEP_SEQUENCE if run.has_success(s)],
            total_attempts=len(run.step_results),
            retry_counters=dict(run.retry_counters),
            open_escalations=open_escalations or [],
            started_at=run.started_at,
            last_checkpoint_at=run.last_checkpoint_at,
            finished_at=run.finished_at,
        )


# =============================================================================
# Decisions and escalations
# =============================================================================

class Decision(BaseModel):
    """An answer produced by the confidence decision engine."""
    question: str
    answer: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: DecisionSource
    reasoning: str
    requires_escalation: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)
    context: dict[str, Any] = Field(default_factory=dict)


class EscalationRecord(BaseModel):
    """A durable request for human attention.

    Records are resolved, never deleted, so the store doubles as an audit trail.
    """
    id: str
    created_at: datetime = Field(default_factory=datetime.now)
    severity: EscalationSeverity
    subject_run_id: str
    unit_id: str
    step_name: Optional[StepName] = None
    summary: str = Field(..., min_length=1)
    suggested_actions: list[str] = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Escalation summary cannot be blank")
        return value

    @field_validator("suggested_actions")
    @classmethod
    def _actions_not_blank(cls, value: list[str]) -> list[str]:
        actions = [a for a in value if a and a.strip()]
        if not actions:
            raise ValueError("Escalation needs at least one suggested action")
        return actions

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class EscalationMetrics(BaseModel):
    """Aggregate escalation statistics."""
    total: int = 0
    open: int = 0
    resolved: int = 0
    average_resolution_seconds: float = 0.0
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_step: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Collaborator results
# =============================================================================

class WorkspaceHandle(BaseModel):
    """An exclusively owned working area for one unit."""
    unit_id: str
    path: str
    created_at: datetime = Field(default_factory=datetime.now)


class ImplementationResult(BaseModel):
    files: dict[str, str] = Field(default_factory=dict, description="Relative path -> file content")
    notes: str = ""


class TestGenerationResult(BaseModel):
    __test__ = False  # keep pytest from collecting this

    test_files: dict[str, str] = Field(default_factory=dict)
    summary: str = ""


class SelfReviewResult(BaseModel):
    confidence: float = Field(..., ge=0.0, le=1.0)
    findings: list[str] = Field(default_factory=list)


class IndependentReviewResult(BaseModel):
    confidence: float = Field(..., ge=0.0, le=1.0)
    critical_findings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class TestRunResult(BaseModel):
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    coverage: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


class PublishResult(BaseModel):
    url: str
    id: str


class CheckStatus(BaseModel):
    """Aggregate CI state for a publication."""
    status: str = Field(..., description="queued, in_progress or completed")
    conclusion: Optional[str] = Field(
        default=None,
        description="success, failure, cancelled, timed_out... once completed"
    )

    @property
    def is_complete(self) -> bool:
        return self.status == "completed"

    @property
    def is_success(self) -> bool:
        return self.is_complete and self.conclusion in ("success", "neutral", "skipped")


class MergeResult(BaseModel):
    merged_sha: str


# =============================================================================
# Configuration
# =============================================================================

class RetryConfig(BaseModel):
    """Exponential backoff settings shared by every step."""
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=32.0, ge=0.0)
    max_attempts: int = Field(
        default=3,
        ge=0,
        description="Retries allowed per step before escalating"
    )
    jitter_factor: float = Field(
        default=0.2,
        description="Random jitter factor (0.2 = +/- 20%)"
    )
    resource_exhaustion_initial_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Initial delay used instead when a resource is exhausted"
    )

    @field_validator("jitter_factor")
    @classmethod
    def _jitter_required(cls, value: float) -> float:
        if not 0.0 < value < 1.0:
            raise ValueError("jitter_factor must be between 0 and 1 (exclusive); jitter cannot be disabled")
        return value


class DecisionConfig(BaseModel):
    """Confidence decision engine settings."""
    escalation_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    knowledge_paths: list[str] = Field(
        default_factory=list,
        description="Reference documents or directories consulted before reasoning"
    )
    relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    knowledge_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    temperature: float = Field(default=0.3, ge=0.0)
    max_tokens: int = Field(default=1000, gt=0)
    fallback_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    min_reasoning_chars: int = Field(default=50, ge=0)


class StepTimeouts(BaseModel):
    """Wall-clock budget per step, in seconds."""
    context_assembly: float = 300.0
    workspace_setup: float = 120.0
    implementation: float = 1800.0
    test_generation: float = 1800.0
    self_review: float = 600.0
    independent_review: float = 900.0
    review_decision: float = 300.0
    publish: float = 300.0
    cleanup: float = 120.0
    finalize: float = 60.0

    def for_step(self, step: StepName) -> Optional[float]:
        """Budget for a step; verify-and-merge is bounded by CIConfig instead."""
        if step == StepName.VERIFY_AND_MERGE:
            return None
        field = {
            StepName.TEST_GENERATION: "test_generation",
        }.get(step, step.value.replace("-", "_"))
        return getattr(self, field)


class CIConfig(BaseModel):
    """Polling settings for verify-and-merge."""
    poll_interval_seconds: float = Field(default=30.0, gt=0.0)
    poll_jitter_factor: float = Field(default=0.1, ge=0.0, lt=1.0)
    timeout_seconds: float = Field(default=1800.0, gt=0.0, description="Ceiling for the whole wait")
    max_retriggers: int = Field(default=2, ge=0, description="Re-runs of failed checks before escalating")
    merge_timeout_seconds: float = Field(default=300.0, gt=0.0)


class PipelineConfig(BaseModel):
    """Configuration for a pipeline installation."""
    retry: RetryConfig = Field(default_factory=RetryConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    timeouts: StepTimeouts = Field(default_factory=StepTimeouts)
    ci: CIConfig = Field(default_factory=CIConfig)

    proceed_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Confidence the review decision needs before publishing"
    )
    auto_merge: bool = Field(default=True, description="Merge once checks pass")
    delete_checkpoint_on_success: bool = Field(
        default=False,
        description="Remove checkpoint files after a completed run (retained by default)"
    )
    enable_version_history: bool = Field(
        default=False,
        description="Commit checkpoint files to git after each save"
    )
    enable_desktop_notifications: bool = Field(default=False)
    max_concurrent_runs: int = Field(default=4, ge=1)
