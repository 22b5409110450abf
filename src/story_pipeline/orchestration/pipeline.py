"""The pipeline orchestrator.

Drives one unit of work through the fixed step sequence, checkpointing
after every outcome so a crashed or parked run resumes exactly where it
stopped:

    context-assembly -> workspace-setup -> implementation
    -> test-generation-and-execution -> self-review -> independent-review
    -> review-decision -> publish -> verify-and-merge -> cleanup -> finalize

Each step's collaborator call is classified at the step boundary. Expected
failures travel as a StepResult; only programmer errors and checkpoint
write failures escape a step.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.panel import Panel

from ..checkpoint import CheckpointStore, GitVersionHistory
from ..classifier import ErrorClass, ErrorClassifier, cause_chain
from ..config import load_config
from ..decision import ConfidenceDecisionEngine
from ..errors import MalformedArtifactFault, PipelineProgrammerError, StepTimeoutFault
from ..escalation import ConsoleNotifier, DesktopNotifier, EscalationSink
from ..graph import DependencyGraph
from ..ledger import FileStatusLedger
from ..models import (
    CorrectivePass, ErrorDetail, EscalationRecord, EscalationSeverity, FaultKind,
    IndependentReviewResult, OutcomeKind, PipelineConfig, PipelineRun, RunStatus,
    RunSummary, SelfReviewResult, StepName, StepOutcome, WorkspaceHandle, run_id_for,
)
from ..progress import ProgressLog
from ..protocols import Collaborators
from ..retry import RetryPolicy
from ..workspace import PipelineHome
from .ci import CIMonitor
from .recovery import RunCancellation
from .review import ReviewGate


console = Console()


@dataclass
class StepResult:
    """What a step executor produced: artifacts on success, an ErrorClass otherwise."""
    artifacts: dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorClass] = None

    @classmethod
    def ok(cls, artifacts: Optional[dict[str, Any]] = None) -> "StepResult":
        return cls(artifacts=dict(artifacts or {}))

    @classmethod
    def fail(cls, error: ErrorClass) -> "StepResult":
        return cls(error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PipelineOrchestrator:
    """Runs, resumes and cancels pipeline runs.

    Single Responsibility: sequence the steps and apply the retry, review
    and escalation policy. Collaborators do the actual work and the stores
    own the durable state.

    Args:
        collaborators: External agents and services
        checkpoints: Durable run state
        escalations: Durable escalation records
        config: Pipeline configuration
        decision_engine: Used by the review gate (built from config if omitted)
        retry_policy: Backoff policy (built from config if omitted)
        classifier: Fault classifier
        progress: Optional human-readable run log
        cancellation: Stop requests (in-memory only if omitted)
        graph: Optional unit dependencies, used to report newly ready units
        sleep: Awaitable sleep used for backoff and CI polling
    """

    def __init__(
        self,
        collaborators: Collaborators,
        checkpoints: CheckpointStore,
        escalations: EscalationSink,
        config: Optional[PipelineConfig] = None,
        decision_engine: Optional[ConfidenceDecisionEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        progress: Optional[ProgressLog] = None,
        cancellation: Optional[RunCancellation] = None,
        graph: Optional[DependencyGraph] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ci_monitor: Optional[CIMonitor] = None,
    ):
        self.collaborators = collaborators
        self.checkpoints = checkpoints
        self.escalations = escalations
        self.config = config or PipelineConfig()
        self.classifier = classifier or ErrorClassifier(
            self.config.retry.resource_exhaustion_initial_delay_seconds
        )
        self.retry_policy = retry_policy or RetryPolicy(self.config.retry)
        self.decision_engine = decision_engine or ConfidenceDecisionEngine(
            backend=collaborators.reasoning,
            config=self.config.decision,
            retry_policy=self.retry_policy,
            classifier=self.classifier,
            sleep=sleep,
        )
        self.review_gate = ReviewGate(self.decision_engine, self.config.proceed_threshold)
        self.progress = progress
        self.cancellation = cancellation or RunCancellation()
        self.graph = graph
        self._sleep = sleep
        self.ci_monitor = ci_monitor or CIMonitor(
            collaborators.publisher, self.config.ci, self.classifier, sleep=sleep
        )
        self._active: set[str] = set()

        self._executors: dict[StepName, Callable[[PipelineRun], Awaitable[StepResult]]] = {
            StepName.CONTEXT_ASSEMBLY: self._assemble_context,
            StepName.WORKSPACE_SETUP: self._setup_workspace,
            StepName.IMPLEMENTATION: self._implement,
            StepName.TEST_GENERATION: self._generate_and_run_tests,
            StepName.SELF_REVIEW: self._self_review,
            StepName.INDEPENDENT_REVIEW: self._independent_review,
            StepName.REVIEW_DECISION: self._decide_review,
            StepName.PUBLISH: self._publish,
            StepName.VERIFY_AND_MERGE: self._verify_and_merge,
            StepName.CLEANUP: self._cleanup,
            StepName.FINALIZE: self._finalize,
        }

    @classmethod
    def for_project(
        cls,
        project_path: Path,
        collaborators: Collaborators,
        config: Optional[PipelineConfig] = None,
        **kwargs: Any,
    ) -> "PipelineOrchestrator":
        """Wire an orchestrator to a project's .pipeline/ directory."""
        home = PipelineHome(project_path)
        home.ensure_structure()
        config = config or load_config(home.config_file)

        notifiers = [ConsoleNotifier()]
        if config.enable_desktop_notifications:
            notifiers.append(DesktopNotifier())

        if collaborators.ledger is None:
            collaborators.ledger = FileStatusLedger(home.ledger_file)

        history = GitVersionHistory(home.project_path) if config.enable_version_history else None
        return cls(
            collaborators=collaborators,
            checkpoints=CheckpointStore(home.state_dir, version_history=history),
            escalations=EscalationSink(home.escalations_dir, notifiers=notifiers),
            config=config,
            progress=ProgressLog(home.progress_file),
            cancellation=kwargs.pop("cancellation", None) or RunCancellation(home.stop_dir),
            **kwargs,
        )

    # =========================================================================
    # Facade
    # =========================================================================

    async def start(self, unit_id: str) -> RunSummary:
        """Run or resume a unit at a process boundary.

        Anything that escapes the run is recorded as a critical escalation
        for the unit before being re-raised.
        """
        try:
            run = await self.run(unit_id)
        except Exception as e:
            self._escalate_crash(unit_id, e)
            raise
        return self._summary(run)

    def status(self, unit_id: str) -> Optional[RunSummary]:
        run = self.checkpoints.load(run_id_for(unit_id))
        if run is None:
            return None
        return self._summary(run)

    def list_escalations(self, include_resolved: bool = False) -> list[EscalationRecord]:
        return self.escalations.list(include_resolved=include_resolved)

    async def cancel(self, unit_id: str, reason: str = "Cancelled by operator") -> Optional[RunSummary]:
        """Cancel a run.

        A run executing elsewhere stops at its next step boundary; a parked
        or pending run is cancelled immediately without resuming it.
        """
        run = self.checkpoints.load(run_id_for(unit_id))
        if run is None or run.is_terminal:
            return self._summary(run) if run else None

        if unit_id in self._active or run.status == RunStatus.RUNNING:
            self.cancellation.request(unit_id, reason)
            console.print(f"[yellow]Stop requested for {unit_id}; it will stop after its current step[/yellow]")
            return self._summary(run)

        await self._cancel_run(run, reason)
        return self._summary(run)

    def _summary(self, run: PipelineRun) -> RunSummary:
        open_ids = {r.id for r in self.escalations.list_open(run.unit_id)}
        return RunSummary.from_run(run, [e for e in run.escalation_ids if e in open_ids])

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self, unit_id: str) -> PipelineRun:
        """Execute a unit's run from its first incomplete step.

        Returns the run in its final state for this invocation: completed,
        failed, or awaiting-escalation. Re-running a completed or failed run
        is a no-op.
        """
        run = self.checkpoints.load(run_id_for(unit_id))
        resumed = run is not None
        if run is None:
            run = PipelineRun.new(unit_id)

        if run.is_terminal:
            console.print(f"[dim]Run {run.id} already {run.status.value}; nothing to do[/dim]")
            return run

        if resumed and self.cancellation.is_requested(unit_id):
            await self._cancel_run(run, self.cancellation.reason(unit_id))
            return run

        if self.escalations.has_open_critical(unit_id):
            console.print(f"[red]{unit_id} has an open critical escalation; not starting work[/red]")
            return run

        if run.status == RunStatus.AWAITING_ESCALATION:
            blocking = self._blocking_escalations(run)
            if blocking:
                console.print(f"[yellow]{unit_id} is waiting on escalation(s): {', '.join(blocking)}[/yellow]")
                return run

        self._active.add(unit_id)
        try:
            return await self._drive(run, resumed)
        finally:
            self._active.discard(unit_id)

    def _blocking_escalations(self, run: PipelineRun) -> list[str]:
        return [
            r.id for r in self.escalations.list_open(run.unit_id)
            if r.id in run.escalation_ids and r.severity != EscalationSeverity.WARNING
        ]

    async def _drive(self, run: PipelineRun, resumed: bool) -> PipelineRun:
        run.status = RunStatus.RUNNING
        self._checkpoint(run)
        self._update_ledger(run.unit_id, "in-progress")
        if self.progress:
            self.progress.log_run_started(run, resumed)

        console.print(Panel(
            f"Unit: {run.unit_id}\n"
            f"Run: {run.id}\n"
            f"Step: {run.current_step.value if run.current_step else 'done'}",
            title="Resuming run" if resumed else "Starting run",
        ))

        while run.current_step is not None:
            step = run.current_step

            if self.cancellation.is_requested(run.unit_id):
                await self._cancel_run(run, self.cancellation.reason(run.unit_id))
                return run

            if run.has_success(step):
                # Completed before a crash or an earlier invocation
                run.advance()
                continue

            if not await self._settle_step(run, step):
                return run

            run.advance()
            self._checkpoint(run)

        run.status = RunStatus.COMPLETED
        run.finished_at = datetime.now()
        self._checkpoint(run)
        if self.progress:
            self.progress.log_run_finished(run)
        console.print(f"[green]Run {run.id} completed[/green]")

        if self.config.delete_checkpoint_on_success:
            self.checkpoints.delete(run.id)
        return run

    async def _settle_step(self, run: PipelineRun, step: StepName) -> bool:
        """Execute a step until it succeeds or the run parks.

        Returns:
            True once the step has a success outcome, False if the run parked
        """
        while True:
            if step == StepName.REVIEW_DECISION:
                if run.corrective_pass.started and not run.corrective_pass.completed:
                    # Interrupted corrective pass
                    if not await self._run_corrective_pass(run):
                        return False

                approval = self._review_approval(run)
                if approval is not None:
                    self._record(run, step, OutcomeKind.SUCCESS, datetime.now(),
                                 artifacts={"approved_by_escalation": approval})
                    return True

            started = datetime.now()
            result = await self._execute(run, step)

            if result.succeeded:
                self._record(run, step, OutcomeKind.SUCCESS, started, artifacts=result.artifacts)
                return True

            error_class = result.error

            if error_class.kind == FaultKind.LOW_CONFIDENCE and not run.corrective_pass.started:
                self._record(run, step, OutcomeKind.RETRYABLE_FAILURE, started, error=error_class)
                run.corrective_pass = CorrectivePass(
                    started=True, feedback=list(error_class.context.get("findings", []))
                )
                self._checkpoint(run)
                console.print("[yellow]Review gate rejected the change; starting the corrective pass[/yellow]")
                if not await self._run_corrective_pass(run):
                    return False
                continue

            retries = run.retries_used(step)
            if self.retry_policy.should_retry(retries, error_class):
                self._record(run, step, OutcomeKind.RETRYABLE_FAILURE, started, error=error_class)
                run.count_retry(step)
                self._checkpoint(run)

                delay = self.retry_policy.next_delay(retries, error_class)
                console.print(
                    f"[yellow]Retry {retries + 1}/{self.retry_policy.max_attempts}[/yellow] "
                    f"{step.value} - Error: {error_class.code} - Waiting {delay:.1f}s..."
                )
                await self._sleep(delay)
                continue

            self._record(run, step, OutcomeKind.FATAL_FAILURE, started, error=error_class)
            self._park(run, step, error_class)
            return False

    async def _run_corrective_pass(self, run: PipelineRun) -> bool:
        for step in run.corrective_pass.remaining_steps():
            if not await self._settle_step(run, step):
                return False
            run.corrective_pass.completed_steps.append(step)
            self._checkpoint(run)
        return True

    def _review_approval(self, run: PipelineRun) -> Optional[str]:
        """Id of a resolved review escalation newer than the last review outcome.

        Resolving the escalation raised by the review gate approves
        publication; to reject, cancel the run instead.
        """
        outcomes = run.outcomes_for(StepName.REVIEW_DECISION)
        if not outcomes or outcomes[-1].outcome != OutcomeKind.FATAL_FAILURE:
            return None
        last = outcomes[-1]
        if last.error is None or last.error.kind != FaultKind.LOW_CONFIDENCE:
            return None

        for escalation_id in reversed(run.escalation_ids):
            try:
                record = self.escalations.get(escalation_id)
            except KeyError:
                continue
            if record.step_name == StepName.REVIEW_DECISION and not record.is_open:
                if record.resolved_at >= last.ended_at:
                    return record.id
        return None

    async def _execute(self, run: PipelineRun, step: StepName) -> StepResult:
        """Run a step's executor within its time budget and classify any fault."""
        executor = self._executors[step]
        budget = self.config.timeouts.for_step(step)
        try:
            if budget is None:
                return await executor(run)
            try:
                return await asyncio.wait_for(executor(run), timeout=budget)
            except asyncio.TimeoutError as e:
                raise StepTimeoutFault(step.value, budget) from e
        except PipelineProgrammerError:
            raise
        except Exception as e:
            error_class = self.classifier.classify(e)
            if error_class.kind == FaultKind.RECOVERABLE:
                console.print(f"[dim]{step.value}: {error_class.message}; treating as done[/dim]")
                return StepResult.ok({**error_class.recovered, "recovered": True})
            return StepResult.fail(error_class)

    def _record(
        self,
        run: PipelineRun,
        step: StepName,
        outcome: OutcomeKind,
        started: datetime,
        artifacts: Optional[dict[str, Any]] = None,
        error: Optional[ErrorClass] = None,
    ) -> StepOutcome:
        recorded = StepOutcome(
            step_name=step,
            attempt_number=run.next_attempt_number(step),
            started_at=started,
            ended_at=datetime.now(),
            outcome=outcome,
            error=error.to_detail() if error else None,
            artifacts=artifacts or {},
        )
        run.record(recorded)
        if self.progress:
            self.progress.log_step(run, recorded)
        return recorded

    def _checkpoint(self, run: PipelineRun) -> None:
        self.checkpoints.save(run)

    def _update_ledger(self, unit_id: str, status: str) -> None:
        ledger = self.collaborators.ledger
        if ledger is None:
            return
        try:
            ledger.update_status(unit_id, status)
        except Exception as e:
            console.print(f"[yellow]Warning: Status ledger update failed for {unit_id}: {e}[/yellow]")

    # =========================================================================
    # Escalation
    # =========================================================================

    def _attempt_history(self, run: PipelineRun, step: StepName) -> list[dict[str, Any]]:
        return [
            {
                "attempt": o.attempt_number,
                "outcome": o.outcome.value,
                "code": o.error.code if o.error else None,
                "message": o.error.message if o.error else None,
                "ended_at": o.ended_at.isoformat(),
            }
            for o in run.outcomes_for(step)
        ]

    def _raise(
        self,
        run: PipelineRun,
        step: Optional[StepName],
        severity: EscalationSeverity,
        summary: str,
        actions: list[str],
        context: dict[str, Any],
    ) -> EscalationRecord:
        record = self.escalations.raise_escalation(EscalationRecord(
            id=self.escalations.new_id(),
            severity=severity,
            subject_run_id=run.id,
            unit_id=run.unit_id,
            step_name=step,
            summary=summary,
            suggested_actions=actions,
            context=context,
        ))
        run.add_escalation(record.id)
        if self.progress:
            self.progress.log_escalation(run, record)
        return record

    def _park(self, run: PipelineRun, step: StepName, error_class: ErrorClass) -> None:
        """Escalate a failed step and park the run until a human resolves it."""
        severity = EscalationSeverity.CRITICAL if error_class.is_security else EscalationSeverity.ESCALATION
        self._raise(
            run,
            step,
            severity,
            summary=f"{step.value} failed for {run.unit_id}: {error_class.code}: {error_class.message}",
            actions=list(error_class.suggested_actions),
            context={
                "error_code": error_class.code,
                "error_kind": error_class.kind.value,
                "is_security": error_class.is_security,
                "retry_attempts": run.retries_used(step),
                "attempts": len(run.outcomes_for(step)),
                "attempt_history": self._attempt_history(run, step),
                "cause_chain": list(error_class.cause_chain),
                **error_class.context,
            },
        )
        run.status = RunStatus.AWAITING_ESCALATION
        self._checkpoint(run)
        self._update_ledger(run.unit_id, "blocked")

    def _escalate_crash(self, unit_id: str, exc: Exception) -> None:
        """Record an exception that escaped a run as a critical escalation."""
        run = self.checkpoints.load(run_id_for(unit_id)) or PipelineRun.new(unit_id)
        try:
            self._raise(
                run,
                run.current_step,
                EscalationSeverity.CRITICAL,
                summary=f"Run for {unit_id} crashed with {type(exc).__name__}: {exc}",
                actions=[
                    "Inspect the traceback in the pipeline output",
                    "Fix the underlying bug or configuration, then resolve this escalation to allow new work",
                ],
                context={
                    "exception_type": type(exc).__name__,
                    "cause_chain": list(cause_chain(exc)),
                },
            )
        except Exception as e:
            console.print(f"[red]Could not record crash escalation for {unit_id}: {e}[/red]")

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def _cancel_run(self, run: PipelineRun, reason: str) -> None:
        step = run.current_step or StepName.FINALIZE
        now = datetime.now()
        run.record(StepOutcome(
            step_name=step,
            attempt_number=run.next_attempt_number(step),
            started_at=now,
            ended_at=now,
            outcome=OutcomeKind.FATAL_FAILURE,
            error=ErrorDetail(kind=FaultKind.FATAL, code="CANCELLED", message=reason),
        ))

        handle = self._workspace_handle(run, required=False)
        if handle is not None and not run.has_success(StepName.CLEANUP):
            try:
                await self.collaborators.workspaces.destroy(handle)
            except Exception as e:
                console.print(f"[yellow]Warning: Could not destroy workspace for {run.unit_id}: {e}[/yellow]")

        run.status = RunStatus.FAILED
        run.finished_at = datetime.now()
        self._checkpoint(run)
        self._update_ledger(run.unit_id, "cancelled")
        self.cancellation.clear(run.unit_id)
        if self.progress:
            self.progress.log_run_finished(run)
        console.print(f"[yellow]Run {run.id} cancelled: {reason}[/yellow]")

    # =========================================================================
    # Step executors
    # =========================================================================

    @staticmethod
    def _artifact(run: PipelineRun, step: StepName, key: str) -> Any:
        artifacts = run.latest_artifacts(step)
        if key not in artifacts:
            raise MalformedArtifactFault(
                f"Artifact '{key}' from {step.value} is missing",
                {"step": step.value, "key": key},
            )
        return artifacts[key]

    def _workspace_handle(self, run: PipelineRun, required: bool = True) -> Optional[WorkspaceHandle]:
        artifacts = run.latest_artifacts(StepName.WORKSPACE_SETUP)
        if "workspace" not in artifacts:
            if required:
                raise MalformedArtifactFault("No workspace recorded for this run", {"step": "workspace-setup"})
            return None
        return WorkspaceHandle.model_validate(artifacts["workspace"])

    async def _assemble_context(self, run: PipelineRun) -> StepResult:
        context = await self.collaborators.context_assembler.assemble(run.unit_id)
        return StepResult.ok({"context": context})

    async def _setup_workspace(self, run: PipelineRun) -> StepResult:
        handle = await self.collaborators.workspaces.create(run.unit_id)
        return StepResult.ok({"workspace": handle.model_dump(mode="json")})

    async def _implement(self, run: PipelineRun) -> StepResult:
        context = dict(self._artifact(run, StepName.CONTEXT_ASSEMBLY, "context"))
        if run.corrective_pass.started:
            context["review_feedback"] = list(run.corrective_pass.feedback)
        result = await self.collaborators.agents.implementer.implement(context)
        return StepResult.ok(result.model_dump(mode="json"))

    async def _generate_and_run_tests(self, run: PipelineRun) -> StepResult:
        files = self._artifact(run, StepName.IMPLEMENTATION, "files")
        tests = await self.collaborators.agents.implementer.write_tests(files)
        results = await self.collaborators.test_runner.run(self._workspace_handle(run))

        if not results.succeeded:
            return StepResult.fail(ErrorClass.retryable(
                "TESTS_FAILED",
                f"{results.failed} test(s) failed, {results.passed} passed",
                context={"results": results.model_dump(mode="json")},
            ))
        return StepResult.ok({**tests.model_dump(mode="json"), "results": results.model_dump(mode="json")})

    async def _self_review(self, run: PipelineRun) -> StepResult:
        files = self._artifact(run, StepName.IMPLEMENTATION, "files")
        review = await self.collaborators.agents.implementer.self_review(files)
        return StepResult.ok(review.model_dump(mode="json"))

    async def _independent_review(self, run: PipelineRun) -> StepResult:
        files = self._artifact(run, StepName.IMPLEMENTATION, "files")
        tests = self._artifact(run, StepName.TEST_GENERATION, "test_files")
        self_review = SelfReviewResult.model_validate(run.latest_artifacts(StepName.SELF_REVIEW))
        review = await self.collaborators.agents.reviewer.review(files, tests, self_review)
        return StepResult.ok(review.model_dump(mode="json"))

    async def _decide_review(self, run: PipelineRun) -> StepResult:
        self_review = SelfReviewResult.model_validate(run.latest_artifacts(StepName.SELF_REVIEW))
        independent = IndependentReviewResult.model_validate(run.latest_artifacts(StepName.INDEPENDENT_REVIEW))
        test_results = self._artifact(run, StepName.TEST_GENERATION, "results")

        verdict = await self.review_gate.evaluate(self_review, independent, test_results)
        if verdict.proceed:
            return StepResult.ok(verdict.to_artifacts())

        return StepResult.fail(ErrorClass.low_confidence(
            "REVIEW_REJECTED",
            "; ".join(verdict.reasons),
            context={
                "findings": verdict.findings,
                "decision_confidence": verdict.decision.confidence,
                "combined_review_confidence": verdict.combined_confidence,
            },
            suggested_actions=(
                "Review the findings and the change in the workspace",
                "Resolve this escalation to approve publication, or cancel the run to reject it",
            ),
        ))

    async def _publish(self, run: PipelineRun) -> StepResult:
        metadata = {
            "unit_id": run.unit_id,
            "run_id": run.id,
            "notes": run.latest_artifacts(StepName.IMPLEMENTATION).get("notes", ""),
            "review": run.latest_artifacts(StepName.REVIEW_DECISION),
        }
        result = await self.collaborators.publisher.publish(self._workspace_handle(run), metadata)
        return StepResult.ok(result.model_dump(mode="json"))

    async def _verify_and_merge(self, run: PipelineRun) -> StepResult:
        publication_id = self._artifact(run, StepName.PUBLISH, "id")

        def spend_retrigger() -> None:
            run.ci_retriggers += 1
            self._checkpoint(run)

        checks = await self.ci_monitor.wait_for_checks(publication_id, run.ci_retriggers, spend_retrigger)
        artifacts: dict[str, Any] = {"checks": checks.model_dump(mode="json")}
        if not self.config.auto_merge:
            return StepResult.ok({**artifacts, "merged": False})

        merged = await self.ci_monitor.merge(publication_id)
        return StepResult.ok({**artifacts, "merged": True, **merged.model_dump(mode="json")})

    async def _cleanup(self, run: PipelineRun) -> StepResult:
        handle = self._workspace_handle(run, required=False)
        if handle is None:
            return StepResult.ok({"workspace_destroyed": False})
        try:
            await self.collaborators.workspaces.destroy(handle)
        except PipelineProgrammerError:
            raise
        except Exception as e:
            console.print(f"[yellow]Warning: Could not destroy workspace {handle.path}: {e}[/yellow]")
            record = self._raise(
                run,
                StepName.CLEANUP,
                EscalationSeverity.WARNING,
                summary=f"Workspace {handle.path} for {run.unit_id} could not be removed: {e}",
                actions=["Remove the workspace directory by hand"],
                context={"path": handle.path, "cause_chain": list(cause_chain(e))},
            )
            return StepResult.ok({"workspace_destroyed": False, "warning": record.id})
        return StepResult.ok({"workspace_destroyed": True})

    async def _finalize(self, run: PipelineRun) -> StepResult:
        self._update_ledger(run.unit_id, "done")
        newly_ready: list[str] = []
        if self.graph is not None and run.unit_id in self.graph:
            completed = {
                r.unit_id for r in self.checkpoints.list_runs() if r.status == RunStatus.COMPLETED
            }
            newly_ready = self.graph.newly_ready(run.unit_id, completed)
            if newly_ready:
                console.print(f"[green]Now ready:[/green] {', '.join(newly_ready)}")
        return StepResult.ok({"newly_ready": newly_ready})
