"""Protocol definitions for the pipeline's external collaborators.

The orchestrator only depends on these interfaces, so agents, publishers
and workspace backends can be swapped without touching it, and tests can
drive every step with small hand-written fakes.

Every call that has an external side effect must be idempotent or report a
duplicate (AlreadyPublishedFault, AlreadyMergedFault, WorkspaceExistsFault):
a run that crashed after the side effect but before its checkpoint will
repeat the call on resume.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .errors import ConfigurationError
from .models import (
    CheckStatus, ImplementationResult, IndependentReviewResult, MergeResult,
    PublishResult, SelfReviewResult, TestGenerationResult, TestRunResult,
    WorkspaceHandle,
)


@runtime_checkable
class ContextAssembler(Protocol):
    """Gathers everything the implementer needs to know about a unit."""

    async def assemble(self, unit_id: str) -> dict[str, Any]:
        ...


@runtime_checkable
class ImplementationAgent(Protocol):
    """Writes code and tests for a unit, then reviews its own work."""

    reasoning_source: str

    async def implement(self, context: dict[str, Any]) -> ImplementationResult:
        """Produce the implementation.

        When called for a corrective pass, context carries a
        "review_feedback" list with the findings to address.
        """
        ...

    async def write_tests(self, files: dict[str, str]) -> TestGenerationResult:
        ...

    async def self_review(self, files: dict[str, str]) -> SelfReviewResult:
        ...


@runtime_checkable
class ReviewerAgent(Protocol):
    """Reviews an implementation independently of its author."""

    reasoning_source: str

    async def review(
        self,
        files: dict[str, str],
        tests: dict[str, str],
        self_review: SelfReviewResult,
    ) -> IndependentReviewResult:
        ...


@runtime_checkable
class TestRunner(Protocol):
    __test__ = False

    async def run(self, workspace: WorkspaceHandle) -> TestRunResult:
        ...


@runtime_checkable
class Publisher(Protocol):
    """Publishes a change for review and merges it once checks pass."""

    async def publish(self, workspace: WorkspaceHandle, metadata: dict[str, Any]) -> PublishResult:
        """Open the change.

        Raises:
            AlreadyPublishedFault: a publication for this unit already exists
        """
        ...

    async def poll_checks(self, publication_id: str) -> CheckStatus:
        ...

    async def retrigger_checks(self, publication_id: str) -> None:
        ...

    async def merge(self, publication_id: str) -> MergeResult:
        """Merge the change.

        Raises:
            AlreadyMergedFault: the change was merged by an earlier attempt
        """
        ...


@runtime_checkable
class WorkspaceProvider(Protocol):
    """Hands out exclusively owned working areas, one per unit."""

    async def create(self, unit_id: str) -> WorkspaceHandle:
        """Create the workspace for a unit.

        Raises:
            WorkspaceExistsFault: this unit's workspace already exists
            WorkspaceInUseFault: the location belongs to another unit
        """
        ...

    async def destroy(self, handle: WorkspaceHandle) -> None:
        ...


@runtime_checkable
class StatusLedger(Protocol):
    """Records the externally visible status of each unit."""

    def update_status(self, unit_id: str, status: str) -> None:
        ...


@runtime_checkable
class ReasoningBackend(Protocol):
    """Text completion used by the decision engine's reasoning tier."""

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        system_prompt: Optional[str] = None,
    ) -> str:
        ...


@dataclass(frozen=True)
class AgentRoster:
    """The two agents a run needs.

    Review is only independent if the reviewer reasons with a different
    source than the implementer, so a roster with matching sources is
    refused.
    """
    implementer: ImplementationAgent
    reviewer: ReviewerAgent

    def __post_init__(self) -> None:
        implementer_source = getattr(self.implementer, "reasoning_source", None)
        reviewer_source = getattr(self.reviewer, "reasoning_source", None)
        if implementer_source is None or reviewer_source is None:
            raise ConfigurationError("Both agents must declare a reasoning_source")
        if implementer_source == reviewer_source:
            raise ConfigurationError(
                f"Implementer and reviewer share reasoning source '{implementer_source}'; "
                "independent review needs a different one"
            )


@dataclass
class Collaborators:
    """Everything outside the pipeline that a run talks to."""
    context_assembler: ContextAssembler
    agents: AgentRoster
    test_runner: TestRunner
    publisher: Publisher
    workspaces: WorkspaceProvider
    ledger: Optional[StatusLedger] = None
    reasoning: Optional[ReasoningBackend] = None
