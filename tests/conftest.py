"""Shared fixtures: hand-written fakes for every collaborator protocol."""

import asyncio
import json
from typing import Any, Optional

import pytest

from story_pipeline.checkpoint import CheckpointStore
from story_pipeline.errors import AlreadyMergedFault, AlreadyPublishedFault
from story_pipeline.escalation import EscalationSink
from story_pipeline.models import (
    CheckStatus, CIConfig, ImplementationResult, IndependentReviewResult,
    MergeResult, PipelineConfig, PublishResult, SelfReviewResult,
    TestGenerationResult, TestRunResult, WorkspaceHandle,
)
from story_pipeline.orchestration import PipelineOrchestrator
from story_pipeline.protocols import AgentRoster, Collaborators


APPROVING_RESPONSE = json.dumps({
    "answer": "Yes, proceed with publication",
    "confidence": 0.95,
    "reasoning": "Both reviews are clean and every test passes, so the change is definitely ready to publish.",
})


class FakeContextAssembler:
    def __init__(self):
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    async def assemble(self, unit_id: str) -> dict[str, Any]:
        self.calls.append(unit_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            queued = self.failures.get(unit_id)
            if queued:
                raise queued.pop(0)
        finally:
            self.active -= 1
        return {"unit_id": unit_id, "story": f"Implement {unit_id}"}


class FakeImplementer:
    reasoning_source = "implementer-model"

    def __init__(self):
        self.implement_calls: list[dict[str, Any]] = []
        self.implement_failures: list[Exception] = []
        self.implement_delays: list[float] = []
        self.self_review_confidence = 0.9
        self.self_review_findings: list[str] = []

    async def implement(self, context: dict[str, Any]) -> ImplementationResult:
        self.implement_calls.append(context)
        if self.implement_delays:
            await asyncio.sleep(self.implement_delays.pop(0))
        if self.implement_failures:
            raise self.implement_failures.pop(0)
        return ImplementationResult(files={"app.py": "print('hello')\n"}, notes="Implemented")

    async def write_tests(self, files: dict[str, str]) -> TestGenerationResult:
        return TestGenerationResult(test_files={"test_app.py": "def test_app():\n    pass\n"}, summary="1 test")

    async def self_review(self, files: dict[str, str]) -> SelfReviewResult:
        return SelfReviewResult(confidence=self.self_review_confidence, findings=list(self.self_review_findings))


class FakeReviewer:
    reasoning_source = "reviewer-model"

    def __init__(self):
        self.calls = 0
        self.results: list[IndependentReviewResult] = []
        self.always: Optional[IndependentReviewResult] = None

    async def review(self, files, tests, self_review) -> IndependentReviewResult:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return self.always or IndependentReviewResult(confidence=0.9)


class FakeTestRunner:
    __test__ = False

    def __init__(self):
        self.calls = 0
        self.results: list[TestRunResult] = []

    async def run(self, workspace: WorkspaceHandle) -> TestRunResult:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return TestRunResult(passed=3, coverage=0.9)


class FakePublisher:
    def __init__(self):
        self.published: dict[str, PublishResult] = {}
        self.publish_calls = 0
        self.publish_metadata: list[dict[str, Any]] = []
        self.publish_failures: list[Exception] = []
        self.checks: list[CheckStatus] = []
        self.poll_failures: list[Exception] = []
        self.polls = 0
        self.retriggers = 0
        self.merged: set[str] = set()
        self.merge_calls = 0
        self.poll_delay = 0.0
        self.merge_delay = 0.0

    async def publish(self, workspace: WorkspaceHandle, metadata: dict[str, Any]) -> PublishResult:
        self.publish_calls += 1
        self.publish_metadata.append(metadata)
        if self.publish_failures:
            raise self.publish_failures.pop(0)
        existing = self.published.get(workspace.unit_id)
        if existing is not None:
            raise AlreadyPublishedFault(existing.url, existing.id)
        number = len(self.published) + 1
        result = PublishResult(url=f"https://code.example.test/pr/{number}", id=f"pr-{number}")
        self.published[workspace.unit_id] = result
        return result

    async def poll_checks(self, publication_id: str) -> CheckStatus:
        self.polls += 1
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        if self.poll_failures:
            raise self.poll_failures.pop(0)
        if self.checks:
            return self.checks.pop(0)
        return CheckStatus(status="completed", conclusion="success")

    async def retrigger_checks(self, publication_id: str) -> None:
        self.retriggers += 1

    async def merge(self, publication_id: str) -> MergeResult:
        self.merge_calls += 1
        if self.merge_delay:
            await asyncio.sleep(self.merge_delay)
        if publication_id in self.merged:
            raise AlreadyMergedFault("abc1234")
        self.merged.add(publication_id)
        return MergeResult(merged_sha="abc1234")


class FakeWorkspaces:
    def __init__(self):
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.destroy_failures: list[Exception] = []

    async def create(self, unit_id: str) -> WorkspaceHandle:
        self.created.append(unit_id)
        return WorkspaceHandle(unit_id=unit_id, path=f"/workspaces/{unit_id}")

    async def destroy(self, handle: WorkspaceHandle) -> None:
        if self.destroy_failures:
            raise self.destroy_failures.pop(0)
        self.destroyed.append(handle.unit_id)


class FakeLedger:
    def __init__(self):
        self.history: list[tuple[str, str]] = []

    def update_status(self, unit_id: str, status: str) -> None:
        self.history.append((unit_id, status))

    def status_of(self, unit_id: str) -> Optional[str]:
        for unit, status in reversed(self.history):
            if unit == unit_id:
                return status
        return None


class FakeReasoning:
    def __init__(self, responses: Optional[list[Any]] = None, default: str = APPROVING_RESPONSE):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: list[str] = []

    async def complete(self, prompt, *, temperature, max_tokens, system_prompt=None) -> str:
        self.prompts.append(prompt)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators(
        context_assembler=FakeContextAssembler(),
        agents=AgentRoster(implementer=FakeImplementer(), reviewer=FakeReviewer()),
        test_runner=FakeTestRunner(),
        publisher=FakePublisher(),
        workspaces=FakeWorkspaces(),
        ledger=FakeLedger(),
        reasoning=FakeReasoning(),
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
    return _sleep


@pytest.fixture
def checkpoints(tmp_path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "state")


@pytest.fixture
def escalations(tmp_path) -> EscalationSink:
    return EscalationSink(tmp_path / "escalations", notifiers=[])


@pytest.fixture
def make_orchestrator(collaborators, checkpoints, escalations, fake_sleep):
    """Build an orchestrator over the fakes, with sleeps recorded instead of awaited."""
    def _make(config: Optional[PipelineConfig] = None, **kwargs: Any) -> PipelineOrchestrator:
        kwargs.setdefault("checkpoints", checkpoints)
        return PipelineOrchestrator(
            collaborators=collaborators,
            escalations=escalations,
            config=config or PipelineConfig(ci=CIConfig(poll_interval_seconds=1.0)),
            sleep=fake_sleep,
            **kwargs,
        )
    return _make
