"""Exception taxonomy for the story pipeline.

Two families live here:

- PipelineFault: failures reported by external collaborators (agents,
  publisher, workspace provider...). These are classified by the
  ErrorClassifier and handled inside the orchestrator; they never cross a
  step boundary.
- PipelineProgrammerError: invalid configuration or a violated invariant.
  These are never classified or retried and should fail loudly.
"""

from typing import Any, Optional


class PipelineProgrammerError(Exception):
    """Base class for errors that indicate a bug or bad configuration."""


class ConfigurationError(PipelineProgrammerError):
    """Pipeline configuration is invalid."""


class InvariantViolation(PipelineProgrammerError):
    """A run or store invariant was broken."""


class CycleError(PipelineProgrammerError):
    """Adding a dependency would create a cycle between units of work."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class CheckpointWriteError(Exception):
    """A checkpoint could not be written. The previous checkpoint is intact."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class EscalationNotFoundError(KeyError):
    """No escalation record exists with the given id."""


# =============================================================================
# Collaborator faults
# =============================================================================

class PipelineFault(Exception):
    """Base class for faults raised by pipeline collaborators.

    Args:
        message: Human readable description
        context: Structured details copied into the step outcome
    """

    code = "PIPELINE_FAULT"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


class NetworkFault(PipelineFault):
    code = "NETWORK_ERROR"


class UpstreamFault(PipelineFault):
    """An upstream service answered with an error status."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: int, context: Optional[dict[str, Any]] = None):
        super().__init__(message, {**(context or {}), "status_code": status_code})
        self.status_code = status_code


class RateLimitFault(PipelineFault):
    code = "RATE_LIMIT"

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, {**(context or {}), "retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class AuthFault(PipelineFault):
    code = "AUTH_ERROR"


class PermissionFault(PipelineFault):
    code = "PERMISSION_ERROR"


class MalformedArtifactFault(PipelineFault):
    """The pipeline's own output failed to parse. Signals a bug, not transience."""

    code = "MALFORMED_ARTIFACT"


class ResourceExhaustedFault(PipelineFault):
    code = "RESOURCE_EXHAUSTED"

    def __init__(self, message: str, resource: str = "unknown", context: Optional[dict[str, Any]] = None):
        super().__init__(message, {**(context or {}), "resource": resource})
        self.resource = resource


class StepTimeoutFault(PipelineFault):
    code = "STEP_TIMEOUT"

    def __init__(self, step: str, budget_seconds: float):
        super().__init__(
            f"Step '{step}' exceeded its {budget_seconds:.0f}s budget",
            {"step": step, "budget_seconds": budget_seconds},
        )
        self.step = step
        self.budget_seconds = budget_seconds


class DuplicateFault(PipelineFault):
    """The side effect already happened on a previous attempt.

    Subclasses carry what the earlier attempt produced so the step can be
    recorded as a success.
    """

    code = "DUPLICATE"

    def __init__(self, message: str, recovered: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.recovered = dict(recovered or {})


class AlreadyPublishedFault(DuplicateFault):
    code = "ALREADY_PUBLISHED"

    def __init__(self, url: str, id: str, message: Optional[str] = None):
        super().__init__(message or f"Already published as {id}", {"url": url, "id": id})


class AlreadyMergedFault(DuplicateFault):
    code = "ALREADY_MERGED"

    def __init__(self, merged_sha: str, message: Optional[str] = None):
        super().__init__(message or f"Already merged at {merged_sha}", {"merged_sha": merged_sha})


class WorkspaceExistsFault(DuplicateFault):
    code = "WORKSPACE_EXISTS"

    def __init__(self, handle: dict[str, Any], message: Optional[str] = None):
        super().__init__(
            message or f"Workspace already exists at {handle.get('path')}",
            {"workspace": handle},
        )


class ChecksFailedFault(PipelineFault):
    code = "CI_FAILED"


class CheckTimeoutFault(PipelineFault):
    code = "CI_TIMEOUT"


class WorkspaceInUseFault(PipelineFault):
    """Another unit owns the requested workspace location."""

    code = "WORKSPACE_IN_USE"
