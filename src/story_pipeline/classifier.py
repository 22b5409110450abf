"""Fault classification for retry and escalation decisions.

Maps any exception raised by a collaborator into an ErrorClass:

- RECOVERABLE: the side effect already happened, record success and move on
- RETRYABLE: transient, retry with exponential backoff then escalate
- FATAL: never retried, escalate immediately

Typed PipelineFaults are classified by type. Anything else falls back to
phrase matching on the exception text.
"""

import asyncio
import errno
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .errors import (
    AuthFault, ChecksFailedFault, CheckTimeoutFault, DuplicateFault,
    MalformedArtifactFault, NetworkFault, PermissionFault, PipelineFault,
    PipelineProgrammerError, RateLimitFault, ResourceExhaustedFault,
    StepTimeoutFault, UpstreamFault, WorkspaceInUseFault,
)
from .models import ErrorDetail, FaultKind


GENERIC_ACTIONS = (
    "Check the run progress log for detailed error information",
)

SUGGESTED_ACTIONS: dict[str, tuple[str, ...]] = {
    "AUTH_ERROR": ("Check API credentials and token scopes", "Rotate the credential if it was revoked"),
    "PERMISSION_ERROR": ("Verify repository and file permissions for the pipeline account",),
    "BILLING": ("Check account credits or quota with the provider",),
    "RATE_LIMIT": ("Wait for the rate limit to reset", "Lower max_concurrent_runs"),
    "NETWORK_ERROR": ("Verify network connectivity to the remote service",),
    "UPSTREAM_ERROR": ("Check the upstream service status page",),
    "RESOURCE_EXHAUSTED": ("Free up memory or disk space on the runner", "Scale up the runner if this repeats"),
    "STEP_TIMEOUT": ("Inspect the step for a hung collaborator", "Raise the step's timeout if the work is legitimately slow"),
    "MALFORMED_ARTIFACT": ("Inspect the artifact the pipeline produced; this indicates a bug",),
    "CI_FAILED": ("Inspect the failing checks and push a fix", "Re-run the checks once the cause is addressed"),
    "CI_TIMEOUT": ("Check whether CI is stuck or queued", "Merge manually once checks finish"),
    "WORKSPACE_IN_USE": ("Make sure no other run owns the workspace, then remove the stale owner marker",),
    "TESTS_FAILED": ("Review the failing tests in the workspace", "Fix the implementation and resolve this escalation to resume"),
    "UNKNOWN": ("Retry the run after checking the logs",),
}

# Phrase tables for exceptions that are not PipelineFaults
_BILLING_PHRASES = ("credit balance", "insufficient credits", "billing", "payment required", "quota exceeded")
_AUTH_PHRASES = ("authentication", "unauthorized", "invalid api key", "api key", "forbidden")
_PERMISSION_PHRASES = ("permission denied", "eacces", "eperm", "not permitted")
_RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "throttl")
_RESOURCE_PHRASES = ("out of memory", "no space left", "enospc", "disk full", "resource exhausted", "memoryerror")
_TRANSIENT_PHRASES = (
    "timeout", "timed out", "connection", "network", "unreachable",
    "temporarily unavailable", "econnreset", "econnrefused",
    "internal server error", "service unavailable", "gateway",
    "exit code 1", "exited with code 1",
)

# HTTP status codes only count as standalone tokens, never inside ids like story-1401
_STATUS_CODE = re.compile(r"(?<![\w.-])(\d{3})(?![\w.-])")
_AUTH_STATUS = {"401", "403"}
_RATE_LIMIT_STATUS = {"429"}
_UPSTREAM_STATUS = {"500", "502", "503", "504"}


@dataclass(frozen=True)
class ErrorClass:
    """Result of classifying a fault."""
    kind: FaultKind
    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    suggested_actions: tuple[str, ...] = GENERIC_ACTIONS
    is_security: bool = False
    # Retryable only: extra eligibility check, composed with the policy's own
    eligible: Optional[Callable[[int], bool]] = None
    initial_delay_seconds: Optional[float] = None
    # Recoverable only: what the earlier attempt produced
    recovered: dict[str, Any] = field(default_factory=dict)
    cause_chain: tuple[str, ...] = ()

    @classmethod
    def retryable(cls, code: str, message: str, **kwargs: Any) -> "ErrorClass":
        return cls(kind=FaultKind.RETRYABLE, code=code, message=message,
                   suggested_actions=kwargs.pop("suggested_actions", _actions_for(code)), **kwargs)

    @classmethod
    def fatal(cls, code: str, message: str, **kwargs: Any) -> "ErrorClass":
        return cls(kind=FaultKind.FATAL, code=code, message=message,
                   suggested_actions=kwargs.pop("suggested_actions", _actions_for(code)), **kwargs)

    @classmethod
    def recoverable(cls, code: str, message: str, **kwargs: Any) -> "ErrorClass":
        return cls(kind=FaultKind.RECOVERABLE, code=code, message=message, **kwargs)

    @classmethod
    def low_confidence(cls, code: str, message: str, **kwargs: Any) -> "ErrorClass":
        return cls(kind=FaultKind.LOW_CONFIDENCE, code=code, message=message, **kwargs)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            code=self.code,
            message=self.message,
            context=self.context,
            cause_chain=list(self.cause_chain),
        )


def _actions_for(code: str) -> tuple[str, ...]:
    return SUGGESTED_ACTIONS.get(code, ()) + GENERIC_ACTIONS


def cause_chain(exc: BaseException, limit: int = 10) -> tuple[str, ...]:
    """Render an exception and its causes, outermost first."""
    chain = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen and len(chain) < limit:
        seen.add(id(current))
        chain.append(f"{type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return tuple(chain)


class ErrorClassifier:
    """Pure mapping from exceptions to ErrorClass.

    Policy:
    - auth and permission failures are fatal and flagged as security faults
    - network errors, upstream 5xx, rate limits and timeouts are retryable
    - the pipeline's own malformed artifacts are fatal (a bug, not transience)
    - resource exhaustion is retryable with a longer initial delay
    - duplicates of an earlier attempt's side effect are recoverable
    """

    def __init__(self, resource_exhaustion_initial_delay: float = 5.0):
        self.resource_exhaustion_initial_delay = resource_exhaustion_initial_delay

    def classify(self, fault: BaseException) -> ErrorClass:
        """Classify a fault.

        Raises:
            PipelineProgrammerError: programmer errors are never classified
        """
        if isinstance(fault, PipelineProgrammerError):
            raise fault

        chain = cause_chain(fault)

        if isinstance(fault, PipelineFault):
            return self._classify_fault(fault, chain)
        return self._classify_other(fault, chain)

    def _classify_fault(self, fault: PipelineFault, chain: tuple[str, ...]) -> ErrorClass:
        context = dict(fault.context)
        message = fault.message

        if isinstance(fault, DuplicateFault):
            return ErrorClass.recoverable(
                fault.code, message, context=context, recovered=fault.recovered, cause_chain=chain
            )
        if isinstance(fault, (AuthFault, PermissionFault)):
            return ErrorClass.fatal(fault.code, message, context=context, is_security=True, cause_chain=chain)
        if isinstance(fault, (MalformedArtifactFault, ChecksFailedFault, CheckTimeoutFault, WorkspaceInUseFault)):
            return ErrorClass.fatal(fault.code, message, context=context, cause_chain=chain)
        if isinstance(fault, RateLimitFault):
            return ErrorClass.retryable(
                fault.code, message, context=context,
                initial_delay_seconds=fault.retry_after_seconds, cause_chain=chain,
            )
        if isinstance(fault, ResourceExhaustedFault):
            return ErrorClass.retryable(
                fault.code, message, context=context,
                initial_delay_seconds=self.resource_exhaustion_initial_delay, cause_chain=chain,
            )
        if isinstance(fault, UpstreamFault):
            if fault.status_code in (401, 403):
                return ErrorClass.fatal("AUTH_ERROR", message, context=context, is_security=True, cause_chain=chain)
            if fault.status_code == 429:
                return ErrorClass.retryable("RATE_LIMIT", message, context=context, cause_chain=chain)
            if fault.status_code >= 500:
                return ErrorClass.retryable(fault.code, message, context=context, cause_chain=chain)
            # Other 4xx: the request itself is wrong and repeating it will not help
            return ErrorClass.fatal(fault.code, message, context=context, cause_chain=chain)
        if isinstance(fault, (NetworkFault, StepTimeoutFault)):
            return ErrorClass.retryable(fault.code, message, context=context, cause_chain=chain)

        return self._classify_text(message, context, chain)

    def _classify_other(self, fault: BaseException, chain: tuple[str, ...]) -> ErrorClass:
        message = str(fault) or type(fault).__name__
        context = {"exception_type": type(fault).__name__}

        if isinstance(fault, PermissionError):
            return ErrorClass.fatal("PERMISSION_ERROR", message, context=context, is_security=True, cause_chain=chain)
        if isinstance(fault, MemoryError) or (
            isinstance(fault, OSError) and fault.errno in (errno.ENOSPC, errno.ENOMEM)
        ):
            return ErrorClass.retryable(
                "RESOURCE_EXHAUSTED", message, context=context,
                initial_delay_seconds=self.resource_exhaustion_initial_delay, cause_chain=chain,
            )
        if isinstance(fault, (asyncio.TimeoutError, TimeoutError)):
            return ErrorClass.retryable("STEP_TIMEOUT", message, context=context, cause_chain=chain)
        if isinstance(fault, ConnectionError):
            return ErrorClass.retryable("NETWORK_ERROR", message, context=context, cause_chain=chain)
        if isinstance(fault, (ValidationError, json.JSONDecodeError)):
            # Artifacts the pipeline wrote itself failed to parse back
            return ErrorClass.fatal("MALFORMED_ARTIFACT", message, context=context, cause_chain=chain)

        return self._classify_text(message, context, chain)

    def _classify_text(self, message: str, context: dict[str, Any], chain: tuple[str, ...]) -> ErrorClass:
        text = " ".join(chain).lower() or message.lower()
        codes = set(_STATUS_CODE.findall(text))

        if any(p in text for p in _BILLING_PHRASES):
            return ErrorClass.fatal("BILLING", message, context=context, cause_chain=chain)
        if codes & _AUTH_STATUS or any(p in text for p in _AUTH_PHRASES):
            return ErrorClass.fatal("AUTH_ERROR", message, context=context, is_security=True, cause_chain=chain)
        if any(p in text for p in _PERMISSION_PHRASES):
            return ErrorClass.fatal("PERMISSION_ERROR", message, context=context, is_security=True, cause_chain=chain)
        if codes & _RATE_LIMIT_STATUS or any(p in text for p in _RATE_LIMIT_PHRASES):
            return ErrorClass.retryable("RATE_LIMIT", message, context=context, cause_chain=chain)
        if any(p in text for p in _RESOURCE_PHRASES):
            return ErrorClass.retryable(
                "RESOURCE_EXHAUSTED", message, context=context,
                initial_delay_seconds=self.resource_exhaustion_initial_delay, cause_chain=chain,
            )
        if codes & _UPSTREAM_STATUS or any(p in text for p in _TRANSIENT_PHRASES):
            return ErrorClass.retryable("NETWORK_ERROR", message, context=context, cause_chain=chain)

        return ErrorClass.retryable("UNKNOWN", message, context=context, cause_chain=chain)
