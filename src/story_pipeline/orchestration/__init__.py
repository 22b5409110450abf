"""Orchestration components for the story pipeline.

This package contains the pieces that drive a run:
- PipelineOrchestrator: sequences the steps, retries and escalates
- ReviewGate: decides whether reviewed work may be published
- CIMonitor: waits for checks and re-triggers failed ones
- RunCancellation: signal handlers and stop requests
"""

from .ci import CIMonitor
from .pipeline import PipelineOrchestrator, StepResult
from .recovery import RunCancellation
from .review import ReviewGate, ReviewVerdict

__all__ = [
    "CIMonitor",
    "PipelineOrchestrator",
    "StepResult",
    "RunCancellation",
    "ReviewGate",
    "ReviewVerdict",
]
