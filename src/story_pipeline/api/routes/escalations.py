"""Escalation endpoints."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ...errors import EscalationNotFoundError
from ...escalation import EscalationSink
from ...models import EscalationMetrics, EscalationRecord, EscalationSeverity
from .runs import get_home

router = APIRouter()


class EscalationListResponse(BaseModel):
    """List of escalations."""
    escalations: list[EscalationRecord]
    total: int
    open_count: int


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None


def get_sink(request: Request) -> EscalationSink:
    """EscalationSink for the project. The API never notifies."""
    return EscalationSink(get_home(request).escalations_dir, notifiers=[])


@router.get("/escalations", response_model=EscalationListResponse)
async def list_escalations(
    request: Request,
    include_resolved: bool = False,
    unit_id: Optional[str] = None,
    severity: Optional[EscalationSeverity] = None,
) -> EscalationListResponse:
    """Escalations, open only unless include_resolved is set."""
    records = get_sink(request).list(unit_id=unit_id, include_resolved=include_resolved, severity=severity)
    return EscalationListResponse(
        escalations=records,
        total=len(records),
        open_count=sum(1 for r in records if r.is_open),
    )


# Declared before /escalations/{escalation_id} so "metrics" is not taken for an id
@router.get("/escalations/metrics", response_model=EscalationMetrics)
async def get_metrics(request: Request) -> EscalationMetrics:
    """Escalation counts and average resolution time."""
    return get_sink(request).metrics()


@router.get("/escalations/{escalation_id}", response_model=EscalationRecord)
async def get_escalation(request: Request, escalation_id: str) -> EscalationRecord:
    try:
        return get_sink(request).get(escalation_id)
    except EscalationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Escalation '{escalation_id}' not found")


@router.post("/escalations/{escalation_id}/resolve", response_model=EscalationRecord)
async def resolve_escalation(
    request: Request,
    escalation_id: str,
    body: Optional[ResolveRequest] = None,
) -> EscalationRecord:
    """Resolve an escalation. Resolving an already resolved one is a no-op."""
    try:
        return get_sink(request).resolve(escalation_id, body.resolution if body else None)
    except EscalationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Escalation '{escalation_id}' not found")
