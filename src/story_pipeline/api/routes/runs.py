"""Run status endpoints."""

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request

from ...checkpoint import CheckpointStore
from ...escalation import EscalationSink
from ...models import RunSummary, run_id_for
from ...workspace import PipelineHome

router = APIRouter()


def get_home(request: Request) -> PipelineHome:
    """PipelineHome for the configured project."""
    project_path = getattr(request.app.state, "project_path", None)
    if not project_path or not Path(project_path).exists():
        raise HTTPException(status_code=404, detail="Project path not configured")
    return PipelineHome(project_path)


def get_checkpoints(request: Request) -> CheckpointStore:
    # Cache the store in app state so its run cache survives across requests
    if not hasattr(request.app.state, "_checkpoints"):
        request.app.state._checkpoints = CheckpointStore(get_home(request).state_dir)
    return request.app.state._checkpoints


@router.get("/runs/{unit_id}", response_model=RunSummary)
async def get_run(request: Request, unit_id: str) -> RunSummary:
    """Status of a unit's run."""
    try:
        run_id = run_id_for(unit_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid unit id '{unit_id}'")

    run = get_checkpoints(request).load(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"No run for unit '{unit_id}'")

    sink = EscalationSink(get_home(request).escalations_dir, notifiers=[])
    open_ids = {r.id for r in sink.list_open(unit_id)}
    return RunSummary.from_run(run, [e for e in run.escalation_ids if e in open_ids])
