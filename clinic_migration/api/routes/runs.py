"""Migration run endpoints.

The host application's permission layer authenticates the caller and
forwards its identity in the X-Clinic-Id and X-User-Id headers.
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from ..models import (
    AuditEventResponse,
    MappingApprove,
    MappingSpecVersionResponse,
    MappingSubmit,
    PhaseResultResponse,
    ResumeResponse,
    RunCreate,
    RunListResponse,
    RunResponse,
)
from ...config import PipelineConfig
from ...models.migration import Actor, MigrationRun, Phase, PhaseResult
from ...orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

_orchestrator: Optional[MigrationOrchestrator] = None


def get_orchestrator() -> MigrationOrchestrator:
    """Get the process-wide orchestrator, configured from the environment."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = MigrationOrchestrator(PipelineConfig.from_env())
    return _orchestrator


def get_actor(
    x_clinic_id: str = Header(...),
    x_user_id: str = Header(...)
) -> Actor:
    return Actor(user_id=x_user_id, clinic_id=x_clinic_id)


def _run_response(run: MigrationRun) -> RunResponse:
    return RunResponse(**run.to_dict())


def _phase_response(result: PhaseResult) -> PhaseResultResponse:
    return PhaseResultResponse(**result.to_dict())


@router.post("", response_model=RunResponse)
def create_run(
    data: RunCreate,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Create a migration run. Consent text is mandatory."""
    try:
        run = orchestrator.create_run(
            actor,
            source_vendor=data.source_vendor.value,
            consent_text=data.consent_text,
            clinic_id=data.clinic_id,
            credentials=data.credentials,
            ingest_source=data.ingest_source,
            excluded_entity_types=data.excluded_entity_types,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _run_response(run)


@router.get("", response_model=RunListResponse)
def list_runs(
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """List the caller's clinic's runs, newest first."""
    runs = [_run_response(run) for run in orchestrator.list_runs(actor)]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
def get_run(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Get a run's status and progress."""
    return _run_response(orchestrator.get_run(actor, run_id))


@router.post("/{run_id}/phases/{phase}", response_model=PhaseResultResponse)
def run_phase(
    run_id: str,
    phase: Phase,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Execute one phase synchronously."""
    return _phase_response(orchestrator.run_phase(actor, run_id, phase))


@router.post("/{run_id}/run-to-approval", response_model=List[PhaseResultResponse])
def run_to_approval(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Ingest and draft a mapping for review."""
    return [_phase_response(r) for r in orchestrator.run_to_approval(actor, run_id)]


@router.post("/{run_id}/run-from-approval", response_model=List[PhaseResultResponse])
def run_from_approval(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Transform, validate, load and verify with the approved mapping."""
    return [_phase_response(r) for r in orchestrator.run_from_approval(actor, run_id)]


@router.get("/{run_id}/mapping-specs", response_model=List[MappingSpecVersionResponse])
def list_mapping_specs(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """List every mapping spec version of a run."""
    return [
        MappingSpecVersionResponse(**v.to_dict())
        for v in orchestrator.list_mapping_specs(actor, run_id)
    ]


@router.post("/{run_id}/mapping-specs", response_model=MappingSpecVersionResponse)
def submit_mapping(
    run_id: str,
    data: MappingSubmit,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Submit an edited mapping spec as the run's next version."""
    version = orchestrator.submit_mapping(actor, run_id, data.spec)
    return MappingSpecVersionResponse(**version.to_dict())


@router.post("/{run_id}/approve-mapping", response_model=RunResponse)
def approve_mapping(
    run_id: str,
    data: MappingApprove,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Approve a mapping spec version (the latest when none is given)."""
    return _run_response(orchestrator.approve_mapping(actor, run_id, data.version))


@router.post("/{run_id}/pause", response_model=RunResponse)
def pause_run(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Pause a run at the next batch boundary."""
    return _run_response(orchestrator.pause_run(actor, run_id))


@router.post("/{run_id}/resume", response_model=ResumeResponse)
def resume_run(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Resume a paused run, continuing its interrupted phase."""
    result = orchestrator.resume_run(actor, run_id)
    return ResumeResponse(
        run=_run_response(orchestrator.get_run(actor, run_id)),
        result=_phase_response(result) if result else None,
    )


@router.post("/{run_id}/complete", response_model=RunResponse)
def complete_run(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Mark a verified run completed."""
    return _run_response(orchestrator.complete_run(actor, run_id))


@router.get("/{run_id}/audit-events", response_model=List[AuditEventResponse])
def list_audit_events(
    run_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """List a run's audit trail, oldest first."""
    return [AuditEventResponse(**e.to_dict()) for e in orchestrator.list_audit_events(actor, run_id)]


@router.get("/{run_id}/reports/{name}")
def get_report(
    run_id: str,
    name: str,
    actor: Actor = Depends(get_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
) -> Any:
    """Get a PHI-free report: profile, dry_run, validation or reconciliation."""
    try:
        return orchestrator.get_report(actor, run_id, name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
