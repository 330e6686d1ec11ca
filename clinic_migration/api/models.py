"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from ..models.migration import Phase, RunStatus, SourceVendor


# Request Models
class RunCreate(BaseModel):
    source_vendor: SourceVendor
    consent_text: str
    clinic_id: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None
    ingest_source: Optional[str] = None
    excluded_entity_types: List[str] = Field(default_factory=list)


class MappingSubmit(BaseModel):
    spec: Dict[str, Any]


class MappingApprove(BaseModel):
    version: Optional[int] = None


# Response Models
class EntityProgressResponse(BaseModel):
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0


class PhaseResultResponse(BaseModel):
    phase: Phase
    paused: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    batches: int = 0
    artifacts: List[str] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class RunResponse(BaseModel):
    id: str
    clinic_id: str
    source_vendor: SourceVendor
    status: RunStatus
    current_phase: Optional[Phase] = None
    consent_signed_at: Optional[datetime] = None
    started_by: str = ""
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: Dict[str, EntityProgressResponse] = Field(default_factory=dict)
    completed_phases: Dict[str, PhaseResultResponse] = Field(default_factory=dict)
    paused_from: Optional[RunStatus] = None
    paused_phase: Optional[Phase] = None
    mapping_spec_version: int = 0
    approved_mapping_version: Optional[int] = None
    mapping_approved_by: Optional[str] = None
    excluded_entity_types: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    log: List[str] = Field(default_factory=list)


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class ResumeResponse(BaseModel):
    run: RunResponse
    result: Optional[PhaseResultResponse] = None


class MappingSpecVersionResponse(BaseModel):
    run_id: str
    version: int
    spec: Dict[str, Any]
    created_by: str = ""
    created_at: datetime


class AuditEventResponse(BaseModel):
    id: str
    run_id: str
    phase: str
    action: str
    actor_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
