"""Migration run, audit and entity-map models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid

from dateutil import parser as date_parser


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return date_parser.isoparse(value) if value else None


class RunStatus(str, Enum):
    """Status of a migration run."""
    CREATED = "created"
    INGESTING = "ingesting"
    MAPPING_DRAFTED = "mapping_drafted"
    TRANSFORMING = "transforming"
    VALIDATING = "validating"
    LOADING = "loading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED)


class Phase(str, Enum):
    """Units of work executed through run_phase."""
    INGEST = "ingest"
    DRAFT_MAPPING = "draft_mapping"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    LOAD = "load"
    VERIFY = "verify"


PHASE_ORDER: List[Phase] = [
    Phase.INGEST,
    Phase.DRAFT_MAPPING,
    Phase.TRANSFORM,
    Phase.VALIDATE,
    Phase.LOAD,
    Phase.VERIFY,
]

# Status a run enters while (and after) executing each phase
PHASE_STATUS: Dict[Phase, RunStatus] = {
    Phase.INGEST: RunStatus.INGESTING,
    Phase.DRAFT_MAPPING: RunStatus.MAPPING_DRAFTED,
    Phase.TRANSFORM: RunStatus.TRANSFORMING,
    Phase.VALIDATE: RunStatus.VALIDATING,
    Phase.LOAD: RunStatus.LOADING,
    Phase.VERIFY: RunStatus.VERIFYING,
}


def previous_phase(phase: Phase) -> Optional[Phase]:
    """Get the phase that must complete before the given one."""
    idx = PHASE_ORDER.index(phase)
    return PHASE_ORDER[idx - 1] if idx > 0 else None


class SourceVendor(str, Enum):
    """Supported source platforms."""
    BOULEVARD = "boulevard"
    AESTHETICS_RECORD = "aesthetics_record"
    CSV_UPLOAD = "csv_upload"


class AuditAction(str, Enum):
    RUN_CREATED = "RUN_CREATED"
    PHASE_STARTED = "PHASE_STARTED"
    PHASE_COMPLETED = "PHASE_COMPLETED"
    PHASE_FAILED = "PHASE_FAILED"
    PHASE_PAUSED = "PHASE_PAUSED"
    MAPPING_SUBMITTED = "MAPPING_SUBMITTED"
    MAPPING_APPROVED = "MAPPING_APPROVED"
    RUN_PAUSED = "RUN_PAUSED"
    RUN_RESUMED = "RUN_RESUMED"
    RUN_COMPLETED = "RUN_COMPLETED"


@dataclass
class Actor:
    """The authenticated caller, as established by the host application."""
    user_id: str
    clinic_id: str


@dataclass
class EntityProgress:
    """Per-entity record counters. Counters only ever grow within a run."""
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityProgress":
        return cls(
            total=data.get("total", 0),
            imported=data.get("imported", 0),
            skipped=data.get("skipped", 0),
            failed=data.get("failed", 0),
        )


@dataclass
class PhaseResult:
    """The persisted outcome of one phase execution."""
    phase: Phase
    paused: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    batches: int = 0
    artifacts: List[str] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "phase": self.phase.value,
            "paused": self.paused,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "batches": self.batches,
            "artifacts": self.artifacts,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseResult":
        return cls(
            phase=Phase(data["phase"]),
            paused=data.get("paused", False),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            records_processed=data.get("records_processed", 0),
            records_succeeded=data.get("records_succeeded", 0),
            records_failed=data.get("records_failed", 0),
            records_skipped=data.get("records_skipped", 0),
            batches=data.get("batches", 0),
            artifacts=data.get("artifacts", []),
            summary=data.get("summary", {}),
        )


@dataclass
class MigrationRun:
    """One migration attempt for one clinic from one source vendor."""
    clinic_id: str
    source_vendor: SourceVendor
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.CREATED
    current_phase: Optional[Phase] = None

    # Consent
    consent_text: str = ""
    consent_signed_at: Optional[datetime] = None
    started_by: str = ""

    # Timing
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    progress: Dict[str, EntityProgress] = field(default_factory=dict)
    completed_phases: Dict[str, PhaseResult] = field(default_factory=dict)
    checkpoints: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)

    # Pause bookkeeping
    paused_from: Optional[RunStatus] = None
    paused_phase: Optional[Phase] = None

    # Mapping approval
    mapping_spec_version: int = 0
    approved_mapping_version: Optional[int] = None
    mapping_approved_by: Optional[str] = None
    mapping_approved_at: Optional[datetime] = None

    # Source access
    excluded_entity_types: List[str] = field(default_factory=list)
    encrypted_credentials: Optional[str] = None
    ingest_source: Optional[str] = None  # Upload path for file-based runs

    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def is_phase_completed(self, phase: Phase) -> bool:
        return phase.value in self.completed_phases

    def get_progress(self, entity_type: str) -> EntityProgress:
        """Get (creating if needed) the counters for an entity type."""
        if entity_type not in self.progress:
            self.progress[entity_type] = EntityProgress()
        return self.progress[entity_type]

    def add_log(self, message: str) -> None:
        """Append a human-readable line to the run log."""
        self.log.append(f"[{utc_now().isoformat()}] {message}")

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "source_vendor": self.source_vendor.value,
            "status": self.status.value,
            "current_phase": self.current_phase.value if self.current_phase else None,
            "consent_text": self.consent_text,
            "consent_signed_at": _iso(self.consent_signed_at),
            "started_by": self.started_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "progress": {k: v.to_dict() for k, v in self.progress.items()},
            "completed_phases": {k: v.to_dict() for k, v in self.completed_phases.items()},
            "checkpoints": self.checkpoints,
            "log": self.log,
            "paused_from": self.paused_from.value if self.paused_from else None,
            "paused_phase": self.paused_phase.value if self.paused_phase else None,
            "mapping_spec_version": self.mapping_spec_version,
            "approved_mapping_version": self.approved_mapping_version,
            "mapping_approved_by": self.mapping_approved_by,
            "mapping_approved_at": _iso(self.mapping_approved_at),
            "excluded_entity_types": self.excluded_entity_types,
            "ingest_source": self.ingest_source,
            "error_message": self.error_message,
        }
        if include_secrets:
            data["encrypted_credentials"] = self.encrypted_credentials
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRun":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            clinic_id=data["clinic_id"],
            source_vendor=SourceVendor(data["source_vendor"]),
            status=RunStatus(data.get("status", "created")),
            current_phase=Phase(data["current_phase"]) if data.get("current_phase") else None,
            consent_text=data.get("consent_text", ""),
            consent_signed_at=_parse_dt(data.get("consent_signed_at")),
            started_by=data.get("started_by", ""),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            progress={k: EntityProgress.from_dict(v) for k, v in data.get("progress", {}).items()},
            completed_phases={
                k: PhaseResult.from_dict(v) for k, v in data.get("completed_phases", {}).items()
            },
            checkpoints=data.get("checkpoints", {}),
            log=data.get("log", []),
            paused_from=RunStatus(data["paused_from"]) if data.get("paused_from") else None,
            paused_phase=Phase(data["paused_phase"]) if data.get("paused_phase") else None,
            mapping_spec_version=data.get("mapping_spec_version", 0),
            approved_mapping_version=data.get("approved_mapping_version"),
            mapping_approved_by=data.get("mapping_approved_by"),
            mapping_approved_at=_parse_dt(data.get("mapping_approved_at")),
            excluded_entity_types=data.get("excluded_entity_types", []),
            encrypted_credentials=data.get("encrypted_credentials"),
            ingest_source=data.get("ingest_source"),
            error_message=data.get("error_message"),
        )


@dataclass
class MigrationAuditEvent:
    """An append-only record of an action taken on a run."""
    run_id: str
    phase: str
    action: AuditAction
    actor_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "phase": self.phase,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationAuditEvent":
        return cls(
            id=data["id"],
            run_id=data["run_id"],
            phase=data["phase"],
            action=AuditAction(data["action"]),
            actor_id=data.get("actor_id", ""),
            metadata=data.get("metadata", {}),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass
class MappingSpecVersion:
    """One immutable version of a run's mapping spec."""
    run_id: str
    version: int
    spec: Dict[str, Any]
    created_by: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "version": self.version,
            "spec": self.spec,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingSpecVersion":
        return cls(
            run_id=data["run_id"],
            version=data["version"],
            spec=data["spec"],
            created_by=data.get("created_by", ""),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


class EntityMapStatus(str, Enum):
    MAPPED = "mapped"
    LOADED = "loaded"
    DUPLICATE = "duplicate"  # matched an existing patient; target_id points at it
    FAILED = "failed"


@dataclass
class EntityMapEntry:
    """Source id to canonical id (and, once loaded, target id) for one record."""
    entity_type: str
    source_id: str
    canonical_id: str
    target_id: Optional[str] = None
    status: EntityMapStatus = EntityMapStatus.MAPPED

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.source_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "canonical_id": self.canonical_id,
            "target_id": self.target_id,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMapEntry":
        return cls(
            entity_type=data["entity_type"],
            source_id=data["source_id"],
            canonical_id=data["canonical_id"],
            target_id=data.get("target_id"),
            status=EntityMapStatus(data.get("status", "mapped")),
        )
