"""Data models for the migration pipeline."""

from .canonical import (
    EntityType,
    ENTITY_LOAD_ORDER,
    RELATIONSHIPS,
    Relationship,
    Address,
    Patient,
    Appointment,
    ChartSection,
    Chart,
    Encounter,
    Consent,
    Photo,
    Document,
    InvoiceLineItem,
    Invoice,
    CanonicalRecord,
    generate_canonical_id,
    record_from_dict,
)
from .mapping import (
    TransformType,
    FieldMapping,
    EntityMapping,
    MappingSpec,
    validate_mapping_spec,
)
from .migration import (
    Actor,
    AuditAction,
    EntityMapEntry,
    EntityMapStatus,
    EntityProgress,
    MappingSpecVersion,
    MigrationAuditEvent,
    MigrationRun,
    Phase,
    PhaseResult,
    RunStatus,
    SourceVendor,
)
from .record import (
    ErrorCode,
    RawRecord,
    CanonicalEnvelope,
    ValidationIssue,
    ValidationResult,
    ValidationReport,
    RecordFailure,
    MigrationResult,
)

__all__ = [
    "EntityType",
    "ENTITY_LOAD_ORDER",
    "RELATIONSHIPS",
    "Relationship",
    "Address",
    "Patient",
    "Appointment",
    "ChartSection",
    "Chart",
    "Encounter",
    "Consent",
    "Photo",
    "Document",
    "InvoiceLineItem",
    "Invoice",
    "CanonicalRecord",
    "generate_canonical_id",
    "record_from_dict",
    "TransformType",
    "FieldMapping",
    "EntityMapping",
    "MappingSpec",
    "validate_mapping_spec",
    "Actor",
    "AuditAction",
    "EntityMapEntry",
    "EntityMapStatus",
    "EntityProgress",
    "MappingSpecVersion",
    "MigrationAuditEvent",
    "MigrationRun",
    "Phase",
    "PhaseResult",
    "RunStatus",
    "SourceVendor",
    "ErrorCode",
    "RawRecord",
    "CanonicalEnvelope",
    "ValidationIssue",
    "ValidationResult",
    "ValidationReport",
    "RecordFailure",
    "MigrationResult",
]
