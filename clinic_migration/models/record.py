"""Record envelopes and validation result types."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime

from .canonical import CanonicalRecord, EntityType, record_from_dict


class ErrorCode(str, Enum):
    """Validation and record-failure codes."""
    MISSING_REQUIRED = "MISSING_REQUIRED"
    INVALID_DATE = "INVALID_DATE"
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_PHONE = "INVALID_PHONE"
    ORPHANED_REFERENCE = "ORPHANED_REFERENCE"
    MISSING_PATIENT_LINK = "MISSING_PATIENT_LINK"
    MISSING_PROVIDER = "MISSING_PROVIDER"
    EMPTY_SECTIONS = "EMPTY_SECTIONS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    MISSING_LINE_ITEMS = "MISSING_LINE_ITEMS"
    DUPLICATE_CANONICAL_ID = "DUPLICATE_CANONICAL_ID"
    UNKNOWN_ENTITY_TYPE = "UNKNOWN_ENTITY_TYPE"
    # Raised by transform and load rather than the validators
    TRANSFORM_FAILED = "TRANSFORM_FAILED"
    UNMAPPED_ENTITY = "UNMAPPED_ENTITY"
    EXCLUDED = "EXCLUDED"
    DUPLICATE_PATIENT = "DUPLICATE_PATIENT"
    UNRESOLVED_REFERENCE = "UNRESOLVED_REFERENCE"
    LOAD_REJECTED = "LOAD_REJECTED"


@dataclass
class RawRecord:
    """A source record exactly as the adapter produced it."""
    source_entity_type: str
    source_id: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_entity_type": self.source_entity_type,
            "source_id": self.source_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawRecord":
        return cls(
            source_entity_type=data["source_entity_type"],
            source_id=str(data["source_id"]),
            payload=data.get("payload") or {},
        )

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a payload value by dot-notation path (e.g., 'address.city')."""
        value: Any = self.payload
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return default
            if value is None:
                return default
        return value


@dataclass
class CanonicalEnvelope:
    """A canonical record tagged with its entity type and provenance."""
    entity_type: EntityType
    record: CanonicalRecord
    source_entity_type: str = ""
    checksum: str = ""

    @property
    def canonical_id(self) -> str:
        return self.record.canonical_id

    @property
    def source_id(self) -> str:
        return self.record.source_record_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "source_entity_type": self.source_entity_type,
            "checksum": self.checksum,
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalEnvelope":
        entity_type = EntityType(data["entity_type"])
        return cls(
            entity_type=entity_type,
            record=record_from_dict(entity_type, data["record"]),
            source_entity_type=data.get("source_entity_type", ""),
            checksum=data.get("checksum", ""),
        )


@dataclass
class ValidationIssue:
    """A validation error or warning on a canonical record."""
    code: str
    entity_type: str
    canonical_id: str
    field: str
    message: str
    severity: str = "error"  # error, warning

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "entity_type": self.entity_type,
            "canonical_id": self.canonical_id,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            code=data["code"],
            entity_type=data["entity_type"],
            canonical_id=data.get("canonical_id", ""),
            field=data.get("field", ""),
            message=data.get("message", ""),
            severity=data.get("severity", "error"),
        )


@dataclass
class ValidationResult:
    """Outcome of validating one record. Valid iff there are no errors."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class ValidationReport:
    """Aggregate validation outcome for a batch of records."""
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    warning_records: int = 0
    errors_by_code: Dict[str, int] = field(default_factory=dict)
    errors_by_entity: Dict[str, int] = field(default_factory=dict)  # invalid records per entity type
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    field_presence: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "warning_records": self.warning_records,
            "errors_by_code": self.errors_by_code,
            "errors_by_entity": self.errors_by_entity,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "field_presence": self.field_presence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationReport":
        return cls(
            total_records=data.get("total_records", 0),
            valid_records=data.get("valid_records", 0),
            invalid_records=data.get("invalid_records", 0),
            warning_records=data.get("warning_records", 0),
            errors_by_code=data.get("errors_by_code", {}),
            errors_by_entity=data.get("errors_by_entity", {}),
            errors=[ValidationIssue.from_dict(e) for e in data.get("errors", [])],
            warnings=[ValidationIssue.from_dict(w) for w in data.get("warnings", [])],
            field_presence=data.get("field_presence", {}),
        )


@dataclass
class RecordFailure:
    """A per-record failure recorded by transform, validate or load."""
    entity_type: str
    source_id: str
    code: str
    message: str
    canonical_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "canonical_id": self.canonical_id,
            "code": self.code,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordFailure":
        return cls(
            entity_type=data["entity_type"],
            source_id=data.get("source_id", ""),
            code=data["code"],
            message=data.get("message", ""),
            canonical_id=data.get("canonical_id"),
        )


@dataclass
class MigrationResult:
    """Result of attempting to load a record to the target."""
    record_id: str
    target_id: Optional[str] = None  # ID assigned by target system
    success: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    loaded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "record_id": self.record_id,
            "target_id": self.target_id,
            "success": self.success,
            "error": self.error,
            "error_code": self.error_code,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
        }
