"""Base loader interface for the target store."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import logging

from ..models.migration import utc_now
from ..models.record import CanonicalEnvelope, ErrorCode, MigrationResult

logger = logging.getLogger(__name__)

# Canonical reference field -> target id of the referenced record
References = Dict[str, str]


@dataclass
class LoadResult:
    """Result of a load operation."""
    entity: str
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    results: List[MigrationResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_succeeded / self.total_attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "errors": self.errors,
        }


class BaseLoader(ABC):
    """
    Base class for target loaders.

    Loaders commit canonical records into the target store. A rejected
    record is reported through MigrationResult; an unreachable target
    raises LoaderUnavailableError so the run fails instead of marking
    every remaining record as failed.
    """

    def __init__(self, dry_run: bool = False):
        """
        Initialize the loader.

        Args:
            dry_run: If True, simulate without making changes
        """
        self.dry_run = dry_run

    @abstractmethod
    def load_record(
        self,
        envelope: CanonicalEnvelope,
        references: Optional[References] = None
    ) -> MigrationResult:
        """
        Load a single record into the target store.

        Args:
            envelope: Validated canonical record
            references: Target ids for the record's reference fields

        Returns:
            MigrationResult carrying the target id on success

        Raises:
            LoaderUnavailableError: If the target cannot accept writes
        """
        pass

    def load_batch(
        self,
        items: List[Tuple[CanonicalEnvelope, References]],
        entity: str
    ) -> LoadResult:
        """
        Load a batch of records of one entity type.

        Args:
            items: (envelope, references) pairs
            entity: Entity type being loaded

        Returns:
            LoadResult with batch statistics
        """
        result = LoadResult(entity=entity)
        result.started_at = utc_now()

        for envelope, references in items:
            migration_result = self.load_record(envelope, references)
            result.results.append(migration_result)
            result.total_attempted += 1

            if migration_result.success:
                result.total_succeeded += 1
            else:
                result.total_failed += 1
                result.errors.append({
                    "record_id": envelope.canonical_id,
                    "error": migration_result.error,
                    "error_code": migration_result.error_code,
                })

        result.completed_at = utc_now()
        logger.debug(f"Loaded {entity}: {result.total_succeeded}/{result.total_attempted} succeeded")
        return result

    def build_payload(self, envelope: CanonicalEnvelope, references: Optional[References] = None) -> Dict[str, Any]:
        """
        Build the body sent to the target.

        Reference fields keep their canonical id and gain a sibling holding
        the target id ("canonical_patient_id" -> "patient_id").
        """
        payload = envelope.record.to_dict()
        payload["external_id"] = envelope.canonical_id
        for ref_field, target_id in (references or {}).items():
            payload[ref_field.replace("canonical_", "", 1)] = target_id
        return payload

    def rejected(self, envelope: CanonicalEnvelope, message: str) -> MigrationResult:
        return MigrationResult(
            record_id=envelope.canonical_id,
            success=False,
            error=message,
            error_code=ErrorCode.LOAD_REJECTED.value,
        )

    def existing_patients(self) -> List[Dict[str, Any]]:
        """
        Patients already present in the target store.

        Used to skip source patients the clinic already has. Rows carry
        id, first_name, last_name, email, phone and date_of_birth.
        """
        return []

    def validate_connection(self) -> bool:
        """Validate the connection to the target store."""
        return True
