"""Service layer for the migration pipeline."""

from .credentials import CredentialVault
from .duplicate_detector import DuplicateDetector, KnownPatient
from .llm_drafter import LLMMappingDrafter, create_drafter
from .mapping_drafter import MappingDrafter, profile_entity
from .reconciler import ReconciliationReport, reconcile
from .transformer import RecordTransformError, TransformEngine
from .validator import validate_batch, validate_record, validate_referential_integrity

__all__ = [
    "CredentialVault",
    "DuplicateDetector",
    "KnownPatient",
    "LLMMappingDrafter",
    "create_drafter",
    "MappingDrafter",
    "profile_entity",
    "ReconciliationReport",
    "reconcile",
    "RecordTransformError",
    "TransformEngine",
    "validate_batch",
    "validate_record",
    "validate_referential_integrity",
]
