"""Canonical record validators.

Validators are pure functions: they inspect one canonical record (or a
batch of them) and return data describing what is wrong. Nothing here
raises for bad records.
"""

import re
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from dateutil import parser as date_parser

from ..models.canonical import (
    EntityType,
    Patient,
    Appointment,
    Chart,
    Encounter,
    Consent,
    Photo,
    Document,
    Invoice,
    relationships_for,
)
from ..models.record import (
    CanonicalEnvelope,
    ErrorCode,
    ValidationIssue,
    ValidationResult,
    ValidationReport,
)

logger = logging.getLogger(__name__)


class ValidationRules:
    """Common field rules shared by the entity validators."""

    EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    @staticmethod
    def non_empty(value: Any) -> bool:
        """True for a value that carries content (whitespace-only strings do not)."""
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True

    @staticmethod
    def email(value: Any) -> bool:
        return bool(ValidationRules.EMAIL_PATTERN.match(str(value)))

    @staticmethod
    def phone(value: Any) -> bool:
        digits = re.sub(r"\D", "", str(value))
        return 7 <= len(digits) <= 15

    @staticmethod
    def iso_date(value: Any) -> bool:
        """Check that a value is an ISO 8601 date or datetime."""
        if not isinstance(value, str):
            return False
        try:
            date_parser.isoparse(value)
            return True
        except (ValueError, OverflowError):
            return False

    @staticmethod
    def amount(value: Any) -> bool:
        """Check that a value is a non-negative number."""
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= 0


class _Collector:
    """Accumulates issues for one record."""

    def __init__(self, entity_type: EntityType, canonical_id: str):
        self.entity_type = entity_type.value
        self.canonical_id = canonical_id
        self.result = ValidationResult()

    def error(self, code: ErrorCode, field: str, message: str) -> None:
        self.result.errors.append(ValidationIssue(
            code=code.value,
            entity_type=self.entity_type,
            canonical_id=self.canonical_id,
            field=field,
            message=message,
            severity="error",
        ))

    def warning(self, code: ErrorCode, field: str, message: str) -> None:
        self.result.warnings.append(ValidationIssue(
            code=code.value,
            entity_type=self.entity_type,
            canonical_id=self.canonical_id,
            field=field,
            message=message,
            severity="warning",
        ))

    def require_patient_link(self, record: Any, label: str) -> None:
        if not ValidationRules.non_empty(record.canonical_patient_id):
            self.error(ErrorCode.MISSING_PATIENT_LINK, "canonical_patient_id", f"{label} must link to a patient")

    def require(self, value: Any, field: str, message: str) -> None:
        if not ValidationRules.non_empty(value):
            self.error(ErrorCode.MISSING_REQUIRED, field, message)


def validate_patient(record: Patient) -> ValidationResult:
    c = _Collector(EntityType.PATIENT, record.canonical_id)

    c.require(record.first_name, "first_name", "First name is required")
    c.require(record.last_name, "last_name", "Last name is required")

    if ValidationRules.non_empty(record.email) and not ValidationRules.email(record.email):
        c.warning(ErrorCode.INVALID_EMAIL, "email", "Email address is not well formed")
    if ValidationRules.non_empty(record.phone) and not ValidationRules.phone(record.phone):
        c.warning(ErrorCode.INVALID_PHONE, "phone", "Phone number has an implausible length")
    if ValidationRules.non_empty(record.date_of_birth) and not ValidationRules.iso_date(record.date_of_birth):
        c.warning(ErrorCode.INVALID_DATE, "date_of_birth", "Date of birth is not a valid date")

    return c.result


def validate_appointment(record: Appointment) -> ValidationResult:
    c = _Collector(EntityType.APPOINTMENT, record.canonical_id)

    c.require_patient_link(record, "Appointment")
    if not ValidationRules.non_empty(record.provider_name):
        c.error(ErrorCode.MISSING_PROVIDER, "provider_name", "Appointment must have a provider")

    if not ValidationRules.non_empty(record.start_time):
        c.error(ErrorCode.MISSING_REQUIRED, "start_time", "Appointment must have a start time")
    elif not ValidationRules.iso_date(record.start_time):
        c.error(ErrorCode.INVALID_DATE, "start_time", "Start time is not a valid datetime")

    if ValidationRules.non_empty(record.end_time) and not ValidationRules.iso_date(record.end_time):
        c.warning(ErrorCode.INVALID_DATE, "end_time", "End time is not a valid datetime")

    return c.result


def validate_chart(record: Chart) -> ValidationResult:
    c = _Collector(EntityType.CHART, record.canonical_id)

    c.require_patient_link(record, "Chart")
    if not ValidationRules.non_empty(record.provider_name):
        c.error(ErrorCode.MISSING_PROVIDER, "provider_name", "Chart must have a provider")
    if not record.sections:
        c.warning(ErrorCode.EMPTY_SECTIONS, "sections", "Chart has no sections")

    return c.result


def validate_encounter(record: Encounter) -> ValidationResult:
    c = _Collector(EntityType.ENCOUNTER, record.canonical_id)

    c.require_patient_link(record, "Encounter")
    if not ValidationRules.non_empty(record.provider_name):
        c.error(ErrorCode.MISSING_PROVIDER, "provider_name", "Encounter must have a provider")
    if not ValidationRules.non_empty(record.date):
        c.error(ErrorCode.MISSING_REQUIRED, "date", "Encounter must have a date")
    elif not ValidationRules.iso_date(record.date):
        c.error(ErrorCode.INVALID_DATE, "date", "Encounter date is not a valid date")

    return c.result


def validate_consent(record: Consent) -> ValidationResult:
    c = _Collector(EntityType.CONSENT, record.canonical_id)

    c.require_patient_link(record, "Consent")
    c.require(record.template_name, "template_name", "Consent must have a template name")

    return c.result


def validate_photo(record: Photo) -> ValidationResult:
    c = _Collector(EntityType.PHOTO, record.canonical_id)

    c.require_patient_link(record, "Photo")
    c.require(record.filename, "filename", "Photo must have a filename")
    c.require(record.artifact_key, "artifact_key", "Photo must reference an artifact")

    return c.result


def validate_document(record: Document) -> ValidationResult:
    c = _Collector(EntityType.DOCUMENT, record.canonical_id)

    c.require_patient_link(record, "Document")
    c.require(record.filename, "filename", "Document must have a filename")
    c.require(record.artifact_key, "artifact_key", "Document must reference an artifact")

    return c.result


def validate_invoice(record: Invoice) -> ValidationResult:
    c = _Collector(EntityType.INVOICE, record.canonical_id)

    c.require_patient_link(record, "Invoice")
    if not ValidationRules.amount(record.total):
        c.error(ErrorCode.INVALID_AMOUNT, "total", f"Invoice total must be a non-negative number, got {record.total!r}")
    if not record.line_items:
        c.warning(ErrorCode.MISSING_LINE_ITEMS, "line_items", "Invoice has no line items")

    return c.result


def validate_record(entity_type: Any, record: Any) -> ValidationResult:
    """
    Validate one canonical record, dispatching on its entity type tag.

    Args:
        entity_type: EntityType (or its string value)
        record: The canonical dataclass for that entity type

    Returns:
        ValidationResult; an unrecognized tag yields a single error
    """
    try:
        entity_type = EntityType(entity_type)
    except ValueError:
        result = ValidationResult()
        result.errors.append(ValidationIssue(
            code=ErrorCode.UNKNOWN_ENTITY_TYPE.value,
            entity_type=str(entity_type),
            canonical_id=getattr(record, "canonical_id", ""),
            field="",
            message=f"Unknown entity type: {entity_type}",
        ))
        return result

    if entity_type == EntityType.PATIENT:
        return validate_patient(record)
    elif entity_type == EntityType.APPOINTMENT:
        return validate_appointment(record)
    elif entity_type == EntityType.CHART:
        return validate_chart(record)
    elif entity_type == EntityType.ENCOUNTER:
        return validate_encounter(record)
    elif entity_type == EntityType.CONSENT:
        return validate_consent(record)
    elif entity_type == EntityType.PHOTO:
        return validate_photo(record)
    elif entity_type == EntityType.DOCUMENT:
        return validate_document(record)
    elif entity_type == EntityType.INVOICE:
        return validate_invoice(record)
    raise AssertionError(f"Unhandled entity type: {entity_type}")


def build_reference_index(items: Iterable[CanonicalEnvelope]) -> Dict[str, Set[str]]:
    """Index canonical ids by entity type."""
    index: Dict[str, Set[str]] = {}
    for item in items:
        index.setdefault(item.entity_type.value, set()).add(item.canonical_id)
    return index


def validate_referential_integrity(
    items: List[CanonicalEnvelope],
    index: Optional[Dict[str, Set[str]]] = None
) -> List[ValidationIssue]:
    """
    Check that every reference field resolves to a record in the batch.

    Args:
        items: Records whose references are checked
        index: Pre-built id index covering the whole import; built from
            ``items`` when omitted

    Returns:
        One ORPHANED_REFERENCE error per unresolved, non-empty reference
    """
    if index is None:
        index = build_reference_index(items)

    issues = []
    for item in items:
        for rel in relationships_for(item.entity_type):
            ref = getattr(item.record, rel.field, None)
            if not ValidationRules.non_empty(ref):
                # Absence is the per-record validators' concern
                continue
            if ref not in index.get(rel.target_entity.value, set()):
                issues.append(ValidationIssue(
                    code=ErrorCode.ORPHANED_REFERENCE.value,
                    entity_type=item.entity_type.value,
                    canonical_id=item.canonical_id,
                    field=rel.field,
                    message=f"{rel.field} references unknown {rel.target_entity.value} {ref}",
                ))
    return issues


def _present_fields(record: Any) -> List[str]:
    data = record.to_dict()
    return [
        name for name, value in data.items()
        if name not in ("canonical_id", "source_record_id")
        and value not in (None, "", [], {})
    ]


def compile_report(
    checked: List[Tuple[CanonicalEnvelope, ValidationResult]]
) -> ValidationReport:
    """
    Aggregate per-record results into a report.

    Args:
        checked: (record, result) pairs, one per validated record

    Returns:
        ValidationReport with counts by code and invalid records by entity
    """
    report = ValidationReport(total_records=len(checked))

    for item, result in checked:
        entity = item.entity_type.value

        if result.valid:
            report.valid_records += 1
        else:
            report.invalid_records += 1
            report.errors_by_entity[entity] = report.errors_by_entity.get(entity, 0) + 1

        if result.warnings:
            report.warning_records += 1

        for issue in result.errors:
            report.errors_by_code[issue.code] = report.errors_by_code.get(issue.code, 0) + 1
        report.errors.extend(result.errors)
        report.warnings.extend(result.warnings)

        presence = report.field_presence.setdefault(entity, {})
        for name in _present_fields(item.record):
            presence[name] = presence.get(name, 0) + 1

    return report


def merge_reports(reports: Iterable[ValidationReport]) -> ValidationReport:
    """Combine per-batch reports into one."""
    merged = ValidationReport()
    for report in reports:
        merged.total_records += report.total_records
        merged.valid_records += report.valid_records
        merged.invalid_records += report.invalid_records
        merged.warning_records += report.warning_records
        for code, count in report.errors_by_code.items():
            merged.errors_by_code[code] = merged.errors_by_code.get(code, 0) + count
        for entity, count in report.errors_by_entity.items():
            merged.errors_by_entity[entity] = merged.errors_by_entity.get(entity, 0) + count
        merged.errors.extend(report.errors)
        merged.warnings.extend(report.warnings)
        for entity, presence in report.field_presence.items():
            target = merged.field_presence.setdefault(entity, {})
            for name, count in presence.items():
                target[name] = target.get(name, 0) + count
    return merged


def check_records(
    items: List[CanonicalEnvelope],
    seen_ids: Optional[Set[str]] = None
) -> List[Tuple[CanonicalEnvelope, ValidationResult]]:
    """
    Run the per-record validators over records, flagging repeated canonical ids.

    Args:
        items: Records to validate
        seen_ids: Canonical ids already validated earlier in the import;
            updated in place

    Returns:
        (record, result) pairs in input order
    """
    seen = seen_ids if seen_ids is not None else set()
    checked = []

    for item in items:
        result = validate_record(item.entity_type, item.record)
        if item.canonical_id in seen:
            result.errors.append(ValidationIssue(
                code=ErrorCode.DUPLICATE_CANONICAL_ID.value,
                entity_type=item.entity_type.value,
                canonical_id=item.canonical_id,
                field="canonical_id",
                message=f"Duplicate canonical id {item.canonical_id}",
            ))
        seen.add(item.canonical_id)
        checked.append((item, result))

    return checked


def validate_batch(items: List[CanonicalEnvelope]) -> ValidationReport:
    """
    Run the per-record validators over a batch and summarize.

    A canonical id seen earlier in the batch marks the later record invalid
    with DUPLICATE_CANONICAL_ID.
    """
    report = compile_report(check_records(items))
    logger.debug(
        f"Validated {report.total_records} records: "
        f"{report.valid_records} valid, {report.invalid_records} invalid"
    )
    return report
