"""Source profiling and mapping proposals.

The drafter never applies anything: it inspects ingested records and
proposes a MappingSpec for a human to review and approve. Vendor default
mappings are used where they exist; other fields are matched by name.
"""

import re
import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Tuple

from ..models.canonical import EntityType, canonical_field_names, relationships_for
from ..models.mapping import (
    APPROVAL_CONFIDENCE_THRESHOLD,
    EntityMapping,
    FieldMapping,
    MappingSpec,
    TransformType,
)
from ..models.migration import SourceVendor
from ..models.record import RawRecord

logger = logging.getLogger(__name__)


PHI_FIELD_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in [
        r"^(first|last|middle|full)?_?name$",
        r"^(f|l|m)name$",
        r"email",
        r"phone",
        r"(^|_)(dob|date_?of_?birth|birth_?date|birthday)($|_)",
        r"(^|_)ssn($|_)",
        r"social_?security",
        r"address",
        r"(^|_)city($|_)",
        r"(^|_)zip",
        r"(^|_)postal",
        r"(^|_)(mrn|medical_?record)",
        r"insurance",
        r"allerg",
        r"medication",
        r"diagnos",
    ]
]

# Source entity names (normalized) -> canonical entity
ENTITY_ALIASES: Dict[str, EntityType] = {
    "patient": EntityType.PATIENT, "patients": EntityType.PATIENT,
    "client": EntityType.PATIENT, "clients": EntityType.PATIENT,
    "customer": EntityType.PATIENT, "customers": EntityType.PATIENT,
    "appointment": EntityType.APPOINTMENT, "appointments": EntityType.APPOINTMENT,
    "booking": EntityType.APPOINTMENT, "bookings": EntityType.APPOINTMENT,
    "visit": EntityType.APPOINTMENT, "visits": EntityType.APPOINTMENT,
    "chart": EntityType.CHART, "charts": EntityType.CHART,
    "clinicalnote": EntityType.CHART, "clinicalnotes": EntityType.CHART,
    "procedure": EntityType.CHART, "procedures": EntityType.CHART,
    "encounter": EntityType.ENCOUNTER, "encounters": EntityType.ENCOUNTER,
    "consent": EntityType.CONSENT, "consents": EntityType.CONSENT,
    "photo": EntityType.PHOTO, "photos": EntityType.PHOTO,
    "image": EntityType.PHOTO, "images": EntityType.PHOTO,
    "document": EntityType.DOCUMENT, "documents": EntityType.DOCUMENT,
    "file": EntityType.DOCUMENT, "files": EntityType.DOCUMENT,
    "invoice": EntityType.INVOICE, "invoices": EntityType.INVOICE,
    "order": EntityType.INVOICE, "orders": EntityType.INVOICE,
}

# Canonical field -> alternative source names (normalized)
FIELD_ALIASES: Dict[str, List[str]] = {
    "first_name": ["firstname", "fname", "first", "givenname"],
    "last_name": ["lastname", "lname", "last", "surname", "familyname"],
    "email": ["emailaddress", "mail"],
    "phone": ["phonenumber", "mobile", "mobilephone", "cell", "cellphone", "telephone"],
    "date_of_birth": ["dob", "birthdate", "birthday", "dateofbirth"],
    "gender": ["sex"],
    "medical_notes": ["notes", "medicalhistory"],
    "canonical_patient_id": ["patientid", "clientid", "customerid", "patient", "client"],
    "canonical_appointment_id": ["appointmentid", "bookingid", "visitid"],
    "provider_name": ["provider", "staff", "staffname", "practitioner", "providername", "doctor"],
    "service_name": ["service", "treatment", "servicename", "procedure"],
    "start_time": ["start", "startat", "starttime", "appointmentdate", "datetime", "scheduledat"],
    "end_time": ["end", "endat", "endtime"],
    "chief_complaint": ["complaint", "reason", "title"],
    "sections": ["clinicalnotes", "note", "notes", "body"],
    "signed_at": ["signedon", "signeddate"],
    "template_name": ["template", "form", "formname"],
    "invoice_number": ["number", "invoiceno", "invoicenumber"],
    "total": ["amount", "totalamount", "grandtotal", "amountdue"],
    "tax_amount": ["tax", "taxes"],
    "paid_at": ["paidon", "paiddate", "closedat"],
    "filename": ["file", "name", "filename"],
    "artifact_key": ["url", "path", "fileurl"],
    "taken_at": ["capturedat", "createdat"],
    "date": ["encounterdate", "visitdate", "servicedate"],
}

# Canonical field -> (transform, config) proposed alongside a match
FIELD_TRANSFORMS: Dict[str, Tuple[TransformType, Dict[str, Any]]] = {
    "email": (TransformType.NORMALIZE_EMAIL, {}),
    "phone": (TransformType.NORMALIZE_PHONE, {}),
    "date_of_birth": (TransformType.NORMALIZE_DATE, {}),
    "date": (TransformType.NORMALIZE_DATE, {}),
    "start_time": (TransformType.NORMALIZE_DATETIME, {}),
    "end_time": (TransformType.NORMALIZE_DATETIME, {}),
    "signed_at": (TransformType.NORMALIZE_DATETIME, {}),
    "paid_at": (TransformType.NORMALIZE_DATETIME, {}),
    "taken_at": (TransformType.NORMALIZE_DATETIME, {}),
    "total": (TransformType.TO_NUMBER, {}),
    "subtotal": (TransformType.TO_NUMBER, {}),
    "tax_amount": (TransformType.TO_NUMBER, {}),
    "tags": (TransformType.TO_LIST, {}),
    "sections": (TransformType.TO_SECTIONS, {}),
    "first_name": (TransformType.TRIM, {}),
    "last_name": (TransformType.TRIM, {}),
}


def _fm(source: str, target: str, transform: TransformType = TransformType.DIRECT, **config) -> Dict[str, Any]:
    return {
        "source_field": source,
        "target_field": target,
        "transform": transform.value,
        "transform_config": config,
        "confidence": 1.0,
        "requires_approval": False,
    }


def _ref(source: str, target: str, entity: EntityType) -> Dict[str, Any]:
    return _fm(source, target, TransformType.REFERENCE, entity=entity.value)


# Mappings written once per vendor: vendor -> source entity -> entity mapping dict
VENDOR_DEFAULT_MAPPINGS: Dict[SourceVendor, Dict[str, Dict[str, Any]]] = {
    SourceVendor.BOULEVARD: {
        "clients": {
            "target_entity": "patient",
            "field_mappings": [
                _fm("firstName", "first_name", TransformType.TRIM),
                _fm("lastName", "last_name", TransformType.TRIM),
                _fm("email", "email", TransformType.NORMALIZE_EMAIL),
                _fm("phoneNumber", "phone", TransformType.NORMALIZE_PHONE),
                _fm("dob", "date_of_birth", TransformType.NORMALIZE_DATE),
                _fm("pronoun", "gender"),
                _fm("address.line1", "address.line1"),
                _fm("address.line2", "address.line2"),
                _fm("address.city", "address.city"),
                _fm("address.state", "address.state"),
                _fm("address.zip", "address.zip"),
                _fm("bookingMemo.text", "medical_notes"),
                _fm("tags", "tags", TransformType.TO_LIST, key="name"),
            ],
        },
        "appointments": {
            "target_entity": "appointment",
            "field_mappings": [
                _ref("client.id", "canonical_patient_id", EntityType.PATIENT),
                _fm("staff.firstName", "provider_name", TransformType.CONCAT, fields=["staff.lastName"]),
                _fm("service.name", "service_name"),
                _fm("startAt", "start_time", TransformType.NORMALIZE_DATETIME),
                _fm("endAt", "end_time", TransformType.NORMALIZE_DATETIME),
                _fm("state", "status", TransformType.ENUM_MAP, mapping={
                    "BOOKED": "scheduled", "CONFIRMED": "confirmed", "ARRIVED": "checked_in",
                    "ACTIVE": "in_progress", "FINAL": "completed", "CANCELLED": "cancelled",
                }, default="completed"),
                _fm("notes", "notes"),
            ],
        },
        "orders": {
            "target_entity": "invoice",
            "field_mappings": [
                _ref("client.id", "canonical_patient_id", EntityType.PATIENT),
                _fm("number", "invoice_number"),
                _fm("state", "status", TransformType.LOWERCASE),
                _fm("total", "total", TransformType.TO_NUMBER),
                _fm("subtotal", "subtotal", TransformType.TO_NUMBER),
                _fm("totalTax", "tax_amount", TransformType.TO_NUMBER),
                _fm("notes", "notes"),
                _fm("closedAt", "paid_at", TransformType.NORMALIZE_DATETIME),
                _fm("lineItems", "line_items", TransformType.MAP_LIST, fields={
                    "description": "description", "quantity": "quantity", "unit_price": "unitPrice",
                    "total": "total", "service_source_id": "service.id",
                }, numeric=["quantity", "unit_price", "total"]),
            ],
        },
    },
    SourceVendor.AESTHETICS_RECORD: {
        "patients": {
            "target_entity": "patient",
            "field_mappings": [
                _fm("first_name", "first_name", TransformType.TRIM),
                _fm("last_name", "last_name", TransformType.TRIM),
                _fm("email", "email", TransformType.NORMALIZE_EMAIL),
                _fm("phone", "phone", TransformType.NORMALIZE_PHONE),
                _fm("date_of_birth", "date_of_birth", TransformType.NORMALIZE_DATE),
                _fm("gender", "gender", TransformType.LOWERCASE),
                _fm("address1", "address.line1"),
                _fm("address2", "address.line2"),
                _fm("city", "address.city"),
                _fm("state", "address.state"),
                _fm("zip", "address.zip"),
                _fm("country", "address.country"),
                _fm("allergies", "allergies"),
                _fm("notes", "medical_notes"),
            ],
        },
        "appointments": {
            "target_entity": "appointment",
            "field_mappings": [
                _ref("patient_id", "canonical_patient_id", EntityType.PATIENT),
                _fm("provider_name", "provider_name"),
                _fm("service_name", "service_name"),
                _fm("appointment_datetime", "start_time", TransformType.NORMALIZE_DATETIME),
                _fm("end_datetime", "end_time", TransformType.NORMALIZE_DATETIME),
                _fm("status", "status", TransformType.LOWERCASE),
                _fm("notes", "notes"),
            ],
        },
        "procedures": {
            "target_entity": "chart",
            "field_mappings": [
                _ref("patient_id", "canonical_patient_id", EntityType.PATIENT),
                _ref("appointment_id", "canonical_appointment_id", EntityType.APPOINTMENT),
                _fm("provider_name", "provider_name"),
                _fm("procedure_name", "chief_complaint"),
                _fm("clinical_notes", "sections", TransformType.TO_SECTIONS, title="Clinical Notes"),
                _fm("signed_at", "signed_at", TransformType.NORMALIZE_DATETIME),
            ],
        },
        "invoices": {
            "target_entity": "invoice",
            "field_mappings": [
                _ref("patient_id", "canonical_patient_id", EntityType.PATIENT),
                _fm("invoice_number", "invoice_number"),
                _fm("status", "status", TransformType.LOWERCASE),
                _fm("total_amount", "total", TransformType.TO_NUMBER),
                _fm("subtotal", "subtotal", TransformType.TO_NUMBER),
                _fm("tax", "tax_amount", TransformType.TO_NUMBER),
                _fm("paid_on", "paid_at", TransformType.NORMALIZE_DATETIME),
                _fm("items", "line_items", TransformType.MAP_LIST, fields={
                    "description": "product_name", "quantity": "qty",
                    "unit_price": "price", "total": "total",
                }, numeric=["quantity", "unit_price", "total"]),
            ],
        },
    },
}


@dataclass
class FieldProfile:
    """Statistics about one source field. Never carries raw values."""
    name: str
    inferred_type: str
    null_rate: float
    unique_rate: float
    is_phi: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "inferred_type": self.inferred_type,
            "null_rate": self.null_rate,
            "unique_rate": self.unique_rate,
            "is_phi": self.is_phi,
        }


@dataclass
class EntityProfile:
    """Statistics about one source entity."""
    source_entity: str
    record_count: int
    suggested_target: Optional[str] = None
    fields: List[FieldProfile] = field(default_factory=list)
    key_candidates: List[str] = field(default_factory=list)
    relationship_hints: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_entity": self.source_entity,
            "record_count": self.record_count,
            "suggested_target": self.suggested_target,
            "fields": [f.to_dict() for f in self.fields],
            "key_candidates": self.key_candidates,
            "relationship_hints": self.relationship_hints,
        }


def normalize_name(name: str) -> str:
    """Normalize field name for matching."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def is_phi_field(name: str) -> bool:
    return any(p.search(name) for p in PHI_FIELD_PATTERNS)


def guess_entity_type(source_entity: str) -> Optional[EntityType]:
    """Guess the canonical entity for a source entity or export file name."""
    stem = re.sub(r"\.(csv|json|jsonl)$", "", source_entity.lower())
    return ENTITY_ALIASES.get(normalize_name(stem))


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s().-]{7,20}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2})?|^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$")
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def _infer_type(values: List[Any]) -> str:
    """Infer a field type from sample values."""
    non_empty = [v for v in values if v not in (None, "")]
    if not non_empty:
        return "unknown"

    if all(isinstance(v, bool) for v in non_empty):
        return "boolean"
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in non_empty):
        return "number"
    if all(isinstance(v, dict) for v in non_empty):
        return "object"
    if all(isinstance(v, list) for v in non_empty):
        return "array"

    sample = [str(v) for v in non_empty[:100]]
    checks = [
        ("email", lambda v: bool(_EMAIL_RE.match(v))),
        ("date", lambda v: bool(_DATE_RE.match(v))),
        ("phone", lambda v: bool(_PHONE_RE.match(v)) and len(re.sub(r"\D", "", v)) >= 7),
        ("number", lambda v: bool(_NUMBER_RE.match(v))),
        ("boolean", lambda v: v.lower() in ("true", "false", "yes", "no")),
    ]
    for type_name, check in checks:
        if sum(1 for v in sample if check(v)) / len(sample) >= 0.8:
            return type_name

    if len(set(sample)) <= 20 and len(sample) >= 5:
        return "enum"
    return "string"


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return repr(value)
    return value


def profile_entity(source_entity: str, records: List[RawRecord]) -> EntityProfile:
    """
    Profile the ingested records of one source entity.

    Args:
        source_entity: Source entity name
        records: Ingested records (or a sample of them)

    Returns:
        EntityProfile with per-field statistics and PHI flags
    """
    target = guess_entity_type(source_entity)
    profile = EntityProfile(
        source_entity=source_entity,
        record_count=len(records),
        suggested_target=target.value if target else None,
    )

    field_names: List[str] = []
    for record in records:
        for name in record.payload:
            if name not in field_names:
                field_names.append(name)

    for name in field_names:
        values = [r.payload.get(name) for r in records]
        non_empty = [v for v in values if v not in (None, "")]
        unique = {_hashable(v) for v in non_empty}
        null_rate = 1 - len(non_empty) / max(len(values), 1)
        unique_rate = len(unique) / max(len(non_empty), 1)

        profile.fields.append(FieldProfile(
            name=name,
            inferred_type=_infer_type(values),
            null_rate=round(null_rate, 2),
            unique_rate=round(unique_rate, 2),
            is_phi=is_phi_field(name),
        ))

        if unique_rate > 0.95 and null_rate < 0.05:
            profile.key_candidates.append(name)

        ref_match = re.match(r"^(.*?)(_id|Id|_key)$", name)
        if ref_match and ref_match.group(1):
            ref_target = guess_entity_type(ref_match.group(1))
            if ref_target:
                profile.relationship_hints.append({
                    "field": name,
                    "target_entity": ref_target.value,
                    "confidence": 0.7,
                })

    return profile


class MappingDrafter:
    """
    Proposes mapping specs for a run.

    Supports:
    - Vendor default mappings (confidence 1.0)
    - Exact and alias name matches against canonical fields
    - Fuzzy name matches, flagged for approval
    """

    def __init__(self, source_vendor: SourceVendor):
        self.source_vendor = SourceVendor(source_vendor)

    def draft(
        self,
        profiles: List[EntityProfile],
        version: int = 1
    ) -> MappingSpec:
        """
        Draft a mapping spec from source profiles.

        Args:
            profiles: One profile per ingested source entity
            version: Version number for the drafted spec

        Returns:
            Proposed MappingSpec; source entities with no plausible canonical
            target are left out and listed in the spec notes
        """
        defaults = VENDOR_DEFAULT_MAPPINGS.get(self.source_vendor, {})
        entity_mappings = []
        unmapped = []

        for profile in profiles:
            if profile.source_entity in defaults:
                data = dict(defaults[profile.source_entity])
                data["source_entity"] = profile.source_entity
                entity_mappings.append(EntityMapping.from_dict(data))
                continue

            target = guess_entity_type(profile.source_entity)
            if not target:
                unmapped.append(profile.source_entity)
                continue

            entity_mappings.append(self.suggest_entity_mapping(profile, target))

        notes = ""
        if unmapped:
            notes = f"No canonical target found for: {', '.join(sorted(unmapped))}"
            logger.info(notes)

        return MappingSpec(
            source_vendor=self.source_vendor.value,
            version=version,
            entity_mappings=entity_mappings,
            notes=notes,
        )

    def suggest_entity_mapping(self, profile: EntityProfile, target: EntityType) -> EntityMapping:
        """Match source fields to canonical fields by name."""
        canonical_fields = canonical_field_names(target)
        references = {r.field: r.target_entity for r in relationships_for(target)}
        field_mappings = []
        used_sources = set()

        id_field = "id"
        for candidate in ("id", "ID", "Id", "uuid"):
            if any(f.name == candidate for f in profile.fields):
                id_field = candidate
                break
        used_sources.add(id_field)

        for canonical in canonical_fields:
            if canonical == "address":
                # Matched part by part below
                continue
            match = self._match_field(canonical, profile, used_sources)
            if not match:
                continue
            source_name, confidence = match
            used_sources.add(source_name)

            if canonical in references:
                transform, config = TransformType.REFERENCE, {"entity": references[canonical].value}
            else:
                transform, config = FIELD_TRANSFORMS.get(canonical, (TransformType.DIRECT, {}))

            field_mappings.append(FieldMapping(
                source_field=source_name,
                target_field=canonical,
                transform=transform,
                transform_config=dict(config),
                confidence=confidence,
                requires_approval=confidence < APPROVAL_CONFIDENCE_THRESHOLD,
            ))

        # Flattened address columns
        if target == EntityType.PATIENT:
            for part, aliases in {
                "line1": ["address", "address1", "addressline1", "street"],
                "line2": ["address2", "addressline2"],
                "city": ["city"],
                "state": ["state", "province", "region"],
                "zip": ["zip", "zipcode", "postalcode", "postcode"],
                "country": ["country"],
            }.items():
                for f in profile.fields:
                    if f.name not in used_sources and normalize_name(f.name) in aliases:
                        used_sources.add(f.name)
                        field_mappings.append(FieldMapping(
                            source_field=f.name,
                            target_field=f"address.{part}",
                            confidence=0.85,
                        ))
                        break

        return EntityMapping(
            source_entity=profile.source_entity,
            target_entity=target,
            field_mappings=field_mappings,
            source_id_field=id_field,
        )

    def _match_field(
        self,
        canonical: str,
        profile: EntityProfile,
        used: set
    ) -> Optional[Tuple[str, float]]:
        """Find the best source field for a canonical field."""
        candidates = [f.name for f in profile.fields if f.name not in used]
        target_norm = normalize_name(canonical)
        aliases = FIELD_ALIASES.get(canonical, [])

        for name in candidates:
            if normalize_name(name) == target_norm:
                return name, 0.95
        for alias in aliases:
            for name in candidates:
                if normalize_name(name) == alias:
                    return name, 0.85

        best: Optional[Tuple[str, float]] = None
        for name in candidates:
            ratio = SequenceMatcher(None, normalize_name(name), target_norm).ratio()
            if ratio >= 0.8 and (best is None or ratio > best[1]):
                best = (name, ratio)
        if best:
            # Fuzzy matches always need a human look
            return best[0], round(min(best[1], 0.79) * 0.8, 2)
        return None
