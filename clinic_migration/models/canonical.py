"""Canonical clinic data model.

The canonical records are the normalized intermediate format between any
source platform and the target store. Every record carries a
``canonical_id`` (stable for the run) and the ``source_record_id`` it was
derived from.
"""

import hashlib
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union


class EntityType(str, Enum):
    """Canonical entity type tags."""
    PATIENT = "patient"
    APPOINTMENT = "appointment"
    CHART = "chart"
    ENCOUNTER = "encounter"
    CONSENT = "consent"
    PHOTO = "photo"
    DOCUMENT = "document"
    INVOICE = "invoice"


# Dependency order: referenced entities load before the entities that point at them
ENTITY_LOAD_ORDER: List[EntityType] = [
    EntityType.PATIENT,
    EntityType.APPOINTMENT,
    EntityType.ENCOUNTER,
    EntityType.CHART,
    EntityType.CONSENT,
    EntityType.PHOTO,
    EntityType.DOCUMENT,
    EntityType.INVOICE,
]


@dataclass(frozen=True)
class Relationship:
    """A reference field on one entity type pointing at another."""
    entity_type: EntityType
    field: str
    target_entity: EntityType
    required: bool


RELATIONSHIPS: List[Relationship] = [
    Relationship(EntityType.APPOINTMENT, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.CHART, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.CHART, "canonical_appointment_id", EntityType.APPOINTMENT, False),
    Relationship(EntityType.ENCOUNTER, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.ENCOUNTER, "canonical_appointment_id", EntityType.APPOINTMENT, False),
    Relationship(EntityType.CONSENT, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.PHOTO, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.PHOTO, "canonical_appointment_id", EntityType.APPOINTMENT, False),
    Relationship(EntityType.DOCUMENT, "canonical_patient_id", EntityType.PATIENT, True),
    Relationship(EntityType.INVOICE, "canonical_patient_id", EntityType.PATIENT, True),
]


def relationships_for(entity_type: EntityType) -> List[Relationship]:
    """Get the reference fields declared for an entity type."""
    return [r for r in RELATIONSHIPS if r.entity_type == entity_type]


def generate_canonical_id(clinic_id: str, vendor: str, entity_type: str, source_id: str) -> str:
    """
    Derive a deterministic canonical id for a source record.

    The same (clinic, vendor, entity, source id) always yields the same id,
    so re-running a transform batch never mints a second identity.
    """
    seed = f"{clinic_id}:{vendor}:{entity_type}:{source_id}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:24]


class CanonicalModel:
    """Shared dict conversion for canonical dataclasses."""

    # Nested dataclass types keyed by field name; list fields hold lists of them
    _nested: Dict[str, type] = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from dictionary representation, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            nested = cls._nested.get(key)
            if nested is not None and value is not None:
                if isinstance(value, list):
                    value = [nested.from_dict(v) if isinstance(v, dict) else v for v in value]
                elif isinstance(value, dict):
                    value = nested.from_dict(value)
            kwargs[key] = value
        return cls(**kwargs)


@dataclass
class Address(CanonicalModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


@dataclass
class Patient(CanonicalModel):
    """A person receiving care."""
    canonical_id: str = ""
    source_record_id: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None  # ISO 8601 date
    gender: Optional[str] = None
    address: Optional[Address] = None
    allergies: Optional[str] = None
    medical_notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    _nested = {"address": Address}


@dataclass
class Appointment(CanonicalModel):
    """A scheduled visit."""
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    provider_name: Optional[str] = None
    service_name: Optional[str] = None
    start_time: Optional[str] = None  # ISO 8601 datetime
    end_time: Optional[str] = None
    status: str = "completed"
    notes: Optional[str] = None


@dataclass
class ChartSection(CanonicalModel):
    title: str = ""
    content: str = ""
    type: Optional[str] = None


@dataclass
class Chart(CanonicalModel):
    """Clinical documentation for a visit."""
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    canonical_appointment_id: Optional[str] = None
    provider_name: Optional[str] = None
    chief_complaint: Optional[str] = None
    sections: List[ChartSection] = field(default_factory=list)
    signed_at: Optional[str] = None

    _nested = {"sections": ChartSection}


@dataclass
class Encounter(CanonicalModel):
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    canonical_appointment_id: Optional[str] = None
    provider_name: Optional[str] = None
    date: Optional[str] = None
    notes: Optional[str] = None
    status: str = "completed"


@dataclass
class Consent(CanonicalModel):
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    template_name: Optional[str] = None
    signed_at: Optional[str] = None
    signed_by_name: Optional[str] = None
    content: Optional[str] = None
    status: str = "signed"


@dataclass
class Photo(CanonicalModel):
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    canonical_appointment_id: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    category: Optional[str] = None
    caption: Optional[str] = None
    taken_at: Optional[str] = None
    artifact_key: Optional[str] = None  # Binary held in the artifact store


@dataclass
class Document(CanonicalModel):
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    category: Optional[str] = None
    artifact_key: Optional[str] = None


@dataclass
class InvoiceLineItem(CanonicalModel):
    description: str = ""
    quantity: float = 1
    unit_price: float = 0
    total: float = 0
    service_source_id: Optional[str] = None


@dataclass
class Invoice(CanonicalModel):
    """A billing record."""
    canonical_id: str = ""
    source_record_id: str = ""
    canonical_patient_id: Optional[str] = None
    invoice_number: Optional[str] = None
    status: str = "paid"
    total: Any = 0  # Numeric once transformed; left untyped so bad source values reach validation
    subtotal: Optional[float] = None
    tax_amount: Optional[float] = None
    notes: Optional[str] = None
    paid_at: Optional[str] = None
    line_items: List[InvoiceLineItem] = field(default_factory=list)

    _nested = {"line_items": InvoiceLineItem}


CanonicalRecord = Union[Patient, Appointment, Chart, Encounter, Consent, Photo, Document, Invoice]

RECORD_CLASSES: Dict[EntityType, Type[CanonicalModel]] = {
    EntityType.PATIENT: Patient,
    EntityType.APPOINTMENT: Appointment,
    EntityType.CHART: Chart,
    EntityType.ENCOUNTER: Encounter,
    EntityType.CONSENT: Consent,
    EntityType.PHOTO: Photo,
    EntityType.DOCUMENT: Document,
    EntityType.INVOICE: Invoice,
}


def record_from_dict(entity_type: EntityType, data: Dict[str, Any]) -> CanonicalRecord:
    """Build the canonical dataclass for an entity type from a dict."""
    return RECORD_CLASSES[EntityType(entity_type)].from_dict(data)


def canonical_field_names(entity_type: EntityType) -> List[str]:
    """List the mappable field names of an entity type (identity fields excluded)."""
    cls = RECORD_CLASSES[EntityType(entity_type)]
    return [f.name for f in fields(cls) if f.name not in ("canonical_id", "source_record_id")]
