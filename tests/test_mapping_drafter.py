"""
Tests for source profiling and mapping drafts.
"""

from clinic_migration.models.canonical import EntityType
from clinic_migration.models.mapping import TransformType, validate_mapping_spec
from clinic_migration.models.migration import SourceVendor
from clinic_migration.models.record import RawRecord
from clinic_migration.services.mapping_drafter import (
    MappingDrafter,
    guess_entity_type,
    is_phi_field,
    profile_entity,
)


def _records(entity, rows):
    return [RawRecord(source_entity_type=entity, source_id=str(row.get("id", i)), payload=row) for i, row in enumerate(rows)]


PATIENT_ROWS = [
    {"id": "p1", "first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", "dob": "1990-01-02"},
    {"id": "p2", "first_name": "Grace", "last_name": "Hopper", "email": "grace@example.com", "dob": None},
    {"id": "p3", "first_name": None, "last_name": "Turing", "email": None, "dob": "1912-06-23"},
]


class TestProfileEntity:
    """Tests for source profiling."""

    def test_field_statistics(self):
        """Profiles report null and unique rates per field."""
        profile = profile_entity("patients", _records("patients", PATIENT_ROWS))
        fields = {f.name: f for f in profile.fields}

        assert profile.record_count == 3
        assert profile.suggested_target == "patient"
        assert fields["first_name"].null_rate == 0.33
        assert fields["last_name"].unique_rate == 1.0
        assert fields["email"].inferred_type == "email"
        assert fields["dob"].inferred_type == "date"

    def test_phi_flags(self):
        """Identifying fields are flagged as PHI."""
        profile = profile_entity("patients", _records("patients", PATIENT_ROWS))
        phi = {f.name for f in profile.fields if f.is_phi}

        assert {"first_name", "last_name", "email", "dob"} <= phi
        assert "id" not in phi

    def test_profile_has_no_values(self):
        """Profiles never carry raw values."""
        profile = profile_entity("patients", _records("patients", PATIENT_ROWS))

        assert "Lovelace" not in str(profile.to_dict())
        assert "ada@example.com" not in str(profile.to_dict())

    def test_key_candidates_and_relationships(self):
        """Unique, complete fields are key candidates; *_id fields hint at relationships."""
        rows = [
            {"id": "a1", "patient_id": "p1", "provider": "Dr. Smith"},
            {"id": "a2", "patient_id": "p1", "provider": "Dr. Smith"},
        ]
        profile = profile_entity("appointments", _records("appointments", rows))

        assert "id" in profile.key_candidates
        assert "patient_id" not in profile.key_candidates
        assert profile.relationship_hints == [
            {"field": "patient_id", "target_entity": "patient", "confidence": 0.7}
        ]


class TestGuessEntityType:
    """Tests for source entity name matching."""

    def test_aliases(self):
        assert guess_entity_type("clients") == EntityType.PATIENT
        assert guess_entity_type("Patients.csv") == EntityType.PATIENT
        assert guess_entity_type("orders") == EntityType.INVOICE
        assert guess_entity_type("procedures") == EntityType.CHART
        assert guess_entity_type("gift_cards") is None

    def test_is_phi_field(self):
        assert is_phi_field("phoneNumber")
        assert is_phi_field("date_of_birth")
        assert not is_phi_field("status")


class TestMappingDrafter:
    """Tests for drafted mapping specs."""

    def test_vendor_defaults(self):
        """Known vendor entities use the vendor's default mapping at full confidence."""
        profile = profile_entity("clients", _records("clients", [{"id": "c1", "firstName": "Ada"}]))

        spec = MappingDrafter(SourceVendor.BOULEVARD).draft([profile], version=3)

        assert spec.version == 3
        assert spec.source_vendor == "boulevard"
        mapping = spec.get_entity_mapping("clients")
        assert mapping.target_entity == EntityType.PATIENT
        assert mapping.get_target_mapping("first_name").source_field == "firstName"
        assert mapping.pending_approval == []

    def test_name_matching(self):
        """Exact names map at high confidence and aliases pick the right transform."""
        profile = profile_entity("patients", _records("patients", PATIENT_ROWS))

        spec = MappingDrafter(SourceVendor.CSV_UPLOAD).draft([profile])
        mapping = spec.get_entity_mapping("patients")

        first = mapping.get_target_mapping("first_name")
        assert first.source_field == "first_name"
        assert first.confidence == 0.95
        dob = mapping.get_target_mapping("date_of_birth")
        assert dob.source_field == "dob"
        assert dob.confidence == 0.85
        assert dob.transform == TransformType.NORMALIZE_DATE
        assert mapping.get_target_mapping("email").transform == TransformType.NORMALIZE_EMAIL

    def test_fuzzy_match_needs_approval(self):
        """Misspelled columns are matched at low confidence and flagged for review."""
        rows = [{"id": "1", "first_nme": "Ada", "last_name": "Lovelace"}]
        profile = profile_entity("patients", _records("patients", rows))

        mapping = MappingDrafter(SourceVendor.CSV_UPLOAD).draft([profile]).get_entity_mapping("patients")
        first = mapping.get_target_mapping("first_name")

        assert first.source_field == "first_nme"
        assert first.confidence < 0.8
        assert first.requires_approval
        assert first in mapping.pending_approval

    def test_references_use_reference_transform(self):
        """Foreign-key columns map to canonical references."""
        rows = [{"id": "a1", "patient_id": "p1", "provider": "Dr. Smith", "start": "2024-03-01T10:00:00"}]
        profile = profile_entity("appointments", _records("appointments", rows))

        mapping = MappingDrafter(SourceVendor.CSV_UPLOAD).draft([profile]).get_entity_mapping("appointments")
        link = mapping.get_target_mapping("canonical_patient_id")

        assert link.source_field == "patient_id"
        assert link.transform == TransformType.REFERENCE
        assert link.transform_config == {"entity": "patient"}
        assert mapping.get_target_mapping("start_time").transform == TransformType.NORMALIZE_DATETIME

    def test_flattened_address(self):
        """Flat address columns map into the nested address."""
        rows = [{"id": "1", "first_name": "Ada", "address1": "1 Main St", "city": "Austin", "zip": "78701"}]
        profile = profile_entity("patients", _records("patients", rows))

        mapping = MappingDrafter(SourceVendor.CSV_UPLOAD).draft([profile]).get_entity_mapping("patients")

        assert mapping.get_target_mapping("address.line1").source_field == "address1"
        assert mapping.get_target_mapping("address.city").source_field == "city"
        assert mapping.get_target_mapping("address.zip").source_field == "zip"

    def test_unmapped_entities_noted(self):
        """Entities with no canonical counterpart are left out and noted."""
        profiles = [
            profile_entity("patients", _records("patients", PATIENT_ROWS)),
            profile_entity("gift_cards", _records("gift_cards", [{"id": "g1"}])),
        ]

        spec = MappingDrafter(SourceVendor.CSV_UPLOAD).draft(profiles)

        assert [em.source_entity for em in spec.entity_mappings] == ["patients"]
        assert "gift_cards" in spec.notes

    def test_drafts_are_structurally_valid(self):
        """Every draft passes mapping spec validation."""
        profiles = [
            profile_entity("patients", _records("patients", PATIENT_ROWS)),
            profile_entity("orders", _records("orders", [{"id": "o1", "total": "10.00", "patient_id": "p1"}])),
        ]

        spec = MappingDrafter(SourceVendor.CSV_UPLOAD).draft(profiles)

        assert validate_mapping_spec(spec.to_dict()) == []
