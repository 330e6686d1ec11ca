"""Shared fixtures for the migration pipeline tests."""

import csv
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

from clinic_migration.config import PipelineConfig
from clinic_migration.errors import LoaderUnavailableError
from clinic_migration.loaders.base import BaseLoader, References
from clinic_migration.models.migration import Actor, utc_now
from clinic_migration.models.record import CanonicalEnvelope, MigrationResult
from clinic_migration.orchestrator import MigrationOrchestrator
from clinic_migration.services.credentials import CredentialVault


PATIENT_ROWS = [
    ["id", "first_name", "last_name", "email", "phone", "dob"],
    ["p1", "Ada", "Lovelace", "ADA@example.com", "555-123-4567", "1990-01-02"],
    ["p2", "Grace", "Hopper", "grace@example.com", "", "1985-12-09"],
    # Missing first name: fails validation
    ["p3", "", "Nameless", "", "", ""],
    ["p4", "Alan", "Turing", "alan@example.com", "", ""],
]

APPOINTMENT_ROWS = [
    ["id", "patient_id", "provider", "start", "status"],
    ["a1", "p1", "Dr. Smith", "2024-03-01T10:00:00", "Booked"],
    ["a2", "p2", "Dr. Smith", "2024-03-02T11:00:00", "Booked"],
    # Unknown patient: orphaned reference
    ["a3", "p999", "Dr. Jones", "2024-03-03T09:00:00", "Booked"],
    # Patient p3 never loads: unresolved at load time
    ["a4", "p3", "Dr. Jones", "2024-03-04T09:00:00", "Booked"],
    # No provider: fails validation
    ["a5", "p4", "", "2024-03-05T09:00:00", "Booked"],
]


def csv_mapping_spec() -> dict:
    """Mapping spec for the CSV export written by the export_dir fixture."""
    return {
        "version": 1,
        "source_vendor": "csv_upload",
        "entity_mappings": [
            {
                "source_entity": "patients",
                "target_entity": "patient",
                "source_id_field": "id",
                "field_mappings": [
                    {"source_field": "first_name", "target_field": "first_name", "transform": "trim"},
                    {"source_field": "last_name", "target_field": "last_name", "transform": "trim"},
                    {"source_field": "email", "target_field": "email", "transform": "normalize_email"},
                    {"source_field": "phone", "target_field": "phone", "transform": "normalize_phone"},
                    {"source_field": "dob", "target_field": "date_of_birth", "transform": "normalize_date"},
                ],
            },
            {
                "source_entity": "appointments",
                "target_entity": "appointment",
                "source_id_field": "id",
                "field_mappings": [
                    {
                        "source_field": "patient_id",
                        "target_field": "canonical_patient_id",
                        "transform": "reference",
                        "transform_config": {"entity": "patient"},
                    },
                    {"source_field": "provider", "target_field": "provider_name"},
                    {"source_field": "start", "target_field": "start_time", "transform": "normalize_datetime"},
                    {"source_field": "status", "target_field": "status", "transform": "lowercase"},
                ],
            },
        ],
    }


class FakeLoader(BaseLoader):
    """In-memory loader that records what it was asked to commit."""

    def __init__(
        self,
        reject: Optional[set] = None,
        unavailable: bool = False,
        on_load: Optional[Callable[[CanonicalEnvelope], None]] = None,
        existing: Optional[List[dict]] = None
    ):
        super().__init__(dry_run=False)
        self.reject = reject or set()
        self.unavailable = unavailable
        self.on_load = on_load
        self.existing = existing or []
        self.loaded: List[Tuple[CanonicalEnvelope, References]] = []

    def load_record(self, envelope: CanonicalEnvelope, references: Optional[References] = None) -> MigrationResult:
        if self.unavailable:
            raise LoaderUnavailableError("target store is down")
        if self.on_load:
            self.on_load(envelope)
        if envelope.source_id in self.reject:
            return self.rejected(envelope, "HTTP 422: rejected by target")
        self.loaded.append((envelope, references or {}))
        return MigrationResult(
            record_id=envelope.canonical_id,
            target_id=f"tgt-{envelope.source_id}",
            success=True,
            loaded_at=utc_now(),
        )

    def existing_patients(self) -> List[dict]:
        return list(self.existing)


def write_csv(path: Path, rows: List[List[str]]) -> Path:
    with open(path, "w", newline="", encoding="utf-8") as f:
        csv.writer(f).writerows(rows)
    return path


@pytest.fixture
def export_dir(tmp_path):
    """A clinic export with a patients file and an appointments file."""
    directory = tmp_path / "export"
    directory.mkdir()
    write_csv(directory / "patients.csv", PATIENT_ROWS)
    write_csv(directory / "appointments.csv", APPOINTMENT_ROWS)
    return directory


@pytest.fixture
def config(tmp_path):
    """Pipeline config writing under the test's temp directory."""
    return PipelineConfig(
        data_dir=str(tmp_path / "data"),
        batch_size=2,
        page_size=2,
        credentials_key=CredentialVault.generate_key(),
        masking_secret="test-secret",
    )


@pytest.fixture
def actor():
    return Actor(user_id="user-1", clinic_id="clinic-1")


@pytest.fixture
def other_actor():
    return Actor(user_id="user-2", clinic_id="clinic-2")


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def orchestrator(config, loader):
    return MigrationOrchestrator(config, loader=loader)


@pytest.fixture
def mapping_spec():
    return csv_mapping_spec()


@pytest.fixture
def make_orchestrator(config):
    """Build an orchestrator around a FakeLoader configured by keyword arguments."""
    def _make(data_dir: Optional[str] = None, **loader_kwargs):
        run_config = config
        if data_dir:
            run_config = replace(config, data_dir=data_dir)
        fake = FakeLoader(**loader_kwargs)
        return MigrationOrchestrator(run_config, loader=fake), fake
    return _make


@pytest.fixture
def create_csv_run(actor, export_dir):
    """Create a CSV run on the given orchestrator."""
    def _create(orchestrator, **kwargs):
        return orchestrator.create_run(
            actor,
            source_vendor="csv_upload",
            consent_text="Clinic authorizes moving its records.",
            ingest_source=str(export_dir),
            **kwargs
        )
    return _create


@pytest.fixture
def prepare_run(actor, create_csv_run):
    """Create a CSV run, draft its mapping and approve the reviewed spec."""
    def _prepare(orchestrator, **kwargs):
        run = create_csv_run(orchestrator, **kwargs)
        orchestrator.run_to_approval(actor, run.id)
        version = orchestrator.submit_mapping(actor, run.id, csv_mapping_spec())
        orchestrator.approve_mapping(actor, run.id, version.version)
        return orchestrator.get_run(actor, run.id)
    return _prepare


@pytest.fixture
def approved_run(orchestrator, prepare_run):
    """A CSV run that is ingested, drafted, and has an approved mapping."""
    return prepare_run(orchestrator)
