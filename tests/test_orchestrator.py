"""
Tests for the migration orchestrator.

Runs the full phase sequence against a small CSV export and an in-memory
loader, and covers the lifecycle rules around consent, tenancy, leases,
pause/resume and failure.
"""

import csv

import pytest

from clinic_migration.errors import (
    AccessDeniedError,
    ConsentRequiredError,
    InvalidMappingSpecError,
    MigrationFailedError,
    PhaseInFlightError,
    PhasePreconditionError,
    RunPausedError,
    RunTerminalError,
)
from clinic_migration.models.migration import AuditAction, EntityMapStatus, Phase, RunStatus


def _progress(run):
    return {entity: progress.to_dict() for entity, progress in run.progress.items()}


class TestCreateRun:
    """Tests for run creation."""

    def test_create_run_records_consent(self, orchestrator, actor, create_csv_run):
        """A new run starts in created status with consent recorded."""
        run = create_csv_run(orchestrator)

        assert run.status == RunStatus.CREATED
        assert run.clinic_id == "clinic-1"
        assert run.consent_signed_at is not None
        assert run.started_by == "user-1"

        events = orchestrator.list_audit_events(actor, run.id)
        assert [e.action for e in events] == [AuditAction.RUN_CREATED]

    @pytest.mark.parametrize("consent", ["", "   "])
    def test_create_run_without_consent_writes_nothing(self, orchestrator, actor, consent):
        """Empty consent is rejected before any run or audit event is stored."""
        with pytest.raises(ConsentRequiredError):
            orchestrator.create_run(actor, source_vendor="boulevard", consent_text=consent)

        assert orchestrator.repo.list_runs() == []

    def test_create_run_for_other_clinic_denied(self, orchestrator, actor):
        """An actor cannot create a run owned by another clinic."""
        with pytest.raises(AccessDeniedError):
            orchestrator.create_run(
                actor, source_vendor="boulevard", consent_text="ok", clinic_id="clinic-2"
            )

    def test_create_run_unknown_vendor(self, orchestrator, actor):
        """Unknown vendors are rejected."""
        with pytest.raises(ValueError):
            orchestrator.create_run(actor, source_vendor="mindbody", consent_text="ok")

    def test_credentials_are_sealed(self, orchestrator, actor):
        """Credentials are stored encrypted and never serialized by default."""
        run = orchestrator.create_run(
            actor,
            source_vendor="aesthetics_record",
            consent_text="ok",
            credentials={"api_key": "sk-live-123"},
        )

        stored = orchestrator.repo.get_run(run.id)
        assert "sk-live-123" not in (stored.encrypted_credentials or "")
        assert orchestrator.vault.open(stored.encrypted_credentials) == {"api_key": "sk-live-123"}
        assert "encrypted_credentials" not in stored.to_dict()


class TestTenantIsolation:
    """Tests that runs are scoped to the owning clinic."""

    def test_other_clinic_cannot_read_run(self, orchestrator, other_actor, create_csv_run):
        """Reads by another clinic's actor are denied."""
        run = create_csv_run(orchestrator)

        with pytest.raises(AccessDeniedError):
            orchestrator.get_run(other_actor, run.id)
        with pytest.raises(AccessDeniedError):
            orchestrator.list_audit_events(other_actor, run.id)

    def test_other_clinic_cannot_run_phase(self, orchestrator, other_actor, create_csv_run):
        """Phase execution by another clinic's actor is denied."""
        run = create_csv_run(orchestrator)

        with pytest.raises(AccessDeniedError):
            orchestrator.run_phase(other_actor, run.id, Phase.INGEST)

    def test_list_runs_scoped_to_clinic(self, orchestrator, actor, other_actor, create_csv_run):
        """Listing returns only the caller's clinic's runs."""
        run = create_csv_run(orchestrator)
        orchestrator.create_run(other_actor, source_vendor="boulevard", consent_text="ok")

        assert [r.id for r in orchestrator.list_runs(actor)] == [run.id]


class TestPhasePreconditions:
    """Tests for phase ordering and gates."""

    def test_phase_requires_previous_phase(self, orchestrator, actor, create_csv_run):
        """Validate cannot run before transform."""
        run = create_csv_run(orchestrator)

        with pytest.raises(PhasePreconditionError):
            orchestrator.run_phase(actor, run.id, Phase.VALIDATE)

    def test_transform_requires_approved_mapping(self, orchestrator, actor, create_csv_run):
        """Transform refuses to start until a mapping version is approved."""
        run = create_csv_run(orchestrator)
        orchestrator.run_to_approval(actor, run.id)

        with pytest.raises(PhasePreconditionError):
            orchestrator.run_phase(actor, run.id, Phase.TRANSFORM)

    def test_csv_run_needs_ingest_source(self, orchestrator, actor):
        """A csv_upload run without an export location cannot ingest."""
        run = orchestrator.create_run(actor, source_vendor="csv_upload", consent_text="ok")

        with pytest.raises(PhasePreconditionError):
            orchestrator.run_phase(actor, run.id, Phase.INGEST)

    def test_unknown_phase(self, orchestrator, actor, create_csv_run):
        """Unknown phase names are rejected."""
        run = create_csv_run(orchestrator)

        with pytest.raises(ValueError):
            orchestrator.run_phase(actor, run.id, "extract")


class TestIngest:
    """Tests for the ingest phase and phase idempotency."""

    def test_ingest_pages_source(self, orchestrator, actor, create_csv_run):
        """Ingest writes one artifact per page and counts records per source entity."""
        run = create_csv_run(orchestrator)
        result = orchestrator.run_phase(actor, run.id, Phase.INGEST)

        keys = [ref.key for ref in orchestrator.artifacts.list(run.id, Phase.INGEST.value)]
        assert keys == [
            "appointments/page-00000.json",
            "appointments/page-00001.json",
            "appointments/page-00002.json",
            "patients/page-00000.json",
            "patients/page-00001.json",
        ]
        assert result.summary["source_counts"] == {"patients": 4, "appointments": 5}

    def test_completed_phase_returns_stored_result(self, orchestrator, actor, create_csv_run):
        """Running ingest twice does no additional work."""
        run = create_csv_run(orchestrator)
        first = orchestrator.run_phase(actor, run.id, Phase.INGEST)
        artifacts_before = orchestrator.artifacts.list(run.id, Phase.INGEST.value)
        events_before = orchestrator.list_audit_events(actor, run.id)

        second = orchestrator.run_phase(actor, run.id, "ingest")

        assert second.records_processed == first.records_processed == 9
        assert second.batches == first.batches
        assert orchestrator.artifacts.list(run.id, Phase.INGEST.value) == artifacts_before
        assert len(orchestrator.list_audit_events(actor, run.id)) == len(events_before)


class TestLease:
    """Tests for single-flight phase execution."""

    def test_held_lease_rejects_phase(self, orchestrator, actor, create_csv_run):
        """A second executor gets PhaseInFlightError and the run is untouched."""
        run = create_csv_run(orchestrator)
        assert orchestrator.repo.acquire_lease(run.id, "worker-a", 3600)

        with pytest.raises(PhaseInFlightError):
            orchestrator.run_phase(actor, run.id, Phase.INGEST)

        stored = orchestrator.get_run(actor, run.id)
        assert stored.status == RunStatus.CREATED
        assert not stored.completed_phases

    def test_lease_released_after_phase(self, orchestrator, actor, create_csv_run):
        """The lease is released once a phase finishes."""
        run = create_csv_run(orchestrator)
        orchestrator.run_phase(actor, run.id, Phase.INGEST)

        assert orchestrator.repo.lease_holder(run.id) is None


class TestMappingReview:
    """Tests for mapping submission and approval."""

    def test_draft_mapping_stores_first_version(self, orchestrator, actor, create_csv_run):
        """Drafting stores version 1 and reports without patient values."""
        run = create_csv_run(orchestrator)
        results = orchestrator.run_to_approval(actor, run.id)

        assert [r.phase for r in results] == [Phase.INGEST, Phase.DRAFT_MAPPING]
        versions = orchestrator.list_mapping_specs(actor, run.id)
        assert [v.version for v in versions] == [1]

        profile = orchestrator.get_report(actor, run.id, "profile")
        dumped = str(profile)
        assert "Lovelace" not in dumped
        assert "ADA@example.com" not in dumped

        dry_run = orchestrator.get_report(actor, run.id, "dry_run")
        assert dry_run["mapping_version"] == 1

    def test_unknown_report(self, orchestrator, actor, create_csv_run):
        """Unknown report names are rejected."""
        run = create_csv_run(orchestrator)

        with pytest.raises(ValueError):
            orchestrator.get_report(actor, run.id, "everything")

    def test_submit_assigns_next_version(self, orchestrator, actor, create_csv_run, mapping_spec):
        """Submitted specs get sequential versions regardless of the version they carry."""
        run = create_csv_run(orchestrator)
        orchestrator.run_to_approval(actor, run.id)

        mapping_spec["version"] = 42
        version = orchestrator.submit_mapping(actor, run.id, mapping_spec)

        assert version.version == 2
        assert orchestrator.get_run(actor, run.id).mapping_spec_version == 2

    def test_submit_invalid_spec(self, orchestrator, actor, create_csv_run, mapping_spec):
        """A spec naming a transform outside the allowlist is rejected."""
        run = create_csv_run(orchestrator)
        mapping_spec["entity_mappings"][0]["field_mappings"][0]["transform"] = "eval"

        with pytest.raises(InvalidMappingSpecError) as exc_info:
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

        assert any("allowlist" in e["message"] for e in exc_info.value.errors)
        assert orchestrator.list_mapping_specs(actor, run.id) == []

    def test_submit_wrong_vendor(self, orchestrator, actor, create_csv_run, mapping_spec):
        """A spec drafted for another vendor is rejected."""
        run = create_csv_run(orchestrator)
        mapping_spec["source_vendor"] = "boulevard"

        with pytest.raises(InvalidMappingSpecError):
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

    def test_approve_missing_version(self, orchestrator, actor, create_csv_run):
        """Approving a version that does not exist fails."""
        run = create_csv_run(orchestrator)

        with pytest.raises(PhasePreconditionError):
            orchestrator.approve_mapping(actor, run.id, 3)

    def test_approval_is_audited(self, orchestrator, actor, approved_run):
        """Approval records who approved which version."""
        assert approved_run.approved_mapping_version == 2
        assert approved_run.mapping_approved_by == "user-1"

        events = orchestrator.list_audit_events(actor, approved_run.id)
        approvals = [e for e in events if e.action == AuditAction.MAPPING_APPROVED]
        assert len(approvals) == 1
        assert approvals[0].metadata["version"] == 2

    def test_mapping_frozen_after_transform(self, orchestrator, actor, approved_run, mapping_spec):
        """Once transform ran, the mapping cannot be resubmitted or re-approved."""
        orchestrator.run_phase(actor, approved_run.id, Phase.TRANSFORM)

        with pytest.raises(PhasePreconditionError):
            orchestrator.submit_mapping(actor, approved_run.id, mapping_spec)
        with pytest.raises(PhasePreconditionError):
            orchestrator.approve_mapping(actor, approved_run.id, 1)


class TestFullPipeline:
    """End-to-end runs over the CSV export."""

    def test_run_from_approval_counts(self, orchestrator, actor, approved_run, loader):
        """Every record ends up imported, skipped or failed."""
        results = orchestrator.run_from_approval(actor, approved_run.id)

        assert [r.phase for r in results] == [Phase.TRANSFORM, Phase.VALIDATE, Phase.LOAD, Phase.VERIFY]
        run = orchestrator.get_run(actor, approved_run.id)

        assert _progress(run) == {
            "patient": {"total": 4, "imported": 3, "skipped": 0, "failed": 1},
            "appointment": {"total": 5, "imported": 2, "skipped": 0, "failed": 3},
        }
        for progress in run.progress.values():
            assert progress.imported + progress.skipped + progress.failed == progress.total

        assert sorted(env.source_id for env, _ in loader.loaded) == ["a1", "a2", "p1", "p2", "p4"]

    def test_references_resolved_to_target_ids(self, orchestrator, actor, approved_run, loader):
        """Children are loaded after parents with the parent's target id."""
        orchestrator.run_from_approval(actor, approved_run.id)

        loaded = {env.source_id: refs for env, refs in loader.loaded}
        assert loaded["a1"] == {"canonical_patient_id": "tgt-p1"}
        assert loaded["a2"] == {"canonical_patient_id": "tgt-p2"}

        order = [env.source_id for env, _ in loader.loaded]
        assert order.index("p1") < order.index("a1")

    def test_transformed_values_normalized(self, orchestrator, actor, approved_run, loader):
        """Loaded records carry normalized values."""
        orchestrator.run_from_approval(actor, approved_run.id)

        patients = {env.source_id: env.record for env, _ in loader.loaded if env.entity_type.value == "patient"}
        assert patients["p1"].email == "ada@example.com"
        assert patients["p1"].phone == "+15551234567"
        assert patients["p1"].date_of_birth == "1990-01-02"

    def test_validation_report(self, orchestrator, actor, approved_run):
        """The validation report counts errors by code without patient values."""
        orchestrator.run_from_approval(actor, approved_run.id)

        report = orchestrator.get_report(actor, approved_run.id, "validation")
        assert report["total_records"] == 9
        assert report["valid_records"] + report["invalid_records"] == report["total_records"]
        assert report["errors_by_code"] == {
            "MISSING_REQUIRED": 1,
            "ORPHANED_REFERENCE": 1,
            "MISSING_PROVIDER": 1,
        }
        assert "Nameless" not in str(report)

    def test_reconciliation(self, orchestrator, actor, approved_run):
        """Verify reconciles source counts against what landed."""
        results = orchestrator.run_from_approval(actor, approved_run.id)
        verify = results[-1]

        assert verify.summary["status"] == "partial"
        assert verify.summary["checksum_mismatches"] == 0

        report = orchestrator.get_report(actor, approved_run.id, "reconciliation")
        by_entity = {e["entity_type"]: e for e in report["entities"]}
        assert by_entity["patient"]["source_count"] == 4
        assert by_entity["appointment"]["source_count"] == 5
        assert by_entity["appointment"]["imported_count"] == 2
        assert by_entity["appointment"]["unaccounted"] == 0

    def test_complete_run(self, orchestrator, actor, approved_run, mapping_spec):
        """A verified run can be completed, after which it is terminal."""
        orchestrator.run_from_approval(actor, approved_run.id)
        run = orchestrator.complete_run(actor, approved_run.id)

        assert run.status == RunStatus.COMPLETED
        assert run.completed_at is not None
        with pytest.raises(RunTerminalError):
            orchestrator.pause_run(actor, run.id)
        with pytest.raises(RunTerminalError):
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

    def test_completed_run_returns_stored_results(self, orchestrator, actor, approved_run, loader):
        """Asking a completed run for a phase it finished returns the stored result."""
        results = orchestrator.run_from_approval(actor, approved_run.id)
        orchestrator.complete_run(actor, approved_run.id)
        events_before = orchestrator.list_audit_events(actor, approved_run.id)

        verify = orchestrator.run_phase(actor, approved_run.id, Phase.VERIFY)
        ingest = orchestrator.run_phase(actor, approved_run.id, Phase.INGEST)

        assert verify.summary == results[-1].summary
        assert verify.records_succeeded == results[-1].records_succeeded
        assert ingest.records_processed == 9
        assert len(orchestrator.list_audit_events(actor, approved_run.id)) == len(events_before)
        assert orchestrator.get_run(actor, approved_run.id).status == RunStatus.COMPLETED
        assert len(loader.loaded) == 5

    def test_complete_requires_verify(self, orchestrator, actor, approved_run):
        """Completion before verify is refused."""
        with pytest.raises(PhasePreconditionError):
            orchestrator.complete_run(actor, approved_run.id)

    def test_rejected_loads_are_failures(self, actor, make_orchestrator, prepare_run):
        """Records the target rejects count as failed, not imported."""
        orchestrator, _ = make_orchestrator(reject={"p4"})
        run = prepare_run(orchestrator)

        orchestrator.run_from_approval(actor, run.id)

        progress = orchestrator.get_run(actor, run.id).progress["patient"]
        assert progress.imported == 2
        assert progress.failed == 2

    def test_excluded_entities_are_skipped(self, orchestrator, actor, prepare_run, loader):
        """Excluded entity types are counted as skipped and never loaded."""
        run = prepare_run(orchestrator, excluded_entity_types=["appointment"])
        orchestrator.run_from_approval(actor, run.id)

        progress = orchestrator.get_run(actor, run.id).progress["appointment"]
        assert progress.to_dict() == {"total": 5, "imported": 0, "skipped": 5, "failed": 0}
        assert all(env.entity_type.value == "patient" for env, _ in loader.loaded)


class TestPauseResume:
    """Tests for pausing between batches and resuming."""

    def test_pause_without_phase_in_flight(self, orchestrator, actor, create_csv_run):
        """With nothing executing, pause takes effect immediately."""
        run = create_csv_run(orchestrator)
        paused = orchestrator.pause_run(actor, run.id)

        assert paused.status == RunStatus.PAUSED
        with pytest.raises(RunPausedError):
            orchestrator.run_phase(actor, run.id, Phase.INGEST)

        assert orchestrator.resume_run(actor, run.id) is None
        assert orchestrator.get_run(actor, run.id).status == RunStatus.CREATED

    def test_resume_requires_paused_run(self, orchestrator, actor, create_csv_run):
        """Resuming a run that is not paused fails."""
        run = create_csv_run(orchestrator)

        with pytest.raises(PhasePreconditionError):
            orchestrator.resume_run(actor, run.id)

    def test_pause_mid_transform(self, orchestrator, actor, approved_run):
        """A pause during transform stops after one batch and resume finishes the phase."""
        orchestrator.repo.request_pause(approved_run.id)

        result = orchestrator.run_phase(actor, approved_run.id, Phase.TRANSFORM)

        assert result.paused
        assert result.batches == 1
        run = orchestrator.get_run(actor, approved_run.id)
        assert run.status == RunStatus.PAUSED
        assert run.paused_phase == Phase.TRANSFORM
        assert not run.is_phase_completed(Phase.TRANSFORM)

        resumed = orchestrator.resume_run(actor, approved_run.id)

        assert not resumed.paused
        assert resumed.batches == 5
        assert resumed.records_processed == 9
        assert len(orchestrator.artifacts.list(approved_run.id, Phase.TRANSFORM.value)) == 5

    def test_pause_mid_load_matches_uninterrupted_run(self, tmp_path, actor, make_orchestrator, prepare_run):
        """Pausing during load and resuming gives the same counts as never pausing."""
        baseline, _ = make_orchestrator(data_dir=str(tmp_path / "baseline"))
        baseline_run = prepare_run(baseline)
        baseline.run_from_approval(actor, baseline_run.id)
        expected = _progress(baseline.get_run(actor, baseline_run.id))

        state = {}

        def pause_once(envelope):
            if not state.get("paused"):
                state["paused"] = True
                state["orchestrator"].pause_run(actor, state["run_id"])

        orchestrator, loader = make_orchestrator(on_load=pause_once)
        run = prepare_run(orchestrator)
        state.update(orchestrator=orchestrator, run_id=run.id)

        results = orchestrator.run_from_approval(actor, run.id)
        assert results[-1].phase == Phase.LOAD
        assert results[-1].paused
        assert orchestrator.get_run(actor, run.id).status == RunStatus.PAUSED

        orchestrator.resume_run(actor, run.id)
        orchestrator.run_phase(actor, run.id, Phase.VERIFY)

        assert _progress(orchestrator.get_run(actor, run.id)) == expected
        loaded_ids = [env.source_id for env, _ in loader.loaded]
        assert len(loaded_ids) == len(set(loaded_ids))

        actions = [e.action for e in orchestrator.list_audit_events(actor, run.id)]
        assert AuditAction.RUN_PAUSED in actions
        assert AuditAction.PHASE_PAUSED in actions
        assert AuditAction.RUN_RESUMED in actions


class TestFailure:
    """Tests for infrastructure failures."""

    def test_loader_outage_fails_run(self, actor, make_orchestrator, prepare_run):
        """An unavailable target moves the run to failed and records why."""
        orchestrator, _ = make_orchestrator(unavailable=True)
        run = prepare_run(orchestrator)

        with pytest.raises(MigrationFailedError) as exc_info:
            orchestrator.run_from_approval(actor, run.id)

        assert exc_info.value.phase == "load"
        stored = orchestrator.get_run(actor, run.id)
        assert stored.status == RunStatus.FAILED
        assert "target store is down" in stored.error_message
        assert orchestrator.repo.lease_holder(run.id) is None

        actions = [e.action for e in orchestrator.list_audit_events(actor, run.id)]
        assert actions[-1] == AuditAction.PHASE_FAILED

        with pytest.raises(RunTerminalError):
            orchestrator.run_phase(actor, run.id, Phase.LOAD)

    def test_missing_export_fails_ingest(self, orchestrator, actor, tmp_path):
        """An export path that does not exist fails the run at ingest."""
        run = orchestrator.create_run(
            actor,
            source_vendor="csv_upload",
            consent_text="ok",
            ingest_source=str(tmp_path / "nowhere"),
        )

        with pytest.raises(MigrationFailedError):
            orchestrator.run_phase(actor, run.id, Phase.INGEST)

        assert orchestrator.get_run(actor, run.id).status == RunStatus.FAILED


class WorkerCrashed(BaseException):
    """Stands in for a worker process dying mid-phase."""


class TestRerunsAndInterruptions:
    """Tests that repeated or interrupted phases never load a record twice."""

    def test_rerun_load_after_success_changes_nothing(self, orchestrator, actor, approved_run, loader):
        """Running load again after it completed leaves the entity map and counts alone."""
        orchestrator.run_from_approval(actor, approved_run.id)
        entity_map_before = {
            key: entry.to_dict() for key, entry in orchestrator.repo.load_entity_map(approved_run.id).items()
        }
        progress_before = _progress(orchestrator.get_run(actor, approved_run.id))
        loaded_before = len(loader.loaded)

        result = orchestrator.run_phase(actor, approved_run.id, Phase.LOAD)

        entity_map_after = {
            key: entry.to_dict() for key, entry in orchestrator.repo.load_entity_map(approved_run.id).items()
        }
        assert entity_map_after == entity_map_before
        assert _progress(orchestrator.get_run(actor, approved_run.id)) == progress_before
        assert len(loader.loaded) == loaded_before
        assert result.records_succeeded == 5

    def test_interrupted_load_skips_loaded_records(self, orchestrator, actor, approved_run, loader, monkeypatch):
        """A load that died after committing a batch skips that batch's records on the next attempt."""
        orchestrator.run_phase(actor, approved_run.id, Phase.TRANSFORM)
        orchestrator.run_phase(actor, approved_run.id, Phase.VALIDATE)

        save_entity_map = orchestrator.repo.save_entity_map
        state = {"crashed": False}

        def crash_after_first_save(run_id, entries):
            save_entity_map(run_id, entries)
            if not state["crashed"]:
                state["crashed"] = True
                raise WorkerCrashed()

        monkeypatch.setattr(orchestrator.repo, "save_entity_map", crash_after_first_save)

        with pytest.raises(WorkerCrashed):
            orchestrator.run_phase(actor, approved_run.id, Phase.LOAD)

        committed = [env.source_id for env, _ in loader.loaded]
        assert committed
        assert orchestrator.repo.lease_holder(approved_run.id) is None
        assert orchestrator.get_run(actor, approved_run.id).status == RunStatus.LOADING

        result = orchestrator.run_phase(actor, approved_run.id, Phase.LOAD)

        loaded_ids = [env.source_id for env, _ in loader.loaded]
        assert len(loaded_ids) == len(set(loaded_ids))
        assert sorted(loaded_ids) == ["a1", "a2", "p1", "p2", "p4"]
        assert result.records_skipped == len(committed)

        run = orchestrator.get_run(actor, approved_run.id)
        for progress in run.progress.values():
            assert progress.imported + progress.skipped + progress.failed == progress.total
        entity_map = orchestrator.repo.load_entity_map(approved_run.id)
        for source_id in committed:
            entry = entity_map[f"patient:{source_id}"]
            assert entry.status == EntityMapStatus.LOADED
            assert entry.target_id == f"tgt-{source_id}"

    def test_paused_run_returns_completed_phase(self, orchestrator, actor, create_csv_run):
        """A paused run still answers for phases it already finished."""
        run = create_csv_run(orchestrator)
        first = orchestrator.run_phase(actor, run.id, Phase.INGEST)
        orchestrator.pause_run(actor, run.id)

        again = orchestrator.run_phase(actor, run.id, Phase.INGEST)

        assert again.records_processed == first.records_processed
        with pytest.raises(RunPausedError):
            orchestrator.run_phase(actor, run.id, Phase.DRAFT_MAPPING)


class TestLeaseLoss:
    """Tests for a phase whose lease is taken over while it runs."""

    def test_phase_stops_when_lease_is_taken(self, orchestrator, actor, approved_run, monkeypatch):
        """The executor stops at the batch boundary and leaves the new holder's lease alone."""
        orchestrator.run_phase(actor, approved_run.id, Phase.TRANSFORM)
        orchestrator.run_phase(actor, approved_run.id, Phase.VALIDATE)
        state = {}

        def take_over(envelope):
            if "token" not in state:
                # Zero timeout treats the running phase's lease as stale
                state["token"] = orchestrator.repo.acquire_lease(approved_run.id, "worker-b", timeout_seconds=0)

        monkeypatch.setattr(orchestrator._loader, "on_load", take_over)

        with pytest.raises(PhaseInFlightError):
            orchestrator.run_phase(actor, approved_run.id, Phase.LOAD)

        assert state["token"]
        assert orchestrator.repo.lease_holder(approved_run.id) == "worker-b"
        stored = orchestrator.get_run(actor, approved_run.id)
        assert stored.status == RunStatus.LOADING
        assert Phase.LOAD.value not in stored.checkpoints


class TestPauseRace:
    """Tests for a pause that arrives as a phase finishes."""

    def test_pause_after_phase_finished_leaves_no_flag(self, orchestrator, actor, create_csv_run, monkeypatch):
        """If the lease frees up right after the first attempt, the run pauses and no flag lingers."""
        run = create_csv_run(orchestrator)
        acquire_lease = orchestrator.repo.acquire_lease
        attempts = []

        def busy_once(run_id, holder, timeout_seconds):
            attempts.append(holder)
            if len(attempts) == 1:
                return None
            return acquire_lease(run_id, holder, timeout_seconds)

        monkeypatch.setattr(orchestrator.repo, "acquire_lease", busy_once)

        paused = orchestrator.pause_run(actor, run.id)

        assert paused.status == RunStatus.PAUSED
        assert len(attempts) == 2
        assert not orchestrator.repo.pause_requested(run.id)
        assert orchestrator.repo.lease_holder(run.id) is None


class TestMappingSpecChecks:
    """Tests for mapping specs that would break the transformer."""

    def test_non_object_transform_config_rejected(self, orchestrator, actor, create_csv_run, mapping_spec):
        run = create_csv_run(orchestrator)
        mapping_spec["entity_mappings"][0]["field_mappings"][0]["transform_config"] = ["x"]

        with pytest.raises(InvalidMappingSpecError) as exc_info:
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

        paths = [e["path"] for e in exc_info.value.errors]
        assert "entity_mappings[0].field_mappings[0].transform_config" in paths

    @pytest.mark.parametrize("target_field", ["canonical_id", "source_record_id", "favourite_colour"])
    def test_unmappable_target_field_rejected(self, orchestrator, actor, create_csv_run, mapping_spec, target_field):
        """Identity fields and fields outside the canonical model cannot be mapped onto."""
        run = create_csv_run(orchestrator)
        mapping_spec["entity_mappings"][0]["field_mappings"][0]["target_field"] = target_field

        with pytest.raises(InvalidMappingSpecError) as exc_info:
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

        assert any("target_field" in e["path"] for e in exc_info.value.errors)
        assert orchestrator.list_mapping_specs(actor, run.id) == []

    def test_non_string_source_field_rejected(self, orchestrator, actor, create_csv_run, mapping_spec):
        run = create_csv_run(orchestrator)
        mapping_spec["entity_mappings"][0]["field_mappings"][0]["source_field"] = 7

        with pytest.raises(InvalidMappingSpecError) as exc_info:
            orchestrator.submit_mapping(actor, run.id, mapping_spec)

        assert any(e["path"].endswith("source_field") for e in exc_info.value.errors)


EXISTING_ADA = {
    "id": "existing-7",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "phone": None,
    "date_of_birth": "1990-01-02T00:00:00Z",
}


class TestDuplicatePatients:
    """Tests for skipping patients the clinic already has."""

    def test_patient_in_target_is_skipped(self, actor, make_orchestrator, prepare_run):
        """A source patient matching a target patient is skipped and its children point at the existing one."""
        orchestrator, loader = make_orchestrator(existing=[EXISTING_ADA])
        run = prepare_run(orchestrator)

        orchestrator.run_from_approval(actor, run.id)

        progress = orchestrator.get_run(actor, run.id).progress
        assert progress["patient"].to_dict() == {"total": 4, "imported": 2, "skipped": 1, "failed": 1}
        assert progress["appointment"].to_dict() == {"total": 5, "imported": 2, "skipped": 0, "failed": 3}
        assert "p1" not in [env.source_id for env, _ in loader.loaded]

        refs = {env.source_id: refs for env, refs in loader.loaded}
        assert refs["a1"]["canonical_patient_id"] == "existing-7"

        entry = orchestrator.repo.load_entity_map(run.id)["patient:p1"]
        assert entry.status == EntityMapStatus.DUPLICATE
        assert entry.target_id == "existing-7"

        skipped = []
        for ref in orchestrator.artifacts.list(run.id, Phase.LOAD.value):
            skipped.extend(orchestrator.artifacts.get_json(run.id, Phase.LOAD.value, ref.key)["skipped"])
        assert [(s["source_id"], s["match_type"]) for s in skipped] == [("p1", "exact_email")]
        assert "ada" not in skipped[0]["message"].lower()

    def test_duplicate_within_export(self, tmp_path, actor, make_orchestrator, mapping_spec):
        """A second row for the same patient in one export reuses the first row's target id."""
        export = tmp_path / "dupes"
        export.mkdir()
        with open(export / "patients.csv", "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerows([
                ["id", "first_name", "last_name", "email", "phone", "dob"],
                ["p1", "Ada", "Lovelace", "ada@example.com", "", "1990-01-02"],
                ["p5", "Ada", "Lovelace", "ADA@example.com", "", "1990-01-02"],
            ])
        with open(export / "appointments.csv", "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerows([
                ["id", "patient_id", "provider", "start", "status"],
                ["a1", "p5", "Dr. Smith", "2024-03-01T10:00:00", "Booked"],
            ])

        orchestrator, loader = make_orchestrator()
        run = orchestrator.create_run(
            actor, source_vendor="csv_upload", consent_text="ok", ingest_source=str(export)
        )
        orchestrator.run_to_approval(actor, run.id)
        version = orchestrator.submit_mapping(actor, run.id, mapping_spec)
        orchestrator.approve_mapping(actor, run.id, version.version)

        orchestrator.run_from_approval(actor, run.id)

        progress = orchestrator.get_run(actor, run.id).progress
        assert progress["patient"].to_dict() == {"total": 2, "imported": 1, "skipped": 1, "failed": 0}
        refs = {env.source_id: refs for env, refs in loader.loaded}
        assert sorted(refs) == ["a1", "p1"]
        assert refs["a1"]["canonical_patient_id"] == "tgt-p1"
