"""
Migration Orchestrator

Drives a run through its phases:
1. Ingest raw records from the source
2. Draft a mapping spec for operator review
3. Transform raw records with the approved mapping
4. Validate canonical records
5. Load valid records into the target store
6. Verify source counts against what landed

Each phase executes under a per-run lease, checkpoints after every batch,
and can be paused between batches and resumed later.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config import PipelineConfig
from .errors import (
    AccessDeniedError,
    ConsentRequiredError,
    InvalidMappingSpecError,
    LoaderUnavailableError,
    MigrationFailedError,
    PhaseInFlightError,
    PhasePreconditionError,
    RunPausedError,
    RunTerminalError,
)
from .ingest import BaseIngestAdapter, IngestPage, create_adapter
from .loaders import APILoader, BaseLoader
from .models.canonical import ENTITY_LOAD_ORDER, EntityType, generate_canonical_id, relationships_for
from .models.mapping import EntityMapping, MappingSpec, validate_mapping_spec
from .models.migration import (
    PHASE_STATUS,
    Actor,
    AuditAction,
    EntityMapEntry,
    EntityMapStatus,
    MappingSpecVersion,
    MigrationAuditEvent,
    MigrationRun,
    Phase,
    PhaseResult,
    RunStatus,
    SourceVendor,
    previous_phase,
    utc_now,
)
from .models.record import CanonicalEnvelope, ErrorCode, RawRecord, RecordFailure, ValidationReport
from .services.credentials import CredentialVault
from .services.duplicate_detector import DuplicateDetector, DuplicateMatch, KnownPatient
from .services.llm_drafter import create_drafter
from .services.mapping_drafter import profile_entity
from .services.reconciler import reconcile
from .services.transformer import RecordTransformError, TransformEngine, record_checksum
from .services.validator import (
    build_reference_index,
    check_records,
    compile_report,
    merge_reports,
    validate_record,
    validate_referential_integrity,
)
from .storage.artifacts import ArtifactStore, LocalArtifactStore
from .storage.repository import RunRepository

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SourceVendor, PipelineConfig, Optional[str]], BaseIngestAdapter]

# Report name -> (phase, artifact key)
REPORTS: Dict[str, Tuple[Phase, str]] = {
    "profile": (Phase.DRAFT_MAPPING, "profile.json"),
    "dry_run": (Phase.DRAFT_MAPPING, "dry-run.json"),
    "validation": (Phase.VALIDATE, "report.json"),
    "reconciliation": (Phase.VERIFY, "reconciliation.json"),
}

_UNRANKED = len(ENTITY_LOAD_ORDER)


class MigrationOrchestrator:
    """
    Main orchestrator for clinic data migrations.

    Every operation takes the caller's Actor; a run is only visible to
    actors of the clinic that owns it.
    """

    def __init__(
        self,
        config: PipelineConfig,
        repository: Optional[RunRepository] = None,
        artifact_store: Optional[ArtifactStore] = None,
        loader: Optional[BaseLoader] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        vault: Optional[CredentialVault] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Pipeline configuration
            repository: Run state store; defaults to one under config.state_dir
            artifact_store: Phase artifact store; defaults to one under config.artifacts_dir
            loader: Target loader; built from config when omitted
            adapter_factory: Callable building the ingest adapter for a run
            vault: Credential vault; built from config.credentials_key when omitted
        """
        self.config = config
        self.repo = repository or RunRepository(config.state_dir)
        self.artifacts = artifact_store or LocalArtifactStore(config.artifacts_dir)
        self._loader = loader
        self._adapter_factory = adapter_factory or create_adapter
        self.vault = vault or CredentialVault(config.credentials_key)

    # Run lifecycle

    def create_run(
        self,
        actor: Actor,
        source_vendor: str,
        consent_text: str,
        clinic_id: Optional[str] = None,
        credentials: Optional[Dict[str, Any]] = None,
        ingest_source: Optional[str] = None,
        excluded_entity_types: Optional[List[str]] = None
    ) -> MigrationRun:
        """
        Create a migration run.

        Args:
            actor: Caller creating the run
            source_vendor: Source platform key
            consent_text: Consent the clinic signed for moving its data
            clinic_id: Owning clinic; must match the actor's clinic
            credentials: Source credentials, sealed before they are stored
            ingest_source: Export location for file-based runs
            excluded_entity_types: Canonical entity types to leave behind

        Returns:
            The new run in status created

        Raises:
            ConsentRequiredError: If consent_text is empty
            AccessDeniedError: If clinic_id differs from the actor's clinic
        """
        if not consent_text or not consent_text.strip():
            raise ConsentRequiredError()

        clinic_id = clinic_id or actor.clinic_id
        if clinic_id != actor.clinic_id:
            raise AccessDeniedError("", f"Cannot create a run for clinic {clinic_id}")

        vendor = SourceVendor(source_vendor)
        excluded = [EntityType(e).value for e in (excluded_entity_types or [])]

        run = MigrationRun(
            clinic_id=clinic_id,
            source_vendor=vendor,
            consent_text=consent_text,
            consent_signed_at=utc_now(),
            started_by=actor.user_id,
            excluded_entity_types=excluded,
            ingest_source=ingest_source,
            encrypted_credentials=self.vault.seal(credentials) if credentials else None,
        )
        run.add_log(f"Run created for {vendor.value}")
        self.repo.save_run(run)

        self._audit(run, None, AuditAction.RUN_CREATED, actor, {
            "source_vendor": vendor.value,
            "consent_signed_at": run.consent_signed_at.isoformat(),
            "excluded_entity_types": excluded,
        })
        logger.info(f"Created migration run {run.id} for clinic {clinic_id} ({vendor.value})")
        return run

    def get_run(self, actor: Actor, run_id: str) -> MigrationRun:
        return self._load_run(actor, run_id)

    def list_runs(self, actor: Actor) -> List[MigrationRun]:
        return self.repo.list_runs(clinic_id=actor.clinic_id)

    def list_mapping_specs(self, actor: Actor, run_id: str) -> List[MappingSpecVersion]:
        self._load_run(actor, run_id)
        return self.repo.list_mapping_specs(run_id)

    def list_audit_events(self, actor: Actor, run_id: str) -> List[MigrationAuditEvent]:
        self._load_run(actor, run_id)
        return self.repo.list_audit_events(run_id)

    def get_report(self, actor: Actor, run_id: str, name: str) -> Any:
        """
        Fetch one of a run's PHI-free reports.

        Args:
            actor: Caller
            run_id: Run to read
            name: profile, dry_run, validation or reconciliation

        Raises:
            ValueError: If the report name is unknown
            ArtifactNotFoundError: If the producing phase has not run yet
        """
        if name not in REPORTS:
            raise ValueError(f"Unknown report: {name}. Expected one of {', '.join(REPORTS)}")
        self._load_run(actor, run_id)
        phase, key = REPORTS[name]
        return self.artifacts.get_json(run_id, phase.value, key)

    def complete_run(self, actor: Actor, run_id: str) -> MigrationRun:
        """Mark a verified run Completed."""
        run = self._load_run(actor, run_id)
        self._check_mutable(run)

        with self._run_lease(run.id, f"{actor.user_id}:complete"):
            run = self.repo.get_run(run.id)
            self._check_mutable(run)
            if not run.is_phase_completed(Phase.VERIFY):
                raise PhasePreconditionError("Run must be verified before it can be completed")

            run.status = RunStatus.COMPLETED
            run.completed_at = utc_now()
            run.add_log("Run completed")
            self.repo.save_run(run)

        reconciliation = run.completed_phases[Phase.VERIFY.value].summary
        self._audit(run, None, AuditAction.RUN_COMPLETED, actor, {
            "reconciliation_status": reconciliation.get("status"),
        })
        logger.info(f"Migration run {run.id} completed")
        return run

    # Mapping review

    def submit_mapping(self, actor: Actor, run_id: str, spec: Dict[str, Any]) -> MappingSpecVersion:
        """
        Store an operator-edited mapping spec as the run's next version.

        The version number in the submitted spec is ignored; versions are
        assigned sequentially and never overwritten.

        Raises:
            InvalidMappingSpecError: If the spec fails structural validation
            PhasePreconditionError: If transform has already started
        """
        run = self._load_run(actor, run_id)
        self._check_mutable(run)

        with self._run_lease(run.id, f"{actor.user_id}:submit_mapping"):
            run = self.repo.get_run(run.id)
            self._check_mapping_editable(run)

            version = run.mapping_spec_version + 1
            data = dict(spec) if isinstance(spec, dict) else spec
            if isinstance(data, dict):
                data["version"] = version
            errors = validate_mapping_spec(data)
            if not errors and data["source_vendor"] != run.source_vendor.value:
                errors.append({
                    "path": "source_vendor",
                    "message": f"source_vendor must be {run.source_vendor.value}",
                })
            if errors:
                raise InvalidMappingSpecError(errors)

            # Round trip so the stored version carries normalized fields
            spec_version = MappingSpecVersion(
                run_id=run.id,
                version=version,
                spec=MappingSpec.from_dict(data).to_dict(),
                created_by=actor.user_id,
            )
            self.repo.add_mapping_spec(spec_version)
            run.mapping_spec_version = version
            run.add_log(f"Mapping spec v{version} submitted")
            self.repo.save_run(run)

        self._audit(run, None, AuditAction.MAPPING_SUBMITTED, actor, {"version": version})
        return spec_version

    def approve_mapping(self, actor: Actor, run_id: str, version: Optional[int] = None) -> MigrationRun:
        """
        Approve a mapping spec version for transform.

        Args:
            actor: Reviewer approving the mapping
            run_id: Run to update
            version: Version to approve; the latest when omitted

        Raises:
            PhasePreconditionError: If the version does not exist or
                transform has already started
        """
        run = self._load_run(actor, run_id)
        self._check_mutable(run)

        with self._run_lease(run.id, f"{actor.user_id}:approve_mapping"):
            run = self.repo.get_run(run.id)
            self._check_mapping_editable(run)

            version = version or run.mapping_spec_version
            spec_version = self.repo.get_mapping_spec(run.id, version) if version else None
            if not spec_version:
                raise PhasePreconditionError(f"Mapping spec version {version} does not exist")

            spec = MappingSpec.from_dict(spec_version.spec)
            reviewed = sum(len(em.pending_approval) for em in spec.entity_mappings)

            run.approved_mapping_version = version
            run.mapping_approved_by = actor.user_id
            run.mapping_approved_at = utc_now()
            run.add_log(f"Mapping spec v{version} approved")
            self.repo.save_run(run)

        self._audit(run, None, AuditAction.MAPPING_APPROVED, actor, {
            "version": version,
            "low_confidence_fields_reviewed": reviewed,
        })
        logger.info(f"Run {run.id}: mapping spec v{version} approved by {actor.user_id}")
        return run

    # Pause / resume

    def pause_run(self, actor: Actor, run_id: str) -> MigrationRun:
        """
        Pause a run.

        With no phase in flight the run pauses immediately; otherwise the
        executing phase stops at its next batch boundary.
        """
        run = self._load_run(actor, run_id)
        self._check_mutable(run)
        if run.status == RunStatus.PAUSED:
            return run

        paused = self._pause_idle_run(actor, run.id)
        if paused:
            return paused

        self.repo.request_pause(run.id)
        # The phase may have finished between the lease attempt and the flag
        paused = self._pause_idle_run(actor, run.id)
        if paused:
            return paused

        self._audit(run, run.current_phase, AuditAction.RUN_PAUSED, actor, {"in_flight": True})
        logger.info(f"Pause requested for run {run.id}; phase stops at the next batch")
        return self.repo.get_run(run.id)

    def _pause_idle_run(self, actor: Actor, run_id: str) -> Optional[MigrationRun]:
        """Pause a run no phase is executing on; None if a phase holds the lease."""
        lease = self.repo.acquire_lease(run_id, f"{actor.user_id}:pause", self.config.lease_timeout_seconds)
        if not lease:
            return None

        try:
            self.repo.clear_pause(run_id)
            run = self.repo.get_run(run_id)
            self._check_mutable(run)
            if run.status != RunStatus.PAUSED:
                run.paused_from = run.status
                run.paused_phase = None
                run.status = RunStatus.PAUSED
                run.add_log("Run paused")
                self.repo.save_run(run)
                self._audit(run, None, AuditAction.RUN_PAUSED, actor, {"in_flight": False})
        finally:
            self.repo.release_lease(run_id, lease)
        return run

    def resume_run(self, actor: Actor, run_id: str) -> Optional[PhaseResult]:
        """
        Resume a paused run.

        Returns:
            Result of the interrupted phase when one was resumed, else None
        """
        run = self._load_run(actor, run_id)
        self._check_mutable(run)

        with self._run_lease(run.id, f"{actor.user_id}:resume"):
            run = self.repo.get_run(run.id)
            if run.status != RunStatus.PAUSED:
                raise PhasePreconditionError(f"Run {run.id} is not paused")

            self.repo.clear_pause(run.id)
            phase = run.paused_phase
            run.status = run.paused_from or RunStatus.CREATED
            run.paused_from = None
            run.paused_phase = None
            run.add_log(f"Run resumed{f' at {phase.value}' if phase else ''}")
            self.repo.save_run(run)

        self._audit(run, phase, AuditAction.RUN_RESUMED, actor, {})

        if phase:
            return self.run_phase(actor, run.id, phase)
        return None

    # Phase execution

    def run_to_approval(self, actor: Actor, run_id: str) -> List[PhaseResult]:
        """Ingest and draft a mapping, stopping for operator review."""
        return self._run_phases(actor, run_id, [Phase.INGEST, Phase.DRAFT_MAPPING])

    def run_from_approval(self, actor: Actor, run_id: str) -> List[PhaseResult]:
        """Transform, validate, load and verify with the approved mapping."""
        return self._run_phases(actor, run_id, [Phase.TRANSFORM, Phase.VALIDATE, Phase.LOAD, Phase.VERIFY])

    def _run_phases(self, actor: Actor, run_id: str, phases: List[Phase]) -> List[PhaseResult]:
        results = []
        for phase in phases:
            result = self.run_phase(actor, run_id, phase)
            results.append(result)
            if result.paused:
                break
        return results

    def run_phase(self, actor: Actor, run_id: str, phase: Any) -> PhaseResult:
        """
        Execute one phase of a run.

        A phase that already completed returns its stored result without
        doing any work, whatever state the run is in now.

        Args:
            actor: Caller
            run_id: Run to advance
            phase: Phase (or its name) to execute

        Returns:
            PhaseResult; ``paused`` is set when a pause stopped the phase

        Raises:
            AccessDeniedError: If the run belongs to another clinic
            RunTerminalError: If the run is Completed or Failed
            RunPausedError: If the run is paused
            PhasePreconditionError: If the phase's prerequisites are not met
            PhaseInFlightError: If another phase holds the run's lease
            MigrationFailedError: If an infrastructure failure failed the run
        """
        phase = Phase(phase)
        run = self._load_run(actor, run_id)
        if run.is_phase_completed(phase):
            return run.completed_phases[phase.value]
        self._check_runnable(run)
        self._check_preconditions(run, phase)

        with self._run_lease(run.id, f"{actor.user_id}:{phase.value}") as lease:
            # Re-read under the lease; another worker may have moved the run on
            run = self.repo.get_run(run.id)
            if run.is_phase_completed(phase):
                return run.completed_phases[phase.value]
            self._check_runnable(run)
            self._check_preconditions(run, phase)

            return self._execute_phase(actor, run, phase, lease)

    def _execute_phase(self, actor: Actor, run: MigrationRun, phase: Phase, lease: str) -> PhaseResult:
        resumed = phase.value in run.checkpoints

        run.status = PHASE_STATUS[phase]
        run.current_phase = phase
        run.error_message = None
        if not run.started_at:
            run.started_at = utc_now()
        run.add_log(f"{'Resuming' if resumed else 'Starting'} phase {phase.value}")
        self.repo.save_run(run)
        self._audit(run, phase, AuditAction.PHASE_STARTED, actor, {"resumed": resumed})

        logger.info(f"=== PHASE: {phase.value.upper()} (run {run.id}) ===")

        handler = {
            Phase.INGEST: self._ingest,
            Phase.DRAFT_MAPPING: self._draft_mapping,
            Phase.TRANSFORM: self._transform,
            Phase.VALIDATE: self._validate,
            Phase.LOAD: self._load,
            Phase.VERIFY: self._verify,
        }[phase]

        try:
            result = handler(actor, run, lease)
        except PhaseInFlightError:
            # The lease was broken as stale; the new holder owns the run now
            logger.error(f"Phase {phase.value} of run {run.id} lost its lease; stopping")
            raise
        except Exception as e:
            logger.error(f"Phase {phase.value} failed for run {run.id}: {e}")
            self.repo.clear_pause(run.id)
            # Keep counters as of the last checkpoint, not the half-done batch
            run = self.repo.get_run(run.id)
            run.status = RunStatus.FAILED
            run.error_message = str(e)
            run.add_log(f"Phase {phase.value} failed: {e}")
            self.repo.save_run(run)
            self._audit(run, phase, AuditAction.PHASE_FAILED, actor, {"error": str(e)})
            raise MigrationFailedError(run.id, phase.value, str(e)) from e

        if result.paused:
            self.repo.clear_pause(run.id)
            run.paused_from = PHASE_STATUS[phase]
            run.paused_phase = phase
            run.status = RunStatus.PAUSED
            run.add_log(f"Phase {phase.value} paused after {result.batches} batches")
            self.repo.save_run(run)
            self._audit(run, phase, AuditAction.PHASE_PAUSED, actor, {"batches": result.batches})
            logger.info(f"Phase {phase.value} paused for run {run.id}")
            return result

        result.completed_at = utc_now()
        run.completed_phases[phase.value] = result
        run.checkpoints.pop(phase.value, None)
        run.add_log(
            f"Phase {phase.value} completed: {result.records_processed} processed, "
            f"{result.records_failed} failed"
        )

        # A pause that arrived after the last batch takes effect now
        if self.repo.pause_requested(run.id):
            self.repo.clear_pause(run.id)
            run.paused_from = run.status
            run.paused_phase = None
            run.status = RunStatus.PAUSED
            run.add_log("Run paused")

        self.repo.save_run(run)
        self._audit(run, phase, AuditAction.PHASE_COMPLETED, actor, {
            "records_processed": result.records_processed,
            "records_succeeded": result.records_succeeded,
            "records_failed": result.records_failed,
            "records_skipped": result.records_skipped,
            "batches": result.batches,
        })
        logger.info(
            f"Phase {phase.value} complete: {result.records_succeeded}/{result.records_processed} "
            f"succeeded in {result.batches} batches"
        )
        return result

    # Phase 1: ingest

    def _ingest(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        credentials = self.vault.open(run.encrypted_credentials)
        adapter = self._adapter_factory(run.source_vendor, self.config, run.ingest_source)

        result, checkpoint = self._start_result(run, Phase.INGEST)
        position: Dict[str, Dict[str, Any]] = checkpoint.get("position") or {}

        for page in adapter.fetch_raw_records(credentials, resume_from=position):
            key = f"{page.source_entity}/page-{page.page_index:05d}.json"
            self.artifacts.put_json(run.id, Phase.INGEST.value, key, page.to_dict())

            state = position.setdefault(page.source_entity, {"pages": 0, "records": 0})
            state["next_marker"] = page.next_marker
            state["pages"] = page.page_index + 1
            state["done"] = page.is_last
            state["records"] = state.get("records", 0) + len(page.records)

            result.records_processed += len(page.records)
            result.records_succeeded += len(page.records)
            result.artifacts.append(key)
            logger.info(f"Ingested {page.source_entity} page {page.page_index}: {len(page.records)} records")

            if self._save_batch(run, Phase.INGEST, result, position, lease):
                return self._paused(result)

        result.summary = {
            "source_counts": {entity: state.get("records", 0) for entity, state in position.items()},
        }
        return result

    def _ingest_pages(self, run: MigrationRun) -> Dict[str, List[str]]:
        """Source entity -> ingest artifact keys in page order."""
        pages: Dict[str, List[str]] = {}
        for ref in self.artifacts.list(run.id, Phase.INGEST.value):
            entity = ref.key.split("/", 1)[0]
            pages.setdefault(entity, []).append(ref.key)
        return pages

    def _read_page(self, run: MigrationRun, key: str) -> List[RawRecord]:
        return IngestPage.from_dict(self.artifacts.get_json(run.id, Phase.INGEST.value, key)).records

    # Phase 2: draft mapping

    def _draft_mapping(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        result, _ = self._start_result(run, Phase.DRAFT_MAPPING)

        samples: Dict[str, List[Dict[str, Any]]] = {}
        profiles = []
        for entity, keys in self._ingest_pages(run).items():
            records: List[RawRecord] = []
            for key in keys:
                records.extend(self._read_page(run, key))
            profiles.append(profile_entity(entity, records))
            samples[entity] = [r.payload for r in records[:self.config.dry_run_sample_size]]
            result.records_processed += len(records)

        self.artifacts.put_json(run.id, Phase.DRAFT_MAPPING.value, "profile.json", {
            "entities": [p.to_dict() for p in profiles],
        })

        version = run.mapping_spec_version + 1
        drafter = create_drafter(
            run.source_vendor,
            provider=self.config.llm_provider,
            model=self.config.llm_model,
            api_key=self.config.llm_api_key,
        )
        spec = drafter.draft(profiles, version=version)
        errors = validate_mapping_spec(spec.to_dict())
        if errors:
            raise InvalidMappingSpecError(errors)

        self.repo.add_mapping_spec(MappingSpecVersion(
            run_id=run.id,
            version=version,
            spec=spec.to_dict(),
            created_by=actor.user_id,
        ))
        run.mapping_spec_version = version

        dry_run = self._dry_run_preview(run, spec, samples)
        self.artifacts.put_json(run.id, Phase.DRAFT_MAPPING.value, "dry-run.json", dry_run)

        pending = sum(len(em.pending_approval) for em in spec.entity_mappings)
        mapped = {em.source_entity for em in spec.entity_mappings}
        result.records_succeeded = result.records_processed
        result.batches = 1
        result.artifacts = ["profile.json", "dry-run.json"]
        result.summary = {
            "mapping_version": version,
            "entity_mappings": len(spec.entity_mappings),
            "pending_approval": pending,
            "unmapped_entities": sorted(set(samples) - mapped),
        }
        return result

    def _dry_run_preview(
        self,
        run: MigrationRun,
        spec: MappingSpec,
        samples: Dict[str, List[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        """Transform and validate sample records with a drafted spec, keeping counts only."""
        engine = TransformEngine(run.clinic_id, run.source_vendor.value, self.config.masking_secret)
        entities = []

        for mapping in spec.entity_mappings:
            previews = engine.preview(samples.get(mapping.source_entity, []), mapping)
            transformed = 0
            valid = 0
            errors_by_code: Dict[str, int] = {}

            for preview in previews:
                if not preview["ok"]:
                    errors_by_code[ErrorCode.TRANSFORM_FAILED.value] = (
                        errors_by_code.get(ErrorCode.TRANSFORM_FAILED.value, 0) + 1
                    )
                    continue
                transformed += 1
                envelope = CanonicalEnvelope.from_dict(preview["record"])
                verdict = validate_record(envelope.entity_type, envelope.record)
                if verdict.valid:
                    valid += 1
                for issue in verdict.errors:
                    errors_by_code[issue.code] = errors_by_code.get(issue.code, 0) + 1

            entities.append({
                "source_entity": mapping.source_entity,
                "target_entity": mapping.target_entity.value,
                "sampled": len(previews),
                "transformed": transformed,
                "valid": valid,
                "errors_by_code": errors_by_code,
            })

        return {"mapping_version": spec.version, "entities": entities}

    # Phase 3: transform

    def _transform(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        spec_version = self.repo.get_mapping_spec(run.id, run.approved_mapping_version)
        if not spec_version:
            raise PhasePreconditionError(f"Approved mapping spec v{run.approved_mapping_version} is missing")
        spec = MappingSpec.from_dict(spec_version.spec)

        entity_map = self.repo.load_entity_map(run.id)

        def resolve(entity_type: str, source_id: str) -> str:
            entry = entity_map.get(f"{entity_type}:{source_id}")
            if entry:
                return entry.canonical_id
            return generate_canonical_id(run.clinic_id, run.source_vendor.value, entity_type, source_id)

        engine = TransformEngine(
            run.clinic_id,
            run.source_vendor.value,
            self.config.masking_secret,
            resolve_reference=resolve,
        )

        result, checkpoint = self._start_result(run, Phase.TRANSFORM)
        position = checkpoint.get("position") or {"page": 0, "offset": 0, "next_batch": 0}
        pages = self._transform_units(run, spec)

        for page_idx, (source_entity, key) in enumerate(pages):
            if page_idx < position["page"]:
                continue

            raws = self._read_page(run, key)
            mappings = spec.get_entity_mappings(source_entity)
            start = position["offset"] if page_idx == position["page"] else 0

            for offset, chunk in self._batch_iterator(raws, self.config.batch_size, start):
                batch = self._transform_chunk(run, engine, entity_map, source_entity, mappings, chunk)
                batch_key = f"batch-{position['next_batch']:05d}.json"
                self.artifacts.put_json(run.id, Phase.TRANSFORM.value, batch_key, batch)
                self.repo.save_entity_map(run.id, entity_map)

                result.records_processed += len(chunk)
                result.records_succeeded += len(batch["records"])
                result.records_failed += len(batch["failures"])
                result.records_skipped += len(batch["skipped"])
                result.artifacts.append(batch_key)
                for record in batch["records"]:
                    counts = result.summary.setdefault("transformed_by_entity", {})
                    counts[record["entity_type"]] = counts.get(record["entity_type"], 0) + 1

                position = {"page": page_idx, "offset": offset + len(chunk), "next_batch": position["next_batch"] + 1}
                if offset + len(chunk) >= len(raws):
                    position = {"page": page_idx + 1, "offset": 0, "next_batch": position["next_batch"]}

                if self._save_batch(run, Phase.TRANSFORM, result, position, lease):
                    return self._paused(result)

        result.summary.setdefault("transformed_by_entity", {})
        return result

    def _transform_units(self, run: MigrationRun, spec: MappingSpec) -> List[Tuple[str, str]]:
        """Ingest pages as (source entity, key), parents before children."""
        def rank(source_entity: str) -> int:
            ranks = [
                ENTITY_LOAD_ORDER.index(em.target_entity)
                for em in spec.get_entity_mappings(source_entity)
            ]
            return min(ranks) if ranks else _UNRANKED

        units = []
        for entity, keys in sorted(self._ingest_pages(run).items(), key=lambda kv: (rank(kv[0]), kv[0])):
            units.extend((entity, key) for key in keys)
        return units

    def _transform_chunk(
        self,
        run: MigrationRun,
        engine: TransformEngine,
        entity_map: Dict[str, EntityMapEntry],
        source_entity: str,
        mappings: List[EntityMapping],
        raws: List[RawRecord]
    ) -> Dict[str, Any]:
        records = []
        failures = []
        skipped = []

        if not mappings:
            progress = run.get_progress(source_entity)
            progress.total += len(raws)
            progress.skipped += len(raws)
            skipped.extend(
                RecordFailure(
                    entity_type=source_entity,
                    source_id=raw.source_id,
                    code=ErrorCode.UNMAPPED_ENTITY.value,
                    message=f"No mapping for source entity {source_entity}",
                ).to_dict()
                for raw in raws
            )

        for mapping in mappings:
            target = mapping.target_entity.value
            progress = run.get_progress(target)
            progress.total += len(raws)

            if target in run.excluded_entity_types:
                progress.skipped += len(raws)
                skipped.extend(
                    RecordFailure(
                        entity_type=target,
                        source_id=raw.source_id,
                        code=ErrorCode.EXCLUDED.value,
                        message=f"{target} records excluded from this run",
                    ).to_dict()
                    for raw in raws
                )
                continue

            for raw in raws:
                try:
                    envelope = engine.transform_record(raw, mapping)
                except RecordTransformError as e:
                    progress.failed += 1
                    failures.append(RecordFailure(
                        entity_type=target,
                        source_id=e.source_id or raw.source_id,
                        code=ErrorCode.TRANSFORM_FAILED.value,
                        message=str(e),
                    ).to_dict())
                    continue

                records.append(envelope.to_dict())
                map_key = f"{target}:{envelope.source_id}"
                if map_key not in entity_map:
                    entity_map[map_key] = EntityMapEntry(
                        entity_type=target,
                        source_id=envelope.source_id,
                        canonical_id=envelope.canonical_id,
                    )

        return {
            "source_entity": source_entity,
            "records": records,
            "failures": failures,
            "skipped": skipped,
        }

    def _transform_batch_keys(self, run: MigrationRun) -> List[str]:
        return [
            ref.key for ref in self.artifacts.list(run.id, Phase.TRANSFORM.value)
            if ref.key.startswith("batch-")
        ]

    def _read_envelopes(self, run: MigrationRun, key: str) -> List[CanonicalEnvelope]:
        data = self.artifacts.get_json(run.id, Phase.TRANSFORM.value, key)
        return [CanonicalEnvelope.from_dict(r) for r in data["records"]]

    # Phase 4: validate

    def _validate(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        keys = self._transform_batch_keys(run)

        # References may point at records in any batch of the import
        index: Dict[str, set] = {}
        first_batch: Dict[str, int] = {}
        for n, key in enumerate(keys):
            envelopes = self._read_envelopes(run, key)
            for entity, ids in build_reference_index(envelopes).items():
                index.setdefault(entity, set()).update(ids)
            for envelope in envelopes:
                first_batch.setdefault(envelope.canonical_id, n)

        result, checkpoint = self._start_result(run, Phase.VALIDATE)
        position = checkpoint.get("position", 0)

        for n, key in enumerate(keys):
            if n < position:
                continue

            envelopes = self._read_envelopes(run, key)
            seen = {cid for cid, first in first_batch.items() if first < n}
            checked = check_records(envelopes, seen)
            for envelope, verdict in checked:
                verdict.errors.extend(validate_referential_integrity([envelope], index))

            verdicts = []
            for envelope, verdict in checked:
                verdicts.append({
                    "canonical_id": envelope.canonical_id,
                    "entity_type": envelope.entity_type.value,
                    "valid": verdict.valid,
                    "errors": [issue.code for issue in verdict.errors],
                })
                if verdict.valid:
                    valid_counts = result.summary.setdefault("valid_by_entity", {})
                    entity = envelope.entity_type.value
                    valid_counts[entity] = valid_counts.get(entity, 0) + 1
                else:
                    run.get_progress(envelope.entity_type.value).failed += 1

            report = compile_report(checked)
            verdict_key = key.replace("batch-", "verdicts-", 1)
            self.artifacts.put_json(run.id, Phase.VALIDATE.value, verdict_key, {
                "transform_batch": key,
                "verdicts": verdicts,
                "report": report.to_dict(),
            })

            result.records_processed += report.total_records
            result.records_succeeded += report.valid_records
            result.records_failed += report.invalid_records
            result.artifacts.append(verdict_key)

            if self._save_batch(run, Phase.VALIDATE, result, n + 1, lease):
                return self._paused(result)

        merged = merge_reports(
            ValidationReport.from_dict(
                self.artifacts.get_json(run.id, Phase.VALIDATE.value, key.replace("batch-", "verdicts-", 1))["report"]
            )
            for key in keys
        )
        self.artifacts.put_json(run.id, Phase.VALIDATE.value, "report.json", merged.to_dict())
        result.artifacts.append("report.json")
        result.summary.setdefault("valid_by_entity", {})
        result.summary["errors_by_code"] = merged.errors_by_code
        result.summary["invalid_by_entity"] = merged.errors_by_entity
        return result

    # Phase 5: load

    def _load(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        loader = self._create_loader()
        if not loader.validate_connection():
            raise LoaderUnavailableError("Target store is not reachable")

        entity_map = self.repo.load_entity_map(run.id)
        by_canonical = {entry.canonical_id: entry for entry in entity_map.values()}

        result, checkpoint = self._start_result(run, Phase.LOAD)
        position = checkpoint.get("position", 0)
        keys = self._transform_batch_keys(run)
        detector = self._duplicate_detector(run, loader, keys[:position], entity_map)

        for n, key in enumerate(keys):
            if n < position:
                continue

            envelopes = self._read_envelopes(run, key)
            verdicts = self.artifacts.get_json(
                run.id, Phase.VALIDATE.value, key.replace("batch-", "verdicts-", 1)
            )["verdicts"]

            loaded = []
            failures = []
            skipped = []
            pending: Dict[str, List[Tuple[CanonicalEnvelope, Dict[str, str]]]] = {}
            # Patients of this batch by canonical id, and duplicates of them
            batch_patients: Dict[str, KnownPatient] = {}
            deferred: List[Tuple[CanonicalEnvelope, DuplicateMatch]] = []

            for envelope, verdict in zip(envelopes, verdicts):
                if not verdict["valid"]:
                    continue

                entity = envelope.entity_type.value
                progress = run.get_progress(entity)
                entry = entity_map.get(f"{entity}:{envelope.source_id}")
                result.records_processed += 1

                if entry and entry.status in (EntityMapStatus.LOADED, EntityMapStatus.DUPLICATE) and entry.target_id:
                    progress.skipped += 1
                    result.records_skipped += 1
                    if envelope.entity_type == EntityType.PATIENT and entry.status == EntityMapStatus.LOADED:
                        detector.add(KnownPatient.from_patient(envelope.record, entry.target_id))
                    continue

                if envelope.entity_type == EntityType.PATIENT:
                    match = detector.find(envelope.record)
                    if match and match.existing.target_id:
                        skipped.append(self._skip_duplicate(run, result, entry, envelope, match))
                        continue
                    if match:
                        deferred.append((envelope, match))
                        continue
                    known = KnownPatient.from_patient(envelope.record)
                    detector.add(known)
                    batch_patients[envelope.canonical_id] = known

                references, unresolved = self._resolve_references(envelope, by_canonical)
                if unresolved:
                    progress.failed += 1
                    result.records_failed += 1
                    if entry:
                        entry.status = EntityMapStatus.FAILED
                    failures.append(RecordFailure(
                        entity_type=entity,
                        source_id=envelope.source_id,
                        canonical_id=envelope.canonical_id,
                        code=ErrorCode.UNRESOLVED_REFERENCE.value,
                        message=f"No target id for {', '.join(unresolved)}",
                    ).to_dict())
                    continue

                pending.setdefault(entity, []).append((envelope, references))

            for entity, items in pending.items():
                load_result = loader.load_batch(items, entity)
                progress = run.get_progress(entity)

                for (envelope, _), migration_result in zip(items, load_result.results):
                    entry = entity_map.get(f"{entity}:{envelope.source_id}")
                    if migration_result.success:
                        progress.imported += 1
                        result.records_succeeded += 1
                        if entry:
                            entry.target_id = migration_result.target_id
                            entry.status = EntityMapStatus.LOADED
                        if envelope.canonical_id in batch_patients:
                            batch_patients[envelope.canonical_id].target_id = migration_result.target_id
                        loaded.append({
                            "canonical_id": envelope.canonical_id,
                            "target_id": migration_result.target_id,
                        })
                    else:
                        progress.failed += 1
                        result.records_failed += 1
                        if entry:
                            entry.status = EntityMapStatus.FAILED
                        failures.append(RecordFailure(
                            entity_type=entity,
                            source_id=envelope.source_id,
                            canonical_id=envelope.canonical_id,
                            code=migration_result.error_code or ErrorCode.LOAD_REJECTED.value,
                            message=migration_result.error or "Rejected by target",
                        ).to_dict())

            for envelope, match in deferred:
                entry = entity_map.get(f"{envelope.entity_type.value}:{envelope.source_id}")
                if match.existing.target_id:
                    skipped.append(self._skip_duplicate(run, result, entry, envelope, match))
                    continue
                run.get_progress(envelope.entity_type.value).failed += 1
                result.records_failed += 1
                if entry:
                    entry.status = EntityMapStatus.FAILED
                failures.append(RecordFailure(
                    entity_type=envelope.entity_type.value,
                    source_id=envelope.source_id,
                    canonical_id=envelope.canonical_id,
                    code=ErrorCode.DUPLICATE_PATIENT.value,
                    message="Duplicate of a patient that failed to load",
                ).to_dict())

            results_key = key.replace("batch-", "results-", 1)
            self.artifacts.put_json(run.id, Phase.LOAD.value, results_key, {
                "transform_batch": key,
                "loaded": loaded,
                "skipped": skipped,
                "failures": failures,
            })
            self.repo.save_entity_map(run.id, entity_map)
            result.artifacts.append(results_key)

            if self._save_batch(run, Phase.LOAD, result, n + 1, lease):
                return self._paused(result)

        result.summary = {
            entity: progress.to_dict() for entity, progress in run.progress.items()
        }
        return result

    def _duplicate_detector(
        self,
        run: MigrationRun,
        loader: BaseLoader,
        loaded_keys: List[str],
        entity_map: Dict[str, EntityMapEntry]
    ) -> DuplicateDetector:
        """Index the target's patients plus patients loaded by earlier batches of this run."""
        detector = DuplicateDetector([
            KnownPatient.from_target(row)
            for row in loader.existing_patients()
            if row.get("id") is not None
        ])
        for key in loaded_keys:
            for envelope in self._read_envelopes(run, key):
                if envelope.entity_type != EntityType.PATIENT:
                    continue
                entry = entity_map.get(f"{EntityType.PATIENT.value}:{envelope.source_id}")
                if entry and entry.status == EntityMapStatus.LOADED and entry.target_id:
                    detector.add(KnownPatient.from_patient(envelope.record, entry.target_id))
        return detector

    def _skip_duplicate(
        self,
        run: MigrationRun,
        result: PhaseResult,
        entry: Optional[EntityMapEntry],
        envelope: CanonicalEnvelope,
        match: DuplicateMatch
    ) -> Dict[str, Any]:
        """Count a duplicate patient as skipped and point its map entry at the existing patient."""
        run.get_progress(envelope.entity_type.value).skipped += 1
        result.records_skipped += 1
        if entry:
            entry.target_id = match.existing.target_id
            entry.status = EntityMapStatus.DUPLICATE
        logger.info(f"Skipping duplicate patient {envelope.source_id}: {match.reason}")

        skipped = RecordFailure(
            entity_type=envelope.entity_type.value,
            source_id=envelope.source_id,
            canonical_id=envelope.canonical_id,
            code=ErrorCode.DUPLICATE_PATIENT.value,
            message=match.reason,
        ).to_dict()
        skipped["match_type"] = match.match_type.value
        return skipped

    def _resolve_references(
        self,
        envelope: CanonicalEnvelope,
        by_canonical: Dict[str, EntityMapEntry]
    ) -> Tuple[Dict[str, str], List[str]]:
        """Map each reference field to the target id of the record it points at."""
        references = {}
        unresolved = []
        for rel in relationships_for(envelope.entity_type):
            ref = getattr(envelope.record, rel.field, None)
            if not ref:
                continue
            entry = by_canonical.get(ref)
            if entry and entry.target_id:
                references[rel.field] = entry.target_id
            else:
                unresolved.append(rel.field)
        return references, unresolved

    # Phase 6: verify

    def _verify(self, actor: Actor, run: MigrationRun, lease: str) -> PhaseResult:
        result, _ = self._start_result(run, Phase.VERIFY)

        spec_version = self.repo.get_mapping_spec(run.id, run.approved_mapping_version)
        spec = MappingSpec.from_dict(spec_version.spec)

        ingest_counts = run.completed_phases[Phase.INGEST.value].summary.get("source_counts", {})
        source_counts: Dict[str, int] = {}
        for source_entity, count in ingest_counts.items():
            targets = [em.target_entity.value for em in spec.get_entity_mappings(source_entity)] or [source_entity]
            for target in targets:
                source_counts[target] = source_counts.get(target, 0) + count

        # Stored checksums must still match the records that were loaded
        mismatches = 0
        for key in self._transform_batch_keys(run):
            for envelope in self._read_envelopes(run, key):
                if envelope.checksum and envelope.checksum != record_checksum(envelope.record.to_dict()):
                    mismatches += 1

        report = reconcile(
            run.id,
            source_counts,
            run.progress,
            transformed_counts=run.completed_phases[Phase.TRANSFORM.value].summary.get("transformed_by_entity"),
            valid_counts=run.completed_phases[Phase.VALIDATE.value].summary.get("valid_by_entity"),
        )
        data = report.to_dict()
        data["checksum_mismatches"] = mismatches
        self.artifacts.put_json(run.id, Phase.VERIFY.value, "reconciliation.json", data)

        result.records_processed = sum(source_counts.values())
        result.records_succeeded = sum(e.imported_count + e.skipped_count for e in report.entities)
        result.records_failed = sum(e.failed_count for e in report.entities)
        result.batches = 1
        result.artifacts = ["reconciliation.json"]
        result.summary = {
            "status": report.status,
            "overall_completeness": report.overall_completeness,
            "checksum_mismatches": mismatches,
        }
        return result

    # Helpers

    def _load_run(self, actor: Actor, run_id: str) -> MigrationRun:
        run = self.repo.get_run(run_id)
        if run.clinic_id != actor.clinic_id:
            raise AccessDeniedError(run_id)
        return run

    def _check_mutable(self, run: MigrationRun) -> None:
        if run.is_terminal:
            raise RunTerminalError(run.id, run.status.value)

    def _check_runnable(self, run: MigrationRun) -> None:
        self._check_mutable(run)
        if run.status == RunStatus.PAUSED:
            raise RunPausedError(run.id)

    def _check_mapping_editable(self, run: MigrationRun) -> None:
        self._check_mutable(run)
        if run.is_phase_completed(Phase.TRANSFORM) or Phase.TRANSFORM.value in run.checkpoints:
            raise PhasePreconditionError("Mapping cannot change once transform has started")

    def _check_preconditions(self, run: MigrationRun, phase: Phase) -> None:
        prior = previous_phase(phase)
        if prior and not run.is_phase_completed(prior):
            raise PhasePreconditionError(f"Phase {phase.value} requires {prior.value} to complete first")

        if phase == Phase.INGEST:
            if not run.consent_signed_at or not run.consent_text.strip():
                raise ConsentRequiredError()
            if run.source_vendor == SourceVendor.CSV_UPLOAD and not run.ingest_source:
                raise PhasePreconditionError("csv_upload runs need an ingest source")

        if phase == Phase.TRANSFORM and not run.approved_mapping_version:
            raise PhasePreconditionError("An approved mapping spec version is required before transform")

    @contextmanager
    def _run_lease(self, run_id: str, holder: str) -> Iterator[str]:
        lease = self.repo.acquire_lease(run_id, holder, self.config.lease_timeout_seconds)
        if not lease:
            raise PhaseInFlightError(run_id, self.repo.lease_holder(run_id))
        try:
            yield lease
        finally:
            self.repo.release_lease(run_id, lease)

    def _start_result(self, run: MigrationRun, phase: Phase) -> Tuple[PhaseResult, Dict[str, Any]]:
        """Start a phase result, continuing the counts of an interrupted execution."""
        checkpoint = run.checkpoints.get(phase.value) or {}
        if checkpoint.get("result"):
            result = PhaseResult.from_dict(checkpoint["result"])
            result.paused = False
        else:
            result = PhaseResult(phase=phase, started_at=utc_now())
        return result, checkpoint

    def _save_batch(
        self,
        run: MigrationRun,
        phase: Phase,
        result: PhaseResult,
        position: Any,
        lease: str
    ) -> bool:
        """
        Persist progress and the checkpoint after a batch.

        Returns:
            True if a pause was requested and the phase should stop

        Raises:
            PhaseInFlightError: If the lease was broken and taken by another worker
        """
        if not self.repo.renew_lease(run.id, lease):
            raise PhaseInFlightError(run.id, self.repo.lease_holder(run.id))
        result.batches += 1
        run.checkpoints[phase.value] = {"position": position, "result": result.to_dict()}
        self.repo.save_run(run)
        return self.repo.pause_requested(run.id)

    def _paused(self, result: PhaseResult) -> PhaseResult:
        result.paused = True
        return result

    def _create_loader(self) -> BaseLoader:
        """Create the loader for the target store."""
        if self._loader:
            return self._loader
        if not self.config.target_url and not self.config.dry_run:
            raise LoaderUnavailableError(
                "No target configured; set CLINIC_MIGRATION_TARGET_URL or enable dry run"
            )
        self._loader = APILoader(
            base_url=self.config.target_url or "",
            api_key=self.config.target_api_key,
            dry_run=self.config.dry_run,
            timeout=self.config.request_timeout,
            page_size=self.config.page_size,
        )
        return self._loader

    def _batch_iterator(self, items: List[Any], batch_size: int, start: int = 0) -> Iterator[Tuple[int, List[Any]]]:
        """Yield (offset, chunk) pairs of items from start onward."""
        for i in range(start, len(items), batch_size):
            yield i, items[i:i + batch_size]

    def _audit(
        self,
        run: MigrationRun,
        phase: Optional[Phase],
        action: AuditAction,
        actor: Actor,
        metadata: Dict[str, Any]
    ) -> None:
        self.repo.append_audit_event(MigrationAuditEvent(
            run_id=run.id,
            phase=phase.value if phase else "",
            action=action,
            actor_id=actor.user_id,
            metadata=metadata,
        ))
