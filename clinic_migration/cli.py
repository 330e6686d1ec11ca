"""Command-line interface for operating migration runs."""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from .config import PipelineConfig
from .errors import MigrationError
from .models.migration import Actor, MigrationRun, Phase, PhaseResult, SourceVendor
from .orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(args) -> MigrationOrchestrator:
    """Build an orchestrator from the environment plus command-line overrides."""
    config = PipelineConfig.from_env()
    if args.data_dir:
        config.data_dir = args.data_dir
    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "target_url", None):
        config.target_url = args.target_url
    return MigrationOrchestrator(config)


def get_actor(args) -> Actor:
    if not args.clinic_id or not args.user_id:
        raise SystemExit("--clinic-id and --user-id are required (or set CLINIC_MIGRATION_CLINIC_ID/USER_ID)")
    return Actor(user_id=args.user_id, clinic_id=args.clinic_id)


def print_run(run: MigrationRun):
    """Print a run's status and progress."""
    print("\n" + "=" * 60)
    print(f"RUN {run.id}")
    print("=" * 60)
    print(f"Clinic: {run.clinic_id}")
    print(f"Source: {run.source_vendor.value}")
    print(f"Status: {run.status.value}")
    if run.current_phase:
        print(f"Current Phase: {run.current_phase.value}")
    if run.paused_phase:
        print(f"Paused In: {run.paused_phase.value}")
    print(f"Completed Phases: {', '.join(run.completed_phases) or '-'}")
    print(f"Mapping: v{run.mapping_spec_version} (approved: {run.approved_mapping_version or '-'})")
    if run.error_message:
        print(f"Error: {run.error_message}")

    if run.progress:
        print("\nProgress:")
        for entity, progress in run.progress.items():
            print(
                f"  {entity}: {progress.total} total, {progress.imported} imported, "
                f"{progress.skipped} skipped, {progress.failed} failed"
            )
    if run.duration_seconds:
        print(f"\nDuration: {run.duration_seconds:.2f} seconds")


def print_phase_result(result: PhaseResult):
    state = "PAUSED" if result.paused else "COMPLETE"
    print(f"\nPhase {result.phase.value}: {state}")
    print(f"  Processed: {result.records_processed}")
    print(f"  Succeeded: {result.records_succeeded}")
    print(f"  Failed: {result.records_failed}")
    print(f"  Skipped: {result.records_skipped}")
    if result.summary:
        print(json.dumps(result.summary, indent=2, default=str))


def load_credentials(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    with open(path) as f:
        return json.load(f)


def run_create(args):
    """Create a migration run."""
    orchestrator = build_orchestrator(args)
    run = orchestrator.create_run(
        get_actor(args),
        source_vendor=args.vendor,
        consent_text=args.consent,
        credentials=load_credentials(args.credentials),
        ingest_source=args.source,
        excluded_entity_types=args.exclude,
    )
    print(f"Created run {run.id}")


def run_phase(args):
    """Execute one phase, or every phase up to or after mapping approval."""
    orchestrator = build_orchestrator(args)
    actor = get_actor(args)

    if args.phase == "to-approval":
        results = orchestrator.run_to_approval(actor, args.run_id)
    elif args.phase == "from-approval":
        results = orchestrator.run_from_approval(actor, args.run_id)
    else:
        results = [orchestrator.run_phase(actor, args.run_id, args.phase)]

    for result in results:
        print_phase_result(result)


def run_submit_mapping(args):
    """Submit an edited mapping spec file."""
    orchestrator = build_orchestrator(args)
    with open(args.mapping) as f:
        spec = json.load(f)
    version = orchestrator.submit_mapping(get_actor(args), args.run_id, spec)
    print(f"Stored mapping spec v{version.version}")


def run_export_mapping(args):
    """Write a mapping spec version to a file for editing."""
    orchestrator = build_orchestrator(args)
    versions = orchestrator.list_mapping_specs(get_actor(args), args.run_id)
    if not versions:
        print("No mapping spec drafted yet")
        return

    selected = versions[-1]
    if args.version:
        matches = [v for v in versions if v.version == args.version]
        if not matches:
            print(f"Mapping spec version not found: {args.version}")
            return
        selected = matches[0]

    with open(args.output, "w") as f:
        json.dump(selected.spec, f, indent=2)
    print(f"Wrote mapping spec v{selected.version} to {args.output}")


def run_approve(args):
    orchestrator = build_orchestrator(args)
    run = orchestrator.approve_mapping(get_actor(args), args.run_id, args.version)
    print(f"Approved mapping spec v{run.approved_mapping_version}")


def run_pause(args):
    orchestrator = build_orchestrator(args)
    run = orchestrator.pause_run(get_actor(args), args.run_id)
    print_run(run)


def run_resume(args):
    orchestrator = build_orchestrator(args)
    result = orchestrator.resume_run(get_actor(args), args.run_id)
    if result:
        print_phase_result(result)
    else:
        print("Run resumed")


def run_complete(args):
    orchestrator = build_orchestrator(args)
    run = orchestrator.complete_run(get_actor(args), args.run_id)
    print_run(run)


def run_status(args):
    """Show one run, or list the clinic's runs."""
    orchestrator = build_orchestrator(args)
    actor = get_actor(args)

    if not args.run_id:
        for run in orchestrator.list_runs(actor):
            print(f"{run.id}  {run.source_vendor.value:<18} {run.status.value:<16} {run.created_at.isoformat()}")
        return

    run = orchestrator.get_run(actor, args.run_id)
    print_run(run)
    if args.audit:
        print("\nAudit trail:")
        for event in orchestrator.list_audit_events(actor, args.run_id):
            print(f"  {event.created_at.isoformat()} {event.action.value} {event.phase} by {event.actor_id}")
    if args.report:
        print(json.dumps(orchestrator.get_report(actor, args.run_id, args.report), indent=2, default=str))


def run_serve(args):
    """Serve the HTTP API."""
    import uvicorn

    if args.data_dir:
        os.environ["CLINIC_MIGRATION_DATA_DIR"] = args.data_dir
    uvicorn.run("clinic_migration.api.main:app", host=args.host, port=args.port)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Clinic Migration Tool - Move clinic records into the canonical data model"
    )
    parser.add_argument("--data-dir", help="Base directory for run state and artifacts")
    parser.add_argument(
        "--clinic-id",
        default=os.environ.get("CLINIC_MIGRATION_CLINIC_ID"),
        help="Clinic the caller acts for",
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("CLINIC_MIGRATION_USER_ID"),
        help="User performing the operation",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Create run
    create_parser = subparsers.add_parser("create", help="Create a migration run")
    create_parser.add_argument("--vendor", required=True, choices=[v.value for v in SourceVendor])
    create_parser.add_argument("--consent", required=True, help="Consent text signed by the clinic")
    create_parser.add_argument("--source", help="Export directory or file for csv_upload runs")
    create_parser.add_argument("--credentials", help="Path to a JSON file with source credentials")
    create_parser.add_argument("--exclude", nargs="*", default=[], help="Canonical entity types to skip")

    # Execute phases
    phase_parser = subparsers.add_parser("phase", help="Execute a phase")
    phase_parser.add_argument("run_id")
    phase_parser.add_argument(
        "phase",
        choices=[p.value for p in Phase] + ["to-approval", "from-approval"],
        help="Phase to run, or a group of phases around mapping approval",
    )
    phase_parser.add_argument("--dry-run", action="store_true", help="Simulate loads without writing")
    phase_parser.add_argument("--target-url", help="Base URL of the target store")

    # Mapping review
    export_parser = subparsers.add_parser("export-mapping", help="Write a mapping spec to a file")
    export_parser.add_argument("run_id")
    export_parser.add_argument("--output", required=True, help="Output file path")
    export_parser.add_argument("--version", type=int, help="Version to export (default: latest)")

    submit_parser = subparsers.add_parser("submit-mapping", help="Submit an edited mapping spec")
    submit_parser.add_argument("run_id")
    submit_parser.add_argument("--mapping", required=True, help="Path to mapping spec JSON")

    approve_parser = subparsers.add_parser("approve", help="Approve a mapping spec version")
    approve_parser.add_argument("run_id")
    approve_parser.add_argument("--version", type=int, help="Version to approve (default: latest)")

    # Lifecycle
    pause_parser = subparsers.add_parser("pause", help="Pause a run")
    pause_parser.add_argument("run_id")

    resume_parser = subparsers.add_parser("resume", help="Resume a paused run")
    resume_parser.add_argument("run_id")
    resume_parser.add_argument("--dry-run", action="store_true", help="Simulate loads without writing")
    resume_parser.add_argument("--target-url", help="Base URL of the target store")

    complete_parser = subparsers.add_parser("complete", help="Mark a verified run completed")
    complete_parser.add_argument("run_id")

    status_parser = subparsers.add_parser("status", help="Show a run, or list runs")
    status_parser.add_argument("run_id", nargs="?")
    status_parser.add_argument("--audit", action="store_true", help="Include the audit trail")
    status_parser.add_argument(
        "--report",
        choices=["profile", "dry_run", "validation", "reconciliation"],
        help="Print a run report",
    )

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "create": run_create,
        "phase": run_phase,
        "export-mapping": run_export_mapping,
        "submit-mapping": run_submit_mapping,
        "approve": run_approve,
        "pause": run_pause,
        "resume": run_resume,
        "complete": run_complete,
        "status": run_status,
        "serve": run_serve,
    }

    command = commands.get(args.command)
    if not command:
        parser.print_help()
        return

    try:
        command(args)
    except MigrationError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
