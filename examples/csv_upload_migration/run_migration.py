#!/usr/bin/env python3
"""
Example: CSV Export to Canonical Clinic Records

This script walks a clinic's CSV export through the whole pipeline:
ingest, mapping draft, review, transform, validation, load and
reconciliation.

Usage:
    # Dry run against generated sample data (no target needed)
    python run_migration.py --demo

    # Migrate a real export directory into the configured target store
    CLINIC_MIGRATION_TARGET_URL=https://target.example.com/api \\
        python run_migration.py --source /path/to/export

    # Review the drafted mapping before approving it
    python run_migration.py --source /path/to/export --mapping reviewed.json
"""

import argparse
import csv
import json
import logging
import sys
from pathlib import Path

from clinic_migration.config import PipelineConfig
from clinic_migration.errors import MigrationError
from clinic_migration.models.migration import Actor
from clinic_migration.orchestrator import MigrationOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('migration.log')
    ]
)
logger = logging.getLogger(__name__)

CONSENT_TEXT = (
    "The clinic authorizes the transfer of its patient, scheduling and billing "
    "records to the new platform."
)


def write_sample_export(directory: Path) -> Path:
    """Write a small two-file export with a few deliberately bad rows."""
    directory.mkdir(parents=True, exist_ok=True)

    patients = [
        ["id", "first_name", "last_name", "email", "phone", "date_of_birth", "city", "zip"],
        ["1001", "Maria", "Gonzalez", "Maria.G@example.com", "(512) 555-0143", "04/12/1986", "Austin", "78701"],
        ["1002", "Priya", "Patel", "priya@example.com", "512-555-0199", "1979-09-30", "Austin", "78704"],
        ["1003", "Sam", "", "sam@example", "", "", "Round Rock", ""],
    ]
    appointments = [
        ["id", "patient_id", "provider", "service", "start_time", "status"],
        ["5001", "1001", "Dr. Chen", "Botox - Forehead", "2024-05-01 09:30", "Completed"],
        ["5002", "1002", "Dr. Chen", "HydraFacial", "2024-05-02 14:00", "Completed"],
        ["5003", "1099", "Nurse Ortiz", "Consultation", "2024-05-03 11:15", "Cancelled"],
    ]

    for name, rows in (("patients.csv", patients), ("appointments.csv", appointments)):
        with open(directory / name, "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerows(rows)

    logger.info(f"Sample export written to {directory}")
    return directory


def run_migration(orchestrator: MigrationOrchestrator, actor: Actor, source: str, mapping_file: str = None):
    """Run a CSV export through every phase."""
    logger.info("=" * 60)
    logger.info("STARTING MIGRATION")
    logger.info("=" * 60)
    logger.info(f"Source: {source}")
    logger.info(f"Dry Run: {orchestrator.config.dry_run}")

    run = orchestrator.create_run(
        actor,
        source_vendor="csv_upload",
        consent_text=CONSENT_TEXT,
        ingest_source=source,
    )
    logger.info(f"Run: {run.id}")

    orchestrator.run_to_approval(actor, run.id)

    profile = orchestrator.get_report(actor, run.id, "profile")
    for entity in profile["entities"]:
        phi = [f["name"] for f in entity["fields"] if f["is_phi"]]
        logger.info(
            f"{entity['source_entity']}: {entity['record_count']} records -> "
            f"{entity['suggested_target'] or 'unmapped'} (PHI fields: {', '.join(phi) or '-'})"
        )

    if mapping_file:
        with open(mapping_file) as f:
            version = orchestrator.submit_mapping(actor, run.id, json.load(f))
        logger.info(f"Submitted reviewed mapping as v{version.version}")
    else:
        drafted = orchestrator.list_mapping_specs(actor, run.id)[-1]
        for em in drafted.spec["entity_mappings"]:
            for fm in em["field_mappings"]:
                if fm.get("requires_approval"):
                    logger.warning(
                        f"Low-confidence mapping {em['source_entity']}.{fm['source_field']} -> "
                        f"{fm['target_field']} ({fm['confidence']})"
                    )

    run = orchestrator.approve_mapping(actor, run.id)
    logger.info(f"Approved mapping v{run.approved_mapping_version}")

    orchestrator.run_from_approval(actor, run.id)

    validation = orchestrator.get_report(actor, run.id, "validation")
    reconciliation = orchestrator.get_report(actor, run.id, "reconciliation")
    run = orchestrator.complete_run(actor, run.id)

    # Print results
    logger.info("=" * 60)
    logger.info("MIGRATION COMPLETE")
    logger.info("=" * 60)
    logger.info(f"Status: {run.status.value} ({reconciliation['status']})")
    for entity in reconciliation["entities"]:
        logger.info(
            f"{entity['entity_type']}: {entity['source_count']} source, "
            f"{entity['imported_count']} imported, {entity['skipped_count']} skipped, "
            f"{entity['failed_count']} failed"
        )

    if validation["errors_by_code"]:
        logger.warning("Validation errors:")
        for code, count in sorted(validation["errors_by_code"].items()):
            logger.warning(f"  - {code}: {count}")

    if run.duration_seconds:
        logger.info(f"Duration: {run.duration_seconds:.2f} seconds")

    return run


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="CSV export to canonical clinic records"
    )
    parser.add_argument(
        "--source",
        help="Export directory (or single file) to migrate"
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Migrate generated sample data in dry-run mode"
    )
    parser.add_argument(
        "--mapping",
        help="Reviewed mapping spec JSON to submit before approval"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate loads without writing to the target"
    )
    parser.add_argument("--clinic-id", default="demo-clinic")
    parser.add_argument("--user-id", default="demo-operator")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = PipelineConfig.from_env()
    config.data_dir = str(Path(__file__).parent / "data")

    if args.demo:
        source = str(write_sample_export(Path(__file__).parent / "sample_export"))
        config.dry_run = True
    elif args.source:
        source = args.source
        config.dry_run = config.dry_run or args.dry_run
    else:
        parser.error("--source or --demo is required")

    if not config.target_url and not config.dry_run:
        logger.error("CLINIC_MIGRATION_TARGET_URL is not set")
        logger.info("Set it or use --dry-run for simulation")
        sys.exit(1)

    orchestrator = MigrationOrchestrator(config)
    actor = Actor(user_id=args.user_id, clinic_id=args.clinic_id)

    try:
        run_migration(orchestrator, actor, source, args.mapping)
    except MigrationError as e:
        logger.error(f"Migration failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
