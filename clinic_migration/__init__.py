"""
Clinic Data Migration Pipeline

Imports a medical practice's historical records from a third-party
practice-management platform (or a flat-file export) into the canonical
clinic data model, validates them, and commits them into the target store.

Supports:
- Network API sources (Boulevard, Aesthetics Record) and CSV/JSON uploads
- Resumable, checkpointed phases (ingest, draft_mapping, transform,
  validate, load, verify)
- Versioned mapping proposals with explicit human approval
- Per-record failure tracking that never aborts a run
- Consent capture and an append-only audit trail
"""

__version__ = "0.1.0"
