"""Exceptions raised by the migration pipeline.

Per-record problems (validation failures, orphaned references, rejected
loads) are never raised; they are collected as data on phase results.
The exceptions below cover operator errors and infrastructure failures.
"""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration pipeline errors."""


class ConsentRequiredError(MigrationError):
    """Raised when a run is created or ingested without consent text."""

    def __init__(self, message: str = "consent_text is required for HIPAA compliance"):
        super().__init__(message)


class AccessDeniedError(MigrationError):
    """Raised when the caller's clinic does not own the run."""

    def __init__(self, run_id: str, message: Optional[str] = None):
        super().__init__(message or f"Access denied to migration run {run_id}")
        self.run_id = run_id


class RunNotFoundError(MigrationError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str):
        super().__init__(f"Migration run not found: {run_id}")
        self.run_id = run_id


class PhaseInFlightError(MigrationError):
    """Raised when a phase is already executing for the run."""

    def __init__(self, run_id: str, holder: Optional[str] = None):
        detail = f" ({holder})" if holder else ""
        super().__init__(f"A phase is already running for migration run {run_id}{detail}")
        self.run_id = run_id
        self.holder = holder


class PhasePreconditionError(MigrationError):
    """Raised when a phase is invoked before its prerequisites are met."""


class RunPausedError(MigrationError):
    """Raised when a phase is invoked on a paused run."""

    def __init__(self, run_id: str):
        super().__init__(f"Migration run {run_id} is paused; resume it first")
        self.run_id = run_id


class RunTerminalError(MigrationError):
    """Raised when an operation targets a Completed or Failed run."""

    def __init__(self, run_id: str, status: str):
        super().__init__(f"Migration run {run_id} is {status} and cannot change")
        self.run_id = run_id
        self.status = status


class InvalidMappingSpecError(MigrationError):
    """Raised when a submitted mapping spec fails structural validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in self.errors[:5])
        super().__init__(f"Invalid mapping spec: {summary}")


class ArtifactNotFoundError(MigrationError):
    """Raised when an artifact key does not exist."""

    def __init__(self, run_id: str, phase: str, key: str):
        super().__init__(f"Artifact not found: {run_id}/{phase}/{key}")
        self.run_id = run_id
        self.phase = phase
        self.key = key


class IngestError(MigrationError):
    """Raised when a source adapter cannot reach or read its source."""


class LoaderUnavailableError(MigrationError):
    """Raised when the target store cannot accept writes."""


class CredentialError(MigrationError):
    """Raised when source credentials cannot be sealed or opened."""


class MigrationFailedError(MigrationError):
    """Raised when an infrastructure failure moves a run to Failed."""

    def __init__(self, run_id: str, phase: str, message: str):
        super().__init__(f"Phase {phase} failed for migration run {run_id}: {message}")
        self.run_id = run_id
        self.phase = phase
        self.error_message = message
