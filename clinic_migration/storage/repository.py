"""JSON-file persistence for runs, mapping specs, entity maps and audit events.

Layout under the state directory:

    runs/<run_id>/run.json            current run document
    runs/<run_id>/mapping_specs/v<N>.json
    runs/<run_id>/entity_map.json
    runs/<run_id>/audit.jsonl         append-only audit trail
    runs/<run_id>/lease               present while a phase is in flight
    runs/<run_id>/pause.flag          present while a pause is requested
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import RunNotFoundError
from ..models.migration import (
    EntityMapEntry,
    MappingSpecVersion,
    MigrationAuditEvent,
    MigrationRun,
    utc_now,
)

logger = logging.getLogger(__name__)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class RunRepository:
    """
    File-backed store for everything the orchestrator persists.

    Runs are never deleted. Mapping spec versions and audit events are
    append-only.
    """

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id in (".", ".."):
            raise RunNotFoundError(run_id)
        return self.runs_dir / run_id

    # Runs

    def save_run(self, run: MigrationRun) -> None:
        """Persist the full run document atomically."""
        run.updated_at = utc_now()
        _write_json_atomic(self._run_dir(run.id) / "run.json", run.to_dict(include_secrets=True))

    def get_run(self, run_id: str) -> MigrationRun:
        """
        Load a run.

        Raises:
            RunNotFoundError: If no run with the id exists
        """
        path = self._run_dir(run_id) / "run.json"
        if not path.is_file():
            raise RunNotFoundError(run_id)
        with open(path) as f:
            return MigrationRun.from_dict(json.load(f))

    def run_exists(self, run_id: str) -> bool:
        try:
            return (self._run_dir(run_id) / "run.json").is_file()
        except RunNotFoundError:
            return False

    def list_runs(self, clinic_id: Optional[str] = None) -> List[MigrationRun]:
        """List runs, newest first, optionally for one clinic."""
        runs = []
        for run_file in self.runs_dir.glob("*/run.json"):
            with open(run_file) as f:
                run = MigrationRun.from_dict(json.load(f))
            if clinic_id is None or run.clinic_id == clinic_id:
                runs.append(run)
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    # Mapping spec versions

    def add_mapping_spec(self, spec_version: MappingSpecVersion) -> None:
        """
        Append a mapping spec version.

        Raises:
            FileExistsError: If the version was already written
        """
        spec_dir = self._run_dir(spec_version.run_id) / "mapping_specs"
        spec_dir.mkdir(parents=True, exist_ok=True)
        path = spec_dir / f"v{spec_version.version}.json"

        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w") as f:
            json.dump(spec_version.to_dict(), f, indent=2, default=str)

    def get_mapping_spec(self, run_id: str, version: int) -> Optional[MappingSpecVersion]:
        path = self._run_dir(run_id) / "mapping_specs" / f"v{version}.json"
        if not path.is_file():
            return None
        with open(path) as f:
            return MappingSpecVersion.from_dict(json.load(f))

    def list_mapping_specs(self, run_id: str) -> List[MappingSpecVersion]:
        """List all versions in ascending order."""
        spec_dir = self._run_dir(run_id) / "mapping_specs"
        if not spec_dir.is_dir():
            return []
        versions = []
        for path in spec_dir.glob("v*.json"):
            with open(path) as f:
                versions.append(MappingSpecVersion.from_dict(json.load(f)))
        return sorted(versions, key=lambda v: v.version)

    def latest_mapping_spec(self, run_id: str) -> Optional[MappingSpecVersion]:
        versions = self.list_mapping_specs(run_id)
        return versions[-1] if versions else None

    # Entity map

    def load_entity_map(self, run_id: str) -> Dict[str, EntityMapEntry]:
        """Load the entity map keyed by "entity_type:source_id"."""
        path = self._run_dir(run_id) / "entity_map.json"
        if not path.is_file():
            return {}
        with open(path) as f:
            entries = [EntityMapEntry.from_dict(e) for e in json.load(f)]
        return {e.key: e for e in entries}

    def save_entity_map(self, run_id: str, entries: Dict[str, EntityMapEntry]) -> None:
        data = [entries[k].to_dict() for k in sorted(entries)]
        _write_json_atomic(self._run_dir(run_id) / "entity_map.json", data)

    # Audit trail

    def append_audit_event(self, event: MigrationAuditEvent) -> None:
        path = self._run_dir(event.run_id) / "audit.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(path, "a") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def list_audit_events(self, run_id: str) -> List[MigrationAuditEvent]:
        path = self._run_dir(run_id) / "audit.jsonl"
        if not path.is_file():
            return []
        events = []
        with open(path) as f:
            for line in f:
                if line.strip():
                    events.append(MigrationAuditEvent.from_dict(json.loads(line)))
        return events

    # Leases

    def _read_lease(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path) as f:
                return json.load(f)
        except (FileNotFoundError, ValueError):
            return None

    def acquire_lease(self, run_id: str, holder: str, timeout_seconds: int) -> Optional[str]:
        """
        Try to take the run's phase lease.

        A lease older than timeout_seconds is broken by renaming it to a
        tombstone first, so only one contender can break a given lease.

        Args:
            run_id: Run to lock
            holder: Description of the caller, stored in the lease file
            timeout_seconds: Age after which an existing lease is considered stale

        Returns:
            The lease token if the lease was taken, None if another holder has it
        """
        path = self._run_dir(run_id) / "lease"
        path.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex

        with self._lock:
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._break_stale_lease(run_id, path, timeout_seconds):
                    return None
                try:
                    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                except FileExistsError:
                    return None

            with os.fdopen(fd, "w") as f:
                json.dump({
                    "holder": holder,
                    "token": token,
                    "pid": os.getpid(),
                    "acquired_at": utc_now().isoformat(),
                }, f)
        return token

    def _break_stale_lease(self, run_id: str, path: Path, timeout_seconds: int) -> bool:
        """Move a stale lease out of the way. Returns False if the lease is live."""
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < timeout_seconds:
            return False

        stale = self._read_lease(path) or {}
        tombstone = path.with_name(f"lease.stale-{uuid.uuid4().hex}")
        try:
            os.replace(path, tombstone)
        except FileNotFoundError:
            return True

        moved = self._read_lease(tombstone) or {}
        renewed = time.time() - tombstone.stat().st_mtime < timeout_seconds
        if moved.get("token") != stale.get("token") or renewed:
            # The lease changed hands or was renewed after we looked; put it back
            try:
                os.link(tombstone, path)
            except FileExistsError:
                pass
            tombstone.unlink()
            return False

        logger.warning(f"Breaking stale lease on run {run_id} ({stale.get('holder')})")
        tombstone.unlink()
        return True

    def release_lease(self, run_id: str, token: str) -> bool:
        """
        Release the lease if the token still owns it.

        Returns:
            False if the lease was broken and now belongs to someone else
        """
        path = self._run_dir(run_id) / "lease"
        with self._lock:
            current = self._read_lease(path)
            if not current or current.get("token") != token:
                logger.warning(f"Lease for run {run_id} is no longer held by this worker")
                return False
            path.unlink()
        return True

    def renew_lease(self, run_id: str, token: str) -> bool:
        """
        Refresh the lease timestamp so a long phase is not taken for stale.

        Returns:
            False if the lease was lost to another worker
        """
        path = self._run_dir(run_id) / "lease"
        with self._lock:
            current = self._read_lease(path)
            if not current or current.get("token") != token:
                logger.warning(f"Lease for run {run_id} was lost while held")
                return False
            os.utime(path, None)
        return True

    def lease_holder(self, run_id: str) -> Optional[str]:
        lease = self._read_lease(self._run_dir(run_id) / "lease")
        return lease.get("holder") if lease else None

    # Pause flags

    def request_pause(self, run_id: str) -> None:
        path = self._run_dir(run_id) / "pause.flag"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(utc_now().isoformat())

    def clear_pause(self, run_id: str) -> None:
        path = self._run_dir(run_id) / "pause.flag"
        if path.exists():
            path.unlink()

    def pause_requested(self, run_id: str) -> bool:
        return (self._run_dir(run_id) / "pause.flag").exists()
