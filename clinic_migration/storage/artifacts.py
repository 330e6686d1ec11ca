"""Content-addressed blob storage for phase inputs and outputs."""

import hashlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Union

from ..errors import ArtifactNotFoundError
from ..models.migration import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ArtifactRef:
    """Pointer to a stored artifact."""
    run_id: str
    phase: str
    key: str
    sha256: str
    size_bytes: int
    stored_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.phase,
            "key": self.key,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "stored_at": self.stored_at.isoformat(),
        }


class ArtifactStore(ABC):
    """
    Abstract base class for artifact stores.

    Artifacts are addressed by (run_id, phase, key). A phase's artifacts are
    never visible under another phase.
    """

    @abstractmethod
    def put(self, run_id: str, phase: str, key: str, payload: bytes) -> ArtifactRef:
        """Store a payload, replacing any previous payload under the same key."""
        pass

    @abstractmethod
    def get(self, run_id: str, phase: str, key: str) -> bytes:
        """
        Fetch a payload.

        Raises:
            ArtifactNotFoundError: If nothing is stored under the key
        """
        pass

    @abstractmethod
    def list(self, run_id: str, phase: str) -> List[ArtifactRef]:
        """List a phase's artifacts sorted by key."""
        pass

    def exists(self, run_id: str, phase: str, key: str) -> bool:
        try:
            self.get(run_id, phase, key)
            return True
        except ArtifactNotFoundError:
            return False

    def put_json(self, run_id: str, phase: str, key: str, data: Any) -> ArtifactRef:
        payload = json.dumps(data, indent=2, default=str).encode("utf-8")
        return self.put(run_id, phase, key, payload)

    def get_json(self, run_id: str, phase: str, key: str) -> Any:
        return json.loads(self.get(run_id, phase, key).decode("utf-8"))


def _check_component(value: str, label: str) -> None:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Invalid artifact {label}: {value!r}")


def _check_key(key: str) -> PurePosixPath:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or "\\" in key or any(p in ("..", ".", "") for p in key.split("/")):
        raise ValueError(f"Invalid artifact key: {key!r}")
    return path


class LocalArtifactStore(ArtifactStore):
    """
    Filesystem artifact store.

    Layout: <base_dir>/<run_id>/<phase>/<key>. Keys may contain "/" to
    group artifacts (e.g. "patient/page-00001.json").
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str, phase: str, key: str) -> Path:
        _check_component(run_id, "run_id")
        _check_component(phase, "phase")
        return self.base_dir / run_id / phase / Path(*_check_key(key).parts)

    def put(self, run_id: str, phase: str, key: str, payload: bytes) -> ArtifactRef:
        path = self._path(run_id, phase, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a sibling temp file and rename so readers never see a partial blob
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        ref = ArtifactRef(
            run_id=run_id,
            phase=phase,
            key=key,
            sha256=hashlib.sha256(payload).hexdigest(),
            size_bytes=len(payload),
        )
        logger.debug(f"Stored artifact {run_id}/{phase}/{key} ({ref.size_bytes} bytes)")
        return ref

    def get(self, run_id: str, phase: str, key: str) -> bytes:
        path = self._path(run_id, phase, key)
        if not path.is_file():
            raise ArtifactNotFoundError(run_id, phase, key)
        return path.read_bytes()

    def list(self, run_id: str, phase: str) -> List[ArtifactRef]:
        _check_component(run_id, "run_id")
        _check_component(phase, "phase")
        root = self.base_dir / run_id / phase
        if not root.is_dir():
            return []

        refs = []
        for path in root.rglob("*"):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            payload = path.read_bytes()
            refs.append(ArtifactRef(
                run_id=run_id,
                phase=phase,
                key=path.relative_to(root).as_posix(),
                sha256=hashlib.sha256(payload).hexdigest(),
                size_bytes=len(payload),
                stored_at=datetime.fromtimestamp(path.stat().st_mtime, tz=utc_now().tzinfo),
            ))
        return sorted(refs, key=lambda r: r.key)
