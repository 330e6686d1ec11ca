"""Persistence: phase artifacts and run state."""

from .artifacts import ArtifactRef, ArtifactStore, LocalArtifactStore
from .repository import RunRepository

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "LocalArtifactStore",
    "RunRepository",
]
