"""Loaders for committing canonical records into the target store."""

from .base import BaseLoader, LoadResult
from .api_loader import APILoader

__all__ = ["BaseLoader", "LoadResult", "APILoader"]
