"""Ingest adapters for pulling raw records from source platforms."""

from typing import Any, Optional

from .base import BaseIngestAdapter, IngestPage
from .api_adapter import APIIngestAdapter
from .csv_adapter import CSVIngestAdapter
from ..config import PipelineConfig
from ..models.migration import SourceVendor


def create_adapter(
    vendor: SourceVendor,
    config: PipelineConfig,
    source_path: Optional[str] = None,
    **kwargs: Any
) -> BaseIngestAdapter:
    """
    Create the ingest adapter for a source vendor.

    Args:
        vendor: Source platform
        config: Pipeline configuration (page size, retries, timeouts)
        source_path: Export location for file-based runs
        **kwargs: Passed through to the adapter

    Returns:
        Adapter instance
    """
    vendor = SourceVendor(vendor)
    if vendor == SourceVendor.CSV_UPLOAD:
        if not source_path:
            raise ValueError("csv_upload runs need an ingest source path")
        return CSVIngestAdapter(source_path, page_size=config.page_size, **kwargs)
    elif vendor in (SourceVendor.BOULEVARD, SourceVendor.AESTHETICS_RECORD):
        return APIIngestAdapter(
            vendor,
            page_size=config.page_size,
            retry_config=config.retry_config,
            timeout=config.request_timeout,
            **kwargs,
        )
    else:
        raise ValueError(f"Unsupported source vendor: {vendor}")


__all__ = [
    "BaseIngestAdapter",
    "IngestPage",
    "APIIngestAdapter",
    "CSVIngestAdapter",
    "create_adapter",
]
