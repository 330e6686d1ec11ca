"""Base ingest adapter interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple
import logging

from ..models.record import RawRecord

logger = logging.getLogger(__name__)

Marker = Any  # Cursor string, page number or row offset, depending on the adapter


@dataclass
class IngestPage:
    """One page of raw records for one source entity."""
    source_entity: str
    page_index: int
    marker: Marker
    next_marker: Marker
    records: List[RawRecord] = field(default_factory=list)

    @property
    def is_last(self) -> bool:
        return self.next_marker is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_entity": self.source_entity,
            "page_index": self.page_index,
            "marker": self.marker,
            "next_marker": self.next_marker,
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestPage":
        return cls(
            source_entity=data["source_entity"],
            page_index=data["page_index"],
            marker=data.get("marker"),
            next_marker=data.get("next_marker"),
            records=[RawRecord.from_dict(r) for r in data.get("records", [])],
        )


class BaseIngestAdapter(ABC):
    """
    Base class for all ingest adapters.

    Adapters pull raw records from a source platform page by page. They
    are strictly read-only against the source and never interpret record
    contents beyond finding each record's source id.
    """

    def __init__(self, page_size: int = 100):
        """
        Initialize the adapter.

        Args:
            page_size: Maximum records per page
        """
        self.page_size = page_size

    @abstractmethod
    def list_entities(self, credentials: Dict[str, Any]) -> List[str]:
        """
        List the source entities this adapter will ingest, in ingest order.

        Args:
            credentials: Opened source credentials

        Returns:
            Source entity names (e.g. ["clients", "appointments"])
        """
        pass

    @abstractmethod
    def fetch_page(
        self,
        credentials: Dict[str, Any],
        entity: str,
        marker: Marker = None
    ) -> Tuple[List[RawRecord], Marker]:
        """
        Fetch one page of records.

        Args:
            credentials: Opened source credentials
            entity: Source entity name
            marker: Position returned by the previous page; None for the first page

        Returns:
            Tuple of (records, next_marker); next_marker is None after the last page

        Raises:
            IngestError: If the source cannot be reached or read
        """
        pass

    def fetch_raw_records(
        self,
        credentials: Dict[str, Any],
        resume_from: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> Iterator[IngestPage]:
        """
        Iterate over every page of every entity.

        Args:
            credentials: Opened source credentials
            resume_from: Ingest checkpoint, entity -> {"next_marker", "pages", "done"};
                entities marked done are skipped and the others continue
                from their next_marker

        Yields:
            IngestPage objects in order
        """
        resume_from = resume_from or {}

        for entity in self.list_entities(credentials):
            state = resume_from.get(entity, {})
            if state.get("done"):
                logger.info(f"Skipping {entity}: already ingested")
                continue

            marker = state.get("next_marker")
            page_index = state.get("pages", 0)

            while True:
                records, next_marker = self.fetch_page(credentials, entity, marker)
                yield IngestPage(
                    source_entity=entity,
                    page_index=page_index,
                    marker=marker,
                    next_marker=next_marker,
                    records=records,
                )
                page_index += 1

                if next_marker is None:
                    break
                marker = next_marker

    async def stream_async(
        self,
        credentials: Dict[str, Any],
        resume_from: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> AsyncIterator[IngestPage]:
        """
        Async iterate over pages.

        Yields:
            IngestPage objects in order
        """
        # Default implementation converts sync to async
        for page in self.fetch_raw_records(credentials, resume_from):
            yield page

    def validate_source(self, credentials: Dict[str, Any]) -> List[str]:
        """
        Validate the source configuration.

        Returns:
            List of validation error messages
        """
        return []

    def create_raw_record(
        self,
        entity: str,
        payload: Dict[str, Any],
        id_field: str = "id",
        fallback_id: Optional[str] = None
    ) -> RawRecord:
        """Create a RawRecord, taking the source id from the payload."""
        source_id = payload.get(id_field)
        if source_id is None or str(source_id).strip() == "":
            source_id = fallback_id or ""
        return RawRecord(
            source_entity_type=entity,
            source_id=str(source_id),
            payload=payload,
        )
