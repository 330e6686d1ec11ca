"""CSV/JSON export ingest adapter."""

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .base import BaseIngestAdapter, Marker
from ..errors import IngestError
from ..models.canonical import ENTITY_LOAD_ORDER
from ..models.record import RawRecord
from ..services.mapping_drafter import guess_entity_type

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".json", ".jsonl")


class CSVIngestAdapter(BaseIngestAdapter):
    """
    Ingest adapter for flat-file exports.

    Supports:
    - A directory of exports (one file per source entity) or a single file
    - CSV with delimiter sniffing and a latin-1 fallback
    - JSON arrays, JSON objects wrapping an array, and JSON Lines

    The source entity is the file stem ("clients.csv" -> "clients"); the
    page marker is the row offset into the file.
    """

    def __init__(
        self,
        source_path: Union[str, Path],
        page_size: int = 100,
        id_column: str = "id",
        encoding: str = "utf-8",
        delimiter: str = ","
    ):
        """
        Initialize the CSV adapter.

        Args:
            source_path: Export directory or single export file
            page_size: Rows per page
            id_column: Column holding each row's source id
            encoding: File encoding
            delimiter: CSV delimiter used when sniffing fails
        """
        super().__init__(page_size=page_size)
        self.source_path = Path(source_path)
        self.id_column = id_column
        self.encoding = encoding
        self.delimiter = delimiter
        self._rows: Dict[str, List[Dict[str, Any]]] = {}

    def _get_files(self) -> Dict[str, Path]:
        """Map source entity name to export file."""
        if self.source_path.is_file():
            return {self.source_path.stem: self.source_path}
        if not self.source_path.is_dir():
            raise IngestError(f"Export path not found: {self.source_path}")

        files = {}
        for path in sorted(self.source_path.iterdir()):
            if path.is_file() and path.suffix.lower() in SUPPORTED_SUFFIXES:
                files[path.stem] = path
        return files

    def list_entities(self, credentials: Dict[str, Any]) -> List[str]:
        """List export files, patients first so later entities can reference them."""
        order = [e.value for e in ENTITY_LOAD_ORDER]

        def sort_key(entity: str) -> Tuple[int, str]:
            guessed = guess_entity_type(entity)
            return (order.index(guessed.value) if guessed else len(order), entity)

        return sorted(self._get_files(), key=sort_key)

    def fetch_page(
        self,
        credentials: Dict[str, Any],
        entity: str,
        marker: Marker = None
    ) -> Tuple[List[RawRecord], Marker]:
        rows = self._load_rows(entity)
        offset = int(marker or 0)
        page_rows = rows[offset:offset + self.page_size]

        records = [
            self.create_raw_record(
                entity,
                row,
                id_field=self.id_column,
                fallback_id=f"{entity}-row-{offset + idx + 1}",
            )
            for idx, row in enumerate(page_rows)
        ]

        next_offset = offset + len(page_rows)
        next_marker = next_offset if next_offset < len(rows) else None
        return records, next_marker

    def _load_rows(self, entity: str) -> List[Dict[str, Any]]:
        """Read a whole export file once and keep its rows."""
        if entity in self._rows:
            return self._rows[entity]

        files = self._get_files()
        if entity not in files:
            raise IngestError(f"No export file for entity: {entity}")

        file_path = files[entity]
        logger.info(f"Processing file: {file_path}")
        suffix = file_path.suffix.lower()
        if suffix == ".jsonl":
            rows = self._read_jsonl(file_path)
        elif suffix == ".json":
            rows = self._read_json(file_path)
        else:
            rows = self._read_csv(file_path)

        self._rows[entity] = rows
        logger.info(f"Read {len(rows)} {entity} rows from {file_path.name}")
        return rows

    def _read_csv(self, file_path: Path, encoding: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read CSV rows; blank cells become None and blank rows are dropped."""
        encoding = encoding or self.encoding
        rows = []

        try:
            with open(file_path, "r", encoding=encoding, newline="") as f:
                # Try to detect delimiter if not specified
                sample = f.read(8192)
                f.seek(0)

                try:
                    delimiter = csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
                except csv.Error:
                    delimiter = self.delimiter

                reader = csv.DictReader(f, delimiter=delimiter)
                for row in reader:
                    data = {}
                    for column, value in row.items():
                        if column is None:
                            continue
                        if value is not None:
                            value = value.strip() or None
                        data[column.strip()] = value
                    if any(v is not None for v in data.values()):
                        rows.append(data)

        except UnicodeDecodeError:
            if encoding == "latin-1":
                raise IngestError(f"Cannot decode {file_path}")
            logger.warning(f"UTF-8 decode failed, trying latin-1 for {file_path}")
            return self._read_csv(file_path, encoding="latin-1")
        except OSError as e:
            raise IngestError(f"Failed to read CSV file {file_path}: {str(e)}") from e

        return rows

    def _read_json(self, file_path: Path) -> List[Dict[str, Any]]:
        """Read a JSON export."""
        try:
            with open(file_path, "r", encoding=self.encoding) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise IngestError(f"Invalid JSON in {file_path}: {str(e)}") from e
        except OSError as e:
            raise IngestError(f"Failed to read JSON file {file_path}: {str(e)}") from e

        # Handle different JSON structures
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            for key in ["data", "records", "items", "results"]:
                if key in data and isinstance(data[key], list):
                    items = data[key]
                    break
            else:
                items = [data]
        else:
            raise IngestError(f"Unexpected JSON structure in {file_path}")

        return [item for item in items if isinstance(item, dict)]

    def _read_jsonl(self, file_path: Path) -> List[Dict[str, Any]]:
        """Read a JSON Lines export."""
        rows = []
        try:
            with open(file_path, "r", encoding=self.encoding) as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        item = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise IngestError(f"Invalid JSON on line {line_num} of {file_path}: {str(e)}") from e
                    if isinstance(item, dict):
                        rows.append(item)
        except OSError as e:
            raise IngestError(f"Failed to read JSONL file {file_path}: {str(e)}") from e
        return rows

    def validate_source(self, credentials: Dict[str, Any]) -> List[str]:
        """Validate the export location."""
        if not self.source_path.exists():
            return [f"Export path not found: {self.source_path}"]
        if self.source_path.is_file() and self.source_path.suffix.lower() not in SUPPORTED_SUFFIXES:
            return [f"Unsupported file format: {self.source_path.suffix}"]
        if self.source_path.is_dir() and not self._get_files():
            return [f"No CSV or JSON exports in {self.source_path}"]
        return []
